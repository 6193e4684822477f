"""
Core SQL machinery.

Contents
--------
- errors : the `DaoError` hierarchy
- conditions : composable condition trees (predicates, ordering, grouping, limits)
- sql_builder : SELECT / INSERT / UPDATE / DELETE generation
- sql_template : compiler for declared SQL templates (`{placeholder}` and `:bind` sites)
- binder : parameter binding and result mapping
- query_executor : execution, result shaping, batches, streams and timeouts
"""
