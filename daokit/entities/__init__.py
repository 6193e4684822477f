"""
The `entities` package describes how entity types map to tables.

Contents
--------
- naming
    Naming policies converting property names into column names
    (`UPPER_CASE_WITH_UNDERSCORE`, `LOWER_CASE_WITH_UNDERSCORE`, `LOWER_CAMEL_CASE`, `NO_CHANGE`)

- descriptor
    `ColumnSpec`, `EntityDescriptor` and `DescriptorRegistry`:
    * Column flags `ID`, `READ_ONLY` and `NON_UPDATABLE`
    * Simple and composite primary keys
    * Descriptors derived from dataclasses
"""
