# Configuration file for the Sphinx documentation builder.
#
# For the full list of built-in configuration values, see the documentation:
# https://www.sphinx-doc.org/en/master/usage/configuration.html

from pathlib import Path

# -- Project information -----------------------------------------------------

project = "daokit"
release = "v0.1"

# ---- Paths ----
# repo_root = new_docs/source/../../
REPO_ROOT = Path(__file__).resolve().parents[2]

# -- General configuration ---------------------------------------------------

extensions = [
    "autoapi.extension",
    "sphinx.ext.napoleon",        # NumPy docstrings
    "sphinx.ext.viewcode",        # source links
    "sphinx.ext.intersphinx",
    "myst_parser",
]

source_suffix = {
    ".rst": "restructuredtext",
    ".md": "markdown",
}

templates_path = ["_templates"]
exclude_patterns = []

# ── AutoAPI (daokit package) ───────────────────────────────────────────────
autoapi_type = "python"
autoapi_dirs = [str(REPO_ROOT / "daokit")]
autoapi_add_toctree_entry = True
autoapi_root = "daokit_api"
autoapi_options = [
    "members",
    "undoc-members",
    "show-inheritance",
    "show-module-summary",
]
autoapi_member_order = "bysource"
autoapi_ignore = ["*__pycache__*"]
add_module_names = False

intersphinx_mapping = {
    "python": ("https://docs.python.org/3", None),
    "sqlalchemy": ("https://docs.sqlalchemy.org/en/20/", None),
}

# ---- Theme ----
html_theme = "sphinx_rtd_theme"
html_title = project

# Napoleon (NumPy docstrings)
napoleon_google_docstring = False
napoleon_numpy_docstring = True
