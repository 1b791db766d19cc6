"""Configuration file for the Sphinx documentation builder."""

# For the full list of options see
# https://www.sphinx-doc.org/en/master/usage/configuration.html

import sys
from pathlib import Path

sys.path.insert(0, str(Path("../src").resolve()))


# -- Project information -----------------------------------------------------

project = "ednafit"
copyright = "2026, ednafit developers"  # noqa: A001
author = "ednafit developers"
release = "0.1.0"
html_title = "ednafit"

# -- General configuration ---------------------------------------------------

extensions = [
    "sphinx.ext.autodoc",
    "autodocsumm",
    "sphinx.ext.napoleon",
    "sphinx_autodoc_typehints",
    "sphinx_click",
]

# Napoleon settings to Default
napoleon_use_ivar = False

autodoc_default_options = {
    "members": True,
    "member-order": "bysource",
    "undoc-members": False,
    "autosummary": True,
}

autodoc_typehints = "description"

source_suffix = {".rst": "restructuredtext"}

templates_path = ["_templates"]

exclude_patterns = ["_build", "Thumbs.db", ".DS_Store"]


# -- Options for HTML output -------------------------------------------------

html_theme = "pydata_sphinx_theme"
