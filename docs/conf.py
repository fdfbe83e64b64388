# Configuration file for the Sphinx documentation builder.

import sys
from pathlib import Path

# autodoc imports the package straight from the src/ layout
sys.path.insert(0, str(Path(__file__).resolve().parent.parent / "src"))

# -- Project information -----------------------------------------------------
project = "isolaunch"
copyright = "2026, isolaunch contributors"
author = "isolaunch contributors"
release = "0.1.0"

# -- General configuration ---------------------------------------------------
extensions = [
    "sphinx.ext.autodoc",
    "sphinx.ext.napoleon",
    "sphinx.ext.viewcode",
    "myst_parser",
]

autodoc_member_order = "bysource"
templates_path = ["_templates"]
exclude_patterns = ["_build", "Thumbs.db", ".DS_Store"]

# -- Options for HTML output -------------------------------------------------
html_theme = "furo"
html_static_path = ["_static"]
html_theme_options = {
    "navigation_with_keys": True,
}
html_title = "isolaunch Documentation"
