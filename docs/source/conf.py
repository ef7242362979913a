"""Sphinx configuration for labctl documentation."""
from __future__ import annotations

import importlib
from datetime import UTC, datetime

release = importlib.import_module("labctl").__version__

project = "labctl"
author = "labctl contributors"
copyright = f"{datetime.now(UTC):%Y}, labctl contributors"

version = release

extensions = [
    "sphinx.ext.autodoc",
    "sphinx.ext.napoleon",
]

autodoc_default_options = {
    "members": True,
    "undoc-members": False,
    "show-inheritance": False,
}

exclude_patterns: list[str] = ["_build", "Thumbs.db", ".DS_Store"]

html_theme = "sphinx_rtd_theme"
html_title = f"{project} {release} Docs"

napoleon_google_docstring = False
napoleon_numpy_docstring = True
napoleon_use_param = True
napoleon_use_rtype = False

rst_epilog = f"""
.. |release| replace:: v{release}
"""
