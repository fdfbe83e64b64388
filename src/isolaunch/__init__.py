"""
isolaunch: run scripts and commands in a sterile interpreter with pinned libraries

Every run starts a brand-new interpreter that does not inherit the caller's startup
configuration. The libraries a script declares (or the caller supplies) are resolved to
exact on-disk versions inside that child and verified before the target executes, so
two runs needing conflicting versions of the same library never bleed into each other.
"""
from importlib.metadata import PackageNotFoundError, version
from pathlib import Path

# On Python >= 3.11 this is the built-in `tomllib`, older interpreters use `tomli`.
try:
    import tomllib
except ModuleNotFoundError:
    import tomli as tomllib

__version__ = "0.0.0"  # fallback default

_pkg_name = "isolaunch"

try:
    __version__ = version(_pkg_name)
except PackageNotFoundError:
    # Likely running from source → try pyproject.toml
    pyproject_path = Path(__file__).parent.parent.parent / "pyproject.toml"
    if pyproject_path.exists():
        with pyproject_path.open("rb") as f:
            __version__ = tomllib.load(f)["project"]["version"]

__all__ = [
    "bootstrap",
    "cli",
    "common_utils",
    "core",
    "i18n",
    "loader",
    "request",
    "requirements",
]
