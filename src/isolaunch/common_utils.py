from __future__ import annotations  # Python 3.6+ compatibility

import sys
from pathlib import Path
from typing import Iterable, Optional

# Keep a reference to the original, built-in print function
_builtin_print = print


def safe_print(*args, **kwargs):
    """
    Ultra-robust print: Handles Windows encoding issues and prevents shell crashes.
    Detects non-UTF8 sessions (like cp1252) and strips emojis to prevent mojibake.
    """
    if "flush" not in kwargs:
        kwargs["flush"] = True
    try:
        _builtin_print(*args, **kwargs)
    except UnicodeEncodeError:
        try:
            safe_args = []
            stream = kwargs.get("file") or sys.stdout
            # Get shell encoding (often cp1252 on legacy Windows)
            encoding = getattr(stream, "encoding", None) or "utf-8"
            for arg in args:
                if isinstance(arg, str):
                    # If shell is not UTF-8, strip problematic symbols
                    if sys.platform == "win32" and encoding.lower() not in [
                        "utf-8",
                        "utf8",
                    ]:
                        import unicodedata

                        arg = "".join(
                            (c if ord(c) < 128 or unicodedata.category(c)[0] != "S" else "?")
                            for c in arg
                        )
                    safe_args.append(arg.encode(encoding, "replace").decode(encoding))
                else:
                    safe_args.append(arg)
            _builtin_print(*safe_args, **kwargs)
        except Exception:
            _builtin_print("[isolaunch: Encoding Error - Shell might not support UTF-8]", flush=True)


def safe_unlink(path: Path) -> None:
    """Unlink that ignores missing files."""
    if path.exists():
        path.unlink()


def print_header(title):
    """Prints a consistent, pretty header."""
    # Lazy import to avoid circular import
    from isolaunch.i18n import _

    safe_print("\n" + "=" * 60)
    safe_print(_("  🚀 {}").format(title))
    safe_print("=" * 60)


# ============================================================================
# ERROR TAXONOMY
# ============================================================================


class IsolaunchError(Exception):
    """Base class for every failure the launch engine reports."""

    exit_code = 1


class NotFound(IsolaunchError, FileNotFoundError):
    """The target script (or a requested interpreter) does not exist."""

    exit_code = 2

    def __init__(self, path):
        self.path = str(path)
        super().__init__(f"Not found: {self.path}")

    def __str__(self):
        return f"Not found: {self.path}"


class MissingName(IsolaunchError, ValueError):
    """A caller-supplied requirement record has no identifying name."""

    exit_code = 2

    def __init__(self, record=None):
        self.record = record
        super().__init__(f"Requirement record has no 'name' (or 'module_name'): {record!r}")


class VersionNotFound(IsolaunchError):
    """No installed version of a library satisfies the requested pin or range."""

    exit_code = 4

    def __init__(self, name: str, wanted: str, available: Optional[Iterable[str]] = None):
        self.name = name
        self.wanted = wanted
        self.available = list(available or [])
        found = ", ".join(self.available) if self.available else "none"
        super().__init__(
            f"No installed version of '{name}' matches {wanted} (installed: {found})"
        )


class VersionMismatch(IsolaunchError):
    """The version that ended up loaded violates one of the stated bounds."""

    exit_code = 5

    def __init__(self, name: str, loaded: str, bound: str, expected: str):
        self.name = name
        self.loaded = loaded
        self.bound = bound
        self.expected = expected
        super().__init__(
            f"Loaded '{name}' {loaded} violates {bound} {expected}"
        )


class DecodeFailure(IsolaunchError):
    """The transport token could not be turned back into an execution request."""

    exit_code = 3


class InstallFailure(IsolaunchError):
    """Installing a missing library from the package index failed."""

    exit_code = 6


class LoadFailure(IsolaunchError):
    """A resolved library was found on disk but importing it failed."""

    exit_code = 7


class DispatchFailure(IsolaunchError):
    """The dispatched target itself raised an error."""

    exit_code = 1

    def __init__(self, target: str, original: BaseException):
        self.target = target
        self.original = original
        super().__init__(f"{target} failed: {type(original).__name__}: {original}")
