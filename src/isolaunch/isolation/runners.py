import os
import tempfile
import textwrap
from contextlib import contextmanager
from pathlib import Path
from typing import Iterable, Iterator

from isolaunch.common_utils import safe_unlink


def flatten_statements(statements: Iterable[str]) -> str:
    """Joins statements into the body of a single script, one block per statement."""
    blocks = [textwrap.dedent(statement).strip("\n") for statement in statements]
    return "\n".join(block for block in blocks if block.strip()) + "\n"


@contextmanager
def temporary_script(statements: Iterable[str], header: str = "") -> Iterator[Path]:
    """
    Writes a statement sequence to a single-use script and removes it afterwards.

    `header` is placed first so requirement directives can travel with the statements.
    """
    fd, temp_path = tempfile.mkstemp(suffix=".py", prefix="isolaunch_seq_")
    path = Path(temp_path)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            if header:
                f.write(header.rstrip("\n") + "\n")
            f.write(flatten_statements(statements))
        yield path
    finally:
        safe_unlink(path)
