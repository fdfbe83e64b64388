import logging
import shutil
import subprocess
import sys
from pathlib import Path
from typing import List, Optional, Tuple

import psutil

from isolaunch.bootstrap import BOOTSTRAP_PROGRAM
from isolaunch.common_utils import NotFound
from isolaunch.request import ExecutionRequest, encode_request

logger = logging.getLogger(__name__)

MIN_PYTHON = (3, 10)
# Probed in order when no interpreter is configured: modern first, legacy last.
INTERPRETER_CANDIDATES = ("python3", "python")
# -I: no PYTHON* env vars, no user site, no script dir on sys.path. -q: no banner.
STERILE_FLAGS = ("-I", "-q")


def package_root() -> str:
    """Directory holding the `isolaunch` package, so the child can import the bootstrap."""
    return str(Path(__file__).resolve().parent.parent.parent)


def verify_python_version(python_path: str) -> Optional[Tuple[int, int]]:
    """
    Verify that a Python executable works and get its version.
    Returns (major, minor) tuple or None if invalid.
    """
    command_string = 'import sys; print(f"{sys.version_info.major}.{sys.version_info.minor}")'
    try:
        result = subprocess.run(
            [python_path, "-I", "-c", command_string],
            capture_output=True,
            text=True,
            timeout=10,
        )
        if result.returncode == 0:
            major, minor = map(int, result.stdout.strip().split("."))
            return (major, minor)
    except (subprocess.TimeoutExpired, subprocess.SubprocessError, ValueError, OSError):
        pass
    return None


def find_interpreter(preferred: Optional[str] = None) -> str:
    """
    Returns the interpreter the child runs on.

    A caller-specified interpreter (path or name on PATH) is used as-is and must exist.
    Otherwise the running interpreter, then `python3`, then `python` are probed and the
    first one that is at least MIN_PYTHON wins.
    """
    if preferred:
        candidate = Path(preferred).expanduser()
        if candidate.is_file():
            return str(candidate)
        found = shutil.which(preferred)
        if found:
            return found
        raise NotFound(preferred)

    probes: List[str] = []
    if sys.executable:
        probes.append(sys.executable)
    for name in INTERPRETER_CANDIDATES:
        found = shutil.which(name)
        if found and found not in probes:
            probes.append(found)
    for exe in probes:
        version = verify_python_version(exe)
        if version and version >= MIN_PYTHON:
            logger.debug("Using interpreter %s (Python %d.%d)", exe, *version)
            return exe
        logger.debug("Skipping interpreter %s (version %s)", exe, version)
    raise NotFound("python>={}.{}".format(*MIN_PYTHON))


class IsolatedLauncher:
    """
    Starts a sterile interpreter for one execution request and waits for it.

    Standard streams are inherited, so whatever the target prints (prompts included)
    reaches the caller's terminal directly. The child's exit code is the result; a
    failed run is reported as-is and never retried.
    """

    def __init__(self, interpreter: Optional[str] = None):
        self.interpreter = find_interpreter(interpreter)

    def build_argv(self, request: ExecutionRequest) -> List[str]:
        token = encode_request(request)
        return [self.interpreter, *STERILE_FLAGS, "-c", BOOTSTRAP_PROGRAM, package_root(), token]

    def spawn(self, request: ExecutionRequest) -> subprocess.Popen:
        """Starts the child without waiting. The caller owns the handle."""
        argv = self.build_argv(request)
        logger.debug("Spawning %s for %s target %s", self.interpreter, request.kind.value, request.target)
        return subprocess.Popen(argv)

    def launch(self, request: ExecutionRequest) -> int:
        process = self.spawn(request)
        returncode = process.wait()
        logger.debug("Child %s exited with %s", process.pid, returncode)
        return returncode


def terminate_process_tree(process: subprocess.Popen, timeout: float = 5.0) -> None:
    """Kills a spawned child and everything it started. Safe on already-exited children."""
    try:
        parent = psutil.Process(process.pid)
    except psutil.NoSuchProcess:
        return
    family = parent.children(recursive=True) + [parent]
    for proc in family:
        try:
            proc.kill()
        except psutil.NoSuchProcess:
            pass
    psutil.wait_procs(family, timeout=timeout)
    try:
        process.wait(timeout=timeout)
    except subprocess.TimeoutExpired:
        logger.warning("Child %s did not exit after kill", process.pid)
