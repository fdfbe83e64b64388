"""
Child-side bootstrap: everything that happens inside the sterile interpreter.

The launcher starts ``python -I -q -c BOOTSTRAP_PROGRAM <package_root> <token>``. The
program only imports this module and hands it the token; the steps below then run in a
fixed order with no way back:

    decode → configure environment → install (optional) → forget ambient modules
           → resolve & verify → preload auxiliary modules → dispatch

Only the steps marked BEST_EFFORT swallow their errors. Every other failure ends the
child with the error's exit code.
"""
from __future__ import annotations

import enum
import importlib
import logging
import os
import runpy
import sys
import traceback
from dataclasses import dataclass, field
from importlib.metadata import entry_points
from pathlib import Path
from typing import Callable, List, Optional, Tuple

from isolaunch.common_utils import DispatchFailure, InstallFailure, IsolaunchError, safe_print
from isolaunch.i18n import _
from isolaunch.loader import (
    LibraryInventory,
    LibraryLoader,
    ScopedLibraryFinder,
    SearchPath,
    is_stdlib_entry,
    purge_ambient_modules,
    strip_ambient_entries,
)
from isolaunch.request import ExecutionRequest, TargetKind, decode_request

logger = logging.getLogger(__name__)

# Constant program text handed to `python -c`. Data only ever arrives through argv.
BOOTSTRAP_PROGRAM = (
    "import sys\n"
    "sys.path.insert(0, sys.argv[1])\n"
    "from isolaunch.bootstrap import main\n"
    "sys.exit(main(sys.argv[2], injected_path=sys.argv[1]))\n"
)

# What the bootstrap itself leans on once the ambient site directories are gone.
FOUNDATIONAL_MODULES = (
    "packaging.version",
    "packaging.specifiers",
    "packaging.utils",
    "packaging.requirements",
    "importlib.metadata",
    "runpy",
)

# Imported before the strip only when the run may install; it pulls in requests.
INSTALLER_MODULE = "isolaunch.installation.bubbles"


class StepPolicy(enum.Enum):
    FATAL = "fatal"
    BEST_EFFORT = "best-effort"


def attempt(policy: StepPolicy, label: str, func: Callable, *args, **kwargs):
    """Runs one unit of work under its declared policy."""
    if policy is StepPolicy.FATAL:
        return func(*args, **kwargs)
    try:
        return func(*args, **kwargs)
    except Exception as e:
        logger.warning("%s failed (non-fatal): %s", label, e)
        return None


@dataclass
class ChildEnvironment:
    """Explicit configuration threaded through resolution and dispatch."""

    search_path: SearchPath
    finder: ScopedLibraryFinder
    autoload: bool
    path_list: List[str] = field(default_factory=list)


class ChildBootstrap:
    def __init__(
        self,
        request: ExecutionRequest,
        path_list: Optional[List[str]] = None,
        meta_path: Optional[list] = None,
        injected_path: Optional[str] = None,
        modules: Optional[dict] = None,
    ):
        self.request = request
        self.path_list = sys.path if path_list is None else path_list
        self.meta_path = sys.meta_path if meta_path is None else meta_path
        self.modules = sys.modules if modules is None else modules
        self.injected_path = injected_path
        self.env: Optional[ChildEnvironment] = None
        self.loader: Optional[LibraryLoader] = None

    # ------------------------------------------------------------------
    # Step 2: configure environment
    # ------------------------------------------------------------------
    def configure_environment(self) -> ChildEnvironment:
        request = self.request
        for module_name in FOUNDATIONAL_MODULES:
            attempt(StepPolicy.BEST_EFFORT, f"preload {module_name}", importlib.import_module, module_name)
        if request.install_if_missing:
            attempt(StepPolicy.BEST_EFFORT, "preload installer", importlib.import_module, INSTALLER_MODULE)

        if self.injected_path and self.injected_path in self.path_list:
            self.path_list.remove(self.injected_path)

        if request.autoload:
            ambient = [entry for entry in self.path_list if not is_stdlib_entry(entry)]
        else:
            ambient = strip_ambient_entries(self.path_list)
            logger.debug("Autoload disabled, removed %d ambient sys.path entries", len(ambient))

        if request.working_directory:
            attempt(StepPolicy.BEST_EFFORT, "change working directory", os.chdir, request.working_directory)

        vendored = None
        if request.vendored_path and Path(request.vendored_path).is_dir():
            vendored = Path(request.vendored_path)
            if request.autoload:
                self.path_list.insert(0, str(vendored))
        elif request.vendored_path:
            logger.warning("Vendored path %s does not exist, ignoring it", request.vendored_path)

        search_path = SearchPath(
            ambient=[Path(entry) for entry in ambient if entry and Path(entry).is_dir()],
            vendored=vendored,
            versions_root=Path(request.versions_root) if request.versions_root else None,
        )
        finder = ScopedLibraryFinder().install(self.meta_path)
        self.env = ChildEnvironment(
            search_path=search_path,
            finder=finder,
            autoload=request.autoload,
            path_list=self.path_list,
        )
        return self.env

    # ------------------------------------------------------------------
    # Step 3: optional install
    # ------------------------------------------------------------------
    def install_missing(self):
        request = self.request
        if not request.install_if_missing or not request.requirements:
            return
        if not request.versions_root:
            logger.warning("Install requested but no versions root configured, skipping")
            return
        try:
            from isolaunch.installation.bubbles import BubbleInstaller
        except ImportError as e:
            raise InstallFailure(f"The bubble installer could not be loaded: {e}") from e
        installer = BubbleInstaller(
            Path(request.versions_root),
            index_url=request.index_url,
            pypi_json_url=request.pypi_json_url,
        )
        inventory = LibraryInventory(self.env.search_path)
        for requirement in request.requirements:
            installer.ensure(requirement, inventory)
        importlib.invalidate_caches()

    def forget_ambient_modules(self):
        """Drops what the bootstrap and installer imported from site-packages for themselves."""
        purged = purge_ambient_modules(self.modules)
        if purged:
            logger.debug("Forgot %d ambient modules: %s", len(purged), ", ".join(sorted(purged)))
        return purged

    # ------------------------------------------------------------------
    # Step 4: resolve & verify
    # ------------------------------------------------------------------
    def resolve_requirements(self):
        inventory = LibraryInventory(self.env.search_path)
        self.loader = LibraryLoader(inventory, self.env.finder)
        for requirement in self.request.requirements:
            self.loader.satisfy(requirement)

    # ------------------------------------------------------------------
    # Step 5: auxiliary preload
    # ------------------------------------------------------------------
    def preload_auxiliary(self):
        if self.request.kind is TargetKind.SCRIPT:
            return
        for module_name in self.request.preload:
            attempt(StepPolicy.BEST_EFFORT, f"preload {module_name}", importlib.import_module, module_name)

    # ------------------------------------------------------------------
    # Step 6: dispatch
    # ------------------------------------------------------------------
    def dispatch(self):
        request = self.request
        try:
            if request.kind in (TargetKind.SCRIPT, TargetKind.SEQUENCE):
                return self._run_script(request.target, request.args)
            if request.kind is TargetKind.COMMAND:
                return self._run_command(request.target, request.args, request.kwargs)
        except SystemExit:
            raise
        except Exception as e:
            raise DispatchFailure(request.target, e) from e
        raise DispatchFailure(request.target, ValueError(f"Unknown target kind {request.kind}"))

    def _run_script(self, path: str, args: List[str]):
        sys.argv = [path] + list(args)
        self.path_list.insert(0, str(Path(path).parent))
        runpy.run_path(path, run_name="__main__")
        return 0

    def _run_command(self, command: str, args: List[str], kwargs: dict):
        sys.argv = [command] + list(args)
        func, console_script = resolve_callable(command)
        if func is None:
            runpy.run_module(command, run_name="__main__", alter_sys=True)
            return 0
        if console_script:
            # Console scripts read their arguments from sys.argv.
            return exit_code_for(func())
        keyed = {k: v for k, v in kwargs.items() if v is not None and v != ""}
        result = func(**keyed) if kwargs else func(*args)
        return exit_code_for(result)

    def run(self) -> int:
        self.configure_environment()
        self.install_missing()
        self.forget_ambient_modules()
        self.resolve_requirements()
        self.preload_auxiliary()
        return self.dispatch()


def resolve_callable(command: str) -> Tuple[Optional[Callable], bool]:
    """
    Returns ``(callable, is_console_script)``.

    `pkg.mod:func` imports and returns the attribute; a visible console script returns
    its loaded entry point, flagged because it takes no arguments; anything else
    returns ``(None, False)`` and is run as a module.
    """
    if ":" in command:
        module_name, _sep, attr_path = command.partition(":")
        target = importlib.import_module(module_name)
        for attr in attr_path.split("."):
            target = getattr(target, attr)
        return target, False
    for ep in entry_points(group="console_scripts", name=command):
        return ep.load(), True
    return None, False


def exit_code_for(result) -> int:
    """Maps a callable's return value to an exit code the way `sys.exit` would."""
    if result is None:
        return 0
    if isinstance(result, bool):
        return int(result)
    if isinstance(result, int):
        return result
    safe_print(result, file=sys.stderr)
    return 1


def main(token: str, injected_path: Optional[str] = None) -> int:
    request = None
    try:
        request = decode_request(token)
        logging.basicConfig(
            level=getattr(logging, str(request.log_level).upper(), logging.WARNING),
            format="%(name)s - %(levelname)s - %(message)s",
        )
        return ChildBootstrap(request, injected_path=injected_path).run()
    except DispatchFailure as e:
        traceback.print_exception(type(e.original), e.original, e.original.__traceback__)
        return e.exit_code
    except IsolaunchError as e:
        safe_print(_("❌ {}: {}").format(type(e).__name__, e), file=sys.stderr)
        return e.exit_code
