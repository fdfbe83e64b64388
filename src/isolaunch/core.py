from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Union

from isolaunch.common_utils import safe_print
from isolaunch.i18n import _
from isolaunch.isolation.runners import temporary_script
from isolaunch.isolation.sterile import IsolatedLauncher
from isolaunch.request import ExecutionRequest, TargetKind, build_request
from isolaunch.requirements import (
    ConflictPolicy,
    Requirement,
    extract_requirements,
    merge_requirements,
)

logger = logging.getLogger(__name__)

Override = Union[Requirement, Mapping[str, Any]]


class ConfigManager:
    """
    Manages loading and first-time creation of the isolaunch config file.

    The file lives at ``~/.config/isolaunch/config.json``; ``ISOLAUNCH_CONFIG_DIR``
    moves the whole directory (handy for tests and CI).
    """

    def __init__(self, config_dir: Optional[Union[str, Path]] = None, suppress_init_messages=False):
        env_dir = os.environ.get("ISOLAUNCH_CONFIG_DIR")
        if config_dir is None and env_dir:
            config_dir = env_dir
        self.config_dir = Path(config_dir) if config_dir else Path.home() / ".config" / "isolaunch"
        self.config_path = self.config_dir / "config.json"
        self.suppress_init_messages = suppress_init_messages
        self.config = self._load_or_create_config()

    @staticmethod
    def default_config() -> Dict:
        return {
            "interpreter": None,
            "versions_root": str(Path.home() / ".isolaunch" / "versions"),
            "conflict_policy": ConflictPolicy.SCRIPT_WINS.value,
            "install_if_missing": False,
            "autoload": False,
            "index_url": None,
            "pypi_json_url": "https://pypi.org/pypi",
            "language": "en",
            "log_level": "WARNING",
        }

    def _load_or_create_config(self) -> Dict:
        defaults = self.default_config()
        if self.config_path.exists():
            try:
                with open(self.config_path, "r", encoding="utf-8") as f:
                    stored = json.load(f)
                defaults.update(stored)
                return defaults
            except json.JSONDecodeError:
                safe_print(_("⚠️ Warning: Config file is corrupted. Starting fresh."))
        try:
            self.config_dir.mkdir(parents=True, exist_ok=True)
            with open(self.config_path, "w", encoding="utf-8") as f:
                json.dump(defaults, f, indent=4)
            if not self.suppress_init_messages:
                safe_print(_("👋 Created isolaunch config at {}").format(self.config_path))
        except OSError as e:
            logger.warning("Could not write config file %s: %s", self.config_path, e)
        return defaults

    def get(self, key, default=None):
        """Get a configuration value, with an optional default."""
        return self.config.get(key, default)

    def set(self, key, value):
        """Set a configuration value and save."""
        self.config[key] = value
        self.config_dir.mkdir(parents=True, exist_ok=True)
        with open(self.config_path, "w", encoding="utf-8") as f:
            json.dump(self.config, f, indent=4)


class IsolatedRunner:
    """
    Composes extraction, merging, request building and launching for each target kind.

    Every parent-side failure (missing script, nameless override, invalid version)
    is raised before any child process is started.
    """

    def __init__(
        self, config_manager: Optional[ConfigManager] = None, log_level: Optional[str] = None
    ):
        self.config_manager = config_manager or ConfigManager(suppress_init_messages=True)
        # Overrides the configured child log level for this runner only.
        self.log_level = log_level

    def _setting(self, explicit, key):
        return self.config_manager.get(key) if explicit is None else explicit

    def collect_requirements(
        self,
        script_path: Optional[Union[str, Path]] = None,
        overrides: Iterable[Override] = (),
        policy: Union[ConflictPolicy, str, None] = None,
        ignore_script_requirements: bool = False,
    ) -> List[Requirement]:
        extracted = []
        if script_path is not None and not ignore_script_requirements:
            extracted = extract_requirements(script_path)
        merged = merge_requirements(
            extracted,
            overrides,
            policy=self._setting(policy, "conflict_policy"),
            ignore_script=ignore_script_requirements,
        )
        return list(merged.values())

    def build(
        self,
        kind: TargetKind,
        target: Union[str, Path],
        requirements: Sequence[Requirement],
        args: Optional[Sequence[Any]] = None,
        kwargs: Optional[Mapping[str, Any]] = None,
        vendored_path: Optional[Union[str, Path]] = None,
        install_if_missing: Optional[bool] = None,
        autoload: Optional[bool] = None,
        working_directory: Optional[Union[str, Path]] = None,
        preload: Iterable[str] = (),
    ) -> ExecutionRequest:
        return build_request(
            kind,
            target,
            args=args,
            kwargs=kwargs,
            requirements=requirements,
            vendored_path=vendored_path,
            install_if_missing=self._setting(install_if_missing, "install_if_missing"),
            autoload=self._setting(autoload, "autoload"),
            working_directory=working_directory,
            preload=preload,
            versions_root=self.config_manager.get("versions_root"),
            index_url=self.config_manager.get("index_url"),
            pypi_json_url=self.config_manager.get("pypi_json_url"),
            log_level=self.log_level or self.config_manager.get("log_level", "WARNING"),
        )

    def launch(self, request: ExecutionRequest, interpreter: Optional[str] = None) -> int:
        launcher = IsolatedLauncher(self._setting(interpreter, "interpreter"))
        return launcher.launch(request)

    def run_script(
        self,
        script_path: Union[str, Path],
        args: Optional[Sequence[Any]] = None,
        requirements: Iterable[Override] = (),
        policy: Union[ConflictPolicy, str, None] = None,
        ignore_script_requirements: bool = False,
        interpreter: Optional[str] = None,
        **options,
    ) -> int:
        """Runs a script file in a sterile child. Returns the child's exit code."""
        merged = self.collect_requirements(
            script_path, requirements, policy, ignore_script_requirements
        )
        request = self.build(TargetKind.SCRIPT, script_path, merged, args=args, **options)
        return self.launch(request, interpreter)

    def run_command(
        self,
        command: str,
        args: Optional[Sequence[Any]] = None,
        kwargs: Optional[Mapping[str, Any]] = None,
        requirements: Iterable[Override] = (),
        policy: Union[ConflictPolicy, str, None] = None,
        preload: Iterable[str] = (),
        interpreter: Optional[str] = None,
        **options,
    ) -> int:
        """Runs a module, console script or `module:callable` in a sterile child."""
        merged = self.collect_requirements(None, requirements, policy)
        request = self.build(
            TargetKind.COMMAND, command, merged, args=args, kwargs=kwargs, preload=preload, **options
        )
        return self.launch(request, interpreter)

    def run_statements(
        self,
        statements: Iterable[str],
        requirements: Iterable[Override] = (),
        policy: Union[ConflictPolicy, str, None] = None,
        preload: Iterable[str] = (),
        interpreter: Optional[str] = None,
        **options,
    ) -> int:
        """Runs a statement sequence as a single-use script in a sterile child."""
        merged = self.collect_requirements(None, requirements, policy)
        with temporary_script(statements) as script:
            request = self.build(
                TargetKind.SEQUENCE, script, merged, preload=preload, **options
            )
            return self.launch(request, interpreter)
