"""
Bubble installer - puts a missing library version into its own directory

Each install lands in `<versions_root>/<name>-<version>/` via `pip install --target`,
so every version lives beside the others instead of replacing them. A manifest marks
the bubble complete; directories without one are ignored by the inventory.
"""

import json
import logging
import shutil
import subprocess
import sys
import time
import uuid
from pathlib import Path
from typing import List, Optional

import requests
from packaging.utils import canonicalize_name
from packaging.version import InvalidVersion, Version

from isolaunch.common_utils import InstallFailure, safe_print
from isolaunch.i18n import _
from isolaunch.loader import MANIFEST_NAME, LibraryInventory, SearchPath
from isolaunch.requirements import Requirement

logger = logging.getLogger(__name__)

DEFAULT_PYPI_JSON_URL = "https://pypi.org/pypi"


class BubbleInstaller:
    """Installs requirements the inventory cannot satisfy into user-scoped bubbles."""

    def __init__(
        self,
        versions_root: Path,
        python_executable: Optional[str] = None,
        index_url: Optional[str] = None,
        pypi_json_url: Optional[str] = None,
        quiet: bool = False,
    ):
        self.versions_root = Path(versions_root)
        self.python_executable = python_executable or sys.executable
        self.index_url = index_url
        self.pypi_json_url = (pypi_json_url or DEFAULT_PYPI_JSON_URL).rstrip("/")
        self.quiet = quiet

    def bubble_path(self, name: str, version: str) -> Path:
        return self.versions_root / f"{canonicalize_name(name)}-{version}"

    def ensure(self, requirement: Requirement, inventory: LibraryInventory) -> Optional[Path]:
        """Installs `requirement` unless it is already satisfiable. Returns the new bubble."""
        if inventory.is_satisfiable(requirement):
            logger.debug("%s already satisfiable, no install needed", requirement.to_pip_spec())
            return None
        if not self.quiet:
            safe_print(
                _("📦 Installing {} into an isolated bubble...").format(requirement.to_pip_spec()),
                file=sys.stderr,
            )
        version = requirement.exact_version or self.pick_release(requirement)
        if version:
            return self._install_exact(requirement.name, version)
        return self._install_via_staging(requirement)

    def pick_release(self, requirement: Requirement) -> Optional[str]:
        """
        Highest non-yanked final release within the requirement's bounds according to
        the PyPI JSON API, or None when the index cannot be queried.
        """
        url = f"{self.pypi_json_url}/{requirement.name}/json"
        headers = {
            "User-Agent": "isolaunch-bubble-installer/1.0",
            "Accept": "application/json",
        }
        try:
            response = requests.get(url, timeout=10, headers=headers)
        except requests.exceptions.RequestException as e:
            logger.warning("PyPI lookup for %s failed: %s", requirement.name, e)
            return None
        if response.status_code == 404:
            raise InstallFailure(f"'{requirement.name}' does not exist on the package index")
        if response.status_code != 200:
            logger.warning("PyPI lookup for %s returned HTTP %s", requirement.name, response.status_code)
            return None
        try:
            releases = response.json().get("releases", {})
        except ValueError:
            return None

        best = None
        for raw_version, files in releases.items():
            try:
                version = Version(raw_version)
            except InvalidVersion:
                continue
            if version.is_prerelease or not files:
                continue
            if all(f.get("yanked") for f in files):
                continue
            if not requirement.is_satisfied_by(raw_version):
                continue
            if best is None or version > best[0]:
                best = (version, raw_version)
        if best is None:
            raise InstallFailure(
                f"No release of '{requirement.name}' on the package index matches "
                f"{requirement.describe()}"
            )
        return best[1]

    def _pip_install(self, target: Path, specs: List[str]):
        cmd = [
            self.python_executable,
            "-m",
            "pip",
            "install",
            "--no-input",
            "--disable-pip-version-check",
            "--target",
            str(target),
        ] + specs
        if self.index_url:
            cmd.extend(["--index-url", self.index_url])
        logger.debug("Running %s", " ".join(cmd))
        result = subprocess.run(cmd, capture_output=True, text=True)
        if result.returncode != 0:
            raise InstallFailure(
                _("pip could not install {}: {}").format(
                    " ".join(specs), result.stderr.strip() or result.stdout.strip()
                )
            )

    def _install_exact(self, name: str, version: str) -> Path:
        bubble = self.bubble_path(name, version)
        if (bubble / MANIFEST_NAME).is_file():
            return bubble
        staging = self._staging_dir(name)
        try:
            self._pip_install(staging, [f"{name}=={version}"])
            return self._promote(staging, bubble, name, version)
        finally:
            if staging.exists():
                shutil.rmtree(staging, ignore_errors=True)

    def _install_via_staging(self, requirement: Requirement) -> Path:
        """Installs a range spec, then names the bubble after the version pip chose."""
        staging = self._staging_dir(requirement.name)
        try:
            self._pip_install(staging, [requirement.to_pip_spec()])
            version = self._installed_version(staging, requirement)
            bubble = self.bubble_path(requirement.name, version)
            if (bubble / MANIFEST_NAME).is_file():
                return bubble
            return self._promote(staging, bubble, requirement.name, version)
        finally:
            if staging.exists():
                shutil.rmtree(staging, ignore_errors=True)

    def _installed_version(self, staging: Path, requirement: Requirement) -> str:
        inventory = LibraryInventory(SearchPath(ambient=[staging]))
        candidates = inventory.candidates(requirement.name)
        if not candidates:
            raise InstallFailure(
                f"pip finished but no metadata for '{requirement.name}' was found in {staging}"
            )
        return candidates[0].version

    def _staging_dir(self, name: str) -> Path:
        self.versions_root.mkdir(parents=True, exist_ok=True)
        return self.versions_root / f".staging-{canonicalize_name(name)}-{uuid.uuid4().hex[:8]}"

    def _promote(self, staging: Path, bubble: Path, name: str, version: str) -> Path:
        manifest = {
            "name": name,
            "version": version,
            "installed_at": time.strftime("%Y-%m-%dT%H:%M:%S%z"),
            "python": f"{sys.version_info.major}.{sys.version_info.minor}",
            "python_executable": self.python_executable,
        }
        with open(staging / MANIFEST_NAME, "w", encoding="utf-8") as f:
            json.dump(manifest, f, indent=2)
        if bubble.exists():
            shutil.rmtree(bubble)
        staging.rename(bubble)
        if not self.quiet:
            safe_print(_("   ✅ Installed {}=={} at {}").format(name, version, bubble), file=sys.stderr)
        return bubble
