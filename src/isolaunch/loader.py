from __future__ import annotations

import importlib
import importlib.abc
import importlib.machinery
import logging
import os
import sys
import sysconfig
from dataclasses import dataclass, field
from importlib.metadata import (
    DistributionFinder,
    MetadataPathFinder,
    PackageNotFoundError,
    PathDistribution,
)
from importlib.metadata import version as dist_version
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from packaging.requirements import InvalidRequirement
from packaging.requirements import Requirement as PackagingRequirement
from packaging.utils import canonicalize_name
from packaging.version import InvalidVersion, Version

from isolaunch.common_utils import LoadFailure, VersionMismatch, VersionNotFound, safe_print
from isolaunch.i18n import _
from isolaunch.requirements import Requirement

logger = logging.getLogger(__name__)

MANIFEST_NAME = ".isolaunch_manifest.json"

# Common dist-name → import-name mappings for dists without top_level.txt
KNOWN_IMPORT_NAMES = {
    "scikit-learn": "sklearn",
    "pillow": "PIL",
    "beautifulsoup4": "bs4",
    "opencv-python": "cv2",
    "python-dateutil": "dateutil",
    "attrs": "attr",
    "pyyaml": "yaml",
}


# ============================================================================
# SEARCH PATH
# ============================================================================


def _stdlib_roots() -> List[str]:
    paths = sysconfig.get_paths()
    roots = {paths.get("stdlib"), paths.get("platstdlib")}
    return [os.path.realpath(p) for p in roots if p]


def is_stdlib_entry(entry: str, roots: Optional[List[str]] = None) -> bool:
    """True for sys.path entries that belong to the interpreter's standard library."""
    if not entry:
        return False
    parts = Path(entry).parts
    if "site-packages" in parts or "dist-packages" in parts:
        return False
    real = os.path.realpath(entry)
    for root in roots if roots is not None else _stdlib_roots():
        if real == root or real.startswith(root + os.sep):
            return True
    # The zipped stdlib (python3X.zip) usually does not exist on disk.
    return entry.endswith(".zip") and Path(entry).name.startswith("python")


def strip_ambient_entries(path_list: List[str]) -> List[str]:
    """
    Removes every non-stdlib entry from `path_list` in place.

    Returns the removed entries in their original order so they can still be reached
    through an explicit SearchPath.
    """
    roots = _stdlib_roots()
    removed = [entry for entry in path_list if not is_stdlib_entry(entry, roots)]
    path_list[:] = [entry for entry in path_list if is_stdlib_entry(entry, roots)]
    return removed


@dataclass
class SearchPath:
    """
    Where libraries may be resolved from, in precedence order: the vendored path,
    the bubble root, then the ambient directories the interpreter started with.
    """

    ambient: List[Path] = field(default_factory=list)
    vendored: Optional[Path] = None
    versions_root: Optional[Path] = None

    def ambient_directories(self) -> List[Path]:
        return [entry for entry in self.ambient if entry != self.vendored]

    def bubble_directories(self) -> List[Path]:
        """Complete bubble dirs (`<name>-<version>` holding a manifest)."""
        root = self.versions_root
        if root is None or not root.is_dir():
            return []
        return sorted(
            (d for d in root.iterdir() if d.is_dir() and (d / MANIFEST_NAME).is_file()),
            key=lambda d: d.name,
        )


# ============================================================================
# INVENTORY
# ============================================================================


@dataclass(frozen=True)
class InstalledLibrary:
    """One concrete on-disk version of a library and the directory it loads from."""

    name: str
    version: str
    location: Path
    isolated: bool = False

    @property
    def key(self) -> str:
        return canonicalize_name(self.name)

    @property
    def parsed_version(self) -> Version:
        return Version(self.version)

    def distribution(self) -> Optional[PathDistribution]:
        for dist in _distributions_in(self.location):
            if canonicalize_name(dist.name or "") == self.key:
                if dist.version == self.version:
                    return dist
        return None


def _distributions_in(directory: Path) -> Iterable[PathDistribution]:
    context = DistributionFinder.Context(path=[str(directory)])
    return MetadataPathFinder.find_distributions(context)


def _version_sort_key(library: InstalledLibrary):
    try:
        return (1, library.parsed_version)
    except InvalidVersion:
        return (0, Version("0"))


class LibraryInventory:
    """
    Enumerates the installed versions of a library across a SearchPath.

    Nothing is cached: each query reads the filesystem again, so an install performed
    in between is always visible.
    """

    def __init__(self, search_path: SearchPath):
        self.search_path = search_path

    def _scan(self, directory: Path, key: str, isolated: bool) -> List[InstalledLibrary]:
        found = []
        if not directory.is_dir():
            return found
        for dist in _distributions_in(directory):
            name = dist.name
            if not name or canonicalize_name(name) != key:
                continue
            found.append(
                InstalledLibrary(name=name, version=dist.version, location=directory, isolated=isolated)
            )
        found.sort(key=_version_sort_key, reverse=True)
        return found

    def candidates(self, name: str) -> List[InstalledLibrary]:
        """All installed versions of `name`, in resolution precedence order."""
        key = canonicalize_name(name)
        ordered: List[InstalledLibrary] = []
        if self.search_path.vendored is not None:
            ordered.extend(self._scan(self.search_path.vendored, key, isolated=False))
        bubbles: List[InstalledLibrary] = []
        for bubble in self.search_path.bubble_directories():
            bubbles.extend(self._scan(bubble, key, isolated=True))
        bubbles.sort(key=_version_sort_key, reverse=True)
        ordered.extend(bubbles)
        for directory in self.search_path.ambient_directories():
            ordered.extend(self._scan(directory, key, isolated=False))
        return ordered

    def available_versions(self, name: str) -> List[str]:
        seen = []
        for lib in self.candidates(name):
            if lib.version not in seen:
                seen.append(lib.version)
        return seen

    def select(self, requirement: Requirement) -> InstalledLibrary:
        """
        Picks the version `requirement` resolves to without loading anything.

        An exact pin only ever matches that version; bounds take the first candidate in
        precedence order that falls inside them; no constraint takes the first found.
        """
        candidates = self.candidates(requirement.name)
        exact = requirement.exact_version
        if exact:
            wanted = Version(exact)
            for lib in candidates:
                try:
                    if lib.parsed_version == wanted:
                        return lib
                except InvalidVersion:
                    continue
            raise VersionNotFound(
                requirement.name, f"=={exact}", [lib.version for lib in candidates]
            )
        for lib in candidates:
            if requirement.is_satisfied_by(lib.version):
                return lib
        raise VersionNotFound(
            requirement.name, requirement.describe(), [lib.version for lib in candidates]
        )

    def is_satisfiable(self, requirement: Requirement) -> bool:
        try:
            self.select(requirement)
            return True
        except VersionNotFound:
            return False


# ============================================================================
# SCOPED FINDER
# ============================================================================


def top_level_names(dist: PathDistribution) -> List[str]:
    """Import names a distribution provides, from top_level.txt or its RECORD."""
    text = dist.read_text("top_level.txt")
    if text:
        return [line.strip() for line in text.splitlines() if line.strip()]
    names = []
    for file in dist.files or []:
        parts = file.parts
        if not parts or parts[0] in ("..", "__pycache__") or parts[0].endswith(
            (".dist-info", ".egg-info", ".data")
        ):
            continue
        head = parts[0]
        if len(parts) == 1:
            if not head.endswith(".py"):
                continue
            head = head[:-3]
        if head not in names:
            names.append(head)
    return names


def primary_import_name(name: str, names: List[str]) -> Optional[str]:
    key = canonicalize_name(name)
    if key in KNOWN_IMPORT_NAMES and KNOWN_IMPORT_NAMES[key] in names:
        return KNOWN_IMPORT_NAMES[key]
    wanted = key.replace("-", "_")
    for candidate in names:
        if candidate.lower() == wanted:
            return candidate
    public = [n for n in names if not n.startswith("_")]
    return public[0] if public else (names[0] if names else None)


def sibling_dependencies(dist: PathDistribution, location: Path) -> List[PathDistribution]:
    """
    The dependencies `dist` declares that are installed in the same directory, followed
    transitively. Extras and markers that do not apply to this interpreter are skipped;
    dependencies installed elsewhere stay invisible.
    """
    installed = {}
    for sibling in _distributions_in(location):
        installed.setdefault(canonicalize_name(sibling.name or ""), sibling)
    seen = {canonicalize_name(dist.name or "")}
    pending = list(dist.requires or [])
    found: List[PathDistribution] = []
    while pending:
        spec = pending.pop(0)
        try:
            dependency = PackagingRequirement(spec)
        except InvalidRequirement:
            logger.debug("Skipping unparsable Requires-Dist entry %r of %s", spec, dist.name)
            continue
        if dependency.marker is not None and not dependency.marker.evaluate({"extra": ""}):
            continue
        key = canonicalize_name(dependency.name)
        if key in seen or key not in installed:
            continue
        seen.add(key)
        found.append(installed[key])
        pending.extend(installed[key].requires or [])
    return found


@dataclass
class _Exposure:
    library: InstalledLibrary
    modules: Optional[frozenset]  # None exposes everything under the location
    dists: frozenset = frozenset()  # canonical names whose metadata is visible when scoped


class ScopedLibraryFinder(importlib.abc.MetaPathFinder):
    """
    Meta path finder that makes resolved libraries importable from their exact location.

    A bubble exposes everything it contains (the library plus the dependencies that
    were installed with it), and so does the vendored path. A shared directory such as
    site-packages exposes the resolved library's own top-level modules plus those of
    the dependencies it declares that sit in the same directory.
    """

    def __init__(self):
        self._exposures: List[_Exposure] = []

    def expose(
        self,
        library: InstalledLibrary,
        modules: Optional[Iterable[str]] = None,
        siblings: Iterable[PathDistribution] = (),
    ):
        if library.isolated or modules is None:
            self._exposures.insert(0, _Exposure(library, None))
            return
        siblings = list(siblings)
        names = list(modules)
        for sibling in siblings:
            names.extend(top_level_names(sibling))
        dists = {library.key} | {canonicalize_name(s.name or "") for s in siblings}
        self._exposures.insert(0, _Exposure(library, frozenset(names), frozenset(dists)))

    @property
    def libraries(self) -> List[InstalledLibrary]:
        return [e.library for e in self._exposures]

    def find_spec(self, fullname, path=None, target=None):
        if path is not None:
            # Submodules are found through their parent package's __path__.
            return None
        for exposure in self._exposures:
            if exposure.modules is not None and fullname not in exposure.modules:
                continue
            spec = importlib.machinery.PathFinder.find_spec(
                fullname, [str(exposure.library.location)]
            )
            if spec is not None:
                return spec
        return None

    def find_distributions(self, context=DistributionFinder.Context()):
        for exposure in self._exposures:
            for dist in _distributions_in(exposure.library.location):
                dist_name = dist.name or ""
                if exposure.modules is not None and canonicalize_name(dist_name) not in exposure.dists:
                    continue
                if context.name is not None and canonicalize_name(dist_name) != canonicalize_name(
                    context.name
                ):
                    continue
                yield dist

    def install(self, meta_path: Optional[list] = None):
        meta_path = sys.meta_path if meta_path is None else meta_path
        if self not in meta_path:
            meta_path.insert(0, self)
        return self


# ============================================================================
# LOADING & VERIFICATION
# ============================================================================


def purge_modules(module_name: str):
    """Drops `module_name` and its submodules from sys.modules so the next import is fresh."""
    prefix = module_name + "."
    for loaded in [m for m in sys.modules if m == module_name or m.startswith(prefix)]:
        del sys.modules[loaded]


def purge_ambient_modules(
    modules: Optional[dict] = None,
    keep: Iterable[str] = ("isolaunch",),
    roots: Optional[List[str]] = None,
) -> List[str]:
    """
    Drops every cached module that was loaded from outside the standard library.

    Packages named in `keep` (and their submodules) stay. Objects that already hold a
    reference to a purged module keep working, but a fresh ``import`` has to go through
    the scoped finder again.
    """
    modules = sys.modules if modules is None else modules
    roots = _stdlib_roots() if roots is None else roots
    kept = tuple(keep)
    purged = []
    for name, module in list(modules.items()):
        if name.partition(".")[0] in kept:
            continue
        module_file = getattr(module, "__file__", None)
        if not module_file or is_stdlib_entry(str(module_file), roots):
            continue
        del modules[name]
        purged.append(name)
    return purged


def _version_next_to(module, name: str) -> Optional[str]:
    """Reads the version from the metadata sitting beside an imported module's files."""
    module_file = getattr(module, "__file__", None)
    if not module_file:
        return None
    key = canonicalize_name(name)
    here = Path(module_file).resolve().parent
    for directory in [here, *here.parents][:6]:
        for dist in _distributions_in(directory):
            if canonicalize_name(dist.name or "") == key:
                return dist.version
    return None


class LibraryLoader:
    """Resolves, loads and verifies requirements inside the child process."""

    def __init__(self, inventory: LibraryInventory, finder: ScopedLibraryFinder, quiet: bool = True):
        self.inventory = inventory
        self.finder = finder
        self.quiet = quiet
        self.loaded: Dict[str, InstalledLibrary] = {}

    def resolve(self, requirement: Requirement) -> InstalledLibrary:
        """
        First pass. An exact pin is selected among every installed version; bounds and
        bare names go through the ordinary by-name selection.
        """
        library = self.inventory.select(requirement)
        if requirement.exact_version:
            logger.debug("Pinned %s to %s at %s", requirement.name, library.version, library.location)
        else:
            logger.debug(
                "By-name load of %s picked %s at %s", requirement.name, library.version, library.location
            )
        return library

    def load(self, library: InstalledLibrary):
        """Loads a library from its concrete location. Returns the imported module or None."""
        dist = library.distribution()
        names = top_level_names(dist) if dist is not None else []
        if library.location == self.inventory.search_path.vendored:
            self.finder.expose(library)
        elif dist is not None and not library.isolated:
            self.finder.expose(library, names, siblings=sibling_dependencies(dist, library.location))
        else:
            self.finder.expose(library, names)
        import_name = primary_import_name(library.name, names)
        if import_name is None:
            logger.debug("%s provides no importable module, metadata only", library.name)
            return None
        purge_modules(import_name)
        importlib.invalidate_caches()
        try:
            return importlib.import_module(import_name)
        except ImportError as e:
            raise LoadFailure(
                f"Could not import '{import_name}' for {library.name} {library.version} "
                f"from {library.location}: {e}"
            ) from e

    def loaded_version(self, library: InstalledLibrary, module) -> str:
        """The version that is actually live, read next to the imported module's files."""
        if module is not None:
            version = _version_next_to(module, library.name)
            if version:
                return version
        try:
            return dist_version(library.name)
        except PackageNotFoundError:
            return library.version

    def verify(self, requirement: Requirement, version: str):
        violated = requirement.violated_bound(version)
        if violated is not None:
            bound, expected = violated
            raise VersionMismatch(requirement.name, version, bound, expected)

    def satisfy(self, requirement: Requirement) -> InstalledLibrary:
        library = self.resolve(requirement)
        module = self.load(library)
        version = self.loaded_version(library, module)
        self.verify(requirement, version)
        self.loaded[requirement.key] = library
        if not self.quiet:
            safe_print(
                _("   📦 {} {} ({})").format(library.name, version, library.location),
                file=sys.stderr,
            )
        return library
