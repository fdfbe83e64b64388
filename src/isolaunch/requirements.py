"""
Requirement model, script directive extraction and override merging.

A script declares the libraries it needs in comment directives::

    # requires libraries: requests, rich
    # requires libraries: {name: requests, version: 2.30.0}, {name='rich'; min_version='13.0'}

The bare form pins nothing; the structured form carries one record per library with an
exact version (``version`` or ``required_version``), a ``min_version`` and/or a
``max_version``. Callers can add their own requirements on top and choose who wins
when both name the same library.
"""
from __future__ import annotations

import enum
import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Optional, Union

from packaging.requirements import InvalidRequirement
from packaging.requirements import Requirement as PackagingRequirement
from packaging.utils import canonicalize_name
from packaging.version import InvalidVersion, Version

from isolaunch.common_utils import MissingName, NotFound

logger = logging.getLogger(__name__)

DIRECTIVE_PATTERN = re.compile(
    r"^\s*#\s*requires\s*[-:]?\s*libraries\b\s*[:=]?\s*(?P<body>.*)$", re.IGNORECASE
)
RECORD_PATTERN = re.compile(r"\{(?P<record>[^{}]*)\}")
_VALUE = r"\s*[:=]\s*(?:\"(?P<dq>[^\"]*)\"|'(?P<sq>[^']*)'|(?P<bare>[^,;}\s]+))"
FIELD_PATTERNS = {
    "name": re.compile(r"(?<![\w-])['\"]?name['\"]?" + _VALUE, re.IGNORECASE),
    "required_version": re.compile(
        r"(?<![\w-])['\"]?(?:required_version|version)['\"]?" + _VALUE, re.IGNORECASE
    ),
    "minimum_version": re.compile(r"(?<![\w-])['\"]?min_version['\"]?" + _VALUE, re.IGNORECASE),
    "maximum_version": re.compile(r"(?<![\w-])['\"]?max_version['\"]?" + _VALUE, re.IGNORECASE),
}

# Keys accepted on caller-supplied override records. The first spelling is primary.
OVERRIDE_KEYS = {
    "name": ("name", "module_name"),
    "required_version": ("required_version", "version"),
    "minimum_version": ("minimum_version", "min_version"),
    "maximum_version": ("maximum_version", "max_version"),
}


@dataclass(frozen=True)
class Requirement:
    """A named library plus an optional exact or ranged version constraint."""

    name: str
    required_version: Optional[str] = None
    minimum_version: Optional[str] = None
    maximum_version: Optional[str] = None

    def __post_init__(self):
        if not self.name or not str(self.name).strip():
            raise MissingName(self.to_dict())
        for field in ("required_version", "minimum_version", "maximum_version"):
            value = getattr(self, field)
            if value is None:
                continue
            try:
                _parse(value)
            except InvalidVersion as e:
                raise ValueError(f"Invalid {field} for '{self.name}': {value!r}") from e

    @property
    def key(self) -> str:
        return canonicalize_name(self.name)

    @property
    def exact_version(self) -> Optional[str]:
        """The pinned version, if any. Equal bounds behave as a pin."""
        if self.required_version:
            return self.required_version
        if self.minimum_version and self.maximum_version:
            if _parse(self.minimum_version) == _parse(self.maximum_version):
                return self.minimum_version
        return None

    @property
    def has_bounds(self) -> bool:
        return bool(self.minimum_version or self.maximum_version)

    def violated_bound(self, version: str) -> Optional[tuple]:
        """Returns ``(bound, expected)`` for the first constraint `version` breaks."""
        if not self.required_version and not self.has_bounds:
            # Unconstrained: any version string passes, PEP 440 or not.
            return None
        loaded = _parse(version)
        if self.required_version:
            if loaded != _parse(self.required_version):
                return ("required version", self.required_version)
            return None
        if self.minimum_version and loaded < _parse(self.minimum_version):
            return ("minimum version", self.minimum_version)
        if self.maximum_version and loaded > _parse(self.maximum_version):
            return ("maximum version", self.maximum_version)
        return None

    def is_satisfied_by(self, version: str) -> bool:
        try:
            return self.violated_bound(version) is None
        except InvalidVersion:
            return False

    def to_pip_spec(self) -> str:
        if self.exact_version:
            return f"{self.name}=={self.exact_version}"
        bounds = []
        if self.minimum_version:
            bounds.append(f">={self.minimum_version}")
        if self.maximum_version:
            bounds.append(f"<={self.maximum_version}")
        return self.name + ",".join(bounds)

    def describe(self) -> str:
        if self.required_version:
            return f"=={self.required_version}"
        if self.has_bounds:
            return self.to_pip_spec()[len(self.name):]
        return "any version"

    def to_dict(self) -> Dict[str, Optional[str]]:
        return {
            "name": self.name,
            "required_version": self.required_version,
            "minimum_version": self.minimum_version,
            "maximum_version": self.maximum_version,
        }


def _parse(version: str) -> Version:
    return Version(str(version))


class ConflictPolicy(enum.Enum):
    SCRIPT_WINS = "script_wins"
    EXTERNAL_WINS = "external_wins"

    @classmethod
    def coerce(cls, value: Union["ConflictPolicy", str, None]) -> "ConflictPolicy":
        if value is None:
            return cls.SCRIPT_WINS
        if isinstance(value, cls):
            return value
        return cls(str(value).lower().replace("-", "_"))


# ============================================================================
# EXTRACTION
# ============================================================================


def _first_value(pattern: re.Pattern, text: str) -> Optional[str]:
    match = pattern.search(text)
    if not match:
        return None
    value = match.group("dq")
    if value is None:
        value = match.group("sq")
    if value is None:
        value = match.group("bare")
    value = value.strip()
    return value or None


def parse_record(record: str) -> Optional[Requirement]:
    """Parses one ``{...}`` record. Returns None when the record carries no name."""
    fields = {key: _first_value(pattern, record) for key, pattern in FIELD_PATTERNS.items()}
    if not fields["name"]:
        logger.debug("Skipping requirement record without a name: %r", record)
        return None
    return Requirement(**fields)


def parse_directive_body(body: str) -> List[Requirement]:
    """Parses what follows the ``requires libraries`` marker on one line."""
    if "{" in body:
        found = (parse_record(m.group("record")) for m in RECORD_PATTERN.finditer(body))
        return [req for req in found if req is not None]
    names = (part.strip().strip("'\"") for part in body.split(","))
    return [Requirement(name=name) for name in names if name]


def extract_requirements_from_text(text: str) -> List[Requirement]:
    """All requirements declared anywhere in `text`, in order of first appearance."""
    found: Dict[str, Requirement] = {}
    for line in text.splitlines():
        match = DIRECTIVE_PATTERN.match(line)
        if not match:
            continue
        for req in parse_directive_body(match.group("body")):
            # Last occurrence wins; dict keeps the first-appearance position.
            found[req.key] = req
    return list(found.values())


def extract_requirements(script_path: Union[str, Path]) -> List[Requirement]:
    """Reads a script and returns the libraries its directives require."""
    path = Path(script_path)
    if not path.is_file():
        raise NotFound(path)
    text = path.read_text(encoding="utf-8", errors="replace")
    requirements = extract_requirements_from_text(text)
    logger.debug("Extracted %d requirement(s) from %s", len(requirements), path)
    return requirements


# ============================================================================
# MERGING
# ============================================================================


def requirement_from_record(record: Union[Requirement, Mapping]) -> Requirement:
    """Builds a Requirement from a caller override, honoring the legacy key aliases."""
    if isinstance(record, Requirement):
        return record
    values = {}
    for field, keys in OVERRIDE_KEYS.items():
        for key in keys:
            value = record.get(key)
            if value not in (None, ""):
                values[field] = str(value)
                break
    if "name" not in values:
        raise MissingName(dict(record))
    return Requirement(**values)


def requirement_from_spec(spec: str) -> Requirement:
    """
    Parses a requirement string such as ``requests==2.30.0`` or ``rich>=13,<=14``.

    Only exact pins and inclusive bounds can be expressed by a Requirement, so any
    other operator is rejected.
    """
    try:
        parsed = PackagingRequirement(spec)
    except InvalidRequirement as e:
        raise ValueError(f"Invalid requirement '{spec}': {e}") from e
    values = {"name": parsed.name}
    for specifier in parsed.specifier:
        if specifier.operator in ("==", "==="):
            values["required_version"] = specifier.version
        elif specifier.operator == ">=":
            values["minimum_version"] = specifier.version
        elif specifier.operator == "<=":
            values["maximum_version"] = specifier.version
        else:
            raise ValueError(
                f"Unsupported operator '{specifier.operator}' in '{spec}' "
                "(use ==, >= or <=)"
            )
    return Requirement(**values)


def merge_requirements(
    extracted: Iterable[Requirement],
    overrides: Iterable[Union[Requirement, Mapping]] = (),
    policy: Union[ConflictPolicy, str, None] = ConflictPolicy.SCRIPT_WINS,
    ignore_script: bool = False,
) -> Dict[str, Requirement]:
    """
    Combines script-declared requirements with caller overrides.

    Under ``script_wins`` an override for a name the script already declares is
    dropped; under ``external_wins`` it replaces the script's entry. New names are
    added under both policies. The result is keyed by canonical library name.
    """
    policy = ConflictPolicy.coerce(policy)
    merged: Dict[str, Requirement] = {}
    if not ignore_script:
        for req in extracted:
            merged[req.key] = req
    for record in overrides:
        req = requirement_from_record(record)
        if req.key in merged and policy is ConflictPolicy.SCRIPT_WINS:
            logger.debug("Keeping script requirement for %s over override", req.name)
            continue
        merged[req.key] = req
    return merged
