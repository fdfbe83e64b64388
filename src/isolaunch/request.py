"""
Execution requests and their transport encoding.

The parent builds one ExecutionRequest per invocation and hands it to the child as a
single argv token: depth-bounded JSON wrapped in URL-safe base64. The child decodes it
with the native ordered-map decoder, or with the generic-object decoder when the native
one is unusable; both produce the same request.
"""
from __future__ import annotations

import base64
import binascii
import enum
import json
import logging
from collections import OrderedDict
from dataclasses import dataclass, field
from pathlib import Path
from types import SimpleNamespace
from typing import Any, Dict, Iterable, List, Mapping, Optional, Union

from isolaunch.common_utils import DecodeFailure, MissingName, NotFound
from isolaunch.requirements import Requirement

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1
MAX_DEPTH = 16


class TargetKind(enum.Enum):
    SCRIPT = "script"
    COMMAND = "command"
    # A statement sequence flattened by the parent into a single-use script.
    SEQUENCE = "sequence"

    @property
    def runs_file(self) -> bool:
        return self is not TargetKind.COMMAND


@dataclass
class ExecutionRequest:
    kind: TargetKind
    target: str
    args: List[str] = field(default_factory=list)
    kwargs: Dict[str, Any] = field(default_factory=dict)
    requirements: List[Requirement] = field(default_factory=list)
    vendored_path: Optional[str] = None
    install_if_missing: bool = False
    autoload: bool = False
    working_directory: Optional[str] = None
    preload: List[str] = field(default_factory=list)
    versions_root: Optional[str] = None
    index_url: Optional[str] = None
    pypi_json_url: Optional[str] = None
    log_level: str = "WARNING"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "schema": SCHEMA_VERSION,
            "kind": self.kind.value,
            "target": self.target,
            "args": list(self.args),
            "kwargs": dict(self.kwargs),
            "requirements": [req.to_dict() for req in self.requirements],
            "vendored_path": self.vendored_path,
            "install_if_missing": self.install_if_missing,
            "autoload": self.autoload,
            "working_directory": self.working_directory,
            "preload": list(self.preload),
            "versions_root": self.versions_root,
            "index_url": self.index_url,
            "pypi_json_url": self.pypi_json_url,
            "log_level": self.log_level,
        }

    @classmethod
    def from_mapping(cls, data: Mapping) -> "ExecutionRequest":
        """Rebuilds a request from the ordered-map decoding."""
        _check_schema(data.get("schema"))
        return cls(
            kind=TargetKind(data["kind"]),
            target=data["target"],
            args=[str(a) for a in data.get("args") or []],
            kwargs=dict(data.get("kwargs") or {}),
            requirements=[_decoded_requirement(**dict(r)) for r in data.get("requirements") or []],
            vendored_path=data.get("vendored_path"),
            install_if_missing=bool(data.get("install_if_missing")),
            autoload=bool(data.get("autoload")),
            working_directory=data.get("working_directory"),
            preload=list(data.get("preload") or []),
            versions_root=data.get("versions_root"),
            index_url=data.get("index_url"),
            pypi_json_url=data.get("pypi_json_url"),
            log_level=data.get("log_level") or "WARNING",
        )

    @classmethod
    def from_object(cls, data: SimpleNamespace) -> "ExecutionRequest":
        """Rebuilds a request from the generic-object decoding."""
        _check_schema(getattr(data, "schema", None))
        kwargs = getattr(data, "kwargs", None)
        return cls(
            kind=TargetKind(data.kind),
            target=data.target,
            args=[str(a) for a in getattr(data, "args", None) or []],
            kwargs=_namespace_to_dict(kwargs) if kwargs is not None else {},
            requirements=[
                _decoded_requirement(
                    name=r.name,
                    required_version=getattr(r, "required_version", None),
                    minimum_version=getattr(r, "minimum_version", None),
                    maximum_version=getattr(r, "maximum_version", None),
                )
                for r in getattr(data, "requirements", None) or []
            ],
            vendored_path=getattr(data, "vendored_path", None),
            install_if_missing=bool(getattr(data, "install_if_missing", False)),
            autoload=bool(getattr(data, "autoload", False)),
            working_directory=getattr(data, "working_directory", None),
            preload=list(getattr(data, "preload", None) or []),
            versions_root=getattr(data, "versions_root", None),
            index_url=getattr(data, "index_url", None),
            pypi_json_url=getattr(data, "pypi_json_url", None),
            log_level=getattr(data, "log_level", None) or "WARNING",
        )


def _decoded_requirement(**fields) -> Requirement:
    try:
        return Requirement(**fields)
    except MissingName as e:
        raise DecodeFailure(f"Execution request carries a requirement without a name: {e.record!r}") from e


def _check_schema(schema):
    if schema != SCHEMA_VERSION:
        raise DecodeFailure(
            f"Execution request schema {schema!r} does not match expected {SCHEMA_VERSION}"
        )


def _namespace_to_dict(value):
    if isinstance(value, SimpleNamespace):
        return {k: _namespace_to_dict(v) for k, v in vars(value).items()}
    if isinstance(value, list):
        return [_namespace_to_dict(v) for v in value]
    return value


# ============================================================================
# BUILDING
# ============================================================================


def build_request(
    kind: Union[TargetKind, str],
    target: Union[str, Path],
    args: Optional[Iterable[Any]] = None,
    kwargs: Optional[Mapping[str, Any]] = None,
    requirements: Iterable[Requirement] = (),
    vendored_path: Optional[Union[str, Path]] = None,
    install_if_missing: bool = False,
    autoload: bool = False,
    working_directory: Optional[Union[str, Path]] = None,
    preload: Iterable[str] = (),
    versions_root: Optional[Union[str, Path]] = None,
    index_url: Optional[str] = None,
    pypi_json_url: Optional[str] = None,
    log_level: str = "WARNING",
) -> ExecutionRequest:
    """
    Assembles an execution request in the parent process.

    Script targets are made absolute and must exist; command names are left alone and
    resolved by the child at dispatch time.
    """
    kind = TargetKind(kind) if not isinstance(kind, TargetKind) else kind
    if kind.runs_file:
        script = Path(target).expanduser()
        if not script.is_file():
            raise NotFound(script)
        target = str(script.resolve())
    else:
        target = str(target)

    return ExecutionRequest(
        kind=kind,
        target=target,
        args=[str(a) for a in (args or [])],
        kwargs=dict(kwargs or {}),
        requirements=list(requirements),
        vendored_path=_absolute(vendored_path),
        install_if_missing=bool(install_if_missing),
        autoload=bool(autoload),
        working_directory=_absolute(working_directory),
        preload=list(preload),
        versions_root=_absolute(versions_root),
        index_url=index_url,
        pypi_json_url=pypi_json_url,
        log_level=log_level,
    )


def _absolute(path: Optional[Union[str, Path]]) -> Optional[str]:
    if path is None or path == "":
        return None
    return str(Path(path).expanduser().absolute())


# ============================================================================
# TRANSPORT ENCODING
# ============================================================================


def _check_depth(value: Any, depth: int = 0):
    if depth > MAX_DEPTH:
        raise ValueError(f"Execution request nests deeper than {MAX_DEPTH} levels")
    if isinstance(value, Mapping):
        for item in value.values():
            _check_depth(item, depth + 1)
    elif isinstance(value, (list, tuple)):
        for item in value:
            _check_depth(item, depth + 1)


def encode_request(request: ExecutionRequest) -> str:
    """Serializes a request into one URL-safe token."""
    payload = request.to_dict()
    _check_depth(payload)
    raw = json.dumps(payload, separators=(",", ":"), ensure_ascii=False).encode("utf-8")
    return base64.urlsafe_b64encode(raw).decode("ascii")


def _token_to_text(token: str) -> str:
    try:
        return base64.urlsafe_b64decode(token.encode("ascii")).decode("utf-8")
    except (binascii.Error, UnicodeError, ValueError) as e:
        raise DecodeFailure(f"Execution request token is not valid base64: {e}") from e


def decode_request_ordered(token: str) -> ExecutionRequest:
    """Native decoding: JSON objects become ordered maps."""
    text = _token_to_text(token)
    try:
        data = json.loads(text, object_pairs_hook=OrderedDict)
        if not isinstance(data, Mapping):
            raise DecodeFailure("Execution request payload is not an object")
        return ExecutionRequest.from_mapping(data)
    except DecodeFailure:
        raise
    except (json.JSONDecodeError, KeyError, ValueError) as e:
        raise DecodeFailure(f"Malformed execution request: {e}") from e


def decode_request_generic(token: str) -> ExecutionRequest:
    """Fallback decoding: JSON objects become plain attribute namespaces."""
    text = _token_to_text(token)
    try:
        data = json.loads(text, object_hook=lambda d: SimpleNamespace(**d))
        if not isinstance(data, SimpleNamespace):
            raise DecodeFailure("Execution request payload is not an object")
        return ExecutionRequest.from_object(data)
    except DecodeFailure:
        raise
    except (json.JSONDecodeError, AttributeError, ValueError, TypeError) as e:
        raise DecodeFailure(f"Malformed execution request: {e}") from e


def decode_request(token: str) -> ExecutionRequest:
    try:
        return decode_request_ordered(token)
    except TypeError:
        logger.debug("Ordered decoding unavailable, falling back to generic objects")
        return decode_request_generic(token)
