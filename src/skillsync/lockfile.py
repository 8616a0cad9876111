"""
Lock file model.

A lock file is a TOML document describing one fully-resolved snapshot of
artifacts:

    lock-version = "1.0"
    version = "3f2a..."          # instance hash / ETag
    created-by = "skillsync/0.1.0"

    [[artifacts]]
    name = "code-review"
    version = "1.2.0"
    type = "skill"
    clients = ["claude-code"]
    repo = "https://github.com/acme/app"
    path = "services/api"
    dependencies = [{ name = "helper", version = "1.0.0" }]

    [artifacts.source-http]
    url = "https://example.com/code-review-1.2.0.zip"
    hashes = { sha256 = "..." }

Values parsed from a lock file are immutable and describe the desired end
state; nothing downstream mutates them.
"""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass, field
from datetime import date, datetime, time
from enum import Enum
from pathlib import Path
from typing import Any, Iterable, Mapping, Sequence, Union

import tomli
import tomli_w

from .errors import ParseError, ResolutionError, ResolutionKind, ValidationError
from .versions import compare_versions, is_valid_version, split_specifier, version_satisfies

logger = logging.getLogger(__name__)

LOCK_FILENAME = "skills.lock"
SUPPORTED_LOCK_MAJOR = 1
CURRENT_LOCK_VERSION = "1.0"

HASH_LENGTHS = {"sha256": 64, "sha512": 128}

_SHA_RE = re.compile(r"^(?:[0-9a-f]{40}|[0-9a-f]{64})$")
_HEX_RE = re.compile(r"^[0-9a-fA-F]+$")
_NAME_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")


class ArtifactType(str, Enum):
    SKILL = "skill"
    AGENT = "agent"
    COMMAND = "command"
    HOOK = "hook"
    MCP = "mcp"
    MCP_REMOTE = "mcp-remote"


@dataclass(frozen=True)
class HttpSource:
    url: str
    hashes: Mapping[str, str] = field(default_factory=dict, hash=False)
    size: int | None = None
    uploaded_at: str | None = None


@dataclass(frozen=True)
class GitSource:
    url: str
    ref: str
    subdirectory: str | None = None


@dataclass(frozen=True)
class PathSource:
    path: str


Source = Union[HttpSource, GitSource, PathSource]

_SOURCE_TABLES = {
    "source-http": HttpSource,
    "source-git": GitSource,
    "source-path": PathSource,
}


class ScopeKind(str, Enum):
    GLOBAL = "global"
    REPO = "repo"
    PATH = "path"


_PRECEDENCE = {ScopeKind.GLOBAL: 0, ScopeKind.REPO: 1, ScopeKind.PATH: 2}


@dataclass(frozen=True)
class Scope:
    kind: ScopeKind = ScopeKind.GLOBAL
    repo: str | None = None
    path: str | None = None

    @classmethod
    def global_(cls) -> "Scope":
        return cls()

    @classmethod
    def for_repo(cls, repo: str) -> "Scope":
        return cls(kind=ScopeKind.REPO, repo=repo)

    @classmethod
    def for_path(cls, repo: str, path: str) -> "Scope":
        return cls(kind=ScopeKind.PATH, repo=repo, path=path)

    @property
    def precedence(self) -> int:
        return _PRECEDENCE[self.kind]

    def __str__(self) -> str:
        if self.kind is ScopeKind.GLOBAL:
            return "global"
        if self.kind is ScopeKind.REPO:
            return f"repo:{self.repo}"
        return f"path:{self.repo}#{self.path}"


@dataclass(frozen=True)
class DependencyRef:
    name: str
    version: str | None = None

    def __str__(self) -> str:
        return f"{self.name}@{self.version}" if self.version else self.name


@dataclass(frozen=True)
class Artifact:
    name: str
    version: str
    type: ArtifactType
    source: Source
    scope: Scope = field(default_factory=Scope)
    clients: tuple[str, ...] = ()
    dependencies: tuple[DependencyRef, ...] = ()

    @property
    def key(self) -> tuple[str, str]:
        return (self.name, self.version)

    @property
    def label(self) -> str:
        return f"{self.name}@{self.version}"


@dataclass(frozen=True)
class LockFile:
    lock_version: str = CURRENT_LOCK_VERSION
    version: str = ""
    created_by: str = ""
    artifacts: tuple[Artifact, ...] = ()

    def find(self, name: str) -> list[Artifact]:
        return [a for a in self.artifacts if a.name == name]

    def resolve(self, ref: DependencyRef, candidates: Iterable[Artifact] | None = None) -> Artifact:
        """
        Resolve a dependency reference against the artifacts of this instance
        (or an explicitly filtered subset of them). Nothing outside the lock
        instance is ever consulted.
        """
        pool = list(self.artifacts if candidates is None else candidates)
        return resolve_ref(ref, pool)


def resolve_ref(ref: DependencyRef, pool: Sequence[Artifact]) -> Artifact:
    named = [a for a in pool if a.name == ref.name]
    if not named:
        raise ResolutionError(ResolutionKind.NOT_FOUND, f"Dependency not found: {ref}")

    if ref.version is None:
        if len(named) > 1:
            versions = ", ".join(a.version for a in named)
            raise ResolutionError(
                ResolutionKind.AMBIGUOUS_NAME,
                f"Dependency {ref.name!r} is ambiguous ({versions}); pin a version in the reference.",
            )
        return named[0]

    matched = [a for a in named if version_satisfies(a.version, ref.version)]
    if not matched:
        available = ", ".join(a.version for a in named)
        raise ResolutionError(
            ResolutionKind.NOT_FOUND,
            f"Dependency not found: {ref} (available: {available})",
        )
    best = max(matched, key=_version_sort_key)
    ties = [a for a in matched if compare_versions(a.version, best.version) == 0]
    if len(ties) > 1:
        raise ResolutionError(
            ResolutionKind.AMBIGUOUS_NAME,
            f"Dependency {ref} matches {len(ties)} artifacts with version {best.version}.",
        )
    return best


class _VersionKey:
    __slots__ = ("version",)

    def __init__(self, version: str) -> None:
        self.version = version

    def __lt__(self, other: "_VersionKey") -> bool:
        return compare_versions(self.version, other.version) < 0


def _version_sort_key(artifact: Artifact) -> _VersionKey:
    return _VersionKey(artifact.version)


# Parsing


def _require_str(obj: Mapping[str, Any], key: str, where: str) -> str:
    value = obj.get(key)
    if value is None:
        raise ValidationError(f"{where}: missing required field {key!r}")
    if not isinstance(value, str):
        raise ParseError(f"{where}: field {key!r} must be a string")
    value = value.strip()
    if not value:
        raise ValidationError(f"{where}: field {key!r} must not be empty")
    return value


def _optional_str(obj: Mapping[str, Any], key: str, where: str) -> str | None:
    value = obj.get(key)
    if value is None:
        return None
    if isinstance(value, (datetime, date, time)):
        return value.isoformat()
    if not isinstance(value, str):
        raise ParseError(f"{where}: field {key!r} must be a string")
    return value.strip() or None


def _check_lock_version(raw: str) -> None:
    major_s = raw.split(".", 1)[0].strip()
    if not major_s.isdigit():
        raise ValidationError(f"Invalid lock-version: {raw!r}")
    if int(major_s) != SUPPORTED_LOCK_MAJOR:
        raise ValidationError(
            f"Unsupported lock-version {raw!r}; this tool understands {SUPPORTED_LOCK_MAJOR}.x"
        )


def _parse_hashes(raw: Any, where: str) -> dict[str, str]:
    if raw is None:
        raise ValidationError(f"{where}: HTTP sources require 'hashes'")
    if not isinstance(raw, dict):
        raise ParseError(f"{where}: 'hashes' must be a table")
    if not raw:
        raise ValidationError(f"{where}: HTTP sources require at least one hash")
    hashes: dict[str, str] = {}
    for algo, digest in raw.items():
        algo_n = str(algo).strip().lower()
        if algo_n not in HASH_LENGTHS:
            raise ValidationError(f"{where}: unsupported hash algorithm {algo!r}")
        if not isinstance(digest, str):
            raise ParseError(f"{where}: hash {algo!r} must be a string")
        digest = digest.strip()
        if len(digest) != HASH_LENGTHS[algo_n] or not _HEX_RE.match(digest):
            raise ValidationError(f"{where}: {algo_n} digest is not a valid hex digest")
        hashes[algo_n] = digest.lower()
    return hashes


def _parse_source(entry: Mapping[str, Any], where: str) -> Source:
    present = [key for key in _SOURCE_TABLES if key in entry]
    if not present:
        raise ValidationError(f"{where}: exactly one of {', '.join(_SOURCE_TABLES)} is required")
    if len(present) > 1:
        raise ValidationError(f"{where}: multiple sources given ({', '.join(present)}); exactly one is allowed")

    key = present[0]
    table = entry[key]
    if not isinstance(table, dict):
        raise ParseError(f"{where}: {key} must be a table")
    swhere = f"{where} [{key}]"

    if key == "source-http":
        size = table.get("size")
        if size is not None and (not isinstance(size, int) or isinstance(size, bool) or size < 0):
            raise ValidationError(f"{swhere}: 'size' must be a non-negative integer")
        return HttpSource(
            url=_require_str(table, "url", swhere),
            hashes=_parse_hashes(table.get("hashes"), swhere),
            size=size,
            uploaded_at=_optional_str(table, "uploaded-at", swhere),
        )
    if key == "source-git":
        ref = _require_str(table, "ref", swhere)
        if not _SHA_RE.match(ref):
            raise ValidationError(f"{swhere}: 'ref' must be a full commit SHA, got {ref!r}")
        return GitSource(
            url=_require_str(table, "url", swhere),
            ref=ref,
            subdirectory=_optional_str(table, "subdirectory", swhere),
        )
    return PathSource(path=_require_str(table, "path", swhere))


def _parse_scope(entry: Mapping[str, Any], where: str) -> Scope:
    kind_raw = _optional_str(entry, "scope", where)
    repo = _optional_str(entry, "repo", where)
    path = _optional_str(entry, "path", where)
    if path is not None:
        path = path.strip("/") or None

    if kind_raw is None:
        if path is not None and repo is None:
            raise ValidationError(f"{where}: a path scope requires a repo")
        if path is not None:
            return Scope.for_path(repo or "", path)
        if repo is not None:
            return Scope.for_repo(repo)
        return Scope.global_()

    try:
        kind = ScopeKind(kind_raw.lower())
    except ValueError as e:
        raise ValidationError(f"{where}: unknown scope {kind_raw!r}") from e

    if kind is ScopeKind.GLOBAL:
        if repo is not None or path is not None:
            raise ValidationError(f"{where}: a global scope must not set repo or path")
        return Scope.global_()
    if kind is ScopeKind.REPO:
        if repo is None:
            raise ValidationError(f"{where}: a repo scope requires a repo")
        if path is not None:
            raise ValidationError(f"{where}: a repo scope must not set path")
        return Scope.for_repo(repo)
    if repo is None:
        raise ValidationError(f"{where}: a path scope requires a repo")
    if path is None:
        raise ValidationError(f"{where}: a path scope requires a path")
    return Scope.for_path(repo, path)


def _parse_dependencies(raw: Any, where: str) -> tuple[DependencyRef, ...]:
    if raw is None:
        return ()
    if not isinstance(raw, list):
        raise ParseError(f"{where}: 'dependencies' must be an array")
    deps: list[DependencyRef] = []
    for i, item in enumerate(raw):
        dwhere = f"{where} dependency #{i + 1}"
        if isinstance(item, str):
            item = {"name": item}
        if not isinstance(item, dict):
            raise ParseError(f"{dwhere}: must be a table with 'name' and optional 'version'")
        name = _require_str(item, "name", dwhere)
        version = _optional_str(item, "version", dwhere)
        if version is not None:
            split_specifier(version)
        deps.append(DependencyRef(name=name, version=version))
    return tuple(deps)


def _parse_clients(raw: Any, where: str) -> tuple[str, ...]:
    if raw is None:
        return ()
    if not isinstance(raw, list) or any(not isinstance(c, str) for c in raw):
        raise ParseError(f"{where}: 'clients' must be an array of strings")
    return tuple(c.strip() for c in raw if c.strip())


def _parse_artifact(entry: Any, index: int) -> Artifact:
    if not isinstance(entry, dict):
        raise ParseError(f"artifacts #{index + 1}: must be a table")
    where = f"artifacts #{index + 1}"
    name = _require_str(entry, "name", where)
    if not _NAME_RE.match(name):
        raise ValidationError(f"{where}: invalid artifact name {name!r}")
    where = f"artifact {name!r}"
    version = _require_str(entry, "version", where)
    if not is_valid_version(version):
        raise ValidationError(f"{where}: invalid version {version!r}")
    type_raw = _require_str(entry, "type", where)
    try:
        artifact_type = ArtifactType(type_raw)
    except ValueError as e:
        raise ValidationError(f"{where}: unknown artifact type {type_raw!r}") from e

    return Artifact(
        name=name,
        version=version,
        type=artifact_type,
        source=_parse_source(entry, where),
        scope=_parse_scope(entry, where),
        clients=_parse_clients(entry.get("clients"), where),
        dependencies=_parse_dependencies(entry.get("dependencies"), where),
    )


def parse_lock(text: str) -> LockFile:
    try:
        raw = tomli.loads(text)
    except tomli.TOMLDecodeError as e:
        raise ParseError(f"Malformed lock file: {e}") from e

    lock_version = raw.get("lock-version")
    if lock_version is None:
        raise ValidationError("Lock file is missing 'lock-version'")
    if isinstance(lock_version, (int, float)) and not isinstance(lock_version, bool):
        lock_version = str(lock_version)
    if not isinstance(lock_version, str):
        raise ParseError("'lock-version' must be a string")
    _check_lock_version(lock_version)

    instance_version = raw.get("version", "")
    created_by = raw.get("created-by", "")
    if not isinstance(instance_version, str) or not isinstance(created_by, str):
        raise ParseError("'version' and 'created-by' must be strings")

    entries = raw.get("artifacts", [])
    if not isinstance(entries, list):
        raise ParseError("'artifacts' must be an array of tables")

    artifacts = tuple(_parse_artifact(entry, i) for i, entry in enumerate(entries))

    seen: set[tuple[str, str, Scope]] = set()
    for artifact in artifacts:
        ident = (artifact.name, artifact.version, artifact.scope)
        if ident in seen:
            raise ValidationError(
                f"Duplicate artifact {artifact.label} in scope {artifact.scope}"
            )
        seen.add(ident)

    return LockFile(
        lock_version=lock_version,
        version=instance_version,
        created_by=created_by,
        artifacts=artifacts,
    )


# Serialization


def _source_table(source: Source) -> tuple[str, dict[str, Any]]:
    if isinstance(source, HttpSource):
        table: dict[str, Any] = {"url": source.url, "hashes": dict(source.hashes)}
        if source.size is not None:
            table["size"] = source.size
        if source.uploaded_at is not None:
            table["uploaded-at"] = source.uploaded_at
        return "source-http", table
    if isinstance(source, GitSource):
        table = {"url": source.url, "ref": source.ref}
        if source.subdirectory is not None:
            table["subdirectory"] = source.subdirectory
        return "source-git", table
    return "source-path", {"path": source.path}


def _artifact_table(artifact: Artifact) -> dict[str, Any]:
    item: dict[str, Any] = {
        "name": artifact.name,
        "version": artifact.version,
        "type": artifact.type.value,
    }
    if artifact.clients:
        item["clients"] = list(artifact.clients)
    if artifact.scope.kind is not ScopeKind.GLOBAL:
        item["scope"] = artifact.scope.kind.value
        item["repo"] = artifact.scope.repo
        if artifact.scope.kind is ScopeKind.PATH:
            item["path"] = artifact.scope.path
    if artifact.dependencies:
        deps: list[dict[str, str]] = []
        for dep in artifact.dependencies:
            dep_obj = {"name": dep.name}
            if dep.version is not None:
                dep_obj["version"] = dep.version
            deps.append(dep_obj)
        item["dependencies"] = deps
    key, table = _source_table(artifact.source)
    item[key] = table
    return item


def serialize_lock(lock: LockFile) -> str:
    payload: dict[str, Any] = {
        "lock-version": lock.lock_version,
        "version": lock.version,
        "created-by": lock.created_by,
        "artifacts": [_artifact_table(a) for a in lock.artifacts],
    }
    return tomli_w.dumps(payload)


def load_lock(path: str | Path) -> LockFile:
    p = Path(path).expanduser()
    try:
        text = p.read_text(encoding="utf-8")
    except FileNotFoundError as e:
        raise ValidationError(f"Lock file not found: {p}") from e
    except UnicodeDecodeError as e:
        raise ParseError(f"Lock file is not valid UTF-8: {p}") from e
    except OSError as e:
        raise ValidationError(f"Cannot read lock file {p}: {e.strerror or e}") from e
    lock = parse_lock(text)
    logger.debug("Loaded lock %s with %d artifacts", p, len(lock.artifacts))
    return lock


def save_lock(lock: LockFile, path: str | Path) -> Path:
    p = Path(path).expanduser()
    p.parent.mkdir(parents=True, exist_ok=True)
    tmp = p.with_suffix(p.suffix + ".tmp")
    tmp.write_text(serialize_lock(lock), encoding="utf-8")
    os.replace(tmp, p)
    return p
