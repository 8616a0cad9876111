from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from .cache import CacheManager, url_hash
from .lockfile import Artifact, ArtifactType, Scope, ScopeKind
from .scope import ScopeContext, normalize_repo_url

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1
GLOBAL_KEY = "global"


@dataclass(frozen=True)
class InstalledEntry:
    name: str
    version: str
    type: ArtifactType
    scope: Scope
    target_base: str
    install_path: str

    @property
    def identity(self) -> tuple[str, str, Scope]:
        return (self.name, self.version, self.scope)

    @property
    def location(self) -> Path:
        return Path(self.target_base) / self.install_path

    @property
    def label(self) -> str:
        return f"{self.name}@{self.version}"

    @classmethod
    def for_artifact(cls, artifact: Artifact, target_base: Path, install_path: str) -> "InstalledEntry":
        return cls(
            name=artifact.name,
            version=artifact.version,
            type=artifact.type,
            scope=artifact.scope,
            target_base=str(target_base),
            install_path=install_path,
        )


@dataclass(frozen=True)
class InstallRecord:
    entries: tuple[InstalledEntry, ...] = ()

    def find(self, artifact: Artifact) -> InstalledEntry | None:
        ident = (artifact.name, artifact.version, artifact.scope)
        for entry in self.entries:
            if entry.identity == ident:
                return entry
        return None


def record_key(scope: Scope, context: ScopeContext) -> str:
    """Global installs share one record; everything inside a repo is recorded per repo."""
    if scope.kind is ScopeKind.GLOBAL:
        return GLOBAL_KEY
    repo = context.repo_url or scope.repo or ""
    return f"repo-{url_hash(normalize_repo_url(repo))}"


def _entry_to_json(entry: InstalledEntry) -> dict[str, Any]:
    obj: dict[str, Any] = {
        "name": entry.name,
        "version": entry.version,
        "type": entry.type.value,
        "scope": entry.scope.kind.value,
        "target_base": entry.target_base,
        "install_path": entry.install_path,
    }
    if entry.scope.repo is not None:
        obj["repo"] = entry.scope.repo
    if entry.scope.path is not None:
        obj["path"] = entry.scope.path
    return obj


def _entry_from_json(obj: Any) -> InstalledEntry | None:
    if not isinstance(obj, dict):
        return None
    try:
        scope = Scope(
            kind=ScopeKind(obj.get("scope", "global")),
            repo=obj.get("repo"),
            path=obj.get("path"),
        )
        entry = InstalledEntry(
            name=obj["name"],
            version=obj["version"],
            type=ArtifactType(obj["type"]),
            scope=scope,
            target_base=obj["target_base"],
            install_path=obj["install_path"],
        )
    except (KeyError, ValueError, TypeError):
        return None
    if not all(isinstance(v, str) for v in (entry.name, entry.version, entry.target_base, entry.install_path)):
        return None
    return entry


def load_record(cache: CacheManager, key: str) -> InstallRecord:
    raw = cache.read_state(key)
    if raw is None:
        return InstallRecord()
    if not isinstance(raw, dict) or not isinstance(raw.get("entries"), list):
        logger.warning("Install state %s has an unexpected shape; starting fresh", key)
        return InstallRecord()
    entries: list[InstalledEntry] = []
    for item in raw["entries"]:
        entry = _entry_from_json(item)
        if entry is None:
            logger.warning("Skipping unreadable install state entry in %s: %r", key, item)
            continue
        entries.append(entry)
    return InstallRecord(entries=tuple(entries))


def save_record(cache: CacheManager, key: str, record: InstallRecord) -> Path:
    payload = {
        "schema_version": SCHEMA_VERSION,
        "updated_at": datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ"),
        "entries": [_entry_to_json(e) for e in sorted(record.entries, key=lambda e: (e.name, e.version))],
    }
    return cache.write_state(key, payload)
