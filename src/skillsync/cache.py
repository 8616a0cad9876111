"""
On-disk cache for fetched artifacts, cloned git repositories, remote lock
files and install-state records.

Layout under the cache root::

    artifacts/{name}/{version}.zip
    git-repos/{url-hash}/
    lockfiles/{url-hash}.json     # etag + instance version
    lockfiles/{url-hash}.lock     # last seen lock content
    installed-state/{key}.json

This is the only component that writes below the cache root. Unreadable or
corrupt entries are reported as misses so callers can repopulate them.
"""

from __future__ import annotations

import hashlib
import json
import logging
import os
import shutil
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from .errors import SkillsyncError

logger = logging.getLogger(__name__)

ARTIFACTS_DIR = "artifacts"
GIT_REPOS_DIR = "git-repos"
LOCKFILES_DIR = "lockfiles"
STATE_DIR = "installed-state"

SECTIONS = (ARTIFACTS_DIR, GIT_REPOS_DIR, LOCKFILES_DIR, STATE_DIR)


def url_hash(url: str) -> str:
    # 8 bytes of sha256 is plenty to keep distinct repositories apart.
    return hashlib.sha256(url.encode("utf-8")).hexdigest()[:16]


def _safe_component(value: str) -> str:
    name = Path(os.path.normpath(value)).name
    if name in ("", ".", ".."):
        raise SkillsyncError(f"Invalid cache key component: {value!r}")
    return name


def _atomic_write(path: Path, data: bytes) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
        os.replace(tmp, path)
    except BaseException:
        try:
            os.unlink(tmp)
        except FileNotFoundError:
            pass
        raise


@dataclass(frozen=True)
class CachedLock:
    url: str
    etag: str | None
    version: str | None
    content: str


class CacheManager:
    def __init__(self, root: str | Path) -> None:
        self.root = Path(root).expanduser()
        # Parsed lock files keyed by url, valid for as long as the cached etag matches.
        self._parsed_locks: dict[str, tuple[str | None, Any]] = {}

    @property
    def artifacts_dir(self) -> Path:
        return self.root / ARTIFACTS_DIR

    @property
    def git_repos_dir(self) -> Path:
        return self.root / GIT_REPOS_DIR

    @property
    def lockfiles_dir(self) -> Path:
        return self.root / LOCKFILES_DIR

    @property
    def state_dir(self) -> Path:
        return self.root / STATE_DIR

    def ensure_dirs(self) -> None:
        for section in SECTIONS:
            path = self.root / section
            try:
                path.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                raise SkillsyncError(f"Could not create cache directory: {path}") from e

    # Artifacts

    def artifact_path(self, name: str, version: str) -> Path:
        return self.artifacts_dir / _safe_component(name) / f"{_safe_component(version)}.zip"

    def get_artifact(self, name: str, version: str) -> bytes | None:
        path = self.artifact_path(name, version)
        try:
            return path.read_bytes()
        except FileNotFoundError:
            return None
        except OSError as e:
            logger.warning("Ignoring unreadable cache entry %s: %s", path, e)
            return None

    def put_artifact(self, name: str, version: str, data: bytes) -> Path:
        path = self.artifact_path(name, version)
        _atomic_write(path, data)
        logger.debug("Cached %s@%s (%d bytes)", name, version, len(data))
        return path

    def invalidate_artifact(self, name: str, version: str) -> None:
        path = self.artifact_path(name, version)
        try:
            path.unlink()
        except FileNotFoundError:
            pass

    # Git repositories

    def git_repo_path(self, repo_url: str) -> Path:
        return self.git_repos_dir / url_hash(repo_url)

    def reset_git_repo(self, repo_url: str) -> Path:
        path = self.git_repo_path(repo_url)
        if path.exists():
            logger.info("Discarding cached clone of %s", repo_url)
            shutil.rmtree(path, ignore_errors=True)
        return path

    # Lock files

    def _lock_paths(self, url: str) -> tuple[Path, Path]:
        h = url_hash(url)
        return self.lockfiles_dir / f"{h}.json", self.lockfiles_dir / f"{h}.lock"

    def get_lock(self, url: str) -> CachedLock | None:
        meta_path, content_path = self._lock_paths(url)
        try:
            meta = json.loads(meta_path.read_text(encoding="utf-8"))
            content = content_path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except (OSError, ValueError) as e:
            logger.warning("Ignoring corrupt cached lock file for %s: %s", url, e)
            return None
        if not isinstance(meta, dict) or meta.get("url") != url:
            return None
        etag = meta.get("etag")
        version = meta.get("version")
        return CachedLock(
            url=url,
            etag=etag if isinstance(etag, str) else None,
            version=version if isinstance(version, str) else None,
            content=content,
        )

    def put_lock(self, url: str, *, etag: str | None, version: str | None, content: str) -> None:
        meta_path, content_path = self._lock_paths(url)
        _atomic_write(content_path, content.encode("utf-8"))
        meta = {"url": url, "etag": etag, "version": version}
        _atomic_write(meta_path, (json.dumps(meta, indent=2, sort_keys=True) + "\n").encode("utf-8"))
        self._parsed_locks.pop(url, None)

    def get_parsed_lock(self, url: str, etag: str | None) -> Any | None:
        hit = self._parsed_locks.get(url)
        if hit is None or hit[0] != etag:
            return None
        return hit[1]

    def remember_parsed_lock(self, url: str, etag: str | None, lock: Any) -> None:
        self._parsed_locks[url] = (etag, lock)

    # Install state

    def state_path(self, key: str) -> Path:
        return self.state_dir / f"{_safe_component(key)}.json"

    def read_state(self, key: str) -> Any | None:
        path = self.state_path(key)
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        except (OSError, ValueError) as e:
            logger.warning("Ignoring corrupt install state %s: %s", path, e)
            return None

    def write_state(self, key: str, payload: Any) -> Path:
        path = self.state_path(key)
        _atomic_write(path, (json.dumps(payload, indent=2, sort_keys=True) + "\n").encode("utf-8"))
        return path

    # Maintenance

    def clear(self, section: str | None = None) -> None:
        if section is not None and section not in SECTIONS:
            raise SkillsyncError(f"Unknown cache section {section!r}; expected one of {', '.join(SECTIONS)}")
        targets = [self.root / section] if section else [self.root / s for s in SECTIONS]
        for target in targets:
            if target.exists():
                shutil.rmtree(target)
        if section in (None, LOCKFILES_DIR):
            self._parsed_locks.clear()
        logger.info("Cleared cache %s", section or "(all sections)")
