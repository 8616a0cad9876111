"""
Source fetching.

``Fetcher.fetch`` turns an artifact's source into zip bytes:

- HTTP: downloaded (or taken from the artifact cache) and verified against
  every declared hash and the declared size. Verification is never skipped.
- Git: the repository is cloned into the git cache, the pinned commit is
  checked out and the artifact is read from ``subdirectory`` (or the root).
  The pinned commit SHA is the trust anchor, so no hash is checked.
- Path: read from the local filesystem; local files are trusted.

Directories containing ``metadata.toml`` are packaged into a zip on the fly.
"""

from __future__ import annotations

import hashlib
import logging
import threading
from pathlib import Path
from typing import Mapping

from .cache import CacheManager
from .client import HttpClient
from .errors import CancelledError, FetchError, FetchKind, IntegrityError, SkillsyncError
from .git import GitClient
from .lockfile import Artifact, GitSource, HttpSource, LockFile, PathSource, parse_lock
from .package import is_artifact_dir, package_directory

logger = logging.getLogger(__name__)

_HASHERS = {
    "sha256": hashlib.sha256,
    "sha512": hashlib.sha512,
}


def compute_hash(data: bytes, algorithm: str) -> str:
    try:
        hasher = _HASHERS[algorithm]
    except KeyError as e:
        raise IntegrityError(f"Unsupported hash algorithm: {algorithm}") from e
    return hasher(data).hexdigest()


def verify_integrity(data: bytes, hashes: Mapping[str, str], size: int | None = None, *, label: str = "artifact") -> None:
    if not hashes:
        raise IntegrityError(f"{label}: no hashes declared; refusing unverified download")
    if size is not None and len(data) != size:
        raise IntegrityError(f"{label}: size mismatch, expected {size} bytes, got {len(data)}")
    for algorithm, expected in sorted(hashes.items()):
        actual = compute_hash(data, algorithm)
        if actual != expected.lower():
            raise IntegrityError(f"{label}: {algorithm} mismatch, expected {expected}, got {actual}")


def _within(base: Path, target: Path) -> bool:
    try:
        target.resolve().relative_to(base.resolve())
    except ValueError:
        return False
    return True


def _read_artifact_at(location: Path, *, label: str) -> bytes:
    if location.is_file():
        return location.read_bytes()
    if is_artifact_dir(location):
        return package_directory(location).zip_bytes
    if location.is_dir():
        zips = sorted(p for p in location.iterdir() if p.is_file() and p.suffix == ".zip")
        if len(zips) == 1:
            return zips[0].read_bytes()
        if len(zips) > 1:
            raise FetchError(FetchKind.NOT_FOUND, f"{label}: several zip files in {location}; cannot pick one")
    raise FetchError(FetchKind.NOT_FOUND, f"{label}: no artifact found at {location}")


class Fetcher:
    def __init__(
        self,
        *,
        cache: CacheManager,
        http: HttpClient,
        git: GitClient,
        base_dir: Path,
        cancel: threading.Event | None = None,
    ) -> None:
        self.cache = cache
        self.http = http
        self.git = git
        self.base_dir = base_dir
        self.cancel = cancel
        self._repo_locks: dict[str, threading.Lock] = {}
        self._repo_locks_guard = threading.Lock()

    def _check_cancel(self, label: str) -> None:
        if self.cancel is not None and self.cancel.is_set():
            raise CancelledError(f"{label}: fetch cancelled")

    def fetch(self, artifact: Artifact) -> bytes:
        self._check_cancel(artifact.label)
        source = artifact.source
        if isinstance(source, HttpSource):
            return self._fetch_http(artifact, source)
        if isinstance(source, GitSource):
            return self._fetch_git(artifact, source)
        if isinstance(source, PathSource):
            return self._fetch_path(artifact, source)
        raise SkillsyncError(f"{artifact.label}: unsupported source {type(source).__name__}")

    def cached(self, artifact: Artifact) -> bytes | None:
        """Return verified cached bytes for an HTTP artifact, or None on a miss."""
        source = artifact.source
        if not isinstance(source, HttpSource):
            return None
        data = self.cache.get_artifact(artifact.name, artifact.version)
        if data is None:
            return None
        try:
            verify_integrity(data, source.hashes, source.size, label=artifact.label)
        except IntegrityError as e:
            logger.warning("Discarding cached %s: %s", artifact.label, e)
            self.cache.invalidate_artifact(artifact.name, artifact.version)
            return None
        return data

    def _absolute_url(self, url: str) -> str:
        if url.startswith("/") and self.http.server_url:
            return self.http.server_url + url
        return url

    def _fetch_http(self, artifact: Artifact, source: HttpSource) -> bytes:
        hit = self.cached(artifact)
        if hit is not None:
            logger.debug("Cache hit for %s", artifact.label)
            return hit

        url = self._absolute_url(source.url)
        logger.info("Downloading %s from %s", artifact.label, url)
        data = self.http.get_bytes(url, cancel=self.cancel)
        verify_integrity(data, source.hashes, source.size, label=artifact.label)
        self.cache.put_artifact(artifact.name, artifact.version, data)
        return data

    def _repo_lock(self, url: str) -> threading.Lock:
        with self._repo_locks_guard:
            return self._repo_locks.setdefault(url, threading.Lock())

    def _sync_repo(self, source: GitSource, repo_dir: Path) -> None:
        self.git.clone_or_fetch(source.url, repo_dir)
        commit = self.git.resolve_ref(repo_dir, source.ref)
        self.git.checkout(repo_dir, commit)

    def _fetch_git(self, artifact: Artifact, source: GitSource) -> bytes:
        # Artifacts sharing a repository share one clone; checkouts must not interleave.
        with self._repo_lock(source.url):
            repo_dir = self.cache.git_repo_path(source.url)
            head = self.git.head(repo_dir)
            if head != source.ref:
                self._check_cancel(artifact.label)
                if head is None and repo_dir.exists():
                    # A clone without a readable HEAD is damaged; treat it as a miss.
                    repo_dir = self.cache.reset_git_repo(source.url)
                self._sync_repo(source, repo_dir)
            else:
                logger.debug("Cached clone of %s already at %s", source.url, source.ref[:12])

            location = repo_dir / source.subdirectory if source.subdirectory else repo_dir
            if not _within(repo_dir, location):
                raise FetchError(FetchKind.NOT_FOUND, f"{artifact.label}: subdirectory escapes the repository")
            return _read_artifact_at(location, label=artifact.label)

    def _fetch_path(self, artifact: Artifact, source: PathSource) -> bytes:
        path = Path(source.path).expanduser()
        if not path.is_absolute():
            path = self.base_dir / path
        if not path.exists():
            raise FetchError(FetchKind.NOT_FOUND, f"{artifact.label}: path does not exist: {path}")
        return _read_artifact_at(path, label=artifact.label)


def fetch_lock_file(url: str, *, http: HttpClient, cache: CacheManager) -> LockFile:
    """
    Fetch a remote lock file, reusing the cached copy when the server answers
    304 Not Modified for the cached ETag.
    """
    cached = cache.get_lock(url)
    resp = http.get_conditional(url, etag=cached.etag if cached else None)

    if resp.not_modified:
        if cached is None:
            raise FetchError(FetchKind.NETWORK, f"{url}: server answered 304 but nothing is cached")
        lock = cache.get_parsed_lock(url, cached.etag)
        if lock is None:
            lock = parse_lock(cached.content)
            cache.remember_parsed_lock(url, cached.etag, lock)
        logger.info("Lock file %s not modified (etag %s)", url, cached.etag)
        return lock

    try:
        text = resp.content.decode("utf-8")
    except UnicodeDecodeError as e:
        raise FetchError(FetchKind.NETWORK, f"{url}: lock file is not valid UTF-8") from e
    lock = parse_lock(text)
    cache.put_lock(url, etag=resp.etag, version=lock.version or None, content=text)
    cache.remember_parsed_lock(url, resp.etag, lock)
    return lock
