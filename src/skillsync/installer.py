"""
Install orchestration: resolve, fetch, install, reconcile.

- Resolve runs scope filtering and dependency resolution. Any failure here
  aborts the run before a single byte is fetched.
- Fetch downloads every artifact that is not already installed, in a
  bounded thread pool. Failures are collected per artifact.
- Install walks the dependency order. An artifact whose fetch, validation
  or install failed takes all of its (transitive) dependents with it;
  unrelated branches still install.
- Reconcile compares the new install set with the previous install record,
  removes what disappeared from the lock and atomically rewrites the record.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Protocol

from .cache import CacheManager
from .config import Config
from .errors import CancelledError, FetchError, FetchKind, InstallError, SkillsyncError
from .handlers import ArtifactHandler, handler_for
from .lockfile import Artifact, ArtifactType, LockFile, Scope
from .package import PackageError
from .resolver import Resolution, resolve_install_order
from .scope import ScopeContext, filter_artifacts, scope_applies, target_base
from .state import GLOBAL_KEY, InstalledEntry, InstallRecord, load_record, record_key, save_record

logger = logging.getLogger(__name__)

HandlerFactory = Callable[[ArtifactType, str], ArtifactHandler]

# Errors that stay local to one artifact instead of aborting the run.
_ARTIFACT_ERRORS = (SkillsyncError, PackageError, OSError)


class ArtifactFetcher(Protocol):
    def fetch(self, artifact: Artifact) -> bytes:
        ...


@dataclass(frozen=True)
class ArtifactFailure:
    label: str
    phase: str  # "fetch", "install" or "remove"
    error: BaseException

    def __str__(self) -> str:
        return f"{self.label} ({self.phase}): {self.error}"


@dataclass(frozen=True)
class InstallResult:
    installed: tuple[str, ...] = ()
    unchanged: tuple[str, ...] = ()
    removed: tuple[str, ...] = ()
    failed: tuple[ArtifactFailure, ...] = ()
    skipped: tuple[tuple[str, str], ...] = ()  # (label, reason)
    cancelled: bool = False

    @property
    def ok(self) -> bool:
        return not self.failed and not self.skipped and not self.cancelled


@dataclass
class _Plan:
    artifact: Artifact
    base: Path
    key: str
    handler: ArtifactHandler | None = None
    entry: InstalledEntry | None = None


@dataclass
class _RunState:
    installed: list[InstalledEntry] = field(default_factory=list)
    unchanged: list[InstalledEntry] = field(default_factory=list)
    failed: list[ArtifactFailure] = field(default_factory=list)
    skipped: list[tuple[str, str]] = field(default_factory=list)
    blocked: set[Artifact] = field(default_factory=set)
    cancelled: bool = False

    def fail(self, artifact: Artifact, phase: str, error: BaseException) -> None:
        logger.warning("%s failed during %s: %s", artifact.label, phase, error)
        self.failed.append(ArtifactFailure(label=artifact.label, phase=phase, error=error))
        self.blocked.add(artifact)

    def skip(self, artifact: Artifact, reason: str) -> None:
        logger.info("Skipping %s: %s", artifact.label, reason)
        self.skipped.append((artifact.label, reason))
        self.blocked.add(artifact)


class Installer:
    def __init__(
        self,
        *,
        config: Config,
        cache: CacheManager,
        fetcher: ArtifactFetcher,
        handler_factory: HandlerFactory = handler_for,
    ) -> None:
        self.config = config
        self.cache = cache
        self.fetcher = fetcher
        self.handler_factory = handler_factory

    def resolve(self, lock: LockFile, context: ScopeContext) -> Resolution:
        applicable = filter_artifacts(lock.artifacts, context, client=self.config.client)
        resolution = resolve_install_order(applicable)
        logger.info("Resolved %d of %d artifacts for this context", len(resolution.order), len(lock.artifacts))
        return resolution

    def install(
        self,
        lock: LockFile,
        context: ScopeContext,
        *,
        cancel: threading.Event | None = None,
        force: bool = False,
    ) -> InstallResult:
        resolution = self.resolve(lock, context)

        self.cache.ensure_dirs()
        run = _RunState()
        plans = [self._plan(artifact, context, run) for artifact in resolution.order]

        keys = {GLOBAL_KEY} | {p.key for p in plans}
        if context.in_repo:
            keys.add(record_key(Scope.for_repo(context.repo_url or ""), context))
        previous = {key: load_record(self.cache, key) for key in sorted(keys)}

        pending: list[_Plan] = []
        for plan in plans:
            if plan.handler is None:
                continue
            prev = previous[plan.key].find(plan.artifact)
            if (
                not force
                and prev is not None
                and prev.location == plan.base / plan.handler.install_path
                and prev.location.exists()
            ):
                logger.debug("%s is already installed at %s", prev.label, prev.location)
                run.unchanged.append(prev)
                continue
            pending.append(plan)

        fetched, fetch_errors = self._fetch_all(pending, cancel)
        self._install_all(plans, resolution, fetched, fetch_errors, run, cancel)

        removed = self._reconcile(lock, context, resolution, previous, run)

        return InstallResult(
            installed=tuple(e.label for e in run.installed),
            unchanged=tuple(e.label for e in run.unchanged),
            removed=tuple(removed),
            failed=tuple(run.failed),
            skipped=tuple(run.skipped),
            cancelled=run.cancelled,
        )

    def _plan(self, artifact: Artifact, context: ScopeContext, run: _RunState) -> _Plan:
        base = target_base(artifact.scope, context, self.config.global_target_path)
        plan = _Plan(artifact=artifact, base=base, key=record_key(artifact.scope, context))
        try:
            plan.handler = self.handler_factory(artifact.type, artifact.name)
        except _ARTIFACT_ERRORS as e:
            run.fail(artifact, "install", e)
        return plan

    # Fetch

    def _fetch_one(self, artifact: Artifact, cancel: threading.Event | None) -> bytes | BaseException:
        if cancel is not None and cancel.is_set():
            return CancelledError(f"{artifact.label}: cancelled before fetch")
        try:
            return self.fetcher.fetch(artifact)
        except _ARTIFACT_ERRORS as e:
            return e

    def _fetch_all(
        self,
        pending: list[_Plan],
        cancel: threading.Event | None,
    ) -> tuple[dict[tuple[str, str], bytes], dict[tuple[str, str], BaseException]]:
        # One fetch per (name, version), whatever number of scopes refer to it.
        unique: dict[tuple[str, str], Artifact] = {}
        for plan in pending:
            unique.setdefault(plan.artifact.key, plan.artifact)

        fetched: dict[tuple[str, str], bytes] = {}
        errors: dict[tuple[str, str], BaseException] = {}
        if not unique:
            return fetched, errors

        workers = max(1, min(self.config.max_workers, len(unique)))
        logger.info("Fetching %d artifacts with %d workers", len(unique), workers)
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="skillsync-fetch") as executor:
            futures = {key: executor.submit(self._fetch_one, artifact, cancel) for key, artifact in unique.items()}
            for key, future in futures.items():
                outcome = future.result()
                if isinstance(outcome, BaseException):
                    errors[key] = outcome
                else:
                    fetched[key] = outcome
        return fetched, errors

    # Install

    def _install_all(
        self,
        plans: list[_Plan],
        resolution: Resolution,
        fetched: dict[tuple[str, str], bytes],
        fetch_errors: dict[tuple[str, str], BaseException],
        run: _RunState,
        cancel: threading.Event | None,
    ) -> None:
        unchanged = {(e.name, e.version, e.scope) for e in run.unchanged}
        for plan in plans:
            artifact = plan.artifact
            if artifact in run.blocked:
                continue
            if (artifact.name, artifact.version, artifact.scope) in unchanged:
                continue
            if run.cancelled or (cancel is not None and cancel.is_set()):
                run.cancelled = True
                run.skip(artifact, "cancelled")
                continue

            failed_dep = next((d for d in resolution.dependencies.get(artifact, ()) if d in run.blocked), None)
            if failed_dep is not None:
                run.skip(artifact, f"dependency {failed_dep.label} was not installed")
                continue

            error = fetch_errors.get(artifact.key)
            if isinstance(error, CancelledError):
                run.cancelled = True
                run.skip(artifact, "cancelled")
                continue
            if error is not None:
                run.fail(artifact, "fetch", error)
                continue

            data = fetched.get(artifact.key)
            if data is None:
                run.fail(artifact, "fetch", FetchError(FetchKind.NOT_FOUND, f"{artifact.label}: nothing was fetched"))
                continue

            if plan.handler is None:
                continue
            try:
                plan.handler.validate(data)
                plan.handler.install(data, plan.base, cancel=cancel)
            except CancelledError:
                run.cancelled = True
                run.skip(artifact, "cancelled")
                continue
            except _ARTIFACT_ERRORS as e:
                err = e if isinstance(e, InstallError) else InstallError(f"{artifact.label}: {e}")
                run.fail(artifact, "install", err)
                continue

            logger.info("Installed %s into %s", artifact.label, plan.base / plan.handler.install_path)
            plan.entry = InstalledEntry.for_artifact(artifact, plan.base, plan.handler.install_path)
            run.installed.append(plan.entry)

    # Reconcile

    def _reconcile(
        self,
        lock: LockFile,
        context: ScopeContext,
        resolution: Resolution,
        previous: dict[str, InstallRecord],
        run: _RunState,
    ) -> list[str]:
        current = run.installed + run.unchanged
        current_ids = {e.identity for e in current}
        occupied = {e.location for e in current}
        not_done = {(a.name, a.scope) for a in run.blocked}
        in_lock = {(a.name, a.version, a.scope) for a in lock.artifacts}
        winners = {a.name: a for a in resolution.order}

        removed: list[str] = []
        for key, record in previous.items():
            keep: list[InstalledEntry] = [e for e in current if record_key(e.scope, context) == key]
            for entry in record.entries:
                if entry.identity in current_ids:
                    continue
                if entry.location in occupied:
                    # Replaced in place by a different version.
                    continue
                if run.cancelled or (entry.name, entry.scope) in not_done:
                    # The new version did not make it; leave the old one alone.
                    keep.append(entry)
                    continue
                winner = winners.get(entry.name)
                overridden = winner is not None and winner.scope != entry.scope
                if entry.identity in in_lock and (overridden or not scope_applies(entry.scope, context)):
                    # Still wanted, just not visible from here.
                    keep.append(entry)
                    continue
                try:
                    self.handler_factory(entry.type, entry.name).remove(Path(entry.target_base))
                except _ARTIFACT_ERRORS as e:
                    logger.warning("Could not remove %s: %s", entry.label, e)
                    run.failed.append(ArtifactFailure(label=entry.label, phase="remove", error=e))
                    keep.append(entry)
                    continue
                logger.info("Removed %s from %s", entry.label, entry.location)
                removed.append(entry.label)

            if keep or record.entries:
                save_record(self.cache, key, InstallRecord(entries=tuple(keep)))
        return removed
