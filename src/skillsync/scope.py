from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import Iterable

from .git import GitClient
from .lockfile import Artifact, Scope, ScopeKind

logger = logging.getLogger(__name__)

TARGET_DIRNAME = ".claude"

_SCP_RE = re.compile(r"^(?:[^@/]+@)?([^:/]+):(.+)$")


@dataclass(frozen=True)
class ScopeContext:
    """Where the tool is running: a repository (by remote URL) and a path inside it."""

    repo_url: str | None = None
    repo_root: Path | None = None
    relative_path: str = ""

    @classmethod
    def outside_repo(cls) -> "ScopeContext":
        return cls()

    @property
    def in_repo(self) -> bool:
        return self.repo_url is not None


def normalize_repo_url(url: str) -> str:
    """
    Reduce the common spellings of one repository to a single form so
    https, ssh and scp-style remotes compare equal:

        git@github.com:acme/app.git   -> github.com/acme/app
        https://github.com/acme/app/  -> github.com/acme/app
    """
    raw = url.strip()
    if "://" in raw:
        rest = raw.split("://", 1)[1]
        if "@" in rest.split("/", 1)[0]:
            rest = rest.split("@", 1)[1]
        host, _, path = rest.partition("/")
    else:
        m = _SCP_RE.match(raw)
        if m:
            host, path = m.group(1), m.group(2)
        else:
            host, _, path = raw.partition("/")
    host = host.lower()
    if ":" in host:
        # Drop explicit ports so ssh://host:22/x and https://host/x agree.
        host = host.split(":", 1)[0]
    path = path.strip("/")
    if path.endswith(".git"):
        path = path[: -len(".git")]
    return f"{host}/{path}" if path else host


def _path_parts(path: str | None) -> tuple[str, ...]:
    if not path:
        return ()
    return tuple(p for p in PurePosixPath(path.replace("\\", "/")).parts if p not in ("", ".", "/"))


def path_contains(scope_path: str, current: str) -> bool:
    """True when ``current`` is ``scope_path`` or lies below it (component-wise)."""
    outer = _path_parts(scope_path)
    inner = _path_parts(current)
    return inner[: len(outer)] == outer


def scope_applies(scope: Scope, context: ScopeContext) -> bool:
    if scope.kind is ScopeKind.GLOBAL:
        return True
    if context.repo_url is None or scope.repo is None:
        return False
    if normalize_repo_url(scope.repo) != normalize_repo_url(context.repo_url):
        return False
    if scope.kind is ScopeKind.REPO:
        return True
    return path_contains(scope.path or "", context.relative_path)


def _rank(scope: Scope) -> tuple[int, int]:
    # Among path scopes the deeper (more specific) one wins.
    return (scope.precedence, len(_path_parts(scope.path)))


def filter_artifacts(
    artifacts: Iterable[Artifact],
    context: ScopeContext,
    *,
    client: str | None = None,
) -> list[Artifact]:
    """
    Select the artifacts that apply to ``context``.

    When one name is declared in several applicable scopes, only the entries
    of the highest-precedence scope survive: path beats repo beats global,
    and the winning entry replaces the others entirely. Declaration order is
    preserved.
    """
    applicable: list[Artifact] = []
    for artifact in artifacts:
        if not scope_applies(artifact.scope, context):
            continue
        if client and artifact.clients and client not in artifact.clients:
            logger.debug("Skipping %s: not for client %s", artifact.label, client)
            continue
        applicable.append(artifact)

    best: dict[str, tuple[int, int]] = {}
    for artifact in applicable:
        rank = _rank(artifact.scope)
        if artifact.name not in best or rank > best[artifact.name]:
            best[artifact.name] = rank

    selected: list[Artifact] = []
    for artifact in applicable:
        if _rank(artifact.scope) == best[artifact.name]:
            selected.append(artifact)
        else:
            logger.debug("%s (%s) is overridden by a narrower scope", artifact.label, artifact.scope)
    return selected


def target_base(scope: Scope, context: ScopeContext, global_target: Path) -> Path:
    if scope.kind is ScopeKind.GLOBAL:
        return global_target
    if context.repo_root is None:
        raise ValueError(f"Scope {scope} needs a repository checkout")
    if scope.kind is ScopeKind.REPO:
        return context.repo_root / TARGET_DIRNAME
    return context.repo_root.joinpath(*_path_parts(scope.path)) / TARGET_DIRNAME


def detect_context(cwd: Path, git: GitClient) -> ScopeContext:
    cwd = cwd.resolve()
    root = git.toplevel(cwd)
    if root is None:
        return ScopeContext.outside_repo()
    remote = git.remote_url(root)
    if remote is None:
        logger.info("Repository at %s has no origin remote; only global artifacts apply", root)
        return ScopeContext.outside_repo()
    root = root.resolve()
    try:
        rel = cwd.relative_to(root).as_posix()
    except ValueError:
        rel = ""
    return ScopeContext(repo_url=remote, repo_root=root, relative_path="" if rel == "." else rel)
