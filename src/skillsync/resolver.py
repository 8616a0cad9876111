"""
Dependency resolution over an already scope-filtered artifact set.

Resolution is pure: it looks only at the artifacts it is given and performs
no I/O, so every resolution failure surfaces before anything is fetched.
"""

from __future__ import annotations

import heapq
import logging
from dataclasses import dataclass, field
from typing import Iterator, Sequence

from .errors import ResolutionError, ResolutionKind
from .lockfile import Artifact, DependencyRef, resolve_ref
from .versions import compare_versions, version_satisfies

logger = logging.getLogger(__name__)


@dataclass
class Resolution:
    order: tuple[Artifact, ...]
    dependencies: dict[Artifact, tuple[Artifact, ...]] = field(default_factory=dict)
    dependents: dict[Artifact, tuple[Artifact, ...]] = field(default_factory=dict)

    @property
    def fetch_keys(self) -> list[tuple[str, str]]:
        seen: dict[tuple[str, str], None] = {}
        for artifact in self.order:
            seen.setdefault(artifact.key, None)
        return list(seen)

    def transitive_dependents(self, artifact: Artifact) -> list[Artifact]:
        out: list[Artifact] = []
        seen = {artifact}
        stack = list(self.dependents.get(artifact, ()))
        while stack:
            current = stack.pop()
            if current in seen:
                continue
            seen.add(current)
            out.append(current)
            stack.extend(self.dependents.get(current, ()))
        return out


def _pick_for_all(name: str, requests: list[tuple[Artifact, DependencyRef]], pool: Sequence[Artifact]) -> Artifact:
    candidates = [
        c
        for c in pool
        if c.name == name and all(ref.version is None or version_satisfies(c.version, ref.version) for _, ref in requests)
    ]
    if not candidates:
        wanted = ", ".join(f"{ref} (from {requester.label})" for requester, ref in requests)
        raise ResolutionError(
            ResolutionKind.CONFLICT,
            f"Conflicting requirements for {name!r}: {wanted}",
        )
    best = candidates[0]
    for c in candidates[1:]:
        if compare_versions(c.version, best.version) > 0:
            best = c
    return best


def _build_edges(pool: Sequence[Artifact]) -> dict[Artifact, list[Artifact]]:
    requests: dict[str, list[tuple[Artifact, DependencyRef, Artifact]]] = {}
    for artifact in pool:
        for ref in artifact.dependencies:
            target = resolve_ref(ref, pool)
            requests.setdefault(ref.name, []).append((artifact, ref, target))

    edges: dict[Artifact, list[Artifact]] = {a: [] for a in pool}
    for name, reqs in requests.items():
        targets = {t for _, _, t in reqs}
        if len(targets) > 1:
            chosen = _pick_for_all(name, [(a, ref) for a, ref, _ in reqs], pool)
            logger.debug("Requesters of %s agree on %s", name, chosen.label)
            reqs = [(a, ref, chosen) for a, ref, _ in reqs]
        for requester, _, target in reqs:
            if target not in edges[requester]:
                edges[requester].append(target)
    return edges


def _select_versions(pool: Sequence[Artifact], edges: dict[Artifact, list[Artifact]]) -> list[Artifact]:
    """
    Keep one artifact per name. A name declared several times is settled by
    the version its dependents reference; anything else installs two
    versions into one location and is a conflict.
    """
    referenced = {dep for deps in edges.values() for dep in deps}
    by_name: dict[str, list[Artifact]] = {}
    for artifact in pool:
        by_name.setdefault(artifact.name, []).append(artifact)

    dropped: set[Artifact] = set()
    for name, entries in by_name.items():
        if len(entries) == 1:
            continue
        wanted = [a for a in entries if a in referenced]
        if len(wanted) != 1:
            versions = ", ".join(a.version for a in entries)
            raise ResolutionError(
                ResolutionKind.CONFLICT,
                f"{name!r} is declared more than once for this context ({versions}); only one can be installed.",
            )
        for artifact in entries:
            if artifact is not wanted[0]:
                logger.debug("Using %s; %s is not referenced", wanted[0].label, artifact.label)
                dropped.add(artifact)
    return [a for a in pool if a not in dropped]


def _find_cycle(pool: Sequence[Artifact], edges: dict[Artifact, list[Artifact]]) -> list[Artifact] | None:
    WHITE, GREY, BLACK = 0, 1, 2
    color = {a: WHITE for a in pool}

    for root in pool:
        if color[root] != WHITE:
            continue
        # Explicit frames keep long dependency chains off the interpreter stack.
        path: list[Artifact] = [root]
        frames: list[Iterator[Artifact]] = [iter(edges[root])]
        color[root] = GREY
        while frames:
            dep = next(frames[-1], None)
            if dep is None:
                frames.pop()
                color[path.pop()] = BLACK
                continue
            if color[dep] == GREY:
                return path[path.index(dep) :]
            if color[dep] == WHITE:
                color[dep] = GREY
                path.append(dep)
                frames.append(iter(edges[dep]))
    return None


def resolve_install_order(artifacts: Sequence[Artifact]) -> Resolution:
    """
    Order ``artifacts`` so every dependency comes before its dependents.

    Independent artifacts keep their declaration order. Raises
    ``ResolutionError`` for missing or ambiguous references, unsatisfiable
    version constraints and dependency cycles.
    """
    declared = list(artifacts)
    all_edges = _build_edges(declared)
    pool = _select_versions(declared, all_edges)
    edges = {a: all_edges[a] for a in pool}

    cycle = _find_cycle(pool, edges)
    if cycle is not None:
        names = [a.name for a in cycle]
        raise ResolutionError(
            ResolutionKind.CYCLE,
            "Dependency cycle: " + " -> ".join(names + [names[0]]),
            path=names,
        )

    index = {a: i for i, a in enumerate(pool)}
    dependents: dict[Artifact, list[Artifact]] = {a: [] for a in pool}
    remaining = {a: len(edges[a]) for a in pool}
    for artifact, deps in edges.items():
        for dep in deps:
            dependents[dep].append(artifact)

    ready = [(index[a], a.name) for a in pool if remaining[a] == 0]
    heapq.heapify(ready)
    order: list[Artifact] = []
    while ready:
        i, _ = heapq.heappop(ready)
        node = pool[i]
        order.append(node)
        for dependent in dependents[node]:
            remaining[dependent] -= 1
            if remaining[dependent] == 0:
                heapq.heappush(ready, (index[dependent], dependent.name))

    return Resolution(
        order=tuple(order),
        dependencies={a: tuple(edges[a]) for a in pool},
        dependents={a: tuple(sorted(dependents[a], key=index.__getitem__)) for a in pool},
    )
