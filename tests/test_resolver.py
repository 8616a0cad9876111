import unittest

from skillsync.errors import ResolutionError, ResolutionKind
from skillsync.lockfile import Artifact, ArtifactType, DependencyRef, PathSource, Scope
from skillsync.resolver import resolve_install_order


def _a(name: str, version: str = "1.0.0", *deps: DependencyRef, scope: Scope | None = None) -> Artifact:
    return Artifact(
        name=name,
        version=version,
        type=ArtifactType.SKILL,
        source=PathSource(path=f"./{name}"),
        scope=scope or Scope.global_(),
        dependencies=tuple(deps),
    )


def _dep(name: str, version: str | None = None) -> DependencyRef:
    return DependencyRef(name=name, version=version)


class TestResolver(unittest.TestCase):
    def test_dependencies_come_first(self) -> None:
        app = _a("app", "1.0.0", _dep("lib"), _dep("util"))
        lib = _a("lib", "1.0.0", _dep("util"))
        util = _a("util")

        resolution = resolve_install_order([app, lib, util])

        order = [a.name for a in resolution.order]
        self.assertLess(order.index("util"), order.index("lib"))
        self.assertLess(order.index("lib"), order.index("app"))
        self.assertEqual(resolution.dependencies[app], (lib, util))
        self.assertEqual(set(resolution.transitive_dependents(util)), {lib, app})
        self.assertEqual(resolution.transitive_dependents(app), [])

    def test_independent_artifacts_keep_declaration_order(self) -> None:
        artifacts = [_a("c"), _a("a"), _a("b")]
        self.assertEqual([a.name for a in resolve_install_order(artifacts).order], ["c", "a", "b"])

    def test_cycle_names_both_members(self) -> None:
        a = _a("a", "1.0.0", _dep("b"))
        b = _a("b", "1.0.0", _dep("a"))

        with self.assertRaises(ResolutionError) as ctx:
            resolve_install_order([a, b])

        self.assertEqual(ctx.exception.kind, ResolutionKind.CYCLE)
        self.assertEqual(set(ctx.exception.path), {"a", "b"})
        self.assertIn("a", str(ctx.exception))
        self.assertIn("b", str(ctx.exception))

    def test_long_dependency_chain_orders_without_recursion_limits(self) -> None:
        count = 2000
        chain = [_a(f"a{i}", "1.0.0", _dep(f"a{i + 1}")) for i in range(count - 1)] + [_a(f"a{count - 1}")]

        resolution = resolve_install_order(chain)

        self.assertEqual([a.name for a in resolution.order], [f"a{i}" for i in reversed(range(count))])

    def test_cycle_at_the_end_of_a_chain_lists_members_in_encounter_order(self) -> None:
        start = _a("start", "1.0.0", _dep("x"))
        x = _a("x", "1.0.0", _dep("y"))
        y = _a("y", "1.0.0", _dep("z"))
        z = _a("z", "1.0.0", _dep("x"))

        with self.assertRaises(ResolutionError) as ctx:
            resolve_install_order([start, x, y, z])

        self.assertEqual(ctx.exception.path, ("x", "y", "z"))

    def test_ambiguous_unversioned_dependency(self) -> None:
        app = _a("app", "1.0.0", _dep("x"))
        x1 = _a("x", "1.0.0", scope=Scope.for_repo("https://github.com/acme/app"))
        x2 = _a("x", "2.0.0", scope=Scope.for_repo("https://github.com/acme/app"))

        with self.assertRaises(ResolutionError) as ctx:
            resolve_install_order([app, x1, x2])
        self.assertEqual(ctx.exception.kind, ResolutionKind.AMBIGUOUS_NAME)

    def test_missing_dependency(self) -> None:
        with self.assertRaises(ResolutionError) as ctx:
            resolve_install_order([_a("app", "1.0.0", _dep("ghost"))])
        self.assertEqual(ctx.exception.kind, ResolutionKind.NOT_FOUND)

    def test_requesters_agree_on_a_shared_version(self) -> None:
        a = _a("a", "1.0.0", _dep("lib", ">=1.0"))
        b = _a("b", "1.0.0", _dep("lib", "<2.0"))
        lib1 = _a("lib", "1.5.0")
        lib2 = _a("lib", "2.1.0")

        resolution = resolve_install_order([a, b, lib1, lib2])

        names = [x.label for x in resolution.order]
        self.assertIn("lib@1.5.0", names)
        self.assertNotIn("lib@2.1.0", names)
        self.assertEqual(resolution.dependencies[a], (lib1,))

    def test_incompatible_requirements_conflict(self) -> None:
        a = _a("a", "1.0.0", _dep("lib", ">=2.0"))
        b = _a("b", "1.0.0", _dep("lib", "<2.0"))
        lib1 = _a("lib", "1.5.0")
        lib2 = _a("lib", "2.1.0")

        with self.assertRaises(ResolutionError) as ctx:
            resolve_install_order([a, b, lib1, lib2])
        self.assertEqual(ctx.exception.kind, ResolutionKind.CONFLICT)

    def test_unreferenced_duplicate_names_conflict(self) -> None:
        with self.assertRaises(ResolutionError) as ctx:
            resolve_install_order([_a("x", "1.0.0"), _a("x", "2.0.0")])
        self.assertEqual(ctx.exception.kind, ResolutionKind.CONFLICT)


if __name__ == "__main__":
    unittest.main()
