import hashlib
import shutil
import tempfile
import threading
import unittest
from pathlib import Path

import httpx

from skillsync.cache import CacheManager
from skillsync.client import HttpClient
from skillsync.config import Config
from skillsync.errors import FetchError, FetchKind, InstallError, IntegrityError, ResolutionError
from skillsync.fetch import Fetcher
from skillsync.installer import Installer
from skillsync.lockfile import Artifact, ArtifactType, DependencyRef, HttpSource, LockFile, PathSource, Scope
from skillsync.scope import ScopeContext
from skillsync.state import GLOBAL_KEY, load_record, record_key

REPO = "https://github.com/acme/app"


def _a(
    name: str,
    version: str = "1.0.0",
    *deps: str,
    scope: Scope | None = None,
    source=None,
    artifact_type: ArtifactType = ArtifactType.SKILL,
) -> Artifact:
    return Artifact(
        name=name,
        version=version,
        type=artifact_type,
        source=source or PathSource(path=f"./{name}"),
        scope=scope or Scope.global_(),
        dependencies=tuple(DependencyRef(name=d) for d in deps),
    )


def _lock(*artifacts: Artifact) -> LockFile:
    return LockFile(version="test", artifacts=artifacts)


class FakeFetcher:
    def __init__(self, errors: dict[str, Exception] | None = None) -> None:
        self.errors = errors or {}
        self.calls: list[str] = []
        self._guard = threading.Lock()

    def fetch(self, artifact: Artifact) -> bytes:
        with self._guard:
            self.calls.append(artifact.label)
        if artifact.name in self.errors:
            raise self.errors[artifact.name]
        return f"zip:{artifact.label}".encode("utf-8")


class FakeHandlers:
    """Handler factory that records calls and creates marker directories."""

    def __init__(self) -> None:
        self.installed: list[str] = []
        self.removed: list[str] = []
        self.failing: set[str] = set()

    def __call__(self, artifact_type: ArtifactType, name: str) -> "_FakeHandler":
        return _FakeHandler(self, artifact_type, name)


class _FakeHandler:
    def __init__(self, owner: FakeHandlers, artifact_type: ArtifactType, name: str) -> None:
        self.owner = owner
        self.artifact_type = artifact_type
        self.name = name

    @property
    def install_path(self) -> str:
        return f"{self.artifact_type.value}s/{self.name}"

    def validate(self, data: bytes) -> None:
        if not data.startswith(b"zip:"):
            raise InstallError(f"{self.name}: not an archive")

    def install(self, data: bytes, target_base: Path, *, cancel: threading.Event | None = None) -> Path:
        if self.name in self.owner.failing:
            raise InstallError(f"{self.name}: disk full")
        dest = target_base / self.install_path
        dest.mkdir(parents=True, exist_ok=True)
        (dest / "payload").write_bytes(data)
        self.owner.installed.append(self.name)
        return dest

    def remove(self, target_base: Path) -> None:
        self.owner.removed.append(self.name)
        shutil.rmtree(target_base / self.install_path, ignore_errors=True)


class InstallerTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self._td = tempfile.TemporaryDirectory()
        self.addCleanup(self._td.cleanup)
        self.root = Path(self._td.name)
        self.config = Config(
            cache_dir=str(self.root / "cache"),
            global_target=str(self.root / "home" / ".claude"),
            max_workers=4,
        )
        self.cache = CacheManager(self.config.cache_path)
        self.handlers = FakeHandlers()
        self.fetcher = FakeFetcher()

    def installer(self) -> Installer:
        return Installer(config=self.config, cache=self.cache, fetcher=self.fetcher, handler_factory=self.handlers)


class TestInstallOrder(InstallerTestCase):
    def test_installs_dependencies_first(self) -> None:
        lock = _lock(_a("app", "1.0.0", "lib"), _a("lib", "1.0.0", "util"), _a("util"))

        result = self.installer().install(lock, ScopeContext.outside_repo())

        self.assertTrue(result.ok)
        self.assertEqual(self.handlers.installed, ["util", "lib", "app"])
        self.assertEqual(result.installed, ("util@1.0.0", "lib@1.0.0", "app@1.0.0"))
        self.assertEqual(sorted(self.fetcher.calls), ["app@1.0.0", "lib@1.0.0", "util@1.0.0"])

    def test_resolution_errors_abort_before_fetching(self) -> None:
        lock = _lock(_a("a", "1.0.0", "b"), _a("b", "1.0.0", "a"))

        with self.assertRaises(ResolutionError):
            self.installer().install(lock, ScopeContext.outside_repo())

        self.assertEqual(self.fetcher.calls, [])
        self.assertEqual(self.handlers.installed, [])


class TestFailures(InstallerTestCase):
    def test_integrity_failure_excludes_artifact_and_dependents(self) -> None:
        self.fetcher.errors["base"] = IntegrityError("base@1.0.0: sha256 mismatch")
        lock = _lock(_a("base"), _a("top", "1.0.0", "mid"), _a("mid", "1.0.0", "base"), _a("other"))

        result = self.installer().install(lock, ScopeContext.outside_repo())

        self.assertFalse(result.ok)
        self.assertEqual([(f.label, f.phase) for f in result.failed], [("base@1.0.0", "fetch")])
        self.assertIsInstance(result.failed[0].error, IntegrityError)
        self.assertEqual(sorted(label for label, _ in result.skipped), ["mid@1.0.0", "top@1.0.0"])
        self.assertEqual(self.handlers.installed, ["other"])

        entries = load_record(self.cache, GLOBAL_KEY).entries
        self.assertEqual([e.name for e in entries], ["other"])

    def test_failed_upgrade_keeps_previous_install(self) -> None:
        context = ScopeContext.outside_repo()
        self.installer().install(_lock(_a("x", "1.0.0")), context)

        self.handlers.failing.add("x")
        result = self.installer().install(_lock(_a("x", "2.0.0")), context)

        self.assertEqual([f.label for f in result.failed], ["x@2.0.0"])
        self.assertEqual(self.handlers.removed, [])
        self.assertEqual(
            [e.label for e in load_record(self.cache, GLOBAL_KEY).entries],
            ["x@1.0.0"],
        )

    def test_validation_failure_is_reported_as_install_error(self) -> None:
        class BadBytes(FakeFetcher):
            def fetch(self, artifact: Artifact) -> bytes:
                return b"garbage"

        self.fetcher = BadBytes()
        result = self.installer().install(_lock(_a("x")), ScopeContext.outside_repo())

        self.assertEqual(result.failed[0].phase, "install")
        self.assertIsInstance(result.failed[0].error, InstallError)

    def test_unsupported_handler_fails_only_that_artifact(self) -> None:
        handlers = self.handlers

        def factory(artifact_type: ArtifactType, name: str) -> _FakeHandler:
            if name == "odd":
                raise InstallError(f"{name}: no handler for {artifact_type.value}")
            return handlers(artifact_type, name)

        installer = Installer(config=self.config, cache=self.cache, fetcher=self.fetcher, handler_factory=factory)
        result = installer.install(_lock(_a("odd"), _a("after", "1.0.0", "odd"), _a("fine")), ScopeContext.outside_repo())

        self.assertEqual([(f.label, f.phase) for f in result.failed], [("odd@1.0.0", "install")])
        self.assertEqual([label for label, _ in result.skipped], ["after@1.0.0"])
        self.assertEqual(result.installed, ("fine@1.0.0",))
        self.assertNotIn("odd@1.0.0", self.fetcher.calls)

    def test_cancelled_run_installs_nothing_and_removes_nothing(self) -> None:
        context = ScopeContext.outside_repo()
        self.installer().install(_lock(_a("keep")), context)

        cancel = threading.Event()
        cancel.set()
        result = self.installer().install(_lock(_a("new")), context, cancel=cancel)

        self.assertTrue(result.cancelled)
        self.assertFalse(result.ok)
        self.assertEqual(self.handlers.installed, ["keep"])
        self.assertEqual(self.handlers.removed, [])
        self.assertEqual([e.name for e in load_record(self.cache, GLOBAL_KEY).entries], ["keep"])


class TestReconcile(InstallerTestCase):
    def test_cleanup_removes_dropped_artifact_exactly_once(self) -> None:
        context = ScopeContext.outside_repo()
        self.installer().install(_lock(_a("a"), _a("b")), context)

        second = self.installer().install(_lock(_a("a")), context)
        third = self.installer().install(_lock(_a("a")), context)

        self.assertEqual(self.handlers.removed, ["b"])
        self.assertEqual(second.removed, ("b@1.0.0",))
        self.assertEqual(second.unchanged, ("a@1.0.0",))
        self.assertEqual(third.removed, ())
        self.assertEqual(self.handlers.installed, ["a", "b"])

    def test_version_change_replaces_in_place(self) -> None:
        context = ScopeContext.outside_repo()
        self.installer().install(_lock(_a("x", "1.0.0")), context)
        result = self.installer().install(_lock(_a("x", "2.0.0")), context)

        self.assertEqual(result.installed, ("x@2.0.0",))
        self.assertEqual(self.handlers.removed, [])
        self.assertEqual([e.label for e in load_record(self.cache, GLOBAL_KEY).entries], ["x@2.0.0"])

    def test_force_reinstalls_unchanged_artifacts(self) -> None:
        context = ScopeContext.outside_repo()
        self.installer().install(_lock(_a("x")), context)
        result = self.installer().install(_lock(_a("x")), context, force=True)

        self.assertEqual(result.installed, ("x@1.0.0",))
        self.assertEqual(self.fetcher.calls, ["x@1.0.0", "x@1.0.0"])

    def test_out_of_view_path_artifacts_are_kept(self) -> None:
        repo_root = self.root / "repo"
        lock = _lock(
            _a("api-helper", scope=Scope.for_path(REPO, "services/api")),
            _a("shared", scope=Scope.for_repo(REPO)),
        )
        in_api = ScopeContext(repo_url=REPO, repo_root=repo_root, relative_path="services/api")
        in_web = ScopeContext(repo_url=REPO, repo_root=repo_root, relative_path="web")

        first = self.installer().install(lock, in_api)
        second = self.installer().install(lock, in_web)

        self.assertEqual(sorted(first.installed), ["api-helper@1.0.0", "shared@1.0.0"])
        self.assertEqual(second.removed, ())
        self.assertEqual(self.handlers.removed, [])
        self.assertTrue((repo_root / "services" / "api" / ".claude" / "skills" / "api-helper").is_dir())

        key = record_key(Scope.for_repo(REPO), in_web)
        self.assertEqual(sorted(e.name for e in load_record(self.cache, key).entries), ["api-helper", "shared"])

    def test_scope_override_installs_path_version(self) -> None:
        repo_root = self.root / "repo"
        lock = _lock(_a("x", "1.0.0"), _a("x", "2.0.0", scope=Scope.for_path(REPO, "services/api")))
        context = ScopeContext(repo_url=REPO, repo_root=repo_root, relative_path="services/api")

        result = self.installer().install(lock, context)

        self.assertEqual(result.installed, ("x@2.0.0",))
        self.assertTrue((repo_root / "services" / "api" / ".claude" / "skills" / "x").is_dir())
        self.assertFalse((self.root / "home" / ".claude" / "skills" / "x").exists())

    def test_overridden_global_install_survives_a_run_inside_the_repo(self) -> None:
        repo_root = self.root / "repo"
        lock = _lock(_a("x", "1.0.0"), _a("x", "2.0.0", scope=Scope.for_path(REPO, "services/api")))
        in_api = ScopeContext(repo_url=REPO, repo_root=repo_root, relative_path="services/api")

        self.installer().install(lock, ScopeContext.outside_repo())
        result = self.installer().install(lock, in_api)

        self.assertEqual(result.installed, ("x@2.0.0",))
        self.assertEqual(result.removed, ())
        self.assertEqual(self.handlers.removed, [])
        self.assertTrue((self.root / "home" / ".claude" / "skills" / "x").is_dir())
        self.assertEqual([e.label for e in load_record(self.cache, GLOBAL_KEY).entries], ["x@1.0.0"])

        again = self.installer().install(lock, ScopeContext.outside_repo())
        self.assertEqual(again.unchanged, ("x@1.0.0",))
        self.assertEqual(again.installed, ())


class ConcurrencyTrackingFetcher(FakeFetcher):
    """Holds each fetch open briefly and records the peak number in flight."""

    def __init__(self, errors: dict[str, Exception] | None = None) -> None:
        super().__init__(errors)
        self.in_flight = 0
        self.peak = 0
        self._hold = threading.Event()

    def fetch(self, artifact: Artifact) -> bytes:
        with self._guard:
            self.in_flight += 1
            self.peak = max(self.peak, self.in_flight)
        try:
            self._hold.wait(0.05)
            return super().fetch(artifact)
        finally:
            with self._guard:
                self.in_flight -= 1


class TestFetchPool(InstallerTestCase):
    def test_fetches_never_exceed_max_workers(self) -> None:
        self.config = Config(
            cache_dir=self.config.cache_dir,
            global_target=self.config.global_target,
            max_workers=3,
        )
        self.fetcher = ConcurrencyTrackingFetcher()
        lock = _lock(*(_a(f"s{i}") for i in range(10)))

        result = self.installer().install(lock, ScopeContext.outside_repo())

        self.assertTrue(result.ok)
        self.assertEqual(len(self.fetcher.calls), 10)
        self.assertLessEqual(self.fetcher.peak, 3)

    def test_one_failed_fetch_does_not_stop_its_neighbours(self) -> None:
        self.fetcher = ConcurrencyTrackingFetcher(
            errors={"s2": FetchError(FetchKind.NETWORK, "s2@1.0.0: connection reset")}
        )
        lock = _lock(*(_a(f"s{i}") for i in range(6)))

        result = self.installer().install(lock, ScopeContext.outside_repo())

        self.assertEqual([(f.label, f.phase) for f in result.failed], [("s2@1.0.0", "fetch")])
        self.assertEqual(result.installed, ("s0@1.0.0", "s1@1.0.0", "s3@1.0.0", "s4@1.0.0", "s5@1.0.0"))
        self.assertEqual(sorted(self.fetcher.calls), [f"s{i}@1.0.0" for i in range(6)])
        self.assertLessEqual(self.fetcher.peak, self.config.max_workers)


class TestEndToEnd(unittest.TestCase):
    def test_real_fetcher_and_handlers(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            root = Path(td)
            for name in ("helper", "review"):
                d = root / "src" / name
                d.mkdir(parents=True)
                (d / "metadata.toml").write_text("[artifact]\ntype = 'skill'\n", encoding="utf-8")
                (d / "SKILL.md").write_text(f"# {name}\n", encoding="utf-8")

            good = b"not used"
            served = b"tampered"

            def handler(request: httpx.Request) -> httpx.Response:
                return httpx.Response(200, content=served)

            config = Config(cache_dir=str(root / "cache"), global_target=str(root / "home" / ".claude"))
            cache = CacheManager(config.cache_path)
            with HttpClient(transport=httpx.MockTransport(handler)) as http:
                fetcher = Fetcher(cache=cache, http=http, git=None, base_dir=root)  # type: ignore[arg-type]
                installer = Installer(config=config, cache=cache, fetcher=fetcher)

                remote = _a(
                    "remote",
                    source=HttpSource(
                        url="https://cdn.example.com/remote.zip",
                        hashes={"sha256": hashlib.sha256(good).hexdigest()},
                    ),
                )
                lock = _lock(
                    _a("helper", source=PathSource(path="src/helper")),
                    _a("review", "1.0.0", "helper", source=PathSource(path="src/review")),
                    remote,
                )
                first = installer.install(lock, ScopeContext.outside_repo())
                second = installer.install(_lock(lock.artifacts[0]), ScopeContext.outside_repo())

            skills = root / "home" / ".claude" / "skills"
            self.assertEqual(first.installed, ("helper@1.0.0", "review@1.0.0"))
            self.assertEqual([f.label for f in first.failed], ["remote@1.0.0"])
            self.assertIsInstance(first.failed[0].error, IntegrityError)
            self.assertEqual(second.removed, ("review@1.0.0",))
            self.assertEqual(second.unchanged, ("helper@1.0.0",))
            self.assertTrue((skills / "helper" / "SKILL.md").is_file())
            self.assertFalse((skills / "review").exists())
            self.assertFalse((skills / "remote").exists())


if __name__ == "__main__":
    unittest.main()
