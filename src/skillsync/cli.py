from __future__ import annotations

import argparse
import json
import logging
import os
import signal
import sys
import textwrap
import threading
from contextlib import contextmanager
from dataclasses import replace
from pathlib import Path
from typing import Any, Iterator

from ._version import __version__
from .cache import SECTIONS, CacheManager
from .client import HttpClient
from .config import Config, config_from_env, config_path, load_config, redact_token, save_config
from .errors import SkillsyncError
from .fetch import Fetcher, fetch_lock_file
from .git import SubprocessGit
from .installer import Installer, InstallResult
from .lockfile import LOCK_FILENAME, GitSource, HttpSource, LockFile, PathSource, load_lock
from .package import PackageError
from .requirements import GitRequirement, HttpRequirement, PathRequirement, RegistryRequirement, load_requirements
from .scope import ScopeContext, detect_context

logger = logging.getLogger(__name__)


def _configure_logging(verbosity: int, silent: bool) -> None:
    if silent:
        level = logging.ERROR
    elif verbosity >= 2:
        level = logging.DEBUG
    elif verbosity == 1:
        level = logging.INFO
    else:
        level = logging.WARNING
    logging.basicConfig(level=level, format="%(levelname)s %(name)s: %(message)s", stream=sys.stderr)


def _print_table(rows: list[list[str]]) -> None:
    if not rows:
        return
    widths = [0] * len(rows[0])
    for r in rows:
        for i, c in enumerate(r):
            widths[i] = max(widths[i], len(c))
    for r in rows:
        line = "  ".join(c.ljust(widths[i]) for i, c in enumerate(r))
        print(line.rstrip())


def _runtime_config(args: argparse.Namespace) -> Config:
    # Env overrides config; CLI overrides both.
    cfg = config_from_env(load_config(), os.environ)
    changes: dict[str, Any] = {}
    if getattr(args, "server_url", None):
        changes["server_url"] = args.server_url
    if getattr(args, "token", None):
        changes["token"] = args.token
    if getattr(args, "timeout_s", None) is not None:
        changes["timeout_s"] = args.timeout_s
    if getattr(args, "target", None):
        changes["global_target"] = args.target
    if getattr(args, "silent", False):
        changes["silent"] = True
    return replace(cfg, **changes) if changes else cfg


def _is_url(value: str) -> bool:
    return value.startswith("http://") or value.startswith("https://")


def _default_lock_path(context: ScopeContext, cwd: Path) -> Path:
    if context.repo_root is not None:
        candidate = context.repo_root / LOCK_FILENAME
        if candidate.exists():
            return candidate
    return cwd / LOCK_FILENAME


def _load_lock(location: str, *, http: HttpClient, cache: CacheManager) -> tuple[LockFile, Path]:
    """Load a lock file from a path or URL; returns it with the directory path sources are relative to."""
    if _is_url(location):
        return fetch_lock_file(location, http=http, cache=cache), Path.cwd()
    path = Path(location).expanduser().resolve()
    return load_lock(path), path.parent


def _source_summary(source: HttpSource | GitSource | PathSource) -> str:
    if isinstance(source, HttpSource):
        return source.url
    if isinstance(source, GitSource):
        where = f"#{source.subdirectory}" if source.subdirectory else ""
        return f"{source.url}@{source.ref[:12]}{where}"
    return source.path


@contextmanager
def _cancel_on_interrupt() -> Iterator[threading.Event]:
    """Turn Ctrl-C into a cancellation request so the run can stop cleanly."""
    cancel = threading.Event()
    if threading.current_thread() is not threading.main_thread():
        yield cancel
        return

    def _handler(signum: int, frame: Any) -> None:
        if cancel.is_set():
            raise KeyboardInterrupt
        print("Cancelling; press Ctrl-C again to abort immediately.", file=sys.stderr)
        cancel.set()

    previous = signal.signal(signal.SIGINT, _handler)
    try:
        yield cancel
    finally:
        signal.signal(signal.SIGINT, previous)


def _result_payload(result: InstallResult) -> dict[str, Any]:
    return {
        "installed": list(result.installed),
        "unchanged": list(result.unchanged),
        "removed": list(result.removed),
        "failed": [{"artifact": f.label, "phase": f.phase, "error": str(f.error)} for f in result.failed],
        "skipped": [{"artifact": label, "reason": reason} for label, reason in result.skipped],
        "cancelled": result.cancelled,
    }


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="skillsync",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        description="Install AI agent skills, agents, commands, hooks and MCP servers from a lock file.",
        epilog=textwrap.dedent(
            """\
            Environment variables:
              SKILLSYNC_SERVER_URL, SKILLSYNC_TOKEN, SKILLSYNC_TIMEOUT_S, SKILLSYNC_CACHE_DIR,
              SKILLSYNC_SILENT, SKILLSYNC_CONFIG_PATH
            """
        ),
    )
    p.add_argument("--version", action="version", version=f"skillsync {__version__}")
    p.add_argument("-v", "--verbose", action="count", default=0, help="More logging (-vv for debug)")
    p.add_argument("-q", "--silent", action="store_true", help="Only log errors")

    sub = p.add_subparsers(dest="cmd", required=True)

    # install
    inst = sub.add_parser("install", help="Install everything the lock file declares for this location")
    inst.add_argument("--lock", help=f"Lock file path or URL (default: {LOCK_FILENAME} in the repo root or cwd)")
    inst.add_argument("--target", help="Global install directory (default: ~/.claude)")
    inst.add_argument("--server-url", help="Artifact server URL (overrides config/env)")
    inst.add_argument("--token", help="Server token (overrides config/env)")
    inst.add_argument("--timeout-s", type=float, help="HTTP timeout in seconds")
    inst.add_argument("--force", action="store_true", help="Reinstall artifacts that are already installed")
    inst.add_argument("--json", action="store_true", help="Output JSON")

    # lock
    lock = sub.add_parser("lock", help="Inspect lock files")
    lock_sub = lock.add_subparsers(dest="subcmd", required=True)
    lock_show = lock_sub.add_parser("show", help="List the artifacts of a lock file")
    lock_show.add_argument("--lock", help="Lock file path or URL")
    lock_show.add_argument("--json", action="store_true", help="Output JSON")

    # requirements
    req = sub.add_parser("requirements", help="Work with requirements files")
    req_sub = req.add_subparsers(dest="subcmd", required=True)
    req_check = req_sub.add_parser("check", help="Parse a requirements file and list its entries")
    req_check.add_argument("file")
    req_check.add_argument("--json", action="store_true", help="Output JSON")

    # cache
    cache = sub.add_parser("cache", help="Manage the local cache")
    cache_sub = cache.add_subparsers(dest="subcmd", required=True)
    cache_sub.add_parser("path", help="Print cache directory")
    cache_clear = cache_sub.add_parser("clear", help="Delete cached data")
    cache_clear.add_argument("--section", choices=SECTIONS, help="Only clear one section")

    # config
    cfg = sub.add_parser("config", help="Manage local config")
    cfg_sub = cfg.add_subparsers(dest="subcmd", required=True)
    cfg_sub.add_parser("path", help="Print config path")
    cfg_sub.add_parser("show", help="Show config (token redacted)")

    cfg_set = cfg_sub.add_parser("set", help="Set config fields")
    cfg_set.add_argument("--server-url")
    cfg_set.add_argument("--token")
    cfg_set.add_argument("--cache-dir")
    cfg_set.add_argument("--global-target")
    cfg_set.add_argument("--timeout-s", type=float)
    cfg_set.add_argument("--max-workers", type=int)
    cfg_set.add_argument("--client", help='Client the artifacts are installed for, e.g. "claude-code"')

    return p


def cmd_install(args: argparse.Namespace) -> int:
    cfg = _runtime_config(args)
    cwd = Path.cwd()
    git = SubprocessGit()
    context = detect_context(cwd, git)
    cache = CacheManager(cfg.cache_path)

    with HttpClient(server_url=cfg.server_url, token=cfg.token, timeout_s=cfg.timeout_s) as http, _cancel_on_interrupt() as cancel:
        lock, base_dir = _load_lock(args.lock or str(_default_lock_path(context, cwd)), http=http, cache=cache)
        fetcher = Fetcher(cache=cache, http=http, git=git, base_dir=base_dir, cancel=cancel)
        installer = Installer(config=cfg, cache=cache, fetcher=fetcher)
        result = installer.install(lock, context, cancel=cancel, force=args.force)

    exit_code = 0 if result.ok else (130 if result.cancelled else 1)
    if args.json:
        print(json.dumps(_result_payload(result), indent=2, sort_keys=True))
        return exit_code

    if context.in_repo:
        where = context.relative_path or "."
        print(f"repo: {context.repo_url} ({where})")
    else:
        print("repo: none (global artifacts only)")
    _print_table(
        [
            ["ACTION", "COUNT"],
            ["installed", str(len(result.installed))],
            ["unchanged", str(len(result.unchanged))],
            ["removed", str(len(result.removed))],
            ["failed", str(len(result.failed))],
            ["skipped", str(len(result.skipped))],
        ]
    )
    for label in result.installed:
        print(f"installed: {label}")
    for label in result.removed:
        print(f"removed: {label}")
    for failure in result.failed:
        print(f"failed: {failure}", file=sys.stderr)
    for label, reason in result.skipped:
        print(f"skipped: {label}: {reason}", file=sys.stderr)
    if result.cancelled:
        print("cancelled", file=sys.stderr)
    return exit_code


def cmd_lock(args: argparse.Namespace) -> int:
    if args.subcmd == "show":
        cfg = _runtime_config(args)
        cwd = Path.cwd()
        cache = CacheManager(cfg.cache_path)
        location = args.lock
        if location is None:
            location = str(_default_lock_path(detect_context(cwd, SubprocessGit()), cwd))
        with HttpClient(server_url=cfg.server_url, token=cfg.token, timeout_s=cfg.timeout_s) as http:
            lock, _ = _load_lock(location, http=http, cache=cache)

        if args.json:
            payload = {
                "lock_version": lock.lock_version,
                "version": lock.version,
                "created_by": lock.created_by,
                "artifacts": [
                    {
                        "name": a.name,
                        "version": a.version,
                        "type": a.type.value,
                        "scope": str(a.scope),
                        "source": _source_summary(a.source),
                        "dependencies": [str(d) for d in a.dependencies],
                    }
                    for a in lock.artifacts
                ],
            }
            print(json.dumps(payload, indent=2, sort_keys=True))
            return 0

        print(f"lock-version: {lock.lock_version}")
        if lock.version:
            print(f"version: {lock.version}")
        rows = [["NAME", "VERSION", "TYPE", "SCOPE", "SOURCE"]]
        for a in lock.artifacts:
            rows.append([a.name, a.version, a.type.value, str(a.scope), _source_summary(a.source)])
        _print_table(rows)
        return 0

    raise AssertionError("unreachable")


def cmd_requirements(args: argparse.Namespace) -> int:
    if args.subcmd == "check":
        reqs = load_requirements(args.file)
        rows = [["KIND", "SOURCE", "DETAIL"]]
        items: list[dict[str, Any]] = []
        for r in reqs:
            if isinstance(r, RegistryRequirement):
                row = ["registry", r.name, r.specifier or "*"]
            elif isinstance(r, GitRequirement):
                detail = ", ".join(f"{k}={v}" for k, v in (("ref", r.ref), ("name", r.name), ("path", r.path)) if v)
                row = ["git", r.url, detail]
            elif isinstance(r, PathRequirement):
                row = ["path", r.path, ""]
            elif isinstance(r, HttpRequirement):
                row = ["http", r.url, ""]
            else:
                raise AssertionError("unreachable")
            rows.append(row)
            items.append({"kind": row[0], "source": row[1], "detail": row[2]})

        if args.json:
            print(json.dumps(items, indent=2, sort_keys=True))
            return 0
        _print_table(rows)
        return 0

    raise AssertionError("unreachable")


def cmd_cache(args: argparse.Namespace) -> int:
    cfg = _runtime_config(args)
    cache = CacheManager(cfg.cache_path)
    if args.subcmd == "path":
        print(str(cache.root))
        return 0

    if args.subcmd == "clear":
        cache.clear(args.section)
        print(f"Cleared: {cache.root / args.section if args.section else cache.root}")
        return 0

    raise AssertionError("unreachable")


def cmd_config(args: argparse.Namespace) -> int:
    if args.subcmd == "path":
        print(str(config_path()))
        return 0

    if args.subcmd == "show":
        cfg = load_config()
        d = cfg.__dict__.copy()
        d["token"] = redact_token(cfg.token)
        d["cache_path"] = str(cfg.cache_path)
        d["global_target_path"] = str(cfg.global_target_path)
        print(json.dumps(d, indent=2, sort_keys=True))
        return 0

    if args.subcmd == "set":
        cfg = load_config()
        changes: dict[str, Any] = {}
        for field_name in ("server_url", "token", "cache_dir", "global_target", "timeout_s", "max_workers", "client"):
            value = getattr(args, field_name)
            if value is not None:
                changes[field_name] = value
        if "max_workers" in changes and changes["max_workers"] < 1:
            raise SkillsyncError("--max-workers must be at least 1.")
        path = save_config(replace(cfg, **changes))
        print(f"Saved: {path}")
        return 0

    raise AssertionError("unreachable")


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    silent = args.silent or config_from_env(Config(), os.environ).silent
    _configure_logging(args.verbose, silent)
    try:
        if args.cmd == "install":
            return cmd_install(args)
        if args.cmd == "lock":
            return cmd_lock(args)
        if args.cmd == "requirements":
            return cmd_requirements(args)
        if args.cmd == "cache":
            return cmd_cache(args)
        if args.cmd == "config":
            return cmd_config(args)
        raise AssertionError("unreachable")
    except (SkillsyncError, PackageError) as e:
        print(f"error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
