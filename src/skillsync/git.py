from __future__ import annotations

import logging
import subprocess
from pathlib import Path
from typing import Protocol, Sequence

from .errors import FetchError, FetchKind

logger = logging.getLogger(__name__)


class GitClient(Protocol):
    def resolve_ref(self, repo_dir: Path, ref: str) -> str:
        ...

    def clone_or_fetch(self, url: str, repo_dir: Path) -> None:
        ...

    def checkout(self, repo_dir: Path, ref: str) -> None:
        ...

    def head(self, repo_dir: Path) -> str | None:
        ...

    def toplevel(self, cwd: Path) -> Path | None:
        ...

    def remote_url(self, repo_dir: Path, remote: str = "origin") -> str | None:
        ...


class SubprocessGit:
    """Runs the ``git`` binary. Network-facing failures surface as ``FetchError``."""

    def __init__(self, executable: str = "git", *, timeout_s: float | None = 300.0) -> None:
        self.executable = executable
        self.timeout_s = timeout_s

    def _run(self, args: Sequence[str], *, cwd: Path | None = None, check: bool = True) -> subprocess.CompletedProcess[str]:
        cmd = [self.executable, *args]
        logger.debug("Running %s (cwd=%s)", " ".join(cmd), cwd)
        try:
            result = subprocess.run(
                cmd,
                cwd=str(cwd) if cwd else None,
                capture_output=True,
                text=True,
                check=False,
                timeout=self.timeout_s,
            )
        except FileNotFoundError as e:
            raise FetchError(FetchKind.NETWORK, f"git executable not found: {self.executable}") from e
        except subprocess.TimeoutExpired as e:
            raise FetchError(FetchKind.NETWORK, f"git {args[0]} timed out after {self.timeout_s}s") from e
        if check and result.returncode != 0:
            stderr = result.stderr.strip()
            kind = FetchKind.AUTH if "Authentication failed" in stderr or "Permission denied" in stderr else FetchKind.NETWORK
            raise FetchError(kind, f"git {' '.join(args)} failed: {stderr or result.returncode}")
        return result

    def resolve_ref(self, repo_dir: Path, ref: str) -> str:
        result = self._run(["rev-parse", "--verify", f"{ref}^{{commit}}"], cwd=repo_dir)
        return result.stdout.strip()

    def clone_or_fetch(self, url: str, repo_dir: Path) -> None:
        if (repo_dir / ".git").exists():
            logger.info("Fetching %s", url)
            self._run(["fetch", "--quiet", "--tags", "origin"], cwd=repo_dir)
            return
        logger.info("Cloning %s -> %s", url, repo_dir)
        repo_dir.parent.mkdir(parents=True, exist_ok=True)
        self._run(["clone", "--quiet", "--no-checkout", url, str(repo_dir)])

    def checkout(self, repo_dir: Path, ref: str) -> None:
        self._run(["checkout", "--quiet", "--force", "--detach", ref], cwd=repo_dir)

    def head(self, repo_dir: Path) -> str | None:
        if not (repo_dir / ".git").exists():
            return None
        result = self._run(["rev-parse", "HEAD"], cwd=repo_dir, check=False)
        if result.returncode != 0:
            return None
        return result.stdout.strip() or None

    def toplevel(self, cwd: Path) -> Path | None:
        result = self._run(["rev-parse", "--show-toplevel"], cwd=cwd, check=False)
        if result.returncode != 0:
            return None
        out = result.stdout.strip()
        return Path(out) if out else None

    def remote_url(self, repo_dir: Path, remote: str = "origin") -> str | None:
        result = self._run(["remote", "get-url", remote], cwd=repo_dir, check=False)
        if result.returncode != 0:
            return None
        return result.stdout.strip() or None
