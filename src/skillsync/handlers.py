from __future__ import annotations

import io
import logging
import os
import shutil
import tempfile
import threading
import zipfile
from pathlib import Path
from typing import Protocol

import tomli

from .errors import CancelledError, InstallError
from .lockfile import ArtifactType
from .package import METADATA_FILENAME

logger = logging.getLogger(__name__)

STAGING_DIRNAME = ".skillsync-staging"

INSTALL_DIRS = {
    ArtifactType.SKILL: "skills",
    ArtifactType.AGENT: "agents",
    ArtifactType.COMMAND: "commands",
    ArtifactType.HOOK: "hooks",
    ArtifactType.MCP: "mcp-servers",
    ArtifactType.MCP_REMOTE: "mcp-servers",
}

# Files a given artifact type must ship next to metadata.toml.
REQUIRED_FILES = {
    ArtifactType.SKILL: ("SKILL.md",),
}


class ArtifactHandler(Protocol):
    """Applies and reverses the filesystem effects of one artifact."""

    @property
    def install_path(self) -> str:
        ...

    def validate(self, data: bytes) -> None:
        ...

    def install(self, data: bytes, target_base: Path, *, cancel: threading.Event | None = None) -> Path:
        ...

    def remove(self, target_base: Path) -> None:
        ...


def _archive_prefix(names: list[str]) -> str:
    """Archives may wrap everything in one top-level folder; find where metadata.toml lives."""
    if METADATA_FILENAME in names:
        return ""
    tops = {n.split("/", 1)[0] for n in names if n}
    if len(tops) == 1:
        prefix = next(iter(tops)) + "/"
        if prefix + METADATA_FILENAME in names:
            return prefix
    return ""


def _safe_extract_zip(zip_bytes: bytes, dest: Path) -> None:
    dest.mkdir(parents=True, exist_ok=True)
    with zipfile.ZipFile(io.BytesIO(zip_bytes), "r") as zf:
        for info in zf.infolist():
            name = info.filename
            if not name:
                continue
            if name.startswith("/"):
                raise InstallError(f"Archive contains an absolute path entry: {name!r}")
            target = (dest / name).resolve()
            base = dest.resolve()
            if not str(target).startswith(str(base) + os.sep) and target != base:
                raise InstallError(f"Archive contains an invalid path entry: {name!r}")

            if info.is_dir():
                target.mkdir(parents=True, exist_ok=True)
                continue

            target.parent.mkdir(parents=True, exist_ok=True)
            with zf.open(info, "r") as src, target.open("wb") as out:
                shutil.copyfileobj(src, out)


class DirectoryHandler:
    """
    Installs an artifact archive as a directory ``{kind}/{name}`` below the
    target base (e.g. ``~/.claude/skills/code-review``).
    """

    def __init__(self, artifact_type: ArtifactType, name: str) -> None:
        if not name or name in (".", "..") or "/" in name or "\\" in name:
            raise InstallError(f"Invalid artifact name for installation: {name!r}")
        self.artifact_type = artifact_type
        self.name = name

    @property
    def install_path(self) -> str:
        return f"{INSTALL_DIRS[self.artifact_type]}/{self.name}"

    def validate(self, data: bytes) -> None:
        try:
            with zipfile.ZipFile(io.BytesIO(data), "r") as zf:
                names = zf.namelist()
                prefix = _archive_prefix(names)
                if prefix + METADATA_FILENAME not in names:
                    raise InstallError(f"{self.name}: {METADATA_FILENAME} not found in archive")
                raw_meta = zf.read(prefix + METADATA_FILENAME)
        except zipfile.BadZipFile as e:
            raise InstallError(f"{self.name}: not a valid zip archive") from e

        try:
            meta = tomli.loads(raw_meta.decode("utf-8"))
        except (UnicodeDecodeError, tomli.TOMLDecodeError) as e:
            raise InstallError(f"{self.name}: cannot parse {METADATA_FILENAME}: {e}") from e

        section = meta.get("artifact")
        if not isinstance(section, dict):
            raise InstallError(f"{self.name}: [artifact] section missing in {METADATA_FILENAME}")
        declared = section.get("type")
        if declared != self.artifact_type.value:
            raise InstallError(
                f"{self.name}: artifact type mismatch: expected {self.artifact_type.value}, got {declared}"
            )

        for required in REQUIRED_FILES.get(self.artifact_type, ()):
            if prefix + required not in names:
                raise InstallError(f"{self.name}: required file {required} not found in archive")

        if self.artifact_type is ArtifactType.AGENT:
            agent = meta.get("agent")
            prompt = agent.get("prompt-file") if isinstance(agent, dict) else None
            if isinstance(prompt, str) and prefix + prompt not in names:
                raise InstallError(f"{self.name}: prompt file not found in archive: {prompt}")

    def install(self, data: bytes, target_base: Path, *, cancel: threading.Event | None = None) -> Path:
        dest = target_base / self.install_path
        dest.parent.mkdir(parents=True, exist_ok=True)

        staging_root = target_base / STAGING_DIRNAME
        staging_root.mkdir(parents=True, exist_ok=True)

        with tempfile.TemporaryDirectory(prefix=f"{self.name}-", dir=staging_root) as td:
            unpack_root = Path(td) / "unpacked"
            _safe_extract_zip(data, unpack_root)

            source_root = unpack_root
            if not (source_root / METADATA_FILENAME).is_file():
                children = list(unpack_root.iterdir())
                if len(children) == 1 and children[0].is_dir() and (children[0] / METADATA_FILENAME).is_file():
                    source_root = children[0]
                else:
                    raise InstallError(f"Archive for {self.name} does not contain {METADATA_FILENAME} at root.")

            if cancel is not None and cancel.is_set():
                raise CancelledError(f"Install of {self.name} cancelled before activation")

            backup = dest.with_name(dest.name + ".skillsync-backup")
            had_existing = dest.exists()
            if backup.exists():
                shutil.rmtree(backup, ignore_errors=True)
            if had_existing:
                dest.rename(backup)

            try:
                os.replace(source_root, dest)
            except OSError as e:
                if dest.exists():
                    shutil.rmtree(dest, ignore_errors=True)
                if had_existing and backup.exists():
                    backup.rename(dest)
                raise InstallError(f"Could not move {self.name} into {dest}: {e}") from e
            finally:
                if backup.exists():
                    shutil.rmtree(backup, ignore_errors=True)

        try:
            staging_root.rmdir()
        except OSError:
            pass
        logger.debug("Installed %s into %s", self.name, dest)
        return dest

    def remove(self, target_base: Path) -> None:
        install_dir = target_base / self.install_path
        if install_dir.exists():
            shutil.rmtree(install_dir)
        kind_dir = install_dir.parent
        if kind_dir.exists() and kind_dir.is_dir():
            try:
                next(kind_dir.iterdir())
            except StopIteration:
                kind_dir.rmdir()


def handler_for(artifact_type: ArtifactType, name: str) -> ArtifactHandler:
    if artifact_type not in INSTALL_DIRS:
        raise InstallError(f"Unsupported artifact type: {artifact_type}")
    return DirectoryHandler(artifact_type, name)
