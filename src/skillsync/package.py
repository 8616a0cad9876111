from __future__ import annotations

import hashlib
import io
import os
import zipfile
from dataclasses import dataclass
from pathlib import Path

METADATA_FILENAME = "metadata.toml"

# Directory/file names to skip anywhere in the tree.
DEFAULT_EXCLUDE_NAMES = {
    ".git",
    ".hg",
    ".svn",
    ".DS_Store",
    "__pycache__",
    ".pytest_cache",
    ".mypy_cache",
    ".ruff_cache",
    ".venv",
    "venv",
    "node_modules",
    ".idea",
    ".vscode",
}

# Fixed timestamp so packaging the same tree twice yields identical bytes.
_ZIP_EPOCH = (1980, 1, 1, 0, 0, 0)


@dataclass(frozen=True)
class ArtifactPackage:
    root: Path
    zip_bytes: bytes
    sha256: str
    size_bytes: int
    file_count: int


class PackageError(RuntimeError):
    pass


def _should_exclude(path: Path, root: Path) -> bool:
    try:
        rel = path.relative_to(root)
    except ValueError:
        return True

    parts = rel.parts
    if any(p in DEFAULT_EXCLUDE_NAMES for p in parts):
        return True
    return False


def is_artifact_dir(path: Path) -> bool:
    return path.is_dir() and (path / METADATA_FILENAME).is_file()


def package_directory(root: Path, *, top_level_dir: str | None = None) -> ArtifactPackage:
    """
    Zip an artifact directory. Entries are placed at the archive root unless
    ``top_level_dir`` is given.
    """
    root = root.expanduser().resolve()
    if not root.exists():
        raise PackageError(f"Path does not exist: {root}")
    if not root.is_dir():
        raise PackageError(f"Not a directory: {root}")

    metadata = root / METADATA_FILENAME
    if not metadata.is_file():
        raise PackageError(f"Missing required file: {metadata}")

    files: list[Path] = []
    for p in root.rglob("*"):
        if _should_exclude(p, root):
            continue
        if p.is_symlink():
            # Avoid surprising content and portability issues.
            continue
        if p.is_file():
            files.append(p)

    files.sort(key=lambda p: str(p.relative_to(root)).lower())

    prefix = ""
    if top_level_dir is not None:
        archive_root = top_level_dir.strip()
        if not archive_root or archive_root in {".", ".."} or "/" in archive_root or "\\" in archive_root:
            raise PackageError("Top-level archive folder name must be a single folder name (no path separators).")
        prefix = archive_root + "/"

    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w", compression=zipfile.ZIP_DEFLATED) as zf:
        for p in files:
            rel = p.relative_to(root)
            info = zipfile.ZipInfo(prefix + str(rel).replace(os.sep, "/"), date_time=_ZIP_EPOCH)
            info.compress_type = zipfile.ZIP_DEFLATED
            info.external_attr = (p.stat().st_mode & 0o777) << 16
            zf.writestr(info, p.read_bytes())

    zip_bytes = buf.getvalue()
    return ArtifactPackage(
        root=root,
        zip_bytes=zip_bytes,
        sha256=hashlib.sha256(zip_bytes).hexdigest(),
        size_bytes=len(zip_bytes),
        file_count=len(files),
    )
