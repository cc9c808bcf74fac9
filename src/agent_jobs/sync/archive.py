"""Zip packing and safe extraction of working directories."""

from __future__ import annotations

import io
import logging
import stat
import zipfile
from pathlib import Path, PurePosixPath

from agent_jobs.orchestrator.errors import PathTraversalError, SyncError

logger = logging.getLogger(__name__)

JUNK_NAMES = frozenset({".DS_Store", "Thumbs.db"})
SKIPPED_DIRS = frozenset({".git", "__MACOSX"})


def pack_directory(root: Path) -> bytes:
    """Zip ``root`` with forward-slash relative names.

    VCS internals, junk files and symlinks are skipped; directories are
    stored as ``name/`` entries so empty folders survive a round trip.
    """

    if not root.is_dir():
        raise SyncError(f"Working directory does not exist: {root}")

    buffer = io.BytesIO()
    try:
        with zipfile.ZipFile(buffer, "w", compression=zipfile.ZIP_DEFLATED) as archive:
            for path in sorted(root.rglob("*")):
                relative = path.relative_to(root)
                if _is_skipped(relative.parts) or path.is_symlink():
                    continue
                name = relative.as_posix()
                if path.is_dir() or path.is_file():
                    archive.write(path, arcname=name)
    except OSError as error:
        raise SyncError(f"Failed to pack {root}: {error}") from error
    return buffer.getvalue()


def unpack_archive(data: bytes, target: Path) -> int:
    """Extract a zip into ``target``; returns the number of files written.

    All entries are validated before anything is written, so an archive with a
    single escaping entry leaves ``target`` untouched.
    """

    try:
        archive = zipfile.ZipFile(io.BytesIO(data))
    except zipfile.BadZipFile as error:
        raise SyncError(f"Invalid archive: {error}") from error

    resolved_target = target.resolve()
    planned: list[tuple[zipfile.ZipInfo, Path]] = []
    with archive:
        for info in archive.infolist():
            name = info.filename.replace("\\", "/")
            parts = PurePosixPath(name).parts
            if not parts:
                continue
            if name.startswith("/") or PurePosixPath(name).is_absolute() or ":" in parts[0]:
                raise PathTraversalError(f"Absolute path in archive: {info.filename!r}")
            destination = (resolved_target / Path(*parts)).resolve()
            if not destination.is_relative_to(resolved_target):
                raise PathTraversalError(f"Archive entry escapes target: {info.filename!r}")
            if _is_skipped(parts) or _is_symlink(info):
                continue
            planned.append((info, destination))

        written = 0
        try:
            target.mkdir(parents=True, exist_ok=True)
            for info, destination in planned:
                if info.is_dir() or info.filename.endswith(("/", "\\")):
                    destination.mkdir(parents=True, exist_ok=True)
                    continue
                destination.parent.mkdir(parents=True, exist_ok=True)
                with archive.open(info) as source, destination.open("wb") as sink:
                    while chunk := source.read(1 << 16):
                        sink.write(chunk)
                mode = (info.external_attr >> 16) & 0o777
                if mode:
                    destination.chmod(mode | stat.S_IRUSR | stat.S_IWUSR)
                written += 1
        except OSError as error:
            raise SyncError(f"Failed to extract archive into {target}: {error}") from error
    logger.debug("Extracted %s files into %s", written, target)
    return written


def _is_skipped(parts: tuple[str, ...]) -> bool:
    if not parts:
        return True
    if any(part in SKIPPED_DIRS for part in parts[:-1]) or parts[0] in SKIPPED_DIRS:
        return True
    return parts[-1] in JUNK_NAMES or parts[-1] in SKIPPED_DIRS


def _is_symlink(info: zipfile.ZipInfo) -> bool:
    return stat.S_ISLNK(info.external_attr >> 16)
