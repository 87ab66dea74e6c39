"""Import of downloaded mod archives into a managed folder."""

import logging
import shutil
import subprocess
import zipfile
from collections.abc import Callable
from pathlib import Path

import py7zr
import rarfile

from .archive import ArchivePacker

logger = logging.getLogger(__name__)

# Leading bytes of each supported container
MAGIC_BYTES = {
    b"PK": "zip",
    b"7z\xbc\xaf'\x1c": "7z",
    b"Rar!": "rar",
    b"BTDX": "ba2",
}


class ExtractionError(Exception):
    """Raised when a downloaded archive cannot be imported."""

    pass


def detect_archive_type(filepath: Path) -> str | None:
    """Return 'zip', '7z', 'rar' or 'ba2', judged by content first and by suffix second."""
    try:
        with open(filepath, "rb") as f:
            header = f.read(8)
    except OSError:
        header = b""

    for magic, kind in MAGIC_BYTES.items():
        if header.startswith(magic):
            return kind

    suffix = filepath.suffix.lower().lstrip(".")
    return suffix if suffix in MAGIC_BYTES.values() else None


def _files_below(folder: Path) -> list[Path]:
    return sorted(p for p in folder.rglob("*") if p.is_file())


def _unzip(archive_path: Path, target_dir: Path) -> None:
    with zipfile.ZipFile(archive_path) as zf:
        zf.extractall(target_dir)


def _un7z(archive_path: Path, target_dir: Path) -> None:
    try:
        with py7zr.SevenZipFile(archive_path, "r") as szf:
            szf.extractall(target_dir)
    except (py7zr.UnsupportedCompressionMethodError, py7zr.Bad7zFile) as e:
        # py7zr lacks some filters (BCJ2); the 7-Zip binary handles them
        binary = shutil.which("7z") or shutil.which("7zz")
        if binary is None:
            raise ExtractionError(f"{archive_path.name} needs the 7z command: {e}")
        logger.debug("py7zr failed on %s (%s), using %s", archive_path.name, e, binary)
        proc = subprocess.run(
            [binary, "x", "-y", f"-o{target_dir}", str(archive_path)],
            capture_output=True,
            text=True,
        )
        if proc.returncode != 0:
            raise ExtractionError(f"7z could not extract {archive_path.name}: {proc.stderr.strip()}")


def _unrar(archive_path: Path, target_dir: Path) -> None:
    with rarfile.RarFile(archive_path) as rf:
        rf.extractall(target_dir)


_EXTRACTORS: dict[str, Callable[[Path, Path], None]] = {
    "zip": _unzip,
    "7z": _un7z,
    "rar": _unrar,
}


def extract_archive(
    archive_path: Path,
    target_dir: Path,
    packer: ArchivePacker | None = None,
) -> list[Path]:
    """
    Unpack `archive_path` into `target_dir` and return the files found there.

    Game archives (*.ba2) go through `packer`.
    """
    kind = detect_archive_type(archive_path)
    if kind is None:
        raise ExtractionError(f"Unknown archive type: {archive_path}")
    if kind == "ba2" and packer is None:
        raise ExtractionError(f"Extracting {archive_path.name} requires Archive2")

    target_dir.mkdir(parents=True, exist_ok=True)
    logger.debug("Extracting %s archive %s into %s", kind, archive_path, target_dir)
    try:
        if kind == "ba2":
            packer.unpack(archive_path, target_dir)
        else:
            _EXTRACTORS[kind](archive_path, target_dir)
    except ExtractionError:
        raise
    except Exception as e:
        raise ExtractionError(f"Failed to extract {archive_path}: {e}")

    return _files_below(target_dir)
