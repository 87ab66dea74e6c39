"""Archive packer contract and the Archive2 command line implementation."""

import logging
import shutil
import subprocess
from collections.abc import Iterable
from pathlib import Path
from typing import Protocol

from .disk_state import ArchiveCompression, ArchiveFormat
from .errors import ExternalToolError
from .paths import FROZEN_ARCHIVE_FILENAME

logger = logging.getLogger(__name__)

TEXTURE_EXTENSIONS = {".dds"}

# Sound files have to stay uncompressed inside general archives
SOUND_EXTENSIONS = {".wav", ".xwm", ".fuz", ".lip"}

ARCHIVE2_EXE_NAME = "Archive2.exe"


class ArchivePacker(Protocol):
    """Builds and extracts the game's *.ba2 archives."""

    def pack(
        self,
        staging_dir: Path,
        output_path: Path,
        format: ArchiveFormat,
        compression: ArchiveCompression,
    ) -> None:
        """Pack every file below `staging_dir`. Raises ExternalToolError on failure."""
        ...

    def unpack(self, archive_path: Path, dest_dir: Path) -> None:
        """Extract `archive_path` into `dest_dir`. Raises ExternalToolError on failure."""
        ...


def list_staged_files(staging_dir: Path) -> list[Path]:
    """Relative paths of all files a mod contributes from its folder."""
    if not staging_dir.is_dir():
        return []
    files = []
    for path in sorted(staging_dir.rglob("*")):
        if not path.is_file():
            continue
        rel = path.relative_to(staging_dir)
        if rel.as_posix().lower() == FROZEN_ARCHIVE_FILENAME:
            continue
        files.append(rel)
    return files


def is_texture(path: Path) -> bool:
    return path.suffix.lower() in TEXTURE_EXTENSIONS


def resolve_format(fmt: ArchiveFormat, files: Iterable[Path]) -> ArchiveFormat:
    """
    Pick a concrete format for Auto.

    Texture archives may only hold textures, so Auto selects Textures only
    when every file is one.
    """
    if fmt != ArchiveFormat.AUTO:
        return fmt
    files = list(files)
    if files and all(is_texture(f) for f in files):
        return ArchiveFormat.TEXTURES
    return ArchiveFormat.GENERAL


def resolve_compression(
    compression: ArchiveCompression, fmt: ArchiveFormat, files: Iterable[Path]
) -> ArchiveCompression:
    """Pick a concrete compression for Auto based on the (resolved) format."""
    if compression != ArchiveCompression.AUTO:
        return compression
    if fmt == ArchiveFormat.TEXTURES:
        return ArchiveCompression.COMPRESSED
    if any(f.suffix.lower() in SOUND_EXTENSIONS for f in files):
        return ArchiveCompression.UNCOMPRESSED
    return ArchiveCompression.COMPRESSED


class Archive2Packer:
    """
    Runs Bethesda's Archive2.exe.

    `wrapper` is prepended to every command, e.g. ["wine"] on Linux.
    """

    def __init__(
        self,
        executable: Path,
        wrapper: list[str] | None = None,
        timeout: float | None = None,
    ):
        self.executable = Path(executable)
        self.wrapper = list(wrapper or [])
        self.timeout = timeout

    def _run(self, args: list[str]) -> None:
        if not self.executable.is_file():
            raise ExternalToolError(f"Archive2 not found at {self.executable}")
        if self.wrapper and not shutil.which(self.wrapper[0]):
            raise ExternalToolError(f"Wrapper '{self.wrapper[0]}' not found on PATH")

        cmd = [*self.wrapper, str(self.executable), *args]
        logger.debug("Running %s", cmd)
        try:
            result = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                timeout=self.timeout,
            )
        except (OSError, subprocess.TimeoutExpired) as e:
            raise ExternalToolError(f"Could not run Archive2: {e}")

        if result.returncode != 0:
            output = (result.stderr or result.stdout).strip()
            raise ExternalToolError(
                f"Archive2 exited with code {result.returncode}: {output}",
                returncode=result.returncode,
                output=output,
            )

    def pack(
        self,
        staging_dir: Path,
        output_path: Path,
        format: ArchiveFormat,
        compression: ArchiveCompression,
    ) -> None:
        files = list_staged_files(staging_dir)
        if not files:
            raise ExternalToolError(f"Nothing to pack in {staging_dir}")
        fmt = resolve_format(format, files)
        compression = resolve_compression(compression, fmt, files)

        output_path.parent.mkdir(parents=True, exist_ok=True)
        self._run([
            str(staging_dir),
            f"-create={output_path}",
            f"-root={staging_dir}",
            "-format=" + ("DDS" if fmt == ArchiveFormat.TEXTURES else "General"),
            "-compression=" + (
                "Default" if compression == ArchiveCompression.COMPRESSED else "None"
            ),
            "-quiet",
        ])
        if not output_path.exists():
            raise ExternalToolError(f"Archive2 reported success but {output_path} is missing")

    def unpack(self, archive_path: Path, dest_dir: Path) -> None:
        if not archive_path.is_file():
            raise ExternalToolError(f"Archive not found: {archive_path}")
        dest_dir.mkdir(parents=True, exist_ok=True)
        self._run([str(archive_path), f"-extract={dest_dir}", "-quiet"])
