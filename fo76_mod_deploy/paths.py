"""File name sanitizing and game directory layout."""

from dataclasses import dataclass
from pathlib import Path, PurePosixPath, PureWindowsPath

ARCHIVE_EXTENSION = ".ba2"
DEFAULT_FILENAME = "untitled"

MODS_DIRNAME = "Mods"
DATA_DIRNAME = "Data"
REGISTRY_FILENAME = "manifest.xml"
FROZEN_ARCHIVE_FILENAME = "frozen.ba2"
BUNDLE_STAGING_DIRNAME = "_bundled"

# Characters Windows refuses in file names (the game only runs there)
INVALID_FILENAME_CHARS = set('<>:"/\\|?*') | {chr(i) for i in range(32)}


def sanitize_filename(value: str, extension: str = "") -> str:
    """
    Turn an arbitrary string into a valid file name.

    Invalid characters are replaced by underscores, surrounding whitespace is
    stripped and `extension` is appended unless the name already ends with it.
    """
    if not value.strip():
        name = DEFAULT_FILENAME
    else:
        name = "".join("_" if c in INVALID_FILENAME_CHARS else c for c in value).strip()

    if extension and not name.lower().endswith(extension.lower()):
        name += extension
    return name


def safe_relative_path(rel_path: str) -> Path:
    """
    Normalize a recorded relative path (either separator style).

    Raises ValueError for absolute paths or paths that climb out of their root.
    """
    pure = PureWindowsPath(rel_path) if "\\" in rel_path else PurePosixPath(rel_path)
    if pure.is_absolute() or pure.drive or pure.anchor:
        raise ValueError(f"Not a relative path: {rel_path}")
    parts = [p for p in pure.parts if p not in ("", ".")]
    if not parts or ".." in parts:
        raise ValueError(f"Path escapes its root: {rel_path}")
    return Path(*parts)


@dataclass(frozen=True)
class GameLayout:
    """Resolves where mod artifacts live below a game install directory."""

    game_dir: Path

    @property
    def mods_dir(self) -> Path:
        return self.game_dir / MODS_DIRNAME

    @property
    def data_dir(self) -> Path:
        return self.game_dir / DATA_DIRNAME

    @property
    def registry_path(self) -> Path:
        return self.mods_dir / REGISTRY_FILENAME

    @property
    def bundle_staging_dir(self) -> Path:
        return self.mods_dir / BUNDLE_STAGING_DIRNAME

    def managed_path(self, managed_folder_name: str) -> Path:
        """Folder holding the mod's own files, e.g. Mods/<uuid>/."""
        return self.mods_dir / managed_folder_name

    def frozen_archive_path(self, managed_folder_name: str) -> Path:
        return self.managed_path(managed_folder_name) / FROZEN_ARCHIVE_FILENAME

    def archive_path(self, archive_name: str) -> Path:
        return self.data_dir / archive_name

    def bundle_staging_path(self, managed_folder_name: str) -> Path:
        return self.bundle_staging_dir / managed_folder_name

    def resolve_root(self, root_folder: str | None) -> Path:
        """Loose destination: absolute paths are used as-is, others are game relative."""
        if not root_folder:
            return self.data_dir
        root = Path(root_folder)
        if root.is_absolute():
            return root
        return self.game_dir / root
