"""Steam library detection and game path resolution."""

import re
from pathlib import Path

FALLOUT76_APP_ID = "1151340"

# Common Steam install locations on Linux
STEAM_PATHS = [
    Path.home() / ".steam" / "debian-installation",
    Path.home() / ".steam" / "steam",
    Path.home() / ".local" / "share" / "Steam",
    Path("/usr/share/steam"),
    Path("C:/Program Files (x86)/Steam"),
]


def find_steam_root(candidates: list[Path] | None = None) -> Path | None:
    """Find the Steam installation root directory."""
    for path in candidates or STEAM_PATHS:
        vdf = path / "config" / "libraryfolders.vdf"
        if vdf.exists():
            return path
    return None


def parse_library_folders(steam_root: Path) -> list[Path]:
    """Parse libraryfolders.vdf to get all Steam library paths."""
    vdf_path = steam_root / "config" / "libraryfolders.vdf"
    if not vdf_path.exists():
        return []

    text = vdf_path.read_text()
    # Match "path" values in Valve KV1 format
    paths = []
    for match in re.finditer(r'"path"\s+"([^"]+)"', text):
        lib_path = Path(match.group(1).replace("\\\\", "\\"))
        if lib_path.exists():
            paths.append(lib_path)

    return paths


def find_game_dir(
    app_id: str = FALLOUT76_APP_ID,
    steam_root: Path | None = None,
) -> Path | None:
    """Find the game install directory by searching Steam libraries."""
    steam_root = steam_root or find_steam_root()
    if not steam_root:
        return None

    for lib_path in parse_library_folders(steam_root):
        manifest = lib_path / "steamapps" / f"appmanifest_{app_id}.acf"
        if manifest.exists():
            text = manifest.read_text()
            match = re.search(r'"installdir"\s+"([^"]+)"', text)
            if match:
                game_dir = lib_path / "steamapps" / "common" / match.group(1)
                if game_dir.exists():
                    return game_dir

    return None
