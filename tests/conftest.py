"""
Shared fixtures and helpers for the fo76-mod-deploy test suite.
"""

import threading
from pathlib import Path

import pytest

from fo76_mod_deploy.archive import list_staged_files
from fo76_mod_deploy.disk_state import (
    ArchiveCompression,
    ArchiveFormat,
    DiskState,
    LooseDeployment,
    SeparateArchive,
)
from fo76_mod_deploy.errors import ExternalToolError
from fo76_mod_deploy.mod import ManagedMod
from fo76_mod_deploy.paths import GameLayout
from fo76_mod_deploy.service import ModDeploymentService


class FakePacker:
    """Stands in for Archive2: writes the packed file list into the archive."""

    def __init__(self):
        self.packed: list[tuple[Path, Path, ArchiveFormat, ArchiveCompression]] = []
        self.unpacked: list[tuple[Path, Path]] = []
        self.fail = False
        self.gate: threading.Event | None = None
        self.started = threading.Event()

    def pack(self, staging_dir, output_path, format, compression):
        self.started.set()
        if self.gate is not None:
            self.gate.wait(5)
        if self.fail:
            raise ExternalToolError("Archive2 exited with code 1: boom", returncode=1)
        files = [p.as_posix() for p in list_staged_files(staging_dir)]
        output_path.parent.mkdir(parents=True, exist_ok=True)
        output_path.write_text(
            f"{format.value}/{compression.value}\n" + "\n".join(files), encoding="utf-8"
        )
        self.packed.append((Path(staging_dir), Path(output_path), format, compression))

    def unpack(self, archive_path, dest_dir):
        dest_dir.mkdir(parents=True, exist_ok=True)
        lines = archive_path.read_text(encoding="utf-8").splitlines()[1:]
        for rel in lines:
            target = dest_dir / rel
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(rel, encoding="utf-8")
        self.unpacked.append((archive_path, dest_dir))


def write_files(folder: Path, files: dict[str, str]) -> None:
    for rel, content in files.items():
        path = folder / rel
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content, encoding="utf-8")


def loose_state(mod: ManagedMod, files: list[str], root: str = "Data", enabled: bool = True) -> DiskState:
    return DiskState(
        managed_folder_name=mod.managed_folder_name,
        enabled=enabled,
        target=LooseDeployment(root_folder=root, files=list(files)),
    )


def archive_state(mod: ManagedMod, name: str = "MyMod", enabled: bool = True, **kwargs) -> DiskState:
    return DiskState(
        managed_folder_name=mod.managed_folder_name,
        enabled=enabled,
        target=SeparateArchive(archive_name=name, **kwargs),
    )


@pytest.fixture
def layout(tmp_path) -> GameLayout:
    game_dir = tmp_path / "Fallout76"
    (game_dir / "Data").mkdir(parents=True)
    (game_dir / "Mods").mkdir()
    return GameLayout(game_dir)


@pytest.fixture
def packer() -> FakePacker:
    return FakePacker()


@pytest.fixture
def service(layout, packer) -> ModDeploymentService:
    return ModDeploymentService(layout, packer)


@pytest.fixture
def make_mod(layout):
    """Create a mod whose managed folder holds `files`."""

    def _make(files: dict[str, str] | None = None, title: str = "Test Mod") -> ManagedMod:
        mod = ManagedMod(title=title)
        managed = layout.managed_path(mod.managed_folder_name)
        managed.mkdir(parents=True)
        write_files(managed, files or {})
        return mod

    return _make
