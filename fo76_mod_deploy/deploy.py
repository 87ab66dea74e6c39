"""Reconcile a mod's files on disk with its pending deployment state."""

import logging
import os
import shutil
import tempfile
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from .archive import ArchivePacker, is_texture, list_staged_files, resolve_compression, resolve_format
from .disk_state import (
    ArchiveCompression,
    ArchiveFormat,
    DeploymentMethod,
    DiskState,
    SeparateArchive,
)
from .errors import ExternalToolError, FilesystemError, InvariantViolation
from .mod import ManagedMod
from .paths import GameLayout, safe_relative_path

logger = logging.getLogger(__name__)

BUNDLED_GENERAL_ARCHIVE = "Bundled - General.ba2"
BUNDLED_TEXTURES_ARCHIVE = "Bundled - Textures.ba2"


class ReconcileStatus(str, Enum):
    NOOP = "noop"
    OK = "ok"
    PARTIAL = "partial"
    FAILED = "failed"
    CANCELLED = "cancelled"
    REJECTED = "rejected"


@dataclass
class Operation:
    """A single filesystem or archive operation that was carried out."""

    kind: str  # delete, copy, pack, stage, remove_dir
    path: str
    detail: str = ""


@dataclass
class ReconcileResult:
    """Outcome of reconciling one mod."""

    uuid: str
    status: ReconcileStatus = ReconcileStatus.OK
    method: DeploymentMethod | None = None
    operations: list[Operation] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    error_type: str | None = None  # exception class name for failed runs
    missing_files: list[str] = field(default_factory=list)
    contributed_files: list[str] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        """True if the pending state may be committed."""
        return self.status in (ReconcileStatus.OK, ReconcileStatus.NOOP)


@dataclass
class BundleResult:
    """Outcome of rebuilding the shared bundled archives."""

    archives: list[str] = field(default_factory=list)
    removed: list[str] = field(default_factory=list)
    contributors: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)


class ReconcileCancelled(Exception):
    """Raised inside the reconciler when its cancel token fires."""

    pass


class CancelToken:
    """Cooperative cancellation, checked between file and archive operations."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise ReconcileCancelled()


_NEVER_CANCELLED = CancelToken()


def _is_unfreeze(current: DiskState, pending: DiskState) -> bool:
    return current.frozen and pending.method == DeploymentMethod.SEPARATE_BA2 and not pending.frozen


def check_frozen(current: DiskState, pending: DiskState) -> None:
    """
    Refuse to move away from a frozen archive.

    A deployed frozen archive may only be left through an explicit unfreeze
    (a separate archive pending state with `frozen` cleared). A disabled one
    still owns its pinned copy in the managed folder, so it may be redeployed
    as a separate archive but not switched to another method.
    """
    if not current.frozen or current.is_equivalent(pending) or _is_unfreeze(current, pending):
        return
    if current.enabled or pending.method != DeploymentMethod.SEPARATE_BA2:
        raise InvariantViolation(
            f"Archive '{current.archive.archive_name}' is frozen; "
            "unfreeze it before changing its deployment"
        )


def _cleanup_empty_parents(directory: Path, stop_at: Path) -> None:
    """Remove empty parent directories, stopping at the deployment root."""
    try:
        while directory != stop_at and stop_at in directory.parents:
            if any(directory.iterdir()):
                break
            directory.rmdir()
            directory = directory.parent
    except OSError:
        pass


def _copy_file(src: Path, dest: Path) -> None:
    dest.parent.mkdir(parents=True, exist_ok=True)
    if dest.is_symlink():
        dest.unlink()
    shutil.copy2(src, dest)


def temp_archive_path(dest: Path) -> Path:
    """Sibling of `dest` to pack into first. Archive2 needs the .ba2 extension."""
    return dest.with_name(dest.stem + ".tmp" + dest.suffix)


class Reconciler:
    """
    Moves a single mod from its current to its pending disk state.

    The reconciler never changes the mod it is given; callers commit the
    pending state when the result `succeeded`.
    """

    def __init__(self, layout: GameLayout, packer: ArchivePacker):
        self.layout = layout
        self.packer = packer

    def reconcile(self, mod: ManagedMod, cancel: CancelToken | None = None) -> ReconcileResult:
        cancel = cancel or _NEVER_CANCELLED
        current, pending = mod.current, mod.pending
        result = ReconcileResult(uuid=str(mod.uuid), method=pending.method)

        if current.is_equivalent(pending):
            result.status = ReconcileStatus.NOOP
            return result

        logger.debug(
            "Reconciling %s: %s/%s -> %s/%s",
            mod.uuid,
            current.method.value,
            "enabled" if current.enabled else "disabled",
            pending.method.value,
            "enabled" if pending.enabled else "disabled",
        )

        # (path, root) of everything this run created for `pending`
        created: list[tuple[Path, Path]] = []
        try:
            check_frozen(current, pending)
            cancel.raise_if_cancelled()
            self._teardown(current, pending, result, cancel)
            if pending.enabled:
                self._build(pending, result, cancel, created)
        except ReconcileCancelled:
            result.status = ReconcileStatus.CANCELLED
            result.errors.append("Cancelled")
        except (InvariantViolation, ExternalToolError, FilesystemError) as e:
            result.status = ReconcileStatus.FAILED
            result.error_type = type(e).__name__
            result.errors.append(str(e))
        except OSError as e:
            result.status = ReconcileStatus.FAILED
            result.error_type = FilesystemError.__name__
            result.errors.append(str(e))
        else:
            if result.errors or result.missing_files:
                result.status = ReconcileStatus.PARTIAL

        if not result.succeeded:
            logger.warning("Reconciling %s %s: %s", mod.uuid, result.status.value, result.errors)
            self._rollback(created, result)
        return result

    def _rollback(self, created: list[tuple[Path, Path]], result: ReconcileResult) -> None:
        """Delete what this run created. It will not be committed, so nothing would track it."""
        for path, root in reversed(created):
            try:
                if path.is_dir() and not path.is_symlink():
                    shutil.rmtree(path)
                elif path.is_symlink() or path.exists():
                    path.unlink()
                else:
                    continue
            except OSError as e:
                result.errors.append(f"Rollback of {path} failed: {e}")
                continue
            result.operations.append(Operation("delete", str(path), "rollback"))
            _cleanup_empty_parents(path.parent, root)

    # ── Teardown ──────────────────────────────────────────────────────

    def _teardown(
        self, current: DiskState, pending: DiskState, result: ReconcileResult, cancel: CancelToken
    ) -> None:
        """Remove artifacts owned by `current` that `pending` does not keep."""
        if not current.enabled:
            return

        if current.method == DeploymentMethod.LOOSE:
            self._teardown_loose(current, pending, result, cancel)
        elif current.method == DeploymentMethod.SEPARATE_BA2:
            self._teardown_archive(current, pending, result)
        elif current.method == DeploymentMethod.BUNDLED_BA2:
            staging = self.layout.bundle_staging_path(current.managed_folder_name)
            if staging.exists():
                shutil.rmtree(staging)
                result.operations.append(Operation("remove_dir", str(staging)))

    def _teardown_loose(
        self, current: DiskState, pending: DiskState, result: ReconcileResult, cancel: CancelToken
    ) -> None:
        root = self.layout.resolve_root(current.loose.root_folder)

        # Files that will be copied over again anyway
        keep: set[str] = set()
        if pending.enabled and pending.method == DeploymentMethod.LOOSE:
            if self.layout.resolve_root(pending.loose.root_folder) == root:
                keep = set(pending.loose_files)

        for rel in current.loose_files:
            if rel in keep:
                continue
            cancel.raise_if_cancelled()
            try:
                dest = root / safe_relative_path(rel)
            except ValueError as e:
                result.errors.append(f"{rel}: {e}")
                continue

            if not (dest.is_symlink() or dest.exists()):
                logger.debug("Already gone: %s", dest)
                continue
            try:
                dest.unlink()
            except OSError as e:
                result.errors.append(f"{rel}: {e}")
                continue
            result.operations.append(Operation("delete", str(dest)))
            _cleanup_empty_parents(dest.parent, root)

    def _teardown_archive(
        self, current: DiskState, pending: DiskState, result: ReconcileResult
    ) -> None:
        archive = current.archive
        replaced_in_place = (
            pending.enabled
            and pending.archive is not None
            and pending.archive.archive_name == archive.archive_name
        )
        if not replaced_in_place:
            path = self.layout.archive_path(archive.archive_name)
            if path.exists():
                path.unlink()
                result.operations.append(Operation("delete", str(path)))

        if _is_unfreeze(current, pending):
            frozen_path = self.layout.frozen_archive_path(current.managed_folder_name)
            if frozen_path.exists():
                frozen_path.unlink()
                result.operations.append(Operation("delete", str(frozen_path), "unfreeze"))

    # ── Build ─────────────────────────────────────────────────────────

    def _build(
        self,
        pending: DiskState,
        result: ReconcileResult,
        cancel: CancelToken,
        created: list[tuple[Path, Path]],
    ) -> None:
        if pending.method == DeploymentMethod.LOOSE:
            self._build_loose(pending, result, cancel, created)
        elif pending.method == DeploymentMethod.SEPARATE_BA2:
            self._build_archive(pending, result, cancel, created)
        elif pending.method == DeploymentMethod.BUNDLED_BA2:
            self._stage_bundled(pending, result, cancel, created)

    def _build_loose(
        self,
        pending: DiskState,
        result: ReconcileResult,
        cancel: CancelToken,
        created: list[tuple[Path, Path]],
    ) -> None:
        root = self.layout.resolve_root(pending.loose.root_folder)
        managed = self.layout.managed_path(pending.managed_folder_name)

        for rel in pending.loose_files:
            cancel.raise_if_cancelled()
            try:
                rel_path = safe_relative_path(rel)
            except ValueError as e:
                result.errors.append(f"{rel}: {e}")
                continue

            src = managed / rel_path
            if not src.is_file():
                result.missing_files.append(rel)
                continue
            dest = root / rel_path
            existed = dest.is_symlink() or dest.exists()
            try:
                _copy_file(src, dest)
            except OSError as e:
                result.errors.append(f"{rel}: {e}")
                continue
            if not existed:
                created.append((dest, root))
            result.operations.append(Operation("copy", str(dest)))

    def _build_archive(
        self,
        pending: DiskState,
        result: ReconcileResult,
        cancel: CancelToken,
        created: list[tuple[Path, Path]],
    ) -> None:
        archive = pending.archive
        managed = self.layout.managed_path(pending.managed_folder_name)
        dest = self.layout.archive_path(archive.archive_name)
        tmp_dest = temp_archive_path(dest)

        try:
            if archive.frozen:
                frozen_path = self.layout.frozen_archive_path(pending.managed_folder_name)
                if not frozen_path.exists():
                    self._pack(managed, tmp_dest, archive, result)
                    shutil.move(tmp_dest, frozen_path)
                    created.append((frozen_path, managed))
                cancel.raise_if_cancelled()
                _copy_file(frozen_path, tmp_dest)
                os.replace(tmp_dest, dest)
                result.operations.append(Operation("copy", str(dest), "frozen"))
            else:
                self._pack(managed, tmp_dest, archive, result)
                cancel.raise_if_cancelled()
                os.replace(tmp_dest, dest)
        finally:
            if tmp_dest.exists():
                tmp_dest.unlink()

    def _pack(self, managed: Path, output: Path, archive: SeparateArchive, result: ReconcileResult) -> None:
        files = list_staged_files(managed)
        if not files:
            raise FilesystemError(f"No files to pack in {managed}", path=str(managed))

        fmt = resolve_format(archive.format, files)
        compression = resolve_compression(archive.compression, fmt, files)
        with _packing_source(managed, files) as source:
            self.packer.pack(source, output, fmt, compression)
        result.operations.append(
            Operation("pack", str(output), f"{fmt.value}/{compression.value}")
        )

    def _stage_bundled(
        self,
        pending: DiskState,
        result: ReconcileResult,
        cancel: CancelToken,
        created: list[tuple[Path, Path]],
    ) -> None:
        managed = self.layout.managed_path(pending.managed_folder_name)
        staging = self.layout.bundle_staging_path(pending.managed_folder_name)

        try:
            if staging.exists():
                shutil.rmtree(staging)
            staging.mkdir(parents=True)
        except OSError as e:
            raise FilesystemError(f"Cannot prepare staging folder {staging}: {e}", path=str(staging))
        created.append((staging, self.layout.bundle_staging_dir))

        for rel in list_staged_files(managed):
            cancel.raise_if_cancelled()
            try:
                _copy_file(managed / rel, staging / rel)
            except OSError as e:
                result.errors.append(f"{rel.as_posix()}: {e}")
                continue
            result.contributed_files.append(rel.as_posix())
        result.operations.append(
            Operation("stage", str(staging), f"{len(result.contributed_files)} files")
        )


@contextmanager
def _packing_source(managed: Path, files: list[Path]) -> Iterator[Path]:
    """
    Folder to hand to the packer.

    The managed folder itself, unless it also holds the frozen archive, which
    must not end up inside the new archive.
    """
    if len(files) == sum(1 for p in managed.rglob("*") if p.is_file()):
        yield managed
        return

    with tempfile.TemporaryDirectory(prefix="fo76-pack-") as tmp_dir:
        source = Path(tmp_dir)
        for rel in files:
            _copy_file(managed / rel, source / rel)
        yield source


class BundleBuilder:
    """
    Packs the staged files of all bundled mods into the shared archives.

    Runs once per batch, after every contributing mod finished staging.
    Mods later in the list overwrite files of earlier ones.
    """

    def __init__(self, layout: GameLayout, packer: ArchivePacker):
        self.layout = layout
        self.packer = packer

    def build(self, mods: list[ManagedMod], cancel: CancelToken | None = None) -> BundleResult:
        cancel = cancel or _NEVER_CANCELLED
        result = BundleResult()
        contributors = [
            m for m in mods
            if m.current.enabled and m.current.method == DeploymentMethod.BUNDLED_BA2
        ]
        result.contributors = [str(m.uuid) for m in contributors]

        with tempfile.TemporaryDirectory(prefix="fo76-bundle-") as tmp_dir:
            general_dir = Path(tmp_dir) / "general"
            textures_dir = Path(tmp_dir) / "textures"

            for mod in contributors:
                staging = self.layout.bundle_staging_path(mod.managed_folder_name)
                for rel in list_staged_files(staging):
                    cancel.raise_if_cancelled()
                    target = textures_dir if is_texture(rel) else general_dir
                    _copy_file(staging / rel, target / rel)

            for name, source, fmt in (
                (BUNDLED_GENERAL_ARCHIVE, general_dir, ArchiveFormat.GENERAL),
                (BUNDLED_TEXTURES_ARCHIVE, textures_dir, ArchiveFormat.TEXTURES),
            ):
                cancel.raise_if_cancelled()
                self._pack_bundle(name, source, fmt, result)

        logger.debug(
            "Bundle built from %d mod(s): %s", len(contributors), result.archives or "empty"
        )
        return result

    def _pack_bundle(self, name: str, source: Path, fmt: ArchiveFormat, result: BundleResult) -> None:
        dest = self.layout.archive_path(name)
        files = list_staged_files(source)
        if not files:
            if dest.exists():
                dest.unlink()
                result.removed.append(name)
            return

        compression = resolve_compression(ArchiveCompression.AUTO, fmt, files)
        tmp_dest = temp_archive_path(dest)
        try:
            self.packer.pack(source, tmp_dest, fmt, compression)
            os.replace(tmp_dest, dest)
            result.archives.append(name)
        except ExternalToolError as e:
            result.errors.append(f"{name}: {e}")
        finally:
            if tmp_dest.exists():
                tmp_dest.unlink()
