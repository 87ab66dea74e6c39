"""Service layer - the API the user interface talks to."""

import logging
import shutil
import threading
from collections import Counter
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable

from .api import NexusAPI, NexusAPIError
from .archive import ArchivePacker
from .deploy import (
    BundleBuilder,
    BundleResult,
    CancelToken,
    ReconcileCancelled,
    Reconciler,
    ReconcileResult,
    ReconcileStatus,
)
from .disk_state import DeploymentMethod, DiskState
from .errors import InvariantViolation
from .extractor import extract_archive
from .locking import SingleFlight
from .mod import DEFAULT_VERSION, ManagedMod
from .paths import GameLayout
from .registry import ModKey, ModRegistry
from .tasks import TaskManager

logger = logging.getLogger(__name__)

# progress callback: (event_type, percentage 0-1, message)
ProgressCallback = Callable[[str, float, str], None]

DEFAULT_MAX_WORKERS = 4


@dataclass
class BatchResult:
    """Outcome of deploying the whole registry."""

    results: list[ReconcileResult] = field(default_factory=list)
    bundle: BundleResult | None = None
    cancelled: bool = False

    @property
    def succeeded(self) -> bool:
        bundle_ok = self.bundle is None or not self.bundle.errors
        return not self.cancelled and bundle_ok and all(r.succeeded for r in self.results)

    def summary(self) -> dict[str, int]:
        """Number of mods per result status."""
        return dict(Counter(r.status.value for r in self.results))


def _noop_progress(event: str, pct: float, msg: str) -> None:
    pass


def _touches_bundle(mod: ManagedMod) -> bool:
    return DeploymentMethod.BUNDLED_BA2 in (mod.current.method, mod.pending.method)


class ModDeploymentService:
    """Business logic for managing and deploying mods."""

    def __init__(
        self,
        layout: GameLayout,
        packer: ArchivePacker,
        registry: ModRegistry | None = None,
        max_workers: int = DEFAULT_MAX_WORKERS,
    ):
        self.layout = layout
        self.packer = packer
        self.registry = registry or ModRegistry(layout.registry_path)
        self.reconciler = Reconciler(layout, packer)
        self.bundler = BundleBuilder(layout, packer)
        self.tasks = TaskManager()
        self.max_workers = max_workers
        self._flights = SingleFlight()
        self._bundle_lock = threading.Lock()

    @classmethod
    def open(cls, layout: GameLayout, packer: ArchivePacker, **kwargs: Any) -> "ModDeploymentService":
        """Create a service and load the registry document if there is one."""
        service = cls(layout, packer, **kwargs)
        if service.registry.exists():
            service.registry.load()
        return service

    # ── Queries ───────────────────────────────────────────────────────

    def list_mods(self) -> list[ManagedMod]:
        return self.registry.list()

    def get_mod(self, mod_uuid: ModKey) -> ManagedMod:
        return self.registry.get(mod_uuid)

    def is_busy(self, mod_uuid: ModKey) -> bool:
        return self._flights.is_busy(str(mod_uuid).lower())

    # ── Editing ───────────────────────────────────────────────────────

    def add_mod(self, title: str = "", url: str = "", version: str = DEFAULT_VERSION) -> ManagedMod:
        """Register a new, undeployed mod and create its managed folder."""
        mod = ManagedMod(title=title, version=version, url=url)
        self.layout.managed_path(mod.managed_folder_name).mkdir(parents=True, exist_ok=True)
        self.registry.add(mod)
        self.registry.save()
        logger.info("Added mod %s (%s)", mod.title, mod.uuid)
        return mod

    def update_info(
        self,
        mod_uuid: ModKey,
        title: str | None = None,
        version: str | None = None,
        url: str | None = None,
    ) -> None:
        self.registry.update_info(mod_uuid, title=title, version=version, url=url)
        self.registry.save()

    def set_pending(self, mod_uuid: ModKey, state: DiskState) -> None:
        """
        Replace the pending state of a mod.

        Raises:
            InvariantViolation: if the state points at another mod's folder.
        """
        mod = self.registry.get(mod_uuid)
        state = state.create_deep_copy()
        if not state.managed_folder_name:
            state.managed_folder_name = mod.managed_folder_name
        if state.managed_folder_name != mod.managed_folder_name:
            raise InvariantViolation(
                f"Pending state for {mod.uuid} refers to folder '{state.managed_folder_name}'"
            )
        state.normalize()
        self.registry.set_pending(mod_uuid, state)
        self.registry.save()

    def install_archive(self, mod_uuid: ModKey, archive_path: Path) -> list[Path]:
        """Extract a downloaded archive into the mod's managed folder."""
        mod = self.registry.get(mod_uuid)
        managed = self.layout.managed_path(mod.managed_folder_name)
        extracted = extract_archive(Path(archive_path), managed, packer=self.packer)
        logger.info("Installed %d file(s) from %s into %s", len(extracted), archive_path, managed)
        return extracted

    # ── Deployment ────────────────────────────────────────────────────

    def reconcile_one(
        self,
        mod_uuid: ModKey,
        wait: bool = False,
        cancel: CancelToken | None = None,
    ) -> ReconcileResult:
        """
        Deploy one mod's pending state and commit it on success.

        A mod that is already being reconciled is rejected, or queued behind
        the running reconciliation when `wait` is set.
        """
        key = str(mod_uuid).lower()
        with self._flights.acquire(key, wait=wait) as acquired:
            if not acquired:
                return ReconcileResult(
                    uuid=key,
                    status=ReconcileStatus.REJECTED,
                    errors=["Mod is already being reconciled"],
                )

            snapshot = self.registry.get(mod_uuid)
            result = self.reconciler.reconcile(snapshot, cancel)
            if result.succeeded and snapshot.current != snapshot.pending:
                self.registry.commit(mod_uuid, snapshot.pending)
                if result.status == ReconcileStatus.OK and _touches_bundle(snapshot):
                    self.registry.set_bundle_dirty(True)
                self.registry.save()
                logger.info("Deployed %s (%s)", snapshot.title, result.status.value)
            return result

    def reconcile_all(
        self,
        max_workers: int | None = None,
        cancel: CancelToken | None = None,
        on_progress: ProgressCallback | None = None,
        rebuild_bundle: bool | None = None,
    ) -> BatchResult:
        """
        Deploy every mod, then rebuild the bundled archives.

        Mods are reconciled in parallel. The bundle is packed only after every
        mod finished, and by default only while committed bundled changes are
        not packed yet, including those of earlier cancelled batches.
        """
        progress = on_progress or _noop_progress
        cancel = cancel or CancelToken()
        batch = BatchResult()
        mods = self.registry.list()
        total = len(mods)

        progress("reconcile", 0.0, f"Deploying {total} mods...")
        with ThreadPoolExecutor(max_workers=max_workers or self.max_workers) as pool:
            futures = {
                pool.submit(self.reconcile_one, mod.uuid, True, cancel): mod for mod in mods
            }
            by_uuid: dict[str, ReconcileResult] = {}
            for done, future in enumerate(as_completed(futures), start=1):
                mod = futures[future]
                result = future.result()
                by_uuid[str(mod.uuid)] = result
                progress("reconcile", 0.9 * done / total, f"{mod.title}: {result.status.value}")
        batch.results = [by_uuid[str(mod.uuid)] for mod in mods]

        batch.cancelled = cancel.cancelled
        if batch.cancelled:
            progress("done", 1.0, "Deployment cancelled")
            return batch

        if rebuild_bundle is None:
            rebuild_bundle = self.registry.bundle_dirty
        if rebuild_bundle:
            progress("bundle", 0.9, "Packing bundled archives...")
            try:
                batch.bundle = self.rebuild_bundle(cancel)
            except ReconcileCancelled:
                batch.cancelled = True

        progress("done", 1.0, f"Deployed {total} mods")
        return batch

    def rebuild_bundle(self, cancel: CancelToken | None = None) -> BundleResult:
        """Pack the shared archives from all enabled bundled mods, in registry order."""
        with self._bundle_lock:
            # Commits that land while packing mark the bundle dirty again
            self.registry.set_bundle_dirty(False)
            packed = False
            try:
                result = self.bundler.build(self.registry.list(), cancel)
                packed = not result.errors
            finally:
                if not packed:
                    self.registry.set_bundle_dirty(True)
                self.registry.save()
            return result

    def submit_reconcile_all(self, on_done: Callable | None = None, **kwargs: Any) -> str:
        """Run `reconcile_all` in the background. Returns a task id."""
        task_id = self.tasks.create("reconcile_all")

        def on_progress(event: str, pct: float, msg: str) -> None:
            self.tasks.update_progress(task_id, pct, msg)

        self.tasks.run_in_background(
            task_id, self.reconcile_all, on_progress=on_progress, on_done=on_done, **kwargs
        )
        return task_id

    def submit_reconcile(self, mod_uuid: ModKey, on_done: Callable | None = None) -> str:
        """Run `reconcile_one` in the background. Returns a task id."""
        task_id = self.tasks.create(f"reconcile:{mod_uuid}")
        self.tasks.run_in_background(task_id, self.reconcile_one, mod_uuid, on_done=on_done)
        return task_id

    # ── Removal ───────────────────────────────────────────────────────

    def delete_mod(self, mod_uuid: ModKey) -> None:
        """
        Forget a mod and delete its managed folder.

        Raises:
            InvariantViolation: if the mod is still deployed or being deployed.
                Disable it and reconcile first.
        """
        key = str(mod_uuid).lower()
        with self._flights.acquire(key) as acquired:
            if not acquired:
                raise InvariantViolation(f"Mod {mod_uuid} is being reconciled")

            mod = self.registry.get(mod_uuid)
            if mod.current.enabled:
                raise InvariantViolation(
                    f"Mod '{mod.title}' is still deployed; disable and deploy it before deleting"
                )

            managed = self.layout.managed_path(mod.managed_folder_name)
            if managed.exists():
                shutil.rmtree(managed)
            self.registry.remove(mod_uuid)
            self.registry.save()
            logger.info("Deleted mod %s (%s)", mod.title, mod.uuid)

    # ── Remote metadata ───────────────────────────────────────────────

    def fetch_remote_info(self, mod_uuid: ModKey, api: NexusAPI) -> dict[str, Any]:
        """Look the mod up on Nexus Mods. Mods without a page raise NexusAPIError."""
        mod = self.registry.get(mod_uuid)
        if mod.nexus_id < 0:
            raise NexusAPIError(f"Mod '{mod.title}' has no Nexus Mods page")
        return api.get_mod_info(mod.nexus_id)
