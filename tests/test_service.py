"""
Tests for the deployment service: commits, single-flight, batches and tasks.
"""

import threading
import uuid
import zipfile

import pytest

from fo76_mod_deploy.api import NexusAPIError
from fo76_mod_deploy.deploy import BUNDLED_GENERAL_ARCHIVE, CancelToken, ReconcileStatus
from fo76_mod_deploy.disk_state import BundledDeployment, DeploymentMethod, DiskState
from fo76_mod_deploy.errors import InvariantViolation
from fo76_mod_deploy.registry import ModRegistry
from fo76_mod_deploy.service import ModDeploymentService
from tests.conftest import archive_state, loose_state, write_files


@pytest.fixture
def add_mod(service, layout):
    def _add(files: dict[str, str], title: str = "Mod", url: str = ""):
        mod = service.add_mod(title=title, url=url)
        write_files(layout.managed_path(mod.managed_folder_name), files)
        return mod

    return _add


def bundled_state(enabled=True):
    return DiskState("", enabled, BundledDeployment())


def reload(layout) -> ModRegistry:
    registry = ModRegistry(layout.registry_path)
    registry.load()
    return registry


# ── editing ──────────────────────────────────────────────────────────────────

def test_add_mod_creates_folder_and_document(service, layout):
    mod = service.add_mod(title="Fresh", url="https://www.nexusmods.com/fallout76/mods/5")

    assert layout.managed_path(mod.managed_folder_name).is_dir()
    assert reload(layout).get(mod.uuid).nexus_id == 5


def test_update_info_is_saved(service, layout, add_mod):
    mod = add_mod({})
    service.update_info(mod.uuid, title="Renamed", version="3.0")

    saved = reload(layout).get(mod.uuid)
    assert saved.title == "Renamed"
    assert saved.version == "3.0"


def test_set_pending_fills_in_managed_folder(service, add_mod):
    mod = add_mod({})
    service.set_pending(mod.uuid, bundled_state())

    assert service.get_mod(mod.uuid).pending.managed_folder_name == mod.managed_folder_name


def test_set_pending_rejects_foreign_folder(service, add_mod):
    mod = add_mod({})
    state = bundled_state()
    state.managed_folder_name = str(uuid.uuid4())

    with pytest.raises(InvariantViolation):
        service.set_pending(mod.uuid, state)


def test_open_loads_existing_registry(service, layout, packer, add_mod):
    mod = add_mod({})

    reopened = ModDeploymentService.open(layout, packer)
    assert [m.uuid for m in reopened.list_mods()] == [mod.uuid]


def test_install_archive_from_zip(service, layout, add_mod, tmp_path):
    mod = add_mod({})
    archive = tmp_path / "download.zip"
    with zipfile.ZipFile(archive, "w") as zf:
        zf.writestr("textures/a.dds", "tex")
        zf.writestr("b.nif", "mesh")

    extracted = service.install_archive(mod.uuid, archive)

    managed = layout.managed_path(mod.managed_folder_name)
    assert sorted(p.relative_to(managed).as_posix() for p in extracted) == ["b.nif", "textures/a.dds"]


# ── reconcile_one ────────────────────────────────────────────────────────────

def test_successful_reconcile_commits(service, layout, add_mod):
    mod = add_mod({"a.txt": "a"})
    service.set_pending(mod.uuid, loose_state(mod, ["a.txt"]))

    result = service.reconcile_one(mod.uuid)

    assert result.status == ReconcileStatus.OK
    assert service.get_mod(mod.uuid).current.loose_files == ["a.txt"]
    assert reload(layout).get(mod.uuid).current.enabled
    assert service.reconcile_one(mod.uuid).status == ReconcileStatus.NOOP


def test_failed_reconcile_keeps_current(service, packer, add_mod):
    mod = add_mod({"a.nif": "a"})
    service.set_pending(mod.uuid, archive_state(mod))
    packer.fail = True

    result = service.reconcile_one(mod.uuid)

    assert result.status == ReconcileStatus.FAILED
    assert not service.get_mod(mod.uuid).current.enabled


def test_partial_reconcile_keeps_current(service, add_mod):
    mod = add_mod({"a.txt": "a"})
    service.set_pending(mod.uuid, loose_state(mod, ["a.txt", "gone.txt"]))

    result = service.reconcile_one(mod.uuid)

    assert result.status == ReconcileStatus.PARTIAL
    assert not service.get_mod(mod.uuid).current.enabled


def test_failed_switch_keeps_previous_deployment(service, packer, add_mod):
    mod = add_mod({"a.txt": "a"})
    service.set_pending(mod.uuid, loose_state(mod, ["a.txt"]))
    service.reconcile_one(mod.uuid)
    before = service.get_mod(mod.uuid).current

    service.set_pending(mod.uuid, archive_state(mod))
    packer.fail = True
    result = service.reconcile_one(mod.uuid)

    assert result.status == ReconcileStatus.FAILED
    assert service.get_mod(mod.uuid).current == before
    assert service.get_mod(mod.uuid).current.method == DeploymentMethod.LOOSE


def test_partial_switch_keeps_previous_deployment(service, layout, add_mod):
    mod = add_mod({"a.txt": "a"})
    service.set_pending(mod.uuid, archive_state(mod))
    service.reconcile_one(mod.uuid)
    before = service.get_mod(mod.uuid).current

    service.set_pending(mod.uuid, loose_state(mod, ["a.txt", "gone.txt"]))
    result = service.reconcile_one(mod.uuid)

    assert result.status == ReconcileStatus.PARTIAL
    assert service.get_mod(mod.uuid).current == before
    assert reload(layout).get(mod.uuid).current == before


def test_partial_deploy_leaves_nothing_behind(service, layout, add_mod):
    mod = add_mod({"a.txt": "a"})
    service.set_pending(mod.uuid, loose_state(mod, ["a.txt", "gone.txt"]))
    assert service.reconcile_one(mod.uuid).status == ReconcileStatus.PARTIAL

    service.set_pending(mod.uuid, bundled_state(enabled=False))
    assert service.reconcile_one(mod.uuid).succeeded

    assert not (layout.data_dir / "a.txt").exists()
    assert list(layout.data_dir.iterdir()) == []


def _start_blocked_reconcile(service, packer, mod):
    packer.gate = threading.Event()
    results = []
    thread = threading.Thread(target=lambda: results.append(service.reconcile_one(mod.uuid)))
    thread.start()
    assert packer.started.wait(5)
    return thread, results


def test_concurrent_reconcile_is_rejected(service, packer, add_mod):
    mod = add_mod({"a.nif": "a"})
    service.set_pending(mod.uuid, archive_state(mod))
    thread, results = _start_blocked_reconcile(service, packer, mod)

    assert service.is_busy(mod.uuid)
    second = service.reconcile_one(mod.uuid)

    packer.gate.set()
    thread.join(5)
    assert second.status == ReconcileStatus.REJECTED
    assert results[0].status == ReconcileStatus.OK
    assert len(packer.packed) == 1


def test_waiting_reconcile_runs_after_the_first(service, packer, add_mod):
    mod = add_mod({"a.nif": "a"})
    service.set_pending(mod.uuid, archive_state(mod))
    thread, results = _start_blocked_reconcile(service, packer, mod)

    waiter = threading.Thread(target=lambda: results.append(service.reconcile_one(mod.uuid, wait=True)))
    waiter.start()
    packer.gate.set()
    thread.join(5)
    waiter.join(5)

    assert sorted(r.status.value for r in results) == ["noop", "ok"]
    assert len(packer.packed) == 1


def test_busy_mod_cannot_be_deleted(service, packer, add_mod):
    mod = add_mod({"a.nif": "a"})
    service.set_pending(mod.uuid, archive_state(mod))
    thread, _ = _start_blocked_reconcile(service, packer, mod)

    with pytest.raises(InvariantViolation):
        service.delete_mod(mod.uuid)
    packer.gate.set()
    thread.join(5)


# ── delete ───────────────────────────────────────────────────────────────────

def test_deployed_mod_must_be_disabled_before_delete(service, layout, add_mod):
    mod = add_mod({"a.txt": "a"})
    service.set_pending(mod.uuid, loose_state(mod, ["a.txt"]))
    service.reconcile_one(mod.uuid)

    with pytest.raises(InvariantViolation):
        service.delete_mod(mod.uuid)

    service.set_pending(mod.uuid, loose_state(mod, [], enabled=False))
    assert service.reconcile_one(mod.uuid).status == ReconcileStatus.OK
    service.delete_mod(mod.uuid)

    assert not (layout.data_dir / "a.txt").exists()
    assert not layout.managed_path(mod.managed_folder_name).exists()
    assert len(reload(layout)) == 0


# ── reconcile_all ────────────────────────────────────────────────────────────

def test_reconcile_all_builds_bundle_after_mods(service, layout, add_mod):
    first = add_mod({"a.nif": "first"}, title="First")
    second = add_mod({"b.nif": "second"}, title="Second")
    loose = add_mod({"c.txt": "c"}, title="Loose")
    service.set_pending(first.uuid, bundled_state())
    service.set_pending(second.uuid, bundled_state())
    service.set_pending(loose.uuid, loose_state(loose, ["c.txt"]))
    events = []

    batch = service.reconcile_all(max_workers=3, on_progress=lambda *e: events.append(e))

    assert [r.uuid for r in batch.results] == [str(first.uuid), str(second.uuid), str(loose.uuid)]
    assert batch.succeeded
    assert batch.summary() == {"ok": 3}
    assert batch.bundle.contributors == [str(first.uuid), str(second.uuid)]
    assert (layout.data_dir / BUNDLED_GENERAL_ARCHIVE).exists()
    assert events[-1][0] == "done"
    assert all(m.current.enabled for m in reload(layout).list())


def test_unchanged_batch_skips_bundle(service, add_mod):
    mod = add_mod({"a.nif": "a"})
    service.set_pending(mod.uuid, bundled_state())
    service.reconcile_all()

    batch = service.reconcile_all()

    assert batch.summary() == {"noop": 1}
    assert batch.bundle is None


def test_disabling_last_bundled_mod_removes_bundle(service, layout, add_mod):
    mod = add_mod({"a.nif": "a"})
    service.set_pending(mod.uuid, bundled_state())
    service.reconcile_all()

    service.set_pending(mod.uuid, bundled_state(enabled=False))
    batch = service.reconcile_all()

    assert batch.bundle.removed == [BUNDLED_GENERAL_ARCHIVE]
    assert not (layout.data_dir / BUNDLED_GENERAL_ARCHIVE).exists()


def test_one_failure_does_not_stop_the_batch(service, packer, add_mod):
    archive_mod = add_mod({"a.nif": "a"}, title="Archive")
    loose_mod = add_mod({"b.txt": "b"}, title="Loose")
    service.set_pending(archive_mod.uuid, archive_state(archive_mod))
    service.set_pending(loose_mod.uuid, loose_state(loose_mod, ["b.txt"]))
    packer.fail = True

    batch = service.reconcile_all()

    assert not batch.succeeded
    assert batch.summary() == {"failed": 1, "ok": 1}
    assert not service.get_mod(archive_mod.uuid).current.enabled
    assert service.get_mod(loose_mod.uuid).current.enabled


def test_cancelled_batch_commits_nothing(service, layout, add_mod):
    mod = add_mod({"a.nif": "a"})
    service.set_pending(mod.uuid, bundled_state())
    token = CancelToken()
    token.cancel()

    batch = service.reconcile_all(cancel=token)

    assert batch.cancelled
    assert batch.bundle is None
    assert batch.results[0].status == ReconcileStatus.CANCELLED
    assert not service.get_mod(mod.uuid).current.enabled


def test_rebuild_bundle_can_be_forced(service, packer, add_mod):
    service.reconcile_all(rebuild_bundle=True)
    assert packer.packed == []

    mod = add_mod({"a.nif": "a"})
    service.set_pending(mod.uuid, archive_state(mod))
    batch = service.reconcile_all(rebuild_bundle=False)
    assert batch.bundle is None


def test_single_bundled_deploy_marks_bundle_dirty(service, layout, add_mod):
    mod = add_mod({"a.nif": "a"})
    service.set_pending(mod.uuid, bundled_state())

    assert service.reconcile_one(mod.uuid).status == ReconcileStatus.OK

    assert service.registry.bundle_dirty
    assert reload(layout).bundle_dirty
    assert not (layout.data_dir / BUNDLED_GENERAL_ARCHIVE).exists()


def test_next_batch_packs_bundle_left_dirty(service, layout, packer, add_mod):
    mod = add_mod({"a.nif": "a"})
    service.set_pending(mod.uuid, bundled_state())
    service.reconcile_one(mod.uuid)
    token = CancelToken()
    token.cancel()
    assert service.reconcile_all(cancel=token).cancelled
    assert service.registry.bundle_dirty

    reopened = ModDeploymentService.open(layout, packer)
    batch = reopened.reconcile_all()

    assert batch.summary() == {"noop": 1}
    assert batch.bundle.contributors == [str(mod.uuid)]
    assert (layout.data_dir / BUNDLED_GENERAL_ARCHIVE).exists()
    assert not reopened.registry.bundle_dirty
    assert not reload(layout).bundle_dirty


def test_failed_bundle_pack_stays_dirty(service, layout, packer, add_mod):
    mod = add_mod({"a.nif": "a"})
    service.set_pending(mod.uuid, bundled_state())
    packer.fail = True

    batch = service.reconcile_all()

    assert batch.bundle.errors
    assert reload(layout).bundle_dirty

    packer.fail = False
    batch = service.reconcile_all()
    assert batch.bundle.archives == [BUNDLED_GENERAL_ARCHIVE]
    assert not service.registry.bundle_dirty


# ── background tasks ─────────────────────────────────────────────────────────

def test_submit_reconcile(service, add_mod):
    mod = add_mod({"a.txt": "a"})
    service.set_pending(mod.uuid, loose_state(mod, ["a.txt"]))

    task_id = service.submit_reconcile(mod.uuid)
    task = service.tasks.wait(task_id, timeout=5)

    assert task.status == "completed"
    assert task.result.status == ReconcileStatus.OK
    assert service.get_mod(mod.uuid).current.method == DeploymentMethod.LOOSE


def test_submit_reconcile_all_reports_progress(service, add_mod):
    mod = add_mod({"a.nif": "a"})
    service.set_pending(mod.uuid, bundled_state())
    finished = threading.Event()

    task_id = service.submit_reconcile_all(on_done=lambda task: finished.set())
    assert finished.wait(5)

    events = service.tasks.drain_events(task_id)
    kinds = [e["event"] for e in events]
    assert kinds[0] == "status"
    assert "progress" in kinds
    assert kinds[-1] == "complete"
    assert events[-1]["data"].succeeded


# ── remote metadata ──────────────────────────────────────────────────────────

class FakeAPI:
    def __init__(self):
        self.calls = []

    def get_mod_info(self, mod_id):
        self.calls.append(mod_id)
        return {"name": "Remote", "version": "4.2"}


def test_fetch_remote_info(service, add_mod):
    api = FakeAPI()
    mod = add_mod({}, url="https://www.nexusmods.com/fallout76/mods/321")

    assert service.fetch_remote_info(mod.uuid, api)["version"] == "4.2"
    assert api.calls == [321]


def test_fetch_remote_info_without_page(service, add_mod):
    api = FakeAPI()
    mod = add_mod({})

    with pytest.raises(NexusAPIError):
        service.fetch_remote_info(mod.uuid, api)
    assert api.calls == []
