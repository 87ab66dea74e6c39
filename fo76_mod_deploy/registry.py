"""Registry of managed mods, persisted as an XML document."""

import logging
import os
import threading
import uuid as uuid_lib
import xml.etree.ElementTree as ET
from dataclasses import dataclass
from pathlib import Path

from .disk_state import DiskState
from .errors import DataFormatError, InvariantViolation, ModManagerError
from .mod import ManagedMod

logger = logging.getLogger(__name__)

ROOT_TAG = "Mods"
BUNDLE_DIRTY_ATTR = "bundleDirty"

ModKey = str | uuid_lib.UUID


class ModNotFoundError(ModManagerError, KeyError):
    """Raised when no mod with the requested UUID is registered."""

    pass


@dataclass
class LoadError:
    """A record that was skipped while loading the document."""

    index: int
    uuid: str | None
    message: str


def _key(mod_uuid: ModKey) -> str:
    return str(mod_uuid).lower()


class ModRegistry:
    """
    Ordered store of managed mods.

    All accessors hand out deep copies, so callers can never mutate the stored
    records behind the registry's back. Writes to the document are serialized.
    """

    def __init__(self, path: Path):
        self.path = Path(path)
        self.load_errors: list[LoadError] = []
        self._mods: dict[str, ManagedMod] = {}
        self._bundle_dirty = False
        self._lock = threading.RLock()
        self._save_lock = threading.Lock()

    def exists(self) -> bool:
        """Check if the document exists."""
        return self.path.exists()

    def load(self) -> None:
        """
        Load all mods from the document.

        Malformed records are skipped and listed in `load_errors`.

        Raises:
            DataFormatError: if the document itself is not readable XML.
        """
        if not self.path.exists():
            raise DataFormatError(f"No mod registry found at {self.path}")

        try:
            root = ET.parse(self.path).getroot()
        except ET.ParseError as e:
            raise DataFormatError(f"Invalid mod registry {self.path}: {e}")

        mods: dict[str, ManagedMod] = {}
        errors: list[LoadError] = []
        for index, mod_el in enumerate(root.findall("Mod")):
            raw_uuid = mod_el.get("uuid")
            try:
                mod = ManagedMod.from_xml(mod_el)
                if _key(mod.uuid) in mods:
                    raise InvariantViolation(f"Duplicate mod uuid: {mod.uuid}")
            except (DataFormatError, InvariantViolation) as e:
                logger.warning("Skipping mod record #%d (%s): %s", index, raw_uuid, e)
                errors.append(LoadError(index, raw_uuid, str(e)))
                continue
            mods[_key(mod.uuid)] = mod

        with self._lock:
            self._mods = mods
            self._bundle_dirty = root.get(BUNDLE_DIRTY_ATTR, "false").strip().lower() == "true"
            self.load_errors = errors
        logger.debug("Loaded %d mod(s) from %s", len(mods), self.path)

    def save(self) -> None:
        """Write the document atomically. Concurrent saves run one after another."""
        with self._save_lock:
            with self._lock:
                root = ET.Element(ROOT_TAG)
                root.set(BUNDLE_DIRTY_ATTR, "true" if self._bundle_dirty else "false")
                for mod in self._mods.values():
                    root.append(mod.to_xml())

            ET.indent(root)
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = self.path.with_name(self.path.name + ".tmp")
            ET.ElementTree(root).write(tmp_path, encoding="utf-8", xml_declaration=True)
            os.replace(tmp_path, self.path)
            logger.debug("Saved %d mod(s) to %s", len(root), self.path)

    @property
    def bundle_dirty(self) -> bool:
        """Committed changes of bundled mods are not packed into the shared archives yet."""
        with self._lock:
            return self._bundle_dirty

    def set_bundle_dirty(self, dirty: bool) -> None:
        with self._lock:
            self._bundle_dirty = dirty

    def __len__(self) -> int:
        with self._lock:
            return len(self._mods)

    def __contains__(self, mod_uuid: ModKey) -> bool:
        with self._lock:
            return _key(mod_uuid) in self._mods

    def list(self) -> list[ManagedMod]:
        """Snapshots of all mods, in registry order."""
        with self._lock:
            return [mod.create_deep_copy() for mod in self._mods.values()]

    def get(self, mod_uuid: ModKey) -> ManagedMod:
        """Snapshot of one mod."""
        with self._lock:
            return self._require(mod_uuid).create_deep_copy()

    def add(self, mod: ManagedMod) -> None:
        """Register a new mod. A UUID that is already taken is refused."""
        with self._lock:
            key = _key(mod.uuid)
            if key in self._mods:
                raise InvariantViolation(f"A mod with uuid {mod.uuid} is already registered")
            self._mods[key] = mod.create_deep_copy()

    def update_info(
        self,
        mod_uuid: ModKey,
        title: str | None = None,
        version: str | None = None,
        url: str | None = None,
    ) -> None:
        """Change a mod's metadata. Disk states are left alone."""
        with self._lock:
            mod = self._require(mod_uuid)
            if title is not None:
                mod.title = title
            if version is not None:
                mod.version = version
            if url is not None:
                mod.url = url

    def set_pending(self, mod_uuid: ModKey, state: DiskState) -> None:
        with self._lock:
            mod = self._require(mod_uuid)
            mod.pending = state.create_deep_copy()

    def commit(self, mod_uuid: ModKey, state: DiskState) -> None:
        """Record `state` as what is now deployed for the mod."""
        with self._lock:
            mod = self._require(mod_uuid)
            mod.current = state.create_deep_copy()

    def remove(self, mod_uuid: ModKey) -> None:
        with self._lock:
            self._require(mod_uuid)
            del self._mods[_key(mod_uuid)]

    def _require(self, mod_uuid: ModKey) -> ManagedMod:
        mod = self._mods.get(_key(mod_uuid))
        if mod is None:
            raise ModNotFoundError(f"No mod with uuid {mod_uuid}")
        return mod
