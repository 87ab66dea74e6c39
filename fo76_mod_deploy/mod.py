"""Managed mod records."""

import copy
import uuid as uuid_lib
import xml.etree.ElementTree as ET

from .disk_state import DiskState
from .errors import DataFormatError
from .nexus import mod_id_from_url

DEFAULT_TITLE = "Untitled"
DEFAULT_VERSION = "1.0"


class ManagedMod:
    """
    A mod known to the manager.

    `current` describes how the mod's files are deployed right now and is only
    replaced by the reconciler after a successful deployment. `pending`
    describes how they should be deployed next time and is edited freely.
    """

    def __init__(
        self,
        title: str = DEFAULT_TITLE,
        version: str = DEFAULT_VERSION,
        url: str = "",
        mod_uuid: uuid_lib.UUID | None = None,
    ):
        self._uuid = mod_uuid or uuid_lib.uuid4()
        self.current = DiskState(managed_folder_name=str(self._uuid))
        self.pending = DiskState(managed_folder_name=str(self._uuid))
        self.title = title
        self.version = version
        self.url = url

    @property
    def uuid(self) -> uuid_lib.UUID:
        return self._uuid

    @property
    def managed_folder_name(self) -> str:
        return str(self._uuid)

    @property
    def title(self) -> str:
        return self._title

    @title.setter
    def title(self, value: str) -> None:
        value = (value or "").strip()
        self._title = value if value else DEFAULT_TITLE

    @property
    def url(self) -> str:
        return self._url

    @url.setter
    def url(self, value: str) -> None:
        self._url = value or ""
        self.nexus_id = mod_id_from_url(self._url)

    @property
    def is_dirty(self) -> bool:
        return not self.current.is_equivalent(self.pending)

    def create_deep_copy(self) -> "ManagedMod":
        return copy.deepcopy(self)

    def __repr__(self) -> str:
        return f"ManagedMod({self.title!r}, uuid={self._uuid})"

    def to_xml(self) -> ET.Element:
        mod_el = ET.Element("Mod", uuid=str(self._uuid))
        ET.SubElement(mod_el, "Title").text = self.title
        ET.SubElement(mod_el, "Version").text = self.version

        nexus_el = ET.SubElement(mod_el, "NexusMods", id=str(self.nexus_id))
        ET.SubElement(nexus_el, "URL").text = self.url

        self.current.to_xml(ET.SubElement(mod_el, "CurrentDiskState"))
        self.pending.to_xml(ET.SubElement(mod_el, "PendingDiskState"))
        return mod_el

    @classmethod
    def from_xml(cls, element: ET.Element) -> "ManagedMod":
        """
        Parse a <Mod> element.

        Raises:
            DataFormatError: if the record is malformed.
        """
        raw_uuid = element.get("uuid")
        try:
            mod_uuid = uuid_lib.UUID(raw_uuid or "")
        except ValueError:
            raise DataFormatError(f"Invalid mod uuid: {raw_uuid}")

        nexus_el = element.find("NexusMods")
        mod = cls(
            title=element.findtext("Title", ""),
            version=element.findtext("Version", DEFAULT_VERSION),
            url=nexus_el.findtext("URL", "") if nexus_el is not None else "",
            mod_uuid=mod_uuid,
        )

        for tag, attr in (("CurrentDiskState", "current"), ("PendingDiskState", "pending")):
            state_el = element.find(tag)
            if state_el is None:
                raise DataFormatError(f"Missing element <{tag}> in mod {mod_uuid}")
            state = DiskState.from_xml(state_el)
            if state.managed_folder_name != mod.managed_folder_name:
                raise DataFormatError(
                    f"{tag} of mod {mod_uuid} points at foreign folder "
                    f"'{state.managed_folder_name}'"
                )
            setattr(mod, attr, state)

        return mod
