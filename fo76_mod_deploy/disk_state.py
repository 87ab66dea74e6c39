"""Deployment state of a single mod on disk."""

import copy
import xml.etree.ElementTree as ET
from dataclasses import dataclass, field
from enum import Enum

from .errors import DataFormatError
from .paths import ARCHIVE_EXTENSION, sanitize_filename

DEFAULT_ARCHIVE_NAME = "untitled.ba2"


class DeploymentMethod(str, Enum):
    """
    How a mod gets deployed.

    LOOSE        - copy files over without packing
    BUNDLED_BA2  - bundle them with other mods in one shared archive
    SEPARATE_BA2 - pack them into an archive of their own
    """

    LOOSE = "Loose"
    BUNDLED_BA2 = "BundledBA2"
    SEPARATE_BA2 = "SeparateBA2"


class ArchiveFormat(str, Enum):
    AUTO = "Auto"
    GENERAL = "General"
    TEXTURES = "Textures"


class ArchiveCompression(str, Enum):
    AUTO = "Auto"
    COMPRESSED = "Compressed"
    UNCOMPRESSED = "Uncompressed"


@dataclass
class LooseDeployment:
    """Files copied uncompressed into `root_folder`, in overwrite order."""

    root_folder: str = ""
    files: list[str] = field(default_factory=list)

    method = DeploymentMethod.LOOSE

    def add_file(self, path: str) -> None:
        self.files.append(path)

    def clear_files(self) -> None:
        self.files.clear()


@dataclass
class BundledDeployment:
    """Files staged for the shared bundled archive."""

    method = DeploymentMethod.BUNDLED_BA2


@dataclass
class SeparateArchive:
    """Files packed into an archive owned by this mod alone."""

    archive_name: str = DEFAULT_ARCHIVE_NAME
    format: ArchiveFormat = ArchiveFormat.AUTO
    compression: ArchiveCompression = ArchiveCompression.AUTO
    frozen: bool = False

    method = DeploymentMethod.SEPARATE_BA2

    def __post_init__(self) -> None:
        self.archive_name = sanitize_filename(self.archive_name, ARCHIVE_EXTENSION)

    def set_archive_name(self, raw: str) -> bool:
        """Sanitize and store a new archive name. Blank input is ignored."""
        if not raw.strip():
            return False
        self.archive_name = sanitize_filename(raw, ARCHIVE_EXTENSION)
        return True


DeploymentTarget = LooseDeployment | BundledDeployment | SeparateArchive

_TARGET_TYPES: dict[DeploymentMethod, type] = {
    DeploymentMethod.LOOSE: LooseDeployment,
    DeploymentMethod.BUNDLED_BA2: BundledDeployment,
    DeploymentMethod.SEPARATE_BA2: SeparateArchive,
}


@dataclass
class DiskState:
    """
    Current or desired deployment of one mod.

    The deployment target is a tagged union keyed by `method`, so fields that
    only apply to one deployment method only exist on that variant.
    """

    managed_folder_name: str = ""
    enabled: bool = False
    target: DeploymentTarget = field(default_factory=BundledDeployment)

    @property
    def method(self) -> DeploymentMethod:
        return self.target.method

    @property
    def loose(self) -> LooseDeployment | None:
        return self.target if isinstance(self.target, LooseDeployment) else None

    @property
    def archive(self) -> SeparateArchive | None:
        return self.target if isinstance(self.target, SeparateArchive) else None

    @property
    def loose_files(self) -> list[str]:
        """Files owned by a loose deployment; empty for anything else or when disabled."""
        if self.enabled and isinstance(self.target, LooseDeployment):
            return self.target.files
        return []

    @property
    def frozen(self) -> bool:
        return isinstance(self.target, SeparateArchive) and self.target.frozen

    def switch_method(self, method: DeploymentMethod) -> None:
        """Replace the target with a default variant, unless it already matches."""
        if self.method != method:
            self.target = _TARGET_TYPES[method]()

    def normalize(self) -> None:
        """Drop loose files from a disabled state."""
        if not self.enabled and isinstance(self.target, LooseDeployment):
            self.target.clear_files()

    def is_equivalent(self, other: "DiskState") -> bool:
        """True if moving from one state to the other needs no redeployment."""
        if self.enabled != other.enabled or self.method != other.method:
            return False
        if isinstance(self.target, LooseDeployment):
            return (
                self.target.root_folder == other.target.root_folder
                and self.loose_files == other.loose_files
            )
        return self.target == other.target

    def create_deep_copy(self) -> "DiskState":
        return copy.deepcopy(self)

    def to_xml(self, parent: ET.Element) -> ET.Element:
        """Serialize into `parent` (CurrentDiskState or PendingDiskState)."""
        parent.set("enabled", _format_bool(self.enabled))
        ET.SubElement(parent, "DeploymentMethod").text = self.method.value
        ET.SubElement(parent, "ManagedFolder").text = self.managed_folder_name

        target = self.target
        if isinstance(target, LooseDeployment):
            ET.SubElement(parent, "Destination").text = target.root_folder or ""
            if self.enabled:
                files = ET.SubElement(parent, "Files")
                for path in target.files:
                    ET.SubElement(files, "File", path=path)

        elif isinstance(target, SeparateArchive):
            archive = ET.SubElement(parent, "Archive", frozen=_format_bool(target.frozen))
            ET.SubElement(archive, "Format").text = target.format.value
            ET.SubElement(archive, "Compression").text = target.compression.value
            ET.SubElement(archive, "ArchiveName").text = target.archive_name

        return parent

    @classmethod
    def from_xml(cls, element: ET.Element) -> "DiskState":
        """
        Parse a serialized disk state.

        Raises:
            DataFormatError: on invalid booleans, an unknown deployment method
                or missing required elements. Unknown archive formats and
                compressions fall back to Auto.
        """
        state = cls(
            managed_folder_name=_required_text(element, "ManagedFolder"),
            enabled=_parse_bool(_required_attr(element, "enabled"), "enabled"),
        )

        method_token = _required_text(element, "DeploymentMethod")
        try:
            method = DeploymentMethod(method_token)
        except ValueError:
            raise DataFormatError(f"Invalid mod deployment method: {method_token}")

        if method == DeploymentMethod.LOOSE:
            loose = LooseDeployment(root_folder=_required_text(element, "Destination"))
            files = element.find("Files")
            if state.enabled and files is not None:
                for file_el in files.iter("File"):
                    path = file_el.get("path")
                    if path is not None:
                        loose.add_file(path)
            state.target = loose

        elif method == DeploymentMethod.SEPARATE_BA2:
            archive_el = element.find("Archive")
            if archive_el is None:
                raise DataFormatError("Missing element: Archive")
            archive = SeparateArchive(
                format=_parse_enum(ArchiveFormat, archive_el.findtext("Format")),
                compression=_parse_enum(ArchiveCompression, archive_el.findtext("Compression")),
                frozen=_parse_bool(_required_attr(archive_el, "frozen"), "frozen"),
            )
            archive.set_archive_name(_required_text(archive_el, "ArchiveName"))
            state.target = archive

        else:
            state.target = BundledDeployment()

        return state


def _format_bool(value: bool) -> str:
    return "true" if value else "false"


def _parse_bool(value: str, name: str) -> bool:
    token = value.strip().lower()
    if token == "true":
        return True
    if token == "false":
        return False
    raise DataFormatError(f"Invalid '{name}' value: {value}")


def _parse_enum(enum_cls, token: str | None):
    try:
        return enum_cls((token or "").strip())
    except ValueError:
        return enum_cls.AUTO


def _required_attr(element: ET.Element, name: str) -> str:
    value = element.get(name)
    if value is None:
        raise DataFormatError(f"Missing attribute '{name}' on <{element.tag}>")
    return value


def _required_text(element: ET.Element, tag: str) -> str:
    child = element.find(tag)
    if child is None:
        raise DataFormatError(f"Missing element <{tag}> in <{element.tag}>")
    return child.text or ""
