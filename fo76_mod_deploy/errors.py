"""Error taxonomy shared by the registry, the packer and the reconciler."""


class ModManagerError(Exception):
    """Base class for all mod deployment errors."""

    pass


class DataFormatError(ModManagerError):
    """Raised when a persisted mod record is malformed."""

    pass


class FilesystemError(ModManagerError):
    """Raised when a file operation on a mod's artifacts fails."""

    def __init__(self, message: str, path: str | None = None):
        self.path = path
        super().__init__(message)


class ExternalToolError(ModManagerError):
    """Raised when the archive packer is missing or exits with an error."""

    def __init__(self, message: str, returncode: int | None = None, output: str = ""):
        self.returncode = returncode
        self.output = output
        super().__init__(message)


class InvariantViolation(ModManagerError):
    """Raised for operations that would break a state invariant.

    Examples are tearing down a frozen archive or registering a UUID twice.
    """

    pass
