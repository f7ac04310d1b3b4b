"""Domain errors for pgclusters."""

from typing import Optional


class ClusterError(RuntimeError):
    """Raised when a cluster operation cannot continue safely."""


class UsageError(ClusterError):
    """Malformed command line arguments."""


class ValidationError(ClusterError):
    """A precondition does not hold; nothing has been changed yet."""


class ClusterMissingInfo(ValidationError):
    """The cluster configuration cannot be read."""


class OwnershipMismatch(ValidationError):
    """The data or configuration directory has an invalid owner."""


class MalformedConfiguration(ClusterError):
    """A configuration file does not follow the expected format."""


class MalformedLine(MalformedConfiguration):
    """A single configuration line could not be parsed."""

    def __init__(self, path: str, line_number: int, line: str):
        super().__init__(f"invalid line {line_number} in {path}: {line}")
        self.path = path
        self.line_number = line_number
        self.line = line


class ExternalToolFailure(ClusterError):
    """A delegated PostgreSQL tool failed."""

    def __init__(self, message: str, tool: Optional[str] = None, returncode: Optional[int] = None):
        super().__init__(message)
        self.tool = tool
        self.returncode = returncode


class FilesystemError(ClusterError):
    """A filesystem operation failed."""

    def __init__(self, message: str, path: Optional[str] = None):
        super().__init__(message)
        self.path = path
