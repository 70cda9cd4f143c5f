"""
WimForge Error Taxonomy
Exceptions raised inside the image pipeline and converted to boolean
results at every public operation boundary
"""

from typing import Optional


class WimForgeError(Exception):
    """Base class for all WimForge pipeline errors"""

    def __init__(self, message: str, path: Optional[str] = None):
        super().__init__(message)
        self.path = path

    def __str__(self) -> str:
        message = super().__str__()
        if self.path:
            return f"{message} ({self.path})"
        return message


class ValidationError(WimForgeError):
    """Bad input path, extension or size"""


class ResourceUnavailableError(WimForgeError):
    """A required external tool is absent and could not be provisioned"""


class ResourceBusyError(WimForgeError):
    """The exclusive servicing session is held by another caller"""


class OperationCancelledError(ResourceBusyError):
    """A wait for an exclusive resource or child process was cancelled"""


class InsufficientSpaceError(WimForgeError):
    """Not enough free disk space for the requested operation"""

    def __init__(self, operation: str, path: str, required_bytes: int, available_bytes: int):
        super().__init__(
            f"{operation} needs {required_bytes / (1024 ** 3):.2f} GB, "
            f"only {available_bytes / (1024 ** 3):.2f} GB free",
            path
        )
        self.operation = operation
        self.required_bytes = required_bytes
        self.available_bytes = available_bytes


class ProcessFailureError(WimForgeError):
    """External tool exited non-zero or produced unparsable output"""

    def __init__(self, executable: str, exit_code: Optional[int], output: str = ""):
        if exit_code is None:
            message = f"{executable} could not be started"
        else:
            message = f"{executable} failed with exit code: {exit_code}"
        super().__init__(message)
        self.executable = executable
        self.exit_code = exit_code
        self.output = output


class FilesystemError(WimForgeError):
    """I/O failure during copy, delete or attribute changes"""
