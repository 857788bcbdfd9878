"""Exception hierarchy for the WMH segmentation pipeline.

Every failure raised by the orchestrator derives from :class:`WMHSegError`,
which records the pipeline stage, the backend (when one is involved) and the
exit status of the underlying external tool.
"""

from typing import Optional


class WMHSegError(Exception):
    """Base error carrying stage, backend and tool exit status.

    Attributes:
        stage: Pipeline stage where the error occurred (e.g. "preprocessing").
        backend: Backend identifier, if the error belongs to a backend branch.
        returncode: Exit status of the failing external tool, if any.
    """

    def __init__(
        self,
        message: str,
        stage: Optional[str] = None,
        backend: Optional[str] = None,
        returncode: Optional[int] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.stage = stage
        self.backend = backend
        self.returncode = returncode

    def __str__(self) -> str:
        context = []
        if self.stage:
            context.append(f"stage={self.stage}")
        if self.backend:
            context.append(f"backend={self.backend}")
        if self.returncode is not None:
            context.append(f"exit={self.returncode}")
        if context:
            return f"{self.message} [{', '.join(context)}]"
        return self.message


class ConfigurationError(WMHSegError):
    """Raised when configuration is invalid or incomplete."""

    def __init__(self, message: str) -> None:
        super().__init__(message, stage="configuration")


class UsageError(WMHSegError):
    """Raised for missing or invalid command-line arguments."""

    def __init__(self, message: str) -> None:
        super().__init__(message, stage="usage")


class InputNotFound(WMHSegError):
    """Raised when an input image path does not resolve to a regular file."""

    def __init__(self, message: str) -> None:
        super().__init__(message, stage="validate_inputs")


class WorkspaceStateError(WMHSegError):
    """Raised when an artifact expected from a prior stage is missing."""

    pass


class ImageReadError(WMHSegError):
    """Raised when a file cannot be read as a NIfTI image (corrupt, truncated, wrong format)."""

    def __init__(self, message: str, path: Optional[str] = None) -> None:
        super().__init__(message, stage="image_io")
        self.path = path


class ExternalToolFailure(WMHSegError):
    """Raised when an external tool fails, times out or produces no output.

    Attributes:
        tool: Name of the tool that failed.
        stdout: Captured standard output, if any.
        stderr: Captured standard error, if any.
    """

    def __init__(
        self,
        message: str,
        tool: str,
        returncode: Optional[int] = None,
        stdout: str = "",
        stderr: str = "",
        stage: Optional[str] = None,
        backend: Optional[str] = None,
    ) -> None:
        super().__init__(message, stage=stage, backend=backend, returncode=returncode)
        self.tool = tool
        self.stdout = stdout
        self.stderr = stderr


class PreprocessingFailed(WMHSegError):
    """Raised when the preprocessing stage aborts."""

    def __init__(self, message: str, returncode: Optional[int] = None) -> None:
        super().__init__(message, stage="preprocessing", returncode=returncode)


class BackendFailed(WMHSegError):
    """Raised when a segmentation backend branch aborts."""

    def __init__(self, backend: str, message: str, returncode: Optional[int] = None) -> None:
        super().__init__(message, stage="segmentation", backend=backend, returncode=returncode)
