"""
Errors — typed failure taxonomy for pipeline steps.

Every step either returns an updated receipt or raises one of these.
The orchestrator catches ``PipelineError`` at the top, moves the run to
FAILED and records ``kind`` / ``step`` / ``message`` / ``retryable``.
"""
from enum import Enum, unique
from typing import Optional


@unique
class ErrorKind(str, Enum):
    CONFIGURATION = "CONFIGURATION"
    PROVISIONING = "PROVISIONING"
    COMPILATION = "COMPILATION"
    ASSEMBLY = "ASSEMBLY"


class PipelineError(Exception):
    """Base class for every fatal pipeline failure."""

    kind: ErrorKind = ErrorKind.CONFIGURATION
    retryable: bool = False

    def __init__(self, message: str, step: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.step = step

    def __str__(self) -> str:
        if self.step:
            return f"[{self.step}] {self.message}"
        return self.message


# ── (a) configuration ────────────────────────────────────────────────────────

class ConfigurationError(PipelineError):
    kind = ErrorKind.CONFIGURATION


class UnsupportedArchitectureError(ConfigurationError):
    """Raised when a machine identifier matches no resolver table entry."""

    def __init__(self, value: str, supported: Optional[list] = None):
        self.value = value
        self.supported = supported or []
        msg = f"unsupported architecture: {value!r}"
        if self.supported:
            msg += f" (supported: {', '.join(self.supported)})"
        super().__init__(msg, step="resolve_toolchain")


# ── (b) provisioning ─────────────────────────────────────────────────────────

class ProvisioningError(PipelineError):
    kind = ErrorKind.PROVISIONING


class InstallerFetchError(ProvisioningError):
    """Network failure while downloading the toolchain installer."""
    retryable = True


class ToolchainInstallError(ProvisioningError):
    pass


class PackageInstallError(ProvisioningError):
    pass


# ── (c) compilation ──────────────────────────────────────────────────────────

class CompilationError(PipelineError):
    kind = ErrorKind.COMPILATION


# ── (d) assembly ─────────────────────────────────────────────────────────────

class AssemblyError(PipelineError):
    kind = ErrorKind.ASSEMBLY


class IllegalTransitionError(RuntimeError):
    """Programming error: the orchestrator tried to skip or rewind a state."""
