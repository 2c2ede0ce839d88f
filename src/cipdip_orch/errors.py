from __future__ import annotations

from enum import StrEnum


class OrchestrationError(RuntimeError):
    """Base class for every error raised by the orchestration core."""


class ValidationError(OrchestrationError):
    """Raised when a manifest or option set is malformed or inconsistent."""

    def __init__(self, field: str, message: str) -> None:
        super().__init__(f"{field}: {message}")
        self.field = field
        self.message = message


class ParseError(ValidationError):
    """Raised when a manifest document cannot be decoded."""

    def __init__(self, path: str, message: str) -> None:
        super().__init__(path, message)
        self.path = path


class TransportErrorKind(StrEnum):
    UNREACHABLE = "unreachable"
    AUTH_FAILED = "auth_failed"
    HOST_KEY_UNTRUSTED = "host_key_untrusted"
    START_FAILED = "start_failed"
    STAGE_FAILED = "stage_failed"


class TransportError(OrchestrationError):
    """Raised when an agent transport cannot reach, stage or start a role."""

    def __init__(
        self,
        kind: TransportErrorKind,
        message: str,
        *,
        role: str | None = None,
        agent: str | None = None,
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.role = role
        self.agent = agent

    def __str__(self) -> str:
        prefix = f"{self.role} " if self.role else ""
        return f"{prefix}transport {self.kind.value}: {self.args[0]}"


class ReadinessError(OrchestrationError):
    """Raised when the server output ends before it reported readiness."""


class ReadinessTimeoutError(ReadinessError):
    """Raised when the server does not report readiness in time."""

    def __init__(self, timeout_seconds: float, method: str) -> None:
        super().__init__(
            f"server not ready after {timeout_seconds:g}s (method {method})"
        )
        self.timeout_seconds = timeout_seconds
        self.method = method


class ExecutionError(OrchestrationError):
    """Raised when a role process exits with a non-zero code."""

    def __init__(self, role: str, exit_code: int, detail: str = "") -> None:
        message = f"{role} exited with code {exit_code}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)
        self.role = role
        self.exit_code = exit_code


class CancellationError(OrchestrationError):
    """Raised at a suspension point once the run has been cancelled."""

    def __init__(self, reason: str = "cancelled") -> None:
        super().__init__(reason)
        self.reason = reason


class BundleError(OrchestrationError):
    """Raised when bundle artifacts cannot be written, opened or verified."""

    def __init__(self, path: str, message: str) -> None:
        super().__init__(f"{path}: {message}")
        self.path = path
