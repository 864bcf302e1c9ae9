"""Error taxonomy shared by the queue runtime and the stage processors."""

from __future__ import annotations


class ResonanceError(Exception):
    """Base class for processing errors; ``retryable`` steers the queue."""

    retryable: bool = True

    def __init__(self, message: str, *, retryable: bool | None = None) -> None:
        super().__init__(message)
        if retryable is not None:
            self.retryable = retryable


class InputMissingError(ResonanceError):
    """A referenced entity (asset, version, track) does not exist."""

    retryable = False

    def __init__(self, entity: str, entity_id: object) -> None:
        super().__init__(f"{entity} {entity_id} not found")
        self.entity = entity
        self.entity_id = entity_id


class InvalidPayloadError(ResonanceError, ValueError):
    """A job payload failed validation."""

    retryable = False


class ExternalToolError(ResonanceError):
    """An external media tool exited non-zero or produced unusable output."""

    def __init__(
        self,
        tool: str,
        message: str,
        *,
        exit_code: int | None = None,
        stderr: str | None = None,
    ) -> None:
        detail = message
        if stderr:
            detail = f"{message}: {stderr.strip()}"
        super().__init__(f"{tool} failed: {detail}")
        self.tool = tool
        self.exit_code = exit_code
        self.stderr = stderr


class StorageError(ResonanceError):
    """Blob storage could not be read or written."""


class JobTimeoutError(ResonanceError):
    """A job exceeded its wall-clock deadline."""

    def __init__(self, queue_name: str, timeout_s: float) -> None:
        super().__init__(f"{queue_name} job exceeded {timeout_s:g}s deadline")
        self.queue_name = queue_name
        self.timeout_s = timeout_s


class QueueUnavailableError(ResonanceError):
    """The durable queue store cannot be reached; raised to enqueue callers."""


__all__ = [
    "ExternalToolError",
    "InputMissingError",
    "InvalidPayloadError",
    "JobTimeoutError",
    "QueueUnavailableError",
    "ResonanceError",
    "StorageError",
]
