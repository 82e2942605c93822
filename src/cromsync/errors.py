from __future__ import annotations

from typing import Any, Optional


class CromSyncError(Exception):
    def __init__(self, code: str, message: str, details: Optional[dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"


class QuotaExhausted(CromSyncError):
    """Scheduling signal: the API refused the request until the quota resets."""

    def __init__(
        self,
        message: str = "Rate limit quota exhausted.",
        budget: Any = None,
        batch_number: Optional[int] = None,
        cursor: Optional[str] = None,
    ) -> None:
        super().__init__("QUOTA_EXHAUSTED", message, {"batch_number": batch_number, "cursor": cursor})
        self.budget = budget
        self.batch_number = batch_number
        self.cursor = cursor


class FetchError(CromSyncError):
    def __init__(
        self,
        code: str,
        message: str,
        batch_number: Optional[int] = None,
        cursor: Optional[str] = None,
        status: Optional[int] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        merged = {"batch_number": batch_number, "cursor": cursor, "status": status}
        merged.update(details or {})
        super().__init__(code, message, merged)
        self.batch_number = batch_number
        self.cursor = cursor
        self.status = status


class TransientFetchError(FetchError):
    def __init__(self, message: str, **kwargs: Any) -> None:
        super().__init__("TRANSIENT_FETCH", message, **kwargs)


class MalformedResponseError(FetchError):
    def __init__(self, message: str, **kwargs: Any) -> None:
        super().__init__("MALFORMED_RESPONSE", message, **kwargs)


class CheckpointCorruptionError(CromSyncError):
    def __init__(self, path: Any, message: str, details: Optional[dict[str, Any]] = None) -> None:
        merged = {"path": str(path)}
        merged.update(details or {})
        super().__init__("CHECKPOINT_CORRUPT", message, merged)
        self.path = path


class FatalPullError(CromSyncError):
    def __init__(self, code: str, message: str, details: Optional[dict[str, Any]] = None, cause=None) -> None:
        super().__init__(code, message, details)
        self.cause = cause


class ConfigurationError(FatalPullError):
    pass
