from __future__ import annotations

from enum import IntEnum
from typing import Optional

from requests import RequestException


class ExitCode(IntEnum):
    OK = 0
    CONFIG_ERROR = 2
    FETCH_ERROR = 4
    RUNTIME_ERROR = 5
    ABORTED = 130


class InventoryError(Exception):
    """Base error for the export pipeline."""


class ConfigError(InventoryError):
    """Raised for configuration or argument issues."""


class FetchError(InventoryError):
    """
    Raised when a page of a paged source cannot be retrieved.
    items_fetched counts the records yielded before the failing page, so callers
    can tell a run-fatal first-page failure from a partial result.
    """

    def __init__(self, cause: BaseException, *, stage: str = "paging", items_fetched: int = 0, endpoint: str = "") -> None:
        self.stage = stage
        self.cause = cause
        self.items_fetched = items_fetched
        self.endpoint = endpoint
        where = f" ({endpoint})" if endpoint else ""
        super().__init__(f"{stage} failed{where}: {cause}")


class ResolutionError(InventoryError):
    """Raised by ID-lookup clients when a reference cannot be resolved."""


class NormalizationError(InventoryError):
    """Raised when a source record cannot yield a minimal canonical entity."""

    def __init__(self, message: str, *, record_hint: str = "") -> None:
        self.record_hint = record_hint
        super().__init__(message)


class AssemblyError(InventoryError):
    """Raised when report assembly receives input that violates its contract."""


class ExportError(InventoryError):
    """Raised when writing artifacts fails."""


class RunAborted(InventoryError):
    """Raised when the run-level abort signal is observed."""


class GraphRequestError(InventoryError):
    """Raised when a Microsoft Graph request fails (transport or HTTP status)."""

    def __init__(self, message: str, *, status_code: Optional[int] = None, url: str = "") -> None:
        self.status_code = status_code
        self.url = url
        super().__init__(message)


def as_exit_code(exc: BaseException) -> int:
    if isinstance(exc, (ConfigError, ValueError)):
        return int(ExitCode.CONFIG_ERROR)
    if isinstance(exc, (RunAborted, KeyboardInterrupt)):
        return int(ExitCode.ABORTED)
    if isinstance(exc, (FetchError, GraphRequestError)):
        return int(ExitCode.FETCH_ERROR)
    if isinstance(exc, InventoryError):
        return int(ExitCode.RUNTIME_ERROR)
    return 1


def is_http_error(exc: BaseException) -> bool:
    """
    Return True if the exception is a requests transport error.
    """
    return isinstance(exc, RequestException)


def map_http_error(exc: BaseException, context: str, *, url: str = "") -> GraphRequestError | None:
    """
    Wrap requests transport errors with GraphRequestError for consistent handling.
    """
    if not is_http_error(exc):
        return None
    response = getattr(exc, "response", None)
    status = getattr(response, "status_code", None)
    return GraphRequestError(f"{context}: {exc}", status_code=status, url=url)
