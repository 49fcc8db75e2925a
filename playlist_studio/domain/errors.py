from typing import List, Optional


class TokenExpired(Exception):
    """The catalog service rejected the bearer token (HTTP 401)."""

    code = "token_expired"

    def __init__(self, message: str = "Access token expired") -> None:
        super().__init__(message)


class InvalidRequest(Exception):
    """Malformed input caught before any network call or state change."""


class RemoteRejection(Exception):
    """The catalog service refused the request with a non-auth 4xx status."""

    def __init__(self, status: int, message: str, details: str = "") -> None:
        super().__init__(message)
        self.status = status
        self.details = details


class NotFound(RemoteRejection):
    """Requested resource was not found."""

    def __init__(self, message: str = "Playlist not found.", details: str = "") -> None:
        super().__init__(404, message, details)


class RateLimited(Exception):
    """Operation was rate limited by provider. Includes suggested wait time in milliseconds."""

    def __init__(self, retry_after_ms: int, message: str = "Rate limited") -> None:
        super().__init__(message)
        self.retry_after_ms = retry_after_ms


class TemporaryFailure(Exception):
    """Transient provider or network failure. Retrying may succeed."""


class PartialBatchFailure(Exception):
    """A multi-batch write failed part-way; batches already sent are not undone."""

    def __init__(self, message: str, completed: int, total: int,
                 snapshot_id: Optional[str] = None,
                 failed_batches: Optional[List[int]] = None,
                 cause: Optional[BaseException] = None) -> None:
        super().__init__(message)
        self.completed = completed
        self.total = total
        self.snapshot_id = snapshot_id
        self.failed_batches = failed_batches or []
        self.cause = cause


class FetchCancelled(Exception):
    """A cache fetch was cancelled to protect an optimistic write."""

    def __init__(self, playlist_id: str) -> None:
        super().__init__(f"Fetch cancelled for playlist {playlist_id}")
        self.playlist_id = playlist_id
