"""
Shared exceptions for bookmark sync operations.

Every failure on the mutation and refresh paths is surfaced to the caller as one
of these kinds. None of them is fatal: in-memory state is left as it was.
"""


class BookmarkSyncError(Exception):
    """Base class for all user-visible bookmark sync failures."""

    def __init__(self, message: str) -> None:
        super().__init__(message)


class ValidationError(BookmarkSyncError):
    """
    Raised when caller-supplied input is malformed.

    Recoverable by correcting the input. Raised before the backing store is
    contacted, so no row is written and no refresh is triggered.
    """

    def __init__(self, message: str, field: str | None = None) -> None:
        self.field = field
        super().__init__(message)


class DuplicateError(BookmarkSyncError):
    """
    Raised when the owner already has a live bookmark with the same URL.

    Covers both the pre-insert duplicate check and the backing store's unique
    index rejecting a concurrent insert.
    """

    def __init__(self, url: str) -> None:
        self.url = url
        super().__init__(f"A bookmark with URL '{url}' already exists")


class NotFoundOrForbiddenError(BookmarkSyncError):
    """
    Raised when an update or delete matches zero rows.

    The row is either absent or owned by someone else. A concurrent delete that
    won the race produces the same outcome, so callers should treat it as benign.
    """

    def __init__(self, bookmark_id: str) -> None:
        self.bookmark_id = bookmark_id
        super().__init__(f"Bookmark not found or not owned by user: {bookmark_id}")


class TransientNetworkError(BookmarkSyncError):
    """Raised when the backing store or identity source cannot be reached."""

    def __init__(self, message: str, source: str = "backing store") -> None:
        self.source = source
        super().__init__(f"{source} unavailable: {message}")


class NotAuthenticatedError(BookmarkSyncError):
    """Raised when a mutation is attempted without an active identity."""

    def __init__(self) -> None:
        super().__init__("No active session - sign in to manage bookmarks")
