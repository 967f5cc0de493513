"""Domain errors raised by the lifecycle engines.

Each error carries the HTTP status and public message the API returns for it,
so routers never translate errors by hand.
"""


class LifecycleError(Exception):
    """Base class for expected, user-facing lifecycle failures."""

    status_code: int = 400
    public_message: str = "Request could not be processed"

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.public_message
        super().__init__(self.message)


class InvalidTokenError(LifecycleError):
    status_code = 400
    public_message = "Invalid or expired verification token"


class AlreadyRespondedError(LifecycleError):
    status_code = 409
    public_message = "This verification link has already been used"


class InvalidOrExpiredCodeError(LifecycleError):
    """Unknown, expired, or closed-session unlock code.

    One message for every case so callers cannot probe which codes exist.
    """

    status_code = 400
    public_message = "Invalid or expired code"

    def __init__(self) -> None:
        super().__init__(self.public_message)


class CodeAlreadyUsedError(LifecycleError):
    status_code = 409
    public_message = "This code has already been used"


class AlreadyDownloadedError(LifecycleError):
    status_code = 403
    public_message = "The will package has already been downloaded"


class NotFoundError(LifecycleError):
    status_code = 404
    public_message = "Not found"


class InvalidStateError(LifecycleError):
    status_code = 409
    public_message = "Operation not allowed in the current state"


class TransientStoreError(LifecycleError):
    """Storage or datastore hiccup; the operation is safe to retry."""

    status_code = 503
    public_message = "Temporarily unavailable, please retry"


class StoragePathError(LifecycleError):
    """A stored path points outside the storage root; retrying will not help."""

    status_code = 500
    public_message = "Stored file reference is invalid"
