"""
addon_store.exceptions — Error taxonomy for the mock add-on platform.

Every AddonError subclass maps to one HTTP-like status via status_code/code;
the dispatcher turns them into error responses.  CorruptDurableState is the
exception to that rule and must abort the process.
"""


class AddonError(Exception):
    """Base class for errors the dispatcher maps onto a response."""

    status_code = 500
    code = "INTERNAL_ERROR"

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)


class Unauthenticated(AddonError):
    """Raised when a request carries no usable credential."""

    status_code = 401
    code = "UNAUTHORIZED"


class NotFound(AddonError):
    """Raised when a referenced app, resource, attachment or release is absent."""

    status_code = 404
    code = "NOT_FOUND"


class Conflict(AddonError):
    """Raised on a name collision when the request did not ask to overwrite."""

    status_code = 409
    code = "CONFLICT"


class MalformedRequest(AddonError):
    """Raised when a handler cannot use the request body it was given."""

    status_code = 400
    code = "BAD_REQUEST"


class CorruptDurableState(Exception):
    """
    Raised when the persisted blob exists but cannot be read back.

    Never mapped to a response; the process must stop rather than serve an
    empty store in place of the persisted one.

    Attributes:
        path:   Location of the durable blob that failed to load.
        reason: Short description of what was wrong with it.
    """

    def __init__(self, *, path: str, reason: str) -> None:
        self.path = path
        self.reason = reason
        super().__init__(f"Durable state at {path!r} is corrupt: {reason}")
