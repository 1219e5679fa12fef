"""
Error taxonomy shared by the core and the HTTP layer.

Each error carries the HTTP status it maps onto and a client-facing detail
message. Anything that is not a `KidizenError` is reported as a generic 500.
"""

from __future__ import annotations

SERVER_ERROR = "An internal server error has occurred."
INVALID_ID = "All IDs must be positive integers."
INVALID_PROPERTIES = "At least one parameter was missing, invalid, or extraneous."
INVALID_UPDATE = "No valid parameter was included or at least 1 parameter was invalid."
INVALID_IMAGE_URL = (
    "The image URL provided is improperly formatted, the image does not exist, "
    "or the image is not in an acceptable format"
)
NO_SUCH_COLLECTION = "The collection you are seeking does not exist."
ITEM_NOT_FOUND = "The item you requested could not be found."
ANCESTOR_NOT_FOUND = "The project with project_id cannot be found."
TEACHER_NOT_FOUND = "The teacher with teacher_id cannot be found."
CREDENTIAL_NOT_FOUND = (
    "No credentials could be found on file for the teacher whose credentials were provided."
)
INVALID_CURSOR = "The start cursor provided is not a valid cursor."


class KidizenError(RuntimeError):
    status_code = 500
    default_detail = SERVER_ERROR

    def __init__(self, detail: str | None = None):
        self.detail = detail or self.default_detail
        super().__init__(self.detail)


class ValidationFailed(KidizenError):
    status_code = 400
    default_detail = INVALID_PROPERTIES


class Malformed(KidizenError):
    status_code = 400
    default_detail = "The authorization credentials included could not be parsed"


class Unauthenticated(KidizenError):
    status_code = 401
    default_detail = "Authorization is required to access this endpoint."


class Forbidden(KidizenError):
    status_code = 403
    default_detail = "The teacher whose authorization credentials were provided does not own this resource."


class NotFound(KidizenError):
    status_code = 404
    default_detail = ITEM_NOT_FOUND


class Conflict(KidizenError):
    status_code = 409
    default_detail = INVALID_CURSOR


class UnprocessableImage(KidizenError):
    status_code = 400
    default_detail = INVALID_IMAGE_URL


class StorageError(KidizenError):
    """Failure of the entity store or blob backend. Never shown verbatim."""

    status_code = 500

    def __init__(self, message: str | None = None):
        # Keep the internal message for logs; clients only see SERVER_ERROR.
        super().__init__(None)
        self.message = message or SERVER_ERROR

    def __str__(self) -> str:
        return self.message
