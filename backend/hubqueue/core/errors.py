"""
Error taxonomy shared by the store, the lock manager and the queue services.

Every error carries the HTTP status and the human message the web layer
returns in the failure envelope, plus whether retrying makes sense.
"""
from typing import Optional


class HubQueueError(Exception):
    """Base class for all HubQueue errors"""
    status_code = 500
    retryable = False
    default_message = "Unexpected error"

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.default_message
        super().__init__(self.message)


# ============ STORE ERRORS ============
class StoreError(HubQueueError):
    """Network or auth failure talking to the file server"""
    status_code = 502
    default_message = "Could not connect to the file server."


class CollectionCorrupted(StoreError):
    """A collection document could not be parsed"""
    default_message = "A data file on the server is corrupted."


class TransitionIncomplete(StoreError):
    """A multi-file update stopped half way; callers must re-fetch"""
    default_message = "The update could not be completed. Please refresh and try again."


class NotFound(HubQueueError):
    status_code = 404
    default_message = "Not found."


class AlreadyExists(HubQueueError):
    status_code = 409
    default_message = "Already exists."


class LockCouldNotAcquire(HubQueueError):
    status_code = 503
    retryable = True
    default_message = "The server is busy. Please try again."


# ============ DOMAIN ERRORS ============
class ValidationError(HubQueueError):
    """A domain rule was violated"""
    status_code = 400
    default_message = "The request is not allowed."


class AlreadyClaimed(ValidationError):
    status_code = 409
    default_message = "This image has already been claimed."


class InvalidTransition(ValidationError):
    status_code = 409
    default_message = "The image is not in a state that allows this action."


class PermissionDenied(ValidationError):
    status_code = 403
    default_message = "You do not have permission to do this."


class ItemNotFound(ValidationError):
    status_code = 404
    default_message = "Image not found in queue."


class LastAdminError(ValidationError):
    default_message = "At least one admin must remain."


class MaintenanceActive(ValidationError):
    status_code = 503
    retryable = True
    default_message = "The system is under maintenance."


# ============ REQUEST ERRORS ============
class AuthenticationRequired(HubQueueError):
    status_code = 401
    default_message = "Authentication required."


class PayloadTooLarge(ValidationError):
    status_code = 413
    default_message = "The upload is too large."


class RequestInvalid(ValidationError):
    """The request body or parameters failed validation"""
    status_code = 422
    default_message = "The request is malformed."


HTTP_STATUS_ERRORS = {
    401: AuthenticationRequired,
    403: PermissionDenied,
    404: NotFound,
    413: PayloadTooLarge,
    422: RequestInvalid,
}


def error_for_status(status_code: int) -> type:
    """Error class reported for a plain HTTP error status"""
    return HTTP_STATUS_ERRORS.get(status_code, HubQueueError)


def error_class(code: Optional[str]) -> type:
    """Error class named `code` in the failure envelope, HubQueueError if unknown"""
    pending = [HubQueueError]
    while pending:
        cls = pending.pop()
        if cls.__name__ == code:
            return cls
        pending.extend(cls.__subclasses__())
    return HubQueueError
