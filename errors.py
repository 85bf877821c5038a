"""
Error taxonomy for the transport dispatch API.

Every error carries the HTTP status it is surfaced with; main.py renders
them as {"message": ...}.
"""


class DispatchError(Exception):
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(DispatchError):
    """Malformed or missing request fields."""
    status_code = 400


class ResourceNotFound(DispatchError):
    status_code = 404


class ResourceUnavailable(DispatchError):
    """Business-rule rejection: resource busy or too small."""
    status_code = 400


class StorageFailure(DispatchError):
    status_code = 500


class UpstreamError(DispatchError):
    status_code = 502
