"""
Error taxonomy for the session coordinator
"""


class CoordinatorError(Exception):
    """Base class for failures contained to a single operation"""

    code = "error"

    def __init__(self, message: str = ""):
        super().__init__(message or self.code)
        self.message = message or self.code


class RoomNotFound(CoordinatorError):
    """Guest join to a room that does not exist. Terminal for the caller."""

    code = "room-not-found"


class Unauthorized(CoordinatorError):
    code = "unauthorized"


class MalformedRequest(CoordinatorError):
    code = "malformed-request"


class ExternalServiceFailure(CoordinatorError):
    """The judge call failed, timed out or returned something unusable"""

    code = "external-service-failure"
