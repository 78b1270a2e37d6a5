"""Error taxonomy shared by the services and the HTTP layer.

Every error knows its HTTP status and renders to the same structured body, so
handlers in ``main.py`` never let a raw exception reach the client.
"""

from typing import Any, Dict, Optional


class ServiceError(Exception):
    status_code = 500
    code = "InternalError"
    default_message = "Internal server error"

    def __init__(self, message: Optional[str] = None, **details: Any):
        self.message = message or self.default_message
        self.details = details
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"success": False, "error": self.code, "message": self.message}
        if self.details:
            body["details"] = self.details
        return body


class Unauthorized(ServiceError):
    status_code = 401
    code = "Unauthorized"
    default_message = "Unauthorized"


class Forbidden(ServiceError):
    status_code = 403
    code = "Forbidden"
    default_message = "Forbidden"


class NotFound(ServiceError):
    status_code = 404
    code = "NotFound"
    default_message = "Not found"


class RecordNotFound(NotFound):
    code = "RecordNotFound"
    default_message = "You have not joined this session yet"


class GeofenceViolation(ServiceError):
    status_code = 403
    code = "GeofenceViolation"

    def __init__(self, distance: float, radius: float, attendee: tuple, anchor: tuple):
        self.distance = distance
        self.radius = radius
        super().__init__(
            f"You are {round(distance)}m away from the class. Must be within {round(radius)}m.",
            distance=round(distance, 2),
            radius=radius,
            attendeeCoords={"lat": attendee[0], "lon": attendee[1]},
            anchorCoords={"lat": anchor[0], "lon": anchor[1]},
        )


class InvalidState(ServiceError):
    status_code = 409
    code = "InvalidState"
    default_message = "Operation not allowed in the session's current state"


class AlreadyEnded(InvalidState):
    code = "AlreadyEnded"
    default_message = "Session has already been ended"


class NotYetAvailable(InvalidState):
    code = "NotYetAvailable"
    default_message = "Passcode is only available after the session ends"


class ValidationError(ServiceError):
    status_code = 400
    code = "ValidationError"
    default_message = "Invalid request"
