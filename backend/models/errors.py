"""
Coordination error taxonomy.

Every error is recoverable at the protocol level: the WebSocket hub reports it
to the offending connection as an ``error`` frame, the HTTP router maps it to
``status_code``. ``code`` is the stable machine-readable identifier clients
switch on.
"""


class CoordinationError(Exception):
    code = "COORDINATION_ERROR"
    status_code = 400
    default_message = "Request could not be completed"

    def __init__(self, message: str = ""):
        super().__init__(message or self.default_message)
        self.message = message or self.default_message


class InvalidRequest(CoordinationError):
    code = "INVALID_REQUEST"
    default_message = "Malformed or missing request field"


class RoomNotFound(CoordinationError):
    code = "ROOM_NOT_FOUND"
    status_code = 404
    default_message = "Room not found"


class NameConflict(CoordinationError):
    code = "NAME_CONFLICT"
    status_code = 409
    default_message = "A room with that name already exists"


class InvalidName(CoordinationError):
    code = "INVALID_NAME"
    default_message = "Room names must be letters and digits only, at least 4 characters"


class RoleTaken(CoordinationError):
    code = "ROLE_TAKEN"
    status_code = 409
    default_message = "That role is already taken in this room"


class RoleRequired(CoordinationError):
    code = "ROLE_REQUIRED"
    status_code = 403
    default_message = "Your role does not allow this action"


class Unauthorized(CoordinationError):
    code = "UNAUTHORIZED"
    status_code = 401
    default_message = "A valid identity token is required"


class AlreadyLocked(CoordinationError):
    code = "ALREADY_LOCKED"
    status_code = 409
    default_message = "A character has already been locked in this room"


class UnknownCharacter(CoordinationError):
    code = "UNKNOWN_CHARACTER"
    default_message = "No such suspect"


class UnknownCorrelation(CoordinationError):
    code = "UNKNOWN_CORRELATION"
    status_code = 404
    default_message = "No pending question matches that correlation id"


class Forbidden(CoordinationError):
    code = "FORBIDDEN"
    status_code = 403
    default_message = "You do not control the character this question was addressed to"


class Expired(CoordinationError):
    code = "EXPIRED"
    status_code = 410
    default_message = "The answer deadline passed; the question was already answered"


class QuestionInFlight(CoordinationError):
    code = "QUESTION_IN_FLIGHT"
    status_code = 409
    default_message = "That suspect has not answered your previous question yet"
