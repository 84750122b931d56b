import grpc


class ChatError(Exception):
    """Base class for failures reported back to a client.

    Attributes:
        code (str): Stable machine-readable error name
        event (str): Stream event used to report the error
        grpc_status (grpc.StatusCode): Status used when aborting a unary call
    """
    code = "ChatError"
    event = "error"
    grpc_status = grpc.StatusCode.INTERNAL

    def __init__(self, message: str = "", **details):
        super().__init__(message or self.code)
        self.message = message or self.code
        self.details = details

    def to_payload(self) -> dict:
        payload = {"code": self.code, "message": self.message}
        payload.update(self.details)
        return payload


class Unauthenticated(ChatError):
    code = "Unauthenticated"
    grpc_status = grpc.StatusCode.UNAUTHENTICATED


class IdentityNotFound(Unauthenticated):
    code = "IdentityNotFound"


class Forbidden(ChatError):
    code = "Forbidden"
    grpc_status = grpc.StatusCode.PERMISSION_DENIED


class NotFound(ChatError):
    code = "NotFound"
    grpc_status = grpc.StatusCode.NOT_FOUND


class RecipientNotFound(NotFound):
    code = "RecipientNotFound"
    event = "user-not-found"

    def to_payload(self) -> dict:
        return {"email": self.details.get("email", ""), "message": self.message}


class AlreadyDeleted(ChatError):
    code = "AlreadyDeleted"
    grpc_status = grpc.StatusCode.FAILED_PRECONDITION


class ValidationFailure(ChatError):
    code = "ValidationFailure"
    grpc_status = grpc.StatusCode.INVALID_ARGUMENT


class InvalidGroupSpec(ValidationFailure):
    code = "InvalidGroupSpec"
    event = "group-creation-error"

    def to_payload(self) -> dict:
        return {"message": self.message}


class Conflict(ChatError):
    code = "Conflict"
    grpc_status = grpc.StatusCode.ALREADY_EXISTS


class StorageUnavailable(ChatError):
    """Persistence layer failure. Never shown to clients in detail."""
    code = "StorageUnavailable"
    grpc_status = grpc.StatusCode.UNAVAILABLE

    def to_payload(self) -> dict:
        return {"code": self.code, "message": "Service temporarily unavailable"}
