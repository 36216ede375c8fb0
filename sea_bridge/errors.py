from __future__ import annotations

from typing import Any, Literal


AuthReason = Literal["bad_credentials", "expired", "missing_token", "service"]


class SeaBridgeError(RuntimeError):
    """Base for every classified pipeline failure.

    ``user_message`` is the text presentation layers show; ``str(err)`` keeps the
    technical detail for logs.
    """

    default_user_message = "Analysis failed, please try again later"

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        user_message: str | None = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.user_message = user_message or self.default_user_message

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": type(self).__name__,
            "message": str(self),
            "user_message": self.user_message,
            "status_code": self.status_code,
        }


class ValidationError(SeaBridgeError):
    default_user_message = "The file is corrupt or in the wrong format, please check the .gz file"


class MissingFieldError(ValidationError):
    def __init__(self, field: str, *, user_message: str | None = None):
        super().__init__(
            f"Missing required field: {field}",
            user_message=user_message or f"Missing {field}, cannot upload",
        )
        self.field = field


class DecodeError(SeaBridgeError):
    default_user_message = "Decompression or parsing failed"


class AuthError(SeaBridgeError):
    def __init__(
        self,
        message: str,
        *,
        reason: AuthReason = "service",
        status_code: int | None = None,
        user_message: str | None = None,
    ):
        if user_message is None:
            user_message = {
                "bad_credentials": "Wrong username or password, please log in again",
                "expired": "SEA authorization expired, please log in again",
                "missing_token": "Please log in to the SEA service first",
                "service": "Login failed, please try again later",
            }[reason]
        super().__init__(message, status_code=status_code, user_message=user_message)
        self.reason = reason

    def to_dict(self) -> dict[str, Any]:
        out = super().to_dict()
        out["reason"] = self.reason
        return out


class ServiceError(SeaBridgeError):
    pass


class PollTimeoutError(SeaBridgeError):
    default_user_message = "Timed out waiting for the SEA score, please try again later"


class RecordStoreError(SeaBridgeError):
    default_user_message = "FHIR write failed"

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        payload: Any = None,
        user_message: str | None = None,
    ):
        super().__init__(message, status_code=status_code, user_message=user_message)
        self.payload = payload

    def to_dict(self) -> dict[str, Any]:
        out = super().to_dict()
        out["payload"] = self.payload
        return out
