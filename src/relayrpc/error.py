"""Structured RPC errors.

Errors cross the wire as plain tagged values so that any peer can tell a
failed call apart from a successful one whose result happens to be a dict:

    {"_type": "MessageError", "code": "not_found", "message": "...", "data": {...}}

`RpcConnection.send_request` raises the `RpcError` rebuilt from such a value.
"""

from __future__ import annotations

from enum import Enum
from typing import Any

ERROR_TYPE_TAG = "MessageError"


class ErrorCode(str, Enum):
    """Error kinds carried in the `code` field of an error value."""

    BAD_REQUEST = "bad_request"
    NOT_FOUND = "not_found"
    INTERNAL = "internal"
    PERMISSION_DENIED = "permission_denied"
    TIMEOUT = "timeout"
    TRANSPORT = "transport"


class RpcError(Exception):
    """An error raised by, or returned from, a remote call."""

    def __init__(
        self,
        code: ErrorCode,
        message: str,
        data: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.data = data

    def __str__(self) -> str:
        return self.message

    def __repr__(self) -> str:
        return f"RpcError({self.code.value!r}, {self.message!r})"

    @classmethod
    def bad_request(cls, message: str, data: dict[str, Any] | None = None) -> RpcError:
        return cls(ErrorCode.BAD_REQUEST, message, data)

    @classmethod
    def not_found(cls, message: str, data: dict[str, Any] | None = None) -> RpcError:
        return cls(ErrorCode.NOT_FOUND, message, data)

    @classmethod
    def internal(cls, message: str, data: dict[str, Any] | None = None) -> RpcError:
        return cls(ErrorCode.INTERNAL, message, data)

    @classmethod
    def permission_denied(
        cls, message: str, data: dict[str, Any] | None = None
    ) -> RpcError:
        return cls(ErrorCode.PERMISSION_DENIED, message, data)

    @classmethod
    def timeout(cls, message: str, data: dict[str, Any] | None = None) -> RpcError:
        return cls(ErrorCode.TIMEOUT, message, data)

    @classmethod
    def transport(cls, message: str, data: dict[str, Any] | None = None) -> RpcError:
        return cls(ErrorCode.TRANSPORT, message, data)

    @classmethod
    def unknown_function(cls, function_name: str) -> RpcError:
        return cls.not_found(f"Unknown function {function_name}")

    @classmethod
    def from_exception(cls, error: BaseException) -> RpcError:
        """Wrap an arbitrary exception, keeping RpcError instances unchanged."""
        if isinstance(error, RpcError):
            return error
        message = str(error) or type(error).__name__
        return cls.internal(message, {"exception": type(error).__name__})

    def to_wire(self) -> dict[str, Any]:
        """Convert to the tagged error value sent as a response payload."""
        result: dict[str, Any] = {
            "_type": ERROR_TYPE_TAG,
            "code": self.code.value,
            "message": self.message,
        }
        if self.data is not None:
            result["data"] = self.data
        return result

    @classmethod
    def from_wire(cls, value: Any) -> RpcError:
        """Rebuild an error from a tagged error value.

        Args:
            value: A value for which `is_error_value` is true

        Returns:
            The matching RpcError; unknown codes become INTERNAL
        """
        if not is_error_value(value):
            raise ValueError(f"Not an error value: {value!r}")
        try:
            code = ErrorCode(value.get("code", ErrorCode.INTERNAL.value))
        except ValueError:
            code = ErrorCode.INTERNAL
        message = value.get("message")
        if not isinstance(message, str):
            message = str(message) if message is not None else "Unknown error"
        data = value.get("data")
        return cls(code, message, data if isinstance(data, dict) else None)


def is_error_value(value: Any) -> bool:
    """Check whether a payload is a tagged error value."""
    return isinstance(value, dict) and value.get("_type") == ERROR_TYPE_TAG
