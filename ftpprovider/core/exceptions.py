"""Error taxonomy shared by the transport, protocol engine and provider."""
from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from ftpprovider.core.ftp_control import ControlReply


class FTPProviderError(Exception):
    """Base exception for every error raised by the provider."""

    error_code = "provider_error"
    default_detail = "FTP operation failed."

    def __init__(self, detail: str | None = None, *, extra: dict[str, Any] | None = None) -> None:
        super().__init__(detail or self.default_detail)
        self.detail = detail or self.default_detail
        self.extra = extra or {}


class TransportError(FTPProviderError):
    """Connect, read or write failure on a byte stream."""

    error_code = "transport_error"
    default_detail = "Transport failure."


class TransportTimeoutError(TransportError):
    error_code = "timed_out"
    default_detail = "Operation timed out."

    def __init__(self, operation: str = "Operation", timeout: float | None = None) -> None:
        self.operation = operation
        self.timeout = timeout
        detail = f"{operation} timed out" if timeout is None else f"{operation} timed out after {timeout:g} seconds"
        super().__init__(detail, extra={"operation": operation, "timeout": timeout})


class TransportCancelledError(TransportError):
    error_code = "cancelled"
    default_detail = "Operation cancelled."


class ConnectionClosedError(TransportError):
    """The peer closed the connection while a reply was expected."""

    error_code = "connection_closed"
    default_detail = "Connection closed by server."


class ProtocolError(FTPProviderError):
    """A 4xx/5xx reply, or a reply that could not be understood."""

    error_code = "protocol_error"
    default_detail = "Unexpected server response."

    def __init__(self, code: int | None, message: str, *, path: str | None = None) -> None:
        self.code = code
        self.message = message
        self.path = path
        detail = f"{code} {message}" if code is not None else message
        extra: dict[str, Any] = {"code": code}
        if path:
            extra["path"] = path
        super().__init__(detail, extra=extra)

    @classmethod
    def from_reply(cls, reply: "ControlReply", *, path: str | None = None) -> "ProtocolError":
        return cls(reply.code, reply.message, path=path)


class AuthenticationRequiredError(ProtocolError):
    error_code = "authentication_required"
    default_detail = "Authentication failed."


class UnsupportedFeatureError(FTPProviderError):
    """The server or the selected backend does not offer a capability."""

    error_code = "unsupported_feature"
    default_detail = "Feature not supported."

    def __init__(self, feature: str, detail: str | None = None) -> None:
        self.feature = feature
        super().__init__(detail or f"{feature} is not supported", extra={"feature": feature})


class ResourceError(FTPProviderError):
    """Local source or sink could not be read or written."""

    error_code = "resource_error"
    default_detail = "Local resource failure."

    def __init__(self, path: str | None, detail: str | None = None) -> None:
        self.path = path
        super().__init__(detail or f"Local resource failure: {path}", extra={"path": path})
