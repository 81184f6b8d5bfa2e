"""Error taxonomy shared by the guards, stores and tool handlers.

Every error carries a ``kind`` (which of the four request failure classes it
belongs to) and a stable ``code`` that is reported back to the MCP client.
Messages are built from known-safe fields only, so they can be returned to
the caller as-is.
"""

from typing import Optional


class GatewayError(Exception):
    """Base class for all errors raised by the gateway core."""

    kind = "internal"
    code = "internal_error"

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code

    def to_payload(self) -> dict:
        return {"error": self.code, "message": self.message}


class ValidationError(GatewayError):
    """Caller-supplied input violates a size or emptiness constraint."""

    kind = "validation"
    code = "validation_error"


class SecurityError(GatewayError):
    """The request would cross a trust boundary. Never retried."""

    kind = "security"
    code = "security_error"


class ToolExecutionError(GatewayError):
    """A downstream operation (fetch, file I/O, command) failed."""

    kind = "tool_execution"
    code = "tool_execution_error"

    def __init__(self, message: str, tool_name: str, code: Optional[str] = None):
        super().__init__(message, code)
        self.tool_name = tool_name

    def to_payload(self) -> dict:
        payload = super().to_payload()
        payload["tool"] = self.tool_name
        return payload


class UpstreamError(GatewayError):
    """The backend model call failed. Opaque, not retried here."""

    kind = "upstream"
    code = "upstream_error"


class ConfigurationError(GatewayError):
    """Startup misconfiguration. Fatal to the process."""

    kind = "configuration"
    code = "configuration_error"
