"""
Error taxonomy for the REViewer relay.

Protocol-boundary errors carry the HTTP status they map to; the
exception handler in main.py renders them as JSON. Correlator errors
(NotConnected, RequestTimeout, PeerError) are raised into the awaiting
caller instead.
"""

from typing import Optional


class RelayError(Exception):
    """Base class for every relay error."""

    status_code: int = 500
    code: str = "relay_error"

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code

    def to_dict(self) -> dict:
        return {"status": "error", "error": self.code, "message": self.message}


class MalformedPayload(RelayError):
    """Push or respond body is not valid JSON or not a valid data frame."""

    status_code = 400
    code = "malformed_payload"


class NotRegistered(RelayError):
    """Heartbeat received before any registration."""

    status_code = 400
    code = "not_registered"

    def __init__(self, message: str = "Not registered"):
        super().__init__(message)


class NotConnected(RelayError):
    """A pull request was issued while no R session is attached."""

    status_code = 503
    code = "not_connected"

    def __init__(self, message: str = "R session not connected. Run reviewer_connect() in R."):
        super().__init__(message)


class RequestTimeout(RelayError):
    """The R session did not answer a pull request in time."""

    status_code = 504
    code = "request_timeout"

    def __init__(self, message: str = "Request timeout"):
        super().__init__(message)


class UnknownRequestId(RelayError):
    """Response posted for a request id that is not pending."""

    status_code = 404
    code = "unknown_request_id"

    def __init__(self, request_id: str):
        super().__init__("Request not found or expired")
        self.request_id = request_id


class PortInUse(RelayError):
    """Both the configured port and the fallback port are taken."""

    code = "port_in_use"

    def __init__(self, port: int):
        if port < 65535:
            message = f"Ports {port} and {port + 1} are both in use"
        else:
            message = f"Port {port} is in use"
        super().__init__(message)
        self.port = port


class EntityTooLarge(RelayError):
    """Push body exceeded the configured size cap."""

    status_code = 413
    code = "entity_too_large"

    def __init__(self, max_bytes: int):
        if max_bytes >= 1024 * 1024:
            limit = f"{max_bytes // (1024 * 1024)}MB"
        else:
            limit = f"{max_bytes} bytes"
        super().__init__(f"Data too large. Maximum size is {limit}.")
        self.max_bytes = max_bytes


class PeerError(RelayError):
    """The R session answered a pull request with an error message."""

    status_code = 502
    code = "peer_error"


class ConfigError(RelayError):
    """Invalid relay configuration value."""

    code = "config_error"
