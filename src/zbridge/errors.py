"""Error types surfaced to API clients."""

from typing import Any, Dict


class ProxyError(Exception):
    """Base error rendered as an OpenAI-style error body."""
    status_code = 500
    error_type = "api_error"
    code = "internal_error"

    def __init__(self, message: str = "Internal server error"):
        super().__init__(message)
        self.message = message

    def to_error_body(self) -> Dict[str, Any]:
        return {
            "error": {
                "type": self.error_type,
                "message": self.message,
                "code": self.code,
            }
        }


class InvalidRequestError(ProxyError):
    status_code = 400
    error_type = "invalid_request_error"
    code = "invalid_request"


class AuthenticationError(ProxyError):
    status_code = 401
    error_type = "authentication_error"
    code = "invalid_api_key"


class UpstreamError(ProxyError):
    """The upstream call failed; the cause is logged, not exposed."""
    status_code = 502
    error_type = "api_error"
    code = "upstream_error"

    def __init__(self, message: str = "Upstream service request failed"):
        super().__init__(message)


class UpstreamTimeoutError(UpstreamError):
    status_code = 504
    error_type = "timeout_error"
    code = "timeout"

    def __init__(self, message: str = "Upstream service timed out"):
        super().__init__(message)
