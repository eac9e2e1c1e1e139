"""
Error taxonomy of the gateway.

Everything raised before the first response byte is a GatewayError and is
reported to the client as a JSON error payload. StreamReadError is raised
after streaming has begun and can only end the connection.
"""

from typing import Optional


class GatewayError(Exception):
    """Base class for failures reported to the client.

    Attributes:
        message: user-visible error message.
        error_type: machine-readable label, used for metrics.
    """

    error_type = "gateway_error"

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class ValidationError(GatewayError):
    """Malformed body or cookies, or a conversation violating ordering rules."""

    error_type = "validation_error"


class UnsupportedModel(GatewayError):
    error_type = "unsupported_model"

    def __init__(self, model: str):
        self.model = model
        super().__init__(f"Unsupported model: {model}")


class Unauthorized(GatewayError):
    error_type = "unauthorized"

    def __init__(self, message: str = "Unauthorized"):
        super().__init__(message)


class PromptTooLong(GatewayError):
    error_type = "prompt_too_long"

    def __init__(self, prompt_tokens: int, limit: int):
        self.prompt_tokens = prompt_tokens
        self.limit = limit
        super().__init__(
            f"Prompt is too long: {prompt_tokens} tokens (limit {limit}). "
            f"Please start a new conversation or shorten your message."
        )


class UpstreamError(GatewayError):
    """Upstream returned a non-2xx status, an empty body, or could not be reached.

    The upstream status and body are embedded verbatim in the message.
    """

    error_type = "upstream_error"

    def __init__(self, message: str, status_code: Optional[int] = None, body: str = ""):
        self.status_code = status_code
        self.body = body
        super().__init__(message)

    @classmethod
    def from_status(cls, status_code: int, body: str) -> "UpstreamError":
        return cls(f"Upstream returned {status_code}: {body}", status_code=status_code, body=body)


class StreamReadError(GatewayError):
    """Failure while reading or parsing the upstream stream after forwarding began."""

    error_type = "stream_read_error"
