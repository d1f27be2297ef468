class ChatGateError(Exception):
    """Base error carrying the HTTP status and a stable error code for clients."""

    status_code = 500
    code = "chatgate_error"

    def __init__(self, message: str, *, status_code: int | None = None, code: str | None = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if code is not None:
            self.code = code

    def to_event(self) -> dict:
        return {"stage": "error", "error": self.message, "code": self.code, "done": True}


class MissingRoutingChoice(ChatGateError):
    status_code = 400
    code = "missing_routing_choice"

    def __init__(self, message: str = "Missing use_web. Client must choose local vs web agent."):
        super().__init__(message)


class InvalidInferenceRequest(ChatGateError):
    status_code = 400
    code = "invalid_inference_request"


class UpstreamTimeout(ChatGateError):
    status_code = 504
    code = "upstream_timeout"


class UpstreamUnavailable(ChatGateError):
    status_code = 502
    code = "upstream_unavailable"


class MalformedUpstreamResponse(ChatGateError):
    status_code = 502
    code = "malformed_upstream_response"


class StorageFailure(ChatGateError):
    status_code = 500
    code = "storage_failure"
