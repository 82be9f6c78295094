from __future__ import annotations


class PmError(Exception):
    def __init__(self, detail: str, status_code: int = 500) -> None:
        super().__init__(detail)
        self.detail = detail
        self.status_code = status_code


class InvalidRequest(PmError):
    def __init__(self, detail: str) -> None:
        super().__init__(detail, status_code=400)


class ProtocolError(PmError):
    def __init__(self, detail: str) -> None:
        super().__init__(detail, status_code=502)


class LLMProviderError(PmError):
    """Error reported by the model provider, carrying its status code when known."""

    def __init__(self, detail: str, status_code: int | None = None) -> None:
        super().__init__(detail, status_code=502)
        self.provider_status = status_code


class TransientProviderError(LLMProviderError):
    """Rate-limit/unavailable error that outlived the retry schedule."""


class LLMTransportError(PmError):
    def __init__(self, detail: str) -> None:
        super().__init__(detail, status_code=502)


class CallTimeoutError(PmError, TimeoutError):
    def __init__(self, detail: str) -> None:
        super().__init__(detail, status_code=504)


class ToolInvocationError(PmError):
    def __init__(self, detail: str, error_code: str = "runtime.tool_error") -> None:
        super().__init__(detail, status_code=502)
        self.error_code = error_code


class Cancelled(PmError):
    def __init__(self, detail: str = "cancelled", reason: str = "cancelled") -> None:
        super().__init__(detail, status_code=499)
        self.reason = reason
