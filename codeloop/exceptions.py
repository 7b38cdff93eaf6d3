"""Custom exceptions for codeloop."""

from typing import Any


class CodeloopError(Exception):
    """Base exception for codeloop.

    Every terminal failure carries a short message and, where one exists, a
    remediation hint.
    """

    def __init__(self, message: str, hint: str | None = None):
        super().__init__(message)
        self.hint = hint

    def summary(self) -> str:
        """One-paragraph human-readable summary (what, why, what to do)."""
        text = str(self)
        if self.hint:
            text += f"\nHint: {self.hint}"
        return text

    def cause_chain(self) -> list[str]:
        """Messages of chained causes, outermost first."""
        chain: list[str] = []
        current: BaseException | None = self.__cause__ or self.__context__
        seen: set[int] = set()
        while current is not None and id(current) not in seen:
            seen.add(id(current))
            chain.append(f"{type(current).__name__}: {current}")
            current = current.__cause__ or current.__context__
        return chain


class ConfigurationError(CodeloopError):
    """Configuration-related errors."""

    pass


class ProviderNotSupportedError(ConfigurationError):
    """Provider id is not known to the resolver."""

    def __init__(self, provider: str):
        super().__init__(
            f"Unsupported provider: {provider}",
            hint="Pick one of the providers listed by codeloop.llm.resolver.PROVIDERS.",
        )
        self.provider = provider


class ProviderInitError(ConfigurationError):
    """Provider handle could not be constructed."""

    def __init__(self, provider: str, reason: str):
        super().__init__(f"Failed to initialize provider {provider}: {reason}")
        self.provider = provider


class LLMError(CodeloopError):
    """LLM-related errors."""

    pass


class LLMAPIError(LLMError):
    """Non-success HTTP response from an LLM API."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        headers: dict[str, str] | None = None,
        code: str | None = None,
        body: Any = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.headers = {str(k).lower(): str(v) for k, v in (headers or {}).items()}
        self.code = code
        self.body = body


class LLMTransportError(LLMError):
    """Network-level failure before a response was received."""

    def __init__(self, message: str, code: str | None = None):
        super().__init__(message)
        self.code = code


class LLMRetryableError(LLMError):
    """Failure that the retry middleware treats as transient."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        retry_after: float | None = None,
        hint: str | None = None,
    ):
        super().__init__(message, hint=hint)
        self.status_code = status_code
        self.retry_after = retry_after


class LLMRateLimitError(LLMRetryableError):
    """Rate limit exceeded (HTTP 429 or provider rate-limit code)."""

    def __init__(self, message: str, retry_after: float | None = None):
        super().__init__(
            message,
            status_code=429,
            retry_after=retry_after,
            hint="Wait a moment before retrying, or switch to a model with a higher quota.",
        )


class LLMRequestQueuedError(LLMRetryableError):
    """The call was handed to the long-retry queue instead of being retried inline."""

    def __init__(self, request_id: str, retry_after: float | None = None, status_code: int | None = 429):
        super().__init__(
            f"Request queued for long retry (ID: {request_id})",
            status_code=status_code,
            retry_after=retry_after,
            hint="The queued request is replayed in the background once the provider allows it.",
        )
        self.request_id = request_id


class LLMServerError(LLMRetryableError):
    """Provider-side 5xx failure."""

    def __init__(self, message: str, status_code: int):
        super().__init__(
            message,
            status_code=status_code,
            hint="The provider is having trouble; try again later.",
        )


class LLMAuthenticationError(LLMError):
    """Credentials rejected (HTTP 401/403)."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(
            message,
            hint="Check the API key for this provider.",
        )
        self.status_code = status_code


class OperationAbortedError(CodeloopError):
    """Operation stopped because the run was cancelled."""

    def __init__(self, message: str = "Aborted by user"):
        super().__init__(message)


class ToolError(CodeloopError):
    """Tool execution errors."""

    pass


class ToolExecutionError(ToolError):
    """Tool execution failed."""

    def __init__(self, tool_name: str, message: str):
        super().__init__(f"Tool '{tool_name}' failed: {message}")
        self.tool_name = tool_name


class ToolNotFoundError(ToolError):
    """Tool not found in registry."""

    def __init__(self, tool_name: str):
        super().__init__(f"Tool not found: {tool_name}")
        self.tool_name = tool_name


class ToolBlockedError(ToolError):
    """Tool execution blocked by policy; the message names the policy category."""

    def __init__(self, tool_name: str, reason: str, category: str | None = None):
        super().__init__(
            reason,
            hint="This command has been blocked for safety. If you believe this is a mistake, run it manually in your terminal.",
        )
        self.tool_name = tool_name
        self.reason = reason
        self.category = category


_NETWORK_MESSAGES = {
    "ECONNREFUSED": (
        "Connection refused: Cannot connect to the AI provider. "
        "Check your network or, if using Ollama, ensure it's running."
    ),
    "ENOTFOUND": "DNS error: Cannot resolve the AI provider's address. Check your network connection.",
    "ETIMEDOUT": "Connection timeout: The request took too long. Try again or check your network.",
}

_STATUS_MESSAGES = {
    401: "Authentication failed (401): Invalid or missing API key.",
    403: "Access denied (403): You don't have permission to use this model.",
    404: "Model not found (404): The model doesn't exist or isn't available.",
    429: "Rate limited (429): Too many requests. Please wait and try again.",
    500: "Server error (500): The AI provider is experiencing issues.",
    503: "Service unavailable (503): The AI provider is temporarily down.",
}


def format_error_message(error: BaseException | None) -> str:
    """Render an exception as a short user-facing message."""
    if error is None:
        return "Unknown error"

    status = getattr(error, "status_code", None)
    message = str(error) or type(error).__name__
    if status:
        prefix = _STATUS_MESSAGES.get(int(status))
        if prefix:
            return f"{prefix} {message}"
        return f"API Error ({status}): {message}"

    code = getattr(error, "code", None)
    if code in _NETWORK_MESSAGES:
        return _NETWORK_MESSAGES[code]

    return message
