from typing import Optional


class OrchestrationError(Exception):
    """Failure whose message is safe to show to the caller."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ProviderUnavailable(OrchestrationError):
    def __init__(self, provider: str, detail: str = "", status_code: Optional[int] = None):
        self.provider = provider
        self.detail = detail
        self.status_code = status_code
        if status_code is not None:
            message = f"{provider} API error: {status_code} - {detail}".rstrip(" -")
        elif detail:
            message = f"{provider} unavailable: {detail}"
        else:
            message = f"{provider} API key not configured"
        super().__init__(message)


class UnknownModel(OrchestrationError):
    def __init__(self, model: str):
        self.model = model
        super().__init__(f"Unknown model: {model}")


class MissingImageData(OrchestrationError):
    def __init__(self) -> None:
        super().__init__("No image data provided for vision request")


class MissingUserMessage(OrchestrationError):
    def __init__(self, mode: str):
        self.mode = mode
        super().__init__(f"No user message found for {mode} request")


class InvalidSearchMessages(OrchestrationError):
    pass


class UpstreamStreamError(ValueError):
    """A single upstream frame could not be decoded; the stream continues."""
