"""
oralexam/exceptions.py
Typed domain exceptions

Capacity and precondition failures never use these; they come back from the
services as typed outcomes. These cover the failures that propagate:
- Missing entities
- Provider failures (LLM, voice engine)
- Unusable provider output
- Forged webhook deliveries
"""


class OralExamException(Exception):
    """Base exception for the oral exam backend"""
    status_code: int = 500

    def __init__(self, message: str, status_code: int = None):
        self.message = message
        if status_code:
            self.status_code = status_code
        super().__init__(self.message)


class NotFoundError(OralExamException):
    """
    Raised when a referenced entity does not exist.
    Never retried.
    """
    status_code = 404

    def __init__(self, resource: str, identifier=None):
        self.resource = resource
        self.identifier = identifier
        message = f"{resource} not found"
        if identifier is not None:
            message = f"{resource} with id '{identifier}' not found"
        super().__init__(message, self.status_code)


class ProviderError(OralExamException):
    """
    Raised when an external provider is unreachable or answers with an error.

    The owning entity has already been restored to a retryable state by the
    time this reaches the caller.
    """
    status_code = 502

    def __init__(self, message: str = "External provider failed"):
        super().__init__(message, self.status_code)


class LLMProviderError(ProviderError):
    """LLM chat completion call failed"""


class VoiceProviderError(ProviderError):
    """Voice conversation engine call failed"""


class MalformedResponseError(OralExamException):
    """
    Raised when provider output cannot be parsed, even after repair.
    """
    status_code = 502

    def __init__(self, message: str = "Provider returned an unusable response"):
        super().__init__(message, self.status_code)


class WebhookSignatureError(OralExamException):
    """Raised when a webhook delivery fails HMAC verification"""
    status_code = 401

    def __init__(self, message: str = "Invalid webhook signature"):
        super().__init__(message, self.status_code)
