"""
Errors raised before a request reaches the step loop.

Each carries the HTTP status and a JSON payload; the API layer turns them
into responses without further interpretation.
"""

from __future__ import annotations

from typing import Any


class ChatError(Exception):
    """Base class for request errors surfaced synchronously to the caller."""

    status_code: int = 500

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_payload(self) -> dict[str, Any]:
        return {"error": self.message, **self.details}


class ChatValidationError(ChatError):
    status_code = 400


class UnauthorizedError(ChatError):
    status_code = 401

    def __init__(self, message: str = "Unauthorized"):
        super().__init__(message)


class ModelNotFoundError(ChatError):
    status_code = 404

    def __init__(self, message: str = "Model not found or not accessible"):
        super().__init__(message)


class ConversationNotFoundError(ChatError):
    status_code = 404

    def __init__(self, message: str = "Conversation not found"):
        super().__init__(message)


class BillingLimitError(ChatError):
    """Pre-flight billing check failed; no model call was made."""

    status_code = 429

    def __init__(self, reason: str, billing: dict[str, Any]):
        super().__init__("Usage limit exceeded", {"reason": reason, "billing": billing})
        self.reason = reason
        self.billing = billing


class ImageGenerationError(ChatError):
    status_code = 500

    def __init__(self, details: str):
        super().__init__("Failed to generate image", {"details": details})
