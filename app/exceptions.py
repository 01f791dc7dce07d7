"""
Error taxonomy for the delivery pipeline.

HTTP mapping lives in app.main; these classes carry no transport details.
"""

from typing import Optional


class RelayError(Exception):
    """Base class for all delivery pipeline errors."""


class MessageValidationError(RelayError):
    """A required field is missing; raised before any state mutation."""


class ProviderError(RelayError):
    """
    A provider call failed.

    Attributes:
        status_code: HTTP status returned by the provider, None for network errors
        retryable: whether the retry policy treats this failure as transient
    """

    def __init__(self, message: str, status_code: Optional[int] = None, retryable: bool = False):
        super().__init__(message)
        self.status_code = status_code
        self.retryable = retryable


class DeliveryFailedError(RelayError):
    """Provider dispatch failed; the local message has been marked failed."""

    def __init__(self, message_id: str, reason: str):
        super().__init__(f"Delivery of {message_id} failed: {reason}")
        self.message_id = message_id
        self.reason = reason


class WebhookAuthError(RelayError):
    """Webhook signature or subscription handshake rejected."""


class InvalidTransitionError(RelayError):
    def __init__(self, message_id: str, current: str, target: str):
        super().__init__(f"Cannot move message {message_id} from {current} to {target}")
        self.message_id = message_id
        self.current = current
        self.target = target


class DuplicateProviderMessageError(RelayError):
    """A provider message id is already attached to another message."""

    def __init__(self, provider_message_id: str):
        super().__init__(f"Provider message id already stored: {provider_message_id}")
        self.provider_message_id = provider_message_id
