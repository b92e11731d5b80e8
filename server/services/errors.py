"""Exception hierarchy for the subscription delivery pipeline."""

from typing import Optional


class PaperAlertsError(Exception):
    """Base exception for all paper-alerts errors."""


class ConfigurationError(PaperAlertsError, ValueError):
    """Invalid or unusable configuration (e.g. a bad cron expression)."""


class ProviderError(PaperAlertsError):
    """Error from the paper search provider."""

    def __init__(self, provider_name: str, message: str, status_code: Optional[int] = None):
        self.provider_name = provider_name
        self.status_code = status_code
        super().__init__(f"[{provider_name}] {message}")


class DeliveryError(PaperAlertsError):
    """Notification could not be sent to its owner."""

    def __init__(self, chat_id: int, message: str):
        self.chat_id = chat_id
        super().__init__(f"Delivery to {chat_id} failed: {message}")


class PersistenceError(PaperAlertsError):
    """Repository or ledger operation failed."""

    def __init__(self, operation: str, message: str):
        self.operation = operation
        super().__init__(f"{operation} failed: {message}")


class SubscriptionError(PaperAlertsError):
    """Subscription request rejected by validation."""
