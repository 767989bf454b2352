class WebhookError(Exception):
    """Base class for lead webhook failures."""


class MappingError(WebhookError):
    """Raised when a platform payload carries no usable email."""


class StoreError(WebhookError):
    """Transient storage failure. Events failing with this are retried."""


class DuplicateLeadError(StoreError):
    """Insert lost the race against another submission for the same email."""

    def __init__(self, email: str):
        super().__init__(f"Lead already exists: {email}")
        self.email = email


class EventNotFoundError(WebhookError):
    pass


class AlertNotFoundError(WebhookError):
    pass
