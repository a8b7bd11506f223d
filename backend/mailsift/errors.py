"""Exception types shared across sync, classification and escalation."""


class MailsiftError(Exception):
    """Base class for pipeline errors."""


class ConfigurationError(MailsiftError):
    """Required settings missing or invalid. Fatal at process start."""


class AccountNotFoundError(MailsiftError):
    pass


class HistoryExpiredError(MailsiftError):
    """Gmail no longer has history for the stored cursor (HTTP 404)."""

    def __init__(self, history_id: str):
        super().__init__(f"History id {history_id} is no longer available")
        self.history_id = history_id


class ThreadHasNoEmailsError(MailsiftError):
    pass


class EmailNotFoundError(MailsiftError):
    pass


class ClassificationNotFoundError(MailsiftError):
    pass


class LLMSchemaError(MailsiftError):
    """Model reply did not match the structured-output contract."""


class LLMTransportError(MailsiftError):
    """Model API call failed (network, rate limit, server error)."""
