class CalendarAlertsError(Exception):
    """Base class for errors raised by this package."""


class ConfigError(CalendarAlertsError, RuntimeError):
    pass


class SourceFetchError(CalendarAlertsError):
    def __init__(self, source: str, message: str) -> None:
        super().__init__(f"{source}: {message}")
        self.source = source


class AnalysisError(CalendarAlertsError):
    pass


class AnalysisRateLimited(AnalysisError):
    def __init__(self, retry_after: float | None = None) -> None:
        super().__init__(f"AI analysis rate limited (retry after {retry_after}s)")
        self.retry_after = retry_after


class DeliveryError(CalendarAlertsError):
    def __init__(self, recipient_id: int, message: str) -> None:
        super().__init__(f"delivery to {recipient_id} failed: {message}")
        self.recipient_id = recipient_id


class RecipientBlockedError(DeliveryError):
    """The recipient blocked the bot or no longer exists. Not retried within a tick."""
