"""Exceptions raised by the analytics engine and its market data boundary."""


class AnalyticsError(Exception):
    """Base exception for analytics errors."""

    def __init__(self, message: str, code: str = "ANALYTICS_ERROR"):
        self.message = message
        self.code = code
        super().__init__(message)


class InsufficientData(AnalyticsError):
    """Too few observations for a period or statistic."""

    def __init__(self, message: str):
        super().__init__(message, code="INSUFFICIENT_DATA")


class DataUnavailable(AnalyticsError):
    """The market data collaborator returned no rows for a requested range."""

    def __init__(self, message: str, symbol: str = None):
        self.symbol = symbol
        super().__init__(message, code="DATA_UNAVAILABLE")


class MalformedInput(AnalyticsError):
    """An input series violates the date/value invariants."""

    def __init__(self, message: str):
        super().__init__(message, code="MALFORMED_INPUT")
