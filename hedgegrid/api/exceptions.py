"""Custom exceptions for Exchange API operations"""

import re

_CODE_PATTERN = re.compile(r'"code"\s*:\s*(-?\d+)')


def extract_exchange_code(message: str) -> int | None:
    """Pull the numeric exchange error code out of a ccxt error message, if any."""
    match = _CODE_PATTERN.search(message)
    if match:
        return int(match.group(1))
    return None


class ExchangeAPIError(Exception):
    """Base exception for all Exchange API errors"""

    def __init__(self, message: str = "", code: int | None = None) -> None:
        super().__init__(message)
        self.code = code if code is not None else extract_exchange_code(message)


class ExchangeRateLimitError(ExchangeAPIError):
    """Raised when exchange rate limit is exceeded"""

    pass


class CredentialError(ExchangeAPIError):
    """Raised when the API key is invalid or lacks permission"""

    pass


class ExchangeRejectionError(ExchangeAPIError):
    """Raised when the exchange rejects a request on business grounds"""

    pass


class InsufficientFundsError(ExchangeRejectionError):
    """Raised when account has insufficient margin for operation"""

    pass


class InvalidOrderError(ExchangeRejectionError):
    """Raised when order parameters are invalid"""

    pass


class OrderNotFoundError(ExchangeRejectionError):
    """Raised when a queried or cancelled order does not exist"""

    pass


class NetworkError(ExchangeAPIError):
    """Raised when network communication with exchange fails"""

    pass


class ExchangeNotAvailableError(ExchangeAPIError):
    """Raised when exchange is not available (maintenance, etc.)"""

    pass
