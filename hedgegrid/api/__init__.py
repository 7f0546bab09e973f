"""Exchange API client modules"""

from hedgegrid.api.client_pool import Credential, ExchangeClientPool
from hedgegrid.api.exceptions import (
    CredentialError,
    ExchangeAPIError,
    ExchangeNotAvailableError,
    ExchangeRateLimitError,
    ExchangeRejectionError,
    InsufficientFundsError,
    InvalidOrderError,
    NetworkError,
    OrderNotFoundError,
)
from hedgegrid.api.exchange_client import ExchangeAPIClient, MarketRules

__all__ = [
    "Credential",
    "ExchangeAPIClient",
    "ExchangeClientPool",
    "MarketRules",
    "ExchangeAPIError",
    "ExchangeRateLimitError",
    "CredentialError",
    "ExchangeRejectionError",
    "InsufficientFundsError",
    "InvalidOrderError",
    "OrderNotFoundError",
    "NetworkError",
    "ExchangeNotAvailableError",
]
