"""
Per-credential exchange client cache.

Credentials are supplied per call by the caller; the pool keeps one
initialized ExchangeAPIClient per API key and environment so strategies
sharing a key also share its rate limiter. A credential arriving with a
rotated secret replaces the cached client.
"""

import asyncio
from dataclasses import dataclass, field

from hedgegrid.api.exchange_client import ExchangeAPIClient
from hedgegrid.utils.logger import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class Credential:
    """Exchange API credential supplied by the caller."""

    api_key: str
    api_secret: str = field(repr=False)
    sandbox: bool = False

    @property
    def masked_key(self) -> str:
        """First 8 characters of the key, safe for logs."""
        return f"{self.api_key[:8]}***"

    @property
    def cache_key(self) -> tuple[str, bool]:
        return (self.api_key, self.sandbox)


class ExchangeClientPool:
    """Lazily creates and caches one exchange client per credential."""

    def __init__(
        self,
        exchange_id: str = "binanceusdm",
        timeout_ms: int = 10000,
        rate_limit: bool = True,
    ) -> None:
        self.exchange_id = exchange_id
        self._timeout_ms = timeout_ms
        self._rate_limit = rate_limit
        self._clients: dict[tuple[str, bool], ExchangeAPIClient] = {}
        self._secrets: dict[tuple[str, bool], str] = {}
        self._lock = asyncio.Lock()

    def _create_client(self, credential: Credential) -> ExchangeAPIClient:
        return ExchangeAPIClient(
            api_key=credential.api_key,
            api_secret=credential.api_secret,
            exchange_id=self.exchange_id,
            sandbox=credential.sandbox,
            rate_limit=self._rate_limit,
            timeout_ms=self._timeout_ms,
        )

    async def get(self, credential: Credential) -> ExchangeAPIClient:
        """Return the initialized client for a credential, creating it on first use."""
        key = credential.cache_key
        async with self._lock:
            client = self._clients.get(key)
            if client is not None:
                if client.is_initialized and self._secrets.get(key) == credential.api_secret:
                    return client
                self._clients.pop(key)
                self._secrets.pop(key, None)
                await client.close()
                logger.info("exchange_client_replaced", api_key=credential.masked_key)

            client = self._create_client(credential)
            await client.initialize()
            self._clients[key] = client
            self._secrets[key] = credential.api_secret
            logger.info(
                "exchange_client_registered",
                api_key=credential.masked_key,
                sandbox=credential.sandbox,
            )
            return client

    async def release(self, credential: Credential) -> None:
        """Close and forget the client for a credential."""
        async with self._lock:
            client = self._clients.pop(credential.cache_key, None)
            self._secrets.pop(credential.cache_key, None)
        if client is not None:
            await client.close()

    async def close(self) -> None:
        """Close every cached client."""
        async with self._lock:
            clients = list(self._clients.values())
            self._clients.clear()
            self._secrets.clear()
        for client in clients:
            await client.close()
        logger.info("exchange_client_pool_closed", clients=len(clients))

    def __len__(self) -> int:
        return len(self._clients)
