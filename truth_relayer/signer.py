"""
Relayer key management.

The private key is fetched from a SecretSource, held in a SecretCache with a
TTL, and handed out as an eth_account LocalAccount. Key material is never
logged or persisted.
"""

import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Optional, Protocol

import httpx
import structlog
from eth_account import Account
from eth_account.signers.local import LocalAccount

from .errors import SignerUnavailable

logger = structlog.get_logger()


class SecretSource(Protocol):
    """Where relayer keys live."""

    def fetch(self, name: str) -> str:
        """Return the secret value for `name`. Raise SignerUnavailable on failure."""
        ...


class EnvSecretSource:
    """Keys supplied directly through settings (local development)."""

    def __init__(self, secrets: dict[str, str]):
        self._secrets = secrets

    def fetch(self, name: str) -> str:
        value = self._secrets.get(name)
        if not value:
            raise SignerUnavailable(f"Secret not configured: {name}")
        return value


class VaultSecretSource:
    """
    HashiCorp Vault KV v2 secret source.

    Reads `GET {url}/v1/{mount}/data/{name}` and expects the key under
    `data.data.value`.
    """

    def __init__(
        self,
        url: str,
        token: str,
        mount: str = "secret",
        timeout: float = 10.0,
        client: Optional[httpx.Client] = None,
    ):
        self.base_url = url.rstrip("/")
        self.mount = mount.strip("/")
        self.client = client or httpx.Client(
            timeout=timeout,
            headers={"X-Vault-Token": token},
        )

    def fetch(self, name: str) -> str:
        url = f"{self.base_url}/v1/{self.mount}/data/{name}"
        try:
            response = self.client.get(url)
            response.raise_for_status()
            value = response.json()["data"]["data"]["value"]
        except (httpx.HTTPError, KeyError, TypeError, ValueError) as e:
            # The exception text can include the URL but never the secret.
            logger.error("vault_fetch_failed", secret=name, error=str(e))
            raise SignerUnavailable(f"Failed to fetch secret {name}") from e
        if not value:
            raise SignerUnavailable(f"Secret is empty: {name}")
        return value

    def close(self) -> None:
        self.client.close()


@dataclass
class _CachedSecret:
    value: str
    fetched_at: float


class SecretCache:
    """
    In-memory secret cache with a TTL.

    `ttl_seconds=0` disables expiry (cache for the process lifetime).
    """

    def __init__(
        self,
        source: SecretSource,
        ttl_seconds: int = 3600,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.source = source
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: dict[str, _CachedSecret] = {}
        self._lock = threading.Lock()

    def get(self, name: str) -> str:
        with self._lock:
            cached = self._entries.get(name)
            if cached is not None and not self._expired(cached):
                return cached.value

        value = self.source.fetch(name)
        with self._lock:
            self._entries[name] = _CachedSecret(value=value, fetched_at=self._clock())
        logger.info("secret_cached", secret=name, ttl_seconds=self.ttl_seconds)
        return value

    def invalidate(self, name: Optional[str] = None) -> None:
        """Drop one cached secret, or all of them."""
        with self._lock:
            if name is None:
                self._entries.clear()
            else:
                self._entries.pop(name, None)

    def _expired(self, cached: _CachedSecret) -> bool:
        if self.ttl_seconds == 0:
            return False
        return self._clock() - cached.fetched_at >= self.ttl_seconds


class KeySigner:
    """Hands out signing accounts for named keys."""

    def __init__(self, cache: SecretCache):
        self.cache = cache
        self._accounts: dict[str, tuple[str, LocalAccount]] = {}
        self._lock = threading.Lock()

    def get_signer(self, key_name: str) -> LocalAccount:
        """
        Return the account for `key_name`.

        Raises:
            SignerUnavailable: if the key cannot be fetched or is malformed.
        """
        secret = self.cache.get(key_name)
        with self._lock:
            known = self._accounts.get(key_name)
            if known is not None and known[0] == secret:
                return known[1]

        try:
            account = Account.from_key(secret)
        except Exception as e:
            self.cache.invalidate(key_name)
            raise SignerUnavailable(f"Malformed key material for {key_name}") from e

        with self._lock:
            self._accounts[key_name] = (secret, account)
        logger.info("signer_loaded", key_name=key_name, address=account.address)
        return account

    def invalidate(self, key_name: str) -> None:
        with self._lock:
            self._accounts.pop(key_name, None)
        self.cache.invalidate(key_name)
