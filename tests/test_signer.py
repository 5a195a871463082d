"""
Tests for relayer key management: secret sources, TTL cache and signer.
"""

from typing import Any

import httpx
import pytest

from conftest import RELAYER_ADDRESS, TEST_PRIVATE_KEY
from truth_relayer.errors import SignerUnavailable
from truth_relayer.signer import EnvSecretSource, KeySigner, SecretCache, VaultSecretSource


class _CountingSource:
    def __init__(self, values: list[str]):
        self.values = list(values)
        self.fetches = 0

    def fetch(self, name: str) -> str:
        self.fetches += 1
        return self.values[min(self.fetches, len(self.values)) - 1]


class _Clock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


class _FakeResponse:
    def __init__(self, payload: Any = None, status_code: int = 200):
        self._payload = payload
        self.status_code = status_code

    def raise_for_status(self) -> None:
        if self.status_code >= 400:
            request = httpx.Request("GET", "https://vault.test")
            raise httpx.HTTPStatusError(
                "error", request=request, response=httpx.Response(self.status_code, request=request)
            )

    def json(self) -> Any:
        return self._payload


class TestSecretCache:
    """TTL and invalidation."""

    def test_cached_until_ttl(self) -> None:
        source = _CountingSource(["a", "b"])
        clock = _Clock()
        cache = SecretCache(source, ttl_seconds=60, clock=clock)

        assert cache.get("key") == "a"
        clock.now = 59
        assert cache.get("key") == "a"
        assert source.fetches == 1

        clock.now = 60
        assert cache.get("key") == "b"
        assert source.fetches == 2

    def test_zero_ttl_never_expires(self) -> None:
        source = _CountingSource(["a", "b"])
        clock = _Clock()
        cache = SecretCache(source, ttl_seconds=0, clock=clock)

        cache.get("key")
        clock.now = 10**9
        assert cache.get("key") == "a"
        assert source.fetches == 1

    def test_invalidate(self) -> None:
        source = _CountingSource(["a", "b", "c"])
        cache = SecretCache(source, ttl_seconds=3600)

        cache.get("key")
        cache.invalidate("key")
        assert cache.get("key") == "b"

        cache.invalidate()
        assert cache.get("key") == "c"


class TestKeySigner:
    """Signing accounts from key material."""

    def test_returns_account_for_key(self) -> None:
        signer = KeySigner(SecretCache(EnvSecretSource({"relayer": TEST_PRIVATE_KEY})))

        account = signer.get_signer("relayer")

        assert account.address == RELAYER_ADDRESS
        assert signer.get_signer("relayer") is account

    def test_missing_key(self) -> None:
        signer = KeySigner(SecretCache(EnvSecretSource({"relayer": ""})))

        with pytest.raises(SignerUnavailable):
            signer.get_signer("relayer")
        with pytest.raises(SignerUnavailable):
            signer.get_signer("other")

    def test_malformed_key_is_not_cached(self) -> None:
        source = _CountingSource(["0xnot-a-key", TEST_PRIVATE_KEY])
        signer = KeySigner(SecretCache(source, ttl_seconds=3600))

        with pytest.raises(SignerUnavailable) as excinfo:
            signer.get_signer("relayer")
        assert "0xnot-a-key" not in str(excinfo.value)

        assert signer.get_signer("relayer").address == RELAYER_ADDRESS
        assert source.fetches == 2

    def test_rotated_key_after_invalidate(self) -> None:
        other_key = "0x" + "11" * 32
        source = _CountingSource([TEST_PRIVATE_KEY, other_key])
        signer = KeySigner(SecretCache(source, ttl_seconds=3600))

        first = signer.get_signer("relayer")
        signer.invalidate("relayer")
        second = signer.get_signer("relayer")

        assert first.address == RELAYER_ADDRESS
        assert second.address != first.address


class TestVaultSecretSource:
    """KV v2 reads over HTTP."""

    def test_reads_kv2_value(self) -> None:
        source = VaultSecretSource("https://vault.test/", "s.token", mount="kv")
        calls: list[str] = []

        def fake_get(url: str) -> _FakeResponse:
            calls.append(url)
            return _FakeResponse(payload={"data": {"data": {"value": TEST_PRIVATE_KEY}}})

        source.client.get = fake_get  # type: ignore[assignment]

        assert source.fetch("relayer_private_key") == TEST_PRIVATE_KEY
        assert calls == ["https://vault.test/v1/kv/data/relayer_private_key"]
        assert source.client.headers["X-Vault-Token"] == "s.token"

    @pytest.mark.parametrize(
        "response",
        [
            _FakeResponse(status_code=403),
            _FakeResponse(payload={"data": {}}),
            _FakeResponse(payload={"data": {"data": {"value": ""}}}),
        ],
    )
    def test_failures_raise_signer_unavailable(self, response: _FakeResponse) -> None:
        source = VaultSecretSource("https://vault.test", "s.token")
        source.client.get = lambda url: response  # type: ignore[assignment]

        with pytest.raises(SignerUnavailable):
            source.fetch("relayer_private_key")
