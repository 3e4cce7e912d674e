"""
Tests for SharedDataResolver
"""
import asyncio

import pytest

from flag_factories import RECORD_ID, provider
from record_flags.components.contracts import SharedPayload
from record_flags.core.errors import ProviderError
from record_flags.services.shared_data_resolver import SharedDataResolver


@pytest.mark.asyncio
async def test_no_provider_returns_fallback(registry):
    payload = await SharedDataResolver(registry).resolve_shared_payload(RECORD_ID)

    assert payload.is_fallback
    assert payload.record_id == RECORD_ID
    assert dict(payload.data) == {"record_id": RECORD_ID}


@pytest.mark.asyncio
async def test_sync_provider_result_is_wrapped(registry):
    calls = []

    def fetch(record_id):
        calls.append(record_id)
        return {"name": "Acme", "tier": "gold"}

    registry.register_provider("fetch_account", fetch)

    payload = await SharedDataResolver(registry).resolve_shared_payload(RECORD_ID, provider("fetch_account"))

    assert calls == [RECORD_ID]
    assert payload.record_id == RECORD_ID
    assert payload.get("tier") == "gold"
    assert not payload.is_fallback


@pytest.mark.asyncio
async def test_async_provider_may_return_payload(registry):
    expected = SharedPayload(record_id=RECORD_ID, data={"name": "Acme"})

    @registry.provider("fetch_account")
    async def fetch(record_id):
        await asyncio.sleep(0)
        return expected

    payload = await SharedDataResolver(registry).resolve_shared_payload(RECORD_ID, provider("fetch_account"))
    assert payload is expected


@pytest.mark.asyncio
async def test_provider_object_with_fetch_method(registry):
    class AccountProvider:
        def fetch(self, record_id):
            return {"id": record_id}

    registry.register_provider("fetch_account", AccountProvider())
    payload = await SharedDataResolver(registry).resolve_shared_payload(RECORD_ID, provider("fetch_account"))
    assert payload.get("id") == RECORD_ID


@pytest.mark.asyncio
async def test_provider_failure_raises_provider_error(registry):
    def fetch(record_id):
        raise LookupError("record not found")

    registry.register_provider("fetch_account", fetch)

    with pytest.raises(ProviderError) as exc_info:
        await SharedDataResolver(registry).resolve_shared_payload(RECORD_ID, provider("fetch_account"))
    assert exc_info.value.detail == "record not found"
    assert exc_info.value.unit_id == "fetch_account"


@pytest.mark.asyncio
async def test_unregistered_provider_raises_provider_error(registry):
    with pytest.raises(ProviderError, match="No shared_data_provider registered"):
        await SharedDataResolver(registry).resolve_shared_payload(RECORD_ID, provider("missing"))


@pytest.mark.asyncio
async def test_provider_timeout_raises_provider_error(registry):
    async def fetch(record_id):
        await asyncio.sleep(5)

    registry.register_provider("slow", fetch)
    resolver = SharedDataResolver(registry, timeout_seconds=0.05)

    with pytest.raises(ProviderError, match="timed out"):
        await resolver.resolve_shared_payload(RECORD_ID, provider("slow"))


@pytest.mark.asyncio
@pytest.mark.parametrize("timeout_seconds", [None, 5])
async def test_provider_raised_timeout_keeps_its_message(registry, timeout_seconds):
    def fetch(record_id):
        raise TimeoutError("CRM socket timed out")

    registry.register_provider("crm", fetch)
    resolver = SharedDataResolver(registry, timeout_seconds=timeout_seconds)

    with pytest.raises(ProviderError) as exc_info:
        await resolver.resolve_shared_payload(RECORD_ID, provider("crm"))
    assert exc_info.value.detail == "CRM socket timed out"
