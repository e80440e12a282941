"""Tests for SyncAgent batch orchestration.

Close.io calls are patched on a real ServiceClient; the platform client is
a MagicMock and identity links live in a MemoryCache.
"""
from unittest.mock import MagicMock

import pytest

from db.cache import MemoryCache
from schemas import (
    AccountUpdateMessage,
    Classification,
    OpsResult,
    SyncSettings,
    UserUpdateMessage,
)
from sync import messages
from sync.errors import ConfigurationError, DispatchError
from sync.sync_agent import LAST_SYNC_AT_CACHE_KEY, LEAD_STATUS_CACHE_KEY, SyncAgent
from tools.closeio_client import ServiceClient
from tools.platform_client import PlatformClient


LEAD_STATUSES = [{"id": "stat_potential", "label": "Potential"}]


def _service_client(api_key="api_test_key"):
    client = ServiceClient(api_key, session=MagicMock())
    client.list_lead_statuses = MagicMock(return_value=LEAD_STATUSES)
    client.list_custom_fields = MagicMock(return_value=[])
    client.create_lead = MagicMock(side_effect=lambda data: {"id": "lead_1", **data})
    client.update_lead = MagicMock(side_effect=lambda data: dict(data))
    client.create_contact = MagicMock(side_effect=lambda data: {"id": "cont_1", **data})
    client.update_contact = MagicMock(side_effect=lambda data: dict(data))
    return client


def _agent(cache=None, api_key="api_test_key", **settings):
    settings = SyncSettings(**{
        "api_key": api_key,
        "synchronized_account_segments": ["seg-1"],
        "lead_attributes_inbound": ["status_id"],
        **settings,
    })
    return SyncAgent(settings, cache or MemoryCache(), _service_client(api_key), MagicMock())


def _account(account_id="acc-1", segments=("seg-1",), **fields):
    return AccountUpdateMessage(
        account={"id": account_id, "name": "Acme", "domain": "acme.com", **fields},
        account_segments=[{"id": s} for s in segments],
    )


def _user(user_id="usr-1", account=None, **fields):
    return UserUpdateMessage(
        user={"id": user_id, "name": "Jane", **fields},
        account=account or {"id": "acc-1", "name": "Acme"},
        account_segments=[{"id": "seg-1"}],
    )


class TestSendAccountMessages:
    @pytest.mark.asyncio
    async def test_insert_then_update(self):
        agent = _agent()

        [inserted] = await agent.send_account_messages([_account()])

        assert inserted.classification == Classification.INSERT
        assert inserted.ops_result == OpsResult.SUCCESS
        assert await agent.cache.get("acc-1") == "lead_1"
        ident, attributes = agent.platform_client.apply_account.call_args.args
        assert ident == {"id": "acc-1"}
        assert attributes["closeio/id"].value == "lead_1"

        [updated] = await agent.send_account_messages([_account(name="Acme Inc")])

        assert updated.classification == Classification.UPDATE
        assert agent.service_client.create_lead.call_count == 1
        sent = agent.service_client.update_lead.call_args.args[0]
        assert sent["id"] == "lead_1"
        assert sent["name"] == "Acme Inc"

    @pytest.mark.asyncio
    async def test_lead_payload(self):
        agent = _agent(lead_status="stat_potential")

        await agent.send_account_messages([_account(domain="https://www.acme.com/")])

        sent = agent.service_client.create_lead.call_args.args[0]
        assert sent == {"name": "Acme", "url": "www.acme.com", "status_id": "stat_potential"}

    @pytest.mark.asyncio
    async def test_duplicate_messages_sent_once(self):
        agent = _agent()

        envelopes = await agent.send_account_messages([
            _account(name="Old", indexed_at="2024-01-01T00:00:00Z"),
            _account(name="New", indexed_at="2024-01-02T00:00:00Z"),
        ])

        assert len(envelopes) == 1
        agent.service_client.create_lead.assert_called_once()
        assert agent.service_client.create_lead.call_args.args[0]["name"] == "New"

    @pytest.mark.asyncio
    async def test_segment_mismatch_skipped(self):
        agent = _agent()

        [envelope] = await agent.send_account_messages([_account(segments=("seg-9",))])

        assert envelope.classification == Classification.SKIP
        assert envelope.skip_reason == messages.OPERATION_SKIP_NOMATCHACCOUNTSEGMENTS().message
        agent.service_client.create_lead.assert_not_called()
        agent.platform_client.apply_account.assert_not_called()

    @pytest.mark.asyncio
    async def test_dispatch_failure_isolated(self):
        agent = _agent()

        def create_lead(data):
            if data["name"] == "Broken":
                raise DispatchError("POST /lead/ returned 400", status_code=400)
            return {"id": "lead_ok", **data}

        agent.service_client.create_lead.side_effect = create_lead

        envelopes = await agent.send_account_messages([
            _account("acc-ok"),
            _account("acc-bad", name="Broken"),
        ])

        results = {e.internal_id: e for e in envelopes}
        assert results["acc-ok"].ops_result == OpsResult.SUCCESS
        assert results["acc-bad"].ops_result == OpsResult.ERROR
        assert "400" in results["acc-bad"].error
        assert await agent.cache.get("acc-ok") == "lead_ok"
        assert await agent.cache.get("acc-bad") is None
        agent.platform_client.apply_account.assert_called_once()

    @pytest.mark.asyncio
    async def test_platform_failure_keeps_identity_link(self):
        agent = _agent()
        agent.platform_client.apply_account.side_effect = DispatchError("POST /accounts/traits failed")

        [envelope] = await agent.send_account_messages([_account()])

        assert envelope.ops_result == OpsResult.ERROR
        assert await agent.cache.get("acc-1") == "lead_1"

    @pytest.mark.asyncio
    async def test_missing_api_key_aborts_before_dispatch(self):
        agent = _agent(api_key=None)

        with pytest.raises(ConfigurationError):
            await agent.send_account_messages([_account()])

        agent.service_client.list_lead_statuses.assert_not_called()
        agent.service_client.create_lead.assert_not_called()

    @pytest.mark.asyncio
    async def test_empty_batch(self):
        agent = _agent()
        assert await agent.send_account_messages([]) == []


class TestSendUserMessages:
    @pytest.mark.asyncio
    async def test_user_inserted_under_linked_lead(self):
        cache = MemoryCache()
        await cache.set("acc-1", "lead_1")
        agent = _agent(cache)

        [envelope] = await agent.send_user_messages([_user()])

        assert envelope.classification == Classification.INSERT
        assert envelope.ops_result == OpsResult.SUCCESS
        sent = agent.service_client.create_contact.call_args.args[0]
        assert sent["lead_id"] == "lead_1"
        assert await cache.get("usr-1") == "cont_1"
        ident, attributes = agent.platform_client.apply_user.call_args.args
        assert ident == {"id": "usr-1"}
        assert attributes["closeio/lead_id"].value == "lead_1"

    @pytest.mark.asyncio
    async def test_user_without_lead_skipped(self):
        agent = _agent()

        [envelope] = await agent.send_user_messages([_user()])

        assert envelope.classification == Classification.SKIP
        assert envelope.skip_reason == messages.OPERATION_SKIP_NOLINKEDACCOUNT().message
        agent.service_client.create_contact.assert_not_called()

    @pytest.mark.asyncio
    async def test_known_contact_updated(self):
        agent = _agent()

        [envelope] = await agent.send_user_messages([_user(**{"closeio/id": "cont_9"}, account={
            "id": "acc-1", "name": "Acme", "closeio/id": "lead_1",
        })])

        assert envelope.classification == Classification.UPDATE
        sent = agent.service_client.update_contact.call_args.args[0]
        assert sent["id"] == "cont_9"
        assert sent["lead_id"] == "lead_1"

    @pytest.mark.asyncio
    async def test_unmappable_user_reported(self):
        agent = _agent()

        [envelope] = await agent.send_user_messages([UserUpdateMessage(
            user={"id": "usr-9"},
            account={"id": "acc-1", "closeio/id": "lead_1"},
            account_segments=[{"id": "seg-1"}],
        )])

        assert envelope.ops_result == OpsResult.ERROR
        assert envelope.classification is None
        assert "usr-9" in envelope.error
        agent.service_client.create_contact.assert_not_called()


class TestInitialize:
    @pytest.mark.asyncio
    async def test_reference_data_loaded_once(self):
        cache = MemoryCache()
        agent = _agent(cache)

        await agent.initialize()
        await agent.initialize()

        assert agent.is_initialized()
        agent.service_client.list_lead_statuses.assert_called_once()
        assert await cache.get(LEAD_STATUS_CACHE_KEY) == LEAD_STATUSES

    @pytest.mark.asyncio
    async def test_reference_data_shared_through_cache(self):
        cache = MemoryCache()
        await _agent(cache).initialize()

        second = _agent(cache)
        await second.initialize()

        second.service_client.list_lead_statuses.assert_not_called()
        assert "stat_potential" in second.mapping_util.lead_statuses

    @pytest.mark.asyncio
    async def test_reference_data_failure_not_fatal(self):
        cache = MemoryCache()
        agent = _agent(cache)
        agent.service_client.list_lead_statuses.side_effect = DispatchError("GET /status/lead/ returned 503")

        [envelope] = await agent.send_account_messages([_account()])

        assert envelope.ops_result == OpsResult.SUCCESS
        assert agent.mapping_util.lead_statuses == {}
        assert await cache.get(LEAD_STATUS_CACHE_KEY) is None


class TestFetchUpdatedLeads:
    LEAD = {
        "id": "lead_1",
        "url": "https://acme.com",
        "status_id": "stat_potential",
        "contacts": [
            {"id": "cont_1", "name": "Jane", "emails": [{"type": "office", "email": "jane@acme.com"}]},
        ],
    }

    @pytest.mark.asyncio
    async def test_imports_leads_and_contacts(self):
        agent = _agent(last_sync_at=1700000000)
        agent.service_client.list_leads = MagicMock(side_effect=[
            {"data": [self.LEAD], "has_more": True},
            {"data": [{"id": "lead_2", "url": "beta.io"}], "has_more": False},
        ])

        watermark = await agent.fetch_updated_leads()

        assert watermark is not None
        assert await agent.cache.get(LAST_SYNC_AT_CACHE_KEY) == watermark
        query, limit, skip = agent.service_client.list_leads.call_args_list[0].args
        assert query == "updated >= 2023-11-14T22:08:20"
        assert agent.service_client.list_leads.call_args_list[1].args[2] == 1

        account_calls = agent.platform_client.apply_account.call_args_list
        idents = sorted(c.args[0]["anonymous_id"] for c in account_calls)
        assert idents == ["closeio:lead_1", "closeio:lead_2"]

        user_ident, attributes, account_ident = agent.platform_client.apply_user.call_args.args
        assert user_ident == {"email": "jane@acme.com", "anonymous_id": "closeio:cont_1"}
        assert account_ident == {"domain": "acme.com", "anonymous_id": "closeio:lead_1"}
        assert attributes["closeio/lead_id"].value == "lead_1"

    @pytest.mark.asyncio
    async def test_cached_watermark_preferred(self):
        cache = MemoryCache()
        await cache.set(LAST_SYNC_AT_CACHE_KEY, 1700003600)
        agent = _agent(cache, last_sync_at=1700000000)
        agent.service_client.list_leads = MagicMock(return_value={"data": [], "has_more": False})

        await agent.fetch_updated_leads()

        query = agent.service_client.list_leads.call_args.args[0]
        assert query == "updated >= 2023-11-14T23:08:20"

    @pytest.mark.asyncio
    async def test_failed_lead_does_not_stop_job(self):
        agent = _agent()
        agent.service_client.list_leads = MagicMock(return_value={
            "data": [{"id": "lead_1", "url": "acme.com"}, {"id": "lead_2", "url": "beta.io"}],
            "has_more": False,
        })

        def apply_account(ident, attributes):
            if ident["anonymous_id"] == "closeio:lead_1":
                raise DispatchError("POST /accounts/traits failed")
            return {}

        agent.platform_client.apply_account.side_effect = apply_account

        assert await agent.fetch_updated_leads() is not None
        assert agent.platform_client.apply_account.call_count == 2

    @pytest.mark.asyncio
    async def test_listing_failure_keeps_watermark(self):
        agent = _agent()
        agent.service_client.list_leads = MagicMock(side_effect=DispatchError("GET /lead/ returned 500"))

        assert await agent.fetch_updated_leads() is None
        assert await agent.cache.get(LAST_SYNC_AT_CACHE_KEY) is None


class TestBatchIsolation:
    @pytest.mark.asyncio
    async def test_non_json_reply_keeps_sibling_links(self):
        agent = _agent()
        del agent.service_client.create_lead

        def request(method, url, params=None, json=None, timeout=None):
            resp = MagicMock()
            resp.raise_for_status.return_value = None
            if json["name"] == "Broken":
                resp.json.side_effect = ValueError("Expecting value: line 1 column 1 (char 0)")
            else:
                resp.json.return_value = {"id": "lead_ok", **json}
            return resp

        agent.service_client.session.request.side_effect = request

        envelopes = await agent.send_account_messages([
            _account("acc-ok"),
            _account("acc-bad", name="Broken"),
        ])

        results = {e.internal_id: e for e in envelopes}
        assert results["acc-ok"].ops_result == OpsResult.SUCCESS
        assert results["acc-bad"].ops_result == OpsResult.ERROR
        assert await agent.cache.get("acc-ok") == "lead_ok"
        assert await agent.cache.get("acc-bad") is None


class TestPlatformConfiguration:
    @pytest.fixture(autouse=True)
    def _no_platform_url(self, monkeypatch):
        monkeypatch.delenv("PLATFORM_API_URL", raising=False)

    @pytest.mark.asyncio
    async def test_outgoing_aborts_before_dispatch(self):
        agent = _agent()
        agent.platform_client = PlatformClient(base_url="")

        with pytest.raises(ConfigurationError):
            await agent.send_account_messages([_account()])

        agent.service_client.create_lead.assert_not_called()
        assert await agent.cache.get("acc-1") is None

    @pytest.mark.asyncio
    async def test_incoming_aborts_without_moving_watermark(self):
        agent = _agent()
        agent.platform_client = PlatformClient(base_url="")
        agent.service_client.list_leads = MagicMock(return_value={
            "data": [{"id": "lead_1", "url": "acme.com"}], "has_more": False,
        })

        with pytest.raises(ConfigurationError):
            await agent.fetch_updated_leads()

        agent.service_client.list_leads.assert_not_called()
        assert await agent.cache.get(LAST_SYNC_AT_CACHE_KEY) is None

    @pytest.mark.asyncio
    async def test_configuration_error_during_import_propagates(self):
        agent = _agent()
        agent.platform_client.apply_account.side_effect = ConfigurationError("PLATFORM_API_URL is not set.")
        agent.service_client.list_leads = MagicMock(return_value={
            "data": [{"id": "lead_1", "url": "acme.com"}], "has_more": False,
        })

        with pytest.raises(ConfigurationError):
            await agent.fetch_updated_leads()

        assert await agent.cache.get(LAST_SYNC_AT_CACHE_KEY) is None

    @pytest.mark.asyncio
    async def test_configuration_error_during_contact_import_propagates(self):
        agent = _agent()
        agent.platform_client.apply_user.side_effect = ConfigurationError("PLATFORM_API_URL is not set.")
        agent.service_client.list_leads = MagicMock(return_value={
            "data": [{"id": "lead_1", "url": "acme.com", "contacts": [{"id": "cont_1"}]}],
            "has_more": False,
        })

        with pytest.raises(ConfigurationError):
            await agent.fetch_updated_leads()

        assert await agent.cache.get(LAST_SYNC_AT_CACHE_KEY) is None

    @pytest.mark.asyncio
    async def test_configuration_error_during_write_back_propagates(self):
        agent = _agent()
        agent.platform_client.apply_account.side_effect = ConfigurationError("PLATFORM_API_URL is not set.")

        with pytest.raises(ConfigurationError):
            await agent.send_account_messages([_account()])


class UnreachableCache(MemoryCache):
    async def get(self, key):
        raise ConnectionRefusedError("cache backend unreachable")


class TestCacheFailures:
    @pytest.mark.asyncio
    async def test_initialize_survives_cache_failure(self):
        agent = _agent(UnreachableCache())

        await agent.initialize()

        assert agent.is_initialized()
        assert agent.mapping_util.lead_statuses == {}

    @pytest.mark.asyncio
    async def test_outgoing_skips_entities_when_lookup_fails(self):
        agent = _agent(UnreachableCache())

        [envelope] = await agent.send_account_messages([_account()])

        assert envelope.classification == Classification.SKIP
        assert envelope.skip_reason == messages.OPERATION_SKIP_IDENTITYLOOKUPFAILED().message
        agent.service_client.create_lead.assert_not_called()

    @pytest.mark.asyncio
    async def test_fetch_returns_none_when_watermark_unreadable(self):
        agent = _agent(UnreachableCache())
        agent.service_client.list_leads = MagicMock(return_value={"data": [], "has_more": False})

        assert await agent.fetch_updated_leads() is None
        agent.service_client.list_leads.assert_not_called()
