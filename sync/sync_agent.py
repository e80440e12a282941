"""Sync orchestration between platform change notifications and Close.io.

Outgoing batch flow, per object type:
  dedup -> build envelopes -> classify -> dispatch updates, then inserts
  -> write Close.io results back to the platform and record new identity links.

Incoming flow (poll): list recently updated leads and write them, with
their contacts, to the platform.

Every envelope succeeds, skips or fails on its own; only configuration
errors abort a batch.
"""
import asyncio
import copy
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

from dateutil.relativedelta import relativedelta

from schemas import (
    AccountUpdateMessage,
    Envelope,
    FilterResults,
    ObjectType,
    OpsResult,
    SyncSettings,
    UserUpdateMessage,
)
from sync.errors import ConfigurationError, DispatchError, MappingError
from sync.filter_util import FilterUtil
from sync.mapping_util import MappingUtil
from tools.closeio_client import PAGE_SIZE, ServiceClient
from tools.platform_client import PlatformClient

logger = logging.getLogger(__name__)

LEAD_STATUS_CACHE_KEY = "raw_lead_status"
LEAD_CUSTOM_FIELDS_CACHE_KEY = "raw_lead_custom_fields"
LAST_SYNC_AT_CACHE_KEY = "last_sync_at"
SAFETY_INTERVAL = timedelta(minutes=5)
DEFAULT_LOOKBACK = relativedelta(days=2)


class SyncAgent:
    """Runs outgoing and incoming syncs for one connector configuration.

    Args:
        settings: Connector settings; normalized on construction.
        cache: Identity and reference-data cache (see db.cache).
        service_client: Close.io API client.
        platform_client: Platform API client.
    """

    def __init__(
        self,
        settings: SyncSettings,
        cache: Any,
        service_client: ServiceClient,
        platform_client: PlatformClient,
    ):
        self.settings = settings.normalized()
        self.cache = cache
        self.service_client = service_client
        self.platform_client = platform_client
        self.filter_util = FilterUtil(self.settings.synchronized_account_segments, cache)
        self.mapping_util: Optional[MappingUtil] = None
        self._init_lock = asyncio.Lock()

    def is_initialized(self) -> bool:
        return self.mapping_util is not None

    def is_authentication_configured(self) -> bool:
        return self.service_client.has_valid_api_key()

    def is_platform_configured(self) -> bool:
        return self.platform_client.is_configured()

    def _require_configuration(self) -> None:
        """Fail before any dispatch when either side cannot be reached."""
        if not self.is_authentication_configured():
            raise ConfigurationError("No API key specified in the Settings.")
        if not self.is_platform_configured():
            raise ConfigurationError("PLATFORM_API_URL is not set.")

    async def initialize(self) -> None:
        """Load reference data (through the cache) and build the mapping util once."""
        async with self._init_lock:
            if self.is_initialized():
                return
            lead_statuses = await self._load_reference_data(
                LEAD_STATUS_CACHE_KEY, self.service_client.list_lead_statuses
            )
            lead_custom_fields = await self._load_reference_data(
                LEAD_CUSTOM_FIELDS_CACHE_KEY, self.service_client.list_custom_fields
            )
            self.mapping_util = MappingUtil(
                self.settings,
                lead_statuses=lead_statuses,
                lead_custom_fields=lead_custom_fields,
            )

    async def _load_reference_data(self, key: str, fetch: Callable[[], Any]) -> List[Any]:
        """Fetch reference data through the cache.

        A failed fetch is not cached; mapping proceeds without human-readable
        names for this process.
        """
        try:
            return await self.cache.wrap(key, lambda: asyncio.to_thread(fetch)) or []
        except ConfigurationError:
            raise
        except Exception as exc:
            logger.error("connector.metadata.error key=%s error=%s", key, exc)
            return []

    # ------------------------------------------------------------------
    # Envelope construction
    # ------------------------------------------------------------------

    async def _build_envelope(
        self,
        object_type: ObjectType,
        message: Any,
        internal: Dict[str, Any],
    ) -> Envelope:
        try:
            cached_id = await self.cache.get(internal["id"])
        except Exception as exc:
            # classification retries the lookup and skips if it fails again
            logger.warning("Cache lookup failed for %s: %s", internal["id"], exc)
            cached_id = None
        envelope = Envelope(
            object_type=object_type,
            message=message,
            internal=internal,
            cached_external_id=cached_id or None,
        )
        try:
            envelope.write = self.mapping_util.map_outbound(object_type, envelope.internal)
        except MappingError as exc:
            envelope.fail(str(exc))
        return envelope

    async def build_account_envelope(self, message: AccountUpdateMessage) -> Envelope:
        return await self._build_envelope(
            ObjectType.LEAD, message, copy.deepcopy(message.account)
        )

    async def build_user_envelope(self, message: UserUpdateMessage) -> Envelope:
        """Build a contact envelope; the user snapshot carries its account under 'account'."""
        combined_user = copy.deepcopy(message.user)
        combined_user["account"] = copy.deepcopy(message.account)
        return await self._build_envelope(ObjectType.CONTACT, message, combined_user)

    # ------------------------------------------------------------------
    # Outgoing
    # ------------------------------------------------------------------

    async def send_account_messages(self, messages: Sequence[AccountUpdateMessage]) -> List[Envelope]:
        """Sync platform accounts to Close.io leads. Returns every processed envelope."""
        self._require_configuration()
        await self.initialize()
        deduplicated = self.filter_util.deduplicate_account_messages(messages)
        envelopes = await asyncio.gather(*(self.build_account_envelope(m) for m in deduplicated))
        return await self._process(list(envelopes), self.filter_util.filter_accounts)

    async def send_user_messages(self, messages: Sequence[UserUpdateMessage]) -> List[Envelope]:
        """Sync platform users to Close.io contacts. Returns every processed envelope."""
        self._require_configuration()
        await self.initialize()
        deduplicated = self.filter_util.deduplicate_user_messages(messages)
        envelopes = await asyncio.gather(*(self.build_user_envelope(m) for m in deduplicated))
        return await self._process(list(envelopes), self.filter_util.filter_users)

    async def _process(
        self,
        envelopes: List[Envelope],
        classify: Callable[[Sequence[Envelope]], Awaitable[FilterResults]],
    ) -> List[Envelope]:
        unmapped = [e for e in envelopes if e.ops_result == OpsResult.ERROR]
        for envelope in unmapped:
            logger.error(
                "outgoing.%s.error id=%s error=%s",
                envelope.entity_label, envelope.internal_id, envelope.error,
            )

        results = await classify([e for e in envelopes if e.ops_result != OpsResult.ERROR])
        for envelope in results.to_skip:
            logger.info(
                "outgoing.%s.skip id=%s reason=%s",
                envelope.entity_label, envelope.internal_id, envelope.skip_reason,
            )

        updated = await self.service_client.put_envelopes(results.to_update)
        await asyncio.gather(*(self._apply_result(e, inserted=False) for e in updated))

        inserted = await self.service_client.post_envelopes(results.to_insert)
        await asyncio.gather(*(self._apply_result(e, inserted=True) for e in inserted))

        return unmapped + results.to_skip + updated + inserted

    async def _apply_result(self, envelope: Envelope, inserted: bool) -> None:
        """Write the Close.io record back to the platform entity.

        New identity links are cached before the platform write so a failed
        write can never cause a duplicate insert on the next change.
        """
        label = envelope.entity_label
        try:
            if envelope.ops_result != OpsResult.SUCCESS or envelope.read is None:
                raise DispatchError(envelope.error or "Unknown error")

            read = dict(envelope.read)
            if inserted:
                await self.cache.set(envelope.internal_id, read["id"])

            if envelope.object_type == ObjectType.CONTACT:
                read["lead_id"] = envelope.write.get("lead_id") or read.get("lead_id")
            attributes = self.mapping_util.map_inbound_attributes(envelope.object_type, read)
            ident = {"id": envelope.internal_id}
            if envelope.object_type == ObjectType.LEAD:
                await asyncio.to_thread(self.platform_client.apply_account, ident, attributes)
            else:
                await asyncio.to_thread(self.platform_client.apply_user, ident, attributes)
            logger.info("outgoing.%s.success id=%s write=%s", label, envelope.internal_id, envelope.write)
        except ConfigurationError as exc:
            envelope.fail(str(exc))
            raise
        except Exception as exc:
            if envelope.ops_result != OpsResult.ERROR:
                envelope.fail(str(exc))
            logger.error("outgoing.%s.error id=%s error=%s", label, envelope.internal_id, envelope.error)

    # ------------------------------------------------------------------
    # Incoming
    # ------------------------------------------------------------------

    async def _resolve_since(self) -> datetime:
        raw = await self.cache.get(LAST_SYNC_AT_CACHE_KEY)
        if raw is None:
            raw = self.settings.last_sync_at
        if raw is None:
            since = datetime.now(timezone.utc) - DEFAULT_LOOKBACK
        else:
            since = datetime.fromtimestamp(int(raw), tz=timezone.utc)
        return since - SAFETY_INTERVAL

    async def fetch_updated_leads(self) -> Optional[int]:
        """Import leads updated since the last run.

        Returns the new watermark (epoch seconds), or None if the job failed.
        """
        self._require_configuration()
        await self.initialize()
        started_at = int(datetime.now(timezone.utc).timestamp())
        total = 0
        skip = 0
        try:
            since = await self._resolve_since()
            query = f"updated >= {since.strftime('%Y-%m-%dT%H:%M:%S')}"
            logger.info("incoming.job.start since=%s", since.isoformat())
            while True:
                page = await asyncio.to_thread(self.service_client.list_leads, query, PAGE_SIZE, skip)
                leads = page.get("data", [])
                logger.info("incoming.job.progress leads=%d", len(leads))
                await asyncio.gather(*(self._import_lead(lead) for lead in leads))
                total += len(leads)
                if not page.get("has_more") or not leads:
                    break
                skip += len(leads)
            await self.cache.set(LAST_SYNC_AT_CACHE_KEY, started_at)
        except ConfigurationError:
            raise
        except Exception as exc:
            logger.error("incoming.job.error reason=%s", exc, exc_info=True)
            return None

        logger.info("incoming.job.success leads=%d", total)
        return started_at

    async def _import_lead(self, lead: Dict[str, Any]) -> None:
        try:
            account_ident = self.mapping_util.map_inbound_identity(ObjectType.LEAD, lead)
            attributes = self.mapping_util.map_inbound_attributes(ObjectType.LEAD, lead)
            await asyncio.to_thread(self.platform_client.apply_account, account_ident, attributes)
            logger.info("incoming.account.success lead_id=%s", lead.get("id"))
        except ConfigurationError:
            raise
        except Exception as exc:
            logger.error("incoming.account.error lead_id=%s error=%s", lead.get("id"), exc)
            return

        await asyncio.gather(*(
            self._import_contact(contact, lead["id"], account_ident)
            for contact in lead.get("contacts") or []
        ))

    async def _import_contact(
        self,
        contact: Dict[str, Any],
        lead_id: str,
        account_ident: Dict[str, Any],
    ) -> None:
        try:
            contact = {**contact, "lead_id": contact.get("lead_id") or lead_id}
            user_ident = self.mapping_util.map_inbound_identity(ObjectType.CONTACT, contact)
            attributes = self.mapping_util.map_inbound_attributes(ObjectType.CONTACT, contact)
            await asyncio.to_thread(
                self.platform_client.apply_user, user_ident, attributes, account_ident
            )
            logger.info("incoming.user.success contact_id=%s", contact.get("id"))
        except ConfigurationError:
            raise
        except Exception as exc:
            logger.error("incoming.user.error contact_id=%s error=%s", contact.get("id"), exc)
