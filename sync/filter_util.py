"""Deduplication and insert/update/skip classification of sync envelopes."""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence, TypeVar, Union

from dateutil.parser import isoparse

from schemas import (
    EXTERNAL_ID_ATTRIBUTE,
    AccountUpdateMessage,
    Envelope,
    FilterResults,
    UserUpdateMessage,
)
from sync import messages

logger = logging.getLogger(__name__)

_NEVER_INDEXED = datetime.min.replace(tzinfo=timezone.utc)

TMessage = TypeVar("TMessage", AccountUpdateMessage, UserUpdateMessage)


def _snapshot(message: Union[AccountUpdateMessage, UserUpdateMessage]) -> Dict[str, Any]:
    if isinstance(message, UserUpdateMessage):
        return message.user
    return message.account


def _indexed_at(record: Dict[str, Any]) -> datetime:
    """Parse the record's indexed_at timestamp; unparseable values sort first."""
    raw = record.get("indexed_at")
    if not raw:
        return _NEVER_INDEXED
    if isinstance(raw, datetime):
        parsed = raw
    elif isinstance(raw, (int, float)) and not isinstance(raw, bool):
        try:
            return datetime.fromtimestamp(raw, tz=timezone.utc)
        except (ValueError, OverflowError, OSError):
            return _NEVER_INDEXED
    else:
        try:
            parsed = isoparse(str(raw))
        except (ValueError, OverflowError):
            return _NEVER_INDEXED
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class FilterUtil:
    """Routes envelopes to skip, insert or update.

    Args:
        synchronized_account_segments: Allow-list of account segment ids.
            An empty list matches nothing.
        cache: Identity cache mapping platform ids to Close.io ids.
    """

    def __init__(
        self,
        synchronized_account_segments: Optional[Sequence[str]] = None,
        cache: Any = None,
    ):
        self.synchronized_account_segments = list(synchronized_account_segments or [])
        self.cache = cache

    # ------------------------------------------------------------------
    # Deduplication
    # ------------------------------------------------------------------

    def deduplicate(self, messages: Sequence[TMessage]) -> List[TMessage]:
        """Collapse messages to one per entity id.

        The most recently indexed snapshot wins (ties go to the later
        message); events from every message in the group are merged by
        event_id, later occurrences overwriting earlier ones.
        """
        groups: Dict[str, List[TMessage]] = {}
        for message in messages:
            groups.setdefault(message.entity_id, []).append(message)

        deduplicated: List[TMessage] = []
        for grouped in groups.values():
            latest = grouped[0]
            for candidate in grouped[1:]:
                if _indexed_at(_snapshot(candidate)) >= _indexed_at(_snapshot(latest)):
                    latest = candidate

            events = {}
            for message in grouped:
                for event in message.events:
                    events[event.event_id] = event

            merged = latest.model_copy(deep=True)
            merged.events = [event.model_copy(deep=True) for event in events.values()]
            deduplicated.append(merged)
        return deduplicated

    def deduplicate_account_messages(
        self, messages: Sequence[AccountUpdateMessage]
    ) -> List[AccountUpdateMessage]:
        return self.deduplicate(messages)

    def deduplicate_user_messages(
        self, messages: Sequence[UserUpdateMessage]
    ) -> List[UserUpdateMessage]:
        return self.deduplicate(messages)

    # ------------------------------------------------------------------
    # Segment gate
    # ------------------------------------------------------------------

    def matches_segments(
        self,
        envelope: Envelope,
        segment_field: str = "account_segments",
        allowed_segments: Optional[Sequence[str]] = None,
    ) -> bool:
        """Return True if the message's segments intersect the allow-list."""
        if allowed_segments is None:
            allowed_segments = self.synchronized_account_segments
        segment_ids = {s.id for s in getattr(envelope.message, segment_field, None) or []}
        return bool(segment_ids & set(allowed_segments))

    # ------------------------------------------------------------------
    # Classification
    # ------------------------------------------------------------------

    async def _cached_id(self, internal_id: Optional[str]) -> Optional[str]:
        if not internal_id or self.cache is None:
            return None
        return await self.cache.get(internal_id) or None

    async def _resolve_identity(self, envelope: Envelope) -> Optional[str]:
        explicit_id = envelope.internal.get(EXTERNAL_ID_ATTRIBUTE)
        if explicit_id:
            return explicit_id
        if envelope.cached_external_id:
            return envelope.cached_external_id
        cached_id = await self._cached_id(envelope.internal_id)
        if cached_id:
            envelope.cached_external_id = cached_id
        return cached_id

    async def _resolve_parent_lead(self, envelope: Envelope) -> Optional[str]:
        if envelope.write.get("lead_id"):
            return envelope.write["lead_id"]
        account = envelope.internal.get("account") or {}
        if account.get(EXTERNAL_ID_ATTRIBUTE):
            return account[EXTERNAL_ID_ATTRIBUTE]
        return await self._cached_id(account.get("id"))

    async def filter_accounts(self, envelopes: Sequence[Envelope]) -> FilterResults:
        """Classify account envelopes; each envelope lands in exactly one bucket."""
        results = FilterResults()
        for envelope in envelopes:
            if not self.matches_segments(envelope, "account_segments"):
                envelope.skip(messages.OPERATION_SKIP_NOMATCHACCOUNTSEGMENTS().message)
                results.to_skip.append(envelope)
                continue

            try:
                lead_id = await self._resolve_identity(envelope)
            except Exception as exc:
                logger.warning(
                    "Identity lookup failed for account %s: %s", envelope.internal_id, exc
                )
                envelope.skip(messages.OPERATION_SKIP_IDENTITYLOOKUPFAILED().message)
                results.to_skip.append(envelope)
                continue

            if lead_id:
                envelope.mark_update(lead_id)
                results.to_update.append(envelope)
            else:
                envelope.mark_insert()
                results.to_insert.append(envelope)
        return results

    async def filter_users(self, envelopes: Sequence[Envelope]) -> FilterResults:
        """Classify user envelopes.

        Users are gated by their account's segments. A user without a
        Close.io id is only inserted when its account resolves to a lead.
        """
        results = FilterResults()
        for envelope in envelopes:
            if not self.matches_segments(envelope, "account_segments"):
                envelope.skip(messages.OPERATION_SKIP_NOMATCHACCOUNTSEGMENTSUSER().message)
                results.to_skip.append(envelope)
                continue

            try:
                contact_id = await self._resolve_identity(envelope)
                lead_id = await self._resolve_parent_lead(envelope)
            except Exception as exc:
                logger.warning(
                    "Identity lookup failed for user %s: %s", envelope.internal_id, exc
                )
                envelope.skip(messages.OPERATION_SKIP_IDENTITYLOOKUPFAILED().message)
                results.to_skip.append(envelope)
                continue

            if lead_id:
                envelope.write["lead_id"] = lead_id
            else:
                envelope.write.pop("lead_id", None)

            if contact_id:
                envelope.mark_update(contact_id)
                results.to_update.append(envelope)
            elif lead_id:
                envelope.mark_insert()
                results.to_insert.append(envelope)
            else:
                envelope.skip(messages.OPERATION_SKIP_NOLINKEDACCOUNT().message)
                results.to_skip.append(envelope)
        return results
