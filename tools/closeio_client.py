"""Close.io REST API client.

Calls the Close.io v1 API directly with requests (basic auth, API key as
user name). Every request first claims a slot on the throttle shared by
all clients using the same API key.
"""
import asyncio
import logging
import os
from typing import Any, Dict, List, Optional, Sequence

import requests

from schemas import Envelope, ObjectType, OpsResult
from sync.errors import ConfigurationError, DispatchError
from tools.throttle import Throttle

logger = logging.getLogger(__name__)

BASE_API_URL = "https://app.close.io/api/v1"
PAGE_SIZE = 100


def _error_body(resp: requests.Response) -> Any:
    try:
        return resp.json()
    except ValueError:
        return resp.text


class ServiceClient:
    def __init__(
        self,
        api_key: Optional[str],
        base_url: Optional[str] = None,
        throttle: Optional[Throttle] = None,
        timeout: Optional[int] = None,
        session: Optional[requests.Session] = None,
    ):
        self.api_key = api_key
        self.base_url = (base_url or os.environ.get("CLOSEIO_BASE_URL", BASE_API_URL)).rstrip("/")
        self.throttle = throttle
        self.timeout = timeout or int(os.environ.get("HTTP_TIMEOUT", "10"))
        self.session = session or requests.Session()
        self.session.auth = (api_key or "", "")
        self.session.headers.update({"Content-Type": "application/json"})

    def has_valid_api_key(self) -> bool:
        return isinstance(self.api_key, str) and len(self.api_key) > 5

    def _request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        json: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        if not self.has_valid_api_key():
            raise ConfigurationError("No API key specified in the Settings.")
        if self.throttle is not None:
            self.throttle.acquire()
        try:
            resp = self.session.request(
                method,
                f"{self.base_url}{path}",
                params=params,
                json=json,
                timeout=self.timeout,
            )
            resp.raise_for_status()
            return resp.json()
        except requests.HTTPError as exc:
            status = exc.response.status_code if exc.response is not None else None
            body = _error_body(exc.response) if exc.response is not None else None
            raise DispatchError(f"{method} {path} returned {status}", status_code=status, body=body) from exc
        except requests.RequestException as exc:
            raise DispatchError(f"{method} {path} failed: {exc}") from exc
        except ValueError as exc:
            raise DispatchError(f"{method} {path} returned a non-JSON body: {exc}") from exc

    # ------------------------------------------------------------------
    # Leads
    # ------------------------------------------------------------------

    def list_leads(self, query: str, limit: int = PAGE_SIZE, skip: int = 0) -> Dict[str, Any]:
        """Return one page of leads: {'data': [...], 'has_more': bool}."""
        return self._request("GET", "/lead/", params={"query": query, "_limit": limit, "_skip": skip})

    def create_lead(self, data: Dict[str, Any]) -> Dict[str, Any]:
        return self._request("POST", "/lead/", json=data)

    def update_lead(self, data: Dict[str, Any]) -> Dict[str, Any]:
        if not data.get("id"):
            raise DispatchError("Cannot update lead without id")
        return self._request("PUT", f"/lead/{data['id']}/", json=data)

    # ------------------------------------------------------------------
    # Contacts
    # ------------------------------------------------------------------

    def create_contact(self, data: Dict[str, Any]) -> Dict[str, Any]:
        return self._request("POST", "/contact/", json=data)

    def update_contact(self, data: Dict[str, Any]) -> Dict[str, Any]:
        if not data.get("id"):
            raise DispatchError("Cannot update contact without id")
        return self._request("PUT", f"/contact/{data['id']}/", json=data)

    # ------------------------------------------------------------------
    # Reference data
    # ------------------------------------------------------------------

    def list_lead_statuses(self) -> List[Dict[str, Any]]:
        return self._request("GET", "/status/lead/").get("data", [])

    def list_custom_fields(self) -> List[Dict[str, Any]]:
        """Return every lead custom field, following pagination."""
        fields: List[Dict[str, Any]] = []
        skip = 0
        while True:
            page = self._request(
                "GET", "/custom_fields/lead/", params={"_limit": PAGE_SIZE, "_skip": skip}
            )
            data = page.get("data", [])
            fields.extend(data)
            if not page.get("has_more") or not data:
                return fields
            skip += len(data)

    def is_authenticated(self) -> bool:
        if not self.has_valid_api_key():
            return False
        try:
            self._request("GET", "/me/")
            return True
        except DispatchError:
            return False

    # ------------------------------------------------------------------
    # Envelope dispatch
    # ------------------------------------------------------------------

    def _send_envelope(self, envelope: Envelope, create: bool) -> Envelope:
        """Send one envelope's write payload; failures are recorded on the copy."""
        enriched = envelope.model_copy(deep=True)
        if enriched.object_type == ObjectType.LEAD:
            send = self.create_lead if create else self.update_lead
        else:
            send = self.create_contact if create else self.update_contact
        try:
            enriched.read = send(enriched.write)
            enriched.ops_result = OpsResult.SUCCESS
        except ConfigurationError:
            raise
        except DispatchError as exc:
            enriched.read = None
            enriched.fail(f"{exc}: {exc.body}" if exc.body else str(exc))
        except Exception as exc:
            logger.error("Unexpected error sending %s: %s", enriched.internal_id, exc, exc_info=True)
            enriched.read = None
            enriched.fail(f"Unexpected error: {exc}")
        return enriched

    async def post_envelopes(self, envelopes: Sequence[Envelope]) -> List[Envelope]:
        """Create the Close.io objects for all envelopes concurrently."""
        return list(await asyncio.gather(
            *(asyncio.to_thread(self._send_envelope, e, True) for e in envelopes)
        ))

    async def put_envelopes(self, envelopes: Sequence[Envelope]) -> List[Envelope]:
        """Update the Close.io objects for all envelopes concurrently."""
        return list(await asyncio.gather(
            *(asyncio.to_thread(self._send_envelope, e, False) for e in envelopes)
        ))
