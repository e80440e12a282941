"""Platform REST client for writing identities and attributes."""
import logging
import os
from typing import Any, Dict, Optional

import requests

from schemas import AttributeValue
from sync.errors import ConfigurationError, DispatchError

logger = logging.getLogger(__name__)


def _serialize(attributes: Dict[str, Any]) -> Dict[str, Any]:
    return {
        name: value.model_dump(mode="json") if isinstance(value, AttributeValue) else value
        for name, value in attributes.items()
    }


class PlatformClient:
    """Writes Close.io data back to platform accounts and users.

    Reads PLATFORM_API_URL and PLATFORM_API_TOKEN when not given explicitly.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        token: Optional[str] = None,
        timeout: Optional[int] = None,
        session: Optional[requests.Session] = None,
    ):
        self.base_url = (base_url or os.environ.get("PLATFORM_API_URL", "")).rstrip("/")
        self.token = token or os.environ.get("PLATFORM_API_TOKEN")
        self.timeout = timeout or int(os.environ.get("HTTP_TIMEOUT", "10"))
        self.session = session or requests.Session()
        if self.token:
            self.session.headers.update({"Authorization": f"Bearer {self.token}"})

    def is_configured(self) -> bool:
        return bool(self.base_url)

    def _post(self, path: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        if not self.is_configured():
            raise ConfigurationError("PLATFORM_API_URL is not set.")
        try:
            resp = self.session.post(f"{self.base_url}{path}", json=payload, timeout=self.timeout)
            resp.raise_for_status()
        except requests.RequestException as exc:
            raise DispatchError(f"POST {path} failed: {exc}") from exc
        return resp.json() if resp.content else {}

    def apply_account(self, ident: Dict[str, Any], attributes: Dict[str, Any]) -> Dict[str, Any]:
        """Resolve the account by ident and write the attributes."""
        return self._post("/accounts/traits", {
            "ident": ident,
            "attributes": _serialize(attributes),
        })

    def apply_user(
        self,
        ident: Dict[str, Any],
        attributes: Dict[str, Any],
        account_ident: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Resolve the user by ident, optionally link it to an account, write attributes."""
        payload: Dict[str, Any] = {"ident": ident, "attributes": _serialize(attributes)}
        if account_ident:
            payload["account"] = account_ident
        return self._post("/users/traits", payload)
