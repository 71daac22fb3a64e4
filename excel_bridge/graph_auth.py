# excel_bridge/graph_auth.py
from __future__ import annotations

import logging
import threading
import time
from typing import Any, Dict, Optional

from msal import ConfidentialClientApplication

from excel_bridge.errors import ConfigurationError, GraphAPIError

log = logging.getLogger(__name__)

GRAPH_SCOPE = "https://graph.microsoft.com/.default"


def _authority_for(tenant: str) -> str:
    tenant = (tenant or "").strip()
    if tenant.lower() in ("", "common", "consumers"):
        tenant = "organizations"
    return f"https://login.microsoftonline.com/{tenant}"


class AppTokenProvider:
    """
    Client-credentials token for Microsoft Graph.

    Caches the token until shortly before it expires; ``invalidate()``
    drops it so the next ``get_token()`` goes back to Entra ID.
    """

    refresh_margin_seconds = 120

    def __init__(self, tenant_id: str, client_id: str, client_secret: str, scope: str = GRAPH_SCOPE):
        if not (client_id and client_secret):
            raise ConfigurationError("Missing AZURE_CLIENT_ID / AZURE_CLIENT_SECRET")
        self.authority = _authority_for(tenant_id)
        self.client_id = client_id
        self.client_secret = client_secret
        self.scope = scope
        self._msal_app: Optional[ConfidentialClientApplication] = None
        self._cache: Dict[str, Any] = {"access_token": None, "exp": 0.0}
        self._lock = threading.Lock()

    def _app(self) -> ConfidentialClientApplication:
        if self._msal_app is None:
            self._msal_app = ConfidentialClientApplication(
                client_id=self.client_id,
                authority=self.authority,
                client_credential=self.client_secret,
            )
        return self._msal_app

    def get_token(self) -> str:
        with self._lock:
            now = time.time()
            if self._cache["access_token"] and now < (self._cache["exp"] - self.refresh_margin_seconds):
                return self._cache["access_token"]

            result = self._app().acquire_token_for_client(scopes=[self.scope])
            if "access_token" not in result:
                log.error("token acquisition failed: %s", result.get("error"))
                raise GraphAPIError(
                    result.get("error_description") or "Azure AD authentication failed",
                    401,
                    category="auth",
                )

            self._cache["access_token"] = result["access_token"]
            self._cache["exp"] = now + int(result.get("expires_in", 3600))
            log.debug("acquired app token (expires in %ss)", result.get("expires_in"))
            return result["access_token"]

    def invalidate(self) -> None:
        with self._lock:
            self._cache.update({"access_token": None, "exp": 0.0})


class StaticTokenProvider:
    """Fixed bearer, e.g. MS_GRAPH_BEARER during local development."""

    def __init__(self, token: str):
        self.token = token

    def get_token(self) -> str:
        return self.token

    def invalidate(self) -> None:
        # nothing to refresh; a retry will resend the same token
        pass
