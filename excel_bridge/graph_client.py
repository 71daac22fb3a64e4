# excel_bridge/graph_client.py
from __future__ import annotations

import logging
import time
from typing import Any, Dict, Optional

import requests
from flask import current_app
from requests import Response

from excel_bridge.config import cfg
from excel_bridge.errors import GraphAPIError, classify_graph_error
from excel_bridge.graph_auth import AppTokenProvider, StaticTokenProvider

log = logging.getLogger(__name__)

GRAPH_BASE = "https://graph.microsoft.com/v1.0"


class GraphClient:
    """
    Minimal Microsoft Graph client over ``requests``.

    A 401 invalidates the cached token and resends exactly once. Every other
    non-2xx response is classified and raised as GraphAPIError without retry.
    """

    def __init__(
        self,
        token_provider,
        base_url: str = GRAPH_BASE,
        timeout: float = 30.0,
        session: Optional[requests.Session] = None,
    ):
        self.token_provider = token_provider
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()

    # ────────────────────────── HTTP helpers ──────────────────────────
    def _url(self, path: str) -> str:
        if path.startswith("http://") or path.startswith("https://"):
            return path
        return f"{self.base_url}/{path.lstrip('/')}"

    def _headers(self, extra: Optional[Dict[str, str]] = None) -> Dict[str, str]:
        h = {"Authorization": f"Bearer {self.token_provider.get_token()}"}
        if extra:
            h.update(extra)
        return h

    def _send(self, method: str, url: str, **kwargs: Any) -> Response:
        return self.session.request(method, url, timeout=self.timeout, **kwargs)

    def request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        json: Any = None,
        data: Optional[bytes] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> Dict[str, Any]:
        url = self._url(path)
        resp: Optional[Response] = None

        for attempt in (1, 2):
            started = time.monotonic()
            try:
                resp = self._send(
                    method, url,
                    params=params, json=json, data=data,
                    headers=self._headers(headers),
                )
            except (requests.exceptions.Timeout, requests.exceptions.ConnectionError) as e:
                log.warning("graph %s %s unreachable: %s", method, url, e)
                raise GraphAPIError(
                    "Service temporarily unavailable", 503, category="unavailable"
                ) from e

            log.debug(
                "graph %s %s -> %s (%.0f ms)",
                method, url, resp.status_code, (time.monotonic() - started) * 1000,
            )
            if resp.status_code == 401 and attempt == 1:
                log.info("graph returned 401; refreshing token and retrying once")
                self.token_provider.invalidate()
                continue
            break

        if resp.status_code >= 400:
            err = classify_graph_error(resp)
            log.warning(
                "graph %s %s failed: %s %s",
                method, url, resp.status_code, err.graph_code or err.category,
            )
            raise err

        if resp.status_code == 204 or not resp.content:
            return {}
        try:
            return resp.json()
        except ValueError:
            return {}

    def get(self, path: str, **kwargs: Any) -> Dict[str, Any]:
        return self.request("GET", path, **kwargs)

    def post(self, path: str, **kwargs: Any) -> Dict[str, Any]:
        return self.request("POST", path, **kwargs)

    def patch(self, path: str, **kwargs: Any) -> Dict[str, Any]:
        return self.request("PATCH", path, **kwargs)

    def put(self, path: str, **kwargs: Any) -> Dict[str, Any]:
        return self.request("PUT", path, **kwargs)

    def delete(self, path: str, **kwargs: Any) -> Dict[str, Any]:
        return self.request("DELETE", path, **kwargs)


def _token_provider_from_config():
    static = str(cfg("MS_GRAPH_BEARER") or "").strip()
    if static:
        return StaticTokenProvider(static)
    return AppTokenProvider(
        tenant_id=str(cfg("AZURE_TENANT_ID") or ""),
        client_id=str(cfg("AZURE_CLIENT_ID") or "").strip(),
        client_secret=str(cfg("AZURE_CLIENT_SECRET") or "").strip(),
        scope=str(cfg("GRAPH_SCOPE")),
    )


def get_graph_client() -> GraphClient:
    """Client for the current app; ``graph_client_factory`` in app.extensions overrides it."""
    factory = current_app.extensions.get("graph_client_factory")
    if factory is not None:
        return factory()

    client = current_app.extensions.get("graph_client")
    if client is None:
        client = GraphClient(
            _token_provider_from_config(),
            base_url=str(cfg("GRAPH_BASE", GRAPH_BASE)),
            timeout=float(cfg("GRAPH_TIMEOUT_SECONDS", 30)),
        )
        current_app.extensions["graph_client"] = client
    return client
