"""Shared plumbing for sandbox broker REST clients.

Subclasses supply their auth headers and the provider-specific order calls;
this base owns the ``requests`` session, timeouts and the executor hop.
"""

import asyncio
from functools import partial

import requests

REQ_TIMEOUT = (5, 12)  # (connect, read) seconds


def parse_price(value) -> float | None:
    """Positive float or None for missing / unparseable provider prices."""
    try:
        price = float(value)
    except (TypeError, ValueError):
        return None
    return price if price > 0 else None


class SandboxRestClient:
    """Base for a provider client talking JSON over one ``requests.Session``."""

    def __init__(self, base_url: str):
        self.base_url = base_url.rstrip("/")
        self._session: requests.Session | None = None

    def _auth_headers(self) -> dict[str, str]:
        raise NotImplementedError

    def _ensure_session(self) -> requests.Session:
        if self._session is None:
            self._session = requests.Session()
            self._session.headers.update({**self._auth_headers(), "Content-Type": "application/json"})
        return self._session

    def _request(self, method: str, path: str, payload: dict | None = None) -> dict:
        resp = self._ensure_session().request(
            method, f"{self.base_url}{path}", json=payload, timeout=REQ_TIMEOUT
        )
        resp.raise_for_status()
        return resp.json()

    async def _call(self, method: str, path: str, payload: dict | None = None) -> dict:
        # requests is synchronous, run in executor to avoid blocking
        return await asyncio.get_event_loop().run_in_executor(
            None, partial(self._request, method, path, payload)
        )

    async def close(self):
        if self._session is not None:
            self._session.close()
        self._session = None
