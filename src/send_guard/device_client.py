"""Account client capability consumed by the dispatch queue.

The queue never talks to the messaging network itself. It relies on an
*account client* owned by a separate device-lifecycle manager that knows
whether an account is connected and can perform the actual send.

Any object implementing :class:`AccountClient` can be plugged in. This module
also ships :class:`HttpAccountClient`, a bridge to a device-lifecycle service
exposed over HTTP.

Example:
    Bridging to a device service::

        client = HttpAccountClient("http://devices:3000/api", token="secret")
        if await client.is_ready("acc-1"):
            await client.send("acc-1", format_recipient("+39 333 1234567"),
                              {"kind": "text", "text": "hello"}, {})
"""

from __future__ import annotations

import re
import time
from typing import Any, Dict, Optional, Protocol, runtime_checkable

import aiohttp

from .errors import TransportError
from .logger import get_logger

CHAT_SUFFIX = "@c.us"


def format_recipient(to: str) -> str:
    """Normalise a recipient into a chat identifier.

    Bare phone numbers lose spaces, dashes and the leading ``+`` and are
    suffixed with ``@c.us``. Identifiers that already contain ``@`` (chats,
    groups) are returned unchanged.
    """
    to = to.strip()
    if "@" in to:
        return to
    digits = re.sub(r"\D", "", to)
    return f"{digits or to}{CHAT_SUFFIX}"


@runtime_checkable
class AccountClient(Protocol):
    """Capability used by the dispatch queue to reach an account.

    ``send_typing`` is optional: when a client does not provide it the queue
    simulates the typing pause with a plain sleep.
    """

    async def is_ready(self, account_id: str) -> bool: ...

    async def send(
        self,
        account_id: str,
        recipient: str,
        payload: Dict[str, Any],
        options: Dict[str, Any],
    ) -> Dict[str, Any]: ...


class HttpAccountClient:
    """Account client backed by a device-lifecycle HTTP service.

    Endpoints used:
        - ``GET {base}/devices/{id}/status`` -> ``{"ready": bool}``
        - ``POST {base}/devices/{id}/messages`` with recipient, payload, options
        - ``POST {base}/devices/{id}/typing`` with recipient and duration

    Attributes:
        base_url: Service root, without trailing slash.
        timeout: Per-request timeout in seconds.
    """

    def __init__(
        self,
        base_url: str,
        token: Optional[str] = None,
        timeout: float = 30.0,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._token = token
        self._session = session
        self._owns_session = session is None
        self.logger = get_logger("HttpAccountClient")

    def _headers(self) -> Dict[str, str]:
        if not self._token:
            return {}
        return {"Authorization": f"Bearer {self._token}"}

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout)
            )
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._session is not None and self._owns_session:
            await self._session.close()
        self._session = None

    async def _request(self, method: str, path: str, json_body: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        session = await self._get_session()
        url = f"{self.base_url}{path}"
        try:
            async with session.request(method, url, json=json_body, headers=self._headers()) as resp:
                if resp.status >= 400:
                    text = await resp.text()
                    raise TransportError(
                        f"{method} {path} returned {resp.status}: {text[:200]}",
                        provider_signal=resp.status == 429,
                        status=resp.status,
                    )
                if resp.content_type == "application/json":
                    return await resp.json()
                return {}
        except aiohttp.ClientError as exc:
            raise TransportError(f"{method} {path} failed: {exc}") from exc

    async def is_ready(self, account_id: str) -> bool:
        """Ask the device service whether the account is connected.

        A failure to reach the service counts as not ready.
        """
        try:
            data = await self._request("GET", f"/devices/{account_id}/status")
        except TransportError as exc:
            self.logger.warning("Readiness check for %s failed: %s", account_id, exc)
            return False
        return bool(data.get("ready", data.get("status") == "ready"))

    async def send(
        self,
        account_id: str,
        recipient: str,
        payload: Dict[str, Any],
        options: Dict[str, Any],
    ) -> Dict[str, Any]:
        """Deliver one message; raises :class:`TransportError` on failure."""
        started = time.monotonic()
        result = await self._request(
            "POST",
            f"/devices/{account_id}/messages",
            {"recipient": recipient, "payload": payload, "options": options},
        )
        self.logger.debug(
            "Sent to %s via %s in %.0fms", recipient, account_id, (time.monotonic() - started) * 1000
        )
        return result

    async def send_typing(self, account_id: str, recipient: str, duration_ms: int) -> None:
        await self._request(
            "POST",
            f"/devices/{account_id}/typing",
            {"recipient": recipient, "duration_ms": duration_ms},
        )
