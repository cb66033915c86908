"""Python client for a running send guard instance.

Example:
    From a script::

        async with GuardClient("http://localhost:8000", token="secret") as guard:
            queued = await guard.send("acc-1", "+39 333 1234567", text="hello")
            print(await guard.message(queued["messageId"]))
"""

from __future__ import annotations

from typing import Any, Dict, Optional

import aiohttp


class GuardClientError(Exception):
    """The server answered with a non-2xx status."""

    def __init__(self, status: int, detail: Any):
        super().__init__(f"HTTP {status}: {detail}")
        self.status = status
        self.detail = detail


class GuardClient:
    """Async client of the send guard REST API.

    Attributes:
        url: Base URL of the server.
        token: API (or admin) token sent as ``X-API-Token``.
    """

    def __init__(
        self,
        url: str = "http://localhost:8000",
        token: Optional[str] = None,
        timeout: float = 30.0,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self.url = url.rstrip("/")
        self.token = token
        self.timeout = timeout
        self._session = session

    async def __aenter__(self) -> "GuardClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.token:
            headers["X-API-Token"] = self.token
        return headers

    async def close(self) -> None:
        if self._session is not None:
            await self._session.close()
            self._session = None

    async def _request(
        self,
        method: str,
        path: str,
        json_body: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> Any:
        if self._session is None:
            self._session = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=self.timeout))
        clean = {k: v for k, v in (params or {}).items() if v is not None}
        async with self._session.request(
            method, f"{self.url}{path}", json=json_body, params=clean or None, headers=self._headers()
        ) as resp:
            if resp.content_type == "application/json":
                data = await resp.json()
            else:
                data = await resp.text()
            if resp.status >= 400:
                detail = data.get("detail", data) if isinstance(data, dict) else data
                raise GuardClientError(resp.status, detail)
            return data

    # Queue -------------------------------------------------------------------
    async def status(self) -> Dict[str, Any]:
        return await self._request("GET", "/queue/status")

    async def send(
        self,
        account_id: str,
        to: str,
        text: Optional[str] = None,
        priority: Optional[str] = None,
        **extra: Any,
    ) -> Dict[str, Any]:
        """Queue a message. ``extra`` may carry kind, media, location, mentions."""
        body: Dict[str, Any] = {"account_id": account_id, "to": to, **extra}
        if text is not None:
            body["text"] = text
        if priority is not None:
            body["priority"] = priority
        return await self._request("POST", "/queue", body)

    async def message(self, message_id: str) -> Dict[str, Any]:
        result = await self._request("GET", f"/queue/messages/{message_id}")
        return result["message"]

    async def messages(self, account_id: Optional[str] = None, status: Optional[str] = None) -> list:
        result = await self._request("GET", "/queue/messages", params={"account_id": account_id, "status": status})
        return result["messages"]

    async def clear(self) -> int:
        result = await self._request("POST", "/queue/clear")
        return int(result["clearedMessages"])

    async def get_config(self) -> Dict[str, Any]:
        return (await self._request("GET", "/queue/config"))["config"]

    async def update_config(self, **options: Any) -> Dict[str, Any]:
        return (await self._request("PUT", "/queue/config", options))["config"]

    # Health ------------------------------------------------------------------
    async def health(self, account_id: Optional[str] = None) -> Any:
        """Health of one account, or of every known account."""
        if account_id:
            return (await self._request("GET", f"/accounts/{account_id}/health"))["health"]
        return (await self._request("GET", "/health/accounts"))["devices"]

    async def account_status(self, account_id: str) -> Dict[str, Any]:
        return await self._request("GET", f"/accounts/{account_id}/queue-status")

    async def attention(self) -> list:
        return (await self._request("GET", "/health/attention"))["devices"]

    async def warmup(self, account_id: str) -> Dict[str, Any]:
        return (await self._request("POST", f"/accounts/{account_id}/warmup"))["health"]

    async def dashboard(self) -> Dict[str, Any]:
        return await self._request("GET", "/dashboard")

    # Scheduler ---------------------------------------------------------------
    async def run_now(self) -> Dict[str, Any]:
        return await self._request("POST", "/commands/run-now")

    async def suspend(self) -> Dict[str, Any]:
        return await self._request("POST", "/commands/suspend")

    async def activate(self) -> Dict[str, Any]:
        return await self._request("POST", "/commands/activate")
