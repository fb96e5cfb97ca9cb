from __future__ import annotations

"""Script persistence collaborators used by the saving/installing phases.

The endpoints themselves live outside this service; the orchestrator only
depends on the ``ScriptPersistence`` protocol.
"""

import logging
import uuid
from typing import Any, Dict, List, Optional, Protocol

import httpx

from ..core.errors import NetworkError, error_for_status

LOG = logging.getLogger("scriptgen.persistence")


class ScriptPersistence(Protocol):
    async def save(self, *, script_id: Optional[str], content: str, prompt: str) -> str: ...

    async def install(self, *, script_id: str) -> None: ...


class InMemoryScriptPersistence:
    def __init__(self) -> None:
        self.saved: Dict[str, Dict[str, Any]] = {}
        self.installed: List[str] = []

    async def save(self, *, script_id: Optional[str], content: str, prompt: str) -> str:
        sid = script_id or str(uuid.uuid4())
        self.saved[sid] = {"id": sid, "content": content, "prompt": prompt}
        return sid

    async def install(self, *, script_id: str) -> None:
        self.installed.append(script_id)


class HttpScriptPersistence:
    """Saves scripts through ``POST /api/scripts`` and installs through ``POST /api/install``."""

    def __init__(
        self,
        base_url: str,
        *,
        client: Optional[httpx.AsyncClient] = None,
        cli_api_key: Optional[str] = None,
        access_token: Optional[str] = None,
        timeout: float = 30.0,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._client = client
        self._timeout = timeout
        self._headers: Dict[str, str] = {}
        if cli_api_key:
            self._headers["X-CLI-API-Key"] = cli_api_key
        if access_token:
            self._headers["Authorization"] = f"Bearer {access_token}"

    async def _post(self, path: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        owns_client = self._client is None
        client = self._client or httpx.AsyncClient(timeout=self._timeout)
        try:
            response = await client.post(f"{self.base_url}{path}", json=payload, headers=self._headers)
        except httpx.HTTPError as exc:
            LOG.warning("persistence_request_failed", extra={"path": path, "err": str(exc)})
            raise NetworkError(str(exc) or exc.__class__.__name__) from exc
        finally:
            if owns_client:
                await client.aclose()
        if response.status_code >= 400:
            detail: Optional[str] = None
            try:
                body = response.json()
                if isinstance(body, dict):
                    detail = body.get("detail") or body.get("error")
            except ValueError:
                detail = response.text or None
            raise error_for_status(response.status_code, detail)
        try:
            data = response.json()
        except ValueError:
            return {}
        return data if isinstance(data, dict) else {}

    async def save(self, *, script_id: Optional[str], content: str, prompt: str) -> str:
        data = await self._post("/api/scripts", {"id": script_id, "content": content, "prompt": prompt})
        saved_id = str(data.get("id") or script_id or "")
        LOG.info("script_saved", extra={"script_id": saved_id})
        return saved_id

    async def install(self, *, script_id: str) -> None:
        await self._post("/api/install", {"scriptId": script_id})
        LOG.info("script_installed", extra={"script_id": script_id})
