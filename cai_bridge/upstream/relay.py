"""RelayClient: character service reached through an HTTP sidecar via httpx.

The sidecar wraps the vendor SDK and exposes four JSON endpoints::

    POST {relay_url}/connect     {"credential", "character_id"} -> {"handle"}
    POST {relay_url}/reset       {"handle"}
    POST {relay_url}/send        {"handle", "message"}           -> {"text"}
    POST {relay_url}/disconnect  {"handle"}
"""

from __future__ import annotations

import logging

import httpx

from ..types import UpstreamError
from .base import CharacterClient

logger = logging.getLogger(__name__)


class RelayClient(CharacterClient):
    name = "relay"

    def __init__(
        self,
        base_url: str,
        timeout: float = 60.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def _post(self, path: str, payload: dict) -> dict:
        url = f"{self.base_url}/{path}"
        try:
            response = await self._client.post(url, json=payload)
        except httpx.HTTPError as e:
            raise UpstreamError(f"Relay {path} failed: {e}") from e

        if response.status_code != 200:
            raise UpstreamError(
                f"Relay {path} failed: HTTP {response.status_code}: {response.text[:200]}",
                extra={"upstream_status": response.status_code},
            )
        try:
            data = response.json()
        except ValueError as e:
            raise UpstreamError(f"Relay {path} returned invalid JSON") from e
        return data if isinstance(data, dict) else {}

    async def connect(self, credential: str, character_id: str) -> str:
        data = await self._post("connect", {
            "credential": credential,
            "character_id": character_id,
        })
        handle = data.get("handle")
        if not isinstance(handle, str) or not handle:
            raise UpstreamError("Relay connect returned no handle")
        return handle

    async def reset_conversation(self, handle: str) -> None:
        await self._post("reset", {"handle": handle})

    async def send_message(self, handle: str, text: str) -> str:
        data = await self._post("send", {"handle": handle, "message": text})
        return extract_reply_text(data)

    async def disconnect(self, handle: str) -> None:
        await self._post("disconnect", {"handle": handle})

    async def aclose(self) -> None:
        await self._client.aclose()


def extract_reply_text(data: dict) -> str:
    """Pull reply text from a relay payload.

    Accepts ``{"text": ...}`` or the vendor's raw turn shape
    ``{"turn": {"candidates": [{"raw_content": ...}]}}``.
    """
    turn = data.get("turn")
    if isinstance(turn, dict):
        candidates = turn.get("candidates")
        if isinstance(candidates, list) and candidates and isinstance(candidates[0], dict):
            raw = candidates[0].get("raw_content")
            if isinstance(raw, str):
                return raw
    text = data.get("text")
    return text if isinstance(text, str) else ""
