"""Discord REST client (bot token, API v10)."""

import json
import logging
from typing import Optional

import httpx

from ..errors import delivery_error_from_httpx
from .base import DiscordSender

logger = logging.getLogger("linecord.platforms.discord")

API_BASE = "https://discord.com/api/v10"
MAX_CONTENT_LENGTH = 2000


class DiscordClient(DiscordSender):
    """Send and fetch channel messages over httpx."""

    def __init__(
        self,
        bot_token: str,
        timeout: float = 10,
        api_base: str = API_BASE,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._token = bot_token
        self._timeout = timeout
        self._api_base = api_base.rstrip("/")
        self._transport = transport

    def _headers(self) -> dict:
        return {"Authorization": f"Bot {self._token}"}

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self._timeout, transport=self._transport)

    async def send(
        self,
        channel_id: str,
        content: str,
        *,
        reply_to: Optional[str] = None,
        files: Optional[list[tuple[str, bytes]]] = None,
    ) -> dict:
        payload: dict = {"content": (content or "")[:MAX_CONTENT_LENGTH]}
        if reply_to:
            payload["message_reference"] = {"message_id": str(reply_to), "fail_if_not_exists": False}
            payload["allowed_mentions"] = {"replied_user": False}

        url = f"{self._api_base}/channels/{channel_id}/messages"
        try:
            async with self._client() as client:
                if files:
                    multipart = {
                        f"files[{i}]": (name, data) for i, (name, data) in enumerate(files)
                    }
                    resp = await client.post(
                        url,
                        data={"payload_json": json.dumps(payload)},
                        files=multipart,
                        headers=self._headers(),
                    )
                else:
                    resp = await client.post(url, json=payload, headers=self._headers())
                resp.raise_for_status()
                data = resp.json()
        except httpx.HTTPError as e:
            err = delivery_error_from_httpx(e)
            logger.warning(f"Discord send to {channel_id} failed: {err}")
            raise err from e

        data["id"] = str(data["id"])
        logger.debug(f"Discord send to {channel_id} ok: {data['id']}")
        return data

    async def fetch_message(self, channel_id: str, message_id: str) -> dict:
        url = f"{self._api_base}/channels/{channel_id}/messages/{message_id}"
        try:
            async with self._client() as client:
                resp = await client.get(url, headers=self._headers())
                resp.raise_for_status()
                return resp.json()
        except httpx.HTTPError as e:
            err = delivery_error_from_httpx(e)
            logger.warning(f"Discord fetch {channel_id}/{message_id} failed: {err}")
            raise err from e
