"""LINE Messaging API client."""

import logging
from typing import Optional

import httpx

from ..errors import DeliveryError, delivery_error_from_httpx
from .base import LineSender

logger = logging.getLogger("linecord.platforms.line")

API_BASE = "https://api.line.me"
DATA_API_BASE = "https://api-data.line.me"

# LINE rejects pushes carrying more than 5 message objects.
MAX_MESSAGES_PER_REQUEST = 5


class LineClient(LineSender):
    """Push/reply/content calls over httpx.

    Args:
        channel_access_token: Long-lived channel access token
        timeout: Per-request timeout in seconds
        transport: Optional httpx transport (tests use ``httpx.MockTransport``)
    """

    def __init__(
        self,
        channel_access_token: str,
        timeout: float = 10,
        api_base: str = API_BASE,
        data_api_base: str = DATA_API_BASE,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._token = channel_access_token
        self._timeout = timeout
        self._api_base = api_base.rstrip("/")
        self._data_api_base = data_api_base.rstrip("/")
        self._transport = transport

    def _headers(self) -> dict:
        return {"Authorization": f"Bearer {self._token}"}

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self._timeout, transport=self._transport)

    async def push(self, user_id: str, messages: list[dict]) -> dict:
        return await self._send("/v2/bot/message/push", {"to": user_id, "messages": messages})

    async def reply(self, reply_token: str, messages: list[dict]) -> dict:
        return await self._send("/v2/bot/message/reply", {"replyToken": reply_token, "messages": messages})

    async def _send(self, path: str, body: dict) -> dict:
        if len(body["messages"]) > MAX_MESSAGES_PER_REQUEST:
            raise DeliveryError(
                f"LINE accepts at most {MAX_MESSAGES_PER_REQUEST} messages per request",
                status=400,
            )
        try:
            async with self._client() as client:
                resp = await client.post(f"{self._api_base}{path}", json=body, headers=self._headers())
                resp.raise_for_status()
                data = resp.json() if resp.content else {}
        except httpx.HTTPError as e:
            err = delivery_error_from_httpx(e)
            logger.warning(f"LINE {path} failed: {err}")
            raise err from e

        sent = data.get("sentMessages") or []
        result = {"messageId": str(sent[0]["id"]) if sent else None, "sentMessages": sent}
        logger.debug(f"LINE {path} ok: {result['messageId']}")
        return result

    async def fetch_content(self, message_id: str) -> bytes:
        url = f"{self._data_api_base}/v2/bot/message/{message_id}/content"
        try:
            async with self._client() as client:
                resp = await client.get(url, headers=self._headers())
                resp.raise_for_status()
                return resp.content
        except httpx.HTTPError as e:
            err = delivery_error_from_httpx(e)
            logger.warning(f"LINE content fetch for {message_id} failed: {err}")
            raise err from e
