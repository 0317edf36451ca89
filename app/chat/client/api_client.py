from typing import Any, Dict, List, Optional
import logging

import httpx

from pkg.log.logger import get_logger


class ChatApiClient:
    """HTTP client for chat history and room details."""

    def __init__(self, base_url: str, token: str, timeout: float = 10.0,
                 client: Optional[httpx.AsyncClient] = None, logger: logging.Logger | None = None):
        self.token = token
        self.logger = logger or get_logger(__name__)
        self._client = client or httpx.AsyncClient(base_url=base_url, timeout=timeout)

    @property
    def _headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.token}"}

    async def get_messages(self, room_key: str, page: int = 1, limit: int = 50) -> List[Dict[str, Any]]:
        """One page of history, oldest first. A room that does not exist yet has no messages."""
        response = await self._client.get(
            f"/chats/{room_key}/messages",
            params={"page": page, "limit": limit},
            headers=self._headers,
        )
        if response.status_code == 404:
            self.logger.info(f"Messages not found for {room_key} (chat may not exist yet)")
            return []
        response.raise_for_status()
        return response.json()["data"]["messages"]

    async def get_chat(self, room_key: str) -> Dict[str, Any]:
        response = await self._client.get(f"/chats/{room_key}", headers=self._headers)
        response.raise_for_status()
        return response.json()["data"]["chat"]

    async def request_direct_chat(self, user_id: str, message: Optional[str] = None) -> Dict[str, Any]:
        response = await self._client.post(
            f"/chats/direct/{user_id}",
            json={"message": message},
            headers=self._headers,
        )
        response.raise_for_status()
        return response.json()["data"]["chat"]

    async def aclose(self) -> None:
        await self._client.aclose()
