"""Orders REST API client - collaborator surface used for fetches and self-initiated mutations"""

import asyncio
import logging
from typing import Any, Dict, List, Optional

import aiohttp

from config import Config
from models import ActorType
from utils.order_errors import MutationFailed
from utils.order_events import OrderSnapshot

logger = logging.getLogger(__name__)


class OrdersAPIClient:
    """aiohttp client for the orders REST surface"""

    def __init__(self, base_url: str = None, session: Optional[aiohttp.ClientSession] = None,
                 timeout_seconds: float = None):
        self.base_url = (base_url or Config.ORDERS_API_BASE_URL).rstrip("/")
        self._session = session
        self._owns_session = session is None
        self._timeout = aiohttp.ClientTimeout(total=timeout_seconds or Config.ORDERS_API_TIMEOUT_SECONDS)

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=self._timeout,
                headers={"accept": "application/json", "content-type": "application/json"},
            )
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    async def _request(self, method: str, path: str, action: str, order_id: Optional[str] = None,
                       json: Optional[Dict[str, Any]] = None, params: Optional[Dict[str, Any]] = None) -> Any:
        url = f"{self.base_url}{path}"
        try:
            async with self._get_session().request(method, url, json=json, params=params) as response:
                try:
                    body = await response.json(content_type=None)
                except ValueError:
                    body = None
                if response.status >= 400:
                    message = (body or {}).get("error") if isinstance(body, dict) else None
                    logger.error(f"❌ API_{action.upper()}_FAILED: HTTP {response.status} {method} {path}: {message}")
                    raise MutationFailed(action, order_id, message or f"HTTP {response.status}", response.status)
        except asyncio.TimeoutError:
            logger.error(f"❌ API_{action.upper()}_TIMEOUT: {method} {path} after {self._timeout.total}s")
            raise MutationFailed(action, order_id, f"Timed out after {self._timeout.total}s")
        except aiohttp.ClientError as e:
            logger.error(f"❌ API_{action.upper()}_NETWORK: {method} {path}: {e}")
            raise MutationFailed(action, order_id, f"Network error: {e}")

        if isinstance(body, dict):
            if body.get("success") is False:
                raise MutationFailed(action, order_id, body.get("error") or "Request rejected")
            return body.get("data", body)
        return body

    def _snapshot(self, data: Any, action: str, order_id: Optional[str]) -> OrderSnapshot:
        if isinstance(data, dict) and isinstance(data.get("order"), dict):
            data = data["order"]
        if not isinstance(data, dict):
            raise MutationFailed(action, order_id, "Response did not contain an order")
        return OrderSnapshot.from_dict(data)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def list_orders(self, actor_type: str, actor_id: str) -> List[OrderSnapshot]:
        """Orders visible to an actor (merchants also see the open pool)"""
        if actor_type == ActorType.MERCHANT.value:
            data = await self._request("GET", f"/merchants/{actor_id}/orders", "list_orders",
                                       params={"include_pending": "true"})
        else:
            data = await self._request("GET", "/orders", "list_orders",
                                       params={"actor_type": actor_type, "actor_id": actor_id})
        if isinstance(data, dict):
            data = data.get("orders", [])
        return [OrderSnapshot.from_dict(item) for item in data or []]

    async def get_order(self, order_id: str) -> OrderSnapshot:
        data = await self._request("GET", f"/orders/{order_id}", "get_order", order_id)
        return self._snapshot(data, "get_order", order_id)

    async def list_messages(self, order_id: str) -> List[Dict[str, Any]]:
        data = await self._request("GET", f"/orders/{order_id}/messages", "list_messages", order_id)
        if isinstance(data, dict):
            data = data.get("messages", [])
        return list(data or [])

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    async def create_order(self, payload: Dict[str, Any]) -> OrderSnapshot:
        data = await self._request("POST", "/orders", "create_order", json=payload)
        return self._snapshot(data, "create_order", None)

    async def update_status(self, order_id: str, status: str, actor_type: str, actor_id: str,
                            **extra) -> OrderSnapshot:
        payload = {"status": status, "actor_type": actor_type, "actor_id": actor_id, **extra}
        data = await self._request("PATCH", f"/orders/{order_id}", "update_status", order_id, json=payload)
        return self._snapshot(data, "update_status", order_id)

    async def lock_escrow(self, order_id: str, actor_type: str, actor_id: str, tx_hash: str,
                          **extra) -> OrderSnapshot:
        payload = {"tx_hash": tx_hash, "actor_type": actor_type, "actor_id": actor_id, **extra}
        data = await self._request("POST", f"/orders/{order_id}/escrow", "lock_escrow", order_id, json=payload)
        return self._snapshot(data, "lock_escrow", order_id)

    async def release_escrow(self, order_id: str, actor_type: str, actor_id: str, tx_hash: str) -> OrderSnapshot:
        payload = {"tx_hash": tx_hash, "actor_type": actor_type, "actor_id": actor_id}
        data = await self._request("PATCH", f"/orders/{order_id}/escrow", "release_escrow", order_id, json=payload)
        return self._snapshot(data, "release_escrow", order_id)

    async def cancel_order(self, order_id: str, actor_type: str, actor_id: str,
                           reason: Optional[str] = None) -> OrderSnapshot:
        params = {"actor_type": actor_type, "actor_id": actor_id}
        if reason:
            params["reason"] = reason
        data = await self._request("DELETE", f"/orders/{order_id}", "cancel_order", order_id, params=params)
        return self._snapshot(data, "cancel_order", order_id)

    async def open_dispute(self, order_id: str, actor_type: str, actor_id: str, reason: str,
                           description: Optional[str] = None) -> OrderSnapshot:
        payload = {"actor_type": actor_type, "actor_id": actor_id, "reason": reason, "description": description}
        data = await self._request("POST", f"/orders/{order_id}/dispute", "open_dispute", order_id, json=payload)
        return self._snapshot(data, "open_dispute", order_id)

    async def request_extension(self, order_id: str, actor_type: str, actor_id: str) -> OrderSnapshot:
        payload = {"actor_type": actor_type, "actor_id": actor_id}
        data = await self._request("POST", f"/orders/{order_id}/extension", "request_extension", order_id,
                                   json=payload)
        return self._snapshot(data, "request_extension", order_id)

    async def respond_to_extension(self, order_id: str, actor_type: str, actor_id: str,
                                   accept: bool) -> OrderSnapshot:
        payload = {"actor_type": actor_type, "actor_id": actor_id, "accept": accept}
        data = await self._request("PUT", f"/orders/{order_id}/extension", "respond_extension", order_id,
                                   json=payload)
        return self._snapshot(data, "respond_extension", order_id)

    async def send_message(self, order_id: str, sender_type: str, sender_id: str, content: str,
                           client_id: Optional[str] = None) -> Dict[str, Any]:
        payload = {"sender_type": sender_type, "sender_id": sender_id, "content": content,
                   "message_type": "text", "client_id": client_id}
        data = await self._request("POST", f"/orders/{order_id}/messages", "send_message", order_id, json=payload)
        if isinstance(data, dict) and isinstance(data.get("message"), dict):
            return data["message"]
        return data

    async def bump_mempool_order(self, order_id: str, merchant_id: str) -> Dict[str, Any]:
        """Manual priority bump; returns {new_premium_bps, max_reached}"""
        data = await self._request("POST", f"/mempool/orders/{order_id}/bump", "bump_order", order_id,
                                   json={"merchant_id": merchant_id})
        return {
            "new_premium_bps": int(data.get("new_premium_bps", 0)),
            "max_reached": bool(data.get("max_reached", False)),
        }
