"""Escrow Service client - opaque RPC to the on-chain escrow program"""

import asyncio
import logging
from typing import Any, Dict, Optional

import aiohttp

from config import Config
from utils.order_errors import EscrowServiceError

logger = logging.getLogger(__name__)


class EscrowClient:
    """
    Release and refund calls against the external escrow service.

    The service's internal logic is not modelled here: each call returns the
    transaction hash it reports, or raises EscrowServiceError.
    """

    def __init__(self, base_url: str = None, session: Optional[aiohttp.ClientSession] = None,
                 timeout_seconds: float = None):
        self.base_url = (base_url or Config.ESCROW_SERVICE_URL).rstrip("/")
        self._session = session
        self._owns_session = session is None
        self._timeout = aiohttp.ClientTimeout(total=timeout_seconds or Config.ESCROW_SERVICE_TIMEOUT_SECONDS)

    async def _post(self, path: str, payload: Dict[str, Any]) -> str:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
            self._owns_session = True
        url = f"{self.base_url}{path}"
        try:
            async with self._session.post(url, json=payload) as response:
                if response.status != 200:
                    error_text = await response.text()
                    logger.error(f"❌ ESCROW_RPC_FAILED: HTTP {response.status} {path}: {error_text[:200]}")
                    raise EscrowServiceError(f"Escrow service returned HTTP {response.status}")
                data = await response.json(content_type=None)
        except asyncio.TimeoutError:
            logger.error(f"❌ ESCROW_RPC_TIMEOUT: {path} after {self._timeout.total}s")
            raise EscrowServiceError(f"Escrow service timed out after {self._timeout.total}s")
        except aiohttp.ClientError as e:
            logger.error(f"❌ ESCROW_RPC_NETWORK: {path}: {e}")
            raise EscrowServiceError(f"Network error: {e}")

        tx_hash = (data or {}).get("tx_hash") or (data or {}).get("txHash")
        if not tx_hash:
            raise EscrowServiceError(f"Escrow service returned no transaction hash for {path}")
        return tx_hash

    async def release(self, order_id: str, escrow_address: Optional[str] = None,
                      trade_pda: Optional[str] = None) -> str:
        """Release locked funds to the buyer; returns the release tx hash"""
        tx_hash = await self._post("/escrow/release", {
            "order_id": order_id, "escrow_address": escrow_address, "trade_pda": trade_pda,
        })
        logger.info(f"✅ ESCROW_RELEASED: order={order_id} tx={tx_hash}")
        return tx_hash

    async def refund(self, order_id: str, escrow_address: Optional[str] = None,
                     trade_pda: Optional[str] = None) -> str:
        """Return locked funds to the seller; returns the refund tx hash"""
        tx_hash = await self._post("/escrow/refund", {
            "order_id": order_id, "escrow_address": escrow_address, "trade_pda": trade_pda,
        })
        logger.info(f"✅ ESCROW_REFUNDED: order={order_id} tx={tx_hash}")
        return tx_hash

    async def close(self) -> None:
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None
