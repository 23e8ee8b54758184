"""
HTTP Swap Venue - intent-style swap API client.

Submits an order that spends the bidder's permit and converts the bid token
into the unit of account, then polls the order until it is filled or dies:

    POST {base_url}/{chain_id}/orders          -> {"orderHash": "0x.."}
    GET  {base_url}/{chain_id}/orders/{hash}   -> {"status": "...", "txHash": "0x..",
                                                   "filledAmount": "<raw to_token>"}

Order statuses: pending | filled | cancelled | expired | rejected | reverted.
"""

import asyncio
from typing import Optional

import httpx

from pta.core.config import SettlementConfig
from pta.core.permit import Permit
from pta.utils.logger import get_logger
from pta.venues.base import (
    AuthorizationError,
    ExecutionRevertedError,
    OrderCallback,
    SwapReceipt,
    SwapRejectedError,
    VenueError,
)

logger = get_logger("swap")

TERMINAL_REJECTED = {"cancelled", "expired", "rejected"}


class HttpSwapVenue:
    """
    Swap venue backed by a REST order API.

    The caller bounds the whole call with a timeout; polling itself stops after
    `max_polls` status checks. An order still pending at that point may yet
    fill, so it is reported as an outcome-unknown VenueError.
    """

    def __init__(
        self,
        base_url: str,
        chain_id: int,
        api_key: str = "",
        preset: str = "fast",
        poll_interval: float = 2.0,
        max_polls: int = 90,
        timeout: float = 15.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.chain_id = chain_id
        self.preset = preset
        self.poll_interval = poll_interval
        self.max_polls = max_polls
        self._headers = {"Accept": "application/json", "Content-Type": "application/json"}
        if api_key:
            self._headers["Authorization"] = f"Bearer {api_key}"
        self._client = client or httpx.AsyncClient(base_url=base_url, timeout=timeout)

    @classmethod
    def from_config(cls, config: SettlementConfig, poll_interval: float = 2.0) -> "HttpSwapVenue":
        """Venue whose polling gives up well before the conversion stage times out."""
        max_polls = max(1, int(config.swap_timeout / 2 // poll_interval))
        return cls(
            config.swap_url,
            config.chain_id,
            api_key=config.api_key,
            poll_interval=poll_interval,
            max_polls=max_polls,
            timeout=min(15.0, config.swap_timeout),
        )

    async def quote_and_execute(
        self,
        from_token: str,
        amount: int,
        to_token: str,
        authorization: Permit,
        on_submitted: Optional[OrderCallback] = None,
    ) -> SwapReceipt:
        order_hash = await self._submit(from_token, amount, to_token, authorization)
        logger.info(f"Swap order submitted: {order_hash[:14]} ({amount} {from_token[:10]})")
        if on_submitted:
            on_submitted(order_hash)

        for _ in range(self.max_polls):
            order = await self._request("GET", f"/{self.chain_id}/orders/{order_hash}")
            status = str(order.get("status", "pending")).lower()

            if status == "filled":
                realized = int(order.get("filledAmount", 0))
                tx_ref = order.get("txHash") or ""
                logger.info(f"Swap order filled: {order_hash[:14]} -> {realized}")
                return SwapReceipt(realized_amount=realized, tx_ref=tx_ref, order_ref=order_hash)
            if status in TERMINAL_REJECTED:
                raise SwapRejectedError(f"order {order_hash} {status}: {order.get('reason', 'no reason given')}")
            if status == "reverted":
                raise ExecutionRevertedError(f"order {order_hash} reverted on-chain (tx {order.get('txHash')})")

            await asyncio.sleep(self.poll_interval)

        raise VenueError(f"order {order_hash} still open after {self.max_polls} polls")

    async def _submit(self, from_token: str, amount: int, to_token: str, permit: Permit) -> str:
        body = {
            "fromTokenAddress": from_token,
            "toTokenAddress": to_token,
            "amount": str(amount),
            "from": permit.owner,
            "preset": self.preset,
            "permit": permit.to_dict(),
        }
        data = await self._request("POST", f"/{self.chain_id}/orders", json=body)
        order_hash = data.get("orderHash")
        if not order_hash:
            raise SwapRejectedError("swap API did not return an order hash")
        return order_hash

    async def _request(self, method: str, url: str, **kwargs) -> dict:
        try:
            response = await self._client.request(method, url, headers=self._headers, **kwargs)
            response.raise_for_status()
            return response.json()
        except httpx.HTTPStatusError as e:
            code = e.response.status_code
            text = e.response.text[:200]
            if code in (401, 403):
                raise AuthorizationError(f"swap API refused authorization ({code}): {text}") from e
            if 400 <= code < 500:
                raise SwapRejectedError(f"swap API rejected order ({code}): {text}") from e
            raise VenueError(f"swap API error ({code}): {text}") from e
        except httpx.HTTPError as e:
            raise VenueError(f"swap API unreachable: {e}") from e
        except ValueError as e:
            raise VenueError(f"swap API returned invalid JSON: {e}") from e

    async def close(self) -> None:
        await self._client.aclose()
