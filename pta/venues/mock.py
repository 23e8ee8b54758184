"""
In-process collaborators for tests, demos and dry runs.

Both mocks record every call they receive so callers can assert exactly
which bids reached the swap venue or the chain.
"""

import asyncio
from decimal import ROUND_FLOOR, Decimal
from typing import Dict, List, Mapping, Optional, Set, Tuple

from pta.core.models import PRICE_CONTEXT
from pta.core.permit import Permit
from pta.crypto import bytes_to_hex, keccak256
from pta.utils.logger import get_logger
from pta.venues.base import (
    ExecutionRevertedError,
    OrderCallback,
    PriceQuote,
    SwapReceipt,
    SwapRejectedError,
    TransferReceipt,
)

logger = get_logger("mock")


def _fake_tx(*parts) -> str:
    return bytes_to_hex(keccak256("|".join(str(p) for p in parts).encode()))


class MockSwapVenue:
    """
    Swap venue that fills at the given prices, minus an optional slippage.

    Args:
        prices: token -> PriceQuote used to compute the realized amount
        unit_decimals: Decimals of the unit of account
        slippage_bps: Haircut applied to every fill
        failures: bidder -> exception raised for that bidder's swaps
        delays: bidder -> seconds to sleep before answering
    """

    def __init__(
        self,
        prices: Mapping[str, PriceQuote],
        unit_decimals: int = 6,
        slippage_bps: int = 0,
        failures: Optional[Mapping[str, Exception]] = None,
        delays: Optional[Mapping[str, float]] = None,
    ):
        self.prices = {k.lower(): v for k, v in prices.items()}
        self.unit_decimals = unit_decimals
        self.slippage_bps = slippage_bps
        self.failures = {k.lower(): v for k, v in (failures or {}).items()}
        self.delays = {k.lower(): v for k, v in (delays or {}).items()}
        self.calls: List[Tuple[str, int, str, str]] = []

    async def quote_and_execute(
        self,
        from_token: str,
        amount: int,
        to_token: str,
        authorization: Permit,
        on_submitted: Optional[OrderCallback] = None,
    ) -> SwapReceipt:
        owner = authorization.owner.lower()
        self.calls.append((from_token.lower(), amount, to_token.lower(), owner))
        quote = self.prices.get(from_token.lower())
        if quote is None:
            raise SwapRejectedError(f"no liquidity for {from_token}")
        order_ref = _fake_tx("order", len(self.calls), owner, amount)
        if on_submitted:
            on_submitted(order_ref)

        delay = self.delays.get(owner)
        if delay:
            await asyncio.sleep(delay)
        if owner in self.failures:
            raise self.failures[owner]

        scale = Decimal(10) ** self.unit_decimals / Decimal(10) ** quote.decimals
        gross = PRICE_CONTEXT.multiply(PRICE_CONTEXT.multiply(Decimal(amount), quote.price), scale)
        net = PRICE_CONTEXT.divide(gross * (10_000 - self.slippage_bps), Decimal(10_000))
        realized = int(net.to_integral_value(rounding=ROUND_FLOOR))

        logger.debug(f"Mock swap {amount} {from_token[:10]} -> {realized} for {owner[:10]}")
        return SwapReceipt(
            realized_amount=realized,
            tx_ref=_fake_tx("swap", order_ref),
            order_ref=order_ref,
        )

    def calls_for(self, bidder: str) -> int:
        return sum(1 for call in self.calls if call[3] == bidder.lower())


class MockExecutor:
    """
    On-chain executor that records collects and distributions.

    Args:
        fail_collect: bidders whose collect() reverts
        fail_distribute: bidders whose distribution reverts
        fail_batch: make every distribute_batch() revert
        delays: bidder -> seconds to sleep before a single distribute()
    """

    def __init__(
        self,
        fail_collect: Optional[Set[str]] = None,
        fail_distribute: Optional[Set[str]] = None,
        fail_batch: bool = False,
        delays: Optional[Dict[str, float]] = None,
    ):
        self.fail_collect = {b.lower() for b in (fail_collect or set())}
        self.fail_distribute = {b.lower() for b in (fail_distribute or set())}
        self.fail_batch = fail_batch
        self.delays = {k.lower(): v for k, v in (delays or {}).items()}
        self.collect_calls: List[Tuple[str, str, int]] = []
        self.distribute_calls: List[Tuple[str, str, int]] = []
        self.batch_calls: List[Tuple[str, List[str], List[int]]] = []
        self.delivered: Dict[str, int] = {}

    async def collect(self, permit: Permit, amount: int) -> TransferReceipt:
        owner = permit.owner.lower()
        self.collect_calls.append((owner, permit.token, amount))
        if owner in self.fail_collect:
            raise ExecutionRevertedError(f"collect reverted for {owner}")
        return TransferReceipt(amount=amount, tx_ref=_fake_tx("collect", owner, amount))

    async def distribute(self, bidder: str, auction_token: str, quantity: int) -> str:
        bidder = bidder.lower()
        self.distribute_calls.append((bidder, auction_token, quantity))
        delay = self.delays.get(bidder)
        if delay:
            await asyncio.sleep(delay)
        if bidder in self.fail_distribute:
            raise ExecutionRevertedError(f"distribution reverted for {bidder}")
        self.delivered[bidder] = self.delivered.get(bidder, 0) + quantity
        return _fake_tx("distribute", bidder, quantity)

    async def distribute_batch(self, auction_token: str, bidders: List[str], quantities: List[int]) -> str:
        self.batch_calls.append((auction_token, list(bidders), list(quantities)))
        if self.fail_batch or any(b.lower() in self.fail_distribute for b in bidders):
            raise ExecutionRevertedError(f"batch distribution of {len(bidders)} entries reverted")
        for bidder, quantity in zip(bidders, quantities):
            self.delivered[bidder.lower()] = self.delivered.get(bidder.lower(), 0) + quantity
        return _fake_tx("batch", len(self.batch_calls), *bidders)

    @property
    def total_calls(self) -> int:
        return len(self.collect_calls) + len(self.distribute_calls) + len(self.batch_calls)

    def distributed_to(self, bidder: str) -> int:
        """Total auction-token quantity successfully sent to `bidder`."""
        return self.delivered.get(bidder.lower(), 0)
