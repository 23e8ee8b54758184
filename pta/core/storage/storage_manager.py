import json
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Union

from pta.core.models import (
    Auction,
    AuctionStatus,
    Bid,
    BidStatus,
    SettlementResult,
    SettlementStage,
    decimal_str,
    now_ms,
    to_decimal,
)
from pta.core.permit import Permit
from pta.core.storage.sqlite_adapter import SQLiteAdapter
from pta.utils.logger import get_logger

logger = get_logger("storage.manager")

StatusFilter = Union[BidStatus, Iterable[BidStatus], None]

# Bid columns persisted as TEXT integers
_INT_TEXT_COLUMNS = {"fill_quantity", "conversion_amount", "realized_amount", "tokens_distributed"}


def _to_column(name: str, value: Any) -> Any:
    if value is None:
        return None
    if isinstance(value, BidStatus):
        return value.value
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, Decimal):
        return str(value)
    if name in _INT_TEXT_COLUMNS:
        return str(int(value))
    return value


def _statuses(status: StatusFilter) -> Optional[List[str]]:
    if status is None:
        return None
    if isinstance(status, BidStatus):
        return [status.value]
    return [BidStatus(s).value for s in status]


class StorageManager:
    """
    Bid Store for the settlement engine.

    Append-then-status-transition record of auctions and bids, backed by the
    SQLite adapter. Handles:
    - Auctions and the settlement lock (open -> settling compare-and-set)
    - Bids: listBids(auction, status) / transitionBid(bid, status, fields)
    - Settlement checkpoints and the final SettlementResult
    """

    def __init__(self, data_dir: Path, db_name: str = "settlement.db"):
        self.data_dir = Path(data_dir)
        self.db_path = self.data_dir / db_name
        self.adapter = SQLiteAdapter(self.db_path)

        logger.info(f"StorageManager initialized at {self.db_path}")

    def close(self):
        self.adapter.close()

    # =========================================================================
    # Auctions
    # =========================================================================

    def create_auction(self, auction: Auction) -> bool:
        """Persist a new auction. Returns False if the id is taken."""
        created = self.adapter.insert_auction({
            "auction_id": auction.auction_id,
            "auction_token": auction.auction_token.lower(),
            "total_supply": str(auction.total_supply),
            "target_allocation": str(auction.target_allocation),
            "end_time": auction.end_time,
            "status": auction.status.value,
            "settlement_stage": auction.settlement_stage.value,
            "clearing_price": decimal_str(auction.clearing_price),
            "conversion_strategy": auction.conversion_strategy,
            "reserve_price": str(auction.reserve_price),
            "created_at": auction.created_at,
        })
        if created:
            logger.info(f"Auction created: {auction.auction_id}")
        return created

    def get_auction(self, auction_id: str) -> Optional[Auction]:
        row = self.adapter.get_auction(auction_id)
        if row is None:
            return None
        return Auction(
            auction_id=row["auction_id"],
            auction_token=row["auction_token"],
            total_supply=int(row["total_supply"]),
            target_allocation=int(row["target_allocation"]),
            end_time=row["end_time"],
            status=AuctionStatus(row["status"]),
            settlement_stage=SettlementStage(row["settlement_stage"]),
            clearing_price=to_decimal(row["clearing_price"]),
            conversion_strategy=row["conversion_strategy"],
            reserve_price=Decimal(row["reserve_price"]),
            created_at=row["created_at"],
        )

    def try_begin_settlement(self, auction_id: str) -> bool:
        """
        Take the settlement lock.

        Exactly one caller wins the open -> settling transition.
        """
        acquired = self.adapter.compare_and_set_status(
            auction_id, AuctionStatus.OPEN.value, AuctionStatus.SETTLING.value
        )
        if acquired:
            logger.info(f"Settlement lock acquired for {auction_id}")
        return acquired

    def set_stage(self, auction_id: str, stage: SettlementStage):
        """Record the last completed settlement checkpoint."""
        self.adapter.set_auction_stage(auction_id, stage.value)
        logger.debug(f"Auction {auction_id} checkpoint -> {stage.value}")

    # =========================================================================
    # Bids
    # =========================================================================

    def add_bid(self, bid: Bid) -> bool:
        """Append a new bid. Returns False on a duplicate bid id."""
        return self.adapter.insert_bid({
            "bid_id": bid.bid_id,
            "auction_id": bid.auction_id,
            "bidder": bid.bidder.lower(),
            "token": bid.token.lower(),
            "amount": str(bid.amount),
            "quantity": str(bid.quantity),
            "created_at": bid.created_at,
            "permit": json.dumps(bid.permit.to_dict()) if bid.permit else None,
            "status": bid.status.value,
        })

    def get_bid(self, bid_id: str) -> Optional[Bid]:
        row = self.adapter.get_bid(bid_id)
        return self._row_to_bid(row) if row else None

    def list_bids(self, auction_id: str, status: StatusFilter = None) -> List[Bid]:
        """Bids of an auction in the given status (or statuses), in arrival order."""
        rows = self.adapter.list_bids(auction_id, _statuses(status))
        return [self._row_to_bid(row) for row in rows]

    def transition_bid(
        self,
        bid_id: str,
        new_status: BidStatus,
        fields: Optional[Dict[str, Any]] = None,
        expected: StatusFilter = None,
    ) -> bool:
        """
        Move a bid to `new_status`, writing `fields` in the same statement.

        Args:
            bid_id: Bid to transition
            new_status: Target status
            fields: Extra bid attributes to record (e.g. tx_ref, error)
            expected: Only transition while the bid is in this status (or statuses)

        Returns:
            True if the bid was updated
        """
        columns = {name: _to_column(name, value) for name, value in (fields or {}).items()}
        columns["status"] = new_status.value
        columns["updated_at"] = now_ms()
        updated = self.adapter.update_bid(bid_id, columns, _statuses(expected))
        if not updated:
            logger.warning(f"Bid {bid_id[:10]} not transitioned to {new_status.value}")
        return updated

    def transition_bids(
        self,
        bid_ids: List[str],
        new_status: BidStatus,
        fields: Optional[Dict[str, Any]] = None,
        expected: StatusFilter = None,
    ) -> int:
        """Apply the same transition to several bids in one transaction."""
        columns = {name: _to_column(name, value) for name, value in (fields or {}).items()}
        columns["status"] = new_status.value
        columns["updated_at"] = now_ms()
        return self.adapter.update_bids(
            [(bid_id, dict(columns)) for bid_id in bid_ids], _statuses(expected)
        )

    def persist_allocation(
        self,
        auction_id: str,
        winners: List[Bid],
        losers: List[Bid],
        clearing_price: Decimal,
    ) -> int:
        """
        Atomically record winners, losers, valuation fields and the clearing
        price, and advance the auction checkpoint to `allocated`.
        """
        updates = []
        for bid in winners + losers:
            fields = {
                "status": bid.status,
                "token_price": bid.token_price,
                "token_decimals": bid.token_decimals,
                "value": bid.value,
                "effective_unit_price": bid.effective_unit_price,
                "fill_quantity": bid.fill_quantity,
                "conversion_amount": bid.conversion_amount,
                "error": bid.error,
                "updated_at": now_ms(),
            }
            updates.append((bid.bid_id, {k: _to_column(k, v) for k, v in fields.items()}))

        return self.adapter.persist_allocation(
            auction_id, updates, str(clearing_price), SettlementStage.ALLOCATED.value
        )

    def bid_statistics(self, auction_id: str) -> Dict[str, Any]:
        """
        Per-auction bid statistics.

        Returns:
            Dict with counts by status, total bids, total requested quantity and
            min/max/avg effective unit price (None before valuation).
        """
        raw = self.adapter.bid_statistics(auction_id)
        prices = [Decimal(p) for p in raw["prices"]]
        return {
            "auction_id": auction_id,
            "total_bids": raw["total_bids"],
            "by_status": raw["counts"],
            "total_requested": sum(int(q) for q in raw["quantities"]),
            "min_unit_price": min(prices) if prices else None,
            "max_unit_price": max(prices) if prices else None,
            "avg_unit_price": (sum(prices) / len(prices)) if prices else None,
        }

    # =========================================================================
    # Settlement Results
    # =========================================================================

    def save_result(self, result: SettlementResult):
        """Persist the result and flip the auction to settled, atomically."""
        row = result.to_dict()
        for key in ("filled_quantity", "unsold_supply", "forfeited_quantity", "tokens_distributed"):
            row[key] = str(row[key])
        self.adapter.save_result_and_settle(row)
        logger.info(f"Settlement result saved for {result.auction_id}")

    def get_result(self, auction_id: str) -> Optional[SettlementResult]:
        row = self.adapter.get_result(auction_id)
        if row is None:
            return None
        return SettlementResult(
            auction_id=row["auction_id"],
            clearing_price=Decimal(row["clearing_price"]),
            total_raised=Decimal(row["total_raised"]),
            total_bids=row["total_bids"],
            winning_bids=row["winning_bids"],
            losing_bids=row["losing_bids"],
            executed_bids=row["executed_bids"],
            failed_bids=row["failed_bids"],
            distributed_bids=row["distributed_bids"],
            distribution_failed_bids=row["distribution_failed_bids"],
            filled_quantity=int(row["filled_quantity"]),
            unsold_supply=int(row["unsold_supply"]),
            forfeited_quantity=int(row["forfeited_quantity"]),
            tokens_distributed=int(row["tokens_distributed"]),
            settled_at=row["settled_at"],
        )

    # =========================================================================
    # Row mapping
    # =========================================================================

    @staticmethod
    def _row_to_bid(row) -> Bid:
        permit = Permit.from_dict(json.loads(row["permit"])) if row["permit"] else None
        return Bid(
            bid_id=row["bid_id"],
            auction_id=row["auction_id"],
            bidder=row["bidder"],
            token=row["token"],
            amount=int(row["amount"]),
            quantity=int(row["quantity"]),
            created_at=row["created_at"],
            permit=permit,
            status=BidStatus(row["status"]),
            token_price=to_decimal(row["token_price"]),
            token_decimals=row["token_decimals"],
            value=to_decimal(row["value"]),
            effective_unit_price=to_decimal(row["effective_unit_price"]),
            fill_quantity=int(row["fill_quantity"]),
            conversion_amount=int(row["conversion_amount"]),
            conversion_method=row["conversion_method"],
            realized_amount=int(row["realized_amount"]),
            realized_value=to_decimal(row["realized_value"]),
            order_ref=row["order_ref"],
            tx_ref=row["tx_ref"],
            tokens_distributed=int(row["tokens_distributed"]),
            distribution_tx_ref=row["distribution_tx_ref"],
            error=row["error"],
            needs_reconciliation=bool(row["needs_reconciliation"]),
        )
