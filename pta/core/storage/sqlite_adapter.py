import sqlite3
import threading
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from pta.utils.logger import get_logger

logger = get_logger("storage.sqlite")

# Columns settlement may write through `update_bid`
BID_MUTABLE_COLUMNS = frozenset({
    "status",
    "token_price",
    "token_decimals",
    "value",
    "effective_unit_price",
    "fill_quantity",
    "conversion_amount",
    "conversion_method",
    "realized_amount",
    "realized_value",
    "order_ref",
    "tx_ref",
    "tokens_distributed",
    "distribution_tx_ref",
    "error",
    "needs_reconciliation",
    "updated_at",
})


class SQLiteAdapter:
    """
    SQLite backend for persistent settlement state.

    Provides:
    1. Auctions, with the settlement lock (status) and checkpoint (stage).
    2. Bids, append-then-status-transition.
    3. Settlement results, one row per auction.

    Amounts that may exceed 2^63 are stored as TEXT.
    """

    def __init__(self, db_path: Path):
        self.db_path = db_path
        self._conn_local = threading.local()

        if not db_path.parent.exists():
            db_path.parent.mkdir(parents=True, exist_ok=True)

        self._init_schema()

    def _get_conn(self) -> sqlite3.Connection:
        """Get or create connection for current thread."""
        if not hasattr(self._conn_local, "conn"):
            self._conn_local.conn = sqlite3.connect(
                self.db_path,
                timeout=30.0,
                check_same_thread=False
            )
            self._conn_local.conn.row_factory = sqlite3.Row
            # Enable WAL mode for better concurrency
            self._conn_local.conn.execute("PRAGMA journal_mode=WAL;")
            self._conn_local.conn.execute("PRAGMA synchronous=NORMAL;")
        return self._conn_local.conn

    def close(self):
        if hasattr(self._conn_local, "conn"):
            self._conn_local.conn.close()
            del self._conn_local.conn

    def _init_schema(self):
        """Initialize database schema."""
        conn = self._get_conn()
        with conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS auctions (
                    auction_id TEXT PRIMARY KEY,
                    auction_token TEXT NOT NULL,
                    total_supply TEXT NOT NULL,
                    target_allocation TEXT NOT NULL,
                    end_time INTEGER NOT NULL,
                    status TEXT NOT NULL DEFAULT 'open',
                    settlement_stage TEXT NOT NULL DEFAULT 'none',
                    clearing_price TEXT,
                    conversion_strategy TEXT NOT NULL DEFAULT 'swap',
                    reserve_price TEXT NOT NULL DEFAULT '0',
                    created_at INTEGER NOT NULL
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS bids (
                    bid_id TEXT PRIMARY KEY,
                    auction_id TEXT NOT NULL REFERENCES auctions(auction_id),
                    bidder TEXT NOT NULL,
                    token TEXT NOT NULL,
                    amount TEXT NOT NULL,
                    quantity TEXT NOT NULL,
                    created_at INTEGER NOT NULL,
                    permit TEXT,
                    status TEXT NOT NULL DEFAULT 'pending',
                    token_price TEXT,
                    token_decimals INTEGER,
                    value TEXT,
                    effective_unit_price TEXT,
                    fill_quantity TEXT NOT NULL DEFAULT '0',
                    conversion_amount TEXT NOT NULL DEFAULT '0',
                    conversion_method TEXT,
                    realized_amount TEXT NOT NULL DEFAULT '0',
                    realized_value TEXT,
                    order_ref TEXT,
                    tx_ref TEXT,
                    tokens_distributed TEXT NOT NULL DEFAULT '0',
                    distribution_tx_ref TEXT,
                    error TEXT,
                    needs_reconciliation INTEGER NOT NULL DEFAULT 0,
                    updated_at INTEGER
                )
            """)
            conn.execute("CREATE INDEX IF NOT EXISTS idx_bids_auction_status ON bids(auction_id, status);")

            conn.execute("""
                CREATE TABLE IF NOT EXISTS settlement_results (
                    auction_id TEXT PRIMARY KEY REFERENCES auctions(auction_id),
                    clearing_price TEXT NOT NULL,
                    total_raised TEXT NOT NULL,
                    total_bids INTEGER NOT NULL,
                    winning_bids INTEGER NOT NULL,
                    losing_bids INTEGER NOT NULL,
                    executed_bids INTEGER NOT NULL,
                    failed_bids INTEGER NOT NULL,
                    distributed_bids INTEGER NOT NULL,
                    distribution_failed_bids INTEGER NOT NULL,
                    filled_quantity TEXT NOT NULL,
                    unsold_supply TEXT NOT NULL,
                    forfeited_quantity TEXT NOT NULL,
                    tokens_distributed TEXT NOT NULL,
                    settled_at INTEGER NOT NULL
                )
            """)

    # =========================================================================
    # Auction Operations
    # =========================================================================

    def insert_auction(self, row: Dict[str, Any]) -> bool:
        """Insert a new auction. Returns False if the id already exists."""
        conn = self._get_conn()
        columns = ", ".join(row.keys())
        placeholders = ", ".join("?" for _ in row)
        try:
            with conn:
                conn.execute(f"INSERT INTO auctions ({columns}) VALUES ({placeholders})", tuple(row.values()))
        except sqlite3.IntegrityError:
            return False
        return True

    def get_auction(self, auction_id: str) -> Optional[sqlite3.Row]:
        conn = self._get_conn()
        cursor = conn.execute("SELECT * FROM auctions WHERE auction_id = ?", (auction_id,))
        return cursor.fetchone()

    def compare_and_set_status(self, auction_id: str, expected: str, new: str) -> bool:
        """
        Atomically move an auction from `expected` to `new` status.

        Returns True only for the caller whose update actually applied.
        """
        conn = self._get_conn()
        with conn:
            cursor = conn.execute(
                "UPDATE auctions SET status = ? WHERE auction_id = ? AND status = ?",
                (new, auction_id, expected)
            )
        return cursor.rowcount == 1

    def set_auction_stage(self, auction_id: str, stage: str):
        conn = self._get_conn()
        with conn:
            conn.execute(
                "UPDATE auctions SET settlement_stage = ? WHERE auction_id = ?",
                (stage, auction_id)
            )

    # =========================================================================
    # Bid Operations
    # =========================================================================

    def insert_bid(self, row: Dict[str, Any]) -> bool:
        """Insert a new bid. Returns False if the id already exists."""
        conn = self._get_conn()
        columns = ", ".join(row.keys())
        placeholders = ", ".join("?" for _ in row)
        try:
            with conn:
                conn.execute(f"INSERT INTO bids ({columns}) VALUES ({placeholders})", tuple(row.values()))
        except sqlite3.IntegrityError:
            return False
        return True

    def get_bid(self, bid_id: str) -> Optional[sqlite3.Row]:
        conn = self._get_conn()
        cursor = conn.execute("SELECT * FROM bids WHERE bid_id = ?", (bid_id,))
        return cursor.fetchone()

    def list_bids(self, auction_id: str, statuses: Optional[Sequence[str]] = None) -> List[sqlite3.Row]:
        """Bids of an auction, optionally filtered by status, in arrival order."""
        conn = self._get_conn()
        if statuses:
            placeholders = ", ".join("?" for _ in statuses)
            cursor = conn.execute(
                f"SELECT * FROM bids WHERE auction_id = ? AND status IN ({placeholders}) "
                f"ORDER BY created_at ASC, bid_id ASC",
                (auction_id, *statuses)
            )
        else:
            cursor = conn.execute(
                "SELECT * FROM bids WHERE auction_id = ? ORDER BY created_at ASC, bid_id ASC",
                (auction_id,)
            )
        return cursor.fetchall()

    def update_bid(
        self,
        bid_id: str,
        fields: Dict[str, Any],
        expected_status: Optional[Iterable[str]] = None,
    ) -> bool:
        """
        Update one bid in a single statement.

        Args:
            bid_id: Bid to update
            fields: Column -> value (must be in BID_MUTABLE_COLUMNS)
            expected_status: If given, only update while the bid is in one of these

        Returns:
            True if a row was updated
        """
        conn = self._get_conn()
        with conn:
            return self._update_bid(conn, bid_id, fields, expected_status)

    def update_bids(self, updates: List[Tuple[str, Dict[str, Any]]], expected_status: Optional[Iterable[str]] = None) -> int:
        """Apply several bid updates in one transaction. Returns rows updated."""
        conn = self._get_conn()
        updated = 0
        with conn:
            for bid_id, fields in updates:
                if self._update_bid(conn, bid_id, fields, expected_status):
                    updated += 1
        return updated

    def _update_bid(self, conn, bid_id, fields, expected_status) -> bool:
        unknown = set(fields) - BID_MUTABLE_COLUMNS
        if unknown:
            raise ValueError(f"Unknown bid columns: {sorted(unknown)}")
        assignments = ", ".join(f"{column} = ?" for column in fields)
        params: List[Any] = list(fields.values()) + [bid_id]
        sql = f"UPDATE bids SET {assignments} WHERE bid_id = ?"
        if expected_status:
            expected = list(expected_status)
            sql += f" AND status IN ({', '.join('?' for _ in expected)})"
            params.extend(expected)
        cursor = conn.execute(sql, params)
        return cursor.rowcount == 1

    def persist_allocation(
        self,
        auction_id: str,
        updates: List[Tuple[str, Dict[str, Any]]],
        clearing_price: str,
        stage: str,
    ) -> int:
        """
        Atomically record an allocation for every bid and advance the checkpoint.

        Either every pending bid moves to winning/losing together with the
        auction's clearing price and stage, or nothing changes.

        Returns:
            Number of bids updated
        """
        conn = self._get_conn()
        with conn:
            updated = 0
            for bid_id, fields in updates:
                if not self._update_bid(conn, bid_id, fields, ["pending"]):
                    raise RuntimeError(f"Bid {bid_id} is no longer pending")
                updated += 1
            conn.execute(
                "UPDATE auctions SET clearing_price = ?, settlement_stage = ? WHERE auction_id = ?",
                (clearing_price, stage, auction_id)
            )
        return updated

    def bid_statistics(self, auction_id: str) -> Dict[str, Any]:
        """Counts by status plus requested-quantity and price aggregates."""
        conn = self._get_conn()
        counts = {
            row["status"]: row["cnt"]
            for row in conn.execute(
                "SELECT status, COUNT(*) AS cnt FROM bids WHERE auction_id = ? GROUP BY status",
                (auction_id,)
            )
        }
        rows = conn.execute(
            "SELECT quantity, effective_unit_price FROM bids WHERE auction_id = ?",
            (auction_id,)
        ).fetchall()
        return {
            "counts": counts,
            "total_bids": sum(counts.values()),
            "quantities": [row["quantity"] for row in rows],
            "prices": [row["effective_unit_price"] for row in rows if row["effective_unit_price"] is not None],
        }

    # =========================================================================
    # Settlement Results
    # =========================================================================

    def save_result_and_settle(self, row: Dict[str, Any]):
        """
        Persist the settlement result and flip the auction to settled in one
        transaction.
        """
        conn = self._get_conn()
        columns = ", ".join(row.keys())
        placeholders = ", ".join("?" for _ in row)
        with conn:
            conn.execute(
                f"INSERT OR REPLACE INTO settlement_results ({columns}) VALUES ({placeholders})",
                tuple(row.values())
            )
            conn.execute(
                "UPDATE auctions SET status = 'settled', settlement_stage = 'distributed' WHERE auction_id = ?",
                (row["auction_id"],)
            )

    def get_result(self, auction_id: str) -> Optional[sqlite3.Row]:
        conn = self._get_conn()
        cursor = conn.execute("SELECT * FROM settlement_results WHERE auction_id = ?", (auction_id,))
        return cursor.fetchone()
