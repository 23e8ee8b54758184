"""
Private Token Auction (PTA)

Settlement engine for sealed off-chain token auctions:
- Multi-token bids valued in a common unit of account
- Pay-as-bid winner selection over a fixed supply
- Winners-only conversion through pluggable swap strategies
- Crash-resumable, idempotent settlement pipeline
"""

__version__ = "0.1.0"
