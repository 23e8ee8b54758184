"""
Settlement configuration parameters for PTA.

Defines the unit of account, execution limits and the endpoints of the
external collaborators (price oracle, swap venue, on-chain executor).
"""

import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Dict, Optional

from dotenv import dotenv_values

# USDC on Arbitrum
DEFAULT_UNIT_OF_ACCOUNT = "0xaf88d065e77c8cc2239327c5edb3a432268e5831"

ENV_PREFIX = "PTA_"


@dataclass
class SettlementConfig:
    """Settlement-wide configuration parameters"""

    # Unit of account
    unit_of_account: str = DEFAULT_UNIT_OF_ACCOUNT
    unit_of_account_decimals: int = 6
    chain_id: int = 42161

    # Permit spender; bids must authorize this address
    executor_address: str = "0x" + "00" * 20

    # Execution limits
    max_concurrency: int = 4            # Parallel swaps / transfers per stage
    swap_timeout: float = 30.0          # Seconds per swap call
    distribution_timeout: float = 60.0  # Seconds per distribution call
    receipt_timeout: float = 25.0       # Seconds to wait for a mined transaction
    slippage_tolerance_bps: int = 100   # 1%
    batch_distribution: bool = True

    # Extra bid tokens: JSON list merged over the built-in Arbitrum tokens
    token_list: str = ""

    # Collaborator endpoints
    oracle_url: str = "https://api.1inch.dev/price/v1.1"
    swap_url: str = "https://api.1inch.dev/fusion"
    api_key: str = ""
    rpc_url: str = ""
    executor_contract: str = ""
    relayer_private_key: str = field(default="", repr=False)

    # Paths
    data_dir: Path = Path("data")
    log_dir: Path = Path("logs")

    def __post_init__(self):
        self.unit_of_account = self.unit_of_account.lower()
        self.executor_address = self.executor_address.lower()
        self.data_dir = Path(self.data_dir)
        self.log_dir = Path(self.log_dir)
        if not 0 <= self.slippage_tolerance_bps <= 10_000:
            raise ValueError(f"slippage_tolerance_bps out of range: {self.slippage_tolerance_bps}")
        if self.max_concurrency < 1:
            raise ValueError("max_concurrency must be >= 1")

    def ensure_dirs(self):
        """Create necessary directories"""
        self.data_dir.mkdir(exist_ok=True, parents=True)
        self.log_dir.mkdir(exist_ok=True, parents=True)


def _coerce(raw: str, target_type):
    if target_type is bool:
        return raw.strip().lower() in ("1", "true", "yes", "on")
    if target_type is int:
        return int(raw)
    if target_type is float:
        return float(raw)
    if target_type is Path:
        return Path(raw).expanduser()
    return raw


def load_config(env_file: Optional[str] = None, overrides: Optional[Dict[str, object]] = None) -> SettlementConfig:
    """
    Load configuration from a .env file and the environment.

    Every field maps to `PTA_<FIELD_NAME>`; process environment wins over the
    file, and explicit overrides win over both.

    Args:
        env_file: Optional path to a .env file
        overrides: Field values set by the caller (e.g. CLI options)

    Returns:
        SettlementConfig instance
    """
    values: Dict[str, Optional[str]] = {}
    if env_file:
        values.update(dotenv_values(env_file))
    values.update({k: v for k, v in os.environ.items() if k.startswith(ENV_PREFIX)})

    kwargs: Dict[str, object] = {}
    hints = {"int": int, "float": float, "bool": bool, "str": str, "Path": Path}
    for f in fields(SettlementConfig):
        raw = values.get(ENV_PREFIX + f.name.upper())
        if raw is None or raw == "":
            continue
        type_name = f.type if isinstance(f.type, str) else f.type.__name__
        kwargs[f.name] = _coerce(raw, hints.get(type_name, str))

    if overrides:
        kwargs.update({k: v for k, v in overrides.items() if v is not None})

    return SettlementConfig(**kwargs)
