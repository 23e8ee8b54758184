"""
Supported bid tokens.

Bids may only be placed in tokens listed here. The registry also provides the
decimal precision fallback used when a price source reports a price but no
decimals, and the EIP-712 domain that permits for each token are signed under.
"""

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple

from pta.core.config import SettlementConfig
from pta.utils.logger import get_logger
from pta.utils.validation import validate_address

logger = get_logger("tokens")

# Most ERC-20 tokens use 18 decimals
DEFAULT_DECIMALS = 18


@dataclass(frozen=True)
class TokenInfo:
    """A token accepted for bidding."""
    address: str
    symbol: str
    decimals: int
    name: str = ""
    active: bool = True
    permit_version: str = "1"   # EIP-712 domain version of the token


# Arbitrum One
ARBITRUM_TOKENS = (
    TokenInfo("0x82af49447d8a07e3bd95bd0d56f35241523fbab1", "WETH", 18, "Wrapped Ether"),
    TokenInfo("0x912ce59144191c1204e64559fe8253a0e49e6548", "ARB", 18, "Arbitrum Token"),
    TokenInfo("0xf97f4df75117a78c1a5a0dbb814af92458539fb4", "LINK", 18, "ChainLink Token"),
    TokenInfo("0xaf88d065e77c8cc2239327c5edb3a432268e5831", "USDC", 6, "USD Coin", permit_version="2"),
    TokenInfo("0xfd086bc7cd5c481dcc9c85ebe478a1c0b69fcbb9", "USDT", 6, "Tether USD"),
    TokenInfo("0x2f2a2543b76a4166549f7aab2e75bef0aefc5b0f", "WBTC", 8, "Wrapped BTC"),
)


class TokenRegistry:
    """
    Registry of supported bid tokens keyed by lowercase address.
    """

    def __init__(self, tokens: Optional[Iterable[TokenInfo]] = None):
        self._tokens: Dict[str, TokenInfo] = {}
        for token in tokens if tokens is not None else ARBITRUM_TOKENS:
            self.add(token)

    def add(self, token: TokenInfo) -> None:
        """Register or replace a token."""
        valid, err = validate_address(token.address, "token address")
        if not valid:
            raise ValueError(err)
        if not 0 <= token.decimals <= 36:
            raise ValueError(f"decimals out of range for {token.symbol}: {token.decimals}")
        self._tokens[token.address.lower()] = TokenInfo(
            address=token.address.lower(),
            symbol=token.symbol,
            decimals=token.decimals,
            name=token.name,
            active=token.active,
            permit_version=token.permit_version,
        )

    def get(self, address: str) -> Optional[TokenInfo]:
        return self._tokens.get(address.lower())

    def is_supported(self, address: str) -> bool:
        """Known and currently accepting bids."""
        token = self.get(address)
        return token is not None and token.active

    def decimals(self, address: str) -> int:
        """Decimals of a token, DEFAULT_DECIMALS when unknown."""
        token = self.get(address)
        return token.decimals if token else DEFAULT_DECIMALS

    def symbol(self, address: str) -> str:
        token = self.get(address)
        return token.symbol if token else address[:10]

    def permit_domain(self, address: str) -> Tuple[str, str]:
        """EIP-712 (name, version) a permit for this token is signed under."""
        token = self.get(address)
        return (token.name, token.permit_version) if token else ("", "1")

    def active_tokens(self) -> List[TokenInfo]:
        return [t for t in self._tokens.values() if t.active]

    def __len__(self) -> int:
        return len(self._tokens)

    def load_json(self, path: Path) -> int:
        """
        Add tokens from a JSON list of
        {"address", "symbol", "decimals", "name"?, "active"?, "permit_version"?} objects.

        Entries replace built-in tokens with the same address.

        Returns:
            Number of tokens loaded
        """
        entries = json.loads(Path(path).read_text())
        for entry in entries:
            self.add(TokenInfo(
                address=entry["address"],
                symbol=entry["symbol"],
                decimals=int(entry["decimals"]),
                name=entry.get("name", ""),
                active=bool(entry.get("active", True)),
                permit_version=str(entry.get("permit_version", "1")),
            ))
        logger.info(f"Loaded {len(entries)} tokens from {path}")
        return len(entries)

    @classmethod
    def from_config(cls, config: SettlementConfig) -> "TokenRegistry":
        """Built-in tokens plus those listed in `config.token_list`, if set."""
        registry = cls()
        if config.token_list:
            registry.load_json(config.token_list)
        return registry
