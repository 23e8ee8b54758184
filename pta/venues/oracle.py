"""
Pricing Oracle adapters.

Both adapters return {token_address: PriceQuote} for the tokens they know and
leave unknown tokens out of the result instead of raising.
"""

import asyncio
from decimal import Decimal, InvalidOperation
from typing import Dict, Iterable, Mapping, Optional, Tuple, Union

import httpx

from pta.core.tokens import TokenRegistry
from pta.utils.logger import get_logger
from pta.venues.base import PriceOracleError, PriceQuote

logger = get_logger("oracle")


class StaticPriceOracle:
    """
    Fixed price table, for tests, demos and replaying a settlement.

    Counts queries so tests can assert how often prices were fetched.
    """

    def __init__(self, prices: Mapping[str, Union[PriceQuote, Tuple[object, int]]]):
        self._prices: Dict[str, PriceQuote] = {}
        for token, quote in prices.items():
            if not isinstance(quote, PriceQuote):
                price, decimals = quote
                quote = PriceQuote(price=Decimal(str(price)), decimals=int(decimals))
            self._prices[token.lower()] = quote
        self.calls = 0

    @property
    def quotes(self) -> Dict[str, PriceQuote]:
        return dict(self._prices)

    def set_price(self, token: str, price, decimals: int):
        self._prices[token.lower()] = PriceQuote(price=Decimal(str(price)), decimals=decimals)

    async def get_prices(self, tokens: Iterable[str]) -> Dict[str, PriceQuote]:
        self.calls += 1
        result = {}
        for token in tokens:
            quote = self._prices.get(token.lower())
            if quote is not None:
                result[token.lower()] = quote
        return result


class HttpPriceOracle:
    """
    Spot-price API client (1inch price API shape).

    GET {base_url}/{chain_id}?tokens=a,b&currency=<unit of account>
    returns {"<address>": "<price of one whole token>", ...}. Decimals come
    from the token registry since the API does not report them.
    """

    def __init__(
        self,
        base_url: str,
        chain_id: int,
        currency: str,
        registry: TokenRegistry,
        api_key: str = "",
        timeout: float = 10.0,
        max_retries: int = 3,
        retry_delay: float = 1.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.chain_id = chain_id
        self.currency = currency.lower()
        self.registry = registry
        self.max_retries = max(1, max_retries)
        self.retry_delay = retry_delay
        headers = {"Accept": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        self._client = client or httpx.AsyncClient(base_url=base_url, timeout=timeout)
        self._headers = headers

    async def get_prices(self, tokens: Iterable[str]) -> Dict[str, PriceQuote]:
        wanted = sorted({t.lower() for t in tokens})
        if not wanted:
            return {}

        data = await self._fetch(wanted)

        result: Dict[str, PriceQuote] = {}
        for token in wanted:
            raw = data.get(token)
            if raw is None:
                logger.debug(f"No price for {token}")
                continue
            try:
                price = Decimal(str(raw))
            except InvalidOperation:
                logger.warning(f"Unparseable price for {token}: {raw!r}")
                continue
            if price < 0:
                logger.warning(f"Negative price for {token}: {price}")
                continue
            result[token] = PriceQuote(price=price, decimals=self.registry.decimals(token))

        logger.info(f"Fetched {len(result)}/{len(wanted)} prices")
        return result

    async def _fetch(self, tokens) -> dict:
        params = {"tokens": ",".join(tokens), "currency": self.currency}
        for attempt in range(self.max_retries):
            if attempt > 0:
                wait_time = self.retry_delay * (2 ** (attempt - 1))
                logger.info(f"Retrying price query in {wait_time}s...")
                await asyncio.sleep(wait_time)
            try:
                response = await self._client.get(f"/{self.chain_id}", params=params, headers=self._headers)
                response.raise_for_status()
                data = response.json()
            except httpx.HTTPStatusError as e:
                if e.response.status_code == 429 and attempt < self.max_retries - 1:
                    logger.warning("Price API rate limited (429)")
                    continue
                raise PriceOracleError(f"price API returned {e.response.status_code}") from e
            except httpx.HTTPError as e:
                if attempt < self.max_retries - 1:
                    logger.warning(f"Price API request failed: {e}")
                    continue
                raise PriceOracleError(f"price API unreachable: {e}") from e
            except ValueError as e:
                raise PriceOracleError(f"price API returned invalid JSON: {e}") from e

            if not isinstance(data, dict):
                raise PriceOracleError("price API returned a non-object payload")
            return {str(k).lower(): v for k, v in data.items()}

        raise PriceOracleError("price API retries exhausted")

    async def close(self) -> None:
        await self._client.aclose()
