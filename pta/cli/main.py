"""
PTA CLI - Command Line Interface for Private Token Auctions

Main entry point for all CLI commands.
"""

import asyncio
import json
import time
from decimal import Decimal, InvalidOperation
from pathlib import Path

import click

from pta.utils.logger import get_logger, setup_logging

logger = get_logger("cli")


@click.group()
@click.option("--debug", is_flag=True, help="Enable debug logging")
@click.option("--data-dir", default=None, help="Data directory (overrides PTA_DATA_DIR)")
@click.option("--env-file", default=None, help="Path to a .env file")
@click.option("--log-file", is_flag=True, help="Also write logs to <log_dir>/pta.log")
@click.version_option(version="0.1.0")
@click.pass_context
def cli(ctx, debug, data_dir, env_file, log_file):
    """Private Token Auction - settlement engine"""
    import logging
    from pta.core.config import load_config

    config = load_config(env_file, overrides={"data_dir": Path(data_dir).expanduser() if data_dir else None})

    level = logging.DEBUG if debug else logging.INFO
    setup_logging(level=level, log_dir=str(config.log_dir), log_to_file=log_file)

    ctx.ensure_object(dict)
    ctx.obj["config"] = config
    config.data_dir.mkdir(parents=True, exist_ok=True)


def _store(ctx):
    from pta.core.storage import StorageManager
    return StorageManager(ctx.obj["config"].data_dir)


# =============================================================================
# Auction Commands
# =============================================================================


@cli.group()
def auction():
    """Auction management commands"""
    pass


@auction.command("create")
@click.option("--id", "auction_id", required=True, help="Auction id")
@click.option("--token", required=True, help="Auction token address (0x...)")
@click.option("--supply", required=True, type=int, help="Total auction-token supply")
@click.option("--target", required=True, type=int, help="Quantity for sale (<= supply)")
@click.option("--end-time", type=int, default=None, help="End time (unix seconds)")
@click.option("--duration", type=int, default=86400, help="Seconds from now until the end (if no --end-time)")
@click.option("--strategy", default="swap", help="Conversion strategy for non unit-of-account bids")
@click.option("--reserve", default="0", help="Reserve unit price in the unit of account")
@click.pass_context
def auction_create(ctx, auction_id, token, supply, target, end_time, duration, strategy, reserve):
    """Create a new auction"""
    from pta.core.models import Auction
    from pta.utils.validation import validate_address, validate_allocation_target

    valid, err = validate_address(token, "auction token")
    if valid:
        valid, err = validate_allocation_target(target, supply)
    if not valid:
        raise click.BadParameter(err)
    try:
        reserve_price = Decimal(reserve)
    except InvalidOperation:
        raise click.BadParameter(f"reserve must be a number, got '{reserve}'", param_hint="--reserve")
    if not reserve_price.is_finite() or reserve_price < 0:
        raise click.BadParameter("reserve must be a non-negative number", param_hint="--reserve")

    end = end_time if end_time is not None else int(time.time()) + duration
    new_auction = Auction(
        auction_id=auction_id,
        auction_token=token.lower(),
        total_supply=supply,
        target_allocation=target,
        end_time=end,
        conversion_strategy=strategy,
        reserve_price=reserve_price,
    )
    if not _store(ctx).create_auction(new_auction):
        raise click.ClickException(f"Auction {auction_id} already exists")

    click.echo(f"✓ Auction created: {auction_id}")
    click.echo(f"  Token: {token}")
    click.echo(f"  Target: {target} of {supply}")
    click.echo(f"  Ends: {end}")


@auction.command("show")
@click.argument("auction_id")
@click.pass_context
def auction_show(ctx, auction_id):
    """Show auction state, bid statistics and settlement result"""
    store = _store(ctx)
    found = store.get_auction(auction_id)
    if found is None:
        raise click.ClickException(f"Unknown auction {auction_id}")

    click.echo(f"Auction {found.auction_id}")
    click.echo("-" * 40)
    click.echo(f"  Token: {found.auction_token}")
    click.echo(f"  Target: {found.target_allocation} of {found.total_supply}")
    click.echo(f"  Status: {found.status.value} (stage {found.settlement_stage.value})")
    click.echo(f"  Strategy: {found.conversion_strategy}")
    if found.clearing_price is not None:
        click.echo(f"  Clearing price: {found.clearing_price}")

    stats = store.bid_statistics(auction_id)
    click.echo(f"  Bids: {stats['total_bids']} ({stats['total_requested']} requested)")
    for status, count in sorted(stats["by_status"].items()):
        click.echo(f"    {status}: {count}")

    result = store.get_result(auction_id)
    if result:
        click.echo("  Result:")
        click.echo(json.dumps(result.to_dict(), indent=2))


# =============================================================================
# Bid Commands
# =============================================================================


@cli.group()
def bid():
    """Bid commands"""
    pass


@bid.command("submit")
@click.option("--auction", "auction_id", required=True, help="Auction id")
@click.option("--token", required=True, help="Bid token address")
@click.option("--amount", required=True, type=int, help="Raw bid-token amount")
@click.option("--quantity", required=True, type=int, help="Requested auction-token quantity")
@click.option("--private-key", prompt=True, hide_input=True, help="Bidder private key (hex), used to sign the permit")
@click.option("--deadline-after", default=86400, type=int, help="Permit validity after auction end (seconds)")
@click.option("--nonce", default=0, type=int, help="Permit nonce")
@click.pass_context
def bid_submit(ctx, auction_id, token, amount, quantity, private_key, deadline_after, nonce):
    """Sign a permit and submit a bid"""
    from pta.core.bidding import BidIntake
    from pta.core.permit import sign_permit
    from pta.core.tokens import TokenRegistry
    from pta.crypto import bytes_to_hex, hex_to_bytes

    config = ctx.obj["config"]
    store = _store(ctx)
    target = store.get_auction(auction_id)
    if target is None:
        raise click.ClickException(f"Unknown auction {auction_id}")

    registry = TokenRegistry.from_config(config)
    key = hex_to_bytes(private_key)
    permit = sign_permit(
        key,
        spender=config.executor_address,
        token=token,
        value=amount,
        deadline=target.end_time + deadline_after,
        chain_id=config.chain_id,
        nonce=nonce,
        domain=registry.permit_domain(token),
    )
    payload = {
        "auction_id": auction_id,
        "bidder": permit.owner,
        "token": token,
        "amount": amount,
        "quantity": quantity,
        "permit": {**permit.to_dict(), "value": permit.value, "signature": bytes_to_hex(permit.signature)},
    }

    ok, message = BidIntake(store, registry, config).submit(payload)
    if not ok:
        raise click.ClickException(message)
    click.echo(f"✓ Bid submitted: {message}")


# =============================================================================
# Settlement Command
# =============================================================================


@cli.command("settle")
@click.argument("auction_id")
@click.option("--resume", is_flag=True, help="Resume an auction left in 'settling'")
@click.option("--prices", type=click.Path(exists=True, dir_okay=False), default=None,
              help="Dry run: JSON {token: [price, decimals]} with simulated swaps and transfers")
@click.pass_context
def settle(ctx, auction_id, resume, prices):
    """Settle an ended auction"""
    from pta.core.settlement import SettlementInputError

    config = ctx.obj["config"]
    store = _store(ctx)

    try:
        report = asyncio.run(_settle(config, store, auction_id, resume, prices))
    except SettlementInputError as e:
        raise click.ClickException(str(e))

    click.echo(f"Settlement {report.outcome}: {auction_id}")
    if report.result:
        click.echo(json.dumps(report.result.to_dict(), indent=2))


async def _settle(config, store, auction_id, resume, prices_file):
    from pta.core.settlement import SettlementOrchestrator, SwapVenueStrategy
    from pta.core.tokens import TokenRegistry

    if prices_file:
        from pta.venues.mock import MockExecutor, MockSwapVenue
        from pta.venues.oracle import StaticPriceOracle

        oracle = StaticPriceOracle({k: tuple(v) for k, v in json.loads(Path(prices_file).read_text()).items()})
        venue = MockSwapVenue(oracle.quotes, unit_decimals=config.unit_of_account_decimals)
        executor = MockExecutor()
        orchestrator = SettlementOrchestrator(
            store, oracle, executor, {"swap": SwapVenueStrategy(venue)}, config
        )
        return await orchestrator.settle(auction_id, resume=resume)

    from pta.venues.executor import Web3Executor
    from pta.venues.oracle import HttpPriceOracle
    from pta.venues.swap import HttpSwapVenue

    oracle = HttpPriceOracle(
        config.oracle_url,
        config.chain_id,
        currency=config.unit_of_account,
        registry=TokenRegistry.from_config(config),
        api_key=config.api_key,
    )
    venue = HttpSwapVenue.from_config(config)
    try:
        executor = Web3Executor.from_config(config)
        orchestrator = SettlementOrchestrator(
            store, oracle, executor, {"swap": SwapVenueStrategy(venue)}, config
        )
        return await orchestrator.settle(auction_id, resume=resume)
    finally:
        await oracle.close()
        await venue.close()


# =============================================================================
# Token Command
# =============================================================================


@cli.command("tokens")
@click.pass_context
def tokens(ctx):
    """List supported bid tokens"""
    from pta.core.tokens import TokenRegistry

    click.echo("Supported bid tokens")
    click.echo("-" * 40)
    for token in TokenRegistry.from_config(ctx.obj["config"]).active_tokens():
        click.echo(f"  {token.symbol:<6} {token.address}  ({token.decimals} decimals)")


# =============================================================================
# Demo Command
# =============================================================================


@cli.command("demo")
def demo():
    """Run a full simulated settlement"""
    import tempfile
    from pta.core.bidding import BidIntake
    from pta.core.config import SettlementConfig
    from pta.core.models import Auction
    from pta.core.permit import sign_permit
    from pta.core.settlement import SettlementOrchestrator, SwapVenueStrategy
    from pta.core.storage import StorageManager
    from pta.core.tokens import ARBITRUM_TOKENS, TokenRegistry
    from pta.crypto import bytes_to_hex, generate_keypair
    from pta.venues.mock import MockExecutor, MockSwapVenue
    from pta.venues.oracle import StaticPriceOracle

    weth = next(t.address for t in ARBITRUM_TOKENS if t.symbol == "WETH")
    usdc = next(t.address for t in ARBITRUM_TOKENS if t.symbol == "USDC")

    click.echo("=" * 60)
    click.echo("  PRIVATE TOKEN AUCTION - DEMO")
    click.echo("=" * 60)
    click.echo()

    with tempfile.TemporaryDirectory() as tmp:
        config = SettlementConfig(data_dir=Path(tmp), executor_address="0x" + "ee" * 20)
        store = StorageManager(config.data_dir)
        now = int(time.time())
        end_time = now + 3600

        store.create_auction(Auction(
            auction_id="demo",
            auction_token="0x" + "aa" * 20,
            total_supply=10_000,
            target_allocation=1000,
            end_time=end_time,
        ))
        click.echo("📦 Auction 'demo': 1000 of 10000 tokens for sale")
        click.echo()

        # (label, token, raw amount, quantity): $10, $8, $8, $5 per unit at WETH = $2000
        bids = [
            ("A", weth, 2 * 10**18, 400),
            ("B", usdc, 4000 * 10**6, 500),
            ("C", weth, 12 * 10**17, 300),
            ("D", usdc, 5000 * 10**6, 1000),
        ]
        intake = BidIntake(store, TokenRegistry(), config)
        labels = {}
        for i, (label, token, amount, quantity) in enumerate(bids):
            kp = generate_keypair()
            permit = sign_permit(kp.private_key, config.executor_address, token, amount, end_time + 3600, config.chain_id)
            ok, bid_id = intake.submit({
                "auction_id": "demo",
                "bidder": kp.address,
                "token": token,
                "amount": amount,
                "quantity": quantity,
                "permit": {**permit.to_dict(), "signature": bytes_to_hex(permit.signature)},
            }, now=now, received_at=now * 1000 + i)
            labels[bid_id] = label
            click.echo(f"  ✓ Bid {label}: {quantity} units ({'accepted' if ok else bid_id})")
        click.echo()

        oracle = StaticPriceOracle({weth: (2000, 18), usdc: (1, 6)})
        executor = MockExecutor()
        venue = MockSwapVenue(oracle.quotes)
        orchestrator = SettlementOrchestrator(store, oracle, executor, {"swap": SwapVenueStrategy(venue)}, config)

        click.echo("⚖️  Settling...")
        report = asyncio.run(orchestrator.settle("demo", now=end_time))
        for settled_bid in store.list_bids("demo"):
            label = labels.get(settled_bid.bid_id, "?")
            click.echo(
                f"  {label}: {settled_bid.status.value:<12} fill {settled_bid.fill_quantity:>4}/{settled_bid.quantity:<4} "
                f"@ {settled_bid.effective_unit_price:.2f} -> {settled_bid.tokens_distributed} tokens"
            )
        click.echo()

        result = report.result
        click.echo("📊 Result:")
        click.echo(f"  Clearing price: {result.clearing_price:.2f}")
        click.echo(f"  Total raised: {result.total_raised:.2f}")
        click.echo(f"  Winners: {result.winning_bids}, losers: {result.losing_bids}")
        click.echo(f"  Swaps: {len(venue.calls)}, transfers: {len(executor.collect_calls)}, batches: {len(executor.batch_calls)}")
        store.close()

    click.echo()
    click.echo("✅ Demo complete!")


if __name__ == "__main__":
    cli()
