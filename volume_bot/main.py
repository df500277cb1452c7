"""
Volume bot command line.

    python -m volume_bot.main paper --mint <MINT> --wallets 3 --target 2 --interval-ms 200
    python -m volume_bot.main config --validate
"""
import argparse
import asyncio
import logging
import platform
import random
import signal
import sys
import time

from rich import box
from rich.console import Console, Group
from rich.live import Live
from rich.panel import Panel
from rich.table import Table

from volume_bot.config import WALLET_SECRETS, get_config_manager, get_settings
from volume_bot.core.event_bus import ALL_TOKENS, BotEvent, EventBus, EventType
from volume_bot.core.models import MonitorState, Session
from volume_bot.core.price_feed import StaticPriceSource
from volume_bot.core.session_scheduler import SessionScheduler
from volume_bot.core.smart_profit import SmartProfitManager
from volume_bot.core.trader import PaperTradeExecutor
from volume_bot.core.wallet import WalletPool
from volume_bot.db.database import DatabaseManager
from volume_bot.exceptions import BotException
from volume_bot.utils.logging import setup_logging

logger = logging.getLogger("volume_bot.main")

PAPER_MINT = "PaperMint1111111111111111111111111111111111"
OWNER_ID = "cli"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="volume_bot", description="Solana volume bot")
    sub = parser.add_subparsers(dest="command", required=True)

    paper = sub.add_parser("paper", help="Run a paper volume session")
    paper.add_argument("--mint", default=PAPER_MINT, help="Token mint address.")
    paper.add_argument("--wallets", type=int, default=3, help="Number of paper wallets.")
    paper.add_argument("--env-wallets", action="store_true", help="Use VOLUME_BOT_WALLET_SECRETS instead.")
    paper.add_argument("--target", type=float, help="Target volume in SOL.")
    paper.add_argument("--interval-ms", type=int, help="Trade interval in milliseconds.")
    paper.add_argument("--min-tx", type=float, help="Minimum trade size in SOL.")
    paper.add_argument("--max-tx", type=float, help="Maximum trade size in SOL.")
    paper.add_argument("--buy-pressure", type=float, help="Buy pressure percent (0-100).")
    paper.add_argument("--strategy", choices=["DBPM", "PLD", "CMWA"], help="Pacing strategy.")
    paper.add_argument("--platform", default="jupiter", choices=["pumpfun", "jupiter", "raydium"])
    paper.add_argument("--price", type=float, default=0.000001, help="Starting token price in SOL.")
    paper.add_argument("--volatility", type=float, default=0.01, help="Max price step per read (fraction).")
    paper.add_argument("--failure-rate", type=float, default=0.0, help="Simulated trade failure rate.")
    paper.add_argument("--seed", type=int, help="Random seed for reproducible runs.")
    paper.add_argument("--smart-profit", action="store_true", help="Also run a smart profit monitor.")
    paper.add_argument("--position-tokens", type=float, default=1_000_000.0, help="Tokens held for smart profit.")

    config = sub.add_parser("config", help="Show or validate the defaults file")
    config.add_argument("--validate", action="store_true", help="Only validate, exit 1 on errors.")
    return parser


def session_overrides(args: argparse.Namespace) -> dict:
    mapping = {
        "target": "target_volume_sol",
        "interval_ms": "trade_interval_ms",
        "min_tx": "min_tx_sol",
        "max_tx": "max_tx_sol",
        "buy_pressure": "buy_pressure_percent",
        "strategy": "strategy",
    }
    return {field: getattr(args, arg) for arg, field in mapping.items() if getattr(args, arg) is not None}


def render(session: Session, monitor: MonitorState = None, events: list = None) -> Group:
    table = Table(box=box.ROUNDED, expand=True)
    table.add_column("Status", style="magenta")
    table.add_column("Volume (SOL)", justify="right")
    table.add_column("Progress", justify="right")
    table.add_column("Trades", justify="right")
    table.add_column("Buy/Sell", justify="right")
    table.add_column("Price", justify="right")
    table.add_column("PnL (SOL)", justify="right")

    pnl_style = "green" if session.net_pnl_sol >= 0 else "red"
    table.add_row(
        session.status.value,
        f"{session.executed_volume_sol:.4f}/{session.target_volume_sol:.4f}",
        f"{session.progress_percent:.1f}%",
        f"{session.successful_trades}/{session.total_trades}",
        f"{session.buy_count}/{session.sell_count}",
        f"{session.current_price or 0:.10f}",
        f"[{pnl_style}]{session.net_pnl_sol:+.5f}[/{pnl_style}]",
    )
    parts = [Panel(table, title=f"Session {session.token_mint[:8]}", border_style="cyan")]

    if monitor is not None:
        pnl = monitor.unrealized_pnl_percent
        hwm = monitor.trailing_high_water_mark_percent
        parts.append(Panel(
            f"phase={monitor.phase.value}  pnl={'n/a' if pnl is None else f'{pnl:+.2f}%'}  "
            f"trailing={'armed' if monitor.trailing_stop_armed else 'off'}"
            f"{'' if hwm is None else f' hwm={hwm:.2f}%'}  "
            f"last_rule={monitor.last_triggered_rule.value if monitor.last_triggered_rule else '-'}  "
            f"executions={monitor.executions}",
            title="Smart Profit",
            border_style="magenta",
        ))

    if events:
        lines = [
            f"{time.strftime('%H:%M:%S', time.localtime(e.timestamp))} {e.event_type.value}"
            for e in events[-5:]
        ]
        parts.append(Panel("\n".join(lines), title="Events", border_style="dim"))
    return Group(*parts)


async def run_paper(args: argparse.Namespace) -> int:
    settings = get_settings()
    setup_logging(settings)
    bot_config = get_config_manager(settings.CONFIG_PATH).get_config()

    shutdown_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    if platform.system() != "Windows":
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, shutdown_event.set)

    pool = WalletPool()
    if args.env_wallets:
        if not WALLET_SECRETS:
            logger.error("❌ VOLUME_BOT_WALLET_SECRETS is empty")
            return 1
        try:
            wallets = [pool.add_secret(secret, f"env-{i + 1}") for i, secret in enumerate(WALLET_SECRETS)]
        except BotException as e:
            logger.error(f"❌ {e}")
            return 1
    else:
        wallets = pool.generate(args.wallets, prefix="paper")
    price_source = StaticPriceSource({args.mint: args.price}, random_walk_pct=args.volatility, seed=args.seed)
    executor = PaperTradeExecutor(settings, price_source, seed=args.seed, failure_rate=args.failure_rate)
    event_bus = EventBus()
    db = DatabaseManager(settings.DB_PATH)

    events: list[BotEvent] = []
    unsubscribe = event_bus.subscribe(ALL_TOKENS, events.append)

    scheduler = SessionScheduler(
        executor,
        event_bus=event_bus,
        defaults=bot_config.session_defaults,
        rng=random.Random(args.seed),
    )
    manager = SmartProfitManager(
        executor,
        price_source,
        pool,
        store=db,
        event_bus=event_bus,
        defaults=bot_config.smart_profit_defaults,
        config=bot_config.monitor,
    )

    try:
        await scheduler.start(
            OWNER_ID,
            args.mint,
            wallets,
            settings=session_overrides(args),
            platform=args.platform,
            current_price_sol=args.price,
        )
        if args.smart_profit:
            await manager.start(
                OWNER_ID,
                args.mint,
                overrides={
                    "wallet_ids": [w.wallet_id for w in wallets],
                    "average_entry_price": args.price,
                    "total_tokens_held": args.position_tokens,
                    "total_sol_invested": args.price * args.position_tokens,
                },
                current_price_sol=args.price,
            )
    except BotException as e:
        logger.error(f"❌ Could not start: {e}")
        unsubscribe()
        return 1

    console = Console()
    with Live(console=console, refresh_per_second=4) as live:
        while not shutdown_event.is_set():
            session = scheduler.get_status(OWNER_ID, args.mint)
            live.update(render(session, manager.get_state(OWNER_ID, args.mint), events))
            if session.status.is_terminal:
                break
            await asyncio.sleep(0.25)

    if shutdown_event.is_set():
        logger.info("Initiating graceful shutdown...")
    await scheduler.shutdown()
    manager.shutdown()
    unsubscribe()

    session = scheduler.get_status(OWNER_ID, args.mint)
    db.record_session(session)
    emergency = [e for e in events if e.event_type is EventType.EMERGENCY_STOP]
    console.print(
        f"Session {session.status.value} ({session.stop_reason}) | "
        f"{session.executed_volume_sol:.4f} SOL in {session.total_trades} trades, pnl {session.net_pnl_sol:+.5f} SOL"
    )
    return 2 if emergency else 0


def run_config(args: argparse.Namespace) -> int:
    settings = get_settings()
    manager = get_config_manager(settings.CONFIG_PATH)
    errors = manager.validate()
    for error in errors:
        print(f"❌ {error}")
    if args.validate:
        return 1 if errors else 0

    config = manager.get_config()
    table = Table(title=str(manager.config_path), box=box.SIMPLE)
    table.add_column("Section", style="cyan")
    table.add_column("Field")
    table.add_column("Value", justify="right")
    for section, values in config.to_dict().items():
        if not isinstance(values, dict):
            continue
        for name, value in values.items():
            table.add_row(section, name, str(value))
    Console().print(table)
    return 1 if errors else 0


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    if platform.system() == "Windows":
        sys.stdout.reconfigure(encoding='utf-8')
        sys.stderr.reconfigure(encoding='utf-8')

    if args.command == "config":
        return run_config(args)
    try:
        return asyncio.run(run_paper(args))
    except KeyboardInterrupt:
        print("👋 Stopped by user.")
        return 130


if __name__ == "__main__":
    sys.exit(main())
