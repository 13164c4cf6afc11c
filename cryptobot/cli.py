"""CLI tool for engine and admin operations.

Usage:
    python -m cryptobot.cli run
    python -m cryptobot.cli add-credential
    python -m cryptobot.cli cleanup-market-data [--days N]
    python -m cryptobot.cli status
"""

import asyncio
import getpass
import signal
import sys

from sqlmodel import Session, select

from cryptobot.config import settings
from cryptobot.database import engine, create_db_and_tables
from cryptobot.errors import ConfigurationError
from cryptobot.models.credential import Credential
from cryptobot.models.portfolio_snapshot import PortfolioSnapshot
from cryptobot.models.position import Position, STATUS_OPEN
from cryptobot.models.system_log import SystemLog
from cryptobot.models.trading_pair import TradingPair
from cryptobot.utils.logging import setup_logging


async def _run_engine():
    from cryptobot.engine.runtime import TradingRuntime

    runtime = TradingRuntime()
    await runtime.start()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, runtime.request_shutdown)
    await runtime.wait_closed()


def run():
    """Run the trading engine without the HTTP API until SIGINT/SIGTERM."""
    setup_logging()
    create_db_and_tables()
    try:
        asyncio.run(_run_engine())
    except ConfigurationError as e:
        print(f"Configuration error: {e}")
        sys.exit(1)


def add_credential():
    """Store an exchange API key with its Fernet-encrypted secret."""
    from cryptobot.services.encryption import encrypt_secret, mask_api_key

    create_db_and_tables()
    api_key = input("API key: ").strip()
    if not api_key:
        print("API key cannot be empty.")
        sys.exit(1)
    api_secret = getpass.getpass("API secret: ").strip()
    if not api_secret:
        print("API secret cannot be empty.")
        sys.exit(1)
    name = input("Name [default]: ").strip() or "default"

    try:
        encrypted = encrypt_secret(api_secret)
    except ConfigurationError as e:
        print(f"Configuration error: {e}")
        sys.exit(1)

    with Session(engine) as session:
        # Only one credential is active at a time
        for cred in session.exec(select(Credential).where(Credential.is_active == True)).all():
            cred.is_active = False
            session.add(cred)
        session.add(Credential(
            name=name,
            api_key=api_key,
            api_secret_encrypted=encrypted,
            testnet=settings.binance_testnet,
        ))
        session.commit()

    network = "testnet" if settings.binance_testnet else "mainnet"
    print(f"Credential '{name}' ({mask_api_key(api_key)}) stored for Binance {network}.")


def cleanup_market_data(args: list[str]):
    """Delete candles and indicator snapshots older than the retention window."""
    from cryptobot.services.market_data import purge_market_data

    days = settings.retention_days
    if "--days" in args:
        idx = args.index("--days")
        try:
            days = int(args[idx + 1])
        except (IndexError, ValueError):
            print("--days needs an integer value.")
            sys.exit(1)
        if days < 1:
            print("--days must be at least 1.")
            sys.exit(1)

    setup_logging()
    create_db_and_tables()
    result = purge_market_data(days)
    print(f"Deleted {result['candles']} candles and {result['indicator_snapshots']} indicator snapshots "
          f"older than {days} days.")


def status():
    """Print pairs, open positions, latest portfolio snapshot and gateway events."""
    create_db_and_tables()
    with Session(engine) as session:
        pairs = session.exec(select(TradingPair).order_by(TradingPair.id)).all()
        positions = session.exec(select(Position).where(Position.status == STATUS_OPEN)).all()
        snapshot = session.exec(
            select(PortfolioSnapshot).order_by(PortfolioSnapshot.snapshot_time.desc())
        ).first()
        gateway_log = session.exec(
            select(SystemLog)
            .where(SystemLog.event.startswith("GATEWAY_"))
            .order_by(SystemLog.timestamp.desc(), SystemLog.id.desc())
        ).first()

    print(f"Pairs ({len(pairs)}):")
    for pair in pairs:
        print(f"  {pair.symbol:<12} {'active' if pair.is_active else 'inactive'}")

    print(f"Open positions ({len(positions)}):")
    for pos in positions:
        print(f"  #{pos.id} {pos.strategy_name} pair={pos.pair_id} {pos.side} {pos.quantity} "
              f"@ {pos.entry_price} (uPnL {pos.unrealized_pnl})")

    if snapshot:
        print(f"Portfolio: {snapshot.total_value} {settings.quote_asset} "
              f"(drawdown {snapshot.daily_drawdown:.2%}) at {snapshot.snapshot_time}")
    else:
        print("Portfolio: no snapshot recorded yet")

    if gateway_log:
        print(f"Gateway: {gateway_log.event} at {gateway_log.timestamp}: {gateway_log.message}")
    else:
        print("Gateway: no events recorded")


def main():
    if len(sys.argv) < 2:
        print("Usage: python -m cryptobot.cli <command>")
        print("Commands: run, add-credential, cleanup-market-data [--days N], status")
        sys.exit(1)

    command = sys.argv[1]
    if command == "run":
        run()
    elif command == "add-credential":
        add_credential()
    elif command == "cleanup-market-data":
        cleanup_market_data(sys.argv[2:])
    elif command == "status":
        status()
    else:
        print(f"Unknown command: {command}")
        sys.exit(1)


if __name__ == "__main__":
    main()
