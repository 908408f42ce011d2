#!/usr/bin/env python3
"""
Futures bot CLI: live | status
Usage:
  python main.py live [--config config.yaml]
  python main.py status [--config config.yaml]
"""

from __future__ import annotations
import argparse
import asyncio
import logging
import sys
from pathlib import Path

# Project root
ROOT = Path(__file__).resolve().parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from futures_bot.core.config import Config, load_config
from futures_bot.core.errors import ConfigurationError, EngineError
from futures_bot.core.logger import setup_logging
from futures_bot.execution.binance_futures import BinanceFuturesGateway
from futures_bot.live.engine import TradingEngine
from futures_bot.utils.telegram import TelegramNotifier

logger = logging.getLogger("futures_bot")


async def _gateway(config: Config) -> BinanceFuturesGateway:
    return await BinanceFuturesGateway.create(
        config.binance_api_key,
        config.binance_api_secret,
        testnet=config.use_testnet,
        max_retries=config.max_retries,
        retry_base_delay=config.retry_base_delay,
        retry_max_delay=config.retry_max_delay,
    )


async def _run_live(config: Config) -> int:
    gateway = await _gateway(config)
    engine = TradingEngine(gateway, config.settings)
    notifier = TelegramNotifier(config.telegram_bot_token, config.telegram_chat_id,
                                prefix="[TESTNET] " if config.use_testnet else "")
    engine.subscribe(notifier.on_event)
    try:
        await engine.start()
        # run until interrupted
        await asyncio.Event().wait()
    finally:
        await engine.stop()
        await gateway.close()
    return 0


async def _print_status(config: Config) -> int:
    """One-shot account view: balance and open positions for the configured symbol."""
    gateway = await _gateway(config)
    try:
        symbol = config.settings.symbol
        balance = await gateway.get_balance()
        positions = await gateway.get_positions(symbol)
        print(f"Balance: {balance:.2f} USDT ({'testnet' if config.use_testnet else 'live'})")
        if not positions:
            print(f"No open {symbol} positions")
        for p in positions:
            print(f"{p.side.value} {p.symbol} qty={p.quantity} entry={p.entry_price} uPnL={p.unrealized_pnl:.2f}")
    finally:
        await gateway.close()
    return 0


def main() -> int:
    parser = argparse.ArgumentParser(description="Perpetual futures signal bot")
    parser.add_argument("mode", choices=["live", "status"], help="Run the engine or print account status")
    parser.add_argument("--config", type=Path, default=None, help="Path to config.yaml")
    args = parser.parse_args()
    try:
        config = load_config(args.config, ROOT)
    except ConfigurationError as e:
        print(f"Invalid configuration: {e}", file=sys.stderr)
        return 2
    setup_logging(config.log_level, config.log_dir, config.log_file)
    if not config.binance_api_key or not config.binance_api_secret:
        logger.error("Missing Binance API key/secret in .env")
        return 1
    runner = _run_live if args.mode == "live" else _print_status
    try:
        return asyncio.run(runner(config))
    except KeyboardInterrupt:
        logger.info("Shutdown by user")
        return 0
    except EngineError as e:
        logger.error("Engine failed: %s", e)
        return 1


if __name__ == "__main__":
    sys.exit(main())
