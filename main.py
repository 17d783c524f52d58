from __future__ import annotations

import argparse
import logging
import sys
import threading
from typing import Dict, Optional, Type

from bot.health import check_api_health
from bot.utils import StockfighterConfig, load_config, setup_logger
from engine.state_store import EngineStateStore
from engine.trading_engine import TradingEngine
from execution.errors import ApiError
from execution.stockfighter_adapter import StockfighterClient
from strategies.base import Strategy
from strategies.chock_a_block import ChockABlock
from strategies.dueling_bulldozers import DuelingBulldozers
from strategies.first_steps import FirstSteps
from strategies.sell_side import SellSide

STRATEGIES: Dict[str, Type[Strategy]] = {
    FirstSteps.name: FirstSteps,
    ChockABlock.name: ChockABlock,
    SellSide.name: SellSide,
    DuelingBulldozers.name: DuelingBulldozers,
}


def parse_args(argv=None) -> argparse.Namespace:
    ap = argparse.ArgumentParser(description="Run a Stockfighter trading strategy until stopped")
    ap.add_argument("--level", required=True, choices=sorted(STRATEGIES), help="strategy to run")
    ap.add_argument("--account", help="trading account (default: STOCKFIGHTER_ACCOUNT)")
    ap.add_argument("--venue", help="venue symbol (default: STOCKFIGHTER_VENUE)")
    ap.add_argument("--symbol", help="stock symbol (default: STOCKFIGHTER_SYMBOL)")
    ap.add_argument("--serve-status", type=int, metavar="PORT", help="serve the read-only status API on PORT")
    return ap.parse_args(argv)


def apply_overrides(config: StockfighterConfig, args: argparse.Namespace) -> StockfighterConfig:
    config.account = args.account or config.account
    config.venue = args.venue or config.venue
    config.symbol = args.symbol or config.symbol
    missing = [name for name in ("account", "venue", "symbol") if not getattr(config, name)]
    if missing:
        raise ValueError(f"Missing trading target: {', '.join(missing)} (flag or STOCKFIGHTER_* env)")
    return config


def start_status_server(engine: TradingEngine, port: int, logger: logging.Logger) -> threading.Thread:
    import uvicorn

    from api.main import create_app

    server = uvicorn.Server(uvicorn.Config(create_app(engine), host="127.0.0.1", port=port, log_level="warning"))
    thread = threading.Thread(target=server.run, name="status-api", daemon=True)
    thread.start()
    logger.info("Status API listening", extra={"details": {"port": port}})
    return thread


def wait_for_quit(stream=None) -> None:
    print("press q then enter to stop")
    for line in stream or sys.stdin:
        if line.strip() == "q":
            return


def main(argv=None) -> int:
    args = parse_args(argv)
    logger = setup_logger()

    try:
        config = apply_overrides(load_config(), args)
    except ValueError as exc:
        logger.error("Configuration error", extra={"details": {"error": str(exc)}})
        return 2

    client = StockfighterClient(config)
    venue = client.venue(config.account, config.venue)

    health = check_api_health(client, venue, logger)
    if not health.healthy:
        logger.error("Not trading: %s", health.message)
        return 1

    state_store: Optional[EngineStateStore] = EngineStateStore(config.state_file) if config.state_file else None
    engine = TradingEngine(venue, state_store=state_store)
    try:
        if args.serve_status:
            start_status_server(engine, args.serve_status, logger)

        strategy = STRATEGIES[args.level](config.symbol)
        logger.info(
            "Starting strategy",
            extra={"details": {"level": args.level, "account": config.account, "venue": config.venue, "symbol": config.symbol}},
        )
        strategy.attach(engine)
        wait_for_quit()
    except KeyboardInterrupt:
        logger.info("Bot stopped manually")
    except ApiError as exc:
        logger.error("Strategy failed to start: %s", exc)
        return 1
    finally:
        engine.close()
        logger.info(
            "Final position",
            extra={"details": {"balance": engine.balance, "positions": engine.positions, "net_profit": engine.net_profit}},
        )
    return 0


if __name__ == "__main__":
    sys.exit(main())
