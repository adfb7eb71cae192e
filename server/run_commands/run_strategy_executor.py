#!/usr/bin/env python3
"""
Run Strategy Executor
Long-running worker process: evaluates strategies every tick until
SIGINT/SIGTERM, then stops after the in-flight tick.

Usage:
    IBKR_ACCOUNT_ID=U1234567 python run_commands/run_strategy_executor.py [account_id]
"""

import asyncio
import signal
import sys
from pathlib import Path

# Add parent directory to path
sys.path.append(str(Path(__file__).parent.parent))

from calendar_trader.core.config import settings
from calendar_trader.core.logging import get_logger
from calendar_trader.core.monitoring import ErrorMonitoring
from calendar_trader.services.exceptions import TradingEngineError
from calendar_trader.workers.strategy_executor import get_strategy_executor, reset_strategy_executor

logger = get_logger("run_strategy_executor")


async def main(account_id=None) -> int:
    """Run the executor until a shutdown signal arrives"""
    logger.info("=" * 60)
    logger.info("Starting Strategy Executor", environment=settings.environment)
    logger.info("=" * 60)

    ErrorMonitoring.init_sentry(settings)

    shutdown = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, shutdown.set)

    executor = get_strategy_executor()
    try:
        await executor.start(account_id)
    except TradingEngineError as e:
        logger.error(f"Strategy Executor failed to start: {e}")
        await reset_strategy_executor()
        return 1

    logger.info(
        "Strategy Executor running",
        account_id=executor.current_account(),
        interval_seconds=executor.interval
    )

    await shutdown.wait()

    logger.info("Shutdown signal received, stopping after the current tick")
    await reset_strategy_executor()

    logger.info("=" * 60)
    logger.info("Strategy Executor stopped", tick_count=executor.tick_count)
    logger.info("=" * 60)
    return 0


if __name__ == "__main__":
    sys.exit(asyncio.run(main(sys.argv[1] if len(sys.argv) > 1 else None)))
