from __future__ import annotations

import argparse
import asyncio
from pathlib import Path

from .config import AppConfig, load_config
from .logging_utils import configure_logging, get_logger


async def run_bot(config: AppConfig) -> None:
    configure_logging(config.logging)
    logger = get_logger(__name__)
    from .gateway import create_bot

    bot = create_bot(config)
    try:
        await bot.start(config.discord.token)
    except asyncio.CancelledError:
        logger.info("Shutdown requested, closing Discord client.")
        await bot.close()
        raise
    except Exception:
        logger.exception("Discord client stopped unexpectedly.")
        await bot.close()
        raise


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Discord voice node broker")
    parser.add_argument(
        "--config",
        type=Path,
        default=Path("config.yaml"),
        help="Path to the configuration file",
    )
    return parser.parse_args()


def main() -> None:
    args = parse_args()
    config = load_config(args.config)
    try:
        asyncio.run(run_bot(config))
    except KeyboardInterrupt:
        logger = get_logger(__name__)
        logger.info("Received keyboard interrupt. Shutting down cleanly.")


if __name__ == "__main__":
    main()
