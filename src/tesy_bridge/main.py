from __future__ import annotations

import argparse
import asyncio
import logging
import os
import signal
import sys
from functools import partial
from pathlib import Path

import dotenv
import uvloop

from tesy_bridge.bridge import TesyBridge
from tesy_bridge.config import load_config
from tesy_bridge.const import LOG_FORMATTER, TESY_DEBUG, TESY_VERSION, YES_ANSWER
from tesy_bridge.correlation import correlation_context
from tesy_bridge.exceptions import ConfigError
from tesy_bridge.logging_abstraction import configure_logging, get_logger, set_package_level

logger = get_logger(__name__)

# Keep the MQTT library quiet unless something is really wrong
mqtt_handler = logging.StreamHandler(sys.stdout)
mqtt_handler.setFormatter(LOG_FORMATTER)
mqtt_logger = logging.getLogger("mqtt")
mqtt_logger.setLevel(logging.ERROR)
mqtt_logger.propagate = False
mqtt_logger.addHandler(mqtt_handler)


def parse_cli(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Tesy heater bridge")
    _ = parser.add_argument(
        "-D",
        "--debug",
        action="store_true",
        help="Enable debug mode",
    )
    _ = parser.add_argument("--env", help="Path to the environment file", default=None, type=Path)
    _ = parser.add_argument(
        "--config",
        help="Path to a YAML config file (default: $TESY_CONFIG_FILE)",
        default=None,
        type=Path,
    )
    return parser.parse_args(argv)


def load_env_file(env_file: Path) -> bool:
    """Load variables from a .env file, overriding the current environment."""
    env_path = env_file.expanduser().resolve()
    if not env_path.exists():
        logger.error("Environment file not found", extra={"path": str(env_path)})
        return False
    loaded_any = dotenv.load_dotenv(env_path, override=True)
    if loaded_any:
        logger.info("Environment variables loaded", extra={"source": str(env_path)})
    else:
        logger.warning("No environment variables loaded from file", extra={"path": str(env_path)})
    return loaded_any


class BridgeRunner:
    """Runs a TesyBridge on a uvloop event loop and stops it on SIGINT/SIGTERM."""

    lp: str = "BridgeRunner:"

    def __init__(self, bridge: TesyBridge) -> None:
        self.bridge = bridge
        self.stop_task: asyncio.Task[None] | None = None

    def signal_handler(self, signum: int) -> None:
        logger.info("%s Caught signal %s, shutting down...", self.lp, signal.Signals(signum).name)
        if self.stop_task is None:
            self.stop_task = asyncio.get_running_loop().create_task(self.bridge.stop())

    async def run(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, partial(self.signal_handler, sig))
        logger.debug("%s Signal handlers configured for SIGINT & SIGTERM", self.lp)
        try:
            await self.bridge.start()
        finally:
            await self.bridge.stop()


def main(argv: list[str] | None = None) -> int:
    """Main entry point for the Tesy bridge."""
    args = parse_cli(argv)
    try:
        _ = configure_logging()
    except ConfigError as e:
        _ = configure_logging("human", "stdout")
        logger.error("Configuration error: %s", e)
        return 1

    with correlation_context():
        logger.info("Starting Tesy bridge", extra={"version": TESY_VERSION})

        if args.env:
            _ = load_env_file(args.env)

        if args.debug or TESY_DEBUG or os.environ.get("TESY_DEBUG", "0").casefold() in YES_ANSWER:
            set_package_level(logging.DEBUG)
            logger.info("Debug logging enabled")

        try:
            config = load_config(args.config)
        except ConfigError as e:
            logger.error("Configuration error: %s", e)
            return 1

        runner = BridgeRunner(TesyBridge(config))
        try:
            with asyncio.Runner(loop_factory=uvloop.new_event_loop) as async_runner:
                async_runner.run(runner.run())
        except KeyboardInterrupt:
            logger.info("Keyboard interrupt received, shutting down...")
        except Exception as e:
            logger.exception("Fatal error in main loop", extra={"error": str(e)})
            return 1
        else:
            logger.info("Tesy bridge stopped gracefully")
        return 0


if __name__ == "__main__":
    sys.exit(main())
