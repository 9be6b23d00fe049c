import argparse
import asyncio
import logging

from .bridge import SlackBridge
from .config import load_config
from .console import ConsoleHost
from .errors import TransportError
from .store import SlackStore

logger = logging.getLogger("slackpuppet")


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Slack ↔ Matrix puppet bridge")
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug logging")
    parser.add_argument("--env", type=str, default=".env",
                        help="Path to .env file (default: .env)")
    return parser.parse_args(argv)


def setup_logging(debug: bool, file_logging: bool):
    handlers = [logging.StreamHandler()]
    if file_logging:
        handlers.append(logging.FileHandler("bridge.log"))
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=handlers
    )
    if debug:
        logger.debug("Debug mode enabled")
        logging.getLogger("websockets.client").setLevel(logging.INFO)
        logging.getLogger("websockets.protocol").setLevel(logging.INFO)


async def main(args):
    config = load_config(args.env)
    setup_logging(args.debug, config.file_logging)
    logger.info(f"Using .env file: {args.env}")
    logger.info(f"File logging: {'enabled' if config.file_logging else 'disabled'}")

    store = SlackStore(config.db_path)
    store.init()
    host = ConsoleHost(domain=config.matrix_domain)
    bridge = SlackBridge(host, store=store, reconnect_delay=config.reconnect_delay)
    try:
        try:
            await bridge.new_puppet(config.puppet_id, {"token": config.token})
        except TransportError as e:
            # a reconnect is already scheduled
            logger.error(f"❌ Initial connection failed: {e}")
        await asyncio.Event().wait()
    finally:
        await bridge.close()
        store.close()


def run():
    try:
        asyncio.run(main(parse_args()))
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
    except Exception as e:
        logger.error(f"Fatal error: {e}")


if __name__ == "__main__":
    run()
