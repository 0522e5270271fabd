import asyncio
import logging

import uvicorn

from feedrank.config import settings
from feedrank.service import FeedRankCore
from feedrank.storage.database import init_db
from feedrank.utils.logging import setup_logging
from feedrank.web.app import create_app

logger = logging.getLogger(__name__)


async def main() -> None:
    setup_logging()
    logger.info("Starting FeedRank")

    await init_db()
    logger.info("Database initialized")

    if not settings.vk_access_token:
        logger.warning("VK_ACCESS_TOKEN is not set, sweeps will fail until it is configured")
    if not settings.telegram_bot_token:
        logger.error("TELEGRAM_BOT_TOKEN is not set, exiting")
        return

    core = FeedRankCore.from_settings()
    await core.start()

    try:
        if settings.web_enabled:
            config = uvicorn.Config(
                create_app(core),
                host=settings.web_host,
                port=settings.web_port,
                log_level=settings.log_level.lower(),
            )
            server = uvicorn.Server(config)
            logger.info("Control API on %s:%d", settings.web_host, settings.web_port)
            await server.serve()
        else:
            # scheduler tasks run until the process is stopped
            await asyncio.Event().wait()
    finally:
        await core.shutdown()


def run() -> None:
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    run()
