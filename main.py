import asyncio
import logging
import os
import sys
from dataclasses import replace

from aiogram import Bot
from aiogram.client.default import DefaultBotProperties
from aiogram.enums import ParseMode
from aiohttp import web
from dotenv import load_dotenv

from confession_bot.config import ConfigError, Settings, setup_logging
from confession_bot.handlers import create_dispatcher, set_bot_commands
from confession_bot.storage import DocumentStore, MemoryStore, PostgresStore
from confession_bot.transport import TelegramTransport
from confession_bot.webhook import create_app
from confession_bot.workflow import ConfessionBot

logger = logging.getLogger(__name__)


async def open_store(settings: Settings) -> DocumentStore:
    if not settings.database_url:
        logger.warning("DATABASE_URL not set, using in-memory storage (data is lost on restart)")
        return MemoryStore()
    try:
        store = await PostgresStore.connect(settings.database_url)
        logger.info("✅ Database setup complete")
        return store
    except Exception as e:
        logger.critical(f"Database setup failed: {e}")
        raise


async def start_http_server(app: web.Application, port: int) -> web.AppRunner:
    runner = web.AppRunner(app)
    await runner.setup()
    site = web.TCPSite(runner, '0.0.0.0', port)
    await site.start()
    logger.info(f"✅ HTTP server started on port {port}")
    return runner


async def main():
    load_dotenv()
    setup_logging(os.getenv("LOG_LEVEL", "INFO").upper())
    try:
        settings = Settings.from_env(os.environ)
    except ConfigError as e:
        logger.critical(str(e))
        sys.exit(1)

    bot = Bot(
        token=settings.bot_token,
        default=DefaultBotProperties(parse_mode=ParseMode.HTML)
    )
    bot_info = await bot.get_me()
    logger.info(f"Bot: @{bot_info.username}")
    if not settings.bot_username:
        settings = replace(settings, bot_username=bot_info.username)

    store = await open_store(settings)
    relay = ConfessionBot(settings, store, TelegramTransport(bot))
    dp = create_dispatcher(relay)

    try:
        await set_bot_commands(bot, settings)
    except Exception as e:
        logger.warning(f"Could not set bot commands: {e}")

    app = create_app(dp, bot, settings.webhook_path)
    runner = await start_http_server(app, settings.port)

    try:
        if settings.webhook_url:
            await bot.set_webhook(settings.webhook_url, allowed_updates=dp.resolve_used_update_types())
            logger.info(f"🚀 Webhook set to {settings.webhook_url}")
            await asyncio.Event().wait()
        else:
            # Without a public URL fall back to long polling; the HTTP server still answers health probes
            await bot.delete_webhook(drop_pending_updates=True)
            logger.info(f"🚀 Starting polling for @{bot_info.username}...")
            await dp.start_polling(bot, allowed_updates=dp.resolve_used_update_types())
    finally:
        await shutdown(bot, store, runner)


async def shutdown(bot: Bot, store: DocumentStore, runner: web.AppRunner):
    """Clean shutdown"""
    logger.info("Shutting down...")
    await runner.cleanup()
    await bot.session.close()
    await store.close()
    logger.info("Bot stopped.")


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logger.info("Bot stopped by user")
