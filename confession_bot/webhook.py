import logging
from datetime import datetime, timezone

from aiogram import Bot, Dispatcher, types
from aiohttp import web

logger = logging.getLogger(__name__)

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "POST, GET, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type",
}


class WebhookHandler:
    """Single endpoint: GET health probe, POST Telegram update, OPTIONS preflight."""

    def __init__(self, dispatcher: Dispatcher, bot: Bot):
        self.dispatcher = dispatcher
        self.bot = bot

    async def handle(self, request: web.Request) -> web.Response:
        if request.method == "OPTIONS":
            return web.Response(status=200, headers=CORS_HEADERS)
        if request.method == "GET":
            return await self.health(request)
        if request.method == "POST":
            return await self.process_update(request)
        return web.json_response({"error": "Method not allowed"}, status=405)

    async def health(self, request: web.Request) -> web.Response:
        return web.json_response({
            "status": "online",
            "message": "Confession bot is running!",
            "timestamp": datetime.now(timezone.utc).isoformat()
        })

    async def process_update(self, request: web.Request) -> web.Response:
        # Always 200: Telegram would redeliver a failed update and the handlers are not idempotent
        try:
            data = await request.json()
            update = types.Update.model_validate(data, context={"bot": self.bot})
            logger.info(f"📥 Update received: {update.update_id}")
            await self.dispatcher.feed_update(self.bot, update)
            return web.json_response({"ok": True})
        except Exception as e:
            logger.error(f"❌ Error processing update: {e}", exc_info=True)
            return web.json_response({"error": "Internal server error", "acknowledged": True})


def create_app(dispatcher: Dispatcher, bot: Bot, webhook_path: str = "/api/bot") -> web.Application:
    handler = WebhookHandler(dispatcher, bot)
    app = web.Application()
    app.router.add_route("*", webhook_path, handler.handle)
    for path in ("/", "/health"):
        if path != webhook_path:
            app.router.add_get(path, handler.health)
    return app
