import asyncio
import itertools

import pytest
from aiogram import Bot, types

from confession_bot.config import Settings
from confession_bot.handlers import create_dispatcher
from confession_bot.storage import MemoryStore
from confession_bot.transport import Transport
from confession_bot.workflow import ConfessionBot

ADMIN_ID = 1000
AUTHOR_ID = 2001
COMMENTER_ID = 2002
CHANNEL_ID = "@test_confessions"
BOT_USERNAME = "test_confess_bot"


class FakeClock:
    def __init__(self, start_ms: int = 1_700_000_000_000):
        self.now = start_ms

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


class RecordingTransport(Transport):
    """Keeps every outbound call so tests can assert on what users saw."""

    def __init__(self):
        self.sent = []
        self.answers = []
        self.edits = []
        self.failing_chats = set()
        self.yield_on_send = False
        self._message_ids = itertools.count(500)

    async def send_message(self, chat_id, text, reply_markup=None):
        if self.yield_on_send:
            await asyncio.sleep(0)
        if chat_id in self.failing_chats:
            raise RuntimeError("Forbidden: bot was blocked by the user")
        self.sent.append((chat_id, text, reply_markup))
        return next(self._message_ids)

    async def answer_callback(self, callback_id, text=None, show_alert=False):
        self.answers.append((callback_id, text, show_alert))

    async def edit_message_buttons(self, chat_id, message_id, reply_markup=None):
        self.edits.append((chat_id, message_id, reply_markup))

    def texts_for(self, chat_id):
        return [text for sent_chat, text, _ in self.sent if sent_chat == chat_id]

    def last_for(self, chat_id):
        texts = self.texts_for(chat_id)
        return texts[-1] if texts else None


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def transport():
    return RecordingTransport()


@pytest.fixture
def settings():
    return Settings(
        bot_token="123456:TEST-TOKEN",
        admin_ids=frozenset({ADMIN_ID}),
        channel_id=CHANNEL_ID,
        bot_username=BOT_USERNAME,
    )


@pytest.fixture
def relay(settings, store, transport, clock):
    return ConfessionBot(settings, store, transport, clock=clock)


@pytest.fixture
def publish(relay, clock):
    """Submit and approve a confession, returning it."""

    async def _publish(user_id=AUTHOR_ID, text="I secretly love pineapple pizza #food"):
        clock.advance(60_001)
        confession = await relay.moderation.submit(user_id, text)
        clock.advance(1)
        await relay.moderation.approve(ADMIN_ID, confession.id)
        return await relay.moderation.get(confession.id)

    return _publish


class ChatDriver:
    """Feeds private-chat updates through the real dispatcher."""

    def __init__(self, dispatcher, bot):
        self.dispatcher = dispatcher
        self.bot = bot
        self._update_ids = itertools.count(1)

    async def feed(self, data):
        data["update_id"] = next(self._update_ids)
        update = types.Update.model_validate(data, context={"bot": self.bot})
        await self.dispatcher.feed_update(self.bot, update)

    async def say(self, user_id, text):
        await self.feed({
            "message": {
                "message_id": 10,
                "date": 1700000000,
                "chat": {"id": user_id, "type": "private", "first_name": "Test"},
                "from": {"id": user_id, "is_bot": False, "first_name": "Test"},
                "text": text,
            },
        })

    async def press(self, user_id, data, callback_id="cb", message_id=77):
        await self.feed({
            "callback_query": {
                "id": callback_id,
                "from": {"id": user_id, "is_bot": False, "first_name": "Test"},
                "chat_instance": "1",
                "data": data,
                "message": {
                    "message_id": message_id,
                    "date": 1700000000,
                    "chat": {"id": user_id, "type": "private", "first_name": "Test"},
                    "text": "menu",
                },
            },
        })


@pytest.fixture
def bot():
    return Bot("123456:TEST-TOKEN")


@pytest.fixture
def chat(relay, bot):
    return ChatDriver(create_dispatcher(relay), bot)
