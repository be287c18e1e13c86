import logging
import os
import sys
from dataclasses import dataclass, field
from typing import FrozenSet, Mapping, Optional

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

DEFAULT_PORT = 8080
DEFAULT_WEBHOOK_PATH = "/api/bot"
DEFAULT_COOLDOWN_MS = 60000
DEFAULT_PAGE_SIZE = 5


class ConfigError(Exception):
    """Raised when a required environment variable is missing or malformed."""


def parse_admin_ids(raw: Optional[str]) -> FrozenSet[int]:
    """Parse a comma-separated admin id list, skipping invalid entries."""
    admin_ids = set()
    if not raw:
        return frozenset()
    for admin_id_str in raw.split(','):
        admin_id_str = admin_id_str.strip()
        if not admin_id_str:
            continue
        try:
            admin_ids.add(int(admin_id_str))
        except ValueError:
            logger.error(f"Invalid admin ID in ADMIN_IDS: {admin_id_str}")
    return frozenset(admin_ids)


def _int_env(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigError(f"{name} must be an integer, got {raw!r}")


@dataclass(frozen=True)
class Settings:
    """Process configuration, resolved once at startup and passed around explicitly."""

    bot_token: str
    admin_ids: FrozenSet[int] = field(default_factory=frozenset)
    channel_id: Optional[str] = None
    bot_username: str = ""
    database_url: Optional[str] = None
    port: int = DEFAULT_PORT
    webhook_url: Optional[str] = None
    webhook_path: str = DEFAULT_WEBHOOK_PATH
    log_level: str = "INFO"
    confession_cooldown_ms: int = DEFAULT_COOLDOWN_MS
    comments_page_size: int = DEFAULT_PAGE_SIZE

    def is_admin(self, user_id: int) -> bool:
        return user_id in self.admin_ids

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "Settings":
        if env is None:
            load_dotenv()
            env = os.environ

        bot_token = env.get("BOT_TOKEN")
        if not bot_token:
            raise ConfigError("BOT_TOKEN environment variable is required.")

        admin_ids = parse_admin_ids(env.get("ADMIN_IDS"))
        if not admin_ids:
            logger.warning("No admin IDs configured. Add ADMIN_IDS to .env file")

        channel_id = env.get("CHANNEL_ID") or None
        if not channel_id:
            logger.warning("CHANNEL_ID is not set, approved confessions cannot be published")

        return cls(
            bot_token=bot_token,
            admin_ids=admin_ids,
            channel_id=channel_id,
            bot_username=(env.get("BOT_USERNAME") or "").lstrip("@"),
            database_url=env.get("DATABASE_URL") or None,
            port=_int_env(env, "PORT", DEFAULT_PORT),
            webhook_url=env.get("WEBHOOK_URL") or None,
            webhook_path=env.get("WEBHOOK_PATH") or DEFAULT_WEBHOOK_PATH,
            log_level=(env.get("LOG_LEVEL") or "INFO").upper(),
            confession_cooldown_ms=_int_env(env, "CONFESSION_COOLDOWN_MS", DEFAULT_COOLDOWN_MS),
            comments_page_size=_int_env(env, "COMMENTS_PAGE_SIZE", DEFAULT_PAGE_SIZE),
        )


def setup_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[
            logging.StreamHandler(sys.stdout)
        ]
    )
