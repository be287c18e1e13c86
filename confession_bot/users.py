import logging
import re
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from .errors import BlockedUserError, ValidationError
from .reputation import Level, level_for
from .storage import DocumentStore, Increment

logger = logging.getLogger(__name__)

USERS = "users"
DEFAULT_USERNAME = "Anonymous"
USERNAME_MIN_LENGTH = 3
USERNAME_MAX_LENGTH = 20
USERNAME_PATTERN = re.compile(r"^[A-Za-z0-9_]+$")

NOTIFY_NEW_COMMENT = "new_comment"
NOTIFY_CONFESSION_STATUS = "confession_status"
NOTIFICATION_CATEGORIES = {
    NOTIFY_NEW_COMMENT: "New comments on my confessions",
    NOTIFY_CONFESSION_STATUS: "Approval / rejection of my confessions",
}


def new_user(user_id: int, first_name: Optional[str] = None, last_name: Optional[str] = None) -> Dict[str, Any]:
    return {
        "telegram_id": user_id,
        "username": DEFAULT_USERNAME,
        "username_lower": DEFAULT_USERNAME.lower(),
        "first_name": first_name,
        "last_name": last_name,
        "joined_at": datetime.now(timezone.utc).isoformat(),
        "reputation": 0,
        "total_confessions": 0,
        "total_comments": 0,
        "is_active": True,
        "block_reason": None,
        "notifications": {category: True for category in NOTIFICATION_CATEGORIES},
        "comment_settings": {
            "allow_comments": "everyone",
            "allow_anonymous": True,
            "require_approval": False,
        },
    }


def has_display_name(user: Dict[str, Any]) -> bool:
    return bool(user.get("username")) and user["username"] != DEFAULT_USERNAME


def validate_username_format(name: str) -> str:
    name = name.strip()
    if len(name) < USERNAME_MIN_LENGTH or len(name) > USERNAME_MAX_LENGTH:
        raise ValidationError(
            f"Display name must be {USERNAME_MIN_LENGTH}-{USERNAME_MAX_LENGTH} characters long."
        )
    if not USERNAME_PATTERN.match(name):
        raise ValidationError("Display name may contain only letters, numbers and underscores.")
    return name


class UserDirectory:
    """User documents: creation on first contact, display names, counters and blocking."""

    def __init__(self, store: DocumentStore):
        self.store = store

    async def get(self, user_id: int) -> Optional[Dict[str, Any]]:
        return await self.store.get(USERS, str(user_id))

    async def get_or_create(self, user_id: int, first_name: Optional[str] = None,
                            last_name: Optional[str] = None) -> Dict[str, Any]:
        user = await self.get(user_id)
        if user is None:
            user = new_user(user_id, first_name, last_name)
            await self.store.set(USERS, str(user_id), user)
            logger.info(f"Created user record for {user_id}")
            return user

        repairs = {}
        if user.get("is_active") is None:
            repairs["is_active"] = True
        if not user.get("username"):
            repairs["username"] = DEFAULT_USERNAME
            repairs["username_lower"] = DEFAULT_USERNAME.lower()
        if repairs:
            await self.store.update(USERS, str(user_id), repairs)
            user.update(repairs)
        return user

    async def ensure_active(self, user_id: int, first_name: Optional[str] = None,
                            last_name: Optional[str] = None) -> Dict[str, Any]:
        user = await self.get_or_create(user_id, first_name, last_name)
        if user.get("is_active") is False:
            raise BlockedUserError(user.get("block_reason") or "")
        return user

    async def display_name(self, user_id: int) -> str:
        user = await self.get(user_id)
        if user and user.get("username"):
            return user["username"]
        return DEFAULT_USERNAME

    async def level(self, user_id: int) -> Level:
        user = await self.get(user_id)
        return level_for(user.get("total_comments", 0) if user else 0)

    async def set_username(self, user_id: int, name: str) -> str:
        """Validate and store a display name; uniqueness is case-insensitive."""
        name = validate_username_format(name)
        lowered = name.lower()
        if lowered != DEFAULT_USERNAME.lower():
            taken = await self.store.find(USERS, "username_lower", lowered, limit=1)
            if taken and taken[0].get("telegram_id") != user_id:
                raise ValidationError("Username already taken. Choose another one.")

        await self.get_or_create(user_id)
        await self.store.update(USERS, str(user_id), {"username": name, "username_lower": lowered})
        logger.info(f"User {user_id} set display name to {name}")
        return name

    async def add_reputation(self, user_id: int, points: int) -> None:
        if points == 0:
            return
        await self.get_or_create(user_id)
        await self.store.update(USERS, str(user_id), {"reputation": Increment(points)})
        logger.debug(f"Updated reputation for user {user_id} by {points}")

    async def increment(self, user_id: int, field: str, amount: int = 1) -> None:
        await self.get_or_create(user_id)
        await self.store.update(USERS, str(user_id), {field: Increment(amount)})

    async def set_active(self, user_id: int, active: bool, reason: Optional[str] = None) -> None:
        await self.get_or_create(user_id)
        await self.store.update(USERS, str(user_id), {
            "is_active": active,
            "block_reason": None if active else reason,
        })
        logger.info(f"User {user_id} {'unblocked' if active else 'blocked'}")

    async def toggle_notification(self, user_id: int, category: str) -> bool:
        if category not in NOTIFICATION_CATEGORIES:
            raise ValidationError(f"Unknown notification setting: {category}")
        user = await self.get_or_create(user_id)
        notifications = dict(user.get("notifications") or {})
        enabled = not notifications.get(category, True)
        notifications[category] = enabled
        await self.store.update(USERS, str(user_id), {"notifications": notifications})
        return enabled
