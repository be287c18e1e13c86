import logging
from typing import Optional

from .transport import Transport, is_unreachable_user
from .users import UserDirectory

logger = logging.getLogger(__name__)


class Notifier:
    """Best-effort delivery of lifecycle events, honouring per-user opt-outs."""

    def __init__(self, transport: Transport, users: UserDirectory):
        self.transport = transport
        self.users = users

    async def notify(self, user_id: int, message: str, category: Optional[str] = None) -> bool:
        """Deliver ``message`` unless the user switched ``category`` off.

        Returns True when the message went out. Never raises.
        """
        try:
            if category is not None:
                user = await self.users.get(user_id)
                notifications = (user or {}).get("notifications") or {}
                if notifications.get(category) is False:
                    logger.debug(f"User {user_id} opted out of '{category}' notifications")
                    return False
            await self.transport.send_message(user_id, message)
            return True
        except Exception as e:
            if is_unreachable_user(e):
                logger.warning(f"Could not notify user {user_id}: Blocked/deactivated. {e}")
            else:
                logger.error(f"Notification to user {user_id} failed: {e}", exc_info=True)
            return False

    async def toggle(self, user_id: int, category: str) -> bool:
        return await self.users.toggle_notification(user_id, category)
