class ConfessionBotError(Exception):
    """Base class for failures that are reported back to the user."""


class ValidationError(ConfessionBotError):
    """Bad length or format of user input."""


class AlreadyModeratedError(ValidationError):
    """A moderation decision was requested for a confession that already has one."""

    def __init__(self, confession_id: str, status: str):
        super().__init__(f"Confession {confession_id} is already {status}")
        self.confession_id = confession_id
        self.status = status


class PermissionDenied(ConfessionBotError):
    """A non-admin attempted an admin-only action."""

    def __init__(self, user_id: int, action: str):
        super().__init__(f"User {user_id} is not allowed to {action}")
        self.user_id = user_id
        self.action = action


class NotFoundError(ConfessionBotError):
    """A referenced confession or comment thread does not exist."""


class RateLimitError(ConfessionBotError):
    """The cooldown for an action has not elapsed yet."""

    def __init__(self, retry_after_ms: int):
        super().__init__(f"Try again in {retry_after_ms} ms")
        self.retry_after_ms = retry_after_ms

    @property
    def retry_after_seconds(self) -> int:
        return max(1, -(-self.retry_after_ms // 1000))


class BlockedUserError(ConfessionBotError):
    """The user has been blocked by an admin."""
