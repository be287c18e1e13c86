import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List

from aiogram import html

from .errors import NotFoundError, ValidationError
from .models import Comment, CommentThread
from .moderation import COMMENTS, CONFESSIONS
from .notifications import Notifier
from .ratelimit import Clock, now_ms
from .reputation import POINTS_PER_COMMENT, Level, level_for
from .sanitize import preview, sanitize_input
from .storage import DocumentMissing, DocumentStore, Increment
from .users import DEFAULT_USERNAME, NOTIFY_NEW_COMMENT, UserDirectory

logger = logging.getLogger(__name__)

COMMENT_MIN_LENGTH = 3
COMMENTS_PER_PAGE = 5
NOTIFICATION_PREVIEW_LENGTH = 50


@dataclass
class CommentEntry:
    number: int
    comment: Comment
    display_name: str
    level: Level


@dataclass
class CommentPage:
    confession_id: str
    confession_number: int
    confession_text: str
    page: int
    page_size: int
    total_comments: int
    total_pages: int
    entries: List[CommentEntry] = field(default_factory=list)

    @property
    def first_number(self) -> int:
        return (self.page - 1) * self.page_size + 1


class CommentThreads:
    """Comment threads of published confessions."""

    def __init__(self, store: DocumentStore, users: UserDirectory, notifier: Notifier,
                 clock: Clock = now_ms):
        self.store = store
        self.users = users
        self.notifier = notifier
        self.clock = clock

    async def get_thread(self, confession_id: str) -> CommentThread:
        doc = await self.store.get(COMMENTS, confession_id)
        if doc is None:
            raise NotFoundError(f"No comment thread for confession {confession_id}")
        return CommentThread.from_doc(doc)

    async def append(self, confession_id: str, user_id: int, raw_text: str) -> CommentThread:
        if not raw_text or len(raw_text.strip()) < COMMENT_MIN_LENGTH:
            raise ValidationError(f"Comment too short. Minimum {COMMENT_MIN_LENGTH} characters.")

        text = sanitize_input(raw_text)
        if len(text) < COMMENT_MIN_LENGTH:
            raise ValidationError(f"Comment too short after removing markup. Minimum {COMMENT_MIN_LENGTH} characters.")

        now = datetime.now(timezone.utc)
        comment = Comment(
            id=f"comment_{self.clock()}_{user_id}",
            user_id=user_id,
            text=text,
            user_name=await self.users.display_name(user_id),
            timestamp=now.strftime("%d/%m/%Y, %H:%M:%S"),
            created_at=now.isoformat(),
        )

        def _append(current):
            if current is None:
                return None
            current["comments"] = (current.get("comments") or []) + [comment.to_doc()]
            current["total_comments"] = (current.get("total_comments") or 0) + 1
            return current

        doc = await self.store.transaction(COMMENTS, confession_id, _append)
        if doc is None:
            raise NotFoundError(f"No comment thread for confession {confession_id}")
        thread = CommentThread.from_doc(doc)

        try:
            await self.store.update(CONFESSIONS, confession_id, {"total_comments": Increment(1)})
        except DocumentMissing:
            logger.warning(f"Thread {confession_id} has no confession document, comment count not cached")

        await self.users.increment(user_id, "total_comments")
        await self.users.add_reputation(user_id, POINTS_PER_COMMENT)
        logger.info(f"Comment {comment.id} added to confession #{thread.confession_number} by user {user_id}")

        confession = await self.store.get(CONFESSIONS, confession_id)
        if confession and confession["user_id"] != user_id:
            await self.notifier.notify(
                confession["user_id"],
                f"💬 <b>New Comment on Your Confession</b>\n\n"
                f"Confession #{thread.confession_number} has a new comment!\n\n"
                f"\"{html.quote(preview(text, NOTIFICATION_PREVIEW_LENGTH))}\"",
                NOTIFY_NEW_COMMENT
            )
        return thread

    async def page(self, confession_id: str, page: int = 1, page_size: int = COMMENTS_PER_PAGE) -> CommentPage:
        """One page of a thread, with each commenter's current name and level."""
        thread = await self.get_thread(confession_id)
        total = len(thread.comments)
        total_pages = math.ceil(total / page_size) if page_size > 0 else 0

        start = (page - 1) * page_size
        selected = thread.comments[start:start + page_size] if page >= 1 else []

        entries = []
        for offset, comment in enumerate(selected):
            commenter = await self.users.get(comment.user_id)
            if commenter:
                display_name = commenter.get("username") or DEFAULT_USERNAME
                level = level_for(commenter.get("total_comments", 0))
            else:
                display_name = comment.user_name or DEFAULT_USERNAME
                level = level_for(0)
            entries.append(CommentEntry(start + offset + 1, comment, display_name, level))

        return CommentPage(
            confession_id=thread.confession_id,
            confession_number=thread.confession_number,
            confession_text=thread.confession_text,
            page=page,
            page_size=page_size,
            total_comments=total,
            total_pages=total_pages,
            entries=entries,
        )
