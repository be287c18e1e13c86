import logging
from datetime import datetime, timezone
from typing import Optional

from aiogram import html

from .config import Settings
from .errors import AlreadyModeratedError, NotFoundError, PermissionDenied, ValidationError
from .keyboards import admin_review_keyboard, channel_post_keyboard
from .models import STATUS_APPROVED, STATUS_PENDING, STATUS_REJECTED, CommentThread, Confession
from .notifications import Notifier
from .ratelimit import CONFESSION_ACTION, Clock, RateLimiter, now_ms
from .reputation import POINTS_PER_APPROVED_CONFESSION
from .sanitize import extract_hashtags, preview, sanitize_input
from .sequence import CONFESSION_NUMBER, SequenceGenerator
from .states import AwaitingRejectionReason, StateStore
from .storage import DocumentStore
from .transport import Transport
from .users import NOTIFY_CONFESSION_STATUS, UserDirectory

logger = logging.getLogger(__name__)

CONFESSIONS = "confessions"
COMMENTS = "comments"

CONFESSION_MIN_LENGTH = 5
CONFESSION_MAX_LENGTH = 1000
ADMIN_PREVIEW_LENGTH = 200
# A publish claim older than this is treated as abandoned by a crashed worker
PUBLISH_CLAIM_TIMEOUT_MS = 60000


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def publish_claim_active(doc: dict, now: int) -> bool:
    claimed_at = doc.get("publishing_since")
    return claimed_at is not None and now - claimed_at < PUBLISH_CLAIM_TIMEOUT_MS


class ModerationPipeline:
    """Confession lifecycle: pending -> approved | rejected, and channel publication."""

    def __init__(self, store: DocumentStore, settings: Settings, transport: Transport,
                 users: UserDirectory, notifier: Notifier, states: StateStore,
                 sequence: SequenceGenerator, rate_limiter: RateLimiter, clock: Clock = now_ms):
        self.store = store
        self.settings = settings
        self.transport = transport
        self.users = users
        self.notifier = notifier
        self.states = states
        self.sequence = sequence
        self.rate_limiter = rate_limiter
        self.clock = clock

    async def get(self, confession_id: str) -> Confession:
        doc = await self.store.get(CONFESSIONS, confession_id)
        if doc is None:
            raise NotFoundError(f"Confession {confession_id} not found")
        return Confession.from_doc(doc)

    def _require_admin(self, user_id: int, action: str) -> None:
        if not self.settings.is_admin(user_id):
            logger.warning(f"Unauthorized attempt by user {user_id} to {action}")
            raise PermissionDenied(user_id, action)

    async def submit(self, user_id: int, raw_text: str) -> Confession:
        if not raw_text or len(raw_text.strip()) < CONFESSION_MIN_LENGTH:
            raise ValidationError(f"Confession too short. Minimum {CONFESSION_MIN_LENGTH} characters.")
        if len(raw_text) > CONFESSION_MAX_LENGTH:
            raise ValidationError(f"Confession too long. Maximum {CONFESSION_MAX_LENGTH} characters.")

        await self.rate_limiter.check(user_id, CONFESSION_ACTION, self.settings.confession_cooldown_ms)

        text = sanitize_input(raw_text)
        if len(text) < CONFESSION_MIN_LENGTH:
            raise ValidationError(f"Confession too short after removing markup. Minimum {CONFESSION_MIN_LENGTH} characters.")

        # The number is taken before the write; a failed write leaves a gap
        number = await self.sequence.next(CONFESSION_NUMBER)
        confession = Confession(
            id=f"confess_{user_id}_{self.clock()}",
            user_id=user_id,
            text=text,
            confession_number=number,
            created_at=utc_now_iso(),
            hashtags=extract_hashtags(text),
        )
        await self.store.set(CONFESSIONS, confession.id, confession.to_doc())

        await self.users.increment(user_id, "total_confessions")
        await self.rate_limiter.record(user_id, CONFESSION_ACTION)
        await self.notify_admins(confession)

        logger.info(f"Confession #{number} ({confession.id}) submitted by User ID {user_id}")
        return confession

    async def notify_admins(self, confession: Confession) -> int:
        """Send the review card to every admin; returns how many received it."""
        if not self.settings.admin_ids:
            logger.warning("❌ No admin IDs configured, confession cannot be reviewed")
            return 0

        message = (
            f"🤫 <b>New Confession #{confession.confession_number}</b>\n\n"
            f"{html.quote(preview(confession.text, ADMIN_PREVIEW_LENGTH))}\n\n"
            f"<b>Actions:</b>"
        )
        keyboard = admin_review_keyboard(confession.id)

        logger.info(f"📤 Notifying {len(self.settings.admin_ids)} admins about confession {confession.id}")
        delivered = 0
        for admin_id in sorted(self.settings.admin_ids):
            try:
                await self.transport.send_message(admin_id, message, reply_markup=keyboard)
                delivered += 1
            except Exception as e:
                logger.warning(f"Could not send confession to admin {admin_id}: {e}")
        return delivered

    async def approve(self, admin_id: int, confession_id: str) -> Confession:
        """Approve a confession and publish it.

        The status change and the publication claim are taken in one store
        transaction, so concurrent approvals post to the channel once. A
        confession that was approved but never published (the post failed, or
        a claim expired) is claimed again and republished without a second
        reputation credit.
        """
        self._require_admin(admin_id, f"approve {confession_id}")

        approved_at = utc_now_iso()
        now = self.clock()
        transitioned = False
        claimed = False

        def _approve(current):
            nonlocal transitioned, claimed
            if current is None:
                return None
            status = current.get("status")
            if status == STATUS_PENDING:
                transitioned = True
                current["status"] = STATUS_APPROVED
                current["approved_at"] = approved_at
            elif status != STATUS_APPROVED:
                return None
            elif current.get("published_at") or publish_claim_active(current, now):
                return None
            claimed = True
            current["publishing_since"] = now
            return current

        doc = await self.store.transaction(CONFESSIONS, confession_id, _approve)
        if doc is None:
            raise NotFoundError(f"Confession {confession_id} not found")
        confession = Confession.from_doc(doc)
        if not claimed:
            raise AlreadyModeratedError(confession_id, confession.status)

        if transitioned:
            await self.users.add_reputation(confession.user_id, POINTS_PER_APPROVED_CONFESSION)
            logger.info(f"Confession #{confession.confession_number} approved by admin {admin_id}")
        else:
            logger.warning(f"Confession {confession_id} approved earlier but never published, publishing now")

        try:
            await self.publish(confession_id)
        except Exception:
            await self._release_publish_claim(confession_id)
            raise

        await self.notifier.notify(
            confession.user_id,
            f"✅ Your confession #{confession.confession_number} has been approved and posted!",
            NOTIFY_CONFESSION_STATUS
        )
        return confession

    async def _release_publish_claim(self, confession_id: str) -> None:
        try:
            await self.store.update(CONFESSIONS, confession_id, {"publishing_since": None})
        except Exception as e:
            logger.error(f"Could not release publish claim of {confession_id}: {e}", exc_info=True)

    async def begin_reject(self, admin_id: int, confession_id: str) -> Confession:
        """First step of a rejection: wait for the admin to type a reason."""
        self._require_admin(admin_id, f"reject {confession_id}")
        confession = await self.get(confession_id)
        if confession.status != STATUS_PENDING:
            raise AlreadyModeratedError(confession_id, confession.status)
        await self.states.set(admin_id, AwaitingRejectionReason(confession_id))
        return confession

    async def reject(self, admin_id: int, confession_id: str, reason: str) -> Optional[Confession]:
        """Second step of a rejection. Returns None when the caller is not an admin."""
        if not self.settings.is_admin(admin_id):
            logger.warning(f"Dropping rejection of {confession_id} from non-admin {admin_id}")
            return None

        reason = reason.strip()
        rejected_at = utc_now_iso()
        transitioned = False

        def _reject(current):
            nonlocal transitioned
            if current is None or current.get("status") != STATUS_PENDING:
                return None
            transitioned = True
            current["status"] = STATUS_REJECTED
            current["rejected_at"] = rejected_at
            current["rejection_reason"] = reason
            return current

        doc = await self.store.transaction(CONFESSIONS, confession_id, _reject)
        if doc is None:
            raise NotFoundError(f"Confession {confession_id} not found")
        confession = Confession.from_doc(doc)
        if not transitioned:
            raise AlreadyModeratedError(confession_id, confession.status)

        logger.info(f"Confession #{confession.confession_number} rejected by admin {admin_id}: {reason}")
        await self.notifier.notify(
            confession.user_id,
            f"❌ Your confession #{confession.confession_number} was rejected. Reason: {html.quote(reason)}",
            NOTIFY_CONFESSION_STATUS
        )
        return confession

    async def publish(self, confession_id: str) -> CommentThread:
        """Post an approved confession to the channel and open its comment thread.

        A confession whose thread already exists is not posted again, and an
        existing thread is never overwritten.
        """
        confession = await self.get(confession_id)
        if confession.status != STATUS_APPROVED:
            raise ValidationError(f"Confession #{confession.confession_number} is not approved")

        existing = await self.store.get(COMMENTS, confession_id)
        if existing is not None:
            logger.info(f"Confession #{confession.confession_number} already has a thread, not posting again")
            thread = CommentThread.from_doc(existing)
        else:
            thread = await self._post_to_channel(confession)

        await self.store.update(CONFESSIONS, confession_id, {
            "published_at": utc_now_iso(),
            "publishing_since": None,
        })
        return thread

    async def _post_to_channel(self, confession: Confession) -> CommentThread:
        if not self.settings.channel_id:
            raise RuntimeError("CHANNEL_ID not configured")

        message = (
            f"#{confession.confession_number}\n\n"
            f"{html.quote(confession.text)}\n\n"
            f"💬 Comment on this confession:"
        )
        message_id = await self.transport.send_message(
            self.settings.channel_id, message,
            reply_markup=channel_post_keyboard(self.settings.bot_username, confession.id)
        )

        thread = CommentThread(
            confession_id=confession.id,
            confession_number=confession.confession_number,
            confession_text=confession.text,
            channel_message_id=message_id,
        )
        doc = await self.store.transaction(
            COMMENTS, confession.id,
            lambda current: thread.to_doc() if current is None else None
        )
        logger.info(f"✅ Confession #{confession.confession_number} posted to channel")
        return CommentThread.from_doc(doc)
