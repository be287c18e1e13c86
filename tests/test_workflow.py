import logging

import pytest

from confession_bot.keyboards import BTN_PROFILE, BTN_SEND_CONFESSION
from confession_bot.models import STATUS_APPROVED, STATUS_PENDING, STATUS_REJECTED
from confession_bot.states import AwaitingComment, AwaitingConfession, AwaitingRejectionReason, AwaitingUsername

from .conftest import ADMIN_ID, AUTHOR_ID, COMMENTER_ID


class TestUsernameFlow:

    @pytest.mark.asyncio
    async def test_start_asks_for_display_name(self, chat, relay, transport):
        await chat.say(AUTHOR_ID, "/start")

        assert await relay.states.get(AUTHOR_ID) == AwaitingUsername()
        assert "set your display name" in transport.last_for(AUTHOR_ID)

    @pytest.mark.asyncio
    async def test_invalid_name_keeps_waiting(self, chat, relay, transport):
        await chat.say(AUTHOR_ID, "/start")

        await chat.say(AUTHOR_ID, "ab")
        assert await relay.states.get(AUTHOR_ID) == AwaitingUsername()
        assert transport.last_for(AUTHOR_ID).startswith("❌")

        await chat.say(AUTHOR_ID, "bad name!")
        assert await relay.states.get(AUTHOR_ID) == AwaitingUsername()

    @pytest.mark.asyncio
    async def test_valid_name_ends_flow(self, chat, relay, transport):
        await chat.say(AUTHOR_ID, "/start")
        await chat.say(AUTHOR_ID, "night_owl")

        assert await relay.states.get(AUTHOR_ID) is None
        assert (await relay.users.get(AUTHOR_ID))["username"] == "night_owl"
        texts = transport.texts_for(AUTHOR_ID)
        assert "Display name updated to <b>night_owl</b>" in texts[-2]
        assert "Choose an option below" in texts[-1]

    @pytest.mark.asyncio
    async def test_taken_name_rejected_case_insensitively(self, chat, relay, transport):
        await relay.users.set_username(COMMENTER_ID, "Night_Owl")
        await chat.say(AUTHOR_ID, "/start")

        await chat.say(AUTHOR_ID, "night_owl")

        assert "already taken" in transport.last_for(AUTHOR_ID)
        assert await relay.states.get(AUTHOR_ID) == AwaitingUsername()

    @pytest.mark.asyncio
    async def test_returning_user_gets_menu(self, chat, relay, transport):
        await relay.users.set_username(AUTHOR_ID, "night_owl")

        await chat.say(AUTHOR_ID, "/start")

        assert await relay.states.get(AUTHOR_ID) is None
        assert "Welcome back, night_owl" in transport.texts_for(AUTHOR_ID)[-2]

    @pytest.mark.asyncio
    async def test_change_username_button(self, chat, relay):
        await chat.press(AUTHOR_ID, "change_username")

        assert await relay.states.get(AUTHOR_ID) == AwaitingUsername()


class TestConfessionFlow:

    @pytest.mark.asyncio
    async def test_button_then_text_submits(self, chat, relay, transport, store):
        await chat.say(AUTHOR_ID, BTN_SEND_CONFESSION)
        assert await relay.states.get(AUTHOR_ID) == AwaitingConfession()

        await chat.say(AUTHOR_ID, "I never returned that library book")

        assert await relay.states.get(AUTHOR_ID) is None
        assert "Confession Submitted!" in transport.last_for(AUTHOR_ID)
        assert "New Confession #1" in transport.last_for(ADMIN_ID)
        assert len(await store.find("confessions", "user_id", AUTHOR_ID)) == 1

    @pytest.mark.asyncio
    async def test_invalid_confession_still_consumes_state(self, chat, relay, transport, store):
        await chat.say(AUTHOR_ID, BTN_SEND_CONFESSION)

        await chat.say(AUTHOR_ID, "hey")

        assert await relay.states.get(AUTHOR_ID) is None
        assert "too short" in transport.last_for(AUTHOR_ID)
        assert await store.find("confessions", "user_id", AUTHOR_ID) == []

    @pytest.mark.asyncio
    async def test_button_inside_cooldown(self, chat, relay, transport, clock):
        await chat.say(AUTHOR_ID, BTN_SEND_CONFESSION)
        await chat.say(AUTHOR_ID, "first confession ever")

        clock.advance(15_500)
        await chat.say(AUTHOR_ID, BTN_SEND_CONFESSION)

        assert transport.last_for(AUTHOR_ID).startswith("⏳ Please wait 45 seconds")
        assert await relay.states.get(AUTHOR_ID) is None

    @pytest.mark.asyncio
    async def test_menu_buttons(self, chat, relay, transport):
        await chat.say(AUTHOR_ID, BTN_PROFILE)
        assert "My Profile" in transport.last_for(AUTHOR_ID)

        await chat.say(AUTHOR_ID, "something random")
        assert "Choose an option below" in transport.last_for(AUTHOR_ID)


class TestBlockedUsers:

    @pytest.mark.asyncio
    async def test_blocked_user_text_is_refused(self, chat, relay, transport, store):
        await relay.users.set_active(AUTHOR_ID, False, "spam")
        await relay.states.set(AUTHOR_ID, AwaitingConfession())

        await chat.say(AUTHOR_ID, "let me confess please")

        notice = transport.last_for(AUTHOR_ID)
        assert "blocked by admin" in notice
        assert "spam" in notice
        assert await relay.states.get(AUTHOR_ID) == AwaitingConfession()
        assert await store.find("confessions", "user_id", AUTHOR_ID) == []

    @pytest.mark.asyncio
    async def test_blocked_user_callback_is_refused(self, chat, relay, transport):
        await relay.users.set_active(AUTHOR_ID, False)

        await chat.press(AUTHOR_ID, "send_confession", callback_id="cb-blocked")

        assert transport.answers[-1] == ("cb-blocked", "❌ Your account has been blocked by admin.", True)
        assert await relay.states.get(AUTHOR_ID) is None

    @pytest.mark.asyncio
    async def test_admin_block_and_unblock(self, chat, relay, transport):
        await chat.say(ADMIN_ID, f"/block {AUTHOR_ID} flooding")
        user = await relay.users.get(AUTHOR_ID)
        assert user["is_active"] is False
        assert user["block_reason"] == "flooding"

        await chat.say(ADMIN_ID, f"/unblock {AUTHOR_ID}")
        assert (await relay.users.get(AUTHOR_ID))["is_active"] is True

    @pytest.mark.asyncio
    async def test_block_requires_admin(self, chat, relay, transport):
        await chat.say(AUTHOR_ID, f"/block {COMMENTER_ID}")

        assert "Access denied" in transport.last_for(AUTHOR_ID)
        assert (await relay.users.get(COMMENTER_ID)) is None

    @pytest.mark.asyncio
    async def test_admins_cannot_be_blocked(self, chat, relay, transport):
        await chat.say(ADMIN_ID, f"/block {ADMIN_ID}")

        assert "cannot be blocked" in transport.last_for(ADMIN_ID)
        assert (await relay.users.get(ADMIN_ID))["is_active"] is True


class TestModerationCallbacks:

    @pytest.mark.asyncio
    async def test_approve_callback(self, chat, relay, transport):
        confession = await relay.moderation.submit(AUTHOR_ID, "approve me please")

        await chat.press(ADMIN_ID, f"approve_{confession.id}", callback_id="cb-1", message_id=42)

        assert transport.answers[-1] == ("cb-1", "✅ Confession #1 approved!", False)
        assert transport.edits[-1] == (ADMIN_ID, 42, None)
        assert (await relay.moderation.get(confession.id)).status == STATUS_APPROVED

        await chat.press(ADMIN_ID, f"approve_{confession.id}", callback_id="cb-2")
        assert transport.answers[-1] == ("cb-2", "Already approved.", True)

    @pytest.mark.asyncio
    async def test_approve_callback_from_non_admin(self, chat, relay, transport):
        confession = await relay.moderation.submit(AUTHOR_ID, "approve me please")

        await chat.press(AUTHOR_ID, f"approve_{confession.id}")

        assert transport.answers[-1][1] == "❌ Access denied"
        assert (await relay.moderation.get(confession.id)).status == STATUS_PENDING

    @pytest.mark.asyncio
    async def test_reject_callback_then_reason(self, chat, relay, transport):
        confession = await relay.moderation.submit(AUTHOR_ID, "reject me please")

        await chat.press(ADMIN_ID, f"reject_{confession.id}")
        assert await relay.states.get(ADMIN_ID) == AwaitingRejectionReason(confession.id)
        assert "provide rejection reason" in transport.last_for(ADMIN_ID)

        await chat.say(ADMIN_ID, "spam")

        assert await relay.states.get(ADMIN_ID) is None
        assert transport.last_for(ADMIN_ID) == "✅ Confession #1 rejected."
        assert "Reason: spam" in transport.last_for(AUTHOR_ID)
        stored = await relay.moderation.get(confession.id)
        assert stored.status == STATUS_REJECTED
        assert stored.rejection_reason == "spam"

    @pytest.mark.asyncio
    async def test_replayed_rejection_state_from_non_admin(self, chat, relay, transport):
        confession = await relay.moderation.submit(AUTHOR_ID, "reject me please")
        await relay.states.set(AUTHOR_ID, AwaitingRejectionReason(confession.id))
        before = len(transport.texts_for(AUTHOR_ID))

        await chat.say(AUTHOR_ID, "spam")

        assert await relay.states.get(AUTHOR_ID) is None
        assert len(transport.texts_for(AUTHOR_ID)) == before
        assert (await relay.moderation.get(confession.id)).status == STATUS_PENDING

    @pytest.mark.asyncio
    async def test_admin_panel(self, chat, relay, transport):
        await relay.moderation.submit(AUTHOR_ID, "waiting for review")

        await chat.say(ADMIN_ID, "/admin")

        panel = transport.last_for(ADMIN_ID)
        assert "Pending confessions: 1" in panel
        assert "Last confession number: 1" in panel


class TestCommentFlow:

    @pytest.mark.asyncio
    async def test_deep_link_shows_comment_entry(self, chat, relay, transport, publish):
        confession = await publish()

        await chat.say(COMMENTER_ID, f"/start comment_{confession.id}")

        entry = transport.last_for(COMMENTER_ID)
        assert "Comments for Confession #1" in entry
        assert "No comments yet" in entry

    @pytest.mark.asyncio
    async def test_deep_link_to_unknown_confession(self, chat, relay, transport):
        await chat.say(COMMENTER_ID, "/start comment_confess_1_1")

        assert "Confession not found" in transport.texts_for(COMMENTER_ID)[-2]

    @pytest.mark.asyncio
    async def test_add_comment_callback_then_text(self, chat, relay, transport, publish):
        confession = await publish()

        await chat.press(COMMENTER_ID, f"add_comment_{confession.id}")
        assert await relay.states.get(COMMENTER_ID) == AwaitingComment(confession.id)

        await chat.say(COMMENTER_ID, "same here honestly")

        assert await relay.states.get(COMMENTER_ID) is None
        texts = transport.texts_for(COMMENTER_ID)
        assert texts[-2] == "✅ Comment added successfully!"
        assert "Comments (1-1 of 1)" in texts[-1]
        assert "same here honestly" in texts[-1]

    @pytest.mark.asyncio
    async def test_add_comment_on_unpublished_confession(self, chat, relay, transport):
        confession = await relay.moderation.submit(AUTHOR_ID, "not yet published")

        await chat.press(COMMENTER_ID, f"add_comment_{confession.id}", callback_id="cb-x")

        assert transport.answers[-1] == ("cb-x", "This confession is not available for comments.", True)
        assert await relay.states.get(COMMENTER_ID) is None

    @pytest.mark.asyncio
    async def test_comments_page_callback(self, chat, relay, transport, publish, clock):
        confession = await publish()
        for i in range(6):
            clock.advance(1)
            await relay.comments.append(confession.id, COMMENTER_ID, f"comment number {i + 1}")

        await chat.press(COMMENTER_ID, f"comments_page_{confession.id}_2", callback_id="cb-page")

        page = transport.last_for(COMMENTER_ID)
        assert "Comments (6-6 of 6)" in page
        assert "comment number 6" in page
        assert "comment number 5" not in page
        assert transport.answers[-1] == ("cb-page", None, False)

    @pytest.mark.asyncio
    async def test_toggle_notification_callback(self, chat, relay, transport):
        await chat.press(AUTHOR_ID, "toggle_notify_new_comment", callback_id="cb-t", message_id=9)

        assert (await relay.users.get(AUTHOR_ID))["notifications"]["new_comment"] is False
        assert transport.answers[-1][1].endswith(": off")
        assert transport.edits[-1][:2] == (AUTHOR_ID, 9)


class TestRouting:

    @pytest.mark.asyncio
    async def test_unknown_command_shows_menu(self, chat, transport):
        await chat.say(AUTHOR_ID, "/whatever")

        assert "Choose an option below" in transport.last_for(AUTHOR_ID)

    @pytest.mark.asyncio
    async def test_pending_state_takes_commands(self, chat, relay, store):
        await relay.states.set(AUTHOR_ID, AwaitingConfession())

        await chat.say(AUTHOR_ID, "/start is what I never did")

        assert await relay.states.get(AUTHOR_ID) is None
        assert len(await store.find("confessions", "user_id", AUTHOR_ID)) == 1

    @pytest.mark.asyncio
    async def test_page_indicator_button_is_answered(self, chat, transport):
        await chat.press(AUTHOR_ID, "current_page", callback_id="cb-noop")

        assert transport.answers[-1] == ("cb-noop", None, False)

    @pytest.mark.asyncio
    async def test_failing_button_is_answered(self, chat, relay, transport, monkeypatch):
        async def broken(chat_id):
            raise RuntimeError("boom")

        monkeypatch.setattr(relay, "show_promote", broken)

        await chat.press(AUTHOR_ID, "promote_bot", callback_id="cb-err")

        assert transport.answers[-1] == ("cb-err", "❌ Error processing request", False)

    @pytest.mark.asyncio
    async def test_refused_admin_commands_are_logged(self, chat, transport, caplog):
        caplog.set_level(logging.WARNING, logger="confession_bot")

        await chat.say(AUTHOR_ID, "/admin")
        await chat.say(AUTHOR_ID, "/block 5")

        refusals = [r.getMessage() for r in caplog.records
                    if r.levelno == logging.WARNING and r.name == "confession_bot.workflow"]
        assert refusals == [
            f"Refused to let user {AUTHOR_ID} open the admin panel",
            f"Refused to let user {AUTHOR_ID} block users",
        ]
        assert transport.texts_for(AUTHOR_ID) == ["❌ Access denied. Admin only command."] * 2
