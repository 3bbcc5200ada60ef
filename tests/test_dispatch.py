import asyncio
from datetime import time

from medassist.config import messages
from medassist.datamodel import ConversationState, MedicationInfo, PendingAcknowledgment

from conftest import ALICE_CHAT, BOB_CHAT, utc


def pending_entry(reminder_id="rem-1", user_id=1, chat_id=ALICE_CHAT):
    return PendingAcknowledgment(
        reminder_id=reminder_id,
        channel_user_id=chat_id,
        user_id=user_id,
        medication_id="med-aspirin",
        medication_name="Aspirin",
        dosage="100 mg",
        first_sent_at=utc(2025, 1, 15, 5, 0),
        last_sent_at=utc(2025, 1, 15, 5, 0),
        message_id=100,
    )


def actions_of(message):
    return [button.action for row in message.actions or [] for button in row]


def test_add_reminder_end_to_end(world):
    async def run():
        await world.text("add reminder")
        assert world.session().state == ConversationState.IDLE
        assert "reminder_med:med-aspirin" in actions_of(world.notifier.last)

        await world.press("reminder_med:med-aspirin")
        assert world.session().state == ConversationState.AWAITING_REMINDER_TIME
        assert world.notifier.last.text == messages.ENTER_REMINDER_TIME.format(
            name="Aspirin", timezone="Europe/Moscow"
        )

        await world.text("08:00")

    asyncio.run(run())
    assert world.reminders.created == [(1, "med-aspirin", ALICE_CHAT, time(8, 0))]
    assert world.session().state == ConversationState.IDLE
    assert world.session().scratch == {}
    assert world.notifier.last.text == messages.REMINDER_CREATED.format(name="Aspirin", time="08:00")


def test_invalid_time_keeps_flow_open(world):
    async def run():
        await world.press("reminder_med:med-aspirin")
        await world.text("25:99")

    asyncio.run(run())
    assert world.session().state == ConversationState.AWAITING_REMINDER_TIME
    assert world.notifier.last.text.startswith(messages.INVALID_TIME)
    assert world.reminders.created == []


def test_cancel_mid_flow_clears_scratch(world):
    async def run():
        await world.press("reminder_med:med-aspirin")
        await world.text("/cancel")

    asyncio.run(run())
    session = world.session()
    assert session.state == ConversationState.IDLE
    assert session.scratch == {}
    assert world.notifier.last.text == messages.OPERATION_CANCELLED
    assert world.reminders.created == []


def test_cancel_button_mid_flow(world):
    async def run():
        await world.press("add_medication")
        await world.text("Ibuprofen")
        await world.press("cancel")

    asyncio.run(run())
    assert world.session().state == ConversationState.IDLE
    assert world.medications.created == []


def test_add_medication_with_skip_button(world):
    async def run():
        await world.text("/add")
        await world.text("Ibuprofen")
        await world.press("skip")
        await world.text("For headaches")

    asyncio.run(run())
    created = world.medications.created
    assert len(created) == 1
    assert (created[0].name, created[0].dosage, created[0].description) == ("Ibuprofen", None, "For headaches")
    assert world.notifier.last.text == messages.MEDICATION_ADDED.format(name="Ibuprofen")


def test_unregistered_user_is_asked_to_authenticate(world):
    async def run():
        await world.text("/reminders", chat_id=BOB_CHAT)

    asyncio.run(run())
    last = world.notifier.last
    assert last.chat_id == BOB_CHAT
    assert last.text == messages.AUTH_REQUIRED
    assert "login" in actions_of(last)
    assert world.session(BOB_CHAT).state == ConversationState.IDLE
    assert not world.session(BOB_CHAT).is_authenticated


def test_linked_user_is_authenticated_automatically(world):
    asyncio.run(world.text("/reminders"))

    assert world.session().user_id == 1
    assert world.notifier.last.text == messages.REMINDERS_MENU


def test_login_flow(world):
    async def run():
        await world.text("/login", chat_id=BOB_CHAT)
        await world.text("ALICE@example.com", chat_id=BOB_CHAT)
        await world.text("secret1", chat_id=BOB_CHAT)

    asyncio.run(run())
    assert world.accounts.calls == [("login", "alice@example.com", BOB_CHAT)]
    assert world.session(BOB_CHAT).user_id == 1
    assert world.notifier.last.text == messages.LOGIN_SUCCESS.format(name="Alice")


def test_failed_login_returns_to_idle(world):
    async def run():
        await world.text("/login", chat_id=BOB_CHAT)
        await world.text("alice@example.com", chat_id=BOB_CHAT)
        await world.text("wrong-password", chat_id=BOB_CHAT)

    asyncio.run(run())
    session = world.session(BOB_CHAT)
    assert not session.is_authenticated
    assert session.state == ConversationState.IDLE
    assert world.notifier.last.text == messages.LOGIN_FAILED


def test_register_flow(world):
    async def run():
        await world.text("register", chat_id=BOB_CHAT)
        await world.text("Bob", chat_id=BOB_CHAT)
        await world.text("bob@example.com", chat_id=BOB_CHAT)
        await world.text("hunter22", chat_id=BOB_CHAT)

    asyncio.run(run())
    assert world.accounts.calls == [("register", "Bob", "bob@example.com", BOB_CHAT)]
    assert world.session(BOB_CHAT).is_authenticated
    assert world.notifier.last.text == messages.REGISTER_SUCCESS.format(name="Bob")


def test_take_reminder_records_intake_once(world):
    world.tracker.upsert(pending_entry())

    async def run():
        await world.press("take_reminder:rem-1", message_id=100)
        await world.press("take_reminder:rem-1", message_id=100)

    asyncio.run(run())
    assert len(world.intakes.records) == 1
    assert world.intakes.records[0].medication_id == "med-aspirin"
    assert world.tracker.get("rem-1") is None
    assert world.notifier.edited[0].text == messages.REMINDER_TAKEN.format(name="Aspirin", time="08:03")
    assert world.notifier.last.text == messages.REMINDER_ALREADY_HANDLED


def test_concurrent_taps_record_single_intake(world):
    world.tracker.upsert(pending_entry())

    async def run():
        await asyncio.gather(
            world.press("take_reminder:rem-1"),
            world.press("take_reminder:rem-1"),
            world.press("skip_reminder:rem-1"),
        )

    asyncio.run(run())
    assert len(world.intakes.records) == 1
    assert world.outputs().count(messages.REMINDER_ALREADY_HANDLED) == 2
    assert world.dispatcher._user_locks == {}


def test_user_locks_are_dropped_once_updates_finish(world):
    holders = []
    send_text = world.notifier.send_text

    async def recording_send(chat_id, text, actions=None):
        await asyncio.sleep(0)
        holders.append(world.dispatcher._user_locks[chat_id].holders)
        return await send_text(chat_id, text, actions)

    world.notifier.send_text = recording_send

    async def run():
        await asyncio.gather(*(world.text("/help", chat_id=5000 + i) for i in range(200)))
        await asyncio.gather(world.text("/help"), world.text("/help"))

    asyncio.run(run())
    assert len(world.outputs()) == 202
    # 同一用户的第二条 update 排队等待同一把锁
    assert max(holders) == 2
    assert world.dispatcher._user_locks == {}


def test_skip_reminder_records_nothing(world):
    world.tracker.upsert(pending_entry())

    asyncio.run(world.press("skip_reminder:rem-1"))

    assert world.intakes.records == []
    assert world.tracker.get("rem-1") is None
    assert world.notifier.last.text == messages.REMINDER_SKIPPED.format(name="Aspirin")


def test_take_reminder_of_other_user_is_rejected(world):
    world.tracker.upsert(pending_entry(user_id=2, chat_id=BOB_CHAT))

    asyncio.run(world.press("take_reminder:rem-1"))

    assert world.intakes.records == []
    assert world.tracker.get("rem-1") is not None
    assert world.notifier.last.text == messages.REMINDER_NOT_FOUND


def test_failed_intake_keeps_reminder_pending(world):
    world.tracker.upsert(pending_entry())
    world.intakes.fail = True

    asyncio.run(world.press("take_reminder:rem-1"))

    assert world.tracker.get("rem-1") is not None
    assert world.notifier.last.text == messages.GENERIC_ERROR


def test_take_reminder_does_not_interrupt_open_flow(world):
    world.tracker.upsert(pending_entry())

    async def run():
        await world.text("/add")
        await world.press("take_reminder:rem-1")

    asyncio.run(run())
    assert world.session().state == ConversationState.AWAITING_MEDICATION_NAME
    assert len(world.intakes.records) == 1


def test_foreign_medication_is_not_found(world):
    world.medications.medications["med-bob"] = MedicationInfo(medication_id="med-bob", user_id=2, name="Secret")

    asyncio.run(world.press("reminder_med:med-bob"))

    assert world.session().state == ConversationState.IDLE
    assert world.notifier.last.text == messages.MEDICATION_NOT_FOUND


def test_unknown_callback_is_ignored(world):
    async def run():
        await world.press("self_destruct:now")
        await world.press("delete_med")

    asyncio.run(run())
    assert world.notifier.log == []


def test_unknown_command_and_free_text(world):
    async def run():
        await world.text("/frobnicate")
        await world.text("hello there")

    asyncio.run(run())
    assert world.outputs()[0] == messages.UNKNOWN_COMMAND
    assert world.outputs()[1] == messages.MAIN_MENU


def test_set_timezone(world):
    async def run():
        await world.press("timezone:Asia/Tokyo")
        await world.press("timezone:Mars/Olympus_Mons")

    asyncio.run(run())
    assert world.users.users[1].timezone == "Asia/Tokyo"
    assert world.outputs()[0] == messages.TIMEZONE_SET.format(timezone="Asia/Tokyo")
    assert world.outputs()[1] == messages.INVALID_TIMEZONE


def test_delete_medication_drops_pending_reminders(world):
    world.tracker.upsert(pending_entry())

    asyncio.run(world.press("delete_med:med-aspirin"))

    assert "med-aspirin" not in world.medications.medications
    assert len(world.tracker) == 0


def test_missing_scratch_restarts_flow(world):
    async def run():
        await world.text("/start")
        session = world.session()
        session.state = ConversationState.AWAITING_REMINDER_TIME
        session.scratch.clear()
        await world.text("08:00")

    asyncio.run(run())
    assert messages.FLOW_RESTARTED in world.outputs()
    assert world.session().state == ConversationState.IDLE
    assert world.notifier.last.text == messages.SELECT_REMINDER_MEDICATION
    assert world.reminders.created == []
