import asyncio
from datetime import time, timedelta

from medassist.datamodel import ReminderSpec, UserInfo
from medassist.reminders.pending import PendingAcknowledgmentTracker
from medassist.reminders.scheduler import ReminderScheduler, render_notification
from medassist.utils import run_periodic

from conftest import FakeNotifier, FakeReminderRepository, FakeUsers, utc

ALICE_CHAT = 1001
BOB_CHAT = 2002


def make_reminder(reminder_id="rem-1", user_id=1, chat_id=ALICE_CHAT, at=time(8, 0)):
    return ReminderSpec(
        reminder_id=reminder_id,
        user_id=user_id,
        channel_user_id=chat_id,
        medication_id=f"med-{reminder_id}",
        medication_name="Aspirin",
        time_of_day=at,
        dosage="100 mg",
    )


def make_scheduler(reminders, users=None, **kwargs):
    users = users or [
        UserInfo(user_id=1, user_name="Alice", timezone="Europe/Moscow"),
        UserInfo(user_id=2, user_name="Bob", timezone="UTC"),
    ]
    repository = FakeReminderRepository(reminders)
    notifier = FakeNotifier()
    tracker = PendingAcknowledgmentTracker()
    scheduler = ReminderScheduler(
        repository, FakeUsers(users), notifier, tracker,
        resend_interval=timedelta(minutes=15),
        tolerance=timedelta(minutes=1),
        notify_timeout=kwargs.pop("notify_timeout", 1.0),
        **kwargs,
    )
    return scheduler, repository, notifier, tracker


def test_tick_sends_at_user_local_time():
    scheduler, repository, notifier, tracker = make_scheduler([make_reminder()])

    sent = asyncio.run(scheduler.tick(utc(2025, 1, 15, 5, 0)))

    assert sent == 1
    assert len(notifier.sent) == 1
    message = notifier.sent[0]
    assert message.chat_id == ALICE_CHAT
    assert message.text == render_notification("Aspirin", "100 mg")
    assert [b.action for b in message.actions[0]] == ["take_reminder:rem-1", "skip_reminder:rem-1"]

    entry = tracker.get("rem-1")
    assert entry.message_id == message.message_id
    assert entry.first_sent_at == utc(2025, 1, 15, 5, 0)
    assert repository.reminders["rem-1"].last_sent_at == utc(2025, 1, 15, 5, 0)
    assert repository.reminders["rem-1"].pending_message_id == message.message_id


def test_tick_outside_tolerance_sends_nothing():
    scheduler, _, notifier, tracker = make_scheduler([make_reminder()])

    assert asyncio.run(scheduler.tick(utc(2025, 1, 15, 5, 2))) == 0
    assert notifier.sent == []
    assert len(tracker) == 0


def test_same_day_is_sent_only_once():
    scheduler, _, notifier, _ = make_scheduler([make_reminder()])

    async def run():
        await scheduler.tick(utc(2025, 1, 15, 4, 59))
        await scheduler.tick(utc(2025, 1, 15, 5, 0))
        await scheduler.tick(utc(2025, 1, 15, 5, 1))

    asyncio.run(run())
    assert len(notifier.sent) == 1


def test_next_day_sends_again_and_supersedes_pending_entry():
    scheduler, _, notifier, tracker = make_scheduler([make_reminder()])

    async def run():
        await scheduler.tick(utc(2025, 1, 15, 5, 0))
        await scheduler.tick(utc(2025, 1, 16, 5, 0))

    asyncio.run(run())
    assert len(notifier.sent) == 2
    assert len(tracker) == 1
    entry = tracker.get("rem-1")
    assert entry.first_sent_at == utc(2025, 1, 16, 5, 0)
    assert entry.message_id == notifier.sent[1].message_id


def test_midnight_reminder_is_sent_once_across_the_day_boundary():
    scheduler, _, notifier, _ = make_scheduler([make_reminder(at=time(0, 0))])

    async def run():
        # 莫斯科 23:59:30 与次日 00:00:30
        await scheduler.tick(utc(2025, 1, 15, 20, 59, 30))
        await scheduler.tick(utc(2025, 1, 15, 21, 0, 30))
        await scheduler.tick(utc(2025, 1, 16, 20, 59, 30))

    asyncio.run(run())
    assert len(notifier.sent) == 2


def test_users_in_different_timezones():
    reminders = [make_reminder("rem-1", user_id=1), make_reminder("rem-2", user_id=2, chat_id=BOB_CHAT)]
    scheduler, _, notifier, _ = make_scheduler(reminders)

    async def run():
        moscow = await scheduler.tick(utc(2025, 1, 15, 5, 0))
        london = await scheduler.tick(utc(2025, 1, 15, 8, 0))
        return moscow, london

    assert asyncio.run(run()) == (1, 1)
    assert [m.chat_id for m in notifier.sent] == [ALICE_CHAT, BOB_CHAT]


def test_inactive_reminder_is_ignored():
    reminder = make_reminder()
    reminder.is_active = False
    scheduler, _, notifier, _ = make_scheduler([reminder])

    assert asyncio.run(scheduler.tick(utc(2025, 1, 15, 5, 0))) == 0
    assert notifier.sent == []


def test_send_failure_does_not_block_other_reminders():
    reminders = [
        make_reminder("rem-1", user_id=1, at=time(8, 0)),
        make_reminder("rem-2", user_id=2, chat_id=BOB_CHAT, at=time(5, 0)),
    ]
    scheduler, repository, notifier, tracker = make_scheduler(reminders)
    notifier.fail_send_for.add(ALICE_CHAT)

    asyncio.run(scheduler.tick(utc(2025, 1, 15, 5, 0)))

    assert [m.chat_id for m in notifier.sent] == [BOB_CHAT]
    assert tracker.get("rem-1") is None
    assert tracker.get("rem-2") is not None
    # 发送失败的提醒没有记录发送时间，下一次 tick 仍会重试
    assert repository.reminders["rem-1"].last_sent_at is None


def test_send_timeout_is_isolated():
    reminders = [
        make_reminder("rem-1", user_id=1, at=time(8, 0)),
        make_reminder("rem-2", user_id=2, chat_id=BOB_CHAT, at=time(5, 0)),
    ]
    scheduler, _, notifier, tracker = make_scheduler(reminders, notify_timeout=0.05)
    notifier.hang_send_for.add(ALICE_CHAT)

    asyncio.run(scheduler.tick(utc(2025, 1, 15, 5, 0)))

    assert [m.chat_id for m in notifier.sent] == [BOB_CHAT]
    assert tracker.get("rem-1") is None


def test_repository_failure_skips_tick():
    scheduler, repository, notifier, _ = make_scheduler([make_reminder()])
    repository.fail_list_active = True

    assert asyncio.run(scheduler.tick(utc(2025, 1, 15, 5, 0))) == 0
    assert notifier.sent == []


def test_invalid_or_missing_user_timezone_skips_only_that_reminder():
    users = [
        UserInfo(user_id=1, user_name="Alice", timezone="Mars/Olympus_Mons"),
        UserInfo(user_id=2, user_name="Bob", timezone="UTC"),
    ]
    reminders = [
        make_reminder("rem-1", user_id=1, at=time(5, 0)),
        make_reminder("rem-2", user_id=2, chat_id=BOB_CHAT, at=time(5, 0)),
        make_reminder("rem-3", user_id=99, chat_id=3003, at=time(5, 0)),
    ]
    scheduler, _, notifier, _ = make_scheduler(reminders, users=users)

    assert asyncio.run(scheduler.tick(utc(2025, 1, 15, 5, 0))) == 1
    assert [m.chat_id for m in notifier.sent] == [BOB_CHAT]


def test_resend_waits_for_interval_then_edits_message():
    scheduler, repository, notifier, tracker = make_scheduler([make_reminder()])

    async def run():
        await scheduler.tick(utc(2025, 1, 15, 5, 0))
        early = await scheduler.sweep_resends(utc(2025, 1, 15, 5, 14))
        due = await scheduler.sweep_resends(utc(2025, 1, 15, 5, 15))
        return early, due

    assert asyncio.run(run()) == (0, 1)
    first = notifier.sent[0]
    assert len(notifier.sent) == 1
    assert len(notifier.edited) == 1
    edit = notifier.edited[0]
    assert edit.message_id == first.message_id
    assert edit.text.startswith("Reminder #1")

    entry = tracker.get("rem-1")
    assert entry.resend_count == 1
    assert entry.last_sent_at == utc(2025, 1, 15, 5, 15)
    assert entry.first_sent_at == utc(2025, 1, 15, 5, 0)
    assert repository.reminders["rem-1"].pending_resend_count == 1


def test_resend_falls_back_to_new_message_when_edit_fails():
    scheduler, repository, notifier, tracker = make_scheduler([make_reminder()])
    notifier.fail_edit = True

    async def run():
        await scheduler.tick(utc(2025, 1, 15, 5, 0))
        await scheduler.sweep_resends(utc(2025, 1, 15, 5, 15))

    asyncio.run(run())
    assert len(notifier.sent) == 2
    assert tracker.get("rem-1").message_id == notifier.sent[1].message_id
    assert repository.reminders["rem-1"].pending_message_id == notifier.sent[1].message_id


def test_acknowledged_reminder_is_not_resent():
    scheduler, _, notifier, tracker = make_scheduler([make_reminder()])

    async def run():
        await scheduler.tick(utc(2025, 1, 15, 5, 0))
        tracker.remove("rem-1")
        return await scheduler.sweep_resends(utc(2025, 1, 15, 6, 0))

    assert asyncio.run(run()) == 0
    assert notifier.edited == []


def test_restore_pending_rebuilds_tracker():
    reminder = make_reminder()
    reminder.last_sent_at = utc(2025, 1, 15, 5, 0)
    reminder.pending_first_sent_at = utc(2025, 1, 15, 5, 0)
    reminder.pending_last_sent_at = utc(2025, 1, 15, 5, 15)
    reminder.pending_message_id = 321
    reminder.pending_resend_count = 1
    scheduler, _, _, tracker = make_scheduler([reminder])

    assert asyncio.run(scheduler.restore_pending()) == 1
    entry = tracker.get("rem-1")
    assert entry.message_id == 321
    assert entry.resend_count == 1
    assert entry.last_sent_at == utc(2025, 1, 15, 5, 15)


def test_status_reports_pending_count():
    scheduler, _, _, _ = make_scheduler([make_reminder()])
    asyncio.run(scheduler.tick(utc(2025, 1, 15, 5, 0)))

    status = scheduler.get_status()
    assert status["pending_count"] == 1
    assert status["running"] is False
    assert status["resend_interval_minutes"] == 15


def test_acknowledgment_while_saving_does_not_persist_pending_row():
    scheduler, repository, notifier, tracker = make_scheduler([make_reminder()])
    mark_sent = repository.mark_sent

    async def acknowledged_while_saving(reminder_id, sent_at):
        await mark_sent(reminder_id, sent_at)
        # 用户在发送状态落库之前点了 "已服用"
        tracker.remove(reminder_id)
        await repository.clear_pending(reminder_id)

    repository.mark_sent = acknowledged_while_saving

    asyncio.run(scheduler.tick(utc(2025, 1, 15, 5, 0)))

    assert len(notifier.sent) == 1
    assert tracker.get("rem-1") is None
    assert repository.reminders["rem-1"].last_sent_at == utc(2025, 1, 15, 5, 0)
    assert repository.reminders["rem-1"].pending_last_sent_at is None
    assert asyncio.run(scheduler.restore_pending()) == 0


def test_periodic_loop_keeps_running_after_a_failed_run():
    calls = []

    async def run():
        shutdown_event = asyncio.Event()

        async def job():
            calls.append(len(calls))
            if len(calls) == 1:
                raise RuntimeError("database is locked")
            if len(calls) == 3:
                shutdown_event.set()

        await asyncio.wait_for(run_periodic("test", 0.01, job, shutdown_event), timeout=5)

    asyncio.run(run())
    assert calls == [0, 1, 2]


def test_periodic_loop_lets_the_running_job_finish_on_shutdown():
    started, finished = [], []

    async def run():
        shutdown_event = asyncio.Event()

        async def job():
            started.append(1)
            shutdown_event.set()
            await asyncio.sleep(0.05)
            finished.append(1)

        await asyncio.wait_for(run_periodic("test", 0.01, job, shutdown_event), timeout=5)

    asyncio.run(run())
    assert started == [1]
    assert finished == [1]


def test_periodic_loop_stops_while_waiting_for_the_next_run():
    calls = []

    async def run():
        shutdown_event = asyncio.Event()

        async def job():
            calls.append(1)

        asyncio.get_running_loop().call_later(0.05, shutdown_event.set)
        await asyncio.wait_for(run_periodic("test", 60, job, shutdown_event), timeout=5)

    asyncio.run(run())
    assert calls == []


def test_main_loop_delivers_and_exits_on_shutdown():
    scheduler, _, notifier, tracker = make_scheduler(
        [make_reminder()],
        tick_seconds=0.01,
        resend_sweep_seconds=0.01,
        clock_fn=lambda: utc(2025, 1, 15, 5, 0),
    )

    async def run():
        shutdown_event = asyncio.Event()
        task = asyncio.create_task(scheduler.main_loop(shutdown_event))
        for _ in range(500):
            if notifier.sent:
                break
            await asyncio.sleep(0.01)
        running = scheduler.get_status()["running"]
        shutdown_event.set()
        await asyncio.wait_for(task, timeout=5)
        return running

    assert asyncio.run(run()) is True
    assert len(notifier.sent) == 1
    assert tracker.get("rem-1") is not None
    assert scheduler.get_status()["running"] is False
