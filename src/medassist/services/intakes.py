from datetime import datetime, timedelta, timezone

import medassist.storage.intake as intake_store
from medassist.datamodel import IntakeRecord
from medassist.errors import ValidationError
from medassist.config import messages
from medassist.logger import logger
from medassist.reminders.clock import local_now
from medassist.services import medications
from medassist.utils import now_utc

HISTORY_PERIODS = ("today", "yesterday", "week", "month", "all")


async def record(
    user_id: int,
    medication_id: str,
    notes: str | None = None,
    intake_at: datetime | None = None,
) -> IntakeRecord:
    medication = await medications.get(user_id, medication_id)
    intake_at = (intake_at or now_utc()).replace(microsecond=0)
    intake_id = await intake_store.create_intake(user_id, medication_id, intake_at, notes)
    logger.info(f"用户 {user_id} 记录服药: {medication.name}")
    return IntakeRecord(
        intake_id=intake_id,
        user_id=user_id,
        medication_id=medication_id,
        medication_name=medication.name,
        intake_at=intake_at,
        notes=notes,
    )


def period_range(period: str, tz_name: str, now: datetime | None = None) -> tuple[datetime | None, datetime | None]:
    """把时间段换算为 UTC 区间 [since, until)，按用户时区的自然日划分"""
    if period not in HISTORY_PERIODS:
        raise ValidationError(messages.INVALID_REQUEST)
    local = local_now(now or now_utc(), tz_name)
    midnight = local.replace(hour=0, minute=0, second=0, microsecond=0)

    def utc(dt: datetime) -> datetime:
        return dt.astimezone(timezone.utc)

    if period == "today":
        return utc(midnight), utc(midnight + timedelta(days=1))
    if period == "yesterday":
        return utc(midnight - timedelta(days=1)), utc(midnight)
    if period == "week":
        return utc(midnight - timedelta(days=7)), None
    if period == "month":
        return utc(midnight - timedelta(days=30)), None
    return None, None


async def history(
    user_id: int,
    period: str,
    tz_name: str,
    now: datetime | None = None,
    medication_id: str | None = None,
) -> list[IntakeRecord]:
    since, until = period_range(period, tz_name, now)
    return await intake_store.list_intakes(user_id, since, until, medication_id)


__all__ = ["HISTORY_PERIODS", "record", "period_range", "history"]
