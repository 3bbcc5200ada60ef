from datetime import datetime

from ulid import ULID

import medassist.storage.db_config as db_config
from medassist.datamodel import IntakeRecord
from medassist.logger import logger
from medassist.utils import parse_utc_str, to_utc_str


def _ensure_conn():
    if db_config.conn is None:
        raise RuntimeError("数据库未初始化，请先调用 init_db()")


async def create_intake(
    user_id: int,
    medication_id: str,
    intake_at: datetime,
    notes: str | None = None,
) -> str:
    _ensure_conn()
    intake_id = str(ULID())
    await db_config.conn.execute(
        "INSERT INTO intakes (intake_id, user_id, medication_id, intake_at_utc, notes) VALUES (?, ?, ?, ?, ?)",
        (intake_id, user_id, medication_id, to_utc_str(intake_at), notes),
    )
    await db_config.conn.commit()
    logger.trace(f"记录服药: user_id={user_id}, medication_id={medication_id}, intake_id={intake_id}")
    return intake_id


async def list_intakes(
    user_id: int,
    since: datetime | None = None,
    until: datetime | None = None,
    medication_id: str | None = None,
) -> list[IntakeRecord]:
    """按时间倒序返回服药记录，区间为 [since, until)"""
    _ensure_conn()
    sql = (
        "SELECT i.intake_id, i.user_id, i.medication_id, m.name, i.intake_at_utc, i.notes "
        "FROM intakes i JOIN medications m ON m.medication_id = i.medication_id "
        "WHERE i.user_id = ?"
    )
    params: list = [user_id]
    if since is not None:
        sql += " AND i.intake_at_utc >= ?"
        params.append(to_utc_str(since))
    if until is not None:
        sql += " AND i.intake_at_utc < ?"
        params.append(to_utc_str(until))
    if medication_id is not None:
        sql += " AND i.medication_id = ?"
        params.append(medication_id)
    sql += " ORDER BY i.intake_at_utc DESC, i.intake_id DESC"

    async with db_config.conn.execute(sql, params) as cursor:
        rows = await cursor.fetchall()
        return [
            IntakeRecord(
                intake_id=row[0],
                user_id=row[1],
                medication_id=row[2],
                medication_name=row[3],
                intake_at=parse_utc_str(row[4]),
                notes=row[5],
            )
            for row in rows
        ]


__all__ = ["create_intake", "list_intakes"]
