import aiosqlite
from ulid import ULID

import medassist.storage.db_config as db_config
from medassist.datamodel import MedicationInfo
from medassist.logger import logger
from medassist.utils import now_utc, parse_utc_str, to_utc_str

_MEDICATION_COLUMNS = "medication_id, user_id, name, dosage, description, created_at_utc"


def _ensure_conn():
    if db_config.conn is None:
        raise RuntimeError("数据库未初始化，请先调用 init_db()")


def _row_to_medication(row) -> MedicationInfo:
    return MedicationInfo(
        medication_id=row[0],
        user_id=row[1],
        name=row[2],
        dosage=row[3],
        description=row[4],
        created_at=parse_utc_str(row[5]),
    )


async def create_medication(
    user_id: int,
    name: str,
    dosage: str | None = None,
    description: str | None = None,
) -> MedicationInfo:
    """创建药品；同一用户下药品名重复时抛出 aiosqlite.IntegrityError"""
    _ensure_conn()
    medication_id = str(ULID())
    created_at = now_utc().replace(microsecond=0)
    try:
        await db_config.conn.execute(
            "INSERT INTO medications (medication_id, user_id, name, dosage, description, created_at_utc) "
            "VALUES (?, ?, ?, ?, ?, ?)",
            (medication_id, user_id, name, dosage, description, to_utc_str(created_at)),
        )
        await db_config.conn.commit()
    except aiosqlite.IntegrityError:
        await db_config.conn.rollback()
        raise
    logger.trace(f"创建药品: user_id={user_id}, name={name}, medication_id={medication_id}")
    return MedicationInfo(
        medication_id=medication_id,
        user_id=user_id,
        name=name,
        dosage=dosage,
        description=description,
        created_at=created_at,
    )


async def get_medication(medication_id: str) -> MedicationInfo | None:
    _ensure_conn()
    async with db_config.conn.execute(
        f"SELECT {_MEDICATION_COLUMNS} FROM medications WHERE medication_id = ?", (medication_id,)
    ) as cursor:
        row = await cursor.fetchone()
        return _row_to_medication(row) if row else None


async def list_medications_by_user(user_id: int) -> list[MedicationInfo]:
    """按创建顺序 (ULID) 返回用户的全部药品"""
    _ensure_conn()
    async with db_config.conn.execute(
        f"SELECT {_MEDICATION_COLUMNS} FROM medications WHERE user_id = ? ORDER BY medication_id",
        (user_id,),
    ) as cursor:
        rows = await cursor.fetchall()
        return [_row_to_medication(row) for row in rows]


async def delete_medication(medication_id: str) -> bool:
    """删除药品，关联的提醒与服药记录级联删除"""
    _ensure_conn()
    async with db_config.conn.execute(
        "DELETE FROM medications WHERE medication_id = ?", (medication_id,)
    ) as cursor:
        deleted = cursor.rowcount > 0
    await db_config.conn.commit()
    logger.trace(f"删除药品: medication_id={medication_id}, deleted={deleted}")
    return deleted


__all__ = ["create_medication", "get_medication", "list_medications_by_user", "delete_medication"]
