import aiosqlite

import medassist.storage.medication as medication_store
from medassist.config import messages
from medassist.datamodel import MedicationInfo
from medassist.errors import ConflictError, NotFoundError, OwnershipError
from medassist.logger import logger


async def get(user_id: int, medication_id: str) -> MedicationInfo:
    """获取药品并校验归属"""
    medication = await medication_store.get_medication(medication_id)
    if medication is None:
        raise NotFoundError(messages.MEDICATION_NOT_FOUND)
    if medication.user_id != user_id:
        logger.warning(f"用户 {user_id} 试图访问不属于自己的药品 {medication_id}")
        raise OwnershipError(messages.MEDICATION_NOT_FOUND)
    return medication


async def list_by_user(user_id: int) -> list[MedicationInfo]:
    return await medication_store.list_medications_by_user(user_id)


async def create(
    user_id: int,
    name: str,
    dosage: str | None = None,
    description: str | None = None,
) -> MedicationInfo:
    try:
        medication = await medication_store.create_medication(user_id, name, dosage, description)
    except aiosqlite.IntegrityError as e:
        raise ConflictError(messages.MEDICATION_EXISTS.format(name=name)) from e
    logger.info(f"用户 {user_id} 添加药品: {name}")
    return medication


async def delete(user_id: int, medication_id: str) -> MedicationInfo:
    medication = await get(user_id, medication_id)
    await medication_store.delete_medication(medication_id)
    logger.info(f"用户 {user_id} 删除药品: {medication.name}")
    return medication


__all__ = ["get", "list_by_user", "create", "delete"]
