"""
=============================================================================
STORAGE.PY — Acceso a datos (Entity Store)
=============================================================================
Lecturas puntuales y por rango de usuarios, misiones, opciones de castigo y
logros, más las escrituras parciales (solo cambian los campos enviados).

REGLA DE ORO: todo cambio de estado de una misión pasa por update_quest()
con expected_status. La escritura es un compare-and-set:

  UPDATE quests SET ... WHERE id = :id AND status = :expected

Si no casa ninguna fila, alguien llegó antes (p. ej. el sweeper marcó la
misión como fallida mientras el usuario la completaba) y se lanza
StateConflictError. No hay más control de concurrencia que este.

Estas funciones hacen flush() pero NO commit(): la transacción la cierra
quien orquesta la operación (lifecycle.py, generator.py...).
"""

import enum
import logging
from datetime import datetime
from typing import Any, Iterable, Optional

from sqlalchemy import func, or_
from sqlalchemy.orm import Session

from database import utcnow
from exceptions import NotFoundError, StateConflictError, ValidationError
from models import Achievement, PunishmentOption, Quest, QuestStatus, User

logger = logging.getLogger("questline.storage")


def _value(v):
    """Acepta tanto el Enum como su valor en texto"""
    return v.value if isinstance(v, enum.Enum) else v


# =============================================================================
# ===================== USUARIOS ==============================================
# =============================================================================

def get_user(db: Session, user_id: int) -> User:
    user = db.get(User, user_id)
    if user is None:
        raise NotFoundError(f"Usuario {user_id} no encontrado")
    return user


def get_user_by_login(db: Session, identifier: str) -> Optional[User]:
    """Busca por username o email (ambos únicos, sin distinguir mayúsculas)"""
    ident = identifier.strip().lower()
    return db.query(User).filter(
        or_(func.lower(User.username) == ident, func.lower(User.email) == ident)
    ).first()


def create_user(db: Session, **fields) -> User:
    user = User(**fields)
    db.add(user)
    db.flush()
    return user


def update_user(db: Session, user_id: int, fields: dict[str, Any]) -> User:
    """Actualización parcial: solo se tocan las claves presentes en fields"""
    user = get_user(db, user_id)
    for key, value in fields.items():
        setattr(user, key, value)
    db.flush()
    return user


def mark_task_generation(db: Session, user_id: int, previous: Optional[datetime],
                         generated_at: datetime) -> None:
    """
    Compare-and-set sobre last_task_generation_date: solo una petición por
    día consigue marcar la tanda como generada.
    """
    query = db.query(User).filter(User.id == user_id)
    if previous is None:
        query = query.filter(User.last_task_generation_date.is_(None))
    else:
        query = query.filter(User.last_task_generation_date == previous)

    if query.update({"last_task_generation_date": generated_at}, synchronize_session="fetch") == 0:
        raise StateConflictError("Las misiones de hoy ya se han generado")
    db.flush()


def lock_user_row(db: Session, user_id: int) -> User:
    """
    Relee al usuario dentro de la transacción actual (SELECT ... FOR UPDATE
    donde el motor lo soporta) para no pisar XP/XPass de otra petición.
    """
    user = db.query(User).filter(User.id == user_id).with_for_update().populate_existing().first()
    if user is None:
        raise NotFoundError(f"Usuario {user_id} no encontrado")
    return user


# =============================================================================
# ===================== MISIONES ==============================================
# =============================================================================

def get_quest(db: Session, quest_id: int) -> Quest:
    quest = db.get(Quest, quest_id)
    if quest is None:
        raise NotFoundError(f"Misión {quest_id} no encontrada")
    return quest


def list_quests(
    db: Session,
    user_id: int,
    status: Optional[QuestStatus | str] = None,
    since: Optional[datetime] = None,
) -> list[Quest]:
    """
    Misiones de un usuario, opcionalmente filtradas por estado.
    since → solo las modificadas DESPUÉS de ese instante (cursor de polling).
    """
    query = db.query(Quest).filter(Quest.user_id == user_id)
    if status is not None:
        query = query.filter(Quest.status == _value(status))
    if since is not None:
        query = query.filter(Quest.updated_at > since)
    return query.order_by(Quest.created_at.asc(), Quest.id.asc()).all()


def list_quests_created_between(
    db: Session, user_id: int, start: datetime, end: datetime,
    status: Optional[QuestStatus | str] = None, special_only: bool = False,
) -> list[Quest]:
    """Misiones creadas en [start, end). Se usa para "las de hoy"."""
    query = db.query(Quest).filter(
        Quest.user_id == user_id,
        Quest.created_at >= start,
        Quest.created_at < end,
    )
    if status is not None:
        query = query.filter(Quest.status == _value(status))
    if special_only:
        query = query.filter(Quest.is_special_challenge.is_(True))
    return query.order_by(Quest.created_at.asc(), Quest.id.asc()).all()


def count_quests(db: Session, user_id: int, status: QuestStatus | str) -> int:
    return db.query(Quest).filter(
        Quest.user_id == user_id, Quest.status == _value(status)
    ).count()


def get_expired_quests(db: Session, now: Optional[datetime] = None) -> list[Quest]:
    """Todas las misiones "active" cuyo expires_at ya pasó"""
    now = now or utcnow()
    return db.query(Quest).filter(
        Quest.status == QuestStatus.active.value,
        Quest.expires_at < now,
    ).order_by(Quest.expires_at.asc()).all()


def create_quest(db: Session, fields: dict[str, Any],
                 punishment_options: Iterable[dict[str, Any]] = ()) -> Quest:
    """
    Crea la misión y sus opciones de castigo en la misma transacción.
    Las opciones no se regeneran nunca después.
    """
    now = utcnow()
    quest = Quest(**fields)
    quest.status = QuestStatus.active.value
    quest.created_at = fields.get("created_at") or now
    # updated_at = hora real de escritura, nunca la "now" del llamante
    quest.updated_at = now
    db.add(quest)
    db.flush()

    for option in punishment_options:
        db.add(PunishmentOption(
            quest_id=quest.id,
            type=_value(option["type"]),
            value=str(option["value"]),
        ))
    db.flush()
    db.refresh(quest)
    return quest


def update_quest(
    db: Session,
    quest_id: int,
    fields: dict[str, Any],
    expected_status: Optional[QuestStatus | str] = None,
    conditions: Iterable = (),
) -> Quest:
    """
    Actualización parcial con precondición de estado (compare-and-set).

    expected_status es obligatorio si se cambia "status".
    conditions → filtros extra que también deben cumplirse (p. ej. expires_at > now).
    """
    values = {key: _value(value) for key, value in fields.items()}
    if "status" in values and expected_status is None:
        raise ValidationError("Un cambio de estado necesita expected_status")
    values["updated_at"] = utcnow()

    query = db.query(Quest).filter(Quest.id == quest_id)
    if expected_status is not None:
        query = query.filter(Quest.status == _value(expected_status))
    for condition in conditions:
        query = query.filter(condition)

    matched = query.update(values, synchronize_session="fetch")
    if matched == 0:
        current = db.query(Quest.status).filter(Quest.id == quest_id).scalar()
        if current is None:
            raise NotFoundError(f"Misión {quest_id} no encontrada")
        logger.info(
            f"⚔️ Conflicto en misión {quest_id}: esperado={_value(expected_status)} actual={current}"
        )
        raise StateConflictError(
            f"La misión {quest_id} está en estado '{current}'",
            current_status=current,
            expected_status=_value(expected_status),
        )

    db.flush()
    return db.get(Quest, quest_id, populate_existing=True)


# =============================================================================
# ===================== OPCIONES DE CASTIGO ===================================
# =============================================================================

def get_punishment_options(db: Session, quest_id: int) -> list[PunishmentOption]:
    return db.query(PunishmentOption).filter(
        PunishmentOption.quest_id == quest_id
    ).order_by(PunishmentOption.id.asc()).all()


def get_punishment_option(db: Session, option_id: int) -> PunishmentOption:
    option = db.get(PunishmentOption, option_id)
    if option is None:
        raise NotFoundError(f"Opción de castigo {option_id} no encontrada")
    return option


# =============================================================================
# ===================== LOGROS ================================================
# =============================================================================

def list_achievements(db: Session, user_id: int) -> list[Achievement]:
    return db.query(Achievement).filter(
        Achievement.user_id == user_id
    ).order_by(Achievement.unlocked_at.asc()).all()
