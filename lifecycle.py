"""
=============================================================================
LIFECYCLE.PY — Ciclo de vida de las misiones
=============================================================================
Dueño de la máquina de estados:

  active ──(completar con prueba, antes de expires_at)──→ completed
  active ──(el sweeper ve que caducó)───────────────────→ failed
  failed ──(el usuario elige castigo)───────────────────→ punished

Cualquier otra transición → StateConflictError.

Completar y caducar pueden llegar a la vez para la misma misión. Las dos
escriben con storage.update_quest(expected_status="active"): la primera que
llega a la BD gana y la otra recibe StateConflictError. No hay locks.

Cada operación es UNA transacción: commit al final, rollback si algo falla.
Los eventos se emiten solo después del commit.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Iterable, Optional

from sqlalchemy.orm import Session

import gamification
import punishments
import storage
from database import utcnow
from events import EventType, broadcaster
from exceptions import AuthorizationError, NotFoundError, StateConflictError, ValidationError
from models import CreatedBy, Difficulty, ProofType, Quest, QuestStatus, User
from schemas import PunishmentOptionResponse, QuestResponse, UserResponse

logger = logging.getLogger("questline.lifecycle")

DEFAULT_QUEST_DURATION = timedelta(hours=24)


# ─────────────────────────────────────────────────────────────────────────────
# HELPERS
# ─────────────────────────────────────────────────────────────────────────────

def quest_payload(quest: Quest) -> dict:
    return QuestResponse.model_validate(quest).model_dump(mode="json")


def user_payload(user: User) -> dict:
    return UserResponse.model_validate(user).model_dump(mode="json")


def to_naive_utc(value: datetime) -> datetime:
    """Las fechas con zona horaria se pasan a UTC sin tzinfo"""
    if value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def _check_owner(quest: Quest, user_id: int):
    if quest.user_id != user_id:
        raise AuthorizationError("Acceso denegado: la misión no es suya")


def _clean_fields(data: Any) -> dict:
    """Acepta un schema de Pydantic o un dict y devuelve un dict plano"""
    if hasattr(data, "model_dump"):
        data = data.model_dump()
    fields = dict(data)
    for key in ("difficulty", "proof_type"):
        if hasattr(fields.get(key), "value"):
            fields[key] = fields[key].value
    return fields


def _build_quest_fields(user_id: int, data: Any, created_by: str, now: datetime) -> tuple[dict, list[dict]]:
    """Valida los datos de entrada y prepara columnas + opciones de castigo"""
    fields = _clean_fields(data)

    title = (fields.get("title") or "").strip()
    description = (fields.get("description") or "").strip()
    if not title or not description:
        raise ValidationError("La misión necesita título y descripción")

    difficulty = fields.get("difficulty")
    if difficulty not in {d.value for d in Difficulty}:
        raise ValidationError(f"Dificultad inválida: {difficulty}")

    proof_type = fields.get("proof_type") or ProofType.text.value
    if proof_type not in {p.value for p in ProofType}:
        raise ValidationError(f"Tipo de prueba inválido: {proof_type}")

    expires_at = fields.get("expires_at")
    expires_at = to_naive_utc(expires_at) if expires_at else now + DEFAULT_QUEST_DURATION
    if expires_at <= now:
        raise ValidationError("La fecha de caducidad debe estar en el futuro")

    if created_by == CreatedBy.ai.value:
        xp_reward = fields.get("xp_reward")
        if not isinstance(xp_reward, int) or xp_reward <= 0:
            raise ValidationError("Una misión IA necesita un xp_reward positivo")
        failure_penalty = fields.get("failure_penalty")
        options = punishments.provider_option(failure_penalty, xp_reward)
    else:
        xp_reward = gamification.xp_reward_for(difficulty)
        failure_penalty = None
        options = punishments.standard_options(difficulty, xp_reward)

    columns = {
        "user_id": user_id,
        "title": title,
        "description": description,
        "difficulty": difficulty,
        "xp_reward": xp_reward,
        "created_by": created_by,
        "proof_type": proof_type,
        "expires_at": expires_at,
        "category": fields.get("category"),
        "ai_recommendation": fields.get("ai_recommendation"),
        "failure_penalty": failure_penalty,
        "is_special_challenge": bool(fields.get("is_special_challenge", False)),
        "created_at": now,
    }
    return columns, options


# =============================================================================
# ===================== CREAR =================================================
# =============================================================================

def create_quest(db: Session, user_id: int, data: Any,
                 created_by: CreatedBy | str = CreatedBy.user,
                 now: Optional[datetime] = None) -> Quest:
    """
    Crea una misión "active" con sus opciones de castigo.

    created_by:
      user / suggestion → XP según dificultad + 3 castigos (xp, xpass, physical)
      ai                → XP del proveedor + 1 castigo (su failurePenalty o XPass)
    """
    now = now or utcnow()
    created_by = created_by.value if isinstance(created_by, CreatedBy) else created_by
    storage.get_user(db, user_id)

    columns, options = _build_quest_fields(user_id, data, created_by, now)
    try:
        quest = storage.create_quest(db, columns, options)
        db.commit()
    except Exception:
        db.rollback()
        raise

    logger.info(f"🆕 Misión {quest.id} creada ({quest.difficulty}, {created_by}) para usuario {user_id}")
    broadcaster.emit(EventType.NEW_TASK, quest_payload(quest))
    return quest


def create_generated_quests(db: Session, user_id: int, proposals: Iterable[dict],
                            generation_date: Optional[datetime] = None,
                            previous_generation_date: Optional[datetime] = None,
                            now: Optional[datetime] = None) -> list[Quest]:
    """
    Persiste un lote de misiones IA en UNA transacción. Si generation_date
    viene, también se guarda como last_task_generation_date del usuario,
    siempre que siga valiendo previous_generation_date (si otra petición
    generó la tanda antes → StateConflictError y no se guarda nada).
    O se guarda todo o nada.
    """
    now = now or utcnow()
    storage.get_user(db, user_id)

    prepared = [
        _build_quest_fields(user_id, proposal, CreatedBy.ai.value, now)
        for proposal in proposals
    ]
    try:
        quests = [storage.create_quest(db, columns, options) for columns, options in prepared]
        if generation_date is not None:
            storage.mark_task_generation(db, user_id, previous_generation_date, generation_date)
        db.commit()
    except Exception:
        db.rollback()
        raise

    logger.info(f"🤖 {len(quests)} misiones IA guardadas para usuario {user_id}")
    for quest in quests:
        broadcaster.emit(EventType.NEW_TASK, quest_payload(quest))
    return quests


# =============================================================================
# ===================== COMPLETAR =============================================
# =============================================================================

def complete_quest(db: Session, quest_id: int, user_id: int, proof: str,
                   now: Optional[datetime] = None) -> tuple[Quest, gamification.Progression]:
    """
    active → completed.
    Exige prueba no vacía y que la hora actual sea ANTERIOR a expires_at,
    aunque el sweeper todavía no haya pasado.
    """
    now = now or utcnow()
    proof = (proof or "").strip()
    if not proof:
        raise ValidationError("La prueba no puede estar vacía")

    quest = storage.get_quest(db, quest_id)
    _check_owner(quest, user_id)

    if quest.status != QuestStatus.active.value:
        raise StateConflictError(
            "La misión no está activa",
            current_status=quest.status, expected_status=QuestStatus.active.value,
        )
    if now >= quest.expires_at:
        raise StateConflictError(
            "La misión ha caducado",
            current_status=quest.status, expected_status=QuestStatus.active.value,
        )

    try:
        try:
            quest = storage.update_quest(
                db, quest_id,
                {"status": QuestStatus.completed, "completed_at": now, "proof": proof},
                expected_status=QuestStatus.active,
                conditions=[Quest.expires_at > now],
            )
        except StateConflictError as e:
            if e.current_status == QuestStatus.active.value:
                raise StateConflictError(
                    "La misión ha caducado",
                    current_status=e.current_status, expected_status=e.expected_status,
                ) from e
            raise

        user = storage.lock_user_row(db, user_id)
        progression = gamification.apply_reward(user, quest.xp_reward)
        changes = {
            "xp": progression.new_xp,
            "level": progression.new_level,
            "streak": gamification.next_streak(user.streak),
        }
        if progression.leveled_up:
            changes["title"] = gamification.get_level_title(progression.new_level)
        storage.update_user(db, user_id, changes)
        db.commit()
    except Exception:
        db.rollback()
        raise

    logger.info(
        f"✅ Misión {quest_id} completada: +{quest.xp_reward} XP "
        f"({progression.previous_xp} → {progression.new_xp})"
        + (f" ⬆️ nivel {progression.new_level}" if progression.leveled_up else "")
    )
    broadcaster.emit(EventType.TASK_COMPLETED, {
        "task": quest_payload(quest),
        "user_update": progression.as_dict(),
    })
    return quest, progression


# =============================================================================
# ===================== FALLAR (solo el sweeper) ==============================
# =============================================================================

def fail_quest(db: Session, quest_id: int, now: Optional[datetime] = None) -> Quest:
    """
    active → failed, y bloquea al dueño.
    Solo la llama el sweeper. Si el usuario la completó justo antes,
    el compare-and-set falla con StateConflictError.
    """
    now = now or utcnow()
    try:
        quest = storage.update_quest(
            db, quest_id,
            {"status": QuestStatus.failed},
            expected_status=QuestStatus.active,
            conditions=[Quest.expires_at < now],
        )
        user = storage.update_user(db, quest.user_id, {"is_locked": True})
        db.commit()
    except Exception:
        db.rollback()
        raise

    logger.info(f"⌛ Misión {quest_id} caducada → failed, usuario {quest.user_id} bloqueado")
    broadcaster.emit(EventType.TASK_FAILED, {
        "task": quest_payload(quest),
        "user": user_payload(user),
    })
    return quest


# =============================================================================
# ===================== CASTIGAR ==============================================
# =============================================================================

def apply_punishment(db: Session, quest_id: int, user_id: int, option_id: int) -> User:
    """
    failed → punished con la opción elegida.
    El usuario se desbloquea si ya no le quedan misiones en "failed".
    """
    quest = storage.get_quest(db, quest_id)
    _check_owner(quest, user_id)

    if quest.status != QuestStatus.failed.value:
        raise StateConflictError(
            "La misión no ha fallado",
            current_status=quest.status, expected_status=QuestStatus.failed.value,
        )

    option = storage.get_punishment_option(db, option_id)
    if option.quest_id != quest.id:
        raise NotFoundError(
            f"La opción de castigo {option_id} no pertenece a la misión {quest_id}"
        )

    try:
        user = storage.lock_user_row(db, user_id)
        changes = punishments.resolve(user, option)

        quest = storage.update_quest(
            db, quest_id, {"status": QuestStatus.punished},
            expected_status=QuestStatus.failed,
        )
        still_failed = storage.count_quests(db, user_id, QuestStatus.failed)
        changes["is_locked"] = still_failed > 0
        user = storage.update_user(db, user_id, changes)
        db.commit()
    except Exception:
        db.rollback()
        raise

    logger.info(f"⚖️ Castigo {option.type}={option.value} aplicado a misión {quest_id}")
    broadcaster.emit(EventType.PUNISHMENT_APPLIED, {
        "task": quest_payload(quest),
        "punishment": PunishmentOptionResponse.model_validate(option).model_dump(mode="json"),
        "user": user_payload(user),
    })
    return user


# =============================================================================
# ===================== XPASS =================================================
# =============================================================================

def grant_xpass(db: Session, user_id: int, amount: int) -> User:
    """Recarga de créditos XPass"""
    try:
        user = storage.lock_user_row(db, user_id)
        user = storage.update_user(db, user_id, {"xpass": gamification.add_xpass(user, amount)})
        db.commit()
    except Exception:
        db.rollback()
        raise
    logger.info(f"💳 +{amount} XPass para usuario {user_id} (saldo {user.xpass})")
    return user
