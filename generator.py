"""
=============================================================================
GENERATOR.PY — Misiones generadas por IA
=============================================================================
Una tanda de misiones IA por usuario y día de calendario (APP_TIMEZONE):

  - QUESTS_PER_DIFFICULTY misiones por dificultad (easy, medium, hard)
  - + 1 reto especial (como mucho uno por usuario y día)
  - caducan 24 horas después de generarse

Flujo:
  1. should_generate_today() → ¿ya se generó hoy?
  2. Se piden las propuestas al proveedor (mistral.py)
  3. Se validan y reparan (schemas.QuestProposal + bandas de XP)
  4. lifecycle.create_generated_quests() las guarda todas de golpe y marca
     last_task_generation_date

Si el proveedor falla, la tanda entera se aborta: no se inventan misiones
de relleno.
"""

import asyncio
import logging
import os
import random
from datetime import date, datetime, time, timedelta
from typing import Optional

import pytz
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.orm import Session

import lifecycle
import storage
from database import utcnow
from exceptions import ExternalProviderError
from mistral import ProviderRequest
from models import Difficulty, Quest, QuestStatus, User
from schemas import QuestProposal

logger = logging.getLogger("questline.generator")

APP_TIMEZONE = os.getenv("APP_TIMEZONE", "UTC")
QUESTS_PER_DIFFICULTY = int(os.getenv("QUESTS_PER_DIFFICULTY", "2"))

GENERATED_QUEST_DURATION = timedelta(hours=24)

# Bandas de XP aceptadas (lo que se sale se recorta)
XP_BANDS = {
    Difficulty.easy.value: (50, 100),
    Difficulty.medium.value: (150, 200),
    Difficulty.hard.value: (250, 350),
}
SPECIAL_XP_BAND = (100, 400)

# Sugerencias fijas (no usan IA)
PREDEFINED_SUGGESTIONS = [
    {"title": "Complete a Workout", "description": "Exercise for at least 30 minutes today",
     "difficulty": "medium", "category": "fitness", "proof_type": "photo", "xp_reward": 150},
    {"title": "Read a Book", "description": "Read at least 30 pages of a non-fiction book",
     "difficulty": "easy", "category": "personal", "proof_type": "text", "xp_reward": 50},
    {"title": "Learn Something New", "description": "Spend 1 hour learning a new skill online",
     "difficulty": "medium", "category": "education", "proof_type": "text", "xp_reward": 150},
    {"title": "Meal Preparation", "description": "Prepare healthy meals for the next 3 days",
     "difficulty": "hard", "category": "health", "proof_type": "photo", "xp_reward": 300},
    {"title": "Mindfulness Meditation", "description": "Complete a 15-minute meditation session",
     "difficulty": "easy", "category": "mental", "proof_type": "text", "xp_reward": 50},
]


# =============================================================================
# ===================== CALENDARIO ============================================
# =============================================================================

def _tz():
    return pytz.timezone(APP_TIMEZONE)


def local_date(moment: datetime) -> date:
    """Día de calendario (en APP_TIMEZONE) de una fecha UTC sin tzinfo"""
    return pytz.utc.localize(moment).astimezone(_tz()).date()


def day_bounds(now: datetime) -> tuple[datetime, datetime]:
    """[inicio, fin) del día local de `now`, devuelto en UTC sin tzinfo"""
    tz = _tz()
    today = local_date(now)
    start = tz.localize(datetime.combine(today, time.min))
    end = tz.localize(datetime.combine(today + timedelta(days=1), time.min))
    return (
        start.astimezone(pytz.utc).replace(tzinfo=None),
        end.astimezone(pytz.utc).replace(tzinfo=None),
    )


def should_generate_today(last_generation_date: Optional[datetime],
                          now: Optional[datetime] = None) -> bool:
    """True si nunca se generó o si la última vez fue otro día de calendario"""
    if last_generation_date is None:
        return True
    now = now or utcnow()
    return local_date(last_generation_date) != local_date(now)


def todays_quests(db: Session, user_id: int, now: datetime,
                  status: Optional[QuestStatus] = None) -> list[Quest]:
    start, end = day_bounds(now)
    return storage.list_quests_created_between(db, user_id, start, end, status=status)


def find_todays_special(db: Session, user_id: int, now: datetime) -> Optional[Quest]:
    """El reto especial de hoy, esté en el estado que esté"""
    start, end = day_bounds(now)
    specials = storage.list_quests_created_between(db, user_id, start, end, special_only=True)
    return specials[0] if specials else None


# =============================================================================
# ===================== VALIDACIÓN ============================================
# =============================================================================

def normalize_proposal(raw: dict, difficulty: Optional[str] = None, special: bool = False,
                       now: Optional[datetime] = None) -> dict:
    """
    Convierte la respuesta cruda de la IA en los campos de una misión.
    Sin título o descripción → ExternalProviderError (no se guarda nada).
    """
    now = now or utcnow()
    if not isinstance(raw, dict):
        raise ExternalProviderError("La propuesta de la IA no es un objeto")
    try:
        proposal = QuestProposal.model_validate(raw)
    except PydanticValidationError as e:
        logger.warning(f"🚫 Propuesta de la IA rechazada: {e.errors()}")
        raise ExternalProviderError("La IA devolvió una misión incompleta", {"errors": str(e)})

    if special:
        difficulty = proposal.difficulty.value if proposal.difficulty else Difficulty.medium.value
        low, high = SPECIAL_XP_BAND
    else:
        difficulty = difficulty or (proposal.difficulty.value if proposal.difficulty else Difficulty.medium.value)
        low, high = XP_BANDS[difficulty]

    xp_reward = proposal.xp_reward if proposal.xp_reward is not None else (low + high) // 2
    xp_reward = max(low, min(high, xp_reward))

    return {
        "title": proposal.title,
        "description": proposal.description,
        "difficulty": difficulty,
        "category": proposal.category,
        "proof_type": proposal.proof_type.value,
        "xp_reward": xp_reward,
        "ai_recommendation": proposal.ai_recommendation,
        "failure_penalty": proposal.failure_penalty.model_dump() if proposal.failure_penalty else None,
        "is_special_challenge": special,
        "expires_at": now + GENERATED_QUEST_DURATION,
    }


async def request_proposal(provider, user: User, difficulty: Optional[str] = None,
                           special: bool = False, now: Optional[datetime] = None) -> dict:
    """Pide una propuesta al proveedor y la devuelve ya normalizada"""
    if not special and difficulty is None:
        difficulty = random.choice([d.value for d in Difficulty])

    request = ProviderRequest(
        user_level=user.level,
        display_name=user.display_name,
        difficulty=difficulty,
        special=special,
    )
    try:
        raw = await provider.propose(request)
    except ExternalProviderError:
        raise
    except Exception as e:
        raise ExternalProviderError(f"Error inesperado del proveedor: {e}") from e

    return normalize_proposal(raw, difficulty, special, now)


async def _gather_or_cancel(coros: list) -> list:
    """
    Como asyncio.gather, pero si una llamada falla se cancelan las demás
    (y se espera a que terminen) antes de relanzar el error.
    """
    tasks = [asyncio.create_task(coro) for coro in coros]
    try:
        return await asyncio.gather(*tasks)
    except Exception:
        pending = [task for task in tasks if not task.done()]
        for task in pending:
            task.cancel()
        # Recoge también los errores de las que ya habían terminado
        await asyncio.gather(*tasks, return_exceptions=True)
        if pending:
            logger.warning(f"🛑 Tanda abortada: {len(pending)} llamadas al proveedor canceladas")
        raise


# =============================================================================
# ===================== OPERACIONES ===========================================
# =============================================================================

async def generate_daily_quests(db: Session, user: User, provider,
                                now: Optional[datetime] = None) -> list[Quest]:
    """
    Genera la tanda diaria si toca. Si ya se generó hoy devuelve las
    misiones activas creadas hoy.
    """
    now = now or utcnow()
    if not should_generate_today(user.last_task_generation_date, now):
        return todays_quests(db, user.id, now, status=QuestStatus.active)

    previous = user.last_task_generation_date
    pending = [
        request_proposal(provider, user, difficulty.value, now=now)
        for difficulty in Difficulty
        for _ in range(QUESTS_PER_DIFFICULTY)
    ]
    if find_todays_special(db, user.id, now) is None:
        pending.append(request_proposal(provider, user, special=True, now=now))
    else:
        logger.info(f"⭐ Usuario {user.id} ya tiene reto especial hoy, no se genera otro")

    logger.info(f"🤖 Generando {len(pending)} misiones para usuario {user.id}")
    proposals = await _gather_or_cancel(pending)

    return await asyncio.to_thread(
        lifecycle.create_generated_quests, db, user.id, proposals,
        generation_date=now, previous_generation_date=previous, now=now,
    )


async def get_daily_challenge(db: Session, user: User, provider,
                              now: Optional[datetime] = None) -> Quest:
    """
    El reto especial de hoy. Si no existe:
      - si toca la tanda diaria, se genera entera (incluye el reto)
      - si no, se genera solo el reto
    """
    now = now or utcnow()
    existing = find_todays_special(db, user.id, now)
    if existing is not None:
        return existing

    if should_generate_today(user.last_task_generation_date, now):
        quests = await generate_daily_quests(db, user, provider, now)
        special = next((q for q in quests if q.is_special_challenge), None)
        if special is not None:
            return special

    proposal = await request_proposal(provider, user, special=True, now=now)
    created = await asyncio.to_thread(lifecycle.create_generated_quests, db, user.id, [proposal], now=now)
    return created[0]


async def suggest_quest(user: User, provider, difficulty: Optional[str] = None,
                        special: bool = False, now: Optional[datetime] = None) -> dict:
    """Una propuesta de la IA validada, SIN guardarla"""
    return await request_proposal(provider, user, difficulty, special, now)
