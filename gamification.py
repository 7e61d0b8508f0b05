"""
=============================================================================
GAMIFICATION.PY — Progresión (XP, niveles, rachas, títulos)
=============================================================================
Aritmética pura: ninguna función de este módulo toca la base de datos ni
hace commit. Devuelven valores y quien llama (lifecycle.py) los persiste
y los anuncia.

Fórmula de nivel:
  XP para subir desde el nivel N = floor(1000 × N × 1.5)
  Nivel 1 → 1500 XP, Nivel 2 → 3000 XP, Nivel 3 → 4500 XP...

El XP es ACUMULADO (no se resetea al subir de nivel) y cada recompensa
puede subir como mucho un nivel.
"""

import math
from dataclasses import asdict, dataclass

from exceptions import ValidationError
from models import Difficulty


# =============================================================================
# ===================== RECOMPENSAS ===========================================
# =============================================================================

XP_REWARDS = {
    Difficulty.easy.value: 50,
    Difficulty.medium.value: 150,
    Difficulty.hard.value: 300,
}


def xp_reward_for(difficulty: str) -> int:
    """XP que da una misión creada por el usuario según su dificultad"""
    key = difficulty.value if isinstance(difficulty, Difficulty) else difficulty
    if key not in XP_REWARDS:
        raise ValidationError(f"Dificultad desconocida: {difficulty}")
    return XP_REWARDS[key]


# =============================================================================
# ===================== NIVELES ===============================================
# =============================================================================

LEVEL_TITLES = {
    1: "Novice Challenger",
    3: "Apprentice Adventurer",
    5: "Seasoned Quester",
    10: "Veteran Champion",
    20: "Master of Discipline",
    30: "Legend",
}


def get_level_title(level: int) -> str:
    """Título cosmético según el nivel"""
    title = LEVEL_TITLES[1]
    for lvl, name in sorted(LEVEL_TITLES.items()):
        if level >= lvl:
            title = name
    return title


def next_level_xp(level: int) -> int:
    """XP total necesario para pasar del nivel actual al siguiente"""
    return math.floor(1000 * level * 1.5)


def xp_percentage(current_xp: int, next_xp: int) -> int:
    """Porcentaje hacia el siguiente nivel, con tope en 100"""
    if next_xp <= 0:
        return 100
    return min(100, math.floor(current_xp / next_xp * 100))


@dataclass(frozen=True)
class Progression:
    """Resultado de aplicar una recompensa"""
    previous_xp: int
    new_xp: int
    previous_level: int
    new_level: int
    leveled_up: bool

    def as_dict(self) -> dict:
        return asdict(self)


def apply_reward(user, reward: int) -> Progression:
    """
    Calcula el XP y nivel resultantes de sumar `reward` al usuario.
    NO modifica al usuario.
    """
    if reward < 0:
        raise ValidationError("La recompensa no puede ser negativa")

    new_xp = user.xp + reward
    new_level = user.level
    leveled_up = False

    if new_xp >= next_level_xp(user.level):
        new_level = user.level + 1
        leveled_up = True

    return Progression(
        previous_xp=user.xp,
        new_xp=new_xp,
        previous_level=user.level,
        new_level=new_level,
        leveled_up=leveled_up,
    )


# =============================================================================
# ===================== RACHAS ================================================
# =============================================================================
# La racha sube 1 por cada misión completada. No hay regla de reseteo por
# días sin completar: se mantiene tal cual.

def next_streak(streak: int) -> int:
    return streak + 1


def stats_for(user, active_count: int, completed_count: int) -> dict:
    """Resumen para el panel del usuario (/user/stats)"""
    needed = next_level_xp(user.level)
    return {
        "active": active_count,
        "completed": completed_count,
        "streak": user.streak,
        "current_xp": user.xp,
        "next_level_xp": needed,
        "xp_percentage": xp_percentage(user.xp, needed),
    }


# =============================================================================
# ===================== XPASS =================================================
# =============================================================================

def add_xpass(user, amount) -> int:
    """Devuelve el nuevo saldo de XPass tras una recarga"""
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise ValidationError("Cantidad de XPass inválida")
    return user.xpass + amount
