"""
=============================================================================
PUNISHMENTS.PY — Castigos
=============================================================================
1. Genera las opciones de castigo al crear una misión.
2. Calcula el efecto del castigo elegido cuando la misión ha fallado.

Opciones estándar (misión del usuario o sugerencia aceptada):
  - xp        → pierde el XP que habría ganado
  - xpass     → paga un tercio de ese XP en créditos XPass
  - physical  → reto físico según la dificultad

Misiones IA: una sola opción, sacada del failurePenalty del proveedor
("credits" se cobra como XPass). Si el proveedor no lo mandó, se usa
XPass = floor(xpReward / 3).
"""

import logging

from exceptions import InsufficientResourceError, ValidationError
from models import Difficulty, PunishmentType

logger = logging.getLogger("questline.punishments")

PHYSICAL_CHALLENGES = {
    Difficulty.easy.value: "20 Push-ups",
    Difficulty.medium.value: "35 Burpees",
    Difficulty.hard.value: "50 Burpees",
}

# Tipos de penalización que puede mandar el proveedor → tipo de castigo
PROVIDER_PENALTY_TYPES = {
    "credits": PunishmentType.xpass.value,
    "xp": PunishmentType.xp.value,
}


def standard_options(difficulty: str, xp_reward: int) -> list[dict]:
    """Las tres opciones de una misión creada por el usuario"""
    if difficulty not in PHYSICAL_CHALLENGES:
        raise ValidationError(f"Dificultad desconocida: {difficulty}")
    return [
        {"type": PunishmentType.xp.value, "value": xp_reward},
        {"type": PunishmentType.xpass.value, "value": xp_reward // 3},
        {"type": PunishmentType.physical.value, "value": PHYSICAL_CHALLENGES[difficulty]},
    ]


def provider_option(failure_penalty: dict | None, xp_reward: int) -> list[dict]:
    """La única opción de una misión generada por IA"""
    if failure_penalty:
        return [{
            "type": PROVIDER_PENALTY_TYPES[failure_penalty["type"]],
            "value": int(failure_penalty["amount"]),
        }]
    return [{"type": PunishmentType.xpass.value, "value": xp_reward // 3}]


def _amount(option) -> int:
    try:
        return int(option.value)
    except (TypeError, ValueError):
        raise ValidationError(f"Opción de castigo {option.id} con valor no numérico: {option.value!r}")


def resolve(user, option) -> dict:
    """
    Calcula los cambios sobre el usuario para la opción elegida.
    No toca la BD: devuelve los campos a escribir.

      xp        → xp = max(0, xp - valor)
      xpass     → xpass - valor (error si no llega)
      physical  → nada numérico, se confía en el usuario
    """
    if option.type == PunishmentType.xp.value:
        return {"xp": max(0, user.xp - _amount(option))}

    if option.type == PunishmentType.xpass.value:
        cost = _amount(option)
        if user.xpass < cost:
            raise InsufficientResourceError(
                "No tiene suficientes créditos XPass", required=cost, available=user.xpass
            )
        return {"xpass": user.xpass - cost}

    if option.type == PunishmentType.physical.value:
        logger.info(f"💪 Castigo físico aceptado por confianza: {option.value}")
        return {}

    raise ValidationError(f"Tipo de castigo desconocido: {option.type}")
