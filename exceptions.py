"""
=============================================================================
EXCEPTIONS.PY — Errores del dominio
=============================================================================
Los módulos de negocio (storage, lifecycle, punishments, generator) lanzan
estas excepciones. main.py las traduce a respuestas HTTP con un único
exception handler usando el status_code de cada clase.

  ValidationError            → 422  datos de entrada mal formados
  NotFoundError              → 404  misión / usuario / opción inexistente
  AuthorizationError         → 403  la misión no es del usuario
  StateConflictError         → 409  transición no permitida desde el estado actual
  InsufficientResourceError  → 400  XPass insuficiente para pagar el castigo
  ExternalProviderError      → 502  la IA falló o devolvió datos inservibles
"""

from typing import Any, Optional


class QuestLineError(Exception):
    """Base de todos los errores de dominio"""
    status_code = 500

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ValidationError(QuestLineError):
    status_code = 422


class NotFoundError(QuestLineError):
    status_code = 404


class AuthorizationError(QuestLineError):
    status_code = 403


class StateConflictError(QuestLineError):
    """
    La misión no está en el estado que la operación esperaba.
    También es lo que recibe el "perdedor" de la carrera completar/caducar.
    """
    status_code = 409

    def __init__(self, message: str, current_status: Optional[str] = None,
                 expected_status: Optional[str] = None):
        super().__init__(message, {
            "current_status": current_status,
            "expected_status": expected_status,
        })
        self.current_status = current_status
        self.expected_status = expected_status


class InsufficientResourceError(QuestLineError):
    status_code = 400

    def __init__(self, message: str, required: int, available: int):
        super().__init__(message, {"required": required, "available": available})
        self.required = required
        self.available = available


class ExternalProviderError(QuestLineError):
    status_code = 502
