"""
=============================================================================
SCHEMAS.PY — Esquemas de Validación (Pydantic)
=============================================================================
  - Models (SQLAlchemy) → las TABLAS
  - Schemas (Pydantic)  → qué DATOS entran y salen de la API

Convención de nombres:
  XxxCreate   → para crear algo (POST)
  XxxResponse → lo que devuelve la API

QuestProposal es especial: valida lo que devuelve la IA. Los campos
opcionales que falten o vengan mal se rellenan con valores por defecto;
si falta título o descripción la propuesta se rechaza.
"""

from datetime import datetime
from typing import Literal, Optional

from pydantic import (
    AliasChoices, BaseModel, ConfigDict, EmailStr, Field, field_validator,
    ValidationError as PydanticValidationError,
)

from models import Difficulty, ProofType


def _strip_required(value: str) -> str:
    value = value.strip()
    if not value:
        raise ValueError("no puede estar vacío")
    return value


# =============================================================================
# ===================== AUTH ==================================================
# =============================================================================

class UserRegister(BaseModel):
    """Datos para registrar un usuario nuevo"""
    username: str = Field(min_length=3, max_length=50)
    email: EmailStr
    password: str = Field(min_length=6, description="Mínimo 6 caracteres")
    display_name: str = Field(min_length=1, max_length=100)

class UserLogin(BaseModel):
    """Login con username o email"""
    username: str = Field(min_length=3)
    password: str = Field(min_length=6)

class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    user_id: int
    display_name: str

class UserResponse(BaseModel):
    id: int
    username: str
    email: str
    display_name: str
    level: int
    xp: int
    xpass: int
    title: str
    streak: int
    is_locked: bool
    last_login_date: datetime
    last_task_generation_date: Optional[datetime] = None
    model_config = {"from_attributes": True}

class StatsResponse(BaseModel):
    active: int
    completed: int
    streak: int
    current_xp: int
    next_level_xp: int
    xp_percentage: int


# =============================================================================
# ===================== MISIONES ==============================================
# =============================================================================

class QuestCreate(BaseModel):
    """Misión creada a mano por el usuario"""
    title: str = Field(min_length=1, max_length=200)
    description: str = Field(min_length=1)
    difficulty: Difficulty
    proof_type: ProofType = ProofType.text
    category: Optional[str] = Field(default=None, max_length=50)
    expires_at: Optional[datetime] = None
    # expires_at → si no se indica, 24 horas desde ahora

    strip_text = field_validator("title", "description")(_strip_required)

class SuggestionAccept(QuestCreate):
    """Sugerencia predefinida que el usuario acepta"""
    ai_recommendation: Optional[str] = None

class QuestComplete(BaseModel):
    quest_id: int
    proof: str = Field(min_length=1)

    strip_proof = field_validator("proof")(_strip_required)

class PunishmentSelect(BaseModel):
    quest_id: int
    punishment_id: int

class XPassAdd(BaseModel):
    amount: int = Field(gt=0)

class PunishmentOptionResponse(BaseModel):
    id: int
    quest_id: int
    type: str
    value: str
    model_config = {"from_attributes": True}

class QuestResponse(BaseModel):
    id: int
    user_id: int
    title: str
    description: str
    difficulty: str
    xp_reward: int
    created_by: str
    proof_type: str
    status: str
    expires_at: datetime
    completed_at: Optional[datetime] = None
    proof: Optional[str] = None
    category: Optional[str] = None
    ai_recommendation: Optional[str] = None
    failure_penalty: Optional[dict] = None
    is_special_challenge: bool
    created_at: datetime
    updated_at: datetime
    model_config = {"from_attributes": True}

class QuestDetailResponse(QuestResponse):
    punishment_options: list[PunishmentOptionResponse] = []

class QuestUpdatesResponse(BaseModel):
    """Respuesta del polling: misiones cambiadas + nuevo cursor"""
    quests: list[QuestResponse]
    cursor: Optional[datetime] = None

class ProgressionResponse(BaseModel):
    previous_xp: int
    new_xp: int
    previous_level: int
    new_level: int
    leveled_up: bool

class CompletionResponse(BaseModel):
    quest: QuestResponse
    user_update: ProgressionResponse

class PunishmentResponse(BaseModel):
    message: str
    user: UserResponse

class AchievementResponse(BaseModel):
    id: int
    title: str
    description: str
    unlocked_at: datetime
    xp_reward: int
    model_config = {"from_attributes": True}


# =============================================================================
# ===================== PROPUESTAS DE LA IA ===================================
# =============================================================================

class FailurePenalty(BaseModel):
    type: Literal["credits", "xp"]
    amount: int = Field(gt=0)

    @field_validator("type", mode="before")
    @classmethod
    def lower_type(cls, v):
        return v.strip().lower() if isinstance(v, str) else v


class QuestProposal(BaseModel):
    """
    Una propuesta del proveedor de IA ya saneada.
    Acepta tanto camelCase (lo que manda la IA) como snake_case.
    """
    model_config = ConfigDict(populate_by_name=True)

    title: str = Field(max_length=200)
    description: str
    category: str = "general"
    proof_type: ProofType = Field(
        default=ProofType.text, validation_alias=AliasChoices("proofType", "proof_type")
    )
    xp_reward: Optional[int] = Field(
        default=None, validation_alias=AliasChoices("xpReward", "xp_reward")
    )
    ai_recommendation: str = Field(
        default="", validation_alias=AliasChoices("aiRecommendation", "ai_recommendation")
    )
    failure_penalty: Optional[FailurePenalty] = Field(
        default=None, validation_alias=AliasChoices("failurePenalty", "failure_penalty")
    )
    difficulty: Optional[Difficulty] = None

    strip_text = field_validator("title", "description")(_strip_required)

    @field_validator("category", mode="before")
    @classmethod
    def default_category(cls, v):
        if isinstance(v, str) and v.strip():
            return v.strip().lower()[:50]
        return "general"

    @field_validator("proof_type", mode="before")
    @classmethod
    def default_proof_type(cls, v):
        if isinstance(v, str) and v.strip().lower() in {p.value for p in ProofType}:
            return v.strip().lower()
        return ProofType.text.value

    @field_validator("xp_reward", mode="before")
    @classmethod
    def coerce_xp_reward(cls, v):
        if isinstance(v, bool):
            return None
        try:
            return int(float(v))
        except (TypeError, ValueError, OverflowError):
            # inf / 1e400 → como si no viniera (punto medio de la banda)
            return None

    @field_validator("ai_recommendation", mode="before")
    @classmethod
    def default_recommendation(cls, v):
        return v.strip() if isinstance(v, str) else ""

    @field_validator("failure_penalty", mode="before")
    @classmethod
    def drop_invalid_penalty(cls, v):
        if v is None:
            return None
        try:
            return FailurePenalty.model_validate(v)
        except PydanticValidationError:
            return None

    @field_validator("difficulty", mode="before")
    @classmethod
    def known_difficulty(cls, v):
        if isinstance(v, str) and v.strip().lower() in {d.value for d in Difficulty}:
            return v.strip().lower()
        return None
