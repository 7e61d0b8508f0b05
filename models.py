"""
=============================================================================
MODELS.PY — Modelos (Tablas) de la Base de Datos
=============================================================================
Cada clase = una tabla. Cada atributo = una columna.

RELACIONES:
  USER
  ├── quests[] ──→ punishment_options[]
  └── achievements[]

Una misión (Quest) nace "active" y solo avanza:
  active → completed            (el usuario la completa a tiempo)
  active → failed → punished    (caduca y el usuario elige castigo)
"""

import enum

from sqlalchemy import (
    Column, Integer, String, Boolean, Text, DateTime, ForeignKey, JSON
)
from sqlalchemy.orm import relationship

from database import Base, utcnow


# =============================================================================
# ===================== ENUMS =================================================
# =============================================================================

class Difficulty(str, enum.Enum):
    """Dificultad de una misión"""
    easy = "easy"
    medium = "medium"
    hard = "hard"

class QuestStatus(str, enum.Enum):
    """Estados de la máquina de estados de una misión"""
    active = "active"          # inicial
    completed = "completed"    # final
    failed = "failed"          # caducada, esperando castigo
    punished = "punished"      # final

class CreatedBy(str, enum.Enum):
    """Origen de la misión"""
    user = "user"
    ai = "ai"
    suggestion = "suggestion"

class ProofType(str, enum.Enum):
    """Tipo de prueba que exige la misión"""
    photo = "photo"
    text = "text"

class PunishmentType(str, enum.Enum):
    """Tipo de castigo"""
    xp = "xp"              # pierde XP (nunca por debajo de 0)
    xpass = "xpass"        # paga con créditos XPass
    physical = "physical"  # reto físico, se acepta por confianza


# =============================================================================
# ===================== TABLA 1: USERS ========================================
# =============================================================================

class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, autoincrement=True)

    # ── Identidad ──
    username = Column(String(50), unique=True, nullable=False, index=True)
    email = Column(String(255), unique=True, nullable=False, index=True)
    password_hash = Column(String(255), nullable=False)
    display_name = Column(String(100), nullable=False)

    # ── Progresión ──
    level = Column(Integer, nullable=False, default=1)
    xp = Column(Integer, nullable=False, default=0)
    xpass = Column(Integer, nullable=False, default=100)
    # xpass → crédito gastable para pagar castigos. Se regalan 100 al registrarse.
    title = Column(String(50), nullable=False, default="Novice Challenger")
    streak = Column(Integer, nullable=False, default=0)

    # ── Estado ──
    is_locked = Column(Boolean, nullable=False, default=False)
    # is_locked → True mientras tenga alguna misión en "failed" sin castigo

    # ── Timestamps ──
    last_login_date = Column(DateTime, nullable=False, default=utcnow)
    last_task_generation_date = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    quests = relationship("Quest", back_populates="user", cascade="all, delete-orphan")
    achievements = relationship("Achievement", back_populates="user", cascade="all, delete-orphan")


# =============================================================================
# ===================== TABLA 2: QUESTS =======================================
# =============================================================================

class Quest(Base):
    __tablename__ = "quests"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)

    title = Column(String(200), nullable=False)
    description = Column(Text, nullable=False)
    difficulty = Column(String(10), nullable=False)
    xp_reward = Column(Integer, nullable=False)
    created_by = Column(String(20), nullable=False, default=CreatedBy.user.value)
    proof_type = Column(String(10), nullable=False, default=ProofType.text.value)

    status = Column(String(20), nullable=False, default=QuestStatus.active.value, index=True)
    expires_at = Column(DateTime, nullable=False, index=True)
    # expires_at → fijo desde la creación, nunca se mueve
    completed_at = Column(DateTime, nullable=True)
    proof = Column(Text, nullable=True)
    # proof → URL de la foto o el texto que envía el usuario

    category = Column(String(50), nullable=True)
    ai_recommendation = Column(Text, nullable=True)
    failure_penalty = Column(JSON, nullable=True)
    # failure_penalty → {"type": "credits" | "xp", "amount": 30} (solo misiones IA)
    is_special_challenge = Column(Boolean, nullable=False, default=False)

    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, index=True)
    # updated_at → cursor "since" para el polling de clientes

    user = relationship("User", back_populates="quests")
    punishment_options = relationship(
        "PunishmentOption", back_populates="quest",
        cascade="all, delete-orphan", order_by="PunishmentOption.id"
    )


# =============================================================================
# ===================== TABLA 3: PUNISHMENT_OPTIONS ===========================
# =============================================================================
# Se crean junto con la misión y no se modifican nunca.

class PunishmentOption(Base):
    __tablename__ = "punishment_options"

    id = Column(Integer, primary_key=True, autoincrement=True)
    quest_id = Column(Integer, ForeignKey("quests.id"), nullable=False, index=True)

    type = Column(String(20), nullable=False)
    value = Column(String(200), nullable=False)
    # value → cantidad de XP/XPass ("300") o el reto físico ("50 Burpees")

    created_at = Column(DateTime, nullable=False, default=utcnow)

    quest = relationship("Quest", back_populates="punishment_options")


# =============================================================================
# ===================== TABLA 4: ACHIEVEMENTS =================================
# =============================================================================

class Achievement(Base):
    __tablename__ = "achievements"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)

    title = Column(String(200), nullable=False)
    description = Column(Text, nullable=False)
    unlocked_at = Column(DateTime, nullable=False, default=utcnow)
    xp_reward = Column(Integer, nullable=False, default=0)

    created_at = Column(DateTime, nullable=False, default=utcnow)

    user = relationship("User", back_populates="achievements")
