"""
=============================================================================
MAIN.PY — La API de QuestLine
=============================================================================
Este archivo define TODOS los endpoints de la API REST.

Organización por secciones:
  1. AUTH         → Registro, login, perfil
  2. USUARIO      → Estadísticas, logros, XPass
  3. MISIONES     → Crear, listar, completar, castigar, polling
  4. SUGERENCIAS  → Plantillas fijas y aceptarlas
  5. IA           → Tanda diaria, sugerencia suelta, reto especial
  6. TIEMPO REAL  → WebSocket /ws

La lógica vive en lifecycle.py, generator.py, etc. Aquí solo se traducen
peticiones HTTP a llamadas de dominio.
"""

import asyncio
import logging
import os
import traceback
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import Optional

from fastapi import Depends, FastAPI, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

import gamification
import generator
import lifecycle
import storage
from auth import authenticate, create_access_token, get_current_user, register_user
from database import get_db, init_db, utcnow
from events import broadcaster
from exceptions import AuthorizationError, QuestLineError
from mistral import MistralProvider
from models import CreatedBy, Difficulty, QuestStatus, User
from scheduler import SWEEPER_ENABLED, ExpirationSweeper
from schemas import (
    AchievementResponse, CompletionResponse, PunishmentResponse, PunishmentSelect,
    QuestComplete, QuestCreate, QuestDetailResponse, QuestResponse, QuestUpdatesResponse,
    StatsResponse, SuggestionAccept, TokenResponse, UserLogin, UserRegister,
    UserResponse, XPassAdd,
)

# ─────────────────────────────────────────────────────────────────────────────
# LOGGING
# ─────────────────────────────────────────────────────────────────────────────

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(name)s] %(levelname)s: %(message)s"
)
logger = logging.getLogger("questline.api")

APP_VERSION = "1.0.0"

# Margen que /quests/updates vuelve a servir por detrás del cursor. Cubre las
# escrituras que se sellan antes de un poll pero hacen commit después.
UPDATES_OVERLAP = timedelta(seconds=float(os.getenv("UPDATES_OVERLAP_SECONDS", "5")))


# ─────────────────────────────────────────────────────────────────────────────
# LIFESPAN (Arranque y apagado)
# ─────────────────────────────────────────────────────────────────────────────

@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Arranque:
      1. Crear tablas si no existen
      2. Arrancar el sweeper de misiones caducadas (si SWEEPER_ENABLED)
    Apagado:
      - Parar el sweeper
    """
    logger.info("🚀 Arrancando QuestLine...")

    init_db()
    logger.info("✅ Base de datos inicializada")

    sweeper = None
    if SWEEPER_ENABLED:
        sweeper = ExpirationSweeper()
        sweeper.start()
    else:
        logger.warning("⚠️ Sweeper desactivado en esta instancia (SWEEPER_ENABLED=false)")

    logger.info("🎉 QuestLine operativo")

    yield  # ← La aplicación está corriendo

    logger.info("🛑 Apagando QuestLine...")
    if sweeper:
        sweeper.stop()
    logger.info("👋 Apagado completo")


# ─────────────────────────────────────────────────────────────────────────────
# APLICACIÓN FASTAPI
# ─────────────────────────────────────────────────────────────────────────────

app = FastAPI(
    title="QuestLine API",
    description="Misiones diarias, progresión y castigos",
    version=APP_VERSION,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ─────────────────────────────────────────────────────────────────────────────
# ERROR HANDLERS
# ─────────────────────────────────────────────────────────────────────────────

@app.exception_handler(QuestLineError)
async def questline_exception_handler(request: Request, exc: QuestLineError):
    """Errores de dominio → su status_code y un JSON con el detalle"""
    if exc.status_code >= 500:
        logger.error(f"❌ {type(exc).__name__} en {request.url.path}: {exc.message}")
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "detail": exc.message,
            "type": type(exc).__name__,
            **({"details": exc.details} if exc.details else {}),
        },
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Captura errores no manejados y devuelve 500 con el error real"""
    error_trace = traceback.format_exc()
    logger.error(f"❌ Error no manejado en {request.url}: {exc}\n{error_trace}")
    return JSONResponse(
        status_code=500,
        content={
            "detail": str(exc),
            "type": type(exc).__name__,
            "path": str(request.url),
        },
    )


# ─────────────────────────────────────────────────────────────────────────────
# DEPENDENCIAS
# ─────────────────────────────────────────────────────────────────────────────

def get_provider():
    """Proveedor de IA. Los tests lo sustituyen con dependency_overrides."""
    return MistralProvider()


def _own_quest(db: Session, quest_id: int, user: User):
    quest = storage.get_quest(db, quest_id)
    if quest.user_id != user.id:
        raise AuthorizationError("Acceso denegado: la misión no es suya")
    return quest


# =============================================================================
# ===================== HEALTH CHECK ==========================================
# =============================================================================

@app.get("/health", tags=["Health"])
def health_check():
    """Verifica que la API está viva"""
    return {
        "status": "ok",
        "app": "QuestLine",
        "version": APP_VERSION,
        "observers": broadcaster.subscriber_count,
        "timestamp": utcnow().isoformat(),
    }


# =============================================================================
# ===================== SECCIÓN 1: AUTH =======================================
# =============================================================================

@app.post("/auth/register", response_model=TokenResponse, tags=["Auth"])
def register(data: UserRegister, db: Session = Depends(get_db)):
    user = register_user(db, data)
    return TokenResponse(
        access_token=create_access_token(user.id, user.username),
        user_id=user.id,
        display_name=user.display_name,
    )


@app.post("/auth/login", response_model=TokenResponse, tags=["Auth"])
def login(data: UserLogin, db: Session = Depends(get_db)):
    """Inicia sesión con username (o email) y contraseña"""
    user = authenticate(db, data)
    return TokenResponse(
        access_token=create_access_token(user.id, user.username),
        user_id=user.id,
        display_name=user.display_name,
    )


@app.get("/auth/me", response_model=UserResponse, tags=["Auth"])
def get_me(user: User = Depends(get_current_user)):
    return user


# =============================================================================
# ===================== SECCIÓN 2: USUARIO ====================================
# =============================================================================

@app.get("/user/stats", response_model=StatsResponse, tags=["User"])
def get_stats(user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    active = storage.count_quests(db, user.id, QuestStatus.active)
    completed = storage.count_quests(db, user.id, QuestStatus.completed)
    return gamification.stats_for(user, active, completed)


@app.get("/achievements", response_model=list[AchievementResponse], tags=["User"])
def list_achievements(user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    return storage.list_achievements(db, user.id)


@app.post("/xpass/add", response_model=UserResponse, tags=["User"])
def add_xpass(data: XPassAdd, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    """Recarga de créditos XPass"""
    return lifecycle.grant_xpass(db, user.id, data.amount)


# =============================================================================
# ===================== SECCIÓN 3: MISIONES ===================================
# =============================================================================

@app.get("/quests", response_model=list[QuestResponse], tags=["Quests"])
def list_quests(
    status: Optional[QuestStatus] = None,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Todas las misiones del usuario, o solo las de un estado"""
    return storage.list_quests(db, user.id, status=status)


@app.get("/quests/updates", response_model=QuestUpdatesResponse, tags=["Quests"])
def quest_updates(
    since: Optional[datetime] = Query(default=None, description="Cursor devuelto por la llamada anterior"),
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """
    Polling: misiones modificadas después de `since - UPDATES_OVERLAP`.
    El cliente guarda `cursor`, lo manda en la siguiente llamada y fusiona
    por id: lo que cae dentro del margen puede llegar repetido.
    """
    since = lifecycle.to_naive_utc(since) if since else None
    quests = storage.list_quests(db, user.id, since=since - UPDATES_OVERLAP if since else None)
    stamps = [q.updated_at for q in quests] + ([since] if since else [])
    cursor = max(stamps, default=None)
    return QuestUpdatesResponse(
        quests=[QuestResponse.model_validate(q) for q in quests],
        cursor=cursor,
    )


@app.get("/quests/suggestions", tags=["Suggestions"])
def list_suggestions(user: User = Depends(get_current_user)):
    """Las cinco plantillas fijas (no usan IA)"""
    return generator.PREDEFINED_SUGGESTIONS


@app.get("/quests/{quest_id}", response_model=QuestDetailResponse, tags=["Quests"])
def get_quest(quest_id: int, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    """Una misión con sus opciones de castigo"""
    return _own_quest(db, quest_id, user)


@app.post("/quests", response_model=QuestDetailResponse, tags=["Quests"])
def create_quest(data: QuestCreate, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    return lifecycle.create_quest(db, user.id, data, created_by=CreatedBy.user)


@app.post("/quests/complete", response_model=CompletionResponse, tags=["Quests"])
def complete_quest(data: QuestComplete, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    """Completa una misión activa con su prueba. Da XP y puede subir de nivel."""
    quest, progression = lifecycle.complete_quest(db, data.quest_id, user.id, data.proof)
    return CompletionResponse(
        quest=QuestResponse.model_validate(quest),
        user_update=progression.as_dict(),
    )


@app.post("/quests/punishment", response_model=PunishmentResponse, tags=["Quests"])
def apply_punishment(data: PunishmentSelect, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    """Elige castigo para una misión fallida"""
    updated = lifecycle.apply_punishment(db, data.quest_id, user.id, data.punishment_id)
    return PunishmentResponse(message="Castigo aplicado", user=UserResponse.model_validate(updated))


# =============================================================================
# ===================== SECCIÓN 4: SUGERENCIAS ================================
# =============================================================================

@app.post("/quests/accept-suggestion", response_model=QuestDetailResponse, tags=["Suggestions"])
def accept_suggestion(data: SuggestionAccept, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    return lifecycle.create_quest(db, user.id, data, created_by=CreatedBy.suggestion)


# =============================================================================
# ===================== SECCIÓN 5: IA =========================================
# =============================================================================

@app.post("/ai/daily-tasks", response_model=list[QuestResponse], tags=["AI"])
async def daily_tasks(
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    provider=Depends(get_provider),
):
    """Genera la tanda del día (una vez por día) o devuelve las de hoy"""
    return await generator.generate_daily_quests(db, user, provider)


@app.get("/ai/suggest", tags=["AI"])
async def ai_suggest(
    difficulty: Optional[Difficulty] = None,
    special: bool = False,
    user: User = Depends(get_current_user),
    provider=Depends(get_provider),
):
    """Una propuesta de la IA, sin guardarla"""
    return await generator.suggest_quest(
        user, provider, difficulty.value if difficulty else None, special
    )


@app.get("/ai/daily-challenge", response_model=QuestResponse, tags=["AI"])
async def daily_challenge(
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    provider=Depends(get_provider),
):
    return await generator.get_daily_challenge(db, user, provider)


# =============================================================================
# ===================== SECCIÓN 6: TIEMPO REAL ================================
# =============================================================================

@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    """
    Observador en tiempo real. Recibe NEW_TASK, TASK_COMPLETED, TASK_FAILED
    y PUNISHMENT_APPLIED mientras esté conectado. Lo que se emita estando
    desconectado se pierde (para eso está /quests/updates).
    """
    queue = broadcaster.subscribe()
    await websocket.accept()

    async def pump():
        while True:
            message = await queue.get()
            await websocket.send_json(message)

    sender = asyncio.create_task(pump())
    try:
        while True:
            # Solo escuchamos para detectar la desconexión
            await websocket.receive_text()
    except WebSocketDisconnect:
        pass
    finally:
        sender.cancel()
        try:
            await sender
        except asyncio.CancelledError:
            pass
        except Exception as e:
            logger.warning(f"⚠️ No se pudo enviar al observador: {e}")
        broadcaster.unsubscribe(queue)
