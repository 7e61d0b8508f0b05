"""
=============================================================================
SCHEDULER.PY — Barrido de misiones caducadas
=============================================================================
Cada SWEEP_INTERVAL_SECONDS (60 por defecto) se buscan las misiones
"active" cuyo expires_at ya pasó y se pasan a "failed" una a una a través
de lifecycle.fail_quest().

Reglas:
  - Un error en una misión (BD caída un momento, conflicto porque el usuario
    la acaba de completar...) se registra y se sigue con las demás.
  - El scheduler tiene start()/stop() explícitos: main.py lo arranca en el
    lifespan y lo para al apagar. Los tests llaman a sweep_expired() directamente.
  - Solo UNA instancia debe barrer. Con varias réplicas, poner
    SWEEPER_ENABLED=false en todas menos una.

Usa APScheduler (AsyncIOScheduler + IntervalTrigger).
"""

import asyncio
import logging
import os
from datetime import datetime
from typing import Callable, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy.orm import Session

import lifecycle
import storage
from database import SessionLocal, utcnow
from exceptions import StateConflictError
from models import Quest

logger = logging.getLogger("questline.scheduler")

SWEEP_INTERVAL_SECONDS = int(os.getenv("SWEEP_INTERVAL_SECONDS", "60"))
SWEEPER_ENABLED = os.getenv("SWEEPER_ENABLED", "true").lower() in ("1", "true", "yes")


# =============================================================================
# ===================== UNA PASADA ============================================
# =============================================================================

def sweep_expired(db: Session, now: Optional[datetime] = None) -> list[Quest]:
    """
    Una pasada del barrido. Devuelve las misiones que se marcaron como failed.
    """
    now = now or utcnow()
    expired = storage.get_expired_quests(db, now)
    if not expired:
        return []

    # Guardamos los ids antes: un rollback expira los objetos de la sesión
    quest_ids = [quest.id for quest in expired]
    failed = []

    for quest_id in quest_ids:
        try:
            failed.append(lifecycle.fail_quest(db, quest_id, now))
        except StateConflictError as e:
            # El usuario la completó (o ya se marcó) entre la consulta y la escritura
            logger.info(f"↪️ Misión {quest_id} omitida en el barrido: {e.message}")
        except Exception as e:
            logger.error(f"❌ Error marcando misión {quest_id} como fallida: {e}")

    logger.info(f"🧹 Barrido: {len(failed)}/{len(quest_ids)} misiones caducadas marcadas como failed")
    return failed


# =============================================================================
# ===================== SCHEDULER =============================================
# =============================================================================

class ExpirationSweeper:
    """
    Tarea periódica con ciclo de vida propio.

      sweeper = ExpirationSweeper()
      sweeper.start()      # dentro de un event loop
      ...
      sweeper.stop()
    """

    JOB_ID = "sweep_expired_quests"

    def __init__(self, session_factory: Callable[[], Session] = SessionLocal,
                 interval_seconds: int = SWEEP_INTERVAL_SECONDS):
        self.session_factory = session_factory
        self.interval_seconds = interval_seconds
        self.scheduler: Optional[AsyncIOScheduler] = None

    @property
    def running(self) -> bool:
        return bool(self.scheduler and self.scheduler.running)

    async def run_pass(self) -> list[int]:
        """Job del scheduler. El barrido (SQL síncrono) corre en un hilo aparte."""
        return await asyncio.to_thread(self._sweep_once)

    def _sweep_once(self) -> list[int]:
        """Abre su propia sesión, barre y la cierra"""
        db = self.session_factory()
        try:
            return [quest.id for quest in sweep_expired(db)]
        except Exception as e:
            logger.error(f"❌ Error en el barrido de misiones: {e}")
            return []
        finally:
            db.close()

    def start(self):
        if self.running:
            return
        self.scheduler = AsyncIOScheduler(timezone="UTC")
        self.scheduler.add_job(
            self.run_pass,
            IntervalTrigger(seconds=self.interval_seconds),
            id=self.JOB_ID,
            name="Marcar misiones caducadas",
            replace_existing=True,
            max_instances=1,   # nunca dos pasadas solapadas
            coalesce=True,
        )
        self.scheduler.start()
        logger.info(f"⏰ Sweeper arrancado (cada {self.interval_seconds}s)")

    def stop(self):
        if self.running:
            self.scheduler.shutdown(wait=False)
            logger.info("⏰ Sweeper parado")
        self.scheduler = None
