"""
=============================================================================
EVENTS.PY — Difusión de eventos en tiempo real
=============================================================================
Cada cliente conectado por WebSocket tiene su propia cola. emit() deja el
mensaje en la cola de todos los conectados en ese momento.

Es "best effort":
  - Quien no está conectado al emitir, no recibe nada (no hay historial).
  - Si la cola de un cliente lento está llena, el mensaje se descarta.
El canal fiable es el polling de GET /quests/updates?since=<cursor>.

emit() se puede llamar desde cualquier hilo (los endpoints síncronos de
FastAPI corren en un threadpool): la entrega se programa en el event loop
de cada suscriptor con call_soon_threadsafe.
"""

import asyncio
import enum
import logging
import threading
from typing import Any

from database import utcnow

logger = logging.getLogger("questline.events")


class EventType(str, enum.Enum):
    NEW_TASK = "NEW_TASK"
    TASK_COMPLETED = "TASK_COMPLETED"
    TASK_FAILED = "TASK_FAILED"
    PUNISHMENT_APPLIED = "PUNISHMENT_APPLIED"


class EventBroadcaster:
    def __init__(self, max_queue_size: int = 100):
        self.max_queue_size = max_queue_size
        self._subscribers: dict[asyncio.Queue, asyncio.AbstractEventLoop] = {}
        self._lock = threading.Lock()

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def subscribe(self) -> asyncio.Queue:
        """Registra un observador. Debe llamarse dentro de un event loop."""
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.max_queue_size)
        with self._lock:
            self._subscribers[queue] = asyncio.get_running_loop()
        logger.info(f"🔌 Observador conectado ({self.subscriber_count} activos)")
        return queue

    def unsubscribe(self, queue: asyncio.Queue):
        with self._lock:
            self._subscribers.pop(queue, None)
        logger.info(f"🔌 Observador desconectado ({self.subscriber_count} activos)")

    def emit(self, event_type: EventType | str, payload: dict[str, Any]) -> int:
        """
        Anuncia un evento a los observadores conectados.
        Devuelve a cuántos se les ha programado la entrega.
        """
        message = {
            "type": event_type.value if isinstance(event_type, EventType) else event_type,
            "data": payload,
            "timestamp": utcnow().isoformat(),
        }

        with self._lock:
            targets = list(self._subscribers.items())

        try:
            current_loop = asyncio.get_running_loop()
        except RuntimeError:
            current_loop = None

        scheduled = 0
        for queue, loop in targets:
            if loop is current_loop:
                self._deliver(queue, message)
                scheduled += 1
                continue
            try:
                loop.call_soon_threadsafe(self._deliver, queue, message)
                scheduled += 1
            except RuntimeError:
                # El loop del observador ya se cerró
                self.unsubscribe(queue)

        logger.debug(f"📣 {message['type']} → {scheduled} observadores")
        return scheduled

    @staticmethod
    def _deliver(queue: asyncio.Queue, message: dict):
        try:
            queue.put_nowait(message)
        except asyncio.QueueFull:
            logger.warning(f"⚠️ Cola llena, se descarta {message['type']}")


# Instancia única del proceso (la usan lifecycle, scheduler y main)
broadcaster = EventBroadcaster()
