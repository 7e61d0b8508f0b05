"""
=============================================================================
MISTRAL.PY — Cliente del proveedor de IA
=============================================================================
Pide UNA propuesta de misión por llamada:

  petición  → {user_level, display_name, difficulty?, special?}
  respuesta → {title, description, category, proofType, xpReward,
               aiRecommendation, failurePenalty?}

Este módulo solo habla HTTP y parsea JSON. La validación y los valores
por defecto los pone generator.py (schemas.QuestProposal).

Cada petición tiene timeout y un número acotado de reintentos (errores de
red, 429 y 5xx). Si se agotan → ExternalProviderError.
"""

import asyncio
import json
import logging
import os
from dataclasses import dataclass
from typing import Optional

import httpx

from exceptions import ExternalProviderError

logger = logging.getLogger("questline.mistral")

MISTRAL_API_KEY = os.getenv("MISTRAL_API_KEY", "")
MISTRAL_BASE_URL = os.getenv("MISTRAL_BASE_URL", "https://api.mistral.ai/v1")
MISTRAL_MODEL = os.getenv("MISTRAL_MODEL", "open-mixtral-8x7b")
PROVIDER_TIMEOUT_SECONDS = float(os.getenv("PROVIDER_TIMEOUT_SECONDS", "20"))
PROVIDER_MAX_RETRIES = int(os.getenv("PROVIDER_MAX_RETRIES", "2"))

RETRYABLE_STATUS = {429, 500, 502, 503, 504}

XP_RANGES = {
    "easy": "50-100",
    "medium": "150-200",
    "hard": "250-350",
}


@dataclass(frozen=True)
class ProviderRequest:
    user_level: int
    display_name: str
    difficulty: Optional[str] = None
    special: bool = False


def build_prompt(request: ProviderRequest) -> str:
    if request.special:
        return (
            f"Generate 1 special daily challenge for a level {request.user_level} "
            f"user named {request.display_name}.\n"
            "It must be original and creative, combine more than one skill "
            "(physical + creative, mental + social...), be doable in a single day "
            "and feel like a special mission. Avoid overused activities such as "
            "climbing stairs, hiking or planks.\n"
            "Provide: title, description, difficulty (easy, medium or hard), category, "
            "proofType (photo or text), xpReward (100-400), aiRecommendation and "
            'failurePenalty (an object with type "credits" and amount 25-50).\n'
            "Answer with a JSON object with a 'task' object containing those fields."
        )
    return (
        f"Generate 1 {request.difficulty} difficulty self-improvement task for a level "
        f"{request.user_level} user named {request.display_name}.\n"
        "Provide: title (short, compelling), description (detailed instructions), "
        "category (fitness, productivity, learning, mindfulness...), "
        f"proofType (photo or text), xpReward ({XP_RANGES.get(request.difficulty, '50-350')}), "
        "aiRecommendation (tips to complete it) and failurePenalty "
        '(an object with type "credits" and amount 10-50 depending on difficulty).\n'
        "Answer with a JSON object with a 'task' object containing those fields."
    )


class MistralProvider:
    """Proveedor real (API de chat completions de Mistral)"""

    def __init__(self, api_key: str = MISTRAL_API_KEY, base_url: str = MISTRAL_BASE_URL,
                 model: str = MISTRAL_MODEL, timeout: float = PROVIDER_TIMEOUT_SECONDS,
                 max_retries: int = PROVIDER_MAX_RETRIES,
                 transport: Optional[httpx.AsyncBaseTransport] = None,
                 retry_delay: float = 0.5):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.timeout = timeout
        self.max_retries = max_retries
        self.transport = transport
        self.retry_delay = retry_delay

    async def propose(self, request: ProviderRequest) -> dict:
        """Devuelve el objeto 'task' tal cual lo manda la IA (sin validar)"""
        if not self.api_key:
            raise ExternalProviderError("Falta MISTRAL_API_KEY")

        content = await self._chat(build_prompt(request), temperature=0.8 if request.special else 0.7)
        try:
            parsed = json.loads(content)
        except (TypeError, json.JSONDecodeError) as e:
            raise ExternalProviderError(f"Respuesta de la IA no es JSON: {e}")

        if not isinstance(parsed, dict):
            raise ExternalProviderError("Respuesta de la IA con formato inesperado")
        proposal = parsed.get("task") or parsed.get("challenge") or parsed
        if not isinstance(proposal, dict):
            raise ExternalProviderError("La IA no devolvió ninguna misión")
        return proposal

    async def _chat(self, prompt: str, temperature: float) -> str:
        payload = {
            "model": self.model,
            "messages": [{"role": "user", "content": prompt}],
            "temperature": temperature,
            "response_format": {"type": "json_object"},
        }
        headers = {"Authorization": f"Bearer {self.api_key}"}

        last_error = None
        async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
            for attempt in range(self.max_retries + 1):
                if attempt:
                    await asyncio.sleep(self.retry_delay * (2 ** (attempt - 1)))
                try:
                    response = await client.post(
                        f"{self.base_url}/chat/completions", json=payload, headers=headers
                    )
                except httpx.HTTPError as e:
                    last_error = f"{type(e).__name__}: {e}"
                    logger.warning(f"⚠️ Fallo de red con la IA (intento {attempt + 1}): {last_error}")
                    continue

                if response.status_code in RETRYABLE_STATUS:
                    last_error = f"HTTP {response.status_code}"
                    logger.warning(f"⚠️ La IA respondió {response.status_code} (intento {attempt + 1})")
                    continue
                if response.status_code >= 400:
                    raise ExternalProviderError(
                        f"La IA rechazó la petición: HTTP {response.status_code}",
                        {"body": response.text[:500]},
                    )

                try:
                    data = response.json()
                    return data["choices"][0]["message"]["content"]
                except (ValueError, KeyError, IndexError, TypeError) as e:
                    raise ExternalProviderError(f"Respuesta de la IA mal formada: {e}")

        raise ExternalProviderError(
            f"La IA no respondió tras {self.max_retries + 1} intentos ({last_error})"
        )
