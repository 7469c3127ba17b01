"""
Клиент AI модели (OpenAI-совместимый chat completions endpoint).

Граница с внешней моделью:
    chat(messages, temperature, max_tokens) -> {"choices": [{"message": {"content": ...}}]}

Ошибки сети и HTTP статусы превращаются в ScoringServiceError.
"""

import logging
from typing import Optional, Protocol

import httpx

from grader.errors import ScoringServiceError

logger = logging.getLogger(__name__)


class ChatModel(Protocol):
    """Контракт AI модели для оценки."""

    name: str

    async def chat(
        self,
        messages: list[dict],
        temperature: float = 0.3,
        max_tokens: int = 1500,
    ) -> dict:
        ...


class OpenAICompatibleClient:
    """
    Вызов {base_url}/chat/completions с Bearer авторизацией.

    Args:
        model: имя модели (передаётся в теле запроса)
        base_url: базовый URL API (без /chat/completions)
        api_key: ключ API
        timeout_seconds: таймаут запроса
        transport: транспорт httpx (в тестах MockTransport)
    """

    def __init__(
        self,
        model: str,
        base_url: str,
        api_key: Optional[str],
        timeout_seconds: float = 60.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.name = model
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout_seconds = timeout_seconds
        self.transport = transport

    async def chat(
        self,
        messages: list[dict],
        temperature: float = 0.3,
        max_tokens: int = 1500,
    ) -> dict:
        if not self.api_key:
            raise ScoringServiceError(f"Не задан API ключ для модели {self.name}")

        payload = {
            "model": self.name,
            "messages": messages,
            "temperature": temperature,
            "max_tokens": max_tokens,
        }
        headers = {"Authorization": f"Bearer {self.api_key}"}

        try:
            async with httpx.AsyncClient(
                timeout=self.timeout_seconds,
                transport=self.transport,
            ) as client:
                response = await client.post(
                    f"{self.base_url}/chat/completions",
                    json=payload,
                    headers=headers,
                )
                response.raise_for_status()
                return response.json()
        except httpx.TimeoutException as e:
            raise ScoringServiceError(
                f"Модель {self.name} не ответила за {self.timeout_seconds} секунд"
            ) from e
        except httpx.HTTPStatusError as e:
            raise ScoringServiceError(
                f"Модель {self.name} вернула HTTP {e.response.status_code}"
            ) from e
        except (httpx.HTTPError, ValueError) as e:
            raise ScoringServiceError(f"Ошибка вызова модели {self.name}: {e}") from e
