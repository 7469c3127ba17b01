"""
Конфигурация сервиса автоматической проверки ответов.

Все значения читаются из .env файла (или переменных окружения).
Для всех параметров заданы рабочие значения по умолчанию.

Единый префикс: GRADER_
Документация по параметрам: .env.example
"""

from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Настройки сервиса проверки.

    Читает переменные с префиксом GRADER_ из .env файла.
    Объединяет все параметры: лимиты API, предобработка, OCR, AI-оценка,
    пакетная обработка.
    """

    model_config = SettingsConfigDict(
        env_prefix="GRADER_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # --- Сервер ---
    port: int = 8000

    # --- API: лимиты загрузки ---
    max_file_size_mb: int = 10
    allowed_formats: list[str] = ["jpeg", "png", "gif", "webp"]

    # --- Предобработка изображения ---
    # Максимальный размер стороны после resize
    max_image_size: int = 2048
    contrast: float = 1.2
    brightness: float = 10.0

    # --- Deskew: коррекция наклона (опционально) ---
    skew_threshold: float = 0.5
    deskew_resize_px: int = 1200
    deskew_num_peaks: int = 20

    # --- OCR: Tesseract ---
    ocr_oem: int = 3
    ocr_psm: int = 6
    default_language: str = "zh-CN"
    # Разрешить заглушку OCR, если движок недоступен (результат помечается is_fallback)
    allow_stub_ocr: bool = True

    # --- AI: OpenAI-совместимый chat endpoint ---
    ai_base_url: str = "https://api.openai.com/v1"
    ai_api_key: Optional[str] = None
    ai_primary_model: str = "gpt-4o"
    ai_secondary_model: Optional[str] = None
    ai_timeout_seconds: float = 60.0
    ai_temperature: float = 0.3
    ai_max_tokens: int = 1500

    # --- Оценка ---
    confidence_threshold: float = 0.8
    dual_model_validation: bool = False

    # --- Пакетная обработка ---
    max_concurrent: int = 3
    result_cache_size: int = 256


# Глобальный экземпляр настроек
settings = Settings()
