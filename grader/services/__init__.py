"""
Сервисы пайплайна проверки.

Модули:
    - image_preprocessor: resize, резкость, контраст, deskew
    - ocr_engine: адаптер Tesseract
    - text_extraction: OCR + нормализация текста + анализ структуры
    - ai_client: OpenAI-совместимый chat клиент
    - scoring_engine: промпт, оценка одной/двумя моделями, правила оценки
    - result_cache: ограниченный кэш результатов
    - pipeline: оркестратор и пакетная обработка
"""

from grader.services.image_preprocessor import ImagePreprocessor
from grader.services.pipeline import (
    PipelineObserver,
    PipelineOrchestrator,
    build_orchestrator,
)
from grader.services.result_cache import ResultCache
from grader.services.scoring_engine import ScoringEngine
from grader.services.text_extraction import TextExtractionService

__all__ = [
    "ImagePreprocessor",
    "PipelineObserver",
    "PipelineOrchestrator",
    "build_orchestrator",
    "ResultCache",
    "ScoringEngine",
    "TextExtractionService",
]
