"""
Сервис автоматической проверки ответов по сканам.

Пайплайн: предобработка изображения -> OCR -> AI оценка (одна модель
или консенсус двух), пакетная обработка окнами фиксированного размера.
"""

from grader.config import settings
from grader.schemas import (
    BatchReport,
    BatchResult,
    ExtractionResult,
    GradingOptions,
    QuestionSpec,
    RasterImage,
    ScoreResult,
)

__all__ = [
    "settings",
    "BatchReport",
    "BatchResult",
    "ExtractionResult",
    "GradingOptions",
    "QuestionSpec",
    "RasterImage",
    "ScoreResult",
]
