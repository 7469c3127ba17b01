"""
Извлечение текста из изображения ответа.

Содержит:
    - TextExtractionService: вызов OCR движка + постобработка
    - Нормализацию математических символов, пунктуации и пробелов
    - Анализ структуры: заголовок / решение / формулы / ответ

Если OCR движок не настроен или недоступен, сервис может вернуть
заглушку (allow_stub_ocr). Такой результат всегда помечен
is_fallback=True и engine="stub".
"""

import logging
import re
import time
from typing import Optional

from starlette.concurrency import run_in_threadpool

from grader.config import Settings, settings
from grader.errors import OcrEngineError
from grader.schemas import (
    BoundingBox,
    ExtractionResult,
    RasterImage,
    StructureEntry,
    TextLine,
    TextStructure,
    TextWord,
)
from grader.services.ocr_engine import OcrEngine

logger = logging.getLogger(__name__)


SUPPORTED_LANGUAGES = {
    "zh-CN": "简体中文",
    "zh-TW": "繁體中文",
    "en": "English",
    "ja": "日本語",
    "ko": "한국어",
}

# Замены применяются по порядку, как литеральные подстроки
MATH_SYMBOLS = [
    ("x", "×"),
    ("/", "÷"),
    ("->", "→"),
    ("<=", "≤"),
    (">=", "≥"),
    ("!=", "≠"),
    ("alpha", "α"),
    ("beta", "β"),
    ("gamma", "γ"),
    ("delta", "δ"),
]

CJK_PUNCTUATION = [
    (",", "，"),
    (".", "。"),
    ("?", "？"),
    ("!", "！"),
    (":", "："),
    (";", "；"),
    ("(", "（"),
    (")", "）"),
    ("[", "【"),
    ("]", "】"),
]

TITLE_PATTERN = re.compile(r"第\d+题|Question \d+", re.IGNORECASE)
SOLUTION_PATTERN = re.compile(r"解[:：]|解\s*答|Solution[:：]", re.IGNORECASE)
EQUATION_PATTERN = re.compile(r"[=＝<>≤≥≠+\-×÷*/^]|frac\{|sqrt\{|\d")
ANSWER_PATTERN = re.compile(
    r"答[:：]|答案[:：]|因此|所以|Answer[:：]|Therefore",
    re.IGNORECASE,
)

# Заглушка для разработки без OCR движка
STUB_TEXTS = {
    "zh-CN": (
        "第1题（满分10分）\n"
        "解:\n"
        "由题意得 x + y = 10, x - y = 2\n"
        "两式相加得 2x = 12\n"
        "所以 x = 6, y = 4\n"
        "答: x = 6, y = 4"
    ),
    "en": (
        "Question 1 (10 points)\n"
        "Solution:\n"
        "From the problem, x + y = 10 and x - y = 2\n"
        "Adding both equations gives 2x = 12\n"
        "Therefore x = 6, y = 4\n"
        "Answer: x = 6, y = 4"
    ),
}
STUB_CONFIDENCE = 95.0


# =============================================================================
# Постобработка текста
# =============================================================================


def normalize_math_symbols(text: str) -> str:
    for source, target in MATH_SYMBOLS:
        text = text.replace(source, target)
    return text


def normalize_cjk_punctuation(text: str) -> str:
    for source, target in CJK_PUNCTUATION:
        text = text.replace(source, target)
    return text


def normalize_whitespace(text: str) -> str:
    """Сжимает пробелы/табы, убирает пробелы вокруг переводов строк, trim."""
    text = re.sub(r"[ \t]+", " ", text)
    text = re.sub(r"\s*\n\s*", "\n", text)
    return text.strip()


def analyze_structure(text: str) -> TextStructure:
    """
    Размечает строки текста по шаблонам.

    Проверки независимы: одна строка может попасть в несколько категорий.
    Заголовок ищется только в строке 0.

    Args:
        text: нормализованный текст

    Returns:
        TextStructure: заголовок, решения, формулы, ответы
    """
    structure = TextStructure()

    for index, line in enumerate(text.split("\n")):
        trimmed = line.strip()

        if index == 0 and TITLE_PATTERN.search(trimmed):
            structure.title = trimmed

        if SOLUTION_PATTERN.search(trimmed):
            structure.questions.append(StructureEntry(text=trimmed, line=index))

        if EQUATION_PATTERN.search(trimmed):
            structure.equations.append(StructureEntry(text=trimmed, line=index))

        if ANSWER_PATTERN.search(trimmed):
            structure.answers.append(StructureEntry(text=trimmed, line=index))

    return structure


def _to_bbox(raw: Optional[dict]) -> BoundingBox:
    raw = raw or {}
    return BoundingBox(
        x=int(raw.get("x", 0)),
        y=int(raw.get("y", 0)),
        width=int(raw.get("width", 0)),
        height=int(raw.get("height", 0)),
    )


# =============================================================================
# Сервис
# =============================================================================


class TextExtractionService:
    """
    Извлечение текста: OCR движок -> нормализация -> анализ структуры.

    Args:
        engine: OCR движок (None: только заглушка, если она разрешена)
        config: настройки (по умолчанию глобальные settings)
        allow_stub: разрешить заглушку (по умолчанию settings.allow_stub_ocr)
    """

    def __init__(
        self,
        engine: Optional[OcrEngine] = None,
        config: Optional[Settings] = None,
        allow_stub: Optional[bool] = None,
    ):
        self.engine = engine
        self.config = config or settings
        self.allow_stub = self.config.allow_stub_ocr if allow_stub is None else allow_stub

    async def extract(
        self,
        image: RasterImage,
        language: Optional[str] = None,
        math_optimization: bool = True,
        chinese_punctuation: bool = True,
    ) -> ExtractionResult:
        """
        Распознаёт текст изображения и нормализует его.

        Постобработка в фиксированном порядке:
            1. Математические символы (если math_optimization)
            2. Полноширинная пунктуация (если chinese_punctuation)
            3. Нормализация пробелов (всегда)

        Args:
            image: предобработанное изображение
            language: код языка (по умолчанию settings.default_language)
            math_optimization: заменять ASCII обозначения символами
            chinese_punctuation: заменять пунктуацию полноширинной

        Returns:
            ExtractionResult: текст, уверенность, строки, слова, структура

        Raises:
            OcrEngineError: сбой движка или движок недоступен без заглушки
        """
        language = language or self.config.default_language
        start = time.perf_counter()

        if self.engine is not None and self.engine.is_available():
            image_bytes = await run_in_threadpool(image.to_png_bytes)
            try:
                raw = await self.engine.recognize(image_bytes, language)
            except OcrEngineError:
                raise
            except Exception as e:
                raise OcrEngineError(f"OCR движок {self.engine.name}: {e}") from e
            engine_name = self.engine.name
            is_fallback = False
        elif self.allow_stub:
            logger.warning(
                "OCR движок недоступен, используется заглушка (is_fallback=True)"
            )
            raw = self._stub_result(language)
            engine_name = "stub"
            is_fallback = True
        else:
            raise OcrEngineError("OCR движок недоступен, заглушка отключена")

        original_text = raw.get("text") or ""
        text = original_text
        if math_optimization:
            text = normalize_math_symbols(text)
        if chinese_punctuation:
            text = normalize_cjk_punctuation(text)
        text = normalize_whitespace(text)

        result = ExtractionResult(
            text=text,
            original_text=original_text,
            confidence=float(raw.get("confidence") or 0.0),
            lines=[
                TextLine(
                    text=line.get("text", ""),
                    confidence=float(line.get("confidence", 0.0)),
                    bbox=_to_bbox(line.get("bbox")),
                )
                for line in raw.get("lines") or []
            ],
            words=[
                TextWord(
                    text=word.get("text", ""),
                    confidence=float(word.get("confidence", 0.0)),
                    bbox=_to_bbox(word.get("bbox")),
                )
                for word in raw.get("words") or []
            ],
            structure=analyze_structure(text),
            language=language,
            engine=engine_name,
            is_fallback=is_fallback,
        )

        duration = int((time.perf_counter() - start) * 1000)
        logger.info(
            f"   OCR ({engine_name}): {len(text)} симв., "
            f"уверенность {result.confidence:.0f}%, {duration}ms"
        )
        return result

    def _stub_result(self, language: str) -> dict:
        """Детерминированная заглушка в формате ответа движка."""
        text = STUB_TEXTS.get(language, STUB_TEXTS["zh-CN"])
        lines = []
        words = []
        for index, line in enumerate(text.split("\n")):
            lines.append({
                "text": line,
                "confidence": STUB_CONFIDENCE,
                "bbox": {"x": 0, "y": index * 20, "width": 400, "height": 20},
            })
            for position, word in enumerate(line.split()):
                words.append({
                    "text": word,
                    "confidence": STUB_CONFIDENCE,
                    "bbox": {"x": position * 40, "y": index * 20, "width": 35, "height": 15},
                })
        return {
            "text": text,
            "confidence": STUB_CONFIDENCE,
            "lines": lines,
            "words": words,
        }

    def get_supported_languages(self) -> list[dict]:
        return [{"code": code, "name": name} for code, name in SUPPORTED_LANGUAGES.items()]

    def get_status(self) -> dict:
        engine_available = self.engine is not None and self.engine.is_available()
        return {
            "engine": self.engine.name if self.engine is not None else None,
            "engine_available": engine_available,
            "allow_stub": self.allow_stub,
            "default_language": self.config.default_language,
            "supported_languages": list(SUPPORTED_LANGUAGES),
        }
