"""
Адаптер OCR движка (Tesseract).

Граница с внешним движком: recognize(image_bytes, language) ->
{text, confidence, lines, words}. Координаты в формате {x, y, width, height},
уверенность по шкале 0-100.

ОПТИМИЗИРОВАНО: один вызов image_to_data вместо image_to_string + image_to_data.
Текст и строки собираются из того же словаря по block/par/line номерам.
"""

import io
import logging
from typing import Optional, Protocol

import pytesseract
from PIL import Image
from starlette.concurrency import run_in_threadpool

from grader.config import Settings, settings
from grader.errors import OcrEngineError

logger = logging.getLogger(__name__)

# Коды языков API -> языки Tesseract
TESSERACT_LANGUAGES = {
    "zh-CN": "chi_sim",
    "zh-TW": "chi_tra",
    "en": "eng",
    "ja": "jpn",
    "ko": "kor",
}


class OcrEngine(Protocol):
    """Контракт OCR движка."""

    name: str

    async def recognize(self, image_bytes: bytes, language: str) -> dict:
        ...

    def is_available(self) -> bool:
        ...


class TesseractEngine:
    """
    OCR через pytesseract.

    Синхронный Tesseract выполняется в threadpool, чтобы не блокировать
    event loop пакетной обработки.
    """

    name = "tesseract"

    def __init__(self, config: Optional[Settings] = None):
        self.config = config or settings
        self._available: Optional[bool] = None

    def is_available(self) -> bool:
        """Проверяет, установлен ли бинарник Tesseract (результат кэшируется)."""
        if self._available is None:
            try:
                version = pytesseract.get_tesseract_version()
                logger.info(f"Tesseract доступен: {version}")
                self._available = True
            except Exception as e:
                logger.warning(f"Tesseract недоступен: {e}")
                self._available = False
        return self._available

    async def recognize(self, image_bytes: bytes, language: str) -> dict:
        return await run_in_threadpool(self._recognize_sync, image_bytes, language)

    def _recognize_sync(self, image_bytes: bytes, language: str) -> dict:
        lang = TESSERACT_LANGUAGES.get(language, language)
        config = f"--oem {self.config.ocr_oem} --psm {self.config.ocr_psm}"

        try:
            with Image.open(io.BytesIO(image_bytes)) as image:
                data = pytesseract.image_to_data(
                    image,
                    lang=lang,
                    config=config,
                    output_type=pytesseract.Output.DICT,
                )
        except Exception as e:
            raise OcrEngineError(f"Ошибка распознавания Tesseract ({lang}): {e}") from e

        return parse_tesseract_data(data)


def parse_tesseract_data(data: dict) -> dict:
    """
    Преобразует словарь image_to_data в результат OCR.

    Алгоритм:
        - Слова одной строки (block, par, line) соединяются пробелами
        - Строки соединяются переводом строки
        - Уверенность строки и страницы: среднее по словам, conf < 0 считается как 0

    Args:
        data: словарь от pytesseract.image_to_data()

    Returns:
        dict: {text, confidence, lines, words}
    """
    n = len(data["text"])

    words: list[dict] = []
    # {(block, par, line): [word]}
    grouped: dict[tuple[int, int, int], list[dict]] = {}

    for i in range(n):
        word_text = str(data["text"][i]).strip()
        if not word_text:
            continue

        conf = float(data["conf"][i])
        word = {
            "text": word_text,
            "confidence": conf if conf >= 0 else 0.0,
            "bbox": {
                "x": int(data["left"][i]),
                "y": int(data["top"][i]),
                "width": int(data["width"][i]),
                "height": int(data["height"][i]),
            },
        }
        words.append(word)

        key = (data["block_num"][i], data["par_num"][i], data["line_num"][i])
        grouped.setdefault(key, []).append(word)

    lines = []
    for key in sorted(grouped):
        line_words = grouped[key]
        left = min(w["bbox"]["x"] for w in line_words)
        top = min(w["bbox"]["y"] for w in line_words)
        right = max(w["bbox"]["x"] + w["bbox"]["width"] for w in line_words)
        bottom = max(w["bbox"]["y"] + w["bbox"]["height"] for w in line_words)

        lines.append({
            "text": " ".join(w["text"] for w in line_words),
            "confidence": sum(w["confidence"] for w in line_words) / len(line_words),
            "bbox": {"x": left, "y": top, "width": right - left, "height": bottom - top},
        })

    confidences = [w["confidence"] for w in words]
    avg_confidence = sum(confidences) / len(confidences) if confidences else 0.0

    return {
        "text": "\n".join(line["text"] for line in lines),
        "confidence": avg_confidence,
        "lines": lines,
        "words": words,
    }
