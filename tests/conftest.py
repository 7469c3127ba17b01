"""
Общие фикстуры тестов.

Фейковые OCR движок и AI модель: тесты не требуют Tesseract и сети.
Фейковый движок различает изображения по ширине PNG.
"""

import asyncio
import io
import json
from typing import Callable, Optional, Union

import pytest
from PIL import Image

from grader.config import Settings
from grader.schemas import QuestionSpec, RasterImage
from grader.services.image_preprocessor import ImagePreprocessor
from grader.services.pipeline import PipelineOrchestrator
from grader.services.result_cache import ResultCache
from grader.services.scoring_engine import ScoringEngine
from grader.services.text_extraction import TextExtractionService


SAMPLE_TEXT = "Question 1\nSolution:\nx + y = 10\nAnswer: 6"


def make_image(width: int = 8, height: int = 6, color=(120, 130, 140, 255)) -> RasterImage:
    return RasterImage.from_pil(Image.new("RGBA", (width, height), color))


def grading_json(
    score: float = 8,
    confidence: float = 0.9,
    feedback: str = "Correct system of equations, verification missing",
) -> str:
    return json.dumps({
        "score": score,
        "confidence": confidence,
        "feedback": feedback,
        "strengths": ["equations set up correctly"],
        "weaknesses": ["no verification"],
        "suggestions": ["check the result"],
        "gradingDetails": [{"criterion": "equations", "score": 3, "feedback": "ok"}],
    })


class FakeOcrEngine:
    """
    OCR движок для тестов.

    Args:
        text: возвращаемый текст
        confidence: уверенность (0-100)
        fail_widths: ширины изображений, на которых движок падает
        delays: {ширина: задержка в секундах}
        available: результат is_available()
    """

    name = "fake"

    def __init__(
        self,
        text: str = SAMPLE_TEXT,
        confidence: float = 91.0,
        fail_widths: Optional[set] = None,
        delays: Optional[dict] = None,
        available: bool = True,
    ):
        self.text = text
        self.confidence = confidence
        self.fail_widths = fail_widths or set()
        self.delays = delays or {}
        self.available = available
        self.calls = 0
        self.in_flight = 0
        self.max_in_flight = 0
        self.completed_widths = []

    def is_available(self) -> bool:
        return self.available

    async def recognize(self, image_bytes: bytes, language: str) -> dict:
        with Image.open(io.BytesIO(image_bytes)) as img:
            width = img.size[0]

        self.calls += 1
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(self.delays.get(width, 0.01))
            if width in self.fail_widths:
                raise RuntimeError(f"engine crashed on width {width}")
            self.completed_widths.append(width)
        finally:
            self.in_flight -= 1

        return {
            "text": self.text,
            "confidence": self.confidence,
            "lines": [
                {
                    "text": line,
                    "confidence": self.confidence,
                    "bbox": {"x": 0, "y": i * 20, "width": 100, "height": 20},
                }
                for i, line in enumerate(self.text.split("\n"))
            ],
            "words": [
                {
                    "text": word,
                    "confidence": self.confidence,
                    "bbox": {"x": i * 10, "y": 0, "width": 9, "height": 10},
                }
                for i, word in enumerate(self.text.split())
            ],
        }


class FakeChatModel:
    """
    AI модель для тестов.

    Args:
        name: имя модели
        reply: строка ответа или функция prompt -> строка
        error: исключение, которое выбрасывает chat()
    """

    def __init__(
        self,
        name: str = "fake-primary",
        reply: Union[str, Callable[[str], str], None] = None,
        error: Optional[Exception] = None,
    ):
        self.name = name
        self.reply = reply if reply is not None else grading_json()
        self.error = error
        self.prompts: list[str] = []

    async def chat(self, messages, temperature=0.3, max_tokens=1500) -> dict:
        prompt = messages[-1]["content"]
        self.prompts.append(prompt)
        if self.error is not None:
            raise self.error
        content = self.reply(prompt) if callable(self.reply) else self.reply
        return {"choices": [{"message": {"content": content}}]}


@pytest.fixture
def test_settings() -> Settings:
    return Settings(
        _env_file=None,
        allow_stub_ocr=False,
        confidence_threshold=0.8,
        dual_model_validation=False,
        max_concurrent=3,
        result_cache_size=16,
    )


@pytest.fixture
def question() -> QuestionSpec:
    return QuestionSpec(
        id="q1",
        standard_answer="x = 6, y = 4",
        total_score=10,
        question_type="system of equations",
    )


@pytest.fixture
def ocr_engine() -> FakeOcrEngine:
    return FakeOcrEngine()


@pytest.fixture
def primary_model() -> FakeChatModel:
    return FakeChatModel()


@pytest.fixture
def make_orchestrator(test_settings):
    """Фабрика оркестратора на фейковых движках."""

    def factory(engine=None, primary=None, secondary=None, observer=None, cache=None):
        return PipelineOrchestrator(
            preprocessor=ImagePreprocessor(test_settings),
            extractor=TextExtractionService(engine or FakeOcrEngine(), test_settings),
            scorer=ScoringEngine(primary or FakeChatModel(), secondary, test_settings),
            cache=cache if cache is not None else ResultCache(test_settings.result_cache_size),
            observer=observer,
            config=test_settings,
        )

    return factory
