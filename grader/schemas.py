"""
Единые схемы данных сервиса проверки.

Включает:
    - Pydantic модели для API (задание, параметры проверки, ответы)
    - Внутренние dataclass'ы пайплайна (изображение, результат OCR,
      результат оценки, элементы пакета)
"""

import io
from dataclasses import asdict, dataclass, field, is_dataclass
from enum import Enum
from typing import Any, Optional

from PIL import Image
from pydantic import BaseModel, Field

from grader.errors import InvalidImageError


# =============================================================================
# Pydantic модели для API
# =============================================================================


class GradingPoint(BaseModel):
    """
    Один пункт критериев оценивания.

    Attributes:
        description: что проверяется
        score: сколько баллов даёт пункт
    """

    description: str
    score: float


class QuestionSpec(BaseModel):
    """
    Задание, по которому оценивается ответ.

    Ограничения (total_score > 0, непустой эталон) проверяются
    ScoringEngine перед вызовом модели, а не при разборе JSON.

    Attributes:
        id: идентификатор задания (ключ кэша результатов)
        standard_answer: эталонный ответ
        total_score: максимальный балл
        question_type: тип задания
        grading_points: покомпонентные критерии (опционально)
    """

    id: Optional[str] = None
    standard_answer: str = ""
    total_score: float = 0.0
    question_type: str = "解答题"
    grading_points: list[GradingPoint] = Field(default_factory=list)


class GradingOptions(BaseModel):
    """
    Параметры проверки от пользователя.

    Поля со значением None берутся из settings.

    Attributes:
        language: язык OCR ('zh-CN', 'zh-TW', 'en', 'ja', 'ko')
        enhance_ocr: применять резкость и контраст перед OCR
        math_optimization: замена ASCII обозначений на математические символы
        chinese_punctuation: замена ASCII пунктуации на полноширинную
        deskew: коррекция наклона скана перед resize
        max_width: дополнительное ограничение ширины изображения
        confidence_threshold: порог уверенности для ручной проверки
        dual_model_validation: оценка двумя моделями с консенсусом
        max_concurrent: размер окна пакетной обработки
    """

    language: str = Field(
        default="zh-CN",
        description="Язык OCR: zh-CN, zh-TW, en, ja, ko",
    )
    enhance_ocr: bool = True
    math_optimization: bool = True
    chinese_punctuation: bool = True
    deskew: bool = False
    max_width: Optional[int] = Field(default=None, ge=1)
    confidence_threshold: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    dual_model_validation: Optional[bool] = None
    max_concurrent: Optional[int] = Field(default=None, ge=1)


class FileInfo(BaseModel):
    """
    Информация о загруженном файле.

    Attributes:
        filename: имя файла
        size_bytes: размер файла в байтах
    """

    filename: str
    size_bytes: int


class GradeResponse(BaseModel):
    """
    Ответ API на проверку одного изображения.

    Attributes:
        success: успешность обработки
        processing_time_ms: время обработки в мс
        ocr: результат распознавания (если дошли до него)
        grading: результат оценки
        file_info: информация о файле
        error: сообщение об ошибке (если success=False)
    """

    success: bool
    processing_time_ms: int
    ocr: Optional[dict] = None
    grading: Optional[dict] = None
    file_info: FileInfo
    error: Optional[str] = None


class ItemResponse(BaseModel):
    """
    Результат одного элемента пакета в ответе API.

    Attributes:
        index: позиция файла в запросе
        success: успешность обработки
        question_id: идентификатор задания
        ocr: результат распознавания (если дошли до него)
        grading: результат оценки
        error: сообщение об ошибке (если success=False)
    """

    index: int
    success: bool
    question_id: Optional[str] = None
    ocr: Optional[dict] = None
    grading: Optional[dict] = None
    error: Optional[str] = None


class BatchResponse(BaseModel):
    """
    Ответ API на пакетную проверку.

    Attributes:
        success: пакет обработан (отдельные элементы могут быть неуспешны)
        total: количество изображений
        successful: успешно оценённых
        failed: неуспешных (включая отменённые)
        cancelled: был ли пакет отменён
        processing_time_ms: общее время в мс
        results: результаты в порядке загрузки файлов
        timestamp: время завершения (unix, мс)
    """

    success: bool
    total: int
    successful: int
    failed: int
    cancelled: bool = False
    processing_time_ms: int
    results: list[ItemResponse] = []
    timestamp: int


# =============================================================================
# Внутренние dataclass'ы пайплайна
# =============================================================================


@dataclass(frozen=True)
class RasterImage:
    """
    Растровое изображение в RGBA.

    Неизменяемо: каждый шаг предобработки возвращает новый объект.

    Attributes:
        width: ширина в пикселях
        height: высота в пикселях
        pixels: байты RGBA, длина width * height * 4
    """

    width: int
    height: int
    pixels: bytes = field(repr=False)

    def __post_init__(self) -> None:
        if self.width <= 0 or self.height <= 0:
            raise InvalidImageError(
                f"Недопустимые размеры изображения: {self.width}x{self.height}"
            )
        expected = self.width * self.height * 4
        if len(self.pixels) != expected:
            raise InvalidImageError(
                f"Размер буфера {len(self.pixels)} байт не совпадает "
                f"с ожидаемым {expected} для {self.width}x{self.height} RGBA"
            )

    @classmethod
    def from_pil(cls, image: Image.Image) -> "RasterImage":
        rgba = image.convert("RGBA")
        width, height = rgba.size
        return cls(width=width, height=height, pixels=rgba.tobytes())

    def to_pil(self) -> Image.Image:
        return Image.frombytes("RGBA", (self.width, self.height), self.pixels)

    def to_png_bytes(self) -> bytes:
        """Кодирует изображение в PNG для передачи OCR движку."""
        buffer = io.BytesIO()
        self.to_pil().save(buffer, format="PNG")
        return buffer.getvalue()


@dataclass
class BoundingBox:
    x: int
    y: int
    width: int
    height: int


@dataclass
class TextLine:
    """
    Распознанная строка.

    Attributes:
        text: текст строки
        confidence: уверенность OCR (0-100)
        bbox: прямоугольник строки
    """

    text: str
    confidence: float
    bbox: BoundingBox


@dataclass
class TextWord:
    """Распознанное слово (уверенность 0-100)."""

    text: str
    confidence: float
    bbox: BoundingBox


@dataclass
class StructureEntry:
    text: str
    line: int


@dataclass
class TextStructure:
    """
    Результат анализа структуры ответа.

    Attributes:
        title: заголовок задания (только строка 0)
        questions: строки с маркером решения ("解:", "Solution:")
        equations: строки с формулами
        answers: строки с итоговым ответом ("答:", "Therefore")
    """

    title: Optional[str] = None
    questions: list[StructureEntry] = field(default_factory=list)
    equations: list[StructureEntry] = field(default_factory=list)
    answers: list[StructureEntry] = field(default_factory=list)


@dataclass
class ExtractionResult:
    """
    Результат извлечения текста с изображения.

    Attributes:
        text: нормализованный текст
        original_text: текст как его вернул OCR движок
        confidence: средняя уверенность (0-100)
        lines: строки с координатами
        words: слова с координатами
        structure: разметка заголовка/решения/формул/ответа
        language: язык распознавания
        engine: имя движка, выдавшего результат
        is_fallback: True, если это заглушка, а не настоящий OCR
    """

    text: str
    original_text: str
    confidence: float
    lines: list[TextLine] = field(default_factory=list)
    words: list[TextWord] = field(default_factory=list)
    structure: TextStructure = field(default_factory=TextStructure)
    language: str = "zh-CN"
    engine: str = "unknown"
    is_fallback: bool = False


@dataclass
class ConsensusComparison:
    """
    Сравнение двух независимых оценок.

    Attributes:
        score_difference: |score1 - score2|
        confidence_difference: |confidence1 - confidence2|
        consensus_score: согласованный балл
        confidence: производная уверенность консенсуса
        needs_review: сильное расхождение или низкая уверенность
    """

    score_difference: float
    confidence_difference: float
    consensus_score: float
    confidence: float
    needs_review: bool


@dataclass
class ScoreResult:
    """
    Результат оценки ответа.

    Attributes:
        score: балл (0 <= score <= total_score после apply_grading_rules)
        total_score: максимальный балл задания
        confidence: уверенность модели (0.0-1.0)
        grade_level: excellent / good / fair / pass / fail
        needs_review: требуется ручная проверка
        feedback: общий отзыв
        strengths: сильные стороны
        weaknesses: недочёты
        suggestions: рекомендации
        grading_details: разбор по критериям
        question_type: тип задания
        model: модель, выставившая оценку
        timestamp: время оценки (unix, мс)
        primary: оценка основной модели (режим двух моделей)
        secondary: оценка проверочной модели (режим двух моделей)
        comparison: сравнение двух оценок
        ocr_confidence: уверенность OCR исходного текста
        processed_text: текст, который оценивался
    """

    score: float
    total_score: float = 0.0
    confidence: float = 0.0
    grade_level: str = ""
    needs_review: bool = True
    feedback: str = ""
    strengths: list[str] = field(default_factory=list)
    weaknesses: list[str] = field(default_factory=list)
    suggestions: list[str] = field(default_factory=list)
    grading_details: list[dict] = field(default_factory=list)
    question_type: str = ""
    model: str = ""
    timestamp: int = 0
    primary: Optional["ScoreResult"] = None
    secondary: Optional["ScoreResult"] = None
    comparison: Optional[ConsensusComparison] = None
    ocr_confidence: Optional[float] = None
    processed_text: Optional[str] = None


@dataclass
class BatchItem:
    index: int
    image: RasterImage
    question: QuestionSpec


@dataclass
class BatchResult:
    """
    Результат обработки одного элемента пакета.

    Attributes:
        index: позиция во входном списке
        success: успешность обработки
        ocr: результат извлечения текста
        grading: результат оценки
        error: сообщение об ошибке (если success=False)
        question_id: идентификатор задания
    """

    index: int
    success: bool
    ocr: Optional[ExtractionResult] = None
    grading: Optional[ScoreResult] = None
    error: Optional[str] = None
    question_id: Optional[str] = None


@dataclass
class BatchReport:
    """
    Итог пакетной обработки.

    Attributes:
        results: результаты, отсортированные по index
        total: количество элементов
        successful: успешных
        failed: неуспешных
        cancelled: пакет был отменён
        timestamp: время завершения (unix, мс)
    """

    results: list[BatchResult]
    total: int
    successful: int
    failed: int
    cancelled: bool = False
    timestamp: int = 0


class BatchState(str, Enum):
    """Состояния пакетной обработки: idle -> running -> completed | cancelled."""

    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


def to_dict(value: Any) -> Any:
    """
    Преобразует dataclass'ы пайплайна в сериализуемые словари.

    RasterImage не сериализуется (байты пикселей в JSON не нужны).
    """
    if value is None:
        return None
    if isinstance(value, list):
        return [to_dict(v) for v in value]
    if is_dataclass(value) and not isinstance(value, RasterImage):
        return asdict(value)
    return value
