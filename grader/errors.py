"""
Иерархия ошибок пайплайна проверки.

Все ошибки этапов наследуются от GradingError, чтобы оркестратор
мог перехватить их на границе process_one и превратить в запись
о неудаче конкретного элемента пакета.
"""


class GradingError(Exception):
    """Базовая ошибка пайплайна проверки."""


class ValidationError(GradingError):
    """Некорректные входные данные. Никогда не повторяется."""


class InvalidImageError(GradingError):
    """Повреждённое изображение или недопустимые размеры."""


class OcrEngineError(GradingError):
    """Сбой OCR движка при распознавании текста."""


class ResponseFormatError(GradingError):
    """Ответ AI модели не соответствует ожидаемой JSON схеме."""


class ScoringServiceError(GradingError):
    """Сбой самого вызова AI модели (сеть, HTTP статус, таймаут)."""


class BatchStateError(GradingError):
    """Недопустимый переход состояния пакетной обработки."""
