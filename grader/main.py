"""
Сервис проверки ответов: FastAPI приложение.

Эндпоинты:
    POST   /grade/execute: проверка одного изображения по заданию
    POST   /grade/batch: пакетная проверка (окна по max_concurrent)
    GET    /health: проверка работоспособности (Tesseract + AI + конфиг)
    GET    /results/stats: статистика кэша результатов
    GET    /results/{question_id}: последний результат по заданию
    DELETE /results: очистка кэша результатов

Запуск:
    uvicorn grader.main:app --host 0.0.0.0 --port 8000
"""

import json
import logging
import os
import time
from typing import Optional

from fastapi import Depends, FastAPI, File, Form, HTTPException, Request, UploadFile
from fastapi.responses import JSONResponse
from pydantic import ValidationError as PydanticValidationError

from grader.config import settings
from grader.errors import BatchStateError, InvalidImageError, ValidationError
from grader.schemas import (
    BatchResponse,
    FileInfo,
    GradeResponse,
    GradingOptions,
    ItemResponse,
    QuestionSpec,
    RasterImage,
    to_dict,
)
from grader.services.image_preprocessor import ImagePreprocessor
from grader.services.pipeline import PipelineOrchestrator, build_orchestrator
from grader.services.result_cache import ResultCache

# Настройка логгера
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [Grader] %(message)s",
    datefmt="%H:%M:%S",
)
logger = logging.getLogger(__name__)


class UnicodeJSONResponse(JSONResponse):
    """JSON ответ без \\uXXXX экранирования (китайский текст ответов, символы ×÷≤)."""

    def render(self, content) -> bytes:
        return json.dumps(
            content,
            ensure_ascii=False,
            allow_nan=False,
            indent=None,
            separators=(",", ":"),
        ).encode("utf-8")


# FastAPI приложение
app = FastAPI(
    title="Grading Service",
    description="Автоматическая проверка ответов по сканам: OCR + AI оценка",
    version="1.0.0",
    default_response_class=UnicodeJSONResponse,
)

# Кэш результатов живёт дольше одного запроса
app.state.result_cache = ResultCache(settings.result_cache_size)


def get_result_cache(request: Request) -> ResultCache:
    return request.app.state.result_cache


def get_orchestrator(
    cache: ResultCache = Depends(get_result_cache),
) -> PipelineOrchestrator:
    """Новый оркестратор на каждый запрос, кэш общий."""
    return build_orchestrator(settings, cache=cache)


@app.get("/health")
async def health_check() -> dict:
    """
    Проверка работоспособности сервиса.

    Проверяет доступность Tesseract и наличие ключа AI,
    возвращает текущую конфигурацию.

    Returns:
        dict: статус сервиса и информация о системе
    """
    tesseract_ok = False
    tesseract_version = "unknown"
    try:
        import pytesseract
        tesseract_version = str(pytesseract.get_tesseract_version())
        tesseract_ok = True
    except Exception as e:
        tesseract_version = f"error: {e}"

    ai_configured = bool(settings.ai_api_key)

    return {
        "status": "ok" if tesseract_ok and ai_configured else "degraded",
        "service": "grading-service",
        "version": "1.0.0",
        "cpu_count": os.cpu_count(),
        "tesseract": {
            "available": tesseract_ok,
            "version": tesseract_version,
            "stub_fallback": settings.allow_stub_ocr,
        },
        "ai": {
            "configured": ai_configured,
            "primary_model": settings.ai_primary_model,
            "secondary_model": settings.ai_secondary_model,
        },
        "config": {
            "max_file_size_mb": settings.max_file_size_mb,
            "allowed_formats": settings.allowed_formats,
            "max_image_size": settings.max_image_size,
            "confidence_threshold": settings.confidence_threshold,
            "dual_model_validation": settings.dual_model_validation,
            "max_concurrent": settings.max_concurrent,
        },
    }


@app.post("/grade/execute", response_model=GradeResponse)
async def grade_image(
    file: UploadFile = File(..., description="Изображение ответа (jpeg/png/gif/webp)"),
    question: str = Form(
        ...,
        description='JSON задания: {"id": "q1", "standard_answer": "x = 6", "total_score": 10}',
    ),
    config: Optional[str] = Form(
        default=None,
        description='JSON параметров: {"language": "zh-CN", "dual_model_validation": true}',
    ),
    orchestrator: PipelineOrchestrator = Depends(get_orchestrator),
) -> GradeResponse:
    """
    Проверяет одно изображение по одному заданию.

    Ошибки этапов пайплайна не приводят к HTTP ошибке: ответ
    содержит success=False и текст ошибки.

    Raises:
        HTTPException: при ошибках валидации запроса
    """
    start_time = time.time()

    # 1. Парсим задание и параметры
    question_spec = _parse_question(question)
    options = _parse_config(config)
    logger.info(f"Получен файл: {file.filename}, задание: {question_spec.id}")

    # 2. Читаем и валидируем файл
    image, file_info = await _validate_and_read_file(file, orchestrator.preprocessor)

    # 3. Пайплайн
    result = await orchestrator.process_one(image, question_spec, options)

    processing_time_ms = int((time.time() - start_time) * 1000)
    logger.info(
        f"Проверка завершена: success={result.success} за {processing_time_ms}ms"
    )

    return GradeResponse(
        success=result.success,
        processing_time_ms=processing_time_ms,
        ocr=to_dict(result.ocr),
        grading=to_dict(result.grading),
        file_info=file_info,
        error=result.error,
    )


@app.post("/grade/batch", response_model=BatchResponse)
async def grade_batch(
    files: list[UploadFile] = File(..., description="Изображения ответов"),
    questions: str = Form(
        ...,
        description="JSON массив заданий; если заданий меньше, чем файлов, используется первое",
    ),
    config: Optional[str] = Form(default=None, description="JSON параметров проверки"),
    orchestrator: PipelineOrchestrator = Depends(get_orchestrator),
) -> BatchResponse:
    """
    Пакетная проверка.

    Результаты возвращаются в порядке загрузки файлов. Ошибка одного
    элемента не прерывает пакет.

    Raises:
        HTTPException: при ошибках валидации запроса
    """
    start_time = time.time()

    question_specs = _parse_questions(questions)
    options = _parse_config(config)
    logger.info(f"Получено файлов: {len(files)}, заданий: {len(question_specs)}")

    images = []
    for file in files:
        image, _ = await _validate_and_read_file(file, orchestrator.preprocessor)
        images.append(image)

    try:
        report = await orchestrator.process_many(images, question_specs, options)
    except (ValidationError, BatchStateError) as e:
        raise HTTPException(
            status_code=400,
            detail={"error": "invalid_batch", "message": str(e)},
        )
    except Exception as e:
        logger.exception(f"Ошибка пакетной обработки: {e}")
        raise HTTPException(
            status_code=500,
            detail={"error": "processing_error", "message": str(e)},
        )

    processing_time_ms = int((time.time() - start_time) * 1000)

    return BatchResponse(
        success=not report.cancelled,
        total=report.total,
        successful=report.successful,
        failed=report.failed,
        cancelled=report.cancelled,
        processing_time_ms=processing_time_ms,
        results=[ItemResponse(**to_dict(r)) for r in report.results],
        timestamp=report.timestamp,
    )


@app.get("/results/stats")
async def get_results_stats(cache: ResultCache = Depends(get_result_cache)) -> dict:
    """Статистика кэша результатов."""
    return cache.stats()


@app.get("/results/{question_id}")
async def get_result(
    question_id: str,
    cache: ResultCache = Depends(get_result_cache),
) -> dict:
    """
    Последний результат оценки по заданию.

    Raises:
        HTTPException: 404 если результата нет
    """
    result = cache.get(question_id)
    if result is None:
        raise HTTPException(
            status_code=404,
            detail=f"Результат для задания {question_id} не найден. "
            "Возможно, он был вытеснен или кэш очищен.",
        )
    return {"question_id": question_id, "result": to_dict(result)}


@app.delete("/results")
async def clear_results(cache: ResultCache = Depends(get_result_cache)) -> dict:
    return {"cleared": cache.clear()}


# =============================================================================
# Разбор запроса
# =============================================================================


def _load_json(raw: str, field_name: str):
    try:
        return json.loads(raw)
    except json.JSONDecodeError as e:
        raise HTTPException(
            status_code=400,
            detail={
                "error": f"invalid_{field_name}",
                "message": f"Некорректный JSON в {field_name}: {str(e)}",
            },
        )


def _parse_question(question_json: str) -> QuestionSpec:
    data = _load_json(question_json, "question")
    try:
        return QuestionSpec(**data)
    except (PydanticValidationError, TypeError) as e:
        raise HTTPException(
            status_code=400,
            detail={
                "error": "invalid_question",
                "message": f"Ошибка разбора задания: {str(e)}",
            },
        )


def _parse_questions(questions_json: str) -> list[QuestionSpec]:
    data = _load_json(questions_json, "questions")
    if not isinstance(data, list):
        data = [data]
    try:
        return [QuestionSpec(**item) for item in data]
    except (PydanticValidationError, TypeError) as e:
        raise HTTPException(
            status_code=400,
            detail={
                "error": "invalid_questions",
                "message": f"Ошибка разбора заданий: {str(e)}",
            },
        )


def _parse_config(config_json: Optional[str]) -> GradingOptions:
    """
    Парсит JSON параметров проверки.

    Returns:
        GradingOptions: параметры с дефолтными значениями если не указано
    """
    if not config_json:
        return GradingOptions()

    data = _load_json(config_json, "config")
    try:
        return GradingOptions(**data)
    except (PydanticValidationError, TypeError) as e:
        raise HTTPException(
            status_code=400,
            detail={
                "error": "invalid_config",
                "message": f"Ошибка разбора config: {str(e)}",
            },
        )


async def _validate_and_read_file(
    file: UploadFile,
    preprocessor: ImagePreprocessor,
) -> tuple[RasterImage, FileInfo]:
    """
    Валидирует и декодирует загруженный файл.

    Проверяет:
        - Размер файла (не больше max_file_size_mb)
        - Тип и формат (allowed_formats)
        - Декодируемость изображения

    Raises:
        HTTPException: 413 при превышении размера, 400 при прочих ошибках
    """
    file_bytes = await file.read()

    max_size = settings.max_file_size_mb * 1024 * 1024
    if len(file_bytes) > max_size:
        raise HTTPException(
            status_code=413,
            detail={
                "error": "file_too_large",
                "message": f"Файл слишком большой: {len(file_bytes)} байт, "
                f"максимум: {settings.max_file_size_mb} МБ",
            },
        )

    try:
        image = preprocessor.load_image(file_bytes, file.content_type)
    except ValidationError as e:
        raise HTTPException(
            status_code=400,
            detail={"error": "invalid_file_type", "message": str(e)},
        )
    except InvalidImageError as e:
        raise HTTPException(
            status_code=400,
            detail={"error": "invalid_image", "message": str(e)},
        )

    file_info = FileInfo(
        filename=file.filename or "unknown",
        size_bytes=len(file_bytes),
    )
    return image, file_info


if __name__ == "__main__":
    import uvicorn

    port = settings.port
    logger.info(f"Запуск Grading Service на порту {port}")
    logger.info(f"CPU ядер: {os.cpu_count()}")

    uvicorn.run(
        app,
        host="0.0.0.0",
        port=port,
        log_level="info",
    )
