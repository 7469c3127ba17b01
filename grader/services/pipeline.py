"""
Оркестратор пайплайна проверки.

Содержит:
    - process_one: предобработка -> извлечение текста -> оценка для одной пары
      (изображение, задание); любая ошибка этапа превращается в запись
      о неудаче элемента и не выходит за границу пакета
    - process_many: пакетная обработка окнами фиксированного размера

Параллелизация:
    - Элементы окна (max_concurrent) выполняются одновременно через asyncio.gather
    - Следующее окно стартует только после завершения всего текущего
    - Результаты сортируются по исходному индексу

Состояния пакета: idle -> running -> completed | cancelled.
"""

import asyncio
import logging
import time
from collections import deque
from typing import Optional

from starlette.concurrency import run_in_threadpool

from grader.config import Settings, settings
from grader.errors import BatchStateError, GradingError, ValidationError
from grader.schemas import (
    BatchItem,
    BatchReport,
    BatchResult,
    BatchState,
    GradingOptions,
    QuestionSpec,
    RasterImage,
)
from grader.services.ai_client import OpenAICompatibleClient
from grader.services.image_preprocessor import ImagePreprocessor
from grader.services.ocr_engine import TesseractEngine
from grader.services.result_cache import ResultCache
from grader.services.scoring_engine import ScoringEngine
from grader.services.text_extraction import TextExtractionService

logger = logging.getLogger(__name__)

# Порог уверенности OCR, ниже которого пишется предупреждение
LOW_OCR_CONFIDENCE = 50

CANCELLED_ERROR = "Обработка отменена до запуска элемента"


class PipelineObserver:
    """
    Наблюдатель за ходом обработки.

    Все методы по умолчанию ничего не делают. Переопределите нужные
    и передайте экземпляр в PipelineOrchestrator.
    """

    def on_item_start(self, index: int, question_id: Optional[str]) -> None:
        pass

    def on_stage_start(self, index: int, stage: str) -> None:
        pass

    def on_item_complete(self, result: BatchResult) -> None:
        pass

    def on_item_error(self, result: BatchResult) -> None:
        pass

    def on_batch_progress(self, processed: int, total: int) -> None:
        pass

    def on_batch_complete(self, report: BatchReport) -> None:
        pass

    def on_cancelled(self) -> None:
        pass


class PipelineOrchestrator:
    """
    Координирует этапы пайплайна и пакетную обработку.

    Сервисы передаются явно; оркестратор не создаёт глобальных экземпляров.

    Args:
        preprocessor: предобработка изображений
        extractor: извлечение текста
        scorer: AI оценка
        cache: кэш результатов по question_id (опционально)
        observer: наблюдатель за ходом обработки (опционально)
        config: настройки (по умолчанию глобальные settings)
    """

    def __init__(
        self,
        preprocessor: ImagePreprocessor,
        extractor: TextExtractionService,
        scorer: ScoringEngine,
        cache: Optional[ResultCache] = None,
        observer: Optional[PipelineObserver] = None,
        config: Optional[Settings] = None,
    ):
        self.preprocessor = preprocessor
        self.extractor = extractor
        self.scorer = scorer
        self.cache = cache
        self.observer = observer or PipelineObserver()
        self.config = config or settings

        self.state = BatchState.IDLE
        self.is_processing = False
        self.current_concurrent = 0
        self.peak_concurrent = 0
        self._queue: deque[BatchItem] = deque()
        self._resume_event: Optional[asyncio.Event] = None

    # -------------------------------------------------------------------------
    # Один элемент
    # -------------------------------------------------------------------------

    async def process_one(
        self,
        image: RasterImage,
        question: QuestionSpec,
        options: Optional[GradingOptions] = None,
        index: int = 0,
    ) -> BatchResult:
        """
        Проверяет одно изображение по одному заданию.

        Этапы: preprocess -> extract -> score. Ошибка любого этапа
        прерывает только этот элемент.

        Args:
            image: исходное изображение
            question: задание
            options: параметры проверки
            index: позиция элемента в пакете

        Returns:
            BatchResult: success=True с ocr и grading, либо success=False с error
        """
        options = options or GradingOptions()
        question_id = question.id if question is not None else None
        start = time.perf_counter()
        ocr = None

        self.observer.on_item_start(index, question_id)

        try:
            # 1. Предобработка
            self.observer.on_stage_start(index, "preprocess")
            processed = await run_in_threadpool(
                self.preprocessor.preprocess,
                image,
                enhance=options.enhance_ocr,
                max_width=options.max_width,
                deskew=options.deskew,
            )

            # 2. Извлечение текста
            self.observer.on_stage_start(index, "extract")
            ocr = await self.extractor.extract(
                processed,
                language=options.language,
                math_optimization=options.math_optimization,
                chinese_punctuation=options.chinese_punctuation,
            )
            if ocr.confidence < LOW_OCR_CONFIDENCE:
                logger.warning(
                    f"   [{index}] Низкая уверенность OCR: {ocr.confidence:.0f}%, "
                    f"оценка может быть неточной"
                )

            # 3. Оценка
            self.observer.on_stage_start(index, "score")
            grading = await self.scorer.score(
                ocr,
                question,
                dual_model=options.dual_model_validation,
                confidence_threshold=options.confidence_threshold,
            )

        except GradingError as e:
            logger.warning(f"   [{index}] {type(e).__name__}: {e}")
            result = BatchResult(
                index=index,
                success=False,
                ocr=ocr,
                error=str(e),
                question_id=question_id,
            )
            self.observer.on_item_error(result)
            return result
        except Exception as e:
            logger.exception(f"   [{index}] Непредвиденная ошибка обработки: {e}")
            result = BatchResult(
                index=index,
                success=False,
                ocr=ocr,
                error=f"{type(e).__name__}: {e}",
                question_id=question_id,
            )
            self.observer.on_item_error(result)
            return result

        if self.cache is not None and question_id:
            self.cache.put(question_id, grading)

        duration = int((time.perf_counter() - start) * 1000)
        logger.info(f"   [{index}] Готово за {duration}ms")

        result = BatchResult(
            index=index,
            success=True,
            ocr=ocr,
            grading=grading,
            question_id=question_id,
        )
        self.observer.on_item_complete(result)
        return result

    # -------------------------------------------------------------------------
    # Пакет
    # -------------------------------------------------------------------------

    async def process_many(
        self,
        images: list[RasterImage],
        questions: list[QuestionSpec],
        options: Optional[GradingOptions] = None,
    ) -> BatchReport:
        """
        Пакетная обработка окнами по max_concurrent элементов.

        Если заданий меньше, чем изображений, для лишних изображений
        используется первое задание.

        Args:
            images: изображения
            questions: задания (параллельно изображениям)
            options: параметры проверки

        Returns:
            BatchReport: результаты в исходном порядке + счётчики

        Raises:
            BatchStateError: пакет запущен не из состояния idle
            ValidationError: есть изображения, но нет ни одного задания
        """
        if self.state != BatchState.IDLE:
            raise BatchStateError(
                f"Запуск пакета возможен только из состояния idle, текущее: {self.state.value}"
            )
        if images and not questions:
            raise ValidationError("Не передано ни одного задания")

        options = options or GradingOptions()
        window_size = options.max_concurrent or self.config.max_concurrent
        total = len(images)
        batch_start = time.perf_counter()

        items = [
            BatchItem(
                index=index,
                image=image,
                question=questions[index] if index < len(questions) else questions[0],
            )
            for index, image in enumerate(images)
        ]

        self._queue = deque(items)
        self._resume_event = asyncio.Event()
        self._resume_event.set()
        self.state = BatchState.RUNNING
        self.is_processing = True
        self.peak_concurrent = 0

        logger.info("=" * 60)
        logger.info("НОВЫЙ ПАКЕТ")
        logger.info(f"   Изображений: {total}, заданий: {len(questions)}")
        logger.info(f"   Окно: {window_size}, язык: {options.language}")
        logger.info("=" * 60)

        results: list[BatchResult] = []
        processed = 0

        try:
            while self._queue and self.state == BatchState.RUNNING:
                if not self.is_processing:
                    # Пауза: ждём resume() или cancel()
                    self._resume_event.clear()
                    await self._resume_event.wait()
                    continue

                window = [
                    self._queue.popleft()
                    for _ in range(min(window_size, len(self._queue)))
                ]

                self.current_concurrent = len(window)
                self.peak_concurrent = max(self.peak_concurrent, self.current_concurrent)

                window_results = await asyncio.gather(
                    *(
                        self.process_one(item.image, item.question, options, item.index)
                        for item in window
                    )
                )

                self.current_concurrent = 0
                results.extend(window_results)
                processed += len(window)

                logger.info(f"   Прогресс: {processed}/{total}")
                self.observer.on_batch_progress(processed, total)
        finally:
            self.current_concurrent = 0
            self.is_processing = False

        cancelled = self.state == BatchState.CANCELLED

        # Элементы, не запущенные из-за отмены, тоже попадают в отчёт
        done = {r.index for r in results}
        for item in items:
            if item.index not in done:
                results.append(
                    BatchResult(
                        index=item.index,
                        success=False,
                        error=CANCELLED_ERROR,
                        question_id=item.question.id,
                    )
                )

        # Сортируем по исходному индексу
        results.sort(key=lambda r: r.index)

        if not cancelled:
            self.state = BatchState.COMPLETED
        self._queue.clear()

        successful = sum(1 for r in results if r.success)
        report = BatchReport(
            results=results,
            total=total,
            successful=successful,
            failed=total - successful,
            cancelled=cancelled,
            timestamp=int(time.time() * 1000),
        )

        total_duration = int((time.perf_counter() - batch_start) * 1000)
        logger.info("=" * 60)
        logger.info("ПАКЕТ ОТМЕНЁН" if cancelled else "ПАКЕТ ЗАВЕРШЁН")
        logger.info(f"   Всего: {total}, успешно: {successful}, ошибок: {report.failed}")
        logger.info(f"   Пик параллельности: {self.peak_concurrent}")
        logger.info(f"   ИТОГО: {total_duration}ms")
        logger.info("=" * 60)

        self.observer.on_batch_complete(report)
        return report

    # -------------------------------------------------------------------------
    # Управление
    # -------------------------------------------------------------------------

    def pause(self) -> None:
        """Останавливает запуск новых окон; очередь не меняется."""
        self.is_processing = False
        logger.info("Обработка приостановлена")

    def resume(self) -> None:
        self.is_processing = True
        if self._resume_event is not None:
            self._resume_event.set()
        logger.info("Обработка возобновлена")

    def cancel(self) -> None:
        """
        Отменяет пакет.

        Уже запущенные элементы дорабатывают, не запущенные удаляются
        из очереди и попадают в отчёт как неуспешные.
        """
        dropped = len(self._queue)
        self.is_processing = False
        self._queue.clear()
        if self.state == BatchState.RUNNING:
            self.state = BatchState.CANCELLED
        if self._resume_event is not None:
            self._resume_event.set()

        logger.info(f"Обработка отменена, снято с очереди: {dropped}")
        self.observer.on_cancelled()

    def reset(self) -> None:
        """Возвращает оркестратор в idle после завершения или отмены."""
        if self.state == BatchState.RUNNING:
            raise BatchStateError("Нельзя сбросить выполняющийся пакет")
        self.state = BatchState.IDLE
        self.is_processing = False
        self.current_concurrent = 0
        self._queue.clear()

    def get_status(self) -> dict:
        return {
            "state": self.state.value,
            "is_processing": self.is_processing,
            "queue_length": len(self._queue),
            "current_concurrent": self.current_concurrent,
            "peak_concurrent": self.peak_concurrent,
            "max_concurrent": self.config.max_concurrent,
            "ocr": self.extractor.get_status(),
            "cached_results": len(self.cache) if self.cache is not None else 0,
        }


def build_orchestrator(
    config: Optional[Settings] = None,
    cache: Optional[ResultCache] = None,
    observer: Optional[PipelineObserver] = None,
) -> PipelineOrchestrator:
    """
    Собирает оркестратор с Tesseract и OpenAI-совместимыми моделями из настроек.

    Проверочная модель создаётся, только если задан ai_secondary_model.
    """
    config = config or settings

    primary = OpenAICompatibleClient(
        model=config.ai_primary_model,
        base_url=config.ai_base_url,
        api_key=config.ai_api_key,
        timeout_seconds=config.ai_timeout_seconds,
    )
    secondary = None
    if config.ai_secondary_model:
        secondary = OpenAICompatibleClient(
            model=config.ai_secondary_model,
            base_url=config.ai_base_url,
            api_key=config.ai_api_key,
            timeout_seconds=config.ai_timeout_seconds,
        )

    return PipelineOrchestrator(
        preprocessor=ImagePreprocessor(config),
        extractor=TextExtractionService(TesseractEngine(config), config),
        scorer=ScoringEngine(primary, secondary, config),
        cache=cache,
        observer=observer,
        config=config,
    )
