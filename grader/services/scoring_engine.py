"""
Движок AI оценки ответов.

Содержит:
    - Проверку входных данных до вызова модели
    - Построение детерминированного промпта
    - Оценку одной моделью и консенсус двух моделей
    - Правила постобработки: ограничение балла, уровень, ручная проверка

Режим двух моделей:
    1. Основная модель оценивает по обычному промпту
    2. Проверочная модель оценивает независимо (дополненный промпт)
    3. Сбой или отсутствие проверочной модели: откат к оценке основной
    4. Расхождение <= 1 балла: среднее (округление вверх от .5),
       иначе балл основной модели
"""

import json
import logging
import math
import time
from dataclasses import replace
from typing import Optional

from grader.config import Settings, settings
from grader.errors import ResponseFormatError, ScoringServiceError, ValidationError
from grader.schemas import (
    ConsensusComparison,
    ExtractionResult,
    GradingPoint,
    QuestionSpec,
    ScoreResult,
)
from grader.services.ai_client import ChatModel

logger = logging.getLogger(__name__)

# Порог уверенности консенсуса сверху
MAX_CONSENSUS_CONFIDENCE = 0.95
# Расхождение, при котором берётся среднее
CONSENSUS_AVERAGE_DIFF = 1
# Расхождение, при котором нужна ручная проверка
CONSENSUS_REVIEW_DIFF = 2

INDEPENDENT_JUDGMENT_SUFFIX = (
    "\n\nGrade independently. Do not let any other grading of this answer "
    "influence your judgment."
)

# (нижняя граница процента, уровень)
GRADE_LEVELS = [
    (90, "excellent"),
    (80, "good"),
    (70, "fair"),
    (60, "pass"),
]


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def _now_ms() -> int:
    return int(time.time() * 1000)


# =============================================================================
# Промпт и разбор ответа
# =============================================================================


def build_grading_criteria(grading_points: list[GradingPoint], total_score: float) -> str:
    """Блок критериев: пункты с баллами или пропорциональное начисление."""
    if not grading_points:
        return (
            f"Compare with the standard answer: a fully correct solution earns "
            f"{total_score:g} points, a partially correct one earns proportional credit."
        )

    return "\n".join(
        f"{index}. {point.description} ({point.score:g} points)"
        for index, point in enumerate(grading_points, start=1)
    )


def build_grading_prompt(student_text: str, question: QuestionSpec) -> str:
    """
    Строит промпт оценки.

    Промпт детерминирован: один и тот же вход даёт ту же строку.

    Args:
        student_text: распознанный текст ответа ученика
        question: задание

    Returns:
        str: промпт для модели
    """
    total = question.total_score
    criteria = build_grading_criteria(question.grading_points, total)

    return f"""You are an experienced mathematics examiner. Grade the student's answer against the standard below.

Question:
- Total score: {total:g} points
- Standard answer: {question.standard_answer}
- Question type: {question.question_type}

Grading criteria:
{criteria}

Student answer:
{student_text}

Return the grading result as JSON in exactly this format:
{{
  "score": <number from 0 to {total:g}>,
  "confidence": <number from 0.0 to 1.0>,
  "feedback": "detailed feedback",
  "strengths": ["strength 1", "strength 2"],
  "weaknesses": ["weakness 1", "weakness 2"],
  "suggestions": ["suggestion 1", "suggestion 2"],
  "gradingDetails": [
    {{"criterion": "criterion 1", "score": <number>, "feedback": "comment"}}
  ]
}}

Weighting:
1. Correctness (40%): is the final answer correct
2. Process (30%): are the steps complete and logically sound
3. Notation (20%): symbols and formatting
4. Originality (10%): original approach to the solution

Return only the JSON object, without any other text."""


def extract_json_block(text: str) -> str:
    """
    Возвращает первый сбалансированный блок {...} из ответа модели.

    Фигурные скобки внутри JSON строк не учитываются.

    Raises:
        ResponseFormatError: блок не найден или не закрыт
    """
    start = text.find("{")
    if start < 0:
        raise ResponseFormatError("В ответе модели нет JSON объекта")

    depth = 0
    in_string = False
    escaped = False
    for position in range(start, len(text)):
        char = text[position]
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue

        if char == '"':
            in_string = True
        elif char == "{":
            depth += 1
        elif char == "}":
            depth -= 1
            if depth == 0:
                return text[start:position + 1]

    raise ResponseFormatError("JSON объект в ответе модели не закрыт")


def parse_grading_response(content: str) -> dict:
    """
    Разбирает ответ модели в словарь оценки.

    Raises:
        ResponseFormatError: JSON не найден, не разбирается или не объект
    """
    block = extract_json_block(content)
    try:
        parsed = json.loads(block)
    except json.JSONDecodeError as e:
        raise ResponseFormatError(f"Некорректный JSON в ответе модели: {e}") from e

    if not isinstance(parsed, dict):
        raise ResponseFormatError("Ответ модели не является JSON объектом")
    return parsed


def _is_finite_number(value) -> bool:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    return math.isfinite(value)


def validate_grading_payload(payload: dict) -> None:
    """
    Проверяет обязательные поля оценки.

    NaN и Infinity (json.loads их принимает) считаются некорректными.

    Raises:
        ResponseFormatError: score < 0, confidence вне 0..1, пустой feedback
    """
    score = payload.get("score")
    if not _is_finite_number(score) or score < 0:
        raise ResponseFormatError("Поле score должно быть конечным числом >= 0")

    confidence = payload.get("confidence")
    if not _is_finite_number(confidence) or not 0 <= confidence <= 1:
        raise ResponseFormatError("Поле confidence должно быть числом от 0 до 1")

    feedback = payload.get("feedback")
    if not isinstance(feedback, str) or not feedback.strip():
        raise ResponseFormatError("Поле feedback не может быть пустым")


def _string_list(value) -> list[str]:
    if not isinstance(value, list):
        return []
    return [str(item) for item in value]


# =============================================================================
# Консенсус
# =============================================================================


def calculate_consensus_score(score1: float, score2: float) -> float:
    """
    Согласованный балл.

    Расхождение <= 1: среднее с округлением вверх от .5.
    Иначе балл основной модели (первый аргумент).
    """
    if abs(score1 - score2) <= CONSENSUS_AVERAGE_DIFF:
        return float(_round_half_up((score1 + score2) / 2))
    return score1


def calculate_consensus_confidence(primary: ScoreResult, secondary: ScoreResult) -> float:
    avg_confidence = (primary.confidence + secondary.confidence) / 2
    score_consistency = 1 - min(1.0, abs(primary.score - secondary.score) / 10)
    return min(MAX_CONSENSUS_CONFIDENCE, (avg_confidence + score_consistency) / 2)


def calculate_grade_level(score: float, total_score: float) -> str:
    percentage = score / total_score * 100
    for lower_bound, level in GRADE_LEVELS:
        if percentage >= lower_bound:
            return level
    return "fail"


# =============================================================================
# Движок
# =============================================================================


class ScoringEngine:
    """
    AI оценка распознанного ответа.

    Args:
        primary: основная модель
        secondary: проверочная модель (для режима двух моделей)
        config: настройки (по умолчанию глобальные settings)
    """

    def __init__(
        self,
        primary: ChatModel,
        secondary: Optional[ChatModel] = None,
        config: Optional[Settings] = None,
    ):
        self.primary = primary
        self.secondary = secondary
        self.config = config or settings

    async def score(
        self,
        extraction: ExtractionResult,
        question: QuestionSpec,
        dual_model: Optional[bool] = None,
        confidence_threshold: Optional[float] = None,
    ) -> ScoreResult:
        """
        Оценивает ответ ученика.

        Args:
            extraction: результат извлечения текста
            question: задание
            dual_model: режим двух моделей (по умолчанию settings)
            confidence_threshold: порог ручной проверки (по умолчанию settings)

        Returns:
            ScoreResult: оценка после apply_grading_rules

        Raises:
            ValidationError: некорректный вход (модель не вызывается)
            ResponseFormatError: ответ модели не разбирается
            ScoringServiceError: сбой вызова модели
        """
        self.validate_input(extraction, question)

        if dual_model is None:
            dual_model = self.config.dual_model_validation
        if confidence_threshold is None:
            confidence_threshold = self.config.confidence_threshold

        prompt = build_grading_prompt(extraction.text, question)

        if dual_model:
            result = await self.score_dual(prompt, confidence_threshold)
        else:
            result = await self.score_single(prompt, self.primary)

        final = self.apply_grading_rules(result, question, confidence_threshold)
        final.ocr_confidence = extraction.confidence
        final.processed_text = extraction.text

        logger.info(
            f"   Оценка [{question.id}]: {final.score:g}/{final.total_score:g}, "
            f"уверенность {final.confidence:.2f}, уровень {final.grade_level}"
            + (", нужна ручная проверка" if final.needs_review else "")
        )
        return final

    def validate_input(self, extraction: ExtractionResult, question: QuestionSpec) -> None:
        if extraction is None or not extraction.text or not extraction.text.strip():
            raise ValidationError("Текст ответа ученика пуст")
        if question is None or not question.id:
            raise ValidationError("Не указан идентификатор задания")
        if not question.standard_answer or not question.standard_answer.strip():
            raise ValidationError("Не указан эталонный ответ")
        if not question.total_score or question.total_score <= 0:
            raise ValidationError("Максимальный балл задания должен быть больше 0")

    async def score_single(self, prompt: str, model: ChatModel) -> ScoreResult:
        """
        Одна оценка одной моделью.

        Raises:
            ScoringServiceError: сбой вызова модели
            ResponseFormatError: ответ не разбирается или не проходит проверку
        """
        try:
            response = await model.chat(
                [{"role": "user", "content": prompt}],
                temperature=self.config.ai_temperature,
                max_tokens=self.config.ai_max_tokens,
            )
        except ScoringServiceError:
            raise
        except Exception as e:
            raise ScoringServiceError(f"Ошибка вызова модели {model.name}: {e}") from e

        try:
            content = response["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as e:
            raise ResponseFormatError(
                f"Ответ модели {model.name} не содержит choices[0].message.content"
            ) from e
        if not isinstance(content, str):
            raise ResponseFormatError(f"Содержимое ответа модели {model.name} не строка")

        payload = parse_grading_response(content)
        validate_grading_payload(payload)

        details = payload.get("gradingDetails")
        return ScoreResult(
            score=float(payload["score"]),
            confidence=float(payload["confidence"]),
            feedback=payload["feedback"],
            strengths=_string_list(payload.get("strengths")),
            weaknesses=_string_list(payload.get("weaknesses")),
            suggestions=_string_list(payload.get("suggestions")),
            grading_details=[d for d in details if isinstance(d, dict)]
            if isinstance(details, list)
            else [],
            model=model.name,
            timestamp=_now_ms(),
        )

    async def score_dual(self, prompt: str, confidence_threshold: float) -> ScoreResult:
        """
        Консенсус двух моделей.

        Сбой основной модели пробрасывается. Сбой или отсутствие
        проверочной: откат к оценке основной с предупреждением в логе.
        """
        primary = await self.score_single(prompt, self.primary)

        if self.secondary is None:
            logger.warning("Режим двух моделей: проверочная модель не настроена, оценка одной моделью")
            return primary

        try:
            secondary = await self.score_single(
                prompt + INDEPENDENT_JUDGMENT_SUFFIX,
                self.secondary,
            )
        except Exception as e:
            logger.warning(
                f"Режим двух моделей: проверочная модель {self.secondary.name} "
                f"недоступна ({e}), оценка одной моделью"
            )
            return primary

        comparison = self.compare_results(primary, secondary, confidence_threshold)

        logger.info(
            f"   Консенсус: {primary.score:g} ({primary.model}) / "
            f"{secondary.score:g} ({secondary.model}) -> {comparison.consensus_score:g}, "
            f"расхождение {comparison.score_difference:g}"
        )

        return replace(
            primary,
            score=comparison.consensus_score,
            confidence=comparison.confidence,
            needs_review=comparison.needs_review,
            model=f"{primary.model} + {secondary.model}",
            timestamp=_now_ms(),
            primary=primary,
            secondary=secondary,
            comparison=comparison,
        )

    def compare_results(
        self,
        primary: ScoreResult,
        secondary: ScoreResult,
        confidence_threshold: Optional[float] = None,
    ) -> ConsensusComparison:
        if confidence_threshold is None:
            confidence_threshold = self.config.confidence_threshold

        score_difference = abs(primary.score - secondary.score)
        confidence = calculate_consensus_confidence(primary, secondary)

        return ConsensusComparison(
            score_difference=score_difference,
            confidence_difference=abs(primary.confidence - secondary.confidence),
            consensus_score=calculate_consensus_score(primary.score, secondary.score),
            confidence=confidence,
            needs_review=(
                score_difference > CONSENSUS_REVIEW_DIFF
                or confidence < confidence_threshold
            ),
        )

    def apply_grading_rules(
        self,
        result: ScoreResult,
        question: QuestionSpec,
        confidence_threshold: Optional[float] = None,
    ) -> ScoreResult:
        """
        Нормализует оценку.

        - балл ограничивается диапазоном [0, total_score]
        - needs_review = confidence < порога (флаг расхождения моделей
          остаётся в comparison.needs_review)
        - уровень по проценту: >=90 excellent, >=80 good, >=70 fair, >=60 pass

        Returns:
            ScoreResult: новый объект, исходный не изменяется
        """
        if confidence_threshold is None:
            confidence_threshold = self.config.confidence_threshold

        total_score = question.total_score
        final_score = max(0.0, min(float(total_score), result.score))

        needs_review = result.confidence < confidence_threshold

        return replace(
            result,
            score=final_score,
            total_score=total_score,
            grade_level=calculate_grade_level(final_score, total_score),
            needs_review=needs_review,
            question_type=question.question_type,
        )

    def assess_quality(self, result: ScoreResult) -> dict:
        """
        Оценивает качество результата для решения о ручной проверке.

        Returns:
            dict: {score, issues, recommendations}, score = 100 - 20 * issues
        """
        issues = []
        recommendations = []

        if result.confidence < 0.6:
            issues.append("Низкая уверенность оценки")
            recommendations.append("Передать на ручную проверку")

        details = result.grading_details
        if details:
            zero_scores = sum(1 for d in details if d.get("score") == 0)
            if zero_scores > len(details) * 0.5:
                issues.append("Больше половины критериев оценены в 0, возможна ошибка распознавания")
                recommendations.append("Проверить качество изображения")

            full_scores = sum(
                1
                for d in details
                if "maxScore" in d and d.get("score") == d.get("maxScore")
            )
            if full_scores == len(details):
                issues.append("Все критерии оценены максимально")
                recommendations.append("Подтвердить оценку вручную")

        return {
            "score": max(0, 100 - len(issues) * 20),
            "issues": issues,
            "recommendations": recommendations,
        }
