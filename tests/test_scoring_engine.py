"""
Тесты движка оценки: промпт, разбор ответа, правила, консенсус двух моделей.
"""

from dataclasses import replace

import pytest

from grader.errors import ResponseFormatError, ScoringServiceError, ValidationError
from grader.schemas import ExtractionResult, GradingPoint, QuestionSpec, ScoreResult
from grader.services.scoring_engine import (
    INDEPENDENT_JUDGMENT_SUFFIX,
    ScoringEngine,
    build_grading_prompt,
    calculate_consensus_score,
    calculate_grade_level,
    extract_json_block,
    parse_grading_response,
)

from conftest import FakeChatModel, grading_json


def _extraction(text: str = "x = 6, y = 4", confidence: float = 90.0) -> ExtractionResult:
    return ExtractionResult(text=text, original_text=text, confidence=confidence)


def _wrapped(score: float, confidence: float = 0.9) -> str:
    return "Here is the result:\n```json\n" + grading_json(score, confidence) + "\n```"


# =============================================================================
# Проверка входа
# =============================================================================


@pytest.mark.parametrize(
    "text,changes",
    [
        ("", {}),
        ("   ", {}),
        ("x = 6", {"id": None}),
        ("x = 6", {"id": ""}),
        ("x = 6", {"standard_answer": "  "}),
        ("x = 6", {"total_score": 0}),
        ("x = 6", {"total_score": -5}),
    ],
)
async def test_invalid_input_never_calls_model(text, changes, question, test_settings):
    model = FakeChatModel()
    engine = ScoringEngine(model, config=test_settings)

    with pytest.raises(ValidationError):
        await engine.score(_extraction(text), question.model_copy(update=changes))

    assert model.prompts == []


# =============================================================================
# Промпт и разбор ответа
# =============================================================================


def test_prompt_contains_question_and_answer(question):
    prompt = build_grading_prompt("x = 6", question)

    assert "Total score: 10 points" in prompt
    assert "Standard answer: x = 6, y = 4" in prompt
    assert "Question type: system of equations" in prompt
    assert "Student answer:\nx = 6" in prompt
    assert '"gradingDetails"' in prompt
    assert "proportional credit" in prompt
    assert "Correctness (40%)" in prompt


def test_prompt_lists_grading_points(question):
    question = question.model_copy(update={
        "grading_points": [
            GradingPoint(description="Set up the system", score=4),
            GradingPoint(description="Solve it", score=6),
        ],
    })

    prompt = build_grading_prompt("x = 6", question)

    assert "1. Set up the system (4 points)" in prompt
    assert "2. Solve it (6 points)" in prompt
    assert "proportional credit" not in prompt


def test_prompt_is_deterministic(question):
    assert build_grading_prompt("abc", question) == build_grading_prompt("abc", question)


def test_json_block_ignores_braces_inside_strings():
    text = 'prefix {"feedback": "use {x} and }", "score": 1} suffix {"other": 2}'
    assert extract_json_block(text) == '{"feedback": "use {x} and }", "score": 1}'


@pytest.mark.parametrize(
    "content",
    ["no json here", '{"score": 1', "{not json}", ""],
)
def test_unparseable_response_raises(content):
    with pytest.raises(ResponseFormatError):
        parse_grading_response(content)


@pytest.mark.parametrize(
    "payload",
    [
        '{"score": -1, "confidence": 0.5, "feedback": "x"}',
        '{"score": "8", "confidence": 0.5, "feedback": "x"}',
        '{"score": 8, "confidence": 1.5, "feedback": "x"}',
        '{"score": 8, "confidence": 0.5, "feedback": "  "}',
        '{"score": 8, "confidence": 0.5}',
    ],
)
async def test_invalid_payload_raises_format_error(payload, question, test_settings):
    engine = ScoringEngine(FakeChatModel(reply=payload), config=test_settings)
    with pytest.raises(ResponseFormatError):
        await engine.score(_extraction(), question)


@pytest.mark.parametrize("value", ["NaN", "Infinity", "-Infinity"])
@pytest.mark.parametrize("field", ["score", "confidence"])
async def test_non_finite_numbers_are_rejected(field, value, question, test_settings):
    values = {"score": "8", "confidence": "0.9"}
    values[field] = value
    payload = (
        f'{{"score": {values["score"]}, "confidence": {values["confidence"]}, '
        f'"feedback": "ok"}}'
    )
    engine = ScoringEngine(FakeChatModel(reply=payload), config=test_settings)

    with pytest.raises(ResponseFormatError):
        await engine.score(_extraction(), question)


async def test_non_finite_secondary_score_falls_back_to_primary(question, test_settings):
    engine = ScoringEngine(
        FakeChatModel("a", reply=grading_json(6, 0.9)),
        FakeChatModel("b", reply='{"score": NaN, "confidence": 0.9, "feedback": "ok"}'),
        test_settings,
    )

    result = await engine.score(_extraction(), question, dual_model=True)

    assert result.score == 6
    assert result.model == "a"
    assert result.secondary is None


# =============================================================================
# Одна модель
# =============================================================================


async def test_single_model_result(question, test_settings):
    model = FakeChatModel(reply=_wrapped(8, 0.9))
    engine = ScoringEngine(model, config=test_settings)

    result = await engine.score(_extraction(confidence=87.0), question)

    assert len(model.prompts) == 1
    assert result.score == 8
    assert result.total_score == 10
    assert result.confidence == 0.9
    assert result.grade_level == "good"
    assert result.needs_review is False
    assert result.model == "fake-primary"
    assert result.strengths == ["equations set up correctly"]
    assert result.grading_details[0]["criterion"] == "equations"
    assert result.question_type == "system of equations"
    assert result.ocr_confidence == 87.0
    assert result.processed_text == "x = 6, y = 4"
    assert result.comparison is None


async def test_score_is_clamped_to_total(question, test_settings):
    engine = ScoringEngine(FakeChatModel(reply=grading_json(15)), config=test_settings)
    result = await engine.score(_extraction(), question)
    assert result.score == 10
    assert result.grade_level == "excellent"


@pytest.mark.parametrize(
    "confidence,threshold,needs_review",
    [(0.79, 0.8, True), (0.8, 0.8, False), (0.95, 0.8, False), (0.5, 0.4, False)],
)
async def test_needs_review_follows_threshold(
    confidence, threshold, needs_review, question, test_settings
):
    engine = ScoringEngine(FakeChatModel(reply=grading_json(8, confidence)), config=test_settings)
    result = await engine.score(_extraction(), question, confidence_threshold=threshold)
    assert result.needs_review is needs_review


@pytest.mark.parametrize(
    "score,level",
    [(10, "excellent"), (9, "excellent"), (8, "good"), (7, "fair"), (6, "pass"), (5.9, "fail"), (0, "fail")],
)
def test_grade_levels(score, level):
    assert calculate_grade_level(score, 10) == level


async def test_model_failure_raises_service_error(question, test_settings):
    engine = ScoringEngine(FakeChatModel(error=RuntimeError("boom")), config=test_settings)
    with pytest.raises(ScoringServiceError, match="boom"):
        await engine.score(_extraction(), question)


async def test_scoring_is_deterministic_except_timestamp(question, test_settings):
    engine = ScoringEngine(FakeChatModel(), config=test_settings)

    first = await engine.score(_extraction(), question)
    second = await engine.score(_extraction(), question)

    assert replace(first, timestamp=0) == replace(second, timestamp=0)


def test_grading_rules_do_not_mutate_input(question, test_settings):
    engine = ScoringEngine(FakeChatModel(), config=test_settings)
    raw = ScoreResult(score=12, confidence=0.9)

    final = engine.apply_grading_rules(raw, question)

    assert raw.score == 12
    assert final.score == 10


# =============================================================================
# Две модели
# =============================================================================


@pytest.mark.parametrize(
    "score1,score2,expected",
    [(8, 8, 8), (7, 8, 8), (6, 7, 7), (8, 7, 8), (2, 2.5, 2), (8, 3, 8), (3, 8, 3)],
)
def test_consensus_score(score1, score2, expected):
    assert calculate_consensus_score(score1, score2) == expected


async def test_dual_model_consensus(question, test_settings):
    primary = FakeChatModel("model-a", reply=grading_json(7, 0.9))
    secondary = FakeChatModel("model-b", reply=grading_json(8, 0.9))
    engine = ScoringEngine(primary, secondary, test_settings)

    result = await engine.score(_extraction(), question, dual_model=True)

    assert result.score == 8
    assert result.model == "model-a + model-b"
    assert result.primary.score == 7
    assert result.secondary.score == 8
    assert result.comparison.score_difference == 1
    # (0.9 + (1 - 0.1)) / 2
    assert result.confidence == pytest.approx(0.9)
    assert result.needs_review is False
    assert secondary.prompts[0] == primary.prompts[0] + INDEPENDENT_JUDGMENT_SUFFIX


async def test_dual_model_confidence_is_capped(question, test_settings):
    engine = ScoringEngine(
        FakeChatModel("a", reply=grading_json(8, 1.0)),
        FakeChatModel("b", reply=grading_json(8, 1.0)),
        test_settings,
    )
    result = await engine.score(_extraction(), question, dual_model=True)
    assert result.confidence == 0.95


async def test_dual_model_large_difference_needs_review(question, test_settings):
    engine = ScoringEngine(
        FakeChatModel("a", reply=grading_json(8, 0.9)),
        FakeChatModel("b", reply=grading_json(3, 0.9)),
        test_settings,
    )

    result = await engine.score(_extraction(), question, dual_model=True)

    assert result.score == 8
    assert result.comparison.score_difference == 5
    assert result.needs_review is True


async def test_needs_review_follows_consensus_confidence_only(question, test_settings):
    engine = ScoringEngine(
        FakeChatModel("a", reply=grading_json(8, 0.95)),
        FakeChatModel("b", reply=grading_json(5, 0.95)),
        test_settings,
    )

    result = await engine.score(_extraction(), question, dual_model=True)

    # (0.95 + (1 - 0.3)) / 2 = 0.825 >= 0.8
    assert result.confidence == pytest.approx(0.825)
    assert result.comparison.needs_review is True
    assert result.needs_review is False


async def test_dual_model_uses_settings_default(question, test_settings):
    secondary = FakeChatModel("b")
    config = test_settings.model_copy(update={"dual_model_validation": True})
    engine = ScoringEngine(FakeChatModel("a"), secondary, config)

    await engine.score(_extraction(), question)

    assert len(secondary.prompts) == 1


async def test_secondary_failure_falls_back_to_primary(question, test_settings, caplog):
    engine = ScoringEngine(
        FakeChatModel("a", reply=grading_json(6, 0.9)),
        FakeChatModel("b", error=RuntimeError("timeout")),
        test_settings,
    )

    result = await engine.score(_extraction(), question, dual_model=True)

    assert result.score == 6
    assert result.model == "a"
    assert result.comparison is None
    assert "недоступна" in caplog.text


async def test_missing_secondary_falls_back_to_primary(question, test_settings):
    engine = ScoringEngine(FakeChatModel("a", reply=grading_json(6, 0.9)), None, test_settings)
    result = await engine.score(_extraction(), question, dual_model=True)
    assert result.model == "a"
    assert result.score == 6


async def test_primary_failure_propagates_in_dual_mode(question, test_settings):
    secondary = FakeChatModel("b")
    engine = ScoringEngine(FakeChatModel("a", error=RuntimeError("down")), secondary, test_settings)

    with pytest.raises(ScoringServiceError):
        await engine.score(_extraction(), question, dual_model=True)

    assert secondary.prompts == []


# =============================================================================
# Качество
# =============================================================================


def test_assess_quality_flags_issues(test_settings):
    engine = ScoringEngine(FakeChatModel(), config=test_settings)
    result = ScoreResult(
        score=0,
        confidence=0.5,
        grading_details=[
            {"criterion": "a", "score": 0, "maxScore": 5},
            {"criterion": "b", "score": 0, "maxScore": 5},
        ],
    )

    quality = engine.assess_quality(result)

    assert quality["score"] == 60
    assert len(quality["issues"]) == 2


def test_assess_quality_flags_all_full_scores(test_settings):
    engine = ScoringEngine(FakeChatModel(), config=test_settings)
    result = ScoreResult(
        score=10,
        confidence=0.9,
        grading_details=[{"score": 5, "maxScore": 5}, {"score": 5, "maxScore": 5}],
    )

    quality = engine.assess_quality(result)

    assert quality["score"] == 80
    assert quality["issues"] == ["Все критерии оценены максимально"]
