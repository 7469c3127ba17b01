"""
Тесты кэша результатов оценки.
"""

import pytest

from grader.schemas import ScoreResult
from grader.services.result_cache import ResultCache


def _result(score: float) -> ScoreResult:
    return ScoreResult(score=score, total_score=10)


def test_put_and_get():
    cache = ResultCache(max_entries=4)
    cache.put("q1", _result(7))

    assert cache.get("q1").score == 7
    assert "q1" in cache
    assert len(cache) == 1
    assert cache.get("missing") is None


def test_put_overwrites_latest_result():
    cache = ResultCache(max_entries=4)
    cache.put("q1", _result(3))
    cache.put("q1", _result(9))

    assert len(cache) == 1
    assert cache.get("q1").score == 9


def test_oldest_entry_is_evicted():
    cache = ResultCache(max_entries=2)
    cache.put("q1", _result(1))
    cache.put("q2", _result(2))
    cache.put("q3", _result(3))

    assert "q1" not in cache
    assert list(cache.all()) == ["q2", "q3"]
    assert cache.evictions == 1


def test_rewrite_moves_entry_to_end():
    cache = ResultCache(max_entries=2)
    cache.put("q1", _result(1))
    cache.put("q2", _result(2))
    cache.put("q1", _result(5))
    cache.put("q3", _result(3))

    assert "q2" not in cache
    assert cache.get("q1").score == 5


def test_clear_returns_count():
    cache = ResultCache(max_entries=4)
    cache.put("q1", _result(1))
    cache.put("q2", _result(2))

    assert cache.clear() == 2
    assert len(cache) == 0
    assert cache.clear() == 0


def test_stats():
    cache = ResultCache(max_entries=3)
    assert cache.stats()["oldest"] is None

    cache.put("q1", _result(1))
    cache.put("q2", _result(2))
    stats = cache.stats()

    assert stats["results_count"] == 2
    assert stats["max_entries"] == 3
    assert stats["oldest"]["question_id"] == "q1"
    assert stats["newest"]["question_id"] == "q2"


def test_invalid_capacity():
    with pytest.raises(ValueError):
        ResultCache(max_entries=0)
