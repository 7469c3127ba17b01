"""
In-memory кэш результатов оценки.

Хранит последний ScoreResult по идентификатору задания.

Особенности:
    - Хранение в памяти (без персистентности)
    - Ограничение по количеству записей, вытесняется самая старая
    - Явная очистка через clear()
"""

import logging
from collections import OrderedDict
from datetime import datetime
from typing import Optional

from grader.schemas import ScoreResult

logger = logging.getLogger(__name__)


class ResultCache:
    """
    Ограниченный кэш {question_id: ScoreResult}.

    Повторная запись по тому же ключу переносит его в конец очереди вытеснения.

    Args:
        max_entries: максимальное количество записей
    """

    def __init__(self, max_entries: int = 256):
        if max_entries <= 0:
            raise ValueError("max_entries должен быть больше 0")
        self.max_entries = max_entries
        # {question_id: (время записи, результат)}
        self._store: OrderedDict[str, tuple[datetime, ScoreResult]] = OrderedDict()
        self.evictions = 0

    def put(self, question_id: str, result: ScoreResult) -> None:
        if question_id in self._store:
            self._store.move_to_end(question_id)
        self._store[question_id] = (datetime.now(), result)

        while len(self._store) > self.max_entries:
            evicted_id, _ = self._store.popitem(last=False)
            self.evictions += 1
            logger.debug(f"Вытеснен результат: question_id={evicted_id}")

    def get(self, question_id: str) -> Optional[ScoreResult]:
        entry = self._store.get(question_id)
        if entry is None:
            logger.debug(f"Результат не найден: question_id={question_id}")
            return None
        return entry[1]

    def all(self) -> dict[str, ScoreResult]:
        return {question_id: entry[1] for question_id, entry in self._store.items()}

    def clear(self) -> int:
        """Очищает кэш. Возвращает количество удалённых записей."""
        count = len(self._store)
        self._store.clear()
        logger.info(f"Кэш результатов очищен: удалено {count}")
        return count

    def __len__(self) -> int:
        return len(self._store)

    def __contains__(self, question_id: str) -> bool:
        return question_id in self._store

    def stats(self) -> dict:
        """
        Статистика кэша.

        Returns:
            dict: {results_count, max_entries, evictions, oldest, newest}
        """
        if not self._store:
            return {
                "results_count": 0,
                "max_entries": self.max_entries,
                "evictions": self.evictions,
                "oldest": None,
                "newest": None,
            }

        oldest_id, (oldest_at, _) = next(iter(self._store.items()))
        newest_id, (newest_at, _) = next(reversed(self._store.items()))

        return {
            "results_count": len(self._store),
            "max_entries": self.max_entries,
            "evictions": self.evictions,
            "oldest": {
                "question_id": oldest_id,
                "stored_at": oldest_at.isoformat(),
            },
            "newest": {
                "question_id": newest_id,
                "stored_at": newest_at.isoformat(),
            },
        }
