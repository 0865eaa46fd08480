"""
Question selection: which pool questions an attempt gets, and in what order.

The order is drawn once at start and frozen on the session; resuming never
redraws it.
"""
import random
from typing import List, Optional, Sequence

from assessment_engine.core.errors import InsufficientData

_system_rng = random.SystemRandom()


def ensure_pool_size(pool_size: int, question_count: int) -> None:
    if pool_size < question_count:
        raise InsufficientData("insufficient_pool",
                               f"Pool only has {pool_size} questions. Reduce question count or add more questions.",
                               pool_size=pool_size, question_count=question_count)


def select_questions(pool_ids: Sequence[int], question_count: int, shuffle: bool,
                     rng: Optional[random.Random] = None) -> List[int]:
    """Draw ``question_count`` distinct ids; shuffled order when ``shuffle`` is set, else pool order."""
    ids = list(dict.fromkeys(pool_ids))
    ensure_pool_size(len(ids), question_count)
    if shuffle:
        return (rng or _system_rng).sample(ids, question_count)
    return ids[:question_count]
