# rasp_parser/core/validate.py
import logging
import random
from typing import Dict, List, Optional, Tuple

from .date_utils import StringDate
from .postprocess import count_lessons
from ..models.models import Entity

log = logging.getLogger(__name__)


def entity_has_lessons(entity: Entity) -> bool:
    return any(count_lessons(day.lessons) for day in entity.days)


def total_lessons(entities: Dict[str, Entity]) -> int:
    """Number of lesson entries across all entities and days."""
    return sum(count_lessons(day.lessons) for entity in entities.values() for day in entity.days)


def pick_sample(entities: Dict[str, Entity], size: int,
                rng: Optional[random.Random] = None) -> List[Tuple[str, Entity]]:
    """
    Picks up to `size` entities, entities with lessons first.

    When everything fits into the sample, all entities are returned in order.
    """
    items = list(entities.items())
    if len(items) <= size:
        return items

    rng = rng or random.Random()
    with_lessons = [item for item in items if entity_has_lessons(item[1])]
    without_lessons = [item for item in items if not entity_has_lessons(item[1])]
    rng.shuffle(with_lessons)
    rng.shuffle(without_lessons)
    sample = with_lessons[:size]
    sample.extend(without_lessons[:size - len(sample)])
    return sample


def validate_entities(entities: Dict[str, Entity], max_lessons: int = 10, sample_size: int = 10,
                      rng: Optional[random.Random] = None) -> List[str]:
    """
    Structural checks on a sample of parsed entities.

    Args:
        entities: Parse result keyed by group or teacher.
        max_lessons: Maximum number of lesson slots in one day.
        sample_size: How many entities to inspect.
        rng: Random source for sampling.

    Returns:
        A list of error strings; empty when the sample looks sane.
    """
    if not entities:
        return ["empty result"]

    errors: List[str] = []
    sample = pick_sample(entities, sample_size, rng)

    for key, entity in sample:
        if not entity.days:
            errors.append(f"{key}: no days")
            continue
        seen = set()
        for day in entity.days:
            if day.date in seen:
                errors.append(f"{key}: duplicate day {day.date}")
            seen.add(day.date)
            if not StringDate.is_valid(day.date):
                errors.append(f"{key}: invalid date {day.date}")
            if len(day.lessons) > max_lessons:
                errors.append(f"{key}: too many lessons {day.date} ({len(day.lessons)})")

    if not any(entity_has_lessons(entity) for _, entity in sample):
        errors.append("no lessons in sample")

    if errors:
        log.warning(f"Validation found {len(errors)} problems in a sample of {len(sample)}")
    return errors
