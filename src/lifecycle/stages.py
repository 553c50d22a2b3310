from __future__ import annotations

from collections import deque
from enum import Enum
from typing import Dict, FrozenSet, List, Optional, Union

from src.common.errors import ValidationError
from src.common.stage_ids import normalise_stage_id


class Stage(str, Enum):
    DEVELOPMENT = "development"
    TESTING = "testing"
    PRODUCTION = "production"
    DEPRECATED = "deprecated"
    ARCHIVED = "archived"
    DELETING = "deleting"

    def __str__(self) -> str:
        return self.value


INITIAL_STAGE = Stage.DEVELOPMENT

# Adjacency lists are ordered; path_to explores neighbours in this order.
TRANSITIONS: Dict[Stage, tuple] = {
    Stage.DEVELOPMENT: (Stage.TESTING, Stage.DEPRECATED),
    Stage.TESTING: (Stage.PRODUCTION, Stage.DEPRECATED),
    Stage.PRODUCTION: (Stage.DEPRECATED, Stage.ARCHIVED),
    Stage.DEPRECATED: (Stage.ARCHIVED,),
    Stage.ARCHIVED: (Stage.DEVELOPMENT, Stage.TESTING, Stage.DELETING),
    Stage.DELETING: (),
}

DESTRUCTIVE_STAGES: FrozenSet[Stage] = frozenset({Stage.DEPRECATED, Stage.ARCHIVED, Stage.DELETING})
REACTIVATION_EDGES: FrozenSet[tuple] = frozenset(
    {(Stage.ARCHIVED, Stage.DEVELOPMENT), (Stage.ARCHIVED, Stage.TESTING)}
)


def parse_stage(value: Union[Stage, str, None]) -> Stage:
    """Turn user input (including aliases such as ``prod``) into a ``Stage``."""

    if isinstance(value, Stage):
        return value
    canonical = normalise_stage_id(value)
    try:
        return Stage(canonical)
    except ValueError as exc:
        choices = ", ".join(stage.value for stage in Stage)
        raise ValidationError(f"unknown stage {value!r}; expected one of: {choices}") from exc


def can_transition(source: Stage, target: Stage) -> bool:
    return target in TRANSITIONS.get(source, ())


def path_to(source: Stage, target: Stage) -> Optional[List[Stage]]:
    """Shortest list of stages leading from ``source`` to ``target`` (exclusive of ``source``)."""

    if source == target:
        return []
    previous: Dict[Stage, Stage] = {}
    queue = deque([source])
    seen = {source}
    while queue:
        current = queue.popleft()
        for neighbour in TRANSITIONS[current]:
            if neighbour in seen:
                continue
            previous[neighbour] = current
            if neighbour == target:
                path = [neighbour]
                while path[-1] in previous and previous[path[-1]] != source:
                    path.append(previous[path[-1]])
                return list(reversed(path))
            seen.add(neighbour)
            queue.append(neighbour)
    return None


__all__ = [
    "DESTRUCTIVE_STAGES",
    "INITIAL_STAGE",
    "REACTIVATION_EDGES",
    "Stage",
    "TRANSITIONS",
    "can_transition",
    "parse_stage",
    "path_to",
]
