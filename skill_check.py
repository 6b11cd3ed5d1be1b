"""
Deterministic skill/attribute checks.

The narrator only proposes a check; the server rolls it. The roll is seeded
from the session id, the turn index and the check itself, so retrying the
same turn can never produce a different outcome.
"""
import logging
from typing import Optional

from models import ATTRIBUTE_NAMES, SkillCheckRequest, SkillCheckResult, WorldState
from utils import clamp, fnv1a_32, mulberry32, round_half_up

logger = logging.getLogger(__name__)

MIN_CHANCE = 5
MAX_CHANCE = 95
CHANCE_SLOPE = 0.7


def get_skill_value(state: WorldState, key: str) -> int:
    """Actor value on a 0..100 scale: skill level as-is, attributes (1..10) times ten."""
    if not key:
        return 0
    k = key.lower()
    skill = state.skills.get(k)
    if skill is not None:
        return int(clamp(skill.level, 0, 100))
    if k in ATTRIBUTE_NAMES:
        return int(clamp(getattr(state.attributes, k), 1, 10)) * 10
    return 0


def success_chance(actor: int, difficulty: int) -> int:
    return int(clamp(round_half_up(50 + (actor - difficulty) * CHANCE_SLOPE), MIN_CHANCE, MAX_CHANCE))


def check_seed(session_id: str, turn_index: int, kind: str, key: str, difficulty: int) -> int:
    return fnv1a_32(f"{session_id}|{turn_index}|{kind}|{key}|{difficulty}")


def roll_d100(seed: int) -> int:
    rng = mulberry32(seed)
    return int(rng() * 100) + 1


def resolve_check(session_id: str, turn_index: int, kind: str, key: str, difficulty: int, actor: int) -> SkillCheckResult:
    """Pure resolution: identical arguments always give an identical result."""
    difficulty = int(clamp(difficulty, 0, 100))
    chance = success_chance(actor, difficulty)
    roll = roll_d100(check_seed(session_id, turn_index, kind, key, difficulty))
    return SkillCheckResult(
        kind=kind, key=key, difficulty=difficulty,
        actor=actor, chance=chance, roll=roll, success=roll <= chance,
    )


def resolve_skill_check(state: WorldState, request: Optional[SkillCheckRequest], session_id: str) -> Optional[SkillCheckResult]:
    if request is None or not request.key:
        return None
    actor = get_skill_value(state, request.key)
    result = resolve_check(session_id, state.turn_index, request.kind, request.key, request.difficulty, actor)
    logger.info(
        f"Check {result.kind}:{result.key} diff={result.difficulty} actor={result.actor} "
        f"chance={result.chance} roll={result.roll} -> {'success' if result.success else 'fail'}"
    )
    return result
