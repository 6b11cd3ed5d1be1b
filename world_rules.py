"""
World rule guardrails.

Run after normalization and before mutation. They catch deltas that are well
typed but abusive or inconsistent (reputation farming, coin showers, NPCs
flipping from hatred to love in one line) and neutralize them quietly. The
numbers below are game-balance knobs, not invariants.
"""
import logging
import re
from typing import List

from models import NarrativePatch, WorldState
from utils import clamp, round_half_up

logger = logging.getLogger(__name__)

# Morality
MORALITY_MAJOR_CHANGE = 3         # |delta| >= this ignores the daily cooldown
MORALITY_MAX_DELTA = 5
# Reputation
REPUTATION_MAX_DELTA = 5
REPUTATION_SOFT_CAP = 60          # at or above: positive gains limited to REPUTATION_CAPPED_GAIN
REPUTATION_CAPPED_GAIN = 1
# Economy
COIN_JUSTIFICATION_THRESHOLD = 30
# NPC relations
DISPOSITION_COOLDOWN_TURNS = 3
DISPOSITION_MAX_STEP = 5
DISPOSITION_RANGE = (-100, 100)

COIN_JUSTIFICATION_RE = re.compile(
    r"оплат|плат|торг|награ|контракт|штраф|взятк|продал|купил|"
    r"\bpa(?:y|id)|trade|reward|contract|\bfine|bribe|\bsold|bought|purchas|wage",
    re.IGNORECASE,
)


def _guard_morality(state: WorldState, patch: NarrativePatch, notes: List[str]) -> None:
    if patch.morality == 0:
        return
    today = state.date.day_of_game
    major = abs(patch.morality) >= MORALITY_MAJOR_CHANGE
    if not major and state.last_morality_change_day == today:
        notes.append(f"morality {patch.morality:+d} ignored: already changed on day {today}")
        patch.morality = 0
        return
    state.last_morality_change_day = today
    patch.morality = int(clamp(patch.morality, -MORALITY_MAX_DELTA, MORALITY_MAX_DELTA))


def _guard_reputation(patch: NarrativePatch, notes: List[str]) -> None:
    bounded = int(clamp(patch.reputation, -REPUTATION_MAX_DELTA, REPUTATION_MAX_DELTA))
    if bounded != patch.reputation:
        notes.append(f"reputation {patch.reputation:+d} clamped to {bounded:+d}")
    patch.reputation = bounded


def has_coin_justification(patch: NarrativePatch) -> bool:
    text = " ".join(e.reason for e in patch.effects if e.reason)
    return bool(COIN_JUSTIFICATION_RE.search(text))


def _guard_coins(patch: NarrativePatch, notes: List[str]) -> None:
    if abs(patch.coins) <= COIN_JUSTIFICATION_THRESHOLD or has_coin_justification(patch):
        return
    bounded = COIN_JUSTIFICATION_THRESHOLD if patch.coins > 0 else -COIN_JUSTIFICATION_THRESHOLD
    notes.append(f"coins {patch.coins:+d} without justification clamped to {bounded:+d}")
    patch.coins = bounded


def _guard_dispositions(state: WorldState, patch: NarrativePatch, notes: List[str]) -> None:
    turn = state.turn_index
    for npc_name, rel in patch.character_update.relationships.items():
        if rel.disposition is None:
            continue
        last_turn = state.npc_disposition_last_change_turn.get(npc_name)
        if last_turn is not None and turn - last_turn < DISPOSITION_COOLDOWN_TURNS:
            notes.append(f"disposition for {npc_name!r} ignored: changed {turn - last_turn} turn(s) ago")
            rel.disposition = None
            continue
        npc = state.npcs.get(npc_name)
        current = npc.disposition if npc else 0
        target = int(clamp(round_half_up(rel.disposition), *DISPOSITION_RANGE))
        step = int(clamp(target - current, -DISPOSITION_MAX_STEP, DISPOSITION_MAX_STEP))
        rel.disposition = current + step
        state.npc_disposition_last_change_turn[npc_name] = turn


def apply_world_rules(state: WorldState, patch: NarrativePatch) -> List[str]:
    """
    Adjust patch in place before it is applied to state.

    Cooldown trackers on state are updated for every accepted change.
    Returns human-readable notes for each rejected or clamped value.
    """
    notes: List[str] = []
    _guard_morality(state, patch, notes)
    _guard_reputation(patch, notes)
    _guard_coins(patch, notes)
    _guard_dispositions(state, patch, notes)
    for note in notes:
        logger.info(f"World rule: {note}")
    return notes
