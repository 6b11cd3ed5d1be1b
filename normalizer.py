"""
Patch Normalizer: turns free-form narrator output into a NarrativePatch.

The narrator is asked for a single JSON object but routinely wraps it in
markdown, adds commentary, leaves trailing commas or invents fields. This
module extracts the object, repairs the usual defects, drops every key
outside the allowlist and coerces what is left into safe, bounded values.
Downstream code only ever sees a validated NarrativePatch.
"""
import json
import logging
from typing import Any, Dict, List, Optional

from pydantic import ValidationError

from models import NarrativePatch
from utils import (
    clamp, coerce_int, coerce_str, extract_greedy_block, extract_json_block,
    repair_json_text, strip_code_fences,
)

logger = logging.getLogger(__name__)


class ParseError(ValueError):
    """No usable structured record could be extracted from narrator text."""


ALLOWED_KEYS = frozenset({
    # narrative / flow
    "description", "choices", "isDialogue", "speakerName", "gameOver", "deathReason",
    # deltas
    "health", "stamina", "coins", "reputation", "morality", "timeChange", "satiety", "energy",
    "strength", "agility", "intelligence", "charisma",
    # world
    "locationChange", "newLocation", "newEdges", "npcLocation",
    # progression
    "skillXP",
    # inventory / equipment
    "usedItems", "newItems", "equipment", "newEquipment",
    # character / meta
    "characterUpdate", "questsUpdate",
    # intention -> outcome
    "effects",
    # deterministic checks
    "skillCheck",
    # npc systems
    "npcUpdates", "debtsUpdate", "factionUpdates",
})

# Per-field bounds for deltas proposed by the narrator.
NUMERIC_BOUNDS: Dict[str, tuple] = {
    "health": (-50, 50),
    "stamina": (-100, 100),
    "coins": (-100, 100),
    "reputation": (-10, 10),
    "morality": (-10, 10),
    "timeChange": (0, 48),
    "satiety": (-100, 50),
    "energy": (-100, 50),
    "strength": (-3, 3),
    "agility": (-3, 3),
    "intelligence": (-3, 3),
    "charisma": (-3, 3),
}

EFFECT_STATS = frozenset(NUMERIC_BOUNDS)
MAX_EFFECTS = 20
MAX_SKILL_XP = 200
MIN_ITEM_NAME_LENGTH = 2
MAX_ITEM_QUANTITY = 99

DEFAULT_DESCRIPTION = "You continue on your way..."
DEFAULT_CHOICES = ["Continue", "Look around", "Rest"]

_AUTO_EFFECT_REASONS = {
    "health": ("Took damage", "Recovered"),
    "stamina": ("Exertion", "Rested"),
    "coins": ("Spent", "Earned"),
    "reputation": ("Reputation changed", "Reputation changed"),
    "morality": ("Morality changed", "Morality changed"),
    "satiety": ("Hunger", "Ate or drank"),
    "energy": ("Fatigue", "Slept or rested"),
    "timeChange": ("Time passed", "Time passed"),
}


# ============================================================================
# Extraction
# ============================================================================
def decode_structured_block(raw_text: str) -> Dict[str, Any]:
    """Find, repair and decode the JSON object embedded in raw_text."""
    cleaned = strip_code_fences(raw_text)
    candidates: List[str] = []
    for block in (extract_json_block(cleaned), extract_greedy_block(cleaned)):
        if block and block not in candidates:
            candidates.append(block)
    if not candidates:
        raise ParseError("JSON object not found in response")

    last_error = "decoded value is not an object"
    for block in candidates:
        try:
            decoded = json.loads(repair_json_text(block))
        except json.JSONDecodeError as e:
            last_error = str(e)
            continue
        if isinstance(decoded, dict):
            return decoded
    raise ParseError(f"Invalid JSON: {last_error}")


def normalize_patch(raw_text: str) -> NarrativePatch:
    """Full normalization pipeline. Raises ParseError if nothing usable is found."""
    data = decode_structured_block(raw_text)
    cleaned = sanitize_patch_data(data)
    try:
        return NarrativePatch.model_validate(cleaned)
    except ValidationError as e:
        raise ParseError(f"Patch failed schema validation: {e.error_count()} error(s)") from e


# ============================================================================
# Sanitizing
# ============================================================================
def _string_list(value: Any) -> List[str]:
    if not isinstance(value, list):
        return []
    return [v.strip() for v in value if isinstance(v, str) and v.strip()]


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _optional_int(value: Any) -> Optional[int]:
    """Numbers and numeric strings become ints; anything else is 'not given'."""
    if _is_number(value) or isinstance(value, str):
        return coerce_int(value, default=None)
    return None


def _sanitize_relationship(value: Any) -> Optional[Dict[str, Any]]:
    if isinstance(value, str):
        return {"notes": value.strip()} if value.strip() else None
    if not isinstance(value, dict):
        return None
    rel: Dict[str, Any] = {}
    for key in ("role", "status", "notes", "faction"):
        text = coerce_str(value.get(key))
        if text:
            rel[key] = text
    disposition = _optional_int(value.get("disposition"))
    if disposition is not None:
        rel["disposition"] = disposition
    if isinstance(value.get("memory"), list):
        rel["memory"] = _string_list(value["memory"])
    elif isinstance(value.get("memoryAdd"), list):
        rel["memoryAdd"] = _string_list(value["memoryAdd"])
    return rel


def _sanitize_relationships(value: Any) -> Dict[str, Dict[str, Any]]:
    entries: Dict[str, Dict[str, Any]] = {}
    if isinstance(value, list):
        # [{"name": "Hans", ...}] is accepted as well as {"Hans": {...}}
        value = {e.get("name"): e for e in value if isinstance(e, dict)}
    if not isinstance(value, dict):
        return entries
    for name, rel in value.items():
        npc_name = coerce_str(name)
        if not npc_name:
            continue
        sanitized = _sanitize_relationship(rel)
        if sanitized is not None:
            entries[npc_name] = sanitized
    return entries


def _sanitize_character_update(value: Any, npc_updates: Any) -> Dict[str, Any]:
    value = value if isinstance(value, dict) else {}
    relationships = _sanitize_relationships(value.get("relationships"))
    for name, rel in _sanitize_relationships(npc_updates).items():
        relationships.setdefault(name, rel)
    return {
        "recentEvents": _string_list(value.get("recentEvents")),
        "importantChoices": _string_list(value.get("importantChoices")),
        "relationships": relationships,
        "milestone": coerce_str(value.get("milestone")),
    }


def _sanitize_new_items(value: Any) -> List[Dict[str, Any]]:
    items = []
    for entry in value if isinstance(value, list) else []:
        if isinstance(entry, str):
            entry = {"name": entry}
        if not isinstance(entry, dict):
            continue
        name = coerce_str(entry.get("name"))
        if len(name) < MIN_ITEM_NAME_LENGTH:
            logger.info(f"Dropping new item with unusable name: {entry!r}")
            continue
        quantity = entry.get("quantity")
        quantity = coerce_int(quantity, default=1) if _is_number(quantity) else 1
        items.append({
            "name": name,
            "quantity": int(clamp(quantity, 1, MAX_ITEM_QUANTITY)),
            "type": coerce_str(entry.get("type")) or "item",
            "description": coerce_str(entry.get("description")),
        })
    return items


def _sanitize_slot(value: Any) -> Optional[Dict[str, Any]]:
    if isinstance(value, str):
        value = {"name": value}
    if not isinstance(value, dict):
        return None
    name = coerce_str(value.get("name"))
    if not name:
        return None
    slot: Dict[str, Any] = {"name": name}
    condition = _optional_int(value.get("condition"))
    if condition is not None:
        slot["condition"] = int(clamp(condition, 0, 100))
    return slot


def _sanitize_equipment(value: Any) -> Optional[Dict[str, Any]]:
    if not isinstance(value, dict):
        return None
    slots = {k: _sanitize_slot(value.get(k)) for k in ("weapon", "armor")}
    slots = {k: v for k, v in slots.items() if v}
    return slots or None


def _sanitize_new_location(value: Any) -> Optional[Dict[str, Any]]:
    if not isinstance(value, dict):
        return None
    name = coerce_str(value.get("name"))
    if not name:
        return None
    return {
        "name": name,
        "id": coerce_str(value.get("id")) or None,
        "x": coerce_int(value.get("x")),
        "y": coerce_int(value.get("y")),
        "description": coerce_str(value.get("description")),
        "type": coerce_str(value.get("type")) or "place",
    }


def _sanitize_new_edges(value: Any) -> List[Dict[str, Any]]:
    edges = []
    for entry in value if isinstance(value, list) else []:
        if not isinstance(entry, dict):
            continue
        src, dst = coerce_str(entry.get("from")), coerce_str(entry.get("to"))
        if src and dst and src != dst:
            edges.append({"from": src, "to": dst, "kind": coerce_str(entry.get("kind")) or "path"})
    return edges


def _sanitize_npc_location(value: Any) -> Optional[Dict[str, str]]:
    if not isinstance(value, dict):
        return None
    name, location = coerce_str(value.get("name")), coerce_str(value.get("location"))
    if not name or not location:
        return None
    return {"name": name, "location": location}


def _sanitize_skill_xp(value: Any) -> Dict[str, int]:
    if not isinstance(value, dict):
        return {}
    awards = {}
    for skill, xp in value.items():
        key = coerce_str(skill).lower()
        amount = int(clamp(coerce_int(xp), 0, MAX_SKILL_XP))
        if key and amount > 0:
            awards[key] = amount
    return awards


def _sanitize_effects(value: Any) -> List[Dict[str, Any]]:
    effects = []
    for entry in value if isinstance(value, list) else []:
        if not isinstance(entry, dict):
            continue
        stat = coerce_str(entry.get("stat"))
        delta = coerce_int(entry.get("delta")) if _is_number(entry.get("delta")) else 0
        if stat in EFFECT_STATS and delta != 0:
            effects.append({"stat": stat, "delta": delta, "reason": coerce_str(entry.get("reason"))})
    return effects[:MAX_EFFECTS]


def _derive_effects(patch: Dict[str, Any]) -> List[Dict[str, Any]]:
    effects = []
    for stat, (negative, positive) in _AUTO_EFFECT_REASONS.items():
        delta = patch.get(stat, 0)
        if delta:
            effects.append({"stat": stat, "delta": delta, "reason": negative if delta < 0 else positive})
    return effects


def _sanitize_branch(value: Any) -> Optional[Dict[str, Any]]:
    if not isinstance(value, dict):
        return None
    branch: Dict[str, Any] = {}
    description = coerce_str(value.get("description"))
    if description:
        branch["description"] = description
    choices = _string_list(value.get("choices"))
    if choices:
        branch["choices"] = choices
    if isinstance(value.get("effects"), list):
        branch["effects"] = _sanitize_effects(value["effects"])
    return branch


def _sanitize_skill_check(value: Any) -> Optional[Dict[str, Any]]:
    if not isinstance(value, dict):
        return None
    key = coerce_str(value.get("key")).lower()
    if not key:
        return None
    difficulty = value.get("difficulty")
    difficulty = coerce_int(difficulty) if _is_number(difficulty) else 50
    return {
        "kind": coerce_str(value.get("kind")) or "skill",
        "key": key,
        "difficulty": int(clamp(difficulty, 0, 100)),
        "onSuccess": _sanitize_branch(value.get("onSuccess")),
        "onFail": _sanitize_branch(value.get("onFail")),
    }


def _sanitize_quests(value: Any) -> List[Dict[str, str]]:
    quests = []
    for entry in value if isinstance(value, list) else []:
        if not isinstance(entry, dict):
            continue
        name = coerce_str(entry.get("name"))
        if name:
            quests.append({
                "name": name,
                "status": coerce_str(entry.get("status")) or "active",
                "description": coerce_str(entry.get("description")),
            })
    return quests


def _sanitize_factions(value: Any) -> List[Dict[str, Any]]:
    factions = []
    for entry in value if isinstance(value, list) else []:
        if not isinstance(entry, dict):
            continue
        name = coerce_str(entry.get("name"))
        if not name:
            continue
        delta = entry.get("dispositionDelta")
        factions.append({
            "name": name,
            "disposition": _optional_int(entry.get("disposition")),
            "dispositionDelta": coerce_int(delta) if _is_number(delta) else 0,
            "notes": coerce_str(entry.get("notes")),
        })
    return factions


def _sanitize_debts(value: Any) -> List[Dict[str, Any]]:
    debts = []
    for entry in value if isinstance(value, list) else []:
        if not isinstance(entry, dict):
            continue
        debtor, creditor = coerce_str(entry.get("from")), coerce_str(entry.get("to"))
        if not debtor or not creditor:
            continue
        amount = entry.get("amount")
        due_day = entry.get("dueDay")
        debts.append({
            "from": debtor,
            "to": creditor,
            "amount": int(clamp(coerce_int(amount), 1, 5000)) if _is_number(amount) else 0,
            "reason": coerce_str(entry.get("reason")),
            "status": coerce_str(entry.get("status")) or "active",
            "dueDay": max(0, coerce_int(due_day)) if _is_number(due_day) else None,
        })
    return debts


def sanitize_patch_data(data: Dict[str, Any]) -> Dict[str, Any]:
    """Allowlist, default, coerce and bound a decoded narrator record."""
    dropped = sorted(k for k in data if k not in ALLOWED_KEYS)
    if dropped:
        logger.info(f"Dropping unrecognized patch fields: {dropped}")
    data = {k: v for k, v in data.items() if k in ALLOWED_KEYS}

    description = coerce_str(data.get("description"))
    choices = _string_list(data.get("choices"))
    patch: Dict[str, Any] = {
        "description": description or DEFAULT_DESCRIPTION,
        "choices": choices or list(DEFAULT_CHOICES),
        "isDialogue": data.get("isDialogue") is True,
        "speakerName": coerce_str(data.get("speakerName")),
        "gameOver": data.get("gameOver") is True,
        "deathReason": coerce_str(data.get("deathReason")),
    }

    for field, (lo, hi) in NUMERIC_BOUNDS.items():
        value = coerce_int(data.get(field))
        bounded = int(clamp(value, lo, hi))
        if bounded != value:
            logger.info(f"Clamping suspicious {field} delta {value} -> {bounded}")
        patch[field] = bounded

    patch["locationChange"] = coerce_str(data.get("locationChange"))
    patch["newLocation"] = _sanitize_new_location(data.get("newLocation"))
    patch["newEdges"] = _sanitize_new_edges(data.get("newEdges"))
    patch["npcLocation"] = _sanitize_npc_location(data.get("npcLocation"))
    patch["skillXP"] = _sanitize_skill_xp(data.get("skillXP"))
    patch["usedItems"] = _string_list(data.get("usedItems"))
    patch["newItems"] = _sanitize_new_items(data.get("newItems"))
    patch["equipment"] = _sanitize_equipment(data.get("equipment"))
    patch["newEquipment"] = _sanitize_equipment(data.get("newEquipment"))
    patch["characterUpdate"] = _sanitize_character_update(data.get("characterUpdate"), data.get("npcUpdates"))
    patch["questsUpdate"] = _sanitize_quests(data.get("questsUpdate"))
    patch["skillCheck"] = _sanitize_skill_check(data.get("skillCheck"))
    patch["factionUpdates"] = _sanitize_factions(data.get("factionUpdates"))
    patch["debtsUpdate"] = _sanitize_debts(data.get("debtsUpdate"))

    effects = _sanitize_effects(data.get("effects"))
    patch["effects"] = effects or _derive_effects(patch)
    return patch


def fallback_patch() -> NarrativePatch:
    """Neutral turn used when the narrator cannot produce anything usable."""
    return NarrativePatch(
        description="The world pauses for a moment... Try the action again.",
        choices=["Try again", "Look around", "Wait"],
    )
