import json
import logging
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, Field

from ai_provider import AIProvider, GenerationError
from config import settings
from models import (
    CharacterSheet, Effect, GameDate, HistoryEntry, MapWaypoint, Milestone,
    NarrativePatch, Route, SkillCheckResult, WorldState,
)
from mutation import DEFAULT_DEATH_REASON, apply_patch, project_fatal_damage
from normalizer import ALLOWED_KEYS, ParseError, fallback_patch, normalize_patch
from skill_check import resolve_skill_check
from utils import coerce_str, format_date
from world_map import compute_route, ensure_integrity
from world_rules import apply_world_rules

llm_logger = logging.getLogger("llm_responses")
audit_logger = logging.getLogger("ai_parse_failures")
logger = logging.getLogger(__name__)

START_LOCATION = "Rattay, street by the market"
START_TRAITS = ["bewildered", "resilient", "adaptable", "observant"]
CONTINUE_DESCRIPTION = "You continue on your way..."
CONTINUE_CHOICES = ["Continue", "Look around", "Rest"]
HISTORY_IN_CONTEXT = 5

FORMAT_REMINDER = (
    "\n\nIMPORTANT: your previous answer could not be read. Reply with ONE JSON object only, "
    "no markdown and no commentary. Recognized keys: " + ", ".join(sorted(ALLOWED_KEYS)) + "."
)


class AttemptFailure(BaseModel):
    attempt: int
    reason: str
    raw_text: str = ""


class TurnResult(BaseModel):
    description: str
    choices: List[str] = Field(default_factory=list)
    is_dialogue: bool = False
    speaker_name: str = ""
    effects: List[Effect] = Field(default_factory=list)
    check_result: Optional[SkillCheckResult] = None
    game_over: bool = False
    death_reason: str = ""
    notes: List[str] = Field(default_factory=list)
    trace: List[str] = Field(default_factory=list)


def _background(name: str, gender: str) -> str:
    they, them = ("she", "her") if gender == "female" else ("he", "him")
    return (
        f"{name} woke up in the mud of a Rattay street. A rider knocked {them} down; "
        f"{they} lies beaten, without clothes or belongings, and remembers nothing. "
        "Only vague fragments of something strange remain. The locals do not know "
        f"who {they} is. {they.capitalize()} has to survive in this medieval world."
    )


def create_world_state(name: str, gender: str = "male") -> WorldState:
    """Fresh character at the start of the story, map anchored on the start location."""
    gender = "female" if str(gender).lower() == "female" else "male"
    name = coerce_str(name) or "Wanderer"
    date = GameDate()
    state = WorldState(
        name=name,
        gender=gender,
        location=START_LOCATION,
        date=date,
        character=CharacterSheet(
            background=_background(name, gender),
            traits=list(START_TRAITS),
            milestones=[Milestone(
                day=date.day, month=date.month, year=date.year, day_of_game=date.day_of_game,
                event="Woke up in the mud of Rattay with no memory",
            )],
        ),
    )
    ensure_integrity(state)
    return state


def opening_scene(state: WorldState) -> Tuple[str, List[str]]:
    adjective = "naked and beaten" if state.gender == "male" else "naked and bruised"
    description = (
        "A sharp pain runs through your whole body. You slowly open your eyes: dirty "
        "cobblestones, puddles, horse dung. Your head is splitting. You are lying in the "
        f"street of a medieval town, {adjective}, covered in scrapes and mud. Wooden houses "
        "with thatched roofs, carts, a crowd in rough clothes. They stop and point at you. "
        "\"Look, another vagrant!\""
    )
    choices = [
        "Cover yourself with your hands and ask passers-by for help",
        "Get up quickly and run into the nearest alley",
        "Look around for rags or discarded clothes",
    ]
    return description, choices


def restore_state(data: Dict[str, Any]) -> WorldState:
    """Validate a client or disk supplied state; missing fields take model defaults."""
    state = WorldState.model_validate(data)
    ensure_integrity(state)
    return state


class GameEngine:
    """Runs narrated turns: generator call, normalization, guardrails, mutation, checks."""
    def __init__(self, ai_provider: AIProvider, attempts: Optional[int] = None):
        self.ai = ai_provider
        self.attempts = max(1, attempts if attempts is not None else settings.generation_attempts)

    def new_game(self, name: str, gender: str = "male") -> Tuple[WorldState, str, List[str]]:
        state = create_world_state(name, gender)
        description, choices = opening_scene(state)
        logger.info(f"New game for {state.name} ({state.gender})")
        return state, description, choices

    def build_context_for_ai(self, state: WorldState) -> str:
        v, d = state.vitals, state.date
        context_parts = [
            f"PLAYER: {state.name} ({state.gender})",
            f"DATE: {format_date(d.day, d.month, d.year)}, {d.hour}:00 ({d.time_of_day.value}), day {d.day_of_game}",
            f"LOCATION: {state.location}",
            f"VITALS: health {v.health}/{v.max_health}, stamina {v.stamina}/{v.max_stamina}, "
            f"satiety {v.satiety}, energy {v.energy}, coins {v.coins}, reputation {v.reputation}, morality {v.morality}",
            "ATTRIBUTES: " + ", ".join(f"{k} {val}" for k, val in state.attributes.model_dump().items()),
            "SKILLS: " + ", ".join(f"{k} {s.level}" for k, s in state.skills.items()),
            f"EQUIPMENT: weapon {state.equipment.weapon.name}, armor {state.equipment.armor.name}",
            "INVENTORY: " + (", ".join(f"{i.name} x{i.quantity}" for i in state.inventory) or "empty"),
        ]
        if state.character.background:
            context_parts.append(f"BACKGROUND: {state.character.background}")
        if state.world_map:
            context_parts.append("KNOWN PLACES: " + ", ".join(f"{n.name} [{n.id}]" for n in state.world_map))
        if state.npcs:
            context_parts.append("NPCS: " + "; ".join(
                f"{n.name} (disposition {n.disposition}{', ' + n.role if n.role else ''})" for n in state.npcs.values()
            ))
        active_quests = [q.name for q in state.quests if q.status == "active"]
        if active_quests:
            context_parts.append(f"ACTIVE QUESTS: {', '.join(active_quests)}")
        open_debts = [f"{x.debtor} owes {x.creditor} {x.amount} ({x.reason})" for x in state.debts if x.status != "closed"]
        if open_debts:
            context_parts.append(f"DEBTS: {'; '.join(open_debts)}")
        if state.character.recent_events:
            context_parts.append(f"RECENT EVENTS: {'; '.join(state.character.recent_events[-10:])}")
        for entry in state.history[-HISTORY_IN_CONTEXT:]:
            context_parts.append(f"EARLIER: player chose \"{entry.choice}\" -> {entry.scene[:300]}")
        context_parts.append(
            "Answer with one JSON object describing the next scene and the consequences as deltas. "
            "Recognized keys: " + ", ".join(sorted(ALLOWED_KEYS)) + "."
        )
        return "\n".join(context_parts)

    @staticmethod
    def build_prompt(choice: str, previous_scene: str = "") -> str:
        parts = []
        if previous_scene:
            parts.append(f"PREVIOUS SCENE: {previous_scene}")
        parts.append(f"PLAYER ACTION: {choice}")
        return "\n\n".join(parts)

    def _audit(self, session_id: str, choice: str, failure: AttemptFailure) -> None:
        audit_logger.info(json.dumps({
            "sessionId": session_id,
            "choice": choice,
            "attempt": failure.attempt,
            "reason": failure.reason,
            "raw": failure.raw_text,
        }, ensure_ascii=False))

    async def request_patch(self, state: WorldState, choice: str, previous_scene: str = "", session_id: str = "") -> NarrativePatch:
        """
        Ask the narrator for the next patch.

        Bounded retry loop; every failed attempt is audited. After the last
        failure a neutral fallback patch is returned, so this never raises for
        generator or parse problems.
        """
        context = self.build_context_for_ai(state)
        prompt = self.build_prompt(choice, previous_scene)
        failures: List[AttemptFailure] = []

        for attempt in range(1, self.attempts + 1):
            raw_text = ""
            try:
                raw_text = await self.ai.generate_response(prompt if attempt == 1 else prompt + FORMAT_REMINDER, context)
                return normalize_patch(raw_text)
            except (GenerationError, ParseError) as e:
                failure = AttemptFailure(attempt=attempt, reason=str(e), raw_text=raw_text)
                failures.append(failure)
                self._audit(session_id, choice, failure)
                llm_logger.error(f"Generation attempt {attempt}/{self.attempts} failed. Error: {e}")

        llm_logger.error(f"All {len(failures)} attempts failed for session {session_id}, using fallback patch")
        return fallback_patch()

    def commit_turn(self, state: WorldState, session_id: str, choice: str, patch: NarrativePatch) -> TurnResult:
        """Apply a normalized patch to state and record the turn in history."""
        ensure_integrity(state)
        notes = apply_world_rules(state, patch)
        project_fatal_damage(state, patch)
        mutation = apply_patch(state, patch)

        description, choices, effects = patch.description, patch.choices, list(patch.effects)
        check = resolve_skill_check(state, patch.skill_check, session_id)
        if check is not None:
            branch = patch.skill_check.on_success if check.success else patch.skill_check.on_fail
            if branch is not None:
                if branch.description and branch.description.strip():
                    description = branch.description
                if branch.choices:
                    choices = branch.choices
                if branch.effects is not None:
                    effects = list(branch.effects)
            outcome = "Success" if check.success else "Failure"
            effects.insert(0, Effect(
                stat="check", delta=0,
                reason=f"{outcome}: {check.key} check (difficulty {check.difficulty}, roll {check.roll}/{check.chance})",
            ))

        game_over = mutation.game_over or state.vitals.health <= 0
        death_reason = mutation.death_reason if game_over else ""
        if game_over:
            death_reason = death_reason or DEFAULT_DEATH_REASON
            logger.info(f"GAME OVER for {state.name}: {death_reason}")

        state.history.append(HistoryEntry(
            choice=choice,
            scene=description,
            choices=[] if game_over else list(choices),
            location=state.location,
            date=state.date.model_copy(),
            game_over=game_over,
            death_reason=death_reason,
        ))
        return TurnResult(
            description=description,
            choices=[] if game_over else list(choices),
            is_dialogue=patch.is_dialogue,
            speaker_name=patch.speaker_name,
            effects=effects,
            check_result=check,
            game_over=game_over,
            death_reason=death_reason,
            notes=notes,
            trace=mutation.trace,
        )

    async def play_turn(self, state: WorldState, session_id: str, choice: str, previous_scene: str = "") -> TurnResult:
        patch = await self.request_patch(state, choice, previous_scene, session_id)
        return self.commit_turn(state, session_id, choice, patch)

    @staticmethod
    def client_update(state: WorldState, patch: Any) -> WorldState:
        """Apply client-side UX changes. Only mapWaypoint is accepted."""
        ensure_integrity(state)
        if not isinstance(patch, dict):
            return state
        waypoint = patch.get("mapWaypoint")
        if isinstance(waypoint, dict):
            location_id = waypoint.get("locationId")
            state.map_waypoint = MapWaypoint(
                location_id=str(location_id) if location_id else None,
                name=coerce_str(waypoint.get("name")),
            )
        return state

    @staticmethod
    def route(state: WorldState, to_id: Optional[str], from_id: Optional[str] = None) -> Tuple[Optional[str], Optional[Route]]:
        """Route from from_id (default: where the player stands) to to_id."""
        start = from_id or state.player_pos.location_id
        return start, compute_route(state, start, to_id)

    @staticmethod
    def final_stats(state: WorldState) -> Dict[str, int]:
        return {
            "daysPlayed": state.date.day_of_game,
            "actions": len(state.history),
            "coins": state.vitals.coins,
            "reputation": state.vitals.reputation,
        }
