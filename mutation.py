"""
State Mutation Engine.

Applies one validated, guarded NarrativePatch to a WorldState. The steps run
in a fixed order and the order matters: the clock moves before survival
decay, and equipment swaps happen before the phantom-gain checks read the
inventory channel. Nothing here raises on odd values; the normalizer has
already bounded them. Each step adds human-readable lines to a trace that
is logged and returned for diagnostics only.
"""
import logging
from typing import List, Optional

from pydantic import BaseModel, Field

from models import (
    Debt, EquipmentSlot, Faction, InventoryItem, MapNode, Milestone,
    NarrativePatch, NPCRecord, NPCSighting, Quest, SlotUpdate, WorldState,
    EquipmentUpdate,
)
from normalizer import DEFAULT_DESCRIPTION
from utils import clamp, round_half_up, stable_id_from_name
from world_map import add_node, connect, find_location_by_name, resolve_node_ref
from world_rules import (
    REPUTATION_CAPPED_GAIN, REPUTATION_SOFT_CAP,
)

logger = logging.getLogger(__name__)

# Survival
SATIETY_DECAY_PER_HOUR = 4
ENERGY_DECAY_PER_HOUR = 3
STARVATION_DAMAGE = 5
EXHAUSTION_THRESHOLD = 35
EXHAUSTED_STAMINA_CAP = 50
PHANTOM_GAIN_THRESHOLD = 5
SURVIVAL_MAX = 100
# Bounded logs
MAX_RECENT_EVENTS = 30
MAX_IMPORTANT_CHOICES = 15
MAX_NPC_MEMORY = 5
MAX_DEBTS = 50
ATTRIBUTE_RANGE = (1, 20)
FACTION_MAX_STEP = 5

DEFAULT_DEATH_REASON = "died of wounds"
STARVATION_DEATH_REASON = "starvation"
FATAL_DESCRIPTION = "Your strength runs out. The world darkens before your eyes.\n\nYou fall and do not rise again."

# Slot contents that mean "nothing equipped"; never returned to the inventory.
PLACEHOLDER_NAMES = {
    "weapon": frozenset({"нет", "кулаки", "none", "fists", "bare hands"}),
    "armor": frozenset({"нет", "голое тело", "тряпье", "none", "naked", "rags"}),
}
COMBINED_NAME_MARKERS = (" и ", " & ", " + ", " and ")


class MutationResult(BaseModel):
    game_over: bool = False
    death_reason: str = ""
    description: str = ""
    trace: List[str] = Field(default_factory=list)


def project_fatal_damage(state: WorldState, patch: NarrativePatch) -> bool:
    """
    Force game over on the patch if its health delta would leave the player at 0.

    Runs before mutation so the narrator cannot "forget" to end the game.
    """
    projected = clamp(state.vitals.health + patch.health, 0, state.vitals.max_health)
    if projected > 0:
        return False
    if not patch.game_over:
        logger.warning("Patch reduces health to 0 without gameOver, forcing it")
    patch.game_over = True
    patch.death_reason = patch.death_reason or DEFAULT_DEATH_REASON
    if not patch.description.strip() or patch.description == DEFAULT_DESCRIPTION:
        patch.description = FATAL_DESCRIPTION
    return True


def is_combined_name(name: str) -> bool:
    lowered = name.lower()
    return any(marker in lowered for marker in COMBINED_NAME_MARKERS)


class StateMutator:
    """Ordered transition WorldState x NarrativePatch -> WorldState (in place)."""

    def __init__(self, state: WorldState, patch: NarrativePatch):
        self.state = state
        self.patch = patch
        self.result = MutationResult(
            game_over=patch.game_over,
            death_reason=patch.death_reason,
            description=patch.description,
        )

    def _trace(self, message: str) -> None:
        logger.debug(message)
        self.result.trace.append(message)

    @property
    def today(self) -> int:
        return self.state.date.day_of_game

    def apply(self) -> MutationResult:
        self._advance_clock()
        self._change_location()
        self._apply_vitals()
        self._apply_attributes()
        self._apply_coins()
        self._apply_reputation()
        self._apply_morality()
        self._apply_skill_xp()
        self._equip(self.patch.equipment)
        self._merge_character_update()
        self._upsert_quests()
        self._grow_map()
        self._record_npc_location()
        self._apply_inventory()
        self._equip(self.patch.new_equipment)
        self._survival()
        self._apply_factions()
        self._apply_debts()

        if self.state.vitals.health <= 0 and not self.result.game_over:
            self.result.game_over = True
            self.result.death_reason = self.result.death_reason or DEFAULT_DEATH_REASON
        return self.result

    # ------------------------------------------------------------------ 1-2
    def _advance_clock(self) -> None:
        hours = self.patch.time_change
        if hours <= 0:
            return
        days = self.state.date.advance_time(hours)
        self._trace(f"Time +{hours}h -> {self.state.date.hour}:00 {self.state.date.time_of_day.value}"
                    + (f", {days} day(s) passed" if days else ""))

    def _change_location(self) -> None:
        target = self.patch.location_change.strip()
        if not target:
            return
        state, pos = self.state, self.state.player_pos
        self._trace(f"Location {state.location!r} -> {target!r}")
        state.location = target
        node = find_location_by_name(state, target, fuzzy=False)
        if node:
            pos.x, pos.y, pos.location_id = node.x, node.y, node.id
            node.visited_count += 1
            return
        node_id = stable_id_from_name(target)
        add_node(state, MapNode(
            id=node_id, name=target, x=pos.x, y=pos.y,
            description="Marked by name, position unknown",
            type="area", discovered_at_day=self.today, visited_count=1,
        ))
        pos.location_id = node_id

    # ------------------------------------------------------------------ 3-8
    def _apply_vitals(self) -> None:
        v = self.state.vitals
        if self.patch.health:
            v.health = int(clamp(v.health + self.patch.health, 0, v.max_health))
            self._trace(f"Health {self.patch.health:+d} -> {v.health}")
        if self.patch.stamina:
            v.stamina = int(clamp(v.stamina + self.patch.stamina, 0, v.max_stamina))
            self._trace(f"Stamina {self.patch.stamina:+d} -> {v.stamina}")

    def _apply_attributes(self) -> None:
        attrs = self.state.attributes
        for name in ("strength", "agility", "intelligence", "charisma"):
            delta = getattr(self.patch, name)
            if delta:
                setattr(attrs, name, int(clamp(getattr(attrs, name) + delta, *ATTRIBUTE_RANGE)))

    def _apply_coins(self) -> None:
        if self.patch.coins:
            v = self.state.vitals
            v.coins = max(0, v.coins + self.patch.coins)
            self._trace(f"Coins {self.patch.coins:+d} -> {v.coins}")

    def _apply_reputation(self) -> None:
        state, v = self.state, self.state.vitals
        delta = self.patch.reputation
        if delta > 0:
            if state.last_rep_increase_day == self.today:
                self._trace(f"Reputation +{delta} ignored: already increased today")
                delta = 0
            else:
                if v.reputation >= REPUTATION_SOFT_CAP and delta > REPUTATION_CAPPED_GAIN:
                    delta = REPUTATION_CAPPED_GAIN
                state.last_rep_increase_day = self.today
        elif delta < 0:
            state.last_rep_increase_day = None
        if delta:
            v.reputation = int(clamp(v.reputation + delta, 0, 100))
            self._trace(f"Reputation {delta:+d} -> {v.reputation}")

    def _apply_morality(self) -> None:
        if self.patch.morality:
            v = self.state.vitals
            v.morality = int(clamp(v.morality + self.patch.morality, 0, 100))

    def _apply_skill_xp(self) -> None:
        for name, xp in self.patch.skill_xp.items():
            skill = self.state.skills.get(name)
            if skill is None or xp <= 0:
                continue
            levels = skill.add_xp(xp)
            self._trace(f"Skill {name} +{xp} xp" + (f", level up to {skill.level}" if levels else ""))

    # ------------------------------------------------------------------ 9, 15
    def _take_from_inventory(self, name: str) -> bool:
        item = self.state.find_item(name)
        if item is None:
            return False
        item.quantity -= 1
        if item.quantity <= 0:
            self.state.inventory.remove(item)
        return True

    def _return_to_inventory(self, name: str, item_type: str) -> None:
        existing = self.state.find_item(name)
        if existing:
            existing.quantity += 1
        else:
            self.state.inventory.append(InventoryItem(name=name, quantity=1, type=item_type))

    def _swap_slot(self, slot: str, update: Optional[SlotUpdate]) -> None:
        if update is None or not update.name:
            return
        current: EquipmentSlot = getattr(self.state.equipment, slot)
        if update.name == current.name:
            return
        self._take_from_inventory(update.name)
        if current.name and current.name.lower() not in PLACEHOLDER_NAMES[slot]:
            self._return_to_inventory(current.name, slot)
        condition = update.condition or 100
        setattr(self.state.equipment, slot, EquipmentSlot(name=update.name, condition=int(clamp(condition, 0, 100))))
        self._trace(f"Equipped {slot}: {current.name!r} -> {update.name!r}")

    def _equip(self, update: Optional[EquipmentUpdate]) -> None:
        if update is None:
            return
        self._swap_slot("weapon", update.weapon)
        self._swap_slot("armor", update.armor)

    # ------------------------------------------------------------------ 10-11
    def _sighting(self, location_name: str) -> NPCSighting:
        node = find_location_by_name(self.state, location_name)
        return NPCSighting(
            day_of_game=self.today,
            location_id=node.id if node else None,
            location_name=location_name,
        )

    def _merge_character_update(self) -> None:
        update = self.patch.character_update
        sheet = self.state.character
        if update.recent_events:
            sheet.recent_events = (sheet.recent_events + update.recent_events)[-MAX_RECENT_EVENTS:]
        if update.important_choices:
            sheet.important_choices = (sheet.important_choices + update.important_choices)[-MAX_IMPORTANT_CHOICES:]

        for raw_name, rel in update.relationships.items():
            name = raw_name.strip()
            if not name:
                continue
            npc = self.state.npcs.get(name) or NPCRecord(name=name)
            for field in ("role", "status", "notes", "faction"):
                value = getattr(rel, field)
                if value:
                    setattr(npc, field, value)
            if rel.disposition is not None:
                npc.disposition = int(clamp(round_half_up(rel.disposition), -100, 100))
            memory = [m.strip() for m in rel.memory or [] if m and m.strip()]
            additions = [m.strip() for m in rel.memory_add or [] if m and m.strip()]
            if memory:
                npc.memory = memory[-MAX_NPC_MEMORY:]
            elif additions:
                npc.memory = (npc.memory + additions)[-MAX_NPC_MEMORY:]
            seen_at = sheet.npc_locations.get(name)
            if seen_at:
                npc.last_seen = self._sighting(seen_at)
            self.state.npcs[name] = npc

        if update.milestone.strip():
            d = self.state.date
            sheet.milestones.append(Milestone(
                day=d.day, month=d.month, year=d.year, day_of_game=d.day_of_game,
                event=update.milestone.strip(),
            ))
            self._trace(f"Milestone: {update.milestone.strip()}")

    def _upsert_quests(self) -> None:
        for q in self.patch.quests_update:
            existing = next((x for x in self.state.quests if x.name == q.name), None)
            if existing:
                existing.status = q.status
                existing.description = q.description
                self._trace(f"Quest updated: {q.name} ({q.status})")
            else:
                self.state.quests.append(Quest(name=q.name, status=q.status, description=q.description))
                self._trace(f"New quest: {q.name}")

    # ------------------------------------------------------------------ 12-13
    def _grow_map(self) -> None:
        state = self.state
        loc = self.patch.new_location
        if loc is not None and loc.name:
            node_id = loc.id or stable_id_from_name(loc.name)
            from_id = state.player_pos.location_id
            if not from_id:
                anchor = find_location_by_name(state, state.location, fuzzy=False)
                from_id = anchor.id if anchor else None
            added = add_node(state, MapNode(
                id=node_id, name=loc.name, x=loc.x, y=loc.y,
                description=loc.description, type=loc.type or "place",
                discovered_at_day=self.today, visited_count=0,
            ))
            if added:
                self._trace(f"Discovered location {loc.name!r} ({node_id})")
                if from_id:
                    connect(state, from_id, node_id, "path")

        for edge in self.patch.new_edges:
            a = resolve_node_ref(state, edge.from_ref)
            b = resolve_node_ref(state, edge.to_ref)
            if a and b and connect(state, a.id, b.id, edge.kind):
                self._trace(f"New {edge.kind} between {a.name!r} and {b.name!r}")

    def _record_npc_location(self) -> None:
        hint = self.patch.npc_location
        if hint is None or not hint.name.strip() or not hint.location:
            return
        name = hint.name.strip()
        self.state.character.npc_locations[name] = hint.location
        npc = self.state.npcs.get(name) or NPCRecord(name=name)
        npc.last_seen = self._sighting(hint.location)
        self.state.npcs[name] = npc
        self._trace(f"{name} seen at {hint.location!r}")

    # ------------------------------------------------------------------ 14
    def _apply_inventory(self) -> None:
        inventory = self.state.inventory
        for name in self.patch.used_items:
            item = next((i for i in inventory if i.name == name), None)
            if item is None:
                continue
            item.quantity -= 1
            if item.quantity <= 0:
                inventory.remove(item)
            self._trace(f"Used {name}")

        for grant in self.patch.new_items:
            name = grant.name.strip()
            if is_combined_name(name):
                self._trace(f"Skipped combined item {name!r}")
                continue
            if len(name) < 2:
                continue
            quantity = grant.quantity or 1
            existing = self.state.find_item(name)
            if existing:
                existing.quantity += quantity
            else:
                inventory.append(InventoryItem(
                    name=name, quantity=quantity, type=grant.type, description=grant.description,
                ))
            self._trace(f"Gained {name} x{quantity}")

    # ------------------------------------------------------------------ 16-19
    def _survival(self) -> None:
        v = self.state.vitals
        hours = self.patch.time_change
        if hours > 0:
            v.satiety = max(0, v.satiety - hours * SATIETY_DECAY_PER_HOUR)
            v.energy = max(0, v.energy - hours * ENERGY_DECAY_PER_HOUR)

        if v.satiety <= 0:
            v.health = max(0, v.health - STARVATION_DAMAGE)
            self._trace(f"Starvation: health -{STARVATION_DAMAGE} -> {v.health}")
            if v.health <= 0:
                self.result.game_over = True
                self.result.death_reason = self.result.death_reason or STARVATION_DEATH_REASON
        if v.energy < EXHAUSTION_THRESHOLD:
            v.stamina = min(v.stamina, EXHAUSTED_STAMINA_CAP)

        satiety_gain, energy_gain = self.patch.satiety, self.patch.energy
        if satiety_gain > PHANTOM_GAIN_THRESHOLD and not self.patch.used_items:
            self._trace(f"Satiety +{satiety_gain} ignored: nothing was consumed")
            satiety_gain = 0
        if energy_gain > PHANTOM_GAIN_THRESHOLD and hours < 1:
            self._trace(f"Energy +{energy_gain} ignored: no time passed")
            energy_gain = 0

        if satiety_gain:
            v.satiety = int(clamp(v.satiety + satiety_gain, 0, SURVIVAL_MAX))
        if energy_gain:
            v.energy = int(clamp(v.energy + energy_gain, 0, SURVIVAL_MAX))

    # ------------------------------------------------------------------ 20-21
    def _apply_factions(self) -> None:
        for update in self.patch.faction_updates:
            name = update.name.strip()
            if not name:
                continue
            faction = self.state.factions.get(name) or Faction(name=name)
            if update.disposition is not None:
                faction.disposition = int(clamp(update.disposition, -100, 100))
            elif update.disposition_delta:
                step = clamp(update.disposition_delta, -FACTION_MAX_STEP, FACTION_MAX_STEP)
                faction.disposition = int(clamp(faction.disposition + step, -100, 100))
            if update.notes.strip():
                faction.notes = update.notes.strip()
            self.state.factions[name] = faction

    def _apply_debts(self) -> None:
        if not self.patch.debts_update:
            return
        debts = self.state.debts
        for update in self.patch.debts_update:
            debtor, creditor = update.debtor.strip(), update.creditor.strip()
            if not debtor or not creditor:
                continue
            entry = Debt(
                debtor=debtor, creditor=creditor, amount=update.amount,
                reason=update.reason.strip(), status=update.status or "active",
                due_day=update.due_day, created_day=self.today,
            )
            index = next((
                i for i, d in enumerate(debts)
                if d.debtor == debtor and d.creditor == creditor
                and d.reason == entry.reason and d.status != "closed"
            ), None)
            if index is None:
                debts.append(entry)
            else:
                debts[index] = entry
        if len(debts) > MAX_DEBTS:
            self.state.debts = debts[-MAX_DEBTS:]


def apply_patch(state: WorldState, patch: NarrativePatch) -> MutationResult:
    """Mutate state with patch and return the outcome flags plus the trace."""
    return StateMutator(state, patch).apply()
