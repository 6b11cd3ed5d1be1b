from __future__ import annotations
import math
from enum import Enum
from typing import Dict, List, Optional
from pydantic import BaseModel, Field, ConfigDict, computed_field, model_validator
from pydantic.alias_generators import to_camel

def _bounded(n: int, lo: int, hi: int) -> int:
    return max(lo, min(hi, n))

# ============================================================================
# Calendar
# ============================================================================
class TimeOfDay(str, Enum):
    MORNING = "morning"
    DAY = "day"
    EVENING = "evening"
    NIGHT = "night"

DAYS_IN_MONTH = [31, 28, 31, 30, 31, 30, 31, 31, 30, 31, 30, 31]

class GameDate(BaseModel):
    day: int = 12
    month: int = 6
    year: int = 1403
    day_of_game: int = 1
    hour: int = 9
    time_of_day: TimeOfDay = TimeOfDay.MORNING

    @model_validator(mode="after")
    def _clamp_ranges(self) -> GameDate:
        self.month = _bounded(self.month, 1, 12)
        self.day = _bounded(self.day, 1, DAYS_IN_MONTH[self.month - 1])
        self.hour = _bounded(self.hour, 0, 23)
        self.day_of_game = max(1, self.day_of_game)
        self.time_of_day = self.bucket_for_hour(self.hour)
        return self

    @staticmethod
    def bucket_for_hour(hour: int) -> TimeOfDay:
        if 5 <= hour < 12: return TimeOfDay.MORNING
        if 12 <= hour < 18: return TimeOfDay.DAY
        if 18 <= hour < 22: return TimeOfDay.EVENING
        return TimeOfDay.NIGHT

    def advance_time(self, hours: int) -> int:
        """Advance the clock by whole hours. Returns how many days rolled over."""
        days_passed = 0
        if hours > 0:
            self.hour += hours
        while self.hour >= 24:
            self.hour -= 24
            self.day += 1
            self.day_of_game += 1
            days_passed += 1
            if self.day > DAYS_IN_MONTH[self.month - 1]:
                self.day = 1
                self.month += 1
                if self.month > 12:
                    self.month = 1
                    self.year += 1
        self.time_of_day = self.bucket_for_hour(self.hour)
        return days_passed

# ============================================================================
# Character
# ============================================================================
class Vitals(BaseModel):
    health: int = 35
    max_health: int = 100
    stamina: int = 30
    max_stamina: int = 100
    satiety: int = 20    # 100 = fed, 0 = starving (loses health)
    energy: int = 55     # 100 = rested, < 35 = exhausted (stamina capped)
    coins: int = 0
    reputation: int = 25
    morality: int = 50

    @model_validator(mode="after")
    def _clamp_ranges(self) -> Vitals:
        # ranges hold for loaded and client supplied states too
        self.max_health = max(1, self.max_health)
        self.max_stamina = max(1, self.max_stamina)
        self.health = _bounded(self.health, 0, self.max_health)
        self.stamina = _bounded(self.stamina, 0, self.max_stamina)
        self.satiety = _bounded(self.satiety, 0, 100)
        self.energy = _bounded(self.energy, 0, 100)
        self.coins = max(0, self.coins)
        self.reputation = _bounded(self.reputation, 0, 100)
        self.morality = _bounded(self.morality, 0, 100)
        return self

ATTRIBUTE_NAMES = ("strength", "agility", "intelligence", "charisma")

class Attributes(BaseModel):
    strength: int = 3
    agility: int = 3
    intelligence: int = 3
    charisma: int = 3

    @model_validator(mode="after")
    def _clamp_ranges(self) -> Attributes:
        for name in ATTRIBUTE_NAMES:
            setattr(self, name, _bounded(getattr(self, name), 1, 20))
        return self

class Skill(BaseModel):
    level: int = 0
    xp: int = 0
    next_level: int = 100

    @model_validator(mode="after")
    def _clamp_ranges(self) -> Skill:
        self.level = max(0, self.level)
        self.xp = max(0, self.xp)
        self.next_level = max(1, self.next_level)
        return self

    def add_xp(self, amount: int) -> int:
        """Add XP and level up as many times as it pays for. Returns levels gained."""
        gained = 0
        self.xp += amount
        while self.xp >= self.next_level:
            self.level += 1
            self.xp -= self.next_level
            self.next_level = math.floor(self.next_level * 1.5)
            gained += 1
        return gained

SKILL_NAMES = ("combat", "stealth", "speech", "survival")

def _default_skills() -> Dict[str, Skill]:
    return {name: Skill() for name in SKILL_NAMES}

class EquipmentSlot(BaseModel):
    name: str = "none"
    condition: int = 0

    @model_validator(mode="after")
    def _clamp_ranges(self) -> EquipmentSlot:
        self.condition = _bounded(self.condition, 0, 100)
        return self

class Equipment(BaseModel):
    weapon: EquipmentSlot = Field(default_factory=EquipmentSlot)
    armor: EquipmentSlot = Field(default_factory=EquipmentSlot)

class InventoryItem(BaseModel):
    name: str
    quantity: int = 1
    type: str = "item"
    description: str = ""

class Milestone(BaseModel):
    day: int
    month: int
    year: int
    day_of_game: int
    event: str

class CharacterSheet(BaseModel):
    background: str = ""
    traits: List[str] = Field(default_factory=list)
    recent_events: List[str] = Field(default_factory=list)
    important_choices: List[str] = Field(default_factory=list)
    npc_locations: Dict[str, str] = Field(default_factory=dict)  # NPC name -> free-text location
    milestones: List[Milestone] = Field(default_factory=list)

# ============================================================================
# World graph
# ============================================================================
class MapNode(BaseModel):
    id: str
    name: str
    x: int = 0
    y: int = 0
    description: str = ""
    type: str = "place"
    discovered: bool = True
    discovered_at_day: int = 1
    visited_count: int = 0

class MapEdge(BaseModel):
    from_id: str
    to_id: str
    kind: str = "road"
    discovered_at_day: int = 1

    def links(self, a: str, b: str) -> bool:
        return (self.from_id == a and self.to_id == b) or (self.from_id == b and self.to_id == a)

class PlayerPosition(BaseModel):
    x: int = 0
    y: int = 0
    location_id: Optional[str] = None

class MapWaypoint(BaseModel):
    location_id: Optional[str] = None
    name: str = ""

# ============================================================================
# Social / quests
# ============================================================================
class NPCSighting(BaseModel):
    day_of_game: Optional[int] = None
    location_id: Optional[str] = None
    location_name: str = ""

class NPCRecord(BaseModel):
    name: str
    disposition: int = 0  # -100 hostile .. 100 devoted
    role: Optional[str] = None
    status: Optional[str] = None
    notes: Optional[str] = None
    faction: Optional[str] = None
    memory: List[str] = Field(default_factory=list)
    last_seen: Optional[NPCSighting] = None

    @model_validator(mode="after")
    def _clamp_ranges(self) -> NPCRecord:
        self.disposition = _bounded(self.disposition, -100, 100)
        return self

class Faction(BaseModel):
    name: str
    disposition: int = 0
    notes: str = ""

    @model_validator(mode="after")
    def _clamp_ranges(self) -> Faction:
        self.disposition = _bounded(self.disposition, -100, 100)
        return self

class Debt(BaseModel):
    debtor: str
    creditor: str
    amount: int = 0
    reason: str = ""
    status: str = "active"
    due_day: Optional[int] = None
    created_day: Optional[int] = None

class Quest(BaseModel):
    name: str
    status: str = "active"
    description: str = ""

class HistoryEntry(BaseModel):
    choice: str
    scene: str
    choices: List[str] = Field(default_factory=list)
    location: str = ""
    date: GameDate = Field(default_factory=GameDate)
    game_over: bool = False
    death_reason: str = ""

# ============================================================================
# World state
# ============================================================================
class WorldState(BaseModel):
    name: str
    gender: str = "male"
    location: str = ""
    date: GameDate = Field(default_factory=GameDate)
    vitals: Vitals = Field(default_factory=Vitals)
    attributes: Attributes = Field(default_factory=Attributes)
    skills: Dict[str, Skill] = Field(default_factory=_default_skills)
    equipment: Equipment = Field(default_factory=Equipment)
    inventory: List[InventoryItem] = Field(default_factory=list)
    world_map: List[MapNode] = Field(default_factory=list)
    world_edges: List[MapEdge] = Field(default_factory=list)
    player_pos: PlayerPosition = Field(default_factory=PlayerPosition)
    map_waypoint: MapWaypoint = Field(default_factory=MapWaypoint)
    character: CharacterSheet = Field(default_factory=CharacterSheet)
    npcs: Dict[str, NPCRecord] = Field(default_factory=dict)
    factions: Dict[str, Faction] = Field(default_factory=dict)
    debts: List[Debt] = Field(default_factory=list)
    quests: List[Quest] = Field(default_factory=list)
    history: List[HistoryEntry] = Field(default_factory=list)
    # Cooldown trackers for the world rules
    last_rep_increase_day: Optional[int] = None
    last_morality_change_day: Optional[int] = None
    npc_disposition_last_change_turn: Dict[str, int] = Field(default_factory=dict)

    @property
    def turn_index(self) -> int:
        return len(self.history)

    def find_item(self, name: str) -> Optional[InventoryItem]:
        lowered = name.lower()
        return next((i for i in self.inventory if i.name.lower() == lowered), None)

    def get_node(self, node_id: Optional[str]) -> Optional[MapNode]:
        if not node_id:
            return None
        return next((n for n in self.world_map if n.id == node_id), None)

# ============================================================================
# Narrative patch (untrusted, per turn)
# ============================================================================
class PatchModel(BaseModel):
    """Generator-facing records use camelCase keys on the wire."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

class ItemGrant(PatchModel):
    name: str
    quantity: int = 1
    type: str = "item"
    description: str = ""

class SlotUpdate(PatchModel):
    name: str
    condition: Optional[int] = None

class EquipmentUpdate(PatchModel):
    weapon: Optional[SlotUpdate] = None
    armor: Optional[SlotUpdate] = None

class RelationshipUpdate(PatchModel):
    role: Optional[str] = None
    status: Optional[str] = None
    notes: Optional[str] = None
    faction: Optional[str] = None
    disposition: Optional[int] = None
    memory: Optional[List[str]] = None
    memory_add: Optional[List[str]] = None

class CharacterUpdate(PatchModel):
    recent_events: List[str] = Field(default_factory=list)
    important_choices: List[str] = Field(default_factory=list)
    relationships: Dict[str, RelationshipUpdate] = Field(default_factory=dict)
    milestone: str = ""

class QuestUpdate(PatchModel):
    name: str
    status: str = "active"
    description: str = ""

class NewLocation(PatchModel):
    name: str
    id: Optional[str] = None
    x: int = 0
    y: int = 0
    description: str = ""
    type: str = "place"

class EdgeUpdate(PatchModel):
    from_ref: str = Field(alias="from")
    to_ref: str = Field(alias="to")
    kind: str = "path"

class NPCLocationHint(PatchModel):
    name: str
    location: str

class Effect(PatchModel):
    stat: str
    delta: int = 0
    reason: str = ""

class SkillCheckBranch(PatchModel):
    description: Optional[str] = None
    choices: Optional[List[str]] = None
    effects: Optional[List[Effect]] = None

class SkillCheckRequest(PatchModel):
    kind: str = "skill"   # 'skill' | 'attribute'
    key: str = ""
    difficulty: int = 50
    on_success: Optional[SkillCheckBranch] = None
    on_fail: Optional[SkillCheckBranch] = None

class SkillCheckResult(PatchModel):
    kind: str
    key: str
    difficulty: int
    actor: int
    chance: int
    roll: int
    success: bool

class FactionUpdate(PatchModel):
    name: str
    disposition: Optional[int] = None
    disposition_delta: int = 0
    notes: str = ""

class DebtUpdate(PatchModel):
    debtor: str = Field(alias="from")
    creditor: str = Field(alias="to")
    amount: int = 0
    reason: str = ""
    status: str = "active"
    due_day: Optional[int] = None

class NarrativePatch(PatchModel):
    # narrative / flow
    description: str = ""
    choices: List[str] = Field(default_factory=list)
    is_dialogue: bool = False
    speaker_name: str = ""
    game_over: bool = False
    death_reason: str = ""
    # deltas
    health: int = 0
    stamina: int = 0
    coins: int = 0
    reputation: int = 0
    morality: int = 0
    time_change: int = 0
    satiety: int = 0
    energy: int = 0
    strength: int = 0
    agility: int = 0
    intelligence: int = 0
    charisma: int = 0
    # world
    location_change: str = ""
    new_location: Optional[NewLocation] = None
    new_edges: List[EdgeUpdate] = Field(default_factory=list)
    npc_location: Optional[NPCLocationHint] = None
    # progression
    skill_xp: Dict[str, int] = Field(default_factory=dict, alias="skillXP")
    # inventory / equipment
    used_items: List[str] = Field(default_factory=list)
    new_items: List[ItemGrant] = Field(default_factory=list)
    equipment: Optional[EquipmentUpdate] = None
    new_equipment: Optional[EquipmentUpdate] = None
    # character / meta
    character_update: CharacterUpdate = Field(default_factory=CharacterUpdate)
    quests_update: List[QuestUpdate] = Field(default_factory=list)
    effects: List[Effect] = Field(default_factory=list)
    skill_check: Optional[SkillCheckRequest] = None
    faction_updates: List[FactionUpdate] = Field(default_factory=list)
    debts_update: List[DebtUpdate] = Field(default_factory=list)

# ============================================================================
# Routes
# ============================================================================
class RouteLeg(PatchModel):
    from_id: str
    to_id: str
    kind: str
    cost: float

class Route(PatchModel):
    from_id: str
    to_id: str
    path_ids: List[str]
    legs: List[RouteLeg]
    total_cost: float

    @computed_field(alias="estimatedHours")
    @property
    def estimated_hours(self) -> int:
        return math.ceil(self.total_cost)

    @computed_field(alias="staminaCost")
    @property
    def stamina_cost(self) -> int:
        return math.ceil(self.total_cost * 6)
