"""Tests for the ordered state transition."""

import random

import pytest

from models import (
    CharacterUpdate, DebtUpdate, Debt, EdgeUpdate, EquipmentSlot, EquipmentUpdate, FactionUpdate,
    InventoryItem, ItemGrant, MapNode, NarrativePatch, NewLocation, NPCLocationHint, QuestUpdate,
    RelationshipUpdate, SlotUpdate,
)
from mutation import (
    DEFAULT_DEATH_REASON, FATAL_DESCRIPTION, MAX_DEBTS, apply_patch, is_combined_name,
    project_fatal_damage,
)
from normalizer import DEFAULT_DESCRIPTION
from world_map import add_node


def apply(state, **fields):
    return apply_patch(state, NarrativePatch(**fields))


def inventory_of(state):
    return {i.name: i.quantity for i in state.inventory}


class TestVitals:

    def test_fuzzed_deltas_stay_in_range(self, state):
        rng = random.Random(1403)
        for _ in range(200):
            apply(state,
                  health=rng.randint(-10000, 10000),
                  stamina=rng.randint(-10000, 10000),
                  coins=rng.randint(-10000, 10000),
                  reputation=rng.randint(-10000, 10000),
                  morality=rng.randint(-10000, 10000),
                  satiety=rng.randint(-10000, 10000),
                  energy=rng.randint(-10000, 10000),
                  used_items=["Bread"],
                  time_change=rng.randint(0, 3))
            v = state.vitals
            assert 0 <= v.health <= v.max_health
            assert 0 <= v.stamina <= v.max_stamina
            assert 0 <= v.satiety <= 100
            assert 0 <= v.energy <= 100
            assert v.coins >= 0
            assert 0 <= v.reputation <= 100
            assert 0 <= v.morality <= 100

    def test_attributes_clamped(self, state):
        apply(state, strength=100, agility=-100)
        assert state.attributes.strength == 20
        assert state.attributes.agility == 1

    def test_coins_floor_at_zero(self, state):
        apply(state, coins=-50)
        assert state.vitals.coins == 0


class TestClockAndSurvival:

    def test_time_advances_before_decay(self, state):
        apply(state, time_change=15)
        d, v = state.date, state.vitals
        assert (d.day, d.hour, d.day_of_game) == (13, 0, 2)
        assert v.satiety == 0
        assert v.energy == 10
        # starvation hit after decay, exhaustion caps stamina
        assert v.health == 30
        assert v.stamina == 30

    def test_exhaustion_caps_stamina(self, state):
        state.vitals.stamina = 90
        state.vitals.energy = 20
        apply(state)
        assert state.vitals.stamina == 50

    def test_phantom_satiety_gain_is_zeroed(self, state):
        apply(state, satiety=20, used_items=[])
        assert state.vitals.satiety == 20

    def test_satiety_gain_with_consumed_item(self, state):
        apply(state, satiety=20, used_items=["Хлеб"])
        assert state.vitals.satiety == 40

    def test_satiety_capped_at_100(self, state):
        state.vitals.satiety = 90
        apply(state, satiety=20, used_items=["Хлеб"])
        assert state.vitals.satiety == 100

    def test_small_gain_needs_no_justification(self, state):
        apply(state, satiety=5, energy=5)
        assert state.vitals.satiety == 25
        assert state.vitals.energy == 60

    def test_phantom_energy_gain_needs_elapsed_time(self, state):
        apply(state, energy=20)
        assert state.vitals.energy == 55

        state.vitals.satiety = 100
        apply(state, energy=20, time_change=8)
        assert state.vitals.energy == 55 - 24 + 20

    def test_starvation_death(self, state):
        state.vitals.health = 5
        state.vitals.satiety = 0
        result = apply(state)
        assert state.vitals.health == 0
        assert result.game_over
        assert result.death_reason == "starvation"

    def test_starvation_keeps_narrated_reason(self, state):
        state.vitals.health = 5
        state.vitals.satiety = 0
        result = apply(state, death_reason="frozen in the ditch")
        assert result.death_reason == "frozen in the ditch"


class TestLocation:

    def test_move_to_known_node(self, state):
        add_node(state, MapNode(id="loc_old_mill", name="Old Mill", x=5, y=7))
        apply(state, location_change="old mill")
        node = state.get_node("loc_old_mill")
        assert state.player_pos.location_id == "loc_old_mill"
        assert (state.player_pos.x, state.player_pos.y) == (5, 7)
        assert node.visited_count == 1

    def test_unknown_location_creates_node_at_current_position(self, state):
        state.player_pos.x, state.player_pos.y = 3, 4
        apply(state, location_change="Hidden Glade")
        node = state.get_node("loc_hidden_glade")
        assert node is not None
        assert (node.x, node.y, node.visited_count) == (3, 4, 1)
        assert state.player_pos.location_id == "loc_hidden_glade"
        assert state.location == "Hidden Glade"

    def test_no_fuzzy_teleport(self, state):
        add_node(state, MapNode(id="loc_old_mill", name="Old Mill", x=5, y=7))
        apply(state, location_change="Mill")
        assert state.player_pos.location_id == "loc_mill"
        assert state.get_node("loc_old_mill").visited_count == 0


class TestReputation:

    def test_one_increase_per_day(self, state):
        apply(state, reputation=3)
        apply(state, reputation=3)
        assert state.vitals.reputation == 28

    def test_negative_delta_reenables_increase(self, state):
        apply(state, reputation=3)
        apply(state, reputation=-2)
        assert state.last_rep_increase_day is None
        apply(state, reputation=3)
        assert state.vitals.reputation == 29

    @pytest.mark.parametrize("start", [60, 65, 70, 95])
    def test_high_reputation_gains_limited(self, state, start):
        state.vitals.reputation = start
        apply(state, reputation=5)
        assert state.vitals.reputation == start + 1

    def test_full_gain_just_below_cap(self, state):
        state.vitals.reputation = 59
        apply(state, reputation=5)
        assert state.vitals.reputation == 64

    def test_morality_clamped(self, state):
        state.vitals.morality = 99
        apply(state, morality=10)
        assert state.vitals.morality == 100


class TestSkills:

    def test_xp_loop(self, state):
        apply(state, skill_xp={"combat": 250})
        combat = state.skills["combat"]
        assert (combat.level, combat.xp, combat.next_level) == (2, 0, 225)

    def test_unknown_skill_ignored(self, state):
        apply(state, skill_xp={"alchemy": 50})
        assert "alchemy" not in state.skills


class TestEquipment:

    def test_swap_round_trip_restores_inventory(self, state):
        state.equipment.weapon = EquipmentSlot(name="Sword", condition=100)
        state.inventory = [InventoryItem(name="Axe"), InventoryItem(name="Bread", quantity=2)]
        before = inventory_of(state)

        apply(state, equipment=EquipmentUpdate(weapon=SlotUpdate(name="Axe")))
        assert state.equipment.weapon.name == "Axe"
        assert inventory_of(state) == {"Bread": 2, "Sword": 1}

        apply(state, equipment=EquipmentUpdate(weapon=SlotUpdate(name="Sword")))
        assert state.equipment.weapon.name == "Sword"
        assert state.equipment.weapon.condition == 100
        assert inventory_of(state) == before

    @pytest.mark.parametrize("placeholder", ["none", "fists", "кулаки", "нет"])
    def test_placeholder_weapon_not_returned(self, state, placeholder):
        state.equipment.weapon = EquipmentSlot(name=placeholder)
        apply(state, equipment=EquipmentUpdate(weapon=SlotUpdate(name="Dagger", condition=60)))
        assert state.inventory == []
        assert state.equipment.weapon.condition == 60

    @pytest.mark.parametrize("placeholder", ["голое тело", "тряпье", "rags"])
    def test_placeholder_armor_not_returned(self, state, placeholder):
        state.equipment.armor = EquipmentSlot(name=placeholder)
        apply(state, equipment=EquipmentUpdate(armor=SlotUpdate(name="Gambeson")))
        assert state.inventory == []
        assert state.equipment.armor.condition == 100

    def test_same_name_is_not_a_swap(self, state):
        state.equipment.weapon = EquipmentSlot(name="Sword", condition=80)
        state.inventory = [InventoryItem(name="Sword")]
        apply(state, equipment=EquipmentUpdate(weapon=SlotUpdate(name="Sword", condition=10)))
        assert state.equipment.weapon.condition == 80
        assert inventory_of(state) == {"Sword": 1}

    def test_returned_item_stacks(self, state):
        state.equipment.weapon = EquipmentSlot(name="Club", condition=100)
        state.inventory = [InventoryItem(name="club", quantity=1)]
        apply(state, new_equipment=EquipmentUpdate(weapon=SlotUpdate(name="Spear")))
        assert inventory_of(state) == {"club": 2}

    def test_explicit_reequip_takes_item_from_inventory(self, state):
        state.inventory = [InventoryItem(name="Linen Shirt")]
        apply(state, new_equipment=EquipmentUpdate(armor=SlotUpdate(name="linen shirt")))
        assert state.inventory == []
        assert state.equipment.armor.name == "linen shirt"


class TestInventory:

    def test_combined_names_rejected(self, state):
        apply(state, new_items=[ItemGrant(name="Штаны и рубаха"), ItemGrant(name="Bread & Cheese"),
                                ItemGrant(name="Rope and hook"), ItemGrant(name="Knife")])
        assert inventory_of(state) == {"Knife": 1}

    def test_is_combined_name(self):
        assert is_combined_name("Штаны и рубаха")
        assert is_combined_name("Salt + Pepper")
        assert not is_combined_name("Sandals")

    def test_case_insensitive_merge(self, state):
        state.inventory = [InventoryItem(name="Bread")]
        apply(state, new_items=[ItemGrant(name="bread", quantity=2)])
        assert inventory_of(state) == {"Bread": 3}

    def test_used_items_match_exact_name(self, state):
        state.inventory = [InventoryItem(name="Bread", quantity=2)]
        apply(state, used_items=["bread"])
        assert inventory_of(state) == {"Bread": 2}
        apply(state, used_items=["Bread", "Bread"])
        assert state.inventory == []


class TestCharacterUpdate:

    def test_bounded_logs(self, state):
        events = [f"event {i}" for i in range(35)]
        choices = [f"choice {i}" for i in range(20)]
        apply(state, character_update=CharacterUpdate(recent_events=events, important_choices=choices))
        assert len(state.character.recent_events) == 30
        assert state.character.recent_events[-1] == "event 34"
        assert len(state.character.important_choices) == 15

    def test_npc_upsert(self, state):
        state.character.npc_locations["Hans"] = state.location
        apply(state, character_update=CharacterUpdate(relationships={
            "Hans": RelationshipUpdate(role="smith", faction="Guild", disposition=5,
                                       memory=[f"m{i}" for i in range(7)]),
        }))
        hans = state.npcs["Hans"]
        assert (hans.role, hans.faction, hans.disposition) == ("smith", "Guild", 5)
        assert hans.memory == ["m2", "m3", "m4", "m5", "m6"]
        assert hans.last_seen.location_id == state.player_pos.location_id

        apply(state, character_update=CharacterUpdate(relationships={
            "Hans": RelationshipUpdate(memory_add=["paid back"], notes="grumpy"),
        }))
        hans = state.npcs["Hans"]
        assert hans.memory[-1] == "paid back"
        assert len(hans.memory) == 5
        assert hans.role == "smith"
        assert hans.notes == "grumpy"

    def test_milestone(self, state):
        apply(state, character_update=CharacterUpdate(milestone="Joined the guard"))
        assert state.character.milestones[-1].event == "Joined the guard"
        assert state.character.milestones[-1].day_of_game == 1

    def test_quest_upsert(self, state):
        apply(state, quests_update=[QuestUpdate(name="Lost horse", description="Find it")])
        apply(state, quests_update=[QuestUpdate(name="Lost horse", status="completed", description="Found")])
        assert len(state.quests) == 1
        assert state.quests[0].status == "completed"


class TestMapGrowth:

    def test_new_location_auto_connects(self, state):
        here = state.player_pos.location_id
        apply(state, new_location=NewLocation(name="Old Mill", x=4, y=2, description="A creaking mill"))
        node = state.get_node("loc_old_mill")
        assert node.visited_count == 0
        assert any(e.links(here, "loc_old_mill") and e.kind == "path" for e in state.world_edges)

    def test_existing_location_not_duplicated(self, state):
        apply(state, new_location=NewLocation(name="Old Mill"))
        apply(state, new_location=NewLocation(name="Old Mill", id="mill_2"))
        assert [n.name for n in state.world_map].count("Old Mill") == 1

    def test_new_edges_by_name_or_id(self, state):
        add_node(state, MapNode(id="loc_a", name="Alpha"))
        add_node(state, MapNode(id="loc_b", name="Beta"))
        apply(state, new_edges=[EdgeUpdate(from_ref="Alpha", to_ref="loc_b", kind="road"),
                                EdgeUpdate(from_ref="Alpha", to_ref="Nowhere")])
        assert len(state.world_edges) == 1
        assert state.world_edges[0].kind == "road"

    def test_npc_location_hint(self, state):
        add_node(state, MapNode(id="loc_old_mill", name="Old Mill"))
        apply(state, npc_location=NPCLocationHint(name="Hans", location="mill"))
        assert state.character.npc_locations["Hans"] == "mill"
        # free-text hints may resolve by substring
        assert state.npcs["Hans"].last_seen.location_id == "loc_old_mill"


class TestFactionsAndDebts:

    def test_factions(self, state):
        apply(state, faction_updates=[FactionUpdate(name="Guard", disposition=150, notes="wary")])
        assert state.factions["Guard"].disposition == 100
        state.factions["Guard"].disposition = 0
        apply(state, faction_updates=[FactionUpdate(name="Guard", disposition_delta=20)])
        assert state.factions["Guard"].disposition == 5
        assert state.factions["Guard"].notes == "wary"

    def test_debt_upsert(self, state):
        debt = dict(debtor="Tester", creditor="Hans", reason="horse")
        apply(state, debts_update=[DebtUpdate(amount=10, **debt)])
        apply(state, debts_update=[DebtUpdate(amount=15, **debt)])
        assert len(state.debts) == 1
        assert state.debts[0].amount == 15
        assert state.debts[0].created_day == 1

    def test_closed_debt_not_reopened(self, state):
        state.debts = [Debt(debtor="Tester", creditor="Hans", reason="horse", amount=10, status="closed")]
        apply(state, debts_update=[DebtUpdate(debtor="Tester", creditor="Hans", reason="horse", amount=5)])
        assert len(state.debts) == 2

    def test_debt_list_bounded(self, state):
        updates = [DebtUpdate(debtor="Tester", creditor="Hans", reason=f"r{i}", amount=1) for i in range(60)]
        apply(state, debts_update=updates)
        assert len(state.debts) == MAX_DEBTS
        assert state.debts[-1].reason == "r59"


class TestFatalProjection:

    def test_lethal_delta_forces_game_over(self, state):
        patch = NarrativePatch(health=-40, description=DEFAULT_DESCRIPTION)
        assert project_fatal_damage(state, patch)
        assert patch.game_over
        assert patch.death_reason == DEFAULT_DEATH_REASON
        assert patch.description == FATAL_DESCRIPTION

        result = apply_patch(state, patch)
        assert state.vitals.health == 0
        assert result.game_over

    def test_narrated_death_kept(self, state):
        patch = NarrativePatch(health=-40, description="The bandit's blade finds you.", death_reason="bandits")
        project_fatal_damage(state, patch)
        assert patch.description == "The bandit's blade finds you."
        assert patch.death_reason == "bandits"

    def test_survivable_delta(self, state):
        patch = NarrativePatch(health=-34)
        assert not project_fatal_damage(state, patch)
        assert not patch.game_over
