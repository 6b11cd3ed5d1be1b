"""Tests for guardrails applied before mutation."""

from conftest import add_history
from models import CharacterUpdate, Effect, NarrativePatch, NPCRecord, RelationshipUpdate
from world_rules import apply_world_rules, has_coin_justification


def _disposition_patch(name: str, disposition: int, **fields) -> NarrativePatch:
    return NarrativePatch(character_update=CharacterUpdate(
        relationships={name: RelationshipUpdate(disposition=disposition, **fields)},
    ))


class TestMorality:

    def test_small_change_once_per_day(self, state):
        first = NarrativePatch(morality=2)
        apply_world_rules(state, first)
        assert first.morality == 2
        assert state.last_morality_change_day == 1

        second = NarrativePatch(morality=-1)
        notes = apply_world_rules(state, second)
        assert second.morality == 0
        assert notes

    def test_small_change_allowed_next_day(self, state):
        apply_world_rules(state, NarrativePatch(morality=2))
        state.date.advance_time(24)
        patch = NarrativePatch(morality=2)
        apply_world_rules(state, patch)
        assert patch.morality == 2

    def test_major_change_ignores_cooldown_but_is_clamped(self, state):
        apply_world_rules(state, NarrativePatch(morality=1))
        patch = NarrativePatch(morality=-9)
        apply_world_rules(state, patch)
        assert patch.morality == -5


class TestReputationAndCoins:

    def test_reputation_preclamp(self, state):
        up, down = NarrativePatch(reputation=9), NarrativePatch(reputation=-10)
        apply_world_rules(state, up)
        apply_world_rules(state, down)
        assert (up.reputation, down.reputation) == (5, -5)

    def test_large_coin_delta_without_reason_is_clamped(self, state):
        gain, loss = NarrativePatch(coins=80), NarrativePatch(coins=-80)
        apply_world_rules(state, gain)
        apply_world_rules(state, loss)
        assert (gain.coins, loss.coins) == (30, -30)

    def test_justified_coin_delta_passes(self, state):
        patch = NarrativePatch(coins=80, effects=[Effect(stat="coins", delta=80, reason="Reward for clearing the road")])
        apply_world_rules(state, patch)
        assert patch.coins == 80

    def test_russian_justification(self):
        patch = NarrativePatch(effects=[Effect(stat="coins", delta=-60, reason="Купил коня у торговца")])
        assert has_coin_justification(patch)

    def test_small_coin_delta_untouched(self, state):
        patch = NarrativePatch(coins=30)
        apply_world_rules(state, patch)
        assert patch.coins == 30


class TestDisposition:

    def test_absolute_target_moves_at_most_five(self, state):
        state.npcs["Hans"] = NPCRecord(name="Hans", disposition=0)
        patch = _disposition_patch("Hans", 80)
        apply_world_rules(state, patch)
        assert patch.character_update.relationships["Hans"].disposition == 5
        assert state.npc_disposition_last_change_turn["Hans"] == 0

    def test_unknown_npc_starts_from_zero(self, state):
        patch = _disposition_patch("Theresa", -100)
        apply_world_rules(state, patch)
        assert patch.character_update.relationships["Theresa"].disposition == -5

    def test_small_target_reached_exactly(self, state):
        state.npcs["Hans"] = NPCRecord(name="Hans", disposition=10)
        patch = _disposition_patch("Hans", 12)
        apply_world_rules(state, patch)
        assert patch.character_update.relationships["Hans"].disposition == 12

    def test_cooldown_drops_disposition_but_keeps_other_fields(self, state):
        state.npcs["Hans"] = NPCRecord(name="Hans")
        apply_world_rules(state, _disposition_patch("Hans", 50))
        add_history(state, 2)

        patch = _disposition_patch("Hans", 50, role="blacksmith")
        apply_world_rules(state, patch)
        rel = patch.character_update.relationships["Hans"]
        assert rel.disposition is None
        assert rel.role == "blacksmith"

    def test_change_accepted_after_three_turns(self, state):
        state.npcs["Hans"] = NPCRecord(name="Hans", disposition=5)
        state.npc_disposition_last_change_turn["Hans"] = 0
        add_history(state, 3)
        patch = _disposition_patch("Hans", 50)
        apply_world_rules(state, patch)
        assert patch.character_update.relationships["Hans"].disposition == 10
        assert state.npc_disposition_last_change_turn["Hans"] == 3
