"""Tests for the turn pipeline: generation retries, commit order and state helpers."""

import json
import logging

import pytest

from ai_provider import GenerationError
from conftest import MockAIProvider
from engine import (
    CONTINUE_DESCRIPTION, START_LOCATION, GameEngine, create_world_state, opening_scene, restore_state,
)
from models import NarrativePatch, SkillCheckBranch, SkillCheckRequest
from mutation import DEFAULT_DEATH_REASON
from normalizer import DEFAULT_CHOICES
from skill_check import resolve_skill_check


class TestNewGame:

    def test_fresh_state(self):
        state = create_world_state("Henry")
        assert state.name == "Henry"
        assert state.gender == "male"
        assert state.location == START_LOCATION
        assert state.vitals.health == 35
        assert state.vitals.coins == 0
        assert state.history == []
        assert len(state.world_map) == 1
        assert state.player_pos.location_id == state.world_map[0].id
        assert state.character.milestones

    def test_gender_and_blank_name(self):
        state = create_world_state("  ", gender="FEMALE")
        assert state.name == "Wanderer"
        assert state.gender == "female"
        assert create_world_state("X", gender="other").gender == "male"

    def test_opening_scene(self, engine):
        state, description, choices = engine.new_game("Henry")
        assert description
        assert len(choices) == 3
        assert (description, choices) == opening_scene(state)


class TestRequestPatch:

    @pytest.mark.asyncio
    async def test_first_attempt_success(self, state):
        ai = MockAIProvider(['{"description": "A quiet lane.", "choices": ["Go on"], "coins": 3}'])
        patch = await GameEngine(ai, attempts=2).request_patch(state, "Walk", session_id="s1")
        assert patch.description == "A quiet lane."
        assert patch.coins == 3
        assert len(ai.call_log) == 1
        assert "PLAYER ACTION: Walk" in ai.call_log[0]["prompt"]
        assert "LOCATION:" in ai.call_log[0]["context"]

    @pytest.mark.asyncio
    async def test_retry_adds_format_reminder(self, state):
        ai = MockAIProvider(["I refuse to answer in JSON.", '{"description": "Second try."}'])
        patch = await GameEngine(ai, attempts=2).request_patch(state, "Walk")
        assert patch.description == "Second try."
        assert "IMPORTANT" not in ai.call_log[0]["prompt"]
        assert "IMPORTANT" in ai.call_log[1]["prompt"]

    @pytest.mark.asyncio
    async def test_fallback_after_exhausted_attempts(self, state, caplog):
        ai = MockAIProvider([GenerationError("connection refused"), "still not json"])
        with caplog.at_level(logging.INFO, logger="ai_parse_failures"):
            patch = await GameEngine(ai, attempts=2).request_patch(state, "Walk", session_id="abc")
        assert "pauses" in patch.description
        assert len(ai.call_log) == 2

        audits = [json.loads(r.getMessage()) for r in caplog.records if r.name == "ai_parse_failures"]
        assert [a["attempt"] for a in audits] == [1, 2]
        assert audits[0]["sessionId"] == "abc"
        assert "connection refused" in audits[0]["reason"]
        assert audits[1]["raw"] == "still not json"

    @pytest.mark.asyncio
    async def test_single_attempt(self, state):
        ai = MockAIProvider(["nope", '{"description": "never used"}'])
        patch = await GameEngine(ai, attempts=1).request_patch(state, "Walk")
        assert "pauses" in patch.description
        assert len(ai.call_log) == 1


class TestCommitTurn:

    def test_history_recorded(self, engine, state):
        patch = NarrativePatch(description="You buy bread.", choices=["Eat"], coins=0, time_change=1)
        result = engine.commit_turn(state, "s1", "Buy bread", patch)
        assert result.description == "You buy bread."
        assert result.choices == ["Eat"]
        assert not result.game_over
        entry = state.history[-1]
        assert entry.choice == "Buy bread"
        assert entry.scene == "You buy bread."
        assert entry.choices == ["Eat"]
        assert entry.date.hour == 10

    def test_fatal_damage_ends_game(self, engine, state):
        patch = NarrativePatch(description="", choices=["Fight on"], health=-40)
        result = engine.commit_turn(state, "s1", "Attack the knight", patch)
        assert result.game_over
        assert result.death_reason == DEFAULT_DEATH_REASON
        assert result.choices == []
        assert result.description
        assert state.vitals.health == 0
        assert state.history[-1].game_over
        assert state.history[-1].choices == []

    def test_narrator_death_reason_kept(self, engine, state):
        patch = NarrativePatch(description="An arrow.", health=-50, game_over=True, death_reason="shot by bandits")
        result = engine.commit_turn(state, "s1", "Run", patch)
        assert result.death_reason == "shot by bandits"

    def test_world_rules_run_before_mutation(self, engine, state):
        result = engine.commit_turn(state, "s1", "Steal", NarrativePatch(description="x", coins=90))
        assert state.vitals.coins == 30
        assert result.notes

    def test_skill_check_branch_overlay(self, engine, state):
        request = SkillCheckRequest(
            key="stealth", difficulty=50,
            on_success=SkillCheckBranch(description="WIN", choices=["Slip away"]),
            on_fail=SkillCheckBranch(description="LOSE", choices=["Surrender"]),
        )
        expected = resolve_skill_check(state, request, "s1")
        patch = NarrativePatch(description="You try to sneak.", choices=["Wait"], skill_check=request)
        result = engine.commit_turn(state, "s1", "Sneak past the guard", patch)

        assert result.check_result == expected
        if expected.success:
            assert (result.description, result.choices) == ("WIN", ["Slip away"])
        else:
            assert (result.description, result.choices) == ("LOSE", ["Surrender"])
        assert result.effects[0].stat == "check"
        assert "stealth" in result.effects[0].reason
        assert state.history[-1].scene == result.description

    def test_branch_without_description_keeps_scene(self, engine, state):
        request = SkillCheckRequest(key="speech", on_success=SkillCheckBranch(), on_fail=SkillCheckBranch())
        patch = NarrativePatch(description="You argue.", choices=["Leave"], skill_check=request)
        result = engine.commit_turn(state, "s1", "Argue", patch)
        assert result.description == "You argue."
        assert result.choices == ["Leave"]


class TestPlayTurn:

    @pytest.mark.asyncio
    async def test_end_to_end(self, engine, mock_ai, state):
        mock_ai.responses = ['```json\n{"description": "You find a purse.", "choices": ["Keep it"], "coins": 12,'
                             ' "timeChange": 2}\n```']
        result = await engine.play_turn(state, "s1", "Search the gutter", previous_scene="Mud everywhere.")
        assert result.description == "You find a purse."
        assert state.vitals.coins == 12
        assert state.date.hour == 11
        assert len(state.history) == 1
        assert "PREVIOUS SCENE: Mud everywhere." in mock_ai.call_log[0]["prompt"]

    @pytest.mark.asyncio
    async def test_fallback_turn_still_commits(self, state):
        engine = GameEngine(MockAIProvider(["x", "y"]), attempts=2)
        result = await engine.play_turn(state, "s1", "Wait")
        assert not result.game_over
        assert len(state.history) == 1
        assert result.choices

    @pytest.mark.asyncio
    async def test_empty_narrator_object_uses_defaults(self, state):
        engine = GameEngine(MockAIProvider(["{}"]), attempts=1)
        result = await engine.play_turn(state, "s1", "Wait")
        assert result.choices == DEFAULT_CHOICES


class TestStateHelpers:

    def test_client_update_only_sets_waypoint(self, line_map):
        GameEngine.client_update(line_map, {
            "mapWaypoint": {"locationId": "loc_gamma", "name": "Gamma"},
            "vitals": {"coins": 9999},
            "location": "Elsewhere",
        })
        assert line_map.map_waypoint.location_id == "loc_gamma"
        assert line_map.map_waypoint.name == "Gamma"
        assert line_map.vitals.coins == 0
        assert line_map.location == "Alpha"

    def test_client_update_ignores_garbage(self, line_map):
        GameEngine.client_update(line_map, ["not", "a", "dict"])
        assert line_map.map_waypoint.location_id is None

    def test_route_defaults_to_player_position(self, line_map):
        start, route = GameEngine.route(line_map, "loc_gamma")
        assert start == "loc_alpha"
        assert route.path_ids[-1] == "loc_gamma"
        assert GameEngine.route(line_map, "loc_unknown")[1] is None

    def test_restore_state_fills_defaults_and_repairs(self):
        state = restore_state({"name": "Loaded", "location": "Ledetchko", "vitals": {"coins": 40}})
        assert state.vitals.coins == 40
        assert state.vitals.health == 35
        assert state.world_map[0].name == "Ledetchko"
        assert state.player_pos.location_id == state.world_map[0].id

    def test_restore_state_clamps_out_of_range_values(self, state):
        data = state.model_dump(mode="json")
        data["vitals"].update(health=5000, coins=-40, reputation=900)
        data["attributes"]["strength"] = 99
        data["npcs"] = {"Hans": {"name": "Hans", "disposition": -300}}
        restored = restore_state(data)
        assert restored.vitals.health == restored.vitals.max_health
        assert restored.vitals.coins == 0
        assert restored.vitals.reputation == 100
        assert restored.attributes.strength == 20
        assert restored.npcs["Hans"].disposition == -100

    def test_final_stats(self, engine, state):
        engine.commit_turn(state, "s1", "Wait", NarrativePatch(description=CONTINUE_DESCRIPTION))
        assert GameEngine.final_stats(state) == {"daysPlayed": 1, "actions": 1, "coins": 0, "reputation": 25}
