import json
import sys
from pathlib import Path
from typing import Dict, List, Optional, Union

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from ai_provider import AIProvider  # noqa: E402
from engine import GameEngine, create_world_state  # noqa: E402
from models import HistoryEntry, MapEdge, MapNode, WorldState  # noqa: E402

DEFAULT_SCENE = {
    "description": "The market is loud and smells of bread.",
    "choices": ["Buy bread", "Walk on"],
}


class MockAIProvider(AIProvider):
    """Returns scripted responses in order; an Exception instance is raised instead of returned."""

    def __init__(self, responses: Optional[List[Union[str, Exception]]] = None):
        self.url = "http://mock"
        self.model = "mock-model"
        self.timeout = 10
        self.client = None
        self.responses = list(responses or [])
        self.call_log: List[Dict[str, str]] = []

    async def generate_response(self, prompt: str, context: str = "") -> str:
        self.call_log.append({"prompt": prompt, "context": context})
        if not self.responses:
            return json.dumps(DEFAULT_SCENE)
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response

    async def aclose(self) -> None:
        pass


def add_history(state: WorldState, turns: int) -> None:
    for i in range(turns):
        state.history.append(HistoryEntry(choice=f"action {i}", scene="..."))


@pytest.fixture
def state() -> WorldState:
    return create_world_state("Tester")


@pytest.fixture
def mock_ai() -> MockAIProvider:
    return MockAIProvider()


@pytest.fixture
def engine(mock_ai) -> GameEngine:
    return GameEngine(mock_ai, attempts=2)


@pytest.fixture
def line_map() -> WorldState:
    """A - B - C connected by roads, player at A."""
    s = WorldState(
        name="Mapper",
        location="Alpha",
        world_map=[
            MapNode(id="loc_alpha", name="Alpha", x=0, y=0),
            MapNode(id="loc_beta", name="Beta", x=10, y=0),
            MapNode(id="loc_gamma", name="Gamma", x=20, y=0),
        ],
        world_edges=[
            MapEdge(from_id="loc_alpha", to_id="loc_beta", kind="road"),
            MapEdge(from_id="loc_beta", to_id="loc_gamma", kind="road"),
        ],
    )
    s.player_pos.location_id = "loc_alpha"
    return s
