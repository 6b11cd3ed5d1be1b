#!/usr/bin/env python3
"""
WebSocket game server.

Every connection gets its own session. Messages are JSON objects dispatched
on their "type" field; replies go back over the same socket.
"""
import asyncio
import json
import logging
from typing import Any, Awaitable, Callable, Dict, Set

import websockets
from pydantic import ValidationError
from websockets.exceptions import ConnectionClosedError, ConnectionClosedOK

from ai_provider import ChatCompletionsProvider
from config import settings, setup_logging
from engine import CONTINUE_CHOICES, CONTINUE_DESCRIPTION, GameEngine, TurnResult, restore_state
from models import WorldState
from sessions import SessionBusyError, SessionLimitError, SessionNotFoundError, SessionStore
from storage import SaveStore

logger = logging.getLogger(__name__)

Send = Callable[[Dict[str, Any]], Awaitable[None]]


def dump_state(state: WorldState) -> Dict[str, Any]:
    return state.model_dump(mode='json')


class GameServer:
    def __init__(self, engine: GameEngine, sessions: SessionStore = None, saves: SaveStore = None,
                 auto_save: bool = None):
        self.engine = engine
        self.sessions = sessions if sessions is not None else SessionStore()
        self.saves = saves if saves is not None else SaveStore()
        self.auto_save = settings.auto_save if auto_save is None else auto_save
        self.background_tasks: Set[asyncio.Task] = set()
        self.handlers: Dict[str, Callable[[str, Dict[str, Any], Send], Awaitable[None]]] = {
            "start": self.on_start,
            "choice": self.on_choice,
            "clientUpdate": self.on_client_update,
            "save": self.on_save,
            "load": self.on_load,
            "listSaves": self.on_list_saves,
            "route": self.on_route,
        }

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------
    async def handle_message(self, session_id: str, data: Any, send: Send) -> None:
        if not isinstance(data, dict):
            await send({"type": "error", "message": "Message must be a JSON object"})
            return
        handler = self.handlers.get(data.get("type"))
        if handler is None:
            await send({"type": "error", "message": f"Unknown message type: {data.get('type')}"})
            return
        try:
            await handler(session_id, data, send)
        except SessionNotFoundError:
            await send({"type": "error", "message": "Session not found"})
        except (SessionBusyError, SessionLimitError) as e:
            await send({"type": "error", "message": str(e)})

    async def handle_websocket(self, websocket):
        """Handle a new websocket connection."""
        try:
            session_id = self.sessions.open()
        except SessionLimitError as e:
            await websocket.send(json.dumps({"type": "error", "message": str(e)}))
            return

        async def send(payload: Dict[str, Any]) -> None:
            await websocket.send(json.dumps(payload, ensure_ascii=False))

        logger.info(f"Client connected: {getattr(websocket, 'remote_address', None)}, session {session_id}")
        await send({"type": "connected", "sessionId": session_id})
        try:
            async for message in websocket:
                try:
                    data = json.loads(message)
                except json.JSONDecodeError:
                    await send({"type": "error", "message": "Invalid JSON"})
                    continue
                try:
                    await self.handle_message(session_id, data, send)
                except (ConnectionClosedError, ConnectionClosedOK):
                    raise
                except Exception as e:
                    logger.exception(f"Error handling message for session {session_id}")
                    await send({"type": "error", "message": f"{type(e).__name__}: {e}"})
        except (ConnectionClosedError, ConnectionClosedOK):
            pass # Normal disconnection
        finally:
            self.sessions.discard(session_id)

    def _schedule_save(self, session_id: str, state: WorldState) -> None:
        snapshot = state.model_copy(deep=True)
        task = asyncio.create_task(self.saves.save(session_id, snapshot))
        self.background_tasks.add(task)
        task.add_done_callback(self.background_tasks.discard)

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------
    async def on_start(self, session_id: str, data: Dict[str, Any], send: Send) -> None:
        state, description, choices = self.engine.new_game(data.get("name") or "", data.get("gender") or "male")
        self.sessions.set(session_id, state)
        await send({
            "type": "scene",
            "sessionId": session_id,
            "state": dump_state(state),
            "description": description,
            "choices": choices,
            "isDialogue": False,
            "speakerName": "",
            "effects": [],
            "checkResult": None,
        })

    async def on_choice(self, session_id: str, data: Dict[str, Any], send: Send) -> None:
        choice = str(data.get("choice") or "").strip()
        if not choice:
            await send({"type": "error", "message": "Empty choice"})
            return
        with self.sessions.turn(session_id) as state:
            await send({"type": "generating"})
            result: TurnResult = await self.engine.play_turn(
                state, session_id, choice, str(data.get("previousScene") or ""),
            )
            if result.game_over:
                await send({
                    "type": "gameOver",
                    "sessionId": session_id,
                    "deathReason": result.death_reason,
                    "description": result.description,
                    "finalStats": self.engine.final_stats(state),
                })
                self.sessions.clear_state(session_id)
                return
            await send({
                "type": "scene",
                "sessionId": session_id,
                "state": dump_state(state),
                "description": result.description,
                "choices": result.choices,
                "isDialogue": result.is_dialogue,
                "speakerName": result.speaker_name,
                "effects": [e.model_dump(by_alias=True) for e in result.effects],
                "checkResult": result.check_result.model_dump(by_alias=True) if result.check_result else None,
            })
            if self.auto_save:
                self._schedule_save(session_id, state)

    async def on_client_update(self, session_id: str, data: Dict[str, Any], send: Send) -> None:
        state = self.engine.client_update(self.sessions.get(session_id), data.get("patch"))
        await send({"type": "clientUpdateAck", "state": dump_state(state)})

    async def on_save(self, session_id: str, data: Dict[str, Any], send: Send) -> None:
        state = self.sessions.get(session_id)
        if await self.saves.save(session_id, state):
            await send({"type": "saved", "message": "Game saved!"})
        else:
            await send({"type": "error", "message": "Save failed"})

    async def on_load(self, session_id: str, data: Dict[str, Any], send: Send) -> None:
        if isinstance(data.get("state"), dict):
            try:
                state = restore_state(data["state"])
            except ValidationError as e:
                logger.warning(f"Rejected client state for {session_id}: {e.error_count()} error(s)")
                await send({"type": "error", "message": "Save data is invalid"})
                return
        else:
            state = await self.saves.load(str(data.get("sessionId") or session_id))
            if state is None:
                await send({"type": "error", "message": "Save not found"})
                return
        self.sessions.set(session_id, state)
        logger.info(f"Loaded game for {state.name}, session {session_id}")
        await send({
            "type": "loaded",
            "sessionId": session_id,
            "state": dump_state(state),
            "description": data.get("currentScene") or CONTINUE_DESCRIPTION,
            "choices": data.get("currentChoices") or list(CONTINUE_CHOICES),
            "message": "Game loaded!",
        })

    async def on_list_saves(self, session_id: str, data: Dict[str, Any], send: Send) -> None:
        await send({"type": "savesList", "saves": await self.saves.list()})

    async def on_route(self, session_id: str, data: Dict[str, Any], send: Send) -> None:
        state = self.sessions.get(session_id)
        to_id = data.get("toId")
        from_id, route = self.engine.route(state, to_id, data.get("fromId"))
        await send({
            "type": "route",
            "fromId": from_id,
            "toId": to_id,
            "route": route.model_dump(by_alias=True) if route else None,
        })

    async def serve(self):
        """Start WebSocket server"""
        logger.info(f"WebSocket server starting on ws://{settings.api_host}:{settings.api_port}")
        async with websockets.serve(self.handle_websocket, settings.api_host, settings.api_port):
            await asyncio.Future()  # Run forever


def main():
    setup_logging()
    server = GameServer(GameEngine(ChatCompletionsProvider()))
    try:
        asyncio.run(server.serve())
    except KeyboardInterrupt:
        print("\nShutting down...")


if __name__ == "__main__":
    main()
