# Kingdom Tales - terminal client
# Plays one local session through the same engine and save store as the server.

import asyncio
import logging
from typing import List, Optional

from ai_provider import ChatCompletionsProvider
from config import setup_logging
from engine import CONTINUE_CHOICES, CONTINUE_DESCRIPTION, GameEngine
from models import WorldState
from sessions import new_session_id
from storage import SaveStore
from utils import Colors, ThinkingSpinner, format_date
from world_map import find_location_by_name


class GameCLI:
    """Command line interface for the game"""
    def __init__(self, engine: Optional[GameEngine] = None, saves: Optional[SaveStore] = None):
        self.engine = engine or GameEngine(ChatCompletionsProvider())
        self.saves = saves or SaveStore()
        self.state: Optional[WorldState] = None
        self.session_id = new_session_id()
        self.scene = ""
        self.choices: List[str] = []
        self.running = False

    def display_header(self):
        print("\n" + "="*60 + "\n    KINGDOM TALES\n" + "="*60)

    def display_scene(self):
        print(f"\n{self.scene}\n")
        for i, choice in enumerate(self.choices, 1):
            print(f"  {Colors.CYAN}{i}.{Colors.ENDC} {choice}")

    def display_status(self):
        if not self.state: return
        s, v, d = self.state, self.state.vitals, self.state.date
        print(f"\n{Colors.BOLD}{s.name}{Colors.ENDC} - {s.location}")
        print(f"   {format_date(d.day, d.month, d.year)}, {d.hour:02d}:00 ({d.time_of_day.value}), day {d.day_of_game}")
        print(f"   Health: {v.health}/{v.max_health} | Stamina: {v.stamina}/{v.max_stamina} | Satiety: {v.satiety} | Energy: {v.energy}")
        print(f"   Coins: {v.coins} | Reputation: {v.reputation} | Morality: {v.morality}")
        print("   Skills: " + ", ".join(f"{k} {sk.level} ({sk.xp}/{sk.next_level})" for k, sk in s.skills.items()))
        print(f"   Weapon: {s.equipment.weapon.name} | Armor: {s.equipment.armor.name}")
        if s.inventory:
            print("   Inventory: " + ", ".join(f"{i.name} x{i.quantity}" for i in s.inventory))
        active = [q.name for q in s.quests if q.status == "active"]
        if active:
            print(f"   Quests: {', '.join(active)}")

    def display_map(self):
        if not self.state: return
        here = self.state.player_pos.location_id
        print("\nKnown places:")
        for node in self.state.world_map:
            marker = f"{Colors.GREEN}*{Colors.ENDC}" if node.id == here else " "
            print(f" {marker} {node.name} [{node.id}] visits: {node.visited_count}")
        for edge in self.state.world_edges:
            print(f"     {edge.from_id} <-{edge.kind}-> {edge.to_id}")

    def display_route(self, target: str):
        if not self.state: return
        node = find_location_by_name(self.state, target)
        if node is None:
            print(f"Unknown place: {target}"); return
        _, route = self.engine.route(self.state, node.id)
        if route is None:
            print(f"No known route to {node.name}."); return
        names = [(self.state.get_node(i).name if self.state.get_node(i) else i) for i in route.path_ids]
        print(f"\nRoute: {' -> '.join(names)}")
        print(f"   ~{route.estimated_hours}h, stamina ~{route.stamina_cost}")

    def display_help(self):
        print("\nCommands: <number> pick a choice, any other text is a free action,\n"
              "  status, map, route <place>, save, load, help, quit")

    async def save_game(self):
        if not self.state: print("No active game to save."); return
        if await self.saves.save(self.session_id, self.state): print(f"Game saved as '{self.session_id}'")
        else: print("Failed to save game.")

    async def load_game(self) -> bool:
        saves = await self.saves.list()
        if not saves: print("No saved games found."); return False
        print("\nSaved games:")
        for i, save in enumerate(saves): print(f"  {i+1}. {save['name']} - {save['location']} (day {save['day']}) [{save['sessionId']}]")
        try:
            choice = input("Enter number to load (or press Enter to cancel): ").strip()
            if not choice: return False
            save = saves[int(choice) - 1]
        except (ValueError, IndexError):
            print("Invalid selection."); return False
        state = await self.saves.load(save["sessionId"])
        if state is None:
            print("Failed to load game."); return False
        self.state, self.session_id = state, save["sessionId"]
        last = state.history[-1] if state.history else None
        self.scene = last.scene if last else CONTINUE_DESCRIPTION
        self.choices = (last.choices if last and last.choices else list(CONTINUE_CHOICES))
        print(f"\nGame '{self.session_id}' loaded successfully!")
        return True

    def start_new_game(self):
        name = input("Enter your character's name: ").strip() or "Wanderer"
        gender = input("Gender (male/female) [male]: ").strip().lower() or "male"
        self.state, self.scene, self.choices = self.engine.new_game(name, gender)

    async def take_turn(self, action: str) -> bool:
        previous = self.scene
        with ThinkingSpinner():
            result = await self.engine.play_turn(self.state, self.session_id, action, previous)
        for effect in result.effects:
            sign = f" {effect.delta:+d}" if effect.delta else ""
            print(f"{Colors.YELLOW}  [{effect.stat}{sign}] {effect.reason}{Colors.ENDC}")
        self.scene, self.choices = result.description, result.choices
        if result.game_over:
            print(f"\n{self.scene}\n")
            stats = self.engine.final_stats(self.state)
            print(f"{Colors.RED}💀 GAME OVER: {result.death_reason}{Colors.ENDC}")
            print(f"   Days: {stats['daysPlayed']} | Actions: {stats['actions']} | Coins: {stats['coins']} | Reputation: {stats['reputation']}")
            self.state = None
            return False
        self.display_scene()
        return True

    async def process_command(self, command: str) -> bool:
        lowered = command.lower()
        if lowered in ("quit", "exit"): return False
        if lowered == "help": self.display_help(); return True
        if lowered == "status": self.display_status(); return True
        if lowered == "map": self.display_map(); return True
        if lowered.startswith("route "): self.display_route(command[6:].strip()); return True
        if lowered == "save": await self.save_game(); return True
        if lowered == "load":
            if await self.load_game(): self.display_scene()
            return True
        action = command
        if command.isdigit() and 1 <= int(command) <= len(self.choices):
            action = self.choices[int(command) - 1]
        return await self.take_turn(action)

    async def show_main_menu(self) -> bool:
        while True:
            print("\n--- Main Menu ---\n1. Start New Game\n2. Load Game\n3. Exit")
            choice = input("Enter your choice (1-3): ").strip()
            if choice == "1":
                self.start_new_game(); return True
            elif choice == "2":
                if await self.load_game(): return True
            elif choice == "3": return False
            else: print("Invalid choice.")

    async def main_loop(self):
        self.display_header()
        if not await self.show_main_menu():
            print("\nThanks for playing!"); return

        self.running = True
        self.display_scene()
        print("\nType 'help' for available commands, 'quit' to exit.")
        while self.running:
            try:
                command = input("\n> ").strip()
                if command:
                    if not await self.process_command(command): self.running = False
            except KeyboardInterrupt:
                print("\n\nGoodbye!"); self.running = False
            except Exception as e:
                print(f"\nAn unexpected error occurred: {e}")
                logging.exception("An unexpected error occurred in the main loop")

        if self.state:
            print("\nAuto-saving..."); await self.save_game()
        await self.engine.ai.aclose()
        print("\nThanks for playing!")


def main():
    setup_logging()
    cli = GameCLI()
    asyncio.run(cli.main_loop())


if __name__ == "__main__":
    main()
