import math
import re
import sys
import time
import random
import threading
import uuid
from typing import Any, Callable, List, Optional


class Colors:
    HEADER = '\033[95m'
    BLUE = '\033[94m'
    CYAN = '\033[96m'
    GREEN = '\033[92m'
    YELLOW = '\033[93m'
    RED = '\033[91m'
    BOLD = '\033[1m'
    UNDERLINE = '\033[4m'
    ENDC = '\033[0m'

class ThinkingSpinner:
    """Animated spinner that cycles through themed words while waiting for the narrator."""

    THINKING = [
        "The chronicler dips a quill", "Candles flicker", "Bells ring over Rattay",
        "The road stretches on", "Rumours spread in the tavern", "A cart rattles past",
        "The scribe squints at faded ink", "Dogs bark in the lanes",
    ]

    FRAMES = ["⠋", "⠙", "⠹", "⠸", "⠼", "⠴", "⠦", "⠧", "⠇", "⠏"]

    def __init__(self, words: List[str] = None, newline: bool = True):
        self._words = words or self.THINKING
        self._newline = newline
        self._stop = threading.Event()
        self._thread = None
        self._max_len = 0

    def _animate(self):
        words = self._words[:]
        random.shuffle(words)
        idx, frame = 0, 0
        last_switch = time.time()
        prefix = "\n" if self._newline else ""

        while not self._stop.is_set():
            word = words[idx % len(words)]
            spinner = self.FRAMES[frame % len(self.FRAMES)]
            text = f"{prefix}{Colors.CYAN}{spinner} {word}...{Colors.ENDC}"
            visible_len = len(f"{spinner} {word}...") + (1 if prefix else 0)
            self._max_len = max(self._max_len, visible_len)
            sys.stdout.write(f"\r{' ' * self._max_len}\r{text}")
            sys.stdout.flush()
            prefix = ""  # Only first frame gets the newline

            frame += 1
            if time.time() - last_switch > 2.0:
                idx += 1
                last_switch = time.time()
            self._stop.wait(0.08)

        sys.stdout.write(f"\r{' ' * (self._max_len + 2)}\r")
        sys.stdout.flush()

    def __enter__(self):
        self._thread = threading.Thread(target=self._animate, daemon=True)
        self._thread.start()
        return self

    def __exit__(self, *args):
        self._stop.set()
        self._thread.join()


# ============================================================================
# LLM text cleanup
# ============================================================================
_FENCE_RE = re.compile(r"```(?:json)?", re.IGNORECASE)
_TRAILING_OBJ_COMMA_RE = re.compile(r",\s*}")
_TRAILING_ARR_COMMA_RE = re.compile(r",\s*]")
_ESCAPED_KEY_RE = re.compile(r'\\"(\w+)\\"')
_PLUS_NUMBER_RE = re.compile(r":(\s*)\+(\d)")
_GREEDY_OBJECT_RE = re.compile(r"\{[\s\S]*\}")


def strip_code_fences(raw_text: str) -> str:
    """Remove markdown fences (```json / ```) wherever they appear."""
    return _FENCE_RE.sub("", raw_text or "").strip()


def extract_json_block(text: str) -> Optional[str]:
    """
    Return the first balanced {...} block in text.

    Braces inside string literals are ignored, including escaped quotes.
    Returns None when no opening brace exists or the braces never balance.
    """
    start = text.find('{')
    if start == -1:
        return None

    depth = 0
    in_string = False
    escaped = False
    for i in range(start, len(text)):
        char = text[i]
        if in_string:
            if escaped:
                escaped = False
            elif char == '\\':
                escaped = True
            elif char == '"':
                in_string = False
            continue

        if char == '"':
            in_string = True
        elif char == '{':
            depth += 1
        elif char == '}':
            depth -= 1
            if depth == 0:
                return text[start:i + 1]
    return None


def extract_greedy_block(text: str) -> Optional[str]:
    """Fallback: everything from the first '{' to the last '}'."""
    match = _GREEDY_OBJECT_RE.search(text.replace("\r", ""))
    return match.group(0) if match else None


def repair_json_text(json_str: str) -> str:
    """Fix the defects models commonly produce: trailing commas, \\"key\\" and :+10."""
    json_str = _TRAILING_OBJ_COMMA_RE.sub("}", json_str)
    json_str = _TRAILING_ARR_COMMA_RE.sub("]", json_str)
    json_str = _ESCAPED_KEY_RE.sub(r'"\1"', json_str)
    json_str = _PLUS_NUMBER_RE.sub(r":\1\2", json_str)
    return json_str.strip()


# ============================================================================
# Numbers
# ============================================================================
def clamp(n: Any, lo: float, hi: float):
    """Clamp n into [lo, hi]; anything that is not a real number becomes lo."""
    if isinstance(n, bool) or not isinstance(n, (int, float)) or math.isnan(n):
        return lo
    return max(lo, min(hi, n))


def round_half_up(x: float) -> int:
    return math.floor(x + 0.5)


def coerce_int(value: Any, default: int = 0) -> int:
    """Best-effort conversion of model output ("+5", 5.0, "7") to int."""
    if isinstance(value, bool) or value is None:
        return default
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        if math.isnan(value) or math.isinf(value):
            return default
        return round_half_up(value)
    if isinstance(value, str):
        text = value.strip().lstrip('+')
        try:
            number = float(text)
        except ValueError:
            return default
        return coerce_int(number, default)
    return default


def coerce_str(value: Any) -> str:
    if isinstance(value, str):
        return value.strip()
    return ""


# ============================================================================
# Deterministic hashing / randomness
# ============================================================================
_MASK32 = 0xFFFFFFFF


def _imul(a: int, b: int) -> int:
    return (a * b) & _MASK32


def fnv1a_32(text: str) -> int:
    """FNV-1a 32-bit over the UTF-16 code units of text."""
    h = 2166136261
    data = str(text or "").encode("utf-16-le")
    for code in memoryview(data).cast("H"):
        h ^= code
        h = _imul(h, 16777619)
    return h


def mulberry32(seed: int) -> Callable[[], float]:
    """Seeded 32-bit PRNG; each call returns a float in [0, 1)."""
    state = seed & _MASK32

    def next_float() -> float:
        nonlocal state
        state = (state + 0x6D2B79F5) & _MASK32
        t = _imul(state ^ (state >> 15), state | 1)
        t = ((t + _imul(t ^ (t >> 7), t | 61)) & _MASK32) ^ t
        return ((t ^ (t >> 14)) & _MASK32) / 4294967296

    return next_float


# ============================================================================
# Names / dates
# ============================================================================
_ID_JUNK_RE = re.compile(r"[^a-z0-9а-я\s_-]", re.IGNORECASE)
_WHITESPACE_RE = re.compile(r"\s+")


def stable_id_from_name(name: str) -> str:
    """Readable id derived only from the name, e.g. 'Old Mill' -> 'loc_old_mill'."""
    s = str(name or "").strip().lower()
    if not s:
        return "loc_" + uuid.uuid4().hex[:8]
    s = s.replace("ё", "е")
    s = _ID_JUNK_RE.sub("", s)
    s = _WHITESPACE_RE.sub("_", s)
    return "loc_" + s[:40]


MONTH_NAMES = [
    "January", "February", "March", "April", "May", "June",
    "July", "August", "September", "October", "November", "December",
]


def format_date(day: int, month: int, year: int) -> str:
    return f"{day} {MONTH_NAMES[(month - 1) % 12]} {year}"
