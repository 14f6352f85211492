"""
Staged reveal of a turn: scene text character by character, then options one at a time.

idle -> revealing_text -> revealing_options -> settled. Every reveal runs under a
generation number; bumping it (new turn, cancel, skip) makes pending steps of the
old reveal no-ops.
"""

import asyncio
from enum import Enum
from typing import Awaitable, Callable, Optional

FIRST_STEP_DELAY = 0.06
SENTENCE_END_DELAY = 0.22
CLAUSE_DELAY = 0.12
CHAR_DELAY = 0.035
OPTION_INTERVAL = 0.12

SENTENCE_END = set("。！？!?")
CLAUSE_END = set("，,；;")


class RevealPhase(str, Enum):
    IDLE = "idle"
    REVEALING_TEXT = "revealing_text"
    REVEALING_OPTIONS = "revealing_options"
    SETTLED = "settled"


def char_delay(ch: str) -> float:
    if ch in SENTENCE_END:
        return SENTENCE_END_DELAY
    if ch in CLAUSE_END:
        return CLAUSE_DELAY
    return CHAR_DELAY


class PresentationSequencer:
    def __init__(
        self,
        sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
        on_change: Optional[Callable[["PresentationSequencer"], None]] = None,
    ):
        self.sleep = sleep
        self.on_change = on_change
        self.phase = RevealPhase.IDLE
        self.displayed_text = ""
        self.revealed_options = 0
        self.loading = False
        self._text = ""
        self._option_count = 0
        self._generation = 0
        self._task: Optional[asyncio.Task] = None

    @property
    def generation(self) -> int:
        return self._generation

    def begin(self, text: str, option_count: int) -> asyncio.Task:
        """Restart the reveal for a new turn; any previous reveal is abandoned"""
        self.cancel()
        self._text = text
        self._option_count = max(0, option_count)
        generation = self._generation
        self._task = asyncio.get_running_loop().create_task(self._run(generation))
        return self._task

    def cancel(self) -> None:
        self._generation += 1
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._task = None
        self.phase = RevealPhase.IDLE
        self.displayed_text = ""
        self.revealed_options = 0

    def skip(self) -> None:
        """Show the current turn in full at once"""
        self._generation += 1
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._task = None
        self.displayed_text = self._text
        self.revealed_options = self._option_count
        self.phase = RevealPhase.SETTLED
        self._notify()

    def set_loading(self, loading: bool) -> None:
        self.loading = loading
        self._notify()

    def option_enabled(self, index: int) -> bool:
        if self.loading:
            return False
        if self.phase not in (RevealPhase.REVEALING_OPTIONS, RevealPhase.SETTLED):
            return False
        return 0 <= index < self.revealed_options

    async def _run(self, generation: int) -> None:
        self.phase = RevealPhase.REVEALING_TEXT
        self.displayed_text = ""
        self.revealed_options = 0
        self._notify()

        delay = FIRST_STEP_DELAY
        for index in range(1, len(self._text) + 1):
            await self.sleep(delay)
            if generation != self._generation:
                return
            self.displayed_text = self._text[:index]
            self._notify()
            delay = char_delay(self._text[index - 1])

        self.phase = RevealPhase.REVEALING_OPTIONS
        self._notify()

        delay = FIRST_STEP_DELAY
        for count in range(1, self._option_count + 1):
            await self.sleep(delay)
            if generation != self._generation:
                return
            self.revealed_options = count
            self._notify()
            delay = OPTION_INTERVAL

        self.phase = RevealPhase.SETTLED
        self._notify()

    def _notify(self) -> None:
        if self.on_change is not None:
            self.on_change(self)
