"""
Client turn controller: one turn in flight, debounced actions, stale results dropped
"""

import logging
import time
from enum import Enum
from typing import Awaitable, Callable, Optional

from client.game_state import GameState, derive_game_state
from client.presentation import PresentationSequencer
from models.turn_models import HistoryEntry, StoryOption, TurnRequest, TurnResponse

logger = logging.getLogger(__name__)

REQUEST_DEBOUNCE = 0.8
THROTTLE_MARKERS = ("429", "Too Many Requests", "请求过多", "busy")
BUSY_TITLE = "系统繁忙"
BUSY_MESSAGE = "我们正在为您生成精彩故事，请稍等片刻再尝试。"
UNKNOWN_FAILURE = "生成故事时遇到未知错误，请稍后再试。"

FetchTurn = Callable[[TurnRequest], Awaitable[TurnResponse]]


class ControllerStatus(str, Enum):
    IDLE = "idle"
    IN_FLIGHT = "in_flight"


def is_throttled(message: str) -> bool:
    lowered = message.lower()
    return any(marker.lower() in lowered for marker in THROTTLE_MARKERS)


class ClientTurnController:
    def __init__(
        self,
        fetch_turn: FetchTurn,
        sequencer: Optional[PresentationSequencer] = None,
        clock: Callable[[], float] = time.monotonic,
        debounce: float = REQUEST_DEBOUNCE,
        on_state: Optional[Callable[[Optional[GameState]], None]] = None,
        on_error: Optional[Callable[[str], None]] = None,
        on_notify: Optional[Callable[[str, str], None]] = None,
    ):
        self.fetch_turn = fetch_turn
        self.sequencer = sequencer or PresentationSequencer()
        self.clock = clock
        self.debounce = debounce
        self.on_state = on_state
        self.on_error = on_error
        self.on_notify = on_notify

        self.state: Optional[GameState] = None
        self.error: Optional[str] = None
        self._token = 0
        self._in_flight = False
        self._last_action: Optional[float] = None

    @property
    def status(self) -> ControllerStatus:
        return ControllerStatus.IN_FLIGHT if self._in_flight else ControllerStatus.IDLE

    @property
    def token(self) -> int:
        return self._token

    async def start(self, book_title: str) -> bool:
        title = book_title.strip()
        if not title or self._in_flight:
            return False
        return await self._execute(TurnRequest(book_title=title, round=0, choice=None, history=[]))

    async def choose(self, option: StoryOption) -> bool:
        state = self.state
        if state is None or self._in_flight or state.is_game_over:
            return False

        history = list(state.history) + [HistoryEntry(round=state.round, label=option.label, text=option.text)]
        return await self._execute(TurnRequest(
            book_title=state.book_title,
            round=state.round,
            choice=option.text,
            history=history,
            protagonist_name=state.character_name,
        ))

    def reset(self) -> None:
        """Invalidate any in-flight turn and drop all visible state"""
        self._token += 1
        self._in_flight = False
        self.state = None
        self.error = None
        self.sequencer.cancel()
        self.sequencer.set_loading(False)
        if self.on_state:
            self.on_state(None)

    async def _execute(self, request: TurnRequest) -> bool:
        now = self.clock()
        if self._in_flight:
            return False
        if self._last_action is not None and now - self._last_action < self.debounce:
            return False

        self._in_flight = True
        self._last_action = now
        self._token += 1
        token = self._token
        self.error = None
        self.sequencer.set_loading(True)

        try:
            response = await self.fetch_turn(request)
        except Exception as e:
            if token == self._token:
                self._apply_failure(e)
        else:
            if token == self._token:
                self._apply_result(request, response)
        finally:
            if token == self._token:
                self._in_flight = False
                self.sequencer.set_loading(False)
        return True

    def _apply_result(self, request: TurnRequest, response: TurnResponse) -> None:
        self.state = derive_game_state(request, response)
        option_count = 0 if self.state.is_game_over else len(self.state.options)
        self.sequencer.begin(self.state.scene_description, option_count)
        if self.on_state:
            self.on_state(self.state)

    def _apply_failure(self, error: Exception) -> None:
        logger.error("turn request failed: %s", error)
        if self.state is not None:
            # previous turn stays on screen, fully revealed
            self.sequencer.skip()

        message = str(error) or UNKNOWN_FAILURE
        if is_throttled(message):
            if self.on_notify:
                self.on_notify(BUSY_TITLE, BUSY_MESSAGE)
            message = BUSY_MESSAGE

        self.error = message
        if self.on_error:
            self.on_error(message)
