"""
Client-side game state derived from one turn request/response pair
"""

from typing import List

from pydantic import BaseModel, ConfigDict

from models.turn_models import TOTAL_ROUNDS, HistoryEntry, StoryOption, TurnRequest, TurnResponse


class GameState(BaseModel):
    model_config = ConfigDict(frozen=True)

    round: int
    book_title: str
    character_name: str
    scene_description: str
    image_prompt: str
    image_url: str
    options: List[StoryOption]
    history: List[HistoryEntry]
    is_game_over: bool
    is_victory: bool


def derive_game_state(request: TurnRequest, response: TurnResponse) -> GameState:
    """Upstream game over always wins; reaching the final round without it is a victory"""
    next_round = request.round + 1
    is_final_round = next_round >= TOTAL_ROUNDS

    return GameState(
        round=next_round,
        book_title=request.book_title,
        character_name=response.character_name,
        scene_description=response.scene_description,
        image_prompt=response.image_prompt,
        image_url=response.image_url,
        options=response.options,
        history=request.history,
        is_game_over=response.is_game_over or is_final_round,
        is_victory=is_final_round and not response.is_game_over,
    )
