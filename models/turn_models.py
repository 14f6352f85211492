"""
Turn request / response models (JSON keys are camelCase on the wire)
"""

from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

OptionLabel = Literal["A", "B", "C"]

TOTAL_ROUNDS = 5


class HistoryEntry(BaseModel):
    """One past choice; appended, never edited"""

    model_config = ConfigDict(frozen=True)

    round: int = Field(..., description="Round the choice was made in (0-based)")
    label: str = Field("?", description="Option label")
    text: str = Field("", description="Option text")


class TurnRequest(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    book_title: str = Field(..., alias="bookTitle", min_length=1, description="Book the story is based on")
    round: int = Field(0, ge=0, description="Number of completed turns")
    choice: Optional[str] = Field(None, description="Text of the option picked last turn")
    history: List[HistoryEntry] = Field(default_factory=list, description="Past choices, oldest first")
    protagonist_name: Optional[str] = Field(None, alias="protagonistName", description="Established protagonist")


class StoryOption(BaseModel):
    model_config = ConfigDict(frozen=True)

    label: OptionLabel
    text: str


class StoryResult(BaseModel):
    """Validated story payload from the text model"""

    character_name: str
    scene_description: str
    options: List[StoryOption] = Field(default_factory=list)
    image_prompt: str
    is_game_over: bool = False


class TurnResponse(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    character_name: str = Field(..., alias="characterName")
    scene_description: str = Field(..., alias="sceneDescription")
    image_prompt: str = Field(..., alias="imagePrompt", description="Styled image prompt")
    image_url: str = Field(..., alias="imageUrl")
    options: List[StoryOption] = Field(default_factory=list)
    is_game_over: bool = Field(False, alias="isGameOver")

    def to_wire(self) -> dict:
        return self.model_dump(by_alias=True)
