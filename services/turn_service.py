"""
Turn orchestration: story -> styled image prompt -> image -> TurnResponse
"""

import logging
import time
from typing import Optional

from config.settings import Settings
from models.turn_models import TurnRequest, TurnResponse
from providers.http_client import UpstreamHttpClient
from providers.image_provider import ImageProviderFactory
from providers.llm_provider import LLMProviderFactory
from services.image_service import ImageGenerator, apply_image_style
from services.story_service import StoryGenerator
from utils.logger import log_event

logger = logging.getLogger(__name__)


class TurnOrchestrator:
    """A turn either fully succeeds or raises; nothing is cached between turns"""

    def __init__(self, story_generator: StoryGenerator, image_generator: ImageGenerator):
        self.story_generator = story_generator
        self.image_generator = image_generator

    @classmethod
    def from_settings(cls, settings: Settings, http: UpstreamHttpClient) -> "TurnOrchestrator":
        return cls(
            StoryGenerator(LLMProviderFactory.get_provider(settings, http)),
            ImageGenerator(ImageProviderFactory.get_provider(settings, http)),
        )

    async def play_turn(self, request: TurnRequest, request_id: Optional[str] = None) -> TurnResponse:
        started_at = time.monotonic()

        story = await self.story_generator.generate(request, request_id)
        log_event(
            logger, logging.INFO, "zhipu_story_total",
            requestId=request_id,
            ms=int((time.monotonic() - started_at) * 1000),
        )

        styled_prompt = apply_image_style(story.image_prompt)
        image_url = await self.image_generator.generate(styled_prompt, request_id)
        log_event(
            logger, logging.INFO, "zhipu_turn_total",
            requestId=request_id,
            ms=int((time.monotonic() - started_at) * 1000),
            placeholder=False,
        )

        return TurnResponse(
            character_name=story.character_name,
            scene_description=story.scene_description,
            image_prompt=styled_prompt,
            image_url=image_url,
            options=story.options,
            is_game_over=story.is_game_over,
        )

    def describe_providers(self) -> dict:
        return {
            "text": self.story_generator.provider.get_provider_name(),
            "image": self.image_generator.provider.get_provider_name(),
        }
