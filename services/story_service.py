"""
Story generation: game-master call, JSON extraction, single repair pass
"""

import logging
import time
from typing import Any, Optional

from models.turn_models import StoryResult, TurnRequest
from prompt.prompt_manager import PromptManager, get_prompt_manager
from providers.llm_provider import LLMProvider
from services.option_normalizer import normalize_options
from utils.errors import MalformedUpstreamOutput, UpstreamRejected
from utils.json_utils import extract_json_object, try_parse_json
from utils.logger import log_event

logger = logging.getLogger(__name__)

MAX_CALL_ATTEMPTS = 2
SENSITIVE_FINISH_REASON = "sensitive"
REQUIRED_FIELDS = ("character_name", "scene_description", "image_prompt")


def validate_story_payload(data: Any) -> StoryResult:
    """Required fields must be non-empty strings; options are normalized"""
    if not isinstance(data, dict):
        raise MalformedUpstreamOutput("故事响应格式异常：不是对象。")

    values = {}
    for key in REQUIRED_FIELDS:
        value = data.get(key)
        values[key] = value.strip() if isinstance(value, str) else ""

    missing = [key for key in REQUIRED_FIELDS if not values[key]]
    if missing:
        raise MalformedUpstreamOutput(f"故事响应缺少必需字段：{', '.join(missing)}。")

    is_game_over = data.get("is_game_over")
    is_game_over = is_game_over if isinstance(is_game_over, bool) else False

    return StoryResult(
        character_name=values["character_name"],
        scene_description=values["scene_description"],
        image_prompt=values["image_prompt"],
        is_game_over=is_game_over,
        options=normalize_options(data.get("options"), is_game_over),
    )


class StoryGenerator:
    def __init__(self, provider: LLMProvider, prompt_manager: Optional[PromptManager] = None):
        self.provider = provider
        self.prompt_manager = prompt_manager or get_prompt_manager()

    async def generate(self, request: TurnRequest, request_id: Optional[str] = None) -> StoryResult:
        started_at = time.monotonic()
        system = self.prompt_manager.get_story_prompt()
        user = self.prompt_manager.create_user_prompt(request)

        first = await self.call_json_object(system, user, request_id)
        try:
            return validate_story_payload(try_parse_json(first))
        except MalformedUpstreamOutput as e:
            log_event(
                logger, logging.WARNING, "zhipu_story_repair_start",
                requestId=request_id,
                reason=str(e),
                ms=int((time.monotonic() - started_at) * 1000),
            )

        second = await self.call_json_object(
            self.prompt_manager.get_repair_prompt(),
            self.prompt_manager.create_repair_user_prompt(first),
            request_id,
        )
        result = validate_story_payload(try_parse_json(second))
        log_event(
            logger, logging.INFO, "zhipu_story_repair_done",
            requestId=request_id,
            ms=int((time.monotonic() - started_at) * 1000),
        )
        return result

    async def call_json_object(self, system: str, user: str, request_id: Optional[str] = None) -> str:
        """One call (plus one hardened retry) that must yield a JSON object substring"""
        for attempt in range(1, MAX_CALL_ATTEMPTS + 1):
            reply = await self.provider.complete(system, user, request_id)

            if reply.finish_reason == SENSITIVE_FINISH_REASON:
                raise UpstreamRejected("内容被安全策略拦截（finish_reason=sensitive）。")

            if reply.content is None:
                if attempt < MAX_CALL_ATTEMPTS:
                    system = self.prompt_manager.harden(system, "empty")
                    continue
                raise MalformedUpstreamOutput(
                    f"智谱对话返回 content 为空或格式异常（attempt={attempt}, "
                    f"finish_reason={reply.finish_reason}, "
                    f"tool_calls={'present' if reply.has_tool_calls else 'none'}）。"
                )

            extracted = extract_json_object(reply.content)
            if extracted is None:
                if attempt < MAX_CALL_ATTEMPTS:
                    system = self.prompt_manager.harden(system, "json")
                    continue
                raise MalformedUpstreamOutput("智谱对话返回内容未包含可解析的 JSON 对象。")

            return extracted

        raise MalformedUpstreamOutput("智谱对话重试次数已用尽。")
