"""
Text generation providers (Zhipu chat completions, mock)
"""

import asyncio
import json
import logging
import time
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Optional

from config.settings import Settings
from providers.http_client import UpstreamHttpClient, raise_for_status
from utils.errors import MalformedUpstreamOutput
from utils.json_utils import normalize_message_content
from utils.logger import log_event, truncate

logger = logging.getLogger(__name__)

ZHIPU_CHAT_COMPLETIONS_URL = "https://open.bigmodel.cn/api/paas/v4/chat/completions"


@dataclass(frozen=True)
class ChatReply:
    """Recognized shape of one chat completion choice"""

    content: Optional[str]
    finish_reason: str = "unknown"
    has_tool_calls: bool = False


def parse_chat_completion(data: Any) -> ChatReply:
    """Validate `{choices: [{message: {content, tool_calls}, finish_reason}]}` field by field"""
    if not isinstance(data, dict):
        raise MalformedUpstreamOutput("对话接口响应不是 JSON 对象。")

    choices = data.get("choices")
    choice = choices[0] if isinstance(choices, list) and choices else None
    if not isinstance(choice, dict):
        return ChatReply(content=None)

    finish_reason = choice.get("finish_reason")
    message = choice.get("message")
    if not isinstance(message, dict):
        message = {}

    return ChatReply(
        content=normalize_message_content(message.get("content")),
        finish_reason=finish_reason if isinstance(finish_reason, str) else "unknown",
        has_tool_calls=isinstance(message.get("tool_calls"), list),
    )


class LLMProvider(ABC):
    @abstractmethod
    async def complete(self, system: str, user: str, request_id: Optional[str] = None) -> ChatReply:
        pass

    @abstractmethod
    def get_provider_name(self) -> str:
        pass


class ZhipuChatProvider(LLMProvider):
    """Zhipu GLM chat completions"""

    label = "智谱对话"

    def __init__(self, settings: Settings, http: UpstreamHttpClient):
        self.api_key = settings.text_api_key
        self.model = settings.ZHIPU_STORY_MODEL
        self.temperature = settings.ZHIPU_TEMPERATURE
        self.max_tokens = settings.ZHIPU_STORY_MAX_TOKENS
        self.timeout = settings.ZHIPU_STORY_TIMEOUT_MS / 1000
        self.http = http

    async def complete(self, system: str, user: str, request_id: Optional[str] = None) -> ChatReply:
        upstream_request_id = str(uuid.uuid4())
        started_at = time.monotonic()
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json"
        }
        payload = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": system},
                {"role": "user", "content": user}
            ],
            "thinking": {"type": "disabled"},
            "stream": False,
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
            "user_id": request_id or upstream_request_id,
        }

        response = await self.http.post_json(
            ZHIPU_CHAT_COMPLETIONS_URL,
            payload,
            headers=headers,
            timeout=self.timeout,
            label=self.label,
            request_id=request_id,
        )

        if not response.ok:
            log_event(
                logger, logging.WARNING, "zhipu_chat_failed",
                requestId=request_id,
                upstreamRequestId=upstream_request_id,
                status=response.status,
                statusText=response.reason,
                body=truncate(response.text),
            )
            raise_for_status(response, self.label)

        try:
            data = response.json()
        except ValueError:
            raise MalformedUpstreamOutput(f"{self.label}响应不是合法 JSON：{truncate(response.text)}", label=self.label)

        reply = parse_chat_completion(data)
        log_event(
            logger, logging.INFO, "zhipu_chat_ok",
            requestId=request_id,
            upstreamRequestId=upstream_request_id,
            ms=int((time.monotonic() - started_at) * 1000),
            finishReason=reply.finish_reason,
        )
        return reply

    def get_provider_name(self) -> str:
        return f"Zhipu {self.model}"


class MockProvider(LLMProvider):
    """Offline story provider backed by the mock templates"""

    def __init__(self, delay: float = 0.3):
        from templates.mock_templates import MockStoryGenerator
        self.generator = MockStoryGenerator()
        self.delay = delay

    async def complete(self, system: str, user: str, request_id: Optional[str] = None) -> ChatReply:
        if self.delay:
            await asyncio.sleep(self.delay)
        story: Dict[str, Any] = self.generator.generate_story(user)
        return ChatReply(content=json.dumps(story, ensure_ascii=False), finish_reason="stop")

    def get_provider_name(self) -> str:
        return "Mock Provider"


class LLMProviderFactory:
    @staticmethod
    def get_provider(settings: Settings, http: UpstreamHttpClient) -> LLMProvider:
        if settings.text_provider_name() == "zhipu":
            return ZhipuChatProvider(settings, http)

        if settings.AI_PROVIDER.lower() != "mock":
            logger.warning("text provider %s unavailable, using mock", settings.AI_PROVIDER)
        return MockProvider()
