"""
Pytest configuration and shared fixtures
"""
import asyncio
import json
import os
import sys
from typing import Any, Dict, List, Optional

import pytest
from fastapi.testclient import TestClient

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

os.environ.setdefault("AI_PROVIDER", "mock")
os.environ.setdefault("LOG_DIR", "")

from config.settings import Settings
from main import create_app
from providers.http_client import UpstreamHttpClient, UpstreamResponse
from providers.image_provider import ImageProvider, MockImageProvider
from providers.llm_provider import ChatReply, LLMProvider, MockProvider
from services.image_service import ImageGenerator
from services.story_service import StoryGenerator
from services.turn_service import TurnOrchestrator
from utils.rate_limiter import ConcurrencyLimiter


def run_async(coro):
    return asyncio.run(coro)


class FakeChatProvider(LLMProvider):
    """Replays scripted replies and records (system, user) of every call"""

    def __init__(self, replies: List[Any]):
        self.replies = list(replies)
        self.calls: List[Dict[str, str]] = []

    async def complete(self, system: str, user: str, request_id: Optional[str] = None) -> ChatReply:
        self.calls.append({"system": system, "user": user})
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        if isinstance(reply, ChatReply):
            return reply
        return ChatReply(content=reply, finish_reason="stop")

    def get_provider_name(self) -> str:
        return "Fake Chat"


class FakeImageProvider(ImageProvider):
    def __init__(self, url: str = "https://img.example/turn.png", error: Optional[Exception] = None):
        self.url = url
        self.error = error
        self.prompts: List[str] = []

    async def generate(self, prompt: str, request_id: Optional[str] = None) -> str:
        self.prompts.append(prompt)
        if self.error:
            raise self.error
        return self.url

    def get_provider_name(self) -> str:
        return "Fake Image"


class FakeTransport:
    """Scripted HTTP exchanges for UpstreamHttpClient"""

    def __init__(self, responses: List[Any]):
        self.responses = list(responses)
        self.calls: List[Dict[str, Any]] = []

    async def __call__(self, method, url, *, headers=None, json_body=None, params=None, timeout=0, label=""):
        self.calls.append({
            "method": method, "url": url, "json": json_body, "params": params, "timeout": timeout, "label": label,
        })
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


class RecordingSleep:
    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)

    @property
    def total(self) -> float:
        return sum(self.delays)


def json_response(status: int, payload: Any) -> UpstreamResponse:
    return UpstreamResponse(status=status, body=json.dumps(payload, ensure_ascii=False).encode("utf-8"))


def story_json(**overrides) -> str:
    story = {
        "image_prompt": "雨中的马孔多小镇，黄色蝴蝶",
        "character_name": "奥雷里亚诺",
        "scene_description": "冰块被带进马孔多的那天，奥雷里亚诺第一次感到时间在倒流。",
        "options": [
            {"label": "A", "text": "触摸那块冰"},
            {"label": "B", "text": "追问吉卜赛人"},
            {"label": "C", "text": "回家告诉父亲"},
        ],
        "is_game_over": False,
    }
    story.update(overrides)
    return json.dumps(story, ensure_ascii=False)


@pytest.fixture
def settings():
    return Settings(_env_file=None, AI_PROVIDER="mock", LOG_DIR="")


@pytest.fixture
def recording_sleep():
    return RecordingSleep()


@pytest.fixture
def make_http(recording_sleep):
    def _make(responses: List[Any], limit: int = 2, backoff=(1.0, 2.0, 4.0)):
        transport = FakeTransport(responses)
        http = UpstreamHttpClient(ConcurrencyLimiter(limit), backoff, transport=transport, sleep=recording_sleep)
        return http, transport
    return _make


@pytest.fixture
def mock_orchestrator():
    return TurnOrchestrator(StoryGenerator(MockProvider(delay=0)), ImageGenerator(MockImageProvider()))


@pytest.fixture
def app(settings, mock_orchestrator):
    return create_app(settings, orchestrator=mock_orchestrator)


@pytest.fixture
def client(app):
    """FastAPI test client backed by the offline mock providers"""
    return TestClient(app)


@pytest.fixture
def sample_turn_request():
    return {
        "bookTitle": "百年孤独",
        "round": 0,
        "choice": None,
        "history": [],
        "protagonistName": None
    }


@pytest.fixture
def sample_continue_request():
    return {
        "bookTitle": "百年孤独",
        "round": 2,
        "choice": "追问吉卜赛人",
        "history": [
            {"round": 0, "label": "A", "text": "触摸那块冰"},
            {"round": 1, "label": "B", "text": "追问吉卜赛人"}
        ],
        "protagonistName": "奥雷里亚诺"
    }
