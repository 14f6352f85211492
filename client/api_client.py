"""
HTTP client for POST /api/play-turn
"""

import asyncio
import json
import os
from typing import Optional

import aiohttp
from pydantic import ValidationError

from models.turn_models import TurnRequest, TurnResponse

PLAY_TURN_ENDPOINT = "/api/play-turn"
DEFAULT_FAILURE = "无法生成新的章节，请稍后再试。"


class TurnApiError(Exception):
    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


def normalize_base_url(url: Optional[str]) -> str:
    trimmed = (url or "").strip()
    if not trimmed:
        return ""
    normalized = trimmed[:-1] if trimmed.endswith("/") else trimmed
    if normalized.startswith(("http://", "https://", "/")):
        return normalized
    return f"http://{normalized}"


class PlayTurnClient:
    """Callable transport used by the turn controller"""

    def __init__(self, base_url: Optional[str] = None, timeout: float = 300.0):
        self.base_url = normalize_base_url(base_url if base_url is not None else os.getenv("PLAYBRARY_API_URL"))
        self.timeout = timeout

    async def __call__(self, request: TurnRequest) -> TurnResponse:
        payload = request.model_dump(by_alias=True)
        try:
            async with aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=self.timeout)) as session:
                async with session.post(f"{self.base_url}{PLAY_TURN_ENDPOINT}", json=payload) as response:
                    if response.status != 200:
                        message = (await response.text()).strip()
                        if response.status == 429 and "429" not in message:
                            message = f"429 Too Many Requests: {message}"
                        raise TurnApiError(message or DEFAULT_FAILURE, status=response.status)
                    return TurnResponse.model_validate(await response.json())
        except asyncio.TimeoutError:
            raise TurnApiError(f"{DEFAULT_FAILURE}（请求超时，timeout={self.timeout}s）")
        except (ValidationError, json.JSONDecodeError) as e:
            raise TurnApiError(f"{DEFAULT_FAILURE}（响应格式异常：{type(e).__name__}）", status=200)
        except aiohttp.ClientError as e:
            raise TurnApiError(f"{DEFAULT_FAILURE}（{e}）")
