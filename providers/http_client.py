"""
Shared outbound HTTP plumbing: concurrency limiter, per-call timeout, 429 backoff
"""

import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Optional, Sequence

import aiohttp

from utils.errors import UpstreamThrottled, UpstreamUnavailable
from utils.logger import log_event, truncate
from utils.rate_limiter import ConcurrencyLimiter

logger = logging.getLogger(__name__)

DEFAULT_BACKOFF = (1.0, 2.0, 4.0)


@dataclass
class UpstreamResponse:
    status: int
    body: bytes = b""
    reason: str = ""
    headers: Dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    @property
    def text(self) -> str:
        return self.body.decode("utf-8", errors="replace")

    def json(self) -> Any:
        return json.loads(self.text)


Transport = Callable[..., Awaitable[UpstreamResponse]]


async def aiohttp_transport(
    method: str,
    url: str,
    *,
    headers: Optional[Dict[str, str]] = None,
    json_body: Any = None,
    params: Optional[Dict[str, str]] = None,
    timeout: float = 120.0,
    label: str = "upstream",
) -> UpstreamResponse:
    """Single HTTP exchange; network errors and timeouts become UpstreamUnavailable"""
    try:
        async with aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=timeout)) as session:
            async with session.request(method, url, headers=headers, json=json_body, params=params) as response:
                body = await response.read()
                return UpstreamResponse(
                    status=response.status,
                    body=body,
                    reason=response.reason or "",
                    headers=dict(response.headers),
                )
    except asyncio.TimeoutError:
        raise UpstreamUnavailable(f"{label} 请求超时（timeoutMs={int(timeout * 1000)}）", label=label)
    except aiohttp.ClientError as e:
        raise UpstreamUnavailable(f"{label} 请求失败：{type(e).__name__}: {e}", label=label)


class UpstreamHttpClient:
    """Every call is wrapped in the limiter; HTTP 429 is retried per the backoff table"""

    def __init__(
        self,
        limiter: ConcurrencyLimiter,
        backoff: Sequence[float] = DEFAULT_BACKOFF,
        transport: Transport = aiohttp_transport,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.limiter = limiter
        self.backoff = tuple(backoff)
        self.transport = transport
        self.sleep = sleep

    async def request(
        self,
        method: str,
        url: str,
        *,
        label: str,
        timeout: float,
        headers: Optional[Dict[str, str]] = None,
        json_body: Any = None,
        params: Optional[Dict[str, str]] = None,
        request_id: Optional[str] = None,
    ) -> UpstreamResponse:
        attempts = len(self.backoff) + 1
        for attempt in range(attempts):
            response = await self.limiter.run(
                lambda: self.transport(
                    method,
                    url,
                    headers=headers,
                    json_body=json_body,
                    params=params,
                    timeout=timeout,
                    label=label,
                )
            )
            if response.status != 429 or attempt == attempts - 1:
                return response

            retry_in = self.backoff[attempt]
            log_event(
                logger, logging.WARNING, "provider_rate_limited",
                requestId=request_id,
                label=label,
                attempt=attempt + 1,
                retryInMs=int(retry_in * 1000),
                status=response.status,
                body=truncate(response.text),
            )
            await self.sleep(retry_in)

        # unreachable: the last attempt always returns
        raise UpstreamThrottled(f"{label} 请求重试失败。", label=label, status=429)

    async def post_json(self, url: str, payload: Any, **kwargs) -> UpstreamResponse:
        return await self.request("POST", url, json_body=payload, **kwargs)

    async def get(self, url: str, **kwargs) -> UpstreamResponse:
        return await self.request("GET", url, **kwargs)


def raise_for_status(response: UpstreamResponse, label: str) -> None:
    if response.ok:
        return
    message = f"{label}接口调用失败：{response.status} {response.reason} {truncate(response.text)}".strip()
    if response.status == 429:
        raise UpstreamThrottled(message, label=label, status=429)
    raise UpstreamUnavailable(message, label=label, status=response.status)
