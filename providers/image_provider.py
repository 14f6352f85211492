"""
Image generation providers (Zhipu CogView, local ComfyUI workflow, mock)
"""

import asyncio
import copy
import hashlib
import json
import logging
import random
import time
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional
from urllib.parse import urljoin

from config.settings import Settings
from providers.http_client import UpstreamHttpClient, raise_for_status
from utils.errors import MalformedUpstreamOutput, UpstreamRejected, UpstreamUnavailable
from utils.logger import log_event, truncate

logger = logging.getLogger(__name__)

IMAGE_GENERATIONS_URL = "https://open.bigmodel.cn/api/paas/v4/images/generations"

COMFY_CLIENT_ID = "bookgame"
COMFY_TEXT_NODE = "45"
COMFY_SIZE_NODE = "41"
COMFY_SAMPLER_NODE = "44"
COMFY_OUTPUT_NODE = "9"
HISTORY_POLL_INTERVAL = 1.0


@dataclass(frozen=True)
class ImageResult:
    """Recognized shape of an image generation response"""

    url: Optional[str]
    content_filter_levels: List[float] = field(default_factory=list)


def parse_image_response(data: Any) -> ImageResult:
    """Accepts `{data: [{url}]}` or `{data: [{b64_json}]}`, plus optional `content_filter: [{level}]`"""
    if not isinstance(data, dict):
        raise MalformedUpstreamOutput("图像接口响应不是 JSON 对象。")

    url = None
    items = data.get("data")
    first = items[0] if isinstance(items, list) and items else None
    if isinstance(first, dict):
        if isinstance(first.get("url"), str) and first["url"].strip():
            url = first["url"].strip()
        elif isinstance(first.get("b64_json"), str) and first["b64_json"].strip():
            url = f"data:image/png;base64,{first['b64_json'].strip()}"

    levels = []
    content_filter = data.get("content_filter")
    if isinstance(content_filter, list):
        for item in content_filter:
            if not isinstance(item, dict):
                continue
            try:
                levels.append(float(item.get("level")))
            except (TypeError, ValueError):
                continue

    return ImageResult(url=url, content_filter_levels=levels)


class ImageProvider(ABC):
    @abstractmethod
    async def generate(self, prompt: str, request_id: Optional[str] = None) -> str:
        """Prompt in, image reference (URL) out"""

    @abstractmethod
    def get_provider_name(self) -> str:
        pass


class ZhipuImageProvider(ImageProvider):
    label = "智谱图像生成"

    def __init__(self, settings: Settings, http: UpstreamHttpClient):
        self.api_key = settings.image_api_key
        self.model = settings.ZHIPU_IMAGE_MODEL
        self.size = settings.ZHIPU_IMAGE_SIZE
        self.timeout = settings.ZHIPU_IMAGE_TIMEOUT_MS / 1000
        self.watermark_enabled = settings.ZHIPU_IMAGE_WATERMARK_ENABLED
        self.min_filter_level = settings.ZHIPU_IMAGE_CONTENT_FILTER_LEVEL
        self.http = http

    async def generate(self, prompt: str, request_id: Optional[str] = None) -> str:
        upstream_request_id = str(uuid.uuid4())
        started_at = time.monotonic()
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json"
        }
        payload = {
            "model": self.model,
            "prompt": prompt,
            "size": self.size,
            "watermark_enabled": self.watermark_enabled,
            "user_id": request_id or upstream_request_id,
        }

        response = await self.http.post_json(
            IMAGE_GENERATIONS_URL,
            payload,
            headers=headers,
            timeout=self.timeout,
            label=self.label,
            request_id=request_id,
        )
        if not response.ok:
            log_event(
                logger, logging.WARNING, "zhipu_image_failed",
                requestId=request_id,
                upstreamRequestId=upstream_request_id,
                status=response.status,
                statusText=response.reason,
                body=truncate(response.text),
            )
            raise_for_status(response, self.label)

        try:
            result = parse_image_response(response.json())
        except ValueError:
            raise MalformedUpstreamOutput(f"{self.label}响应不是合法 JSON：{truncate(response.text)}", label=self.label)

        if not result.url:
            raise MalformedUpstreamOutput("智谱图像生成未返回可用的图片 URL。", label=self.label)

        if any(level < self.min_filter_level for level in result.content_filter_levels):
            log_event(
                logger, logging.WARNING, "zhipu_image_content_filtered",
                requestId=request_id,
                upstreamRequestId=upstream_request_id,
                levels=result.content_filter_levels,
                requiredLevel=self.min_filter_level,
            )
            raise UpstreamRejected(
                f"图像内容安全等级不满足要求（level < {self.min_filter_level}）。", label=self.label
            )

        log_event(
            logger, logging.INFO, "zhipu_image_ok",
            requestId=request_id,
            upstreamRequestId=upstream_request_id,
            ms=int((time.monotonic() - started_at) * 1000),
            model=self.model,
            size=self.size,
            watermarkEnabled=self.watermark_enabled,
        )
        return result.url

    def get_provider_name(self) -> str:
        return f"Zhipu {self.model}"


class ComfyUIImageProvider(ImageProvider):
    """Local ComfyUI: submit workflow, poll history, fetch the artifact, serve it from disk"""

    label = "ComfyUI"

    def __init__(self, settings: Settings, http: UpstreamHttpClient):
        self.base_url = settings.COMFYUI_BASE_URL.rstrip("/")
        self.workflow_path = Path(settings.COMFYUI_WORKFLOW_PATH)
        self.width = settings.COMFYUI_WIDTH
        self.height = settings.COMFYUI_HEIGHT
        self.timeout = settings.COMFYUI_TIMEOUT_MS / 1000
        self.output_dir = Path(settings.COMFYUI_OUTPUT_DIR)
        self.public_base_url = settings.COMFYUI_PUBLIC_BASE_URL
        self.ttl_minutes = settings.COMFYUI_TTL_MINUTES
        self.http = http
        self._workflow_template: Optional[Dict[str, Any]] = None

    async def _load_workflow(self) -> Dict[str, Any]:
        if self._workflow_template is None:
            try:
                raw = await asyncio.to_thread(self.workflow_path.read_text, encoding="utf-8")
                self._workflow_template = json.loads(raw)
            except (OSError, ValueError) as e:
                raise UpstreamUnavailable(f"ComfyUI 工作流模板无法读取：{self.workflow_path} ({e})", label=self.label)
        return self._workflow_template

    def build_workflow(self, template: Dict[str, Any], prompt: str) -> Dict[str, Any]:
        workflow = copy.deepcopy(template)

        text_node = workflow.get(COMFY_TEXT_NODE, {}).get("inputs")
        if isinstance(text_node, dict):
            text_node["text"] = prompt

        size_node = workflow.get(COMFY_SIZE_NODE, {}).get("inputs")
        if isinstance(size_node, dict):
            size_node["width"] = self.width
            size_node["height"] = self.height

        sampler_node = workflow.get(COMFY_SAMPLER_NODE, {}).get("inputs")
        if isinstance(sampler_node, dict):
            sampler_node["seed"] = random.randint(0, 2 ** 53 - 1)

        return workflow

    async def _submit(self, workflow: Dict[str, Any], request_id: Optional[str]) -> str:
        response = await self.http.post_json(
            f"{self.base_url}/prompt",
            {"client_id": COMFY_CLIENT_ID, "prompt": workflow},
            timeout=self.timeout,
            label="ComfyUI /prompt",
            request_id=request_id,
        )
        raise_for_status(response, "ComfyUI /prompt ")
        prompt_id = _safe_json(response).get("prompt_id")
        if not isinstance(prompt_id, str) or not prompt_id:
            raise MalformedUpstreamOutput("ComfyUI /prompt 未返回 prompt_id。", label=self.label)
        return prompt_id

    async def _wait_for_result(self, prompt_id: str, request_id: Optional[str]) -> Dict[str, str]:
        deadline = time.monotonic() + self.timeout
        while time.monotonic() < deadline:
            # each poll only gets what is left of the overall budget
            remaining = deadline - time.monotonic()
            response = await self.http.get(
                f"{self.base_url}/history/{prompt_id}",
                timeout=max(0.1, remaining),
                label="ComfyUI /history",
                request_id=request_id,
            )
            if response.ok:
                image = _first_output_image(_safe_json(response), prompt_id)
                if image:
                    return image
            await self.http.sleep(HISTORY_POLL_INTERVAL)

        raise UpstreamUnavailable(f"ComfyUI 结果等待超时（prompt_id={prompt_id}）。", label=self.label)

    async def _download(self, image: Dict[str, str], request_id: Optional[str]) -> bytes:
        response = await self.http.get(
            f"{self.base_url}/view",
            params={
                "filename": image["filename"],
                "subfolder": image.get("subfolder") or "",
                "type": image.get("type") or "output",
            },
            timeout=self.timeout,
            label="ComfyUI /view",
            request_id=request_id,
        )
        raise_for_status(response, "ComfyUI /view ")
        return response.body

    async def _save(self, data: bytes, request_id: Optional[str]) -> str:
        return await asyncio.to_thread(self._write_artifact, data, request_id)

    def _write_artifact(self, data: bytes, request_id: Optional[str]) -> str:
        self.output_dir.mkdir(parents=True, exist_ok=True)
        filename = f"{request_id or uuid.uuid4()}-{int(time.time() * 1000)}.png"
        (self.output_dir / filename).write_bytes(data)
        self._cleanup_old_files()
        return filename

    def _cleanup_old_files(self) -> None:
        if self.ttl_minutes <= 0:
            return
        cutoff = time.time() - self.ttl_minutes * 60
        try:
            for entry in self.output_dir.iterdir():
                if entry.is_file() and entry.stat().st_mtime < cutoff:
                    entry.unlink(missing_ok=True)
        except OSError as e:
            log_event(logger, logging.WARNING, "comfy_cleanup_failed", error=str(e))

    def public_url(self, filename: str) -> str:
        if not self.public_base_url:
            return f"/generated/{filename}"
        base = self.public_base_url if self.public_base_url.endswith("/") else f"{self.public_base_url}/"
        return urljoin(base, f"generated/{filename}")

    async def generate(self, prompt: str, request_id: Optional[str] = None) -> str:
        workflow = self.build_workflow(await self._load_workflow(), prompt)
        prompt_id = await self._submit(workflow, request_id)
        image = await self._wait_for_result(prompt_id, request_id)
        data = await self._download(image, request_id)
        filename = await self._save(data, request_id)
        log_event(logger, logging.INFO, "comfy_image_ok", requestId=request_id, promptId=prompt_id, filename=filename)
        return self.public_url(filename)

    def get_provider_name(self) -> str:
        return f"ComfyUI {self.base_url}"


class MockImageProvider(ImageProvider):
    """Deterministic placeholder picture per prompt"""

    def __init__(self, size: str = "896x672"):
        width, _, height = size.partition("x")
        self.width = width or "896"
        self.height = height or "672"

    async def generate(self, prompt: str, request_id: Optional[str] = None) -> str:
        seed = hashlib.sha1(prompt.encode("utf-8")).hexdigest()[:12]
        return f"https://picsum.photos/seed/{seed}/{self.width}/{self.height}"

    def get_provider_name(self) -> str:
        return "Mock Image Provider"


class ImageProviderFactory:
    @staticmethod
    def get_provider(settings: Settings, http: UpstreamHttpClient) -> ImageProvider:
        name = settings.image_provider_name()
        if name == "zhipu":
            return ZhipuImageProvider(settings, http)
        if name == "comfyui":
            return ComfyUIImageProvider(settings, http)
        return MockImageProvider(settings.ZHIPU_IMAGE_SIZE)


def _safe_json(response) -> Dict[str, Any]:
    try:
        data = response.json()
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}


def _first_output_image(history: Dict[str, Any], prompt_id: str) -> Optional[Dict[str, str]]:
    entry = history.get(prompt_id)
    if not isinstance(entry, dict):
        return None
    outputs = entry.get("outputs")
    if not isinstance(outputs, dict):
        return None
    node = outputs.get(COMFY_OUTPUT_NODE)
    images = node.get("images") if isinstance(node, dict) else None
    if isinstance(images, list) and images and isinstance(images[0], dict) and images[0].get("filename"):
        return images[0]
    return None
