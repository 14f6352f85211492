"""
Image styling, upstream backoff and image provider tests
"""
import asyncio
import json
import os
import time
from pathlib import Path
from unittest.mock import patch

import pytest

from config.settings import Settings
from conftest import FakeImageProvider, json_response, run_async
from providers.http_client import UpstreamResponse, raise_for_status
from providers.image_provider import (
    ComfyUIImageProvider,
    MockImageProvider,
    ZhipuImageProvider,
    parse_image_response,
)
from services.image_service import IMAGE_STYLE_PREFIX, ImageGenerator, apply_image_style
from utils.errors import (
    MalformedUpstreamOutput,
    UpstreamRejected,
    UpstreamThrottled,
    UpstreamUnavailable,
)

THROTTLED = UpstreamResponse(status=429, body=b'{"error": "rate limited"}', reason="Too Many Requests")


def zhipu_settings(**overrides):
    values = {"IMAGE_PROVIDER": "zhipu", "ZHIPU_IMAGE_API_KEY": "Bearer image-key", "LOG_DIR": ""}
    values.update(overrides)
    return Settings(_env_file=None, **values)


@pytest.mark.unit
class TestApplyImageStyle:
    def test_prefix_added(self):
        assert apply_image_style("  雨夜的古堡 ") == f"{IMAGE_STYLE_PREFIX}雨夜的古堡"

    def test_idempotent(self):
        once = apply_image_style("雨夜的古堡")
        assert apply_image_style(once) == once
        assert apply_image_style(apply_image_style(once)) == once

    def test_empty_prompt_is_prefix_only(self):
        assert apply_image_style("   ") == IMAGE_STYLE_PREFIX.strip()

    def test_generator_styles_prompt(self):
        provider = FakeImageProvider()
        url = run_async(ImageGenerator(provider).generate("雨夜的古堡", "req-1"))

        assert url == "https://img.example/turn.png"
        assert provider.prompts == [f"{IMAGE_STYLE_PREFIX}雨夜的古堡"]


@pytest.mark.unit
class TestUpstreamBackoff:
    def test_429_twice_then_success(self, make_http, recording_sleep):
        http, transport = make_http([THROTTLED, THROTTLED, json_response(200, {"ok": True})])

        response = run_async(http.get("https://upstream.example/x", label="test", timeout=1))

        assert response.ok
        assert len(transport.calls) == 3
        assert recording_sleep.delays == [1.0, 2.0]

    def test_429_exhausted_returns_last_response(self, make_http, recording_sleep):
        http, transport = make_http([THROTTLED] * 4)

        response = run_async(http.get("https://upstream.example/x", label="test", timeout=1))

        assert response.status == 429
        assert len(transport.calls) == 4
        assert recording_sleep.delays == [1.0, 2.0, 4.0]
        assert recording_sleep.total == 7.0
        with pytest.raises(UpstreamThrottled):
            raise_for_status(response, "test")

    def test_other_errors_are_not_retried(self, make_http, recording_sleep):
        http, transport = make_http([UpstreamResponse(status=503, body=b"down", reason="Service Unavailable")])

        response = run_async(http.get("https://upstream.example/x", label="test", timeout=1))

        assert response.status == 503
        assert len(transport.calls) == 1
        assert recording_sleep.delays == []
        with pytest.raises(UpstreamUnavailable, match="503"):
            raise_for_status(response, "test")

    def test_transport_failure_propagates(self, make_http):
        http, _ = make_http([UpstreamUnavailable("test 请求超时（timeoutMs=1000）")])

        with pytest.raises(UpstreamUnavailable, match="timeoutMs"):
            run_async(http.get("https://upstream.example/x", label="test", timeout=1))

        assert http.limiter.active == 0


@pytest.mark.unit
class TestParseImageResponse:
    def test_url(self):
        result = parse_image_response({"data": [{"url": " https://cdn.example/a.png "}]})
        assert result.url == "https://cdn.example/a.png"
        assert result.content_filter_levels == []

    def test_b64(self):
        result = parse_image_response({"data": [{"b64_json": "iVBORw0"}]})
        assert result.url == "data:image/png;base64,iVBORw0"

    def test_content_filter_levels(self):
        result = parse_image_response({
            "data": [{"url": "https://cdn.example/a.png"}],
            "content_filter": [{"role": "assistant", "level": 3}, {"level": "x"}, "junk"],
        })
        assert result.content_filter_levels == [3.0]

    def test_no_data(self):
        assert parse_image_response({"data": []}).url is None

    def test_not_an_object(self):
        with pytest.raises(MalformedUpstreamOutput):
            parse_image_response([{"url": "https://cdn.example/a.png"}])


@pytest.mark.unit
class TestZhipuImageProvider:
    def test_success_after_throttling(self, make_http, recording_sleep):
        http, transport = make_http([
            THROTTLED,
            THROTTLED,
            json_response(200, {"data": [{"url": "https://cdn.example/a.png"}]}),
        ])
        provider = ZhipuImageProvider(zhipu_settings(), http)

        url = run_async(provider.generate("古堡", "req-1"))

        assert url == "https://cdn.example/a.png"
        assert recording_sleep.delays == [1.0, 2.0]
        payload = transport.calls[-1]["json"]
        assert payload["model"] == "cogview-3-flash"
        assert payload["size"] == "896x672"
        assert payload["watermark_enabled"] is False
        assert payload["user_id"] == "req-1"

    def test_throttled_after_all_retries(self, make_http):
        http, _ = make_http([THROTTLED] * 4)
        provider = ZhipuImageProvider(zhipu_settings(), http)

        with pytest.raises(UpstreamThrottled, match="429"):
            run_async(provider.generate("古堡"))

    def test_content_filter_below_minimum_is_rejected(self, make_http):
        http, _ = make_http([json_response(200, {
            "data": [{"url": "https://cdn.example/a.png"}],
            "content_filter": [{"level": 1}],
        })])
        provider = ZhipuImageProvider(zhipu_settings(), http)

        with pytest.raises(UpstreamRejected):
            run_async(provider.generate("古堡"))

    def test_missing_url_is_malformed(self, make_http):
        http, _ = make_http([json_response(200, {"data": [{}]})])
        provider = ZhipuImageProvider(zhipu_settings(), http)

        with pytest.raises(MalformedUpstreamOutput, match="URL"):
            run_async(provider.generate("古堡"))

    def test_invalid_json_is_malformed(self, make_http):
        http, _ = make_http([UpstreamResponse(status=200, body=b"<html>")])
        provider = ZhipuImageProvider(zhipu_settings(), http)

        with pytest.raises(MalformedUpstreamOutput):
            run_async(provider.generate("古堡"))

    def test_bearer_prefix_is_stripped(self, make_http):
        http, _ = make_http([])
        assert ZhipuImageProvider(zhipu_settings(), http).api_key == "image-key"


@pytest.mark.unit
class TestComfyUIImageProvider:
    def make_provider(self, make_http, tmp_path, responses, **overrides):
        workflow_path = tmp_path / "workflow.json"
        workflow_path.write_text(json.dumps({
            "9": {"class_type": "SaveImage", "inputs": {}},
            "41": {"class_type": "EmptyLatentImage", "inputs": {"width": 512, "height": 512}},
            "44": {"class_type": "KSampler", "inputs": {"seed": 0}},
            "45": {"class_type": "CLIPTextEncode", "inputs": {"text": ""}},
        }), encoding="utf-8")
        values = {
            "IMAGE_PROVIDER": "comfyui",
            "COMFYUI_BASE_URL": "http://comfy.local:8188/",
            "COMFYUI_WORKFLOW_PATH": str(workflow_path),
            "COMFYUI_OUTPUT_DIR": str(tmp_path / "generated"),
            "LOG_DIR": "",
        }
        values.update(overrides)
        http, transport = make_http(responses)
        return ComfyUIImageProvider(Settings(_env_file=None, **values), http), transport

    def test_build_workflow_fills_prompt_size_and_seed(self, make_http, tmp_path):
        provider, _ = self.make_provider(make_http, tmp_path, [])

        template = run_async(provider._load_workflow())
        workflow = provider.build_workflow(template, "像素古堡")

        assert workflow["45"]["inputs"]["text"] == "像素古堡"
        assert workflow["41"]["inputs"] == {"width": 896, "height": 672}
        assert isinstance(workflow["44"]["inputs"]["seed"], int)
        assert template["45"]["inputs"]["text"] == ""
        assert template["41"]["inputs"] == {"width": 512, "height": 512}

    def test_full_flow_saves_file(self, make_http, recording_sleep, tmp_path):
        image = {"filename": "ComfyUI_0001.png", "subfolder": "", "type": "output"}
        provider, transport = self.make_provider(make_http, tmp_path, [
            json_response(200, {"prompt_id": "p-1"}),
            json_response(200, {}),
            json_response(200, {"p-1": {"outputs": {"9": {"images": [image]}}}}),
            UpstreamResponse(status=200, body=b"\x89PNG-bytes"),
        ])

        url = run_async(provider.generate("像素古堡", "req-9"))

        assert url.startswith("/generated/req-9-")
        saved = list((tmp_path / "generated").iterdir())
        assert len(saved) == 1
        assert saved[0].read_bytes() == b"\x89PNG-bytes"
        assert recording_sleep.delays == [1.0]

        urls = [call["url"] for call in transport.calls]
        assert urls == [
            "http://comfy.local:8188/prompt",
            "http://comfy.local:8188/history/p-1",
            "http://comfy.local:8188/history/p-1",
            "http://comfy.local:8188/view",
        ]
        assert transport.calls[0]["json"]["client_id"] == "bookgame"
        assert transport.calls[3]["params"] == {"filename": "ComfyUI_0001.png", "subfolder": "", "type": "output"}

    @pytest.mark.parametrize("second_poll_at,second_timeout", [(104.0, 6.0), (109.98, 0.1)])
    def test_history_poll_gets_remaining_budget(self, make_http, tmp_path, second_poll_at, second_timeout):
        image = {"filename": "ComfyUI_0002.png"}
        provider, transport = self.make_provider(make_http, tmp_path, [
            json_response(200, {}),
            json_response(200, {"p-2": {"outputs": {"9": {"images": [image]}}}}),
        ], COMFYUI_TIMEOUT_MS=10000)

        with patch("providers.image_provider.time") as clock:
            clock.monotonic.side_effect = [100.0, 100.0, 100.0, second_poll_at, second_poll_at]
            result = run_async(provider._wait_for_result("p-2", "req-5"))

        assert result == image
        assert [call["timeout"] for call in transport.calls] == [10.0, second_timeout]

    def test_public_base_url(self, make_http, tmp_path):
        provider, _ = self.make_provider(
            make_http, tmp_path, [], COMFYUI_PUBLIC_BASE_URL="https://game.example/api"
        )
        assert provider.public_url("a.png") == "https://game.example/api/generated/a.png"

    def test_missing_prompt_id(self, make_http, tmp_path):
        provider, _ = self.make_provider(make_http, tmp_path, [json_response(200, {"error": "bad"})])

        with pytest.raises(MalformedUpstreamOutput, match="prompt_id"):
            run_async(provider.generate("像素古堡"))

    def test_missing_workflow_file(self, make_http, tmp_path):
        provider, _ = self.make_provider(
            make_http, tmp_path, [], COMFYUI_WORKFLOW_PATH=str(tmp_path / "missing.json")
        )

        with pytest.raises(UpstreamUnavailable):
            run_async(provider.generate("像素古堡"))


@pytest.mark.unit
def test_mock_image_provider_is_deterministic():
    provider = MockImageProvider("640x480")
    first = run_async(provider.generate("古堡"))

    assert first == run_async(provider.generate("古堡"))
    assert first.endswith("/640/480")
    assert first != run_async(provider.generate("森林"))


@pytest.mark.unit
class TestComfyUICleanup:
    def make_provider(self, make_http, tmp_path, ttl=60):
        settings = Settings(
            _env_file=None,
            COMFYUI_OUTPUT_DIR=str(tmp_path),
            COMFYUI_TTL_MINUTES=ttl,
            LOG_DIR="",
        )
        http, _ = make_http([])
        return ComfyUIImageProvider(settings, http)

    def test_expired_files_are_removed(self, make_http, tmp_path):
        old = tmp_path / "old.png"
        old.write_bytes(b"old")
        stale = time.time() - 2 * 60 * 60
        os.utime(old, (stale, stale))
        provider = self.make_provider(make_http, tmp_path)

        filename = run_async(provider._save(b"new", "req-2"))

        assert not old.exists()
        assert (tmp_path / filename).read_bytes() == b"new"

    def test_zero_ttl_keeps_everything(self, make_http, tmp_path):
        old = tmp_path / "old.png"
        old.write_bytes(b"old")
        stale = time.time() - 2 * 60 * 60
        os.utime(old, (stale, stale))

        run_async(self.make_provider(make_http, tmp_path, ttl=0)._save(b"new", "req-3"))

        assert old.exists()

    def test_cleanup_failure_is_logged_not_raised(self, make_http, tmp_path, caplog):
        provider = self.make_provider(make_http, tmp_path)

        with patch.object(Path, "iterdir", side_effect=OSError("permission denied")):
            filename = run_async(provider._save(b"new", "req-4"))

        assert (tmp_path / filename).exists()
        assert any(getattr(record, "event", None) == "comfy_cleanup_failed" for record in caplog.records)

    def test_save_runs_off_the_event_loop(self, make_http, tmp_path):
        provider = self.make_provider(make_http, tmp_path)
        ticks = []

        def slow_write(data, request_id):
            time.sleep(0.2)
            return "slow.png"

        async def ticker(done):
            while not done.is_set():
                ticks.append(1)
                await asyncio.sleep(0.01)

        async def scenario():
            done = asyncio.Event()
            task = asyncio.create_task(ticker(done))
            with patch.object(provider, "_write_artifact", side_effect=slow_write):
                filename = await provider._save(b"new", "req-6")
            done.set()
            await task
            return filename

        assert run_async(scenario()) == "slow.png"
        assert len(ticks) > 3
