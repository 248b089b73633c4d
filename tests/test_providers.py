from __future__ import annotations

import asyncio
import json
from pathlib import Path
from urllib.parse import unquote, urlparse

import httpx
import pytest
from conftest import write_image
from PIL import Image

from aistudio.config import HttpProviderConfig, PlaceholderProviderConfig
from aistudio.errors import ErrorKind, NetworkError, ProviderRejectedError
from aistudio.inference.providers.http import HttpQueueProvider, parse_webhook
from aistudio.inference.providers.placeholder import PlaceholderProvider
from aistudio.inference.types import PollResult, ProviderHandle, ProviderRequest, RemoteStatus, extract_output_url
from aistudio.jobs import JobStatus
from aistudio.models import Operation, OperationKind, SourceAsset
from aistudio.progress import Completed
from aistudio.tracker import JobTracker


def path_of(url: str) -> Path:
    return Path(unquote(urlparse(url).path))


class TestPlaceholderProvider:
    @pytest.mark.asyncio
    async def test_push_and_poll_report_completion(self, tmp_path: Path) -> None:
        src = write_image(tmp_path / "in.png", size=(40, 30))
        provider = PlaceholderProvider(PlaceholderProviderConfig(latency_seconds=0.01), output_dir=tmp_path / "out")
        pushed: list[tuple[str, PollResult]] = []
        provider.bind_push(lambda cid, result: pushed.append((cid, result)) or True)

        handle = await provider.submit(ProviderRequest("job-1", OperationKind.ENHANCE, src.as_uri()))
        for _ in range(100):
            if pushed:
                break
            await asyncio.sleep(0.01)

        (cid, result) = pushed[0]
        assert cid == "job-1"
        assert result.status is RemoteStatus.COMPLETED
        assert await provider.poll(handle) == result
        with Image.open(path_of(result.output_url)) as img:
            assert img.size == (80, 60)
        await provider.aclose()

    @pytest.mark.asyncio
    async def test_remove_background_has_alpha(self, tmp_path: Path) -> None:
        src = tmp_path / "subject.png"
        img = Image.new("RGB", (40, 40), (255, 255, 255))
        img.paste((10, 120, 10), (10, 10, 30, 30))
        img.save(src)
        provider = PlaceholderProvider(
            PlaceholderProviderConfig(latency_seconds=0.0, push=False), output_dir=tmp_path / "out"
        )
        handle = await provider.submit(ProviderRequest("job-2", OperationKind.REMOVE_BACKGROUND, str(src)))
        await asyncio.sleep(0.05)
        for _ in range(100):
            result = await provider.poll(handle)
            if result.is_terminal:
                break
            await asyncio.sleep(0.01)

        with Image.open(path_of(result.output_url)) as out:
            assert out.mode == "RGBA"
            assert out.getpixel((0, 0))[3] == 0
            assert out.getpixel((20, 20))[3] == 255
        await provider.aclose()

    @pytest.mark.asyncio
    async def test_fail_with(self, tmp_path: Path) -> None:
        provider = PlaceholderProvider(
            PlaceholderProviderConfig(latency_seconds=0.0, fail_with="model exploded"),
            output_dir=tmp_path,
        )
        pushed = []
        provider.bind_push(lambda cid, result: pushed.append(result) or True)
        await provider.submit(ProviderRequest("job-3", OperationKind.ENHANCE, "https://x/y.png"))
        for _ in range(100):
            if pushed:
                break
            await asyncio.sleep(0.01)
        assert pushed[0].status is RemoteStatus.FAILED
        assert pushed[0].error == "model exploded"

    @pytest.mark.asyncio
    async def test_queued_before_latency(self, tmp_path: Path) -> None:
        provider = PlaceholderProvider(PlaceholderProviderConfig(latency_seconds=5.0), output_dir=tmp_path)
        handle = await provider.submit(ProviderRequest("job-4", OperationKind.ENHANCE, "https://x/y.png"))
        assert (await provider.poll(handle)).status is RemoteStatus.QUEUED
        await provider.aclose()


def queue_transport(routes: dict[tuple[str, str], httpx.Response], seen: list[httpx.Request]):
    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        response = routes.get((request.method, request.url.path))
        if response is None:
            return httpx.Response(404, json={"detail": "not found"})
        return response

    return httpx.MockTransport(handler)


class TestHttpQueueProvider:
    @pytest.mark.asyncio
    async def test_submit_posts_to_model_endpoint(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("TEST_KEY", "secret")
        seen: list[httpx.Request] = []
        routes = {
            ("POST", "/fal-ai/birefnet/v2"): httpx.Response(
                200,
                json={
                    "request_id": "r1",
                    "status_url": "https://queue.test/fal-ai/birefnet/v2/requests/r1/status",
                    "response_url": "https://queue.test/fal-ai/birefnet/v2/requests/r1",
                },
            )
        }
        config = HttpProviderConfig(
            base_url="https://queue.test", api_key_env="TEST_KEY", webhook_url="https://hooks.test/done"
        )
        provider = HttpQueueProvider(config, transport=queue_transport(routes, seen))

        handle = await provider.submit(
            ProviderRequest("job-1", OperationKind.REMOVE_BACKGROUND, "https://up/x.webp")
        )

        assert handle.request_id == "r1"
        assert handle.model_id == "fal-ai/birefnet/v2"
        request = seen[0]
        assert request.headers["Authorization"] == "Key secret"
        assert json.loads(request.content) == {"image_url": "https://up/x.webp"}
        assert "correlation_id%3Djob-1" in str(request.url)
        await provider.aclose()

    @pytest.mark.asyncio
    async def test_submit_rejected(self) -> None:
        routes = {("POST", "/fal-ai/creative-upscaler"): httpx.Response(422, json={"detail": "bad image"})}
        provider = HttpQueueProvider(
            HttpProviderConfig(base_url="https://queue.test"), transport=queue_transport(routes, [])
        )
        with pytest.raises(ProviderRejectedError, match="bad image") as exc:
            await provider.submit(ProviderRequest("j", OperationKind.ENHANCE, "u"))
        assert exc.value.status_code == 422
        await provider.aclose()

    @pytest.mark.asyncio
    async def test_submit_server_error_is_network(self) -> None:
        routes = {("POST", "/fal-ai/creative-upscaler"): httpx.Response(503)}
        provider = HttpQueueProvider(
            HttpProviderConfig(base_url="https://queue.test"), transport=queue_transport(routes, [])
        )
        with pytest.raises(NetworkError):
            await provider.submit(ProviderRequest("j", OperationKind.ENHANCE, "u"))
        await provider.aclose()

    @pytest.mark.asyncio
    async def test_poll_statuses(self) -> None:
        base = "/fal-ai/creative-upscaler/requests/r1"
        routes = {
            ("GET", f"{base}/status"): httpx.Response(200, json={"status": "IN_QUEUE"}),
        }
        provider = HttpQueueProvider(
            HttpProviderConfig(base_url="https://queue.test"), transport=queue_transport(routes, [])
        )
        handle = ProviderHandle("job-1", "r1", "fal-ai/creative-upscaler")
        assert (await provider.poll(handle)).status is RemoteStatus.QUEUED

        routes[("GET", f"{base}/status")] = httpx.Response(200, json={"status": "COMPLETED"})
        routes[("GET", base)] = httpx.Response(200, json={"image": {"url": "https://cdn/out.png"}})
        result = await provider.poll(handle)
        assert result == PollResult(RemoteStatus.COMPLETED, output_url="https://cdn/out.png")
        await provider.aclose()

    @pytest.mark.asyncio
    async def test_transient_status_codes_keep_polling(self) -> None:
        base = "/fal-ai/creative-upscaler/requests/r1"
        for code in (400, 405, 408, 429, 502):
            routes = {("GET", f"{base}/status"): httpx.Response(code)}
            provider = HttpQueueProvider(
                HttpProviderConfig(base_url="https://queue.test"), transport=queue_transport(routes, [])
            )
            result = await provider.poll(ProviderHandle("j", "r1", "fal-ai/creative-upscaler"))
            assert result.status is RemoteStatus.IN_PROGRESS
            await provider.aclose()

    @pytest.mark.asyncio
    async def test_permanent_poll_error_fails(self) -> None:
        base = "/fal-ai/creative-upscaler/requests/r1"
        routes = {("GET", f"{base}/status"): httpx.Response(403, json={"detail": "Forbidden"})}
        provider = HttpQueueProvider(
            HttpProviderConfig(base_url="https://queue.test"), transport=queue_transport(routes, [])
        )
        result = await provider.poll(ProviderHandle("j", "r1", "fal-ai/creative-upscaler"))
        assert result.status is RemoteStatus.FAILED
        assert result.error == "Forbidden"
        await provider.aclose()

    @pytest.mark.asyncio
    async def test_non_json_submit_body_is_rejection(self) -> None:
        routes = {("POST", "/fal-ai/creative-upscaler"): httpx.Response(200, text="not json")}
        provider = HttpQueueProvider(
            HttpProviderConfig(base_url="https://queue.test"), transport=queue_transport(routes, [])
        )
        with pytest.raises(ProviderRejectedError, match="Malformed"):
            await provider.submit(ProviderRequest("j", OperationKind.ENHANCE, "u"))
        await provider.aclose()

    @pytest.mark.asyncio
    async def test_non_json_bodies_while_polling(self) -> None:
        base = "/fal-ai/creative-upscaler/requests/r1"
        routes = {("GET", f"{base}/status"): httpx.Response(200, text="<html>gateway</html>")}
        provider = HttpQueueProvider(
            HttpProviderConfig(base_url="https://queue.test"), transport=queue_transport(routes, [])
        )
        handle = ProviderHandle("j", "r1", "fal-ai/creative-upscaler")
        assert (await provider.poll(handle)).status is RemoteStatus.IN_PROGRESS

        routes[("GET", f"{base}/status")] = httpx.Response(200, json={"status": "COMPLETED"})
        routes[("GET", base)] = httpx.Response(200, text='{"image": {"url": ')
        result = await provider.poll(handle)
        assert result.status is RemoteStatus.FAILED
        assert result.error == "Malformed result response"
        await provider.aclose()

    @pytest.mark.asyncio
    async def test_webhook_without_receiver(self) -> None:
        provider = HttpQueueProvider(HttpProviderConfig(base_url="https://queue.test"))
        assert not provider.handle_webhook("job-1", {"request_id": "r1", "status": "OK", "payload": {}})
        await provider.aclose()


ENHANCE = Operation(OperationKind.ENHANCE)
SOURCE = SourceAsset("img-1", 100, 100, "/tmp/img-1.png")
UPSCALER = "/fal-ai/creative-upscaler"


class TestHttpQueueProviderWithTracker:
    @pytest.mark.asyncio
    async def test_garbage_submit_body_returns_failed_job(self) -> None:
        routes = {("POST", UPSCALER): httpx.Response(200, text="not json")}
        provider = HttpQueueProvider(
            HttpProviderConfig(base_url="https://queue.test"), transport=queue_transport(routes, [])
        )
        job = await JobTracker(provider, poll_interval=0.01).submit(ENHANCE, SOURCE, "https://up/x.webp")
        assert job.status is JobStatus.FAILED
        assert job.error.kind is ErrorKind.PROVIDER_REJECTED
        await provider.aclose()

    @pytest.mark.asyncio
    async def test_garbage_status_body_still_reaches_terminal(self) -> None:
        routes = {
            ("POST", UPSCALER): httpx.Response(200, json={"request_id": "r1"}),
            ("GET", f"{UPSCALER}/requests/r1/status"): httpx.Response(200, text="<html>gateway</html>"),
        }
        provider = HttpQueueProvider(
            HttpProviderConfig(base_url="https://queue.test"), transport=queue_transport(routes, [])
        )
        tracker = JobTracker(provider, poll_interval=0.01, timeout_seconds=0.2)
        job = await asyncio.wait_for(tracker.submit(ENHANCE, SOURCE, "https://up/x.webp"), timeout=2.0)
        assert job.status is JobStatus.FAILED
        assert job.error.kind is ErrorKind.TIMEOUT
        await provider.aclose()

    @pytest.mark.asyncio
    async def test_webhook_and_poll_settle_once(self) -> None:
        seen: list[httpx.Request] = []
        routes = {
            ("POST", UPSCALER): httpx.Response(200, json={"request_id": "r1"}),
            ("GET", f"{UPSCALER}/requests/r1/status"): httpx.Response(200, json={"status": "COMPLETED"}),
            ("GET", f"{UPSCALER}/requests/r1"): httpx.Response(200, json={"image": {"url": "https://cdn/out.png"}}),
        }
        provider = HttpQueueProvider(
            HttpProviderConfig(base_url="https://queue.test", webhook_url="https://hooks.test/done"),
            transport=queue_transport(routes, seen),
        )
        tracker = JobTracker(provider, poll_interval=0.05)
        updates = []
        task = asyncio.create_task(
            tracker.submit(ENHANCE, SOURCE, "https://up/x.webp", on_progress=updates.append, job_id="job-1")
        )
        for _ in range(200):
            if seen:
                break
            await asyncio.sleep(0.005)
        await asyncio.sleep(0.01)

        body = {"request_id": "r1", "status": "OK", "payload": {"image": {"url": "https://cdn/out.png"}}}
        assert provider.handle_webhook("job-1", body)
        assert not provider.handle_webhook("job-1", body)
        job = await task
        await asyncio.sleep(0.1)

        assert job.status is JobStatus.COMPLETED
        assert job.result_uri == "https://cdn/out.png"
        assert [u for u in updates if u.status.is_terminal] == [Completed("https://cdn/out.png")]
        await provider.aclose()


class TestPayloadParsing:
    def test_extract_output_url_shapes(self) -> None:
        assert extract_output_url({"image": {"url": "a"}}) == "a"
        assert extract_output_url({"output": {"url": "b"}}) == "b"
        assert extract_output_url({"images": [{"url": "c"}]}) == "c"
        assert extract_output_url({"url": "d"}) == "d"
        assert extract_output_url({}) is None

    def test_parse_webhook_ok(self) -> None:
        request_id, result = parse_webhook(
            {"request_id": "r1", "status": "OK", "payload": {"image": {"url": "https://cdn/x.png"}}}
        )
        assert request_id == "r1"
        assert result.output_url == "https://cdn/x.png"

    def test_parse_webhook_error(self) -> None:
        _, result = parse_webhook({"request_id": "r1", "status": "ERROR", "error": "boom"})
        assert result.status is RemoteStatus.FAILED
        assert result.error == "boom"
