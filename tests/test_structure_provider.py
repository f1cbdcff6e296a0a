from __future__ import annotations

import json
from pathlib import Path

import httpx
import pytest

from viewrender.gen.config import StructureProviderConfig
from viewrender.gen.errors import ConstraintViolationError, GenerationTimeoutError, NetworkError, ProviderError
from viewrender.gen.providers.structure import StructureConditionedProvider
from viewrender.gen.types import GenerationRequest, OutputFormat

ENDPOINT = "https://api.stability.ai/v2beta/stable-image/control/structure"


def make_provider(tmp_path: Path, client: httpx.AsyncClient, **overrides) -> StructureConditionedProvider:
    return StructureConditionedProvider(
        config=StructureProviderConfig(**overrides),
        api_key="sk-test-1234",
        results_dir=tmp_path / "results",
        timeout_seconds=10,
        client=client,
    )


class TestStructureGeneration:
    @pytest.mark.asyncio
    async def test_multipart_request_and_saved_result(self, tmp_path: Path, make_image) -> None:
        src = make_image("view.png", 1920, 1080)
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(
                200,
                content=b"RIFF-webp-bytes",
                headers={"seed": "42", "finish-reason": "SUCCESS"},
            )

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            provider = make_provider(tmp_path, client)
            result = await provider.generate(GenerationRequest(source_image_path=src, prompt="a house"))

        assert result.parent == tmp_path / "results" / "structure"
        assert result.name.startswith("result_") and result.suffix == ".webp"
        assert result.read_bytes() == b"RIFF-webp-bytes"

        request = seen[0]
        assert str(request.url) == ENDPOINT
        assert request.headers["authorization"] == "Bearer sk-test-1234"
        assert request.headers["accept"] == "image/*"
        body = request.content
        assert b'name="prompt"\r\n\r\na house' in body
        assert b'name="control_strength"\r\n\r\n0.7' in body
        assert b'name="output_format"\r\n\r\nwebp' in body
        assert b'name="image"; filename="view.png"' in body
        assert b"Content-Type: image/png" in body
        assert b'name="negative_prompt"' not in body
        assert body.index(b'name="prompt"') < body.index(b'name="control_strength"') < body.index(b'name="image"')

        sidecar = json.loads(result.with_suffix(".webp.json").read_text(encoding="utf-8"))
        assert sidecar["seed"] == "42"
        assert sidecar["finish_reason"] == "SUCCESS"
        assert sidecar["provider_id"] == "structure"

    @pytest.mark.asyncio
    async def test_optional_fields_and_overrides(self, tmp_path: Path, make_image) -> None:
        src = make_image("view.png", 640, 480)
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, content=b"png")

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            provider = make_provider(tmp_path, client, style_preset="photographic")
            result = await provider.generate(
                GenerationRequest(
                    source_image_path=src,
                    prompt="a house",
                    negative_prompt="blurry",
                    params={"control_strength": 0.35},
                    output_format=OutputFormat.PNG,
                )
            )

        body = seen[0].content
        assert b'name="negative_prompt"\r\n\r\nblurry' in body
        assert b'name="style_preset"\r\n\r\nphotographic' in body
        assert b'name="control_strength"\r\n\r\n0.35' in body
        assert result.suffix == ".png"

    @pytest.mark.asyncio
    async def test_aspect_ratio_rejection_is_a_constraint_violation(self, tmp_path: Path, make_image) -> None:
        src = make_image("view.png", 1920, 1080)

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(400, json={"errors": ["Invalid aspect ratio: must be between 1:2.5 and 2.5:1"]})

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            provider = make_provider(tmp_path, client)
            with pytest.raises(ConstraintViolationError) as exc_info:
                await provider.generate(GenerationRequest(source_image_path=src, prompt="x"))

        err = exc_info.value
        assert (err.width, err.height) == (1920, 1080)
        assert (err.min_aspect, err.max_aspect) == (0.4, 2.5)
        assert "1920x1080 (aspect ratio: 1.78)" in str(err)
        assert "between 1:2.5 and 2.5:1" in str(err)
        assert list((tmp_path / "results" / "structure").glob("result_*")) == []

    @pytest.mark.asyncio
    async def test_other_errors_carry_payload(self, tmp_path: Path, make_image) -> None:
        src = make_image("view.png", 512, 512)

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(402, json={"name": "payment_required", "errors": ["insufficient credits"]})

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            provider = make_provider(tmp_path, client)
            with pytest.raises(ProviderError) as exc_info:
                await provider.generate(GenerationRequest(source_image_path=src, prompt="x"))

        assert exc_info.value.status_code == 402
        assert "insufficient credits" in exc_info.value.payload
        assert "HTTP 402" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_timeout(self, tmp_path: Path, make_image) -> None:
        src = make_image("view.png", 512, 512)

        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("timed out", request=request)

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            provider = make_provider(tmp_path, client)
            with pytest.raises(GenerationTimeoutError) as exc_info:
                await provider.generate(GenerationRequest(source_image_path=src, prompt="x"))

        assert isinstance(exc_info.value, TimeoutError)
        assert "increasing the timeout" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_network_failure(self, tmp_path: Path, make_image) -> None:
        src = make_image("view.png", 512, 512)

        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("name resolution failed", request=request)

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            provider = make_provider(tmp_path, client)
            with pytest.raises(NetworkError):
                await provider.generate(GenerationRequest(source_image_path=src, prompt="x"))


class TestConnectivity:
    @pytest.mark.asyncio
    async def test_ok(self, tmp_path: Path) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.headers["authorization"] == "Bearer sk-test-1234"
            return httpx.Response(200, json={"id": "acct"})

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            assert await make_provider(tmp_path, client).check_connectivity() is True

    @pytest.mark.asyncio
    async def test_unauthorized_and_unreachable(self, tmp_path: Path) -> None:
        def unauthorized(request: httpx.Request) -> httpx.Response:
            return httpx.Response(401)

        def unreachable(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("down", request=request)

        async with httpx.AsyncClient(transport=httpx.MockTransport(unauthorized)) as client:
            assert await make_provider(tmp_path, client).check_connectivity() is False
        async with httpx.AsyncClient(transport=httpx.MockTransport(unreachable)) as client:
            assert await make_provider(tmp_path, client).check_connectivity() is False
