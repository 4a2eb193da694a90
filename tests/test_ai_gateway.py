import base64
import json

import httpx
import pytest

from repose.services.ai_gateway import (
    GatewayError, GatewayTimeout, InvalidImageFormat, NoImageReturned, RateLimited, TruncatedResponse,
    build_repose_request, fix_storage_url, generate_repose_image, parse_image_response,
)

IMAGE_BYTES = b"\x89PNG\r\n\x1a\nfake"


def image_payload(fmt="png", data=IMAGE_BYTES):
    url = f"data:image/{fmt};base64,{base64.b64encode(data).decode()}"
    return {"choices": [{"message": {"images": [{"image_url": {"url": url}}]}}]}


def mock_client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def test_request_carries_prompt_and_both_images():
    body = build_repose_request("https://s/src.jpg", "https://s/pose.png", "model-x")
    content = body["messages"][0]["content"]
    urls = [part["image_url"]["url"] for part in content if part["type"] == "image_url"]
    assert urls == ["https://s/src.jpg", "https://s/pose.png"]
    assert body["model"] == "model-x"
    assert body["modalities"] == ["image", "text"]
    assert "image_config" not in body


def test_high_resolution_requests_jpeg():
    body = build_repose_request("a", "b", "m", image_size="4K")
    assert body["image_config"]["image_size"] == "4K"
    assert body["image_config"]["output_format"] == "jpeg"
    assert "image_config" not in build_repose_request("a", "b", "m", image_size="1K")


def test_parse_image():
    image = parse_image_response(image_payload("jpeg"))
    assert image.data == IMAGE_BYTES
    assert image.extension == "jpg"


def test_parse_errors():
    with pytest.raises(NoImageReturned):
        parse_image_response({"choices": [{"message": {"content": "sorry"}}]})
    with pytest.raises(InvalidImageFormat):
        parse_image_response({"choices": [{"message": {"images": [{"image_url": {"url": "https://x/y.png"}}]}}]})
    with pytest.raises(RateLimited):
        parse_image_response({"choices": [{"error": {"code": "RESOURCE_EXHAUSTED", "message": "quota"}}]})
    with pytest.raises(GatewayError, match="AI error: content_filter"):
        parse_image_response({"choices": [{"error": {"code": "content_filter"}}]})


async def test_generate_success():
    seen = {}

    def handler(request: httpx.Request):
        seen["auth"] = request.headers["authorization"]
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json=image_payload())

    async with mock_client(handler) as client:
        image = await generate_repose_image(
            "https://s/a%2520b.jpg", "https://s/pose.png", model="m", client=client,
        )

    assert image.data == IMAGE_BYTES
    assert seen["auth"] == "Bearer test-key"
    assert seen["body"]["messages"][0]["content"][2]["image_url"]["url"] == "https://s/a%20b.jpg"


@pytest.mark.parametrize("response, error", [
    (httpx.Response(429, text="slow down"), RateLimited),
    (httpx.Response(500, text="boom"), GatewayError),
    (httpx.Response(200, text='{"choices": [{"message": {"ima'), TruncatedResponse),
])
async def test_generate_error_mapping(response, error):
    async with mock_client(lambda request: response) as client:
        with pytest.raises(error) as exc:
            await generate_repose_image("a", "b", client=client)
    if response.status_code >= 400:
        assert exc.value.status == response.status_code


def test_retry_later_flags():
    assert RateLimited("x").retry_later
    assert TruncatedResponse("x").retry_later
    assert not GatewayError("x").retry_later


async def test_timeout():
    def handler(request):
        raise httpx.ReadTimeout("timed out", request=request)

    async with mock_client(handler) as client:
        with pytest.raises(GatewayTimeout):
            await generate_repose_image("a", "b", client=client)


def test_fix_storage_url():
    assert fix_storage_url("https://s/x/a%2520b%2523c.png") == "https://s/x/a%20b%23c.png"
    assert fix_storage_url("https://s/x/a#b.png") == "https://s/x/a%23b.png"
    assert fix_storage_url(None) == ""
