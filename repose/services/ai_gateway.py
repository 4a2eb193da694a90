"""
AI gateway client for repose generation.

Chat-completions style endpoint: one user message carrying the prompt plus the
source photo and the clay pose as image URLs. The generated image comes back
base64-encoded in choices[0].message.images[0].image_url.url.

Errors are typed so callers can decide what to do with the row:
  - RateLimited / TruncatedResponse → requeue, try again later
  - everything else                 → mark failed
"""

import base64
import binascii
import logging
import re
import time
from dataclasses import dataclass
from typing import Any, Optional

import httpx

from ..core.config import get_settings

logger = logging.getLogger(__name__)

# ── Reusable client (connection pool) ────────────────────────────────

_client: Optional[httpx.AsyncClient] = None


def _get_client() -> httpx.AsyncClient:
    global _client
    if _client is None or _client.is_closed:
        settings = get_settings()
        _client = httpx.AsyncClient(
            # 4K renders can take minutes; reads dominate
            timeout=httpx.Timeout(connect=10, read=settings.ai_timeout_seconds, write=30, pool=10),
            limits=httpx.Limits(max_connections=20, max_keepalive_connections=10),
        )
    return _client


async def close_client():
    """Close the shared HTTP client. Call on app shutdown."""
    global _client
    if _client and not _client.is_closed:
        await _client.aclose()
        _client = None


# ── Errors ───────────────────────────────────────────────────────────

class GatewayError(Exception):
    """Generation failed. `status` is the HTTP status when there was one."""

    retry_later = False

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class RateLimited(GatewayError):
    retry_later = True


class TruncatedResponse(GatewayError):
    retry_later = True


class GatewayTimeout(GatewayError):
    pass


class NoImageReturned(GatewayError):
    pass


class InvalidImageFormat(GatewayError):
    pass


# ── Request / response ───────────────────────────────────────────────

REPOSE_PROMPT = """Use the provided greyscale reference image as a strict pose, camera, and framing template.

**OUTPUT FORMAT: Generate a 3:4 portrait aspect ratio image (768x1024 pixels).**

Repose the subject in the input photo to exactly match the reference in:
- body pose and limb positioning
- head tilt and shoulder angle
- weight distribution and stance
- camera height, focal distance, and perspective
- image crop and framing

The output must be a 3:4 portrait aspect ratio image matching the reference pose exactly.

If the reference image does not show the full body, do not include the full body in the output.

Do not zoom out, extend the frame, or reveal additional body parts beyond what is visible in the reference.

Do not alter the subject's identity, facial features, hairstyle, body proportions, clothing, colours, logos, fabric textures, or materials.

Do not stylise or reinterpret the image.

The final image should look like the original photo, naturally repositioned in 3:4 portrait format and cropped identically to the reference image."""

_DATA_URL = re.compile(r"^data:image/(\w+);base64,(.+)$", re.DOTALL)
_RATE_LIMIT_MARKERS = ("resource_exhausted", "429", "rate")


@dataclass
class GeneratedImage:
    data: bytes
    format: str  # png, jpeg, webp ...

    @property
    def extension(self) -> str:
        return "jpg" if self.format == "jpeg" else self.format


def is_high_resolution(image_size: Optional[str]) -> bool:
    return bool(image_size) and image_size != "1K"


def build_repose_request(
    source_url: str,
    pose_url: str,
    model: str,
    image_size: Optional[str] = None,
) -> dict[str, Any]:
    body: dict[str, Any] = {
        "model": model,
        "messages": [
            {
                "role": "user",
                "content": [
                    {"type": "text", "text": REPOSE_PROMPT},
                    {"type": "text", "text": "INPUT PHOTO (subject to repose):"},
                    {"type": "image_url", "image_url": {"url": source_url}},
                    {"type": "text", "text": "GREYSCALE REFERENCE (pose, camera, and framing template):"},
                    {"type": "image_url", "image_url": {"url": pose_url}},
                ],
            }
        ],
        "modalities": ["image", "text"],
    }
    # JPEG keeps 2K/4K responses small enough to not get truncated
    if is_high_resolution(image_size):
        body["image_config"] = {
            "aspect_ratio": "3:4",
            "image_size": image_size,
            "output_format": "jpeg",
            "output_quality": 95,
        }
    return body


def parse_image_response(payload: dict) -> GeneratedImage:
    """Pull the generated image out of a chat-completions payload."""
    choice = (payload.get("choices") or [{}])[0]

    embedded = choice.get("error")
    if embedded:
        code = str(embedded.get("code") or "unknown")
        message = str(embedded.get("message") or "")
        text = f"{code} {message}".lower()
        if any(marker in text for marker in _RATE_LIMIT_MARKERS):
            raise RateLimited("Rate limited - will retry")
        raise GatewayError(f"AI error: {code}")

    images = (choice.get("message") or {}).get("images") or []
    url = ((images[0] if images else {}).get("image_url") or {}).get("url")
    if not url:
        raise NoImageReturned("No image in AI response")

    match = _DATA_URL.match(url)
    if not match:
        raise InvalidImageFormat("Invalid image format from AI")

    fmt, encoded = match.groups()
    try:
        data = base64.b64decode(encoded)
    except (binascii.Error, ValueError):
        raise InvalidImageFormat("Image payload is not valid base64")
    return GeneratedImage(data=data, format=fmt.lower())


async def generate_repose_image(
    source_url: str,
    pose_url: str,
    model: Optional[str] = None,
    image_size: Optional[str] = None,
    client: Optional[httpx.AsyncClient] = None,
) -> GeneratedImage:
    """One gateway call. No retries here: the row status is the retry mechanism."""
    settings = get_settings()
    if not settings.ai_gateway_api_key:
        raise GatewayError("AI_GATEWAY_API_KEY is not configured")

    body = build_repose_request(
        fix_storage_url(source_url),
        fix_storage_url(pose_url),
        model or settings.default_repose_model,
        image_size,
    )
    headers = {
        "Authorization": f"Bearer {settings.ai_gateway_api_key}",
        "Content-Type": "application/json",
    }

    client = client or _get_client()
    start = time.monotonic()
    try:
        resp = await client.post(settings.ai_gateway_url, json=body, headers=headers)
    except httpx.TimeoutException:
        raise GatewayTimeout(f"Timeout after {int(time.monotonic() - start)}s")
    except httpx.HTTPError as e:
        raise GatewayError(f"Network error: {e}")

    elapsed = time.monotonic() - start
    logger.info("AI gateway responded in %.0fs with %d (size=%s)", elapsed, resp.status_code, image_size or "1K")

    if resp.status_code == 429:
        raise RateLimited("Rate limited - will retry", status=429)
    if resp.status_code >= 400:
        logger.error("AI gateway error %d: %s", resp.status_code, resp.text[:500])
        raise GatewayError(f"AI error {resp.status_code}: {resp.text[:200]}", status=resp.status_code)

    try:
        payload = resp.json()
    except ValueError:
        raise TruncatedResponse("Truncated AI response - will retry")

    image = parse_image_response(payload)
    if is_high_resolution(image_size) and image.format != "jpeg":
        logger.warning("Requested JPEG at %s but gateway returned %s", image_size, image.format)
    logger.info("Generated image decoded: %d KB (%s)", len(image.data) // 1024, image.format)
    return image


def fix_storage_url(url: Optional[str]) -> str:
    """Undo double-encoding in the filename part of a storage URL."""
    if not url:
        return ""
    base, sep, filename = url.rpartition("/")
    if not sep:
        return url
    filename = (
        filename.replace("%2520", "%20")
        .replace("%252F", "%2F")
        .replace("%2523", "%23")
        .replace("#", "%23")
    )
    return f"{base}/{filename}"
