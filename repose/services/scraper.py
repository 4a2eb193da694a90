"""
Brand site scraper. Firecrawl does the crawling (map + scrape); product URL
detection and gallery image extraction happen here.

Flow for scrape_brand():
  1. map the site root → every known URL
  2. keep URLs that look like product pages, balance men/women
  3. scrape each product page's HTML, pull up to 4 gallery images (slots A-D)
"""

import asyncio
import json
import logging
import re
from typing import Awaitable, Callable, Optional
from urllib.parse import urlparse

import httpx

from ..core.config import get_settings
from ..core.database import session_scope
from ..core.errors import FeatureDisabled
from ..core.flags import get_flags
from ..models.catalog import Product, ProductImage
from ..models.pipeline import JobStatus, JobType
from . import pipeline_jobs
from .shot_types import slot_to_shot_type

logger = logging.getLogger(__name__)

PRODUCT_SLOTS = ("A", "B", "C", "D")
MAX_GALLERY_IMAGES = 10
MIN_SRCSET_WIDTH = 500


class ScrapeError(Exception):
    pass


# ── Firecrawl ────────────────────────────────────────────────────────

def _firecrawl_headers() -> dict:
    settings = get_settings()
    if not get_flags().use_firecrawl:
        raise FeatureDisabled("Scraping is disabled (FF_USE_FIRECRAWL=false)")
    if not settings.firecrawl_api_key:
        raise ScrapeError("FIRECRAWL_API_KEY not set")
    return {
        "Authorization": f"Bearer {settings.firecrawl_api_key}",
        "Content-Type": "application/json",
    }


async def _post(client: httpx.AsyncClient, endpoint: str, body: dict) -> dict:
    settings = get_settings()
    url = f"{settings.firecrawl_base_url.rstrip('/')}/{endpoint}"
    try:
        resp = await client.post(url, json=body, headers=_firecrawl_headers())
        data = resp.json()
    except httpx.HTTPError as e:
        raise ScrapeError(f"Firecrawl {endpoint} request failed: {e}")
    except ValueError:
        raise ScrapeError(f"Firecrawl {endpoint} returned invalid JSON")

    if resp.status_code >= 400 or not data.get("success"):
        raise ScrapeError(f"Firecrawl {endpoint} failed ({resp.status_code}): {data.get('error', 'unknown')}")
    return data


async def map_site(url: str, client: httpx.AsyncClient, limit: int = 10000) -> list[str]:
    data = await _post(client, "map", {"url": url, "limit": limit, "includeSubdomains": False})
    return list(data.get("links") or [])


async def scrape_page(url: str, client: httpx.AsyncClient) -> str:
    data = await _post(client, "scrape", {
        "url": url,
        "formats": ["html"],
        "onlyMainContent": False,
        "waitFor": 3000,
    })
    return (data.get("data") or {}).get("html") or ""


# ── Product URL detection ────────────────────────────────────────────

_SKU_TAIL = re.compile(r"[a-z]{2}\d[a-z]{2}\d+[a-z0-9]*$", re.I)
_PRODUCT_PATH = re.compile(r"/(product|item|p)/[^/]+$", re.I)
_SLUG_SKU = re.compile(r"-[a-z]{2}\d[a-z]{2}\d+[a-z0-9]*$", re.I)

_NON_PRODUCT = [re.compile(p, re.I) for p in (
    r"/collections/", r"/category/", r"/c/", r"/search", r"/cart", r"/checkout",
    r"/account", r"/help", r"/faq", r"/about", r"/contact", r"/stores", r"/store/",
    r"/size-guide", r"/terms", r"/privacy", r"/returns", r"/shipping", r"/wishlist",
    r"/login", r"/register", r"\.pdf$", r"\?",
)]

_CATEGORY_SLUG = [re.compile(p, re.I) for p in (
    r"^mens?-", r"^womens?-", r"^kids?-", r"-sale$", r"-new$",
    r"^sale", r"^about", r"^help", r"^contact",
)]

_MEN = re.compile(r"/men[/\-s]|mens-|/homme", re.I)
_WOMEN = re.compile(r"/women[/\-s]|womens-|/femme", re.I)


def filter_product_urls(links: list[str], base_origin: str) -> list[str]:
    """Same-origin URLs that end in a SKU or a product path."""
    matches = []
    for url in links:
        if not url.startswith(base_origin):
            continue
        if not (_SKU_TAIL.search(url) or _PRODUCT_PATH.search(url) or _SLUG_SKU.search(url)):
            continue
        if any(p.search(url) for p in _NON_PRODUCT):
            continue
        matches.append(url)

    if matches:
        return matches

    # No SKU-style URLs: single long hyphenated slug at the root
    fallback = []
    for url in links:
        if not url.startswith(base_origin):
            continue
        parts = [p for p in urlparse(url).path.split("/") if p]
        if len(parts) != 1 or len(parts[0]) <= 20 or "-" not in parts[0]:
            continue
        if any(p.search(parts[0]) for p in _CATEGORY_SLUG):
            continue
        fallback.append(url)
    return fallback


def gender_of(url: str) -> Optional[str]:
    if _MEN.search(url):
        return "men"
    if _WOMEN.search(url):
        return "women"
    return None


def select_product_urls(urls: list[str], start_url: str, limit: int) -> list[str]:
    """Balance men/women; lean towards whichever the start URL points at."""
    men = [u for u in urls if gender_of(u) == "men"]
    women = [u for u in urls if gender_of(u) == "women"]
    other = [u for u in urls if gender_of(u) is None]
    start = start_url.lower()

    if "/men" in start or "mens" in start:
        selected = men[:limit] + other[:max(0, limit - len(men))]
    elif "/women" in start or "womens" in start:
        selected = women[:limit] + other[:max(0, limit - len(women))]
    else:
        half = -(-limit // 2)
        selected = men[:half] + women[:half] + other[:limit]
    return selected[:limit]


def extract_sku(url: str) -> Optional[str]:
    match = re.search(r"[_-]([a-z]{2}\d[a-z]{2}\d+[a-z0-9]*)$", url, re.I)
    if match:
        return match.group(1).upper()
    match = re.search(r"/(?:product|item|p)/([^/]+)$", url, re.I)
    if match:
        return match.group(1).upper()
    last = url.rstrip("/").rsplit("/", 1)[-1]
    if re.fullmatch(r"[A-Z0-9_-]{6,}", last, re.I):
        return last.upper()
    return None


# ── Gallery extraction ───────────────────────────────────────────────

_EXCLUDED_IMAGE_MARKERS = (
    "icon", "logo", "sprite", "spacer", "pixel", "tracking",
    "badge", "rating", "star", "flag", "payment", "social",
    "facebook", "twitter", "instagram", "pinterest",
    ".svg", ".gif", "placeholder", "1x1", "blank",
    "thumbnail", "thumb", "_xs", "_xxs", "_tiny", "mini",
    "_50", "_100", "_150", "w_50", "w_100", "h_50", "h_100",
)

_SCENE7 = re.compile(r"https?://[^\"'\s]+scene7[^\"'\s]+\.(?:jpg|jpeg|png|webp)", re.I)
_DATA_ATTR = re.compile(
    r"data-(?:zoom|large|full|high|src|lazy|main|image)(?:-image|-src)?=[\"']([^\"']+)[\"']", re.I
)
_JSON_LD = re.compile(r"<script[^>]+type=[\"']application/ld\+json[\"'][^>]*>(.*?)</script>", re.I | re.S)
_SRCSET = re.compile(r"srcset=[\"']([^\"']+)[\"']", re.I)
_IMG = re.compile(r"<img[^>]+src=[\"']([^\"']+)[\"'][^>]*>", re.I)
_PRODUCT_CLASS = re.compile(r"class=[\"'][^\"']*(product|gallery|pdp|hero|main|carousel|slider)[^\"']*[\"']", re.I)


def is_excluded_image(url: str) -> bool:
    lower = url.lower()
    return any(marker in lower for marker in _EXCLUDED_IMAGE_MARKERS)


def normalize_image_url(src: str, base_origin: str) -> Optional[str]:
    if not src or src.startswith("data:"):
        return None
    url = src.strip()
    if url.startswith("//"):
        return "https:" + url
    if url.startswith("/"):
        return base_origin + url
    if not url.startswith("http"):
        return f"{base_origin}/{url}"
    return url


def _largest_srcset_candidate(srcset: str) -> Optional[str]:
    best, best_width = None, 0
    for candidate in srcset.split(","):
        parts = candidate.strip().split()
        if len(parts) < 2:
            continue
        match = re.match(r"(\d+)w", parts[1])
        width = int(match.group(1)) if match else 0
        if width > best_width and width >= MIN_SRCSET_WIDTH:
            best, best_width = parts[0], width
    return best


def _json_ld_images(raw: str) -> list[str]:
    try:
        data = json.loads(raw)
    except ValueError:
        return []
    found = []
    for node in data if isinstance(data, list) else [data]:
        if not isinstance(node, dict) or not node.get("image"):
            continue
        images = node["image"] if isinstance(node["image"], list) else [node["image"]]
        for img in images:
            src = img if isinstance(img, str) else (img or {}).get("url") or (img or {}).get("contentUrl")
            if src:
                found.append(src)
    return found


def extract_gallery_images(html: str, page_url: str) -> list[str]:
    """
    Product gallery image URLs from a product page, best candidates first.

    Sources in priority order: Scene7 URLs, data-* image attributes, JSON-LD
    (moved to the front), srcset (largest candidate ≥ 500w), then <img> tags
    with a product/gallery class.
    """
    parsed = urlparse(page_url)
    base_origin = f"{parsed.scheme}://{parsed.netloc}" if parsed.netloc else ""
    images: list[str] = []
    seen: set[str] = set()

    def _add(src: Optional[str], front: bool = False):
        if not src or src in seen or is_excluded_image(src):
            return
        seen.add(src)
        if front:
            images.insert(0, src)
        else:
            images.append(src)

    for match in _SCENE7.finditer(html):
        _add(match.group(0).split("?")[0])

    for match in _DATA_ATTR.finditer(html):
        _add(normalize_image_url(match.group(1), base_origin))

    for match in _JSON_LD.finditer(html):
        for src in _json_ld_images(match.group(1)):
            _add(normalize_image_url(src, base_origin), front=True)

    for match in _SRCSET.finditer(html):
        largest = _largest_srcset_candidate(match.group(1))
        if largest:
            _add(normalize_image_url(largest, base_origin))

    for match in _IMG.finditer(html):
        if _PRODUCT_CLASS.search(match.group(0)):
            _add(normalize_image_url(match.group(1), base_origin))

    return images[:MAX_GALLERY_IMAGES]


# ── Brand scrape job ─────────────────────────────────────────────────

async def start_brand_scrape(db, brand_id: str, start_url: str, created_by: Optional[str] = None) -> str:
    """Open the tracking job. The scrape itself runs in the background."""
    job = await pipeline_jobs.create_job(
        db,
        job_type=JobType.SCRAPE_BRAND.value,
        title=f"Scrape {urlparse(start_url).netloc or start_url}",
        total=0,
        origin_route=f"/brands/{brand_id}",
        origin_context={"brand_id": brand_id, "start_url": start_url},
        supports_restart=True,
        created_by=created_by,
    )
    return job.id


async def scrape_brand(
    brand_id: str,
    start_url: str,
    job_id: str,
    max_products: int = 10,
    *,
    session_factory=None,
    client: Optional[httpx.AsyncClient] = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    delay: float = 0.5,
) -> int:
    """Returns the number of products stored. Failure marks the job FAILED."""
    owns_client = client is None
    client = client or httpx.AsyncClient(timeout=httpx.Timeout(90.0, connect=10.0))

    async def log(message: str, level: str = "info"):
        async with session_scope(session_factory) as db:
            await pipeline_jobs.add_event(db, job_id, message, level=level)

    try:
        parsed = urlparse(start_url)
        base_origin = f"{parsed.scheme}://{parsed.netloc}"

        await log("Starting site mapping...")
        links = await map_site(base_origin, client)
        await log(f"Found {len(links)} total URLs on site")

        candidates = filter_product_urls(links, base_origin)
        selected = select_product_urls(candidates, start_url, max_products)
        await log(f"Selected {len(selected)} of {len(candidates)} product URLs")

        async with session_scope(session_factory) as db:
            job = await pipeline_jobs.get_job(db, job_id)
            job.progress_total = len(selected)

        stored = 0
        for index, product_url in enumerate(selected):
            try:
                html = await scrape_page(product_url, client)
            except ScrapeError as e:
                await log(f"Failed to scrape {product_url}: {e}", level="warn")
                async with session_scope(session_factory) as db:
                    await pipeline_jobs.update_progress(db, job_id, failed_delta=1)
                continue

            image_urls = extract_gallery_images(html, product_url)
            async with session_scope(session_factory) as db:
                product = Product(brand_id=brand_id, sku=extract_sku(product_url), product_url=product_url)
                db.add(product)
                await db.flush()
                for slot, url in zip(PRODUCT_SLOTS, image_urls):
                    db.add(ProductImage(
                        product_id=product.id, slot=slot, shot_type=slot_to_shot_type(slot).value,
                        source_url=url, stored_url=url,
                    ))
                await pipeline_jobs.update_progress(
                    db, job_id, done_delta=1, message=f"{index + 1}/{len(selected)} products"
                )
            stored += 1
            await log(f"[{index + 1}/{len(selected)}] {product_url}: {len(image_urls)} images")

            if index < len(selected) - 1:
                await sleep(delay)

        async with session_scope(session_factory) as db:
            await pipeline_jobs.set_status(db, job_id, JobStatus.COMPLETED, f"{stored} products scraped")
        logger.info("Brand %s scrape complete: %d products", brand_id, stored)
        return stored

    except Exception as e:
        logger.error("Brand %s scrape failed: %s", brand_id, e)
        async with session_scope(session_factory) as db:
            await pipeline_jobs.add_event(db, job_id, f"Scrape failed: {e}", level="error")
            await pipeline_jobs.set_status(db, job_id, JobStatus.FAILED, str(e))
        return 0
    finally:
        if owns_client:
            await client.aclose()
