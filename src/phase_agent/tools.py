# tools.py
# Tool executors and the registry builder.
#
# Every executor takes a parameter dict and returns a result dict. None of
# them raise: any fault is folded into {"success": False, "error": ...} so a
# single broken tool never aborts the execute phase.

import asyncio
import logging
import random
from datetime import datetime
from typing import Any, Awaitable, Callable
from urllib.parse import quote, quote_plus, urlparse

import httpx

from phase_agent.config import settings
from phase_agent.models import Tool, ToolParameter
from phase_agent.registry import ToolRegistry

logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[None]]

SCREENSHOT = "screenshot"
WEB_SEARCH = "web_search"
URL_AUTOMATION = "url_automation"
MULTI_SCREENSHOT = "multi_screenshot"
PAGE_ANALYZER = "page_analyzer"

SCREENSHOT_SERVICE = "https://s.wordpress.com/mshots/v1/"
WIKIPEDIA_SEARCH_URL = "https://en.wikipedia.org/w/rest.php/v1/search/page"
WIKIPEDIA_ARTICLE_URL = "https://en.wikipedia.org/wiki/"
DUCKDUCKGO_URL = "https://api.duckduckgo.com/"

SEARCH_SOURCES = ("wikipedia", "duckduckgo", "both")


class ToolParameterError(ValueError):
    """Raised inside an executor when a required parameter is missing or malformed."""


def _require_str(args: dict[str, Any], key: str) -> str:
    value = args.get(key)
    if not isinstance(value, str) or not value.strip():
        raise ToolParameterError(f"missing required parameter: {key}")
    return value.strip()


def _int(args: dict[str, Any], key: str, default: int) -> int:
    value = args.get(key, default)
    if value is None:
        return default
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ToolParameterError(f"parameter {key} must be an integer, got {value!r}") from exc


def _bool(args: dict[str, Any], key: str, default: bool) -> bool:
    value = args.get(key, default)
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes")
    return bool(value)


def _now() -> str:
    return datetime.now().isoformat()


# ---------------------------------------------------------------------------
# Summary helpers (pure)
# ---------------------------------------------------------------------------


def analyze_price_ranges(price_ranges: list[dict[str, int]]) -> dict[str, int]:
    """Aggregate per-page {min, max} price ranges."""
    if not price_ranges:
        return {}
    mins = [int(r["min"]) for r in price_ranges]
    maxs = [int(r["max"]) for r in price_ranges]
    return {
        "overall_min": min(mins),
        "overall_max": max(maxs),
        "average_min": sum(mins) // len(mins),
        "average_max": sum(maxs) // len(maxs),
    }


def recommendation(page_count: int) -> str:
    if page_count >= 3:
        return (
            f"Based on analysis of {page_count} pages, I recommend comparing products "
            "from the first 2-3 pages for the best deals and variety."
        )
    return "Consider browsing more pages for a comprehensive comparison."


def automation_summary(pages: list[dict[str, Any]]) -> dict[str, Any]:
    """Roll per-page analysis outputs up into product, brand and price totals."""
    if not pages:
        return {"message": "No results processed"}

    total_products = 0
    brands: list[str] = []
    price_ranges: list[dict[str, int]] = []

    for page in pages:
        analysis = (page.get("analysis") or {}).get("analysis")
        if not analysis:
            continue
        total_products += int(analysis.get("products_found", 0))
        for brand in analysis.get("top_brands", []):
            if brand not in brands:
                brands.append(brand)
        if analysis.get("price_range"):
            price_ranges.append(analysis["price_range"])

    return {
        "total_pages_analyzed": len(pages),
        "total_products_found": total_products,
        "unique_brands": brands,
        "price_analysis": analyze_price_ranges(price_ranges),
        "recommendation": recommendation(len(pages)),
    }


def _normalize_base_url(base_url: str) -> str:
    if "://" not in base_url:
        return f"https://{base_url}"
    return base_url


def generate_site_urls(base_url: str, search_query: str, page_count: int) -> list[str]:
    """Candidate result-page URLs for a site and query."""
    base_url = _normalize_base_url(base_url)
    domain = urlparse(base_url).hostname or ""
    pages = range(1, page_count + 1)

    if "flipkart" in domain:
        q = quote(search_query, safe="")
        return [f"https://www.flipkart.com/search?q={q}&page={i}" for i in pages]
    if "amazon" in domain:
        q = quote(search_query, safe="")
        return [f"https://www.amazon.in/s?k={q}&page={i}" for i in pages]
    q = quote_plus(search_query)
    return [f"{base_url}?search={q}&page={i}" for i in pages]


# ---------------------------------------------------------------------------
# Executors
# ---------------------------------------------------------------------------


class WebTools:
    """
    Executor implementations bound to one HTTP client.

    ``sleep`` and ``rng`` are injectable so delays and the simulated page
    analysis stay controllable.
    """

    def __init__(
        self,
        http: httpx.AsyncClient,
        *,
        sleep: Sleep = asyncio.sleep,
        rng: random.Random | None = None,
        probe_timeout: float = settings.probe_timeout_seconds,
        screenshot_attempts: int = settings.screenshot_max_attempts,
        screenshot_retry_delay: float = settings.screenshot_retry_delay,
        multi_screenshot_delay: float = settings.multi_screenshot_delay,
    ) -> None:
        self._http = http
        self._sleep = sleep
        self._rng = rng or random.Random()
        self._probe_timeout = probe_timeout
        self._screenshot_attempts = screenshot_attempts
        self._screenshot_retry_delay = screenshot_retry_delay
        self._multi_delay = multi_screenshot_delay

    # -- screenshot --------------------------------------------------------

    async def screenshot(self, args: dict[str, Any]) -> dict[str, Any]:
        try:
            url = _require_str(args, "url")
            width = _int(args, "width", 1200)
            height = _int(args, "height", 800)

            screenshot_url = f"{SCREENSHOT_SERVICE}{quote(url, safe='')}?w={width}&h={height}"

            try:
                probe = await self._http.head(screenshot_url, timeout=self._probe_timeout)
                available = probe.status_code == 200
            except httpx.HTTPError as exc:
                logger.info("Screenshot service probe failed for %s: %s", url, exc)
                available = False

            return {
                "success": True,
                "screenshot_url": screenshot_url,
                "original_url": url,
                "dimensions": {"width": width, "height": height},
                "service_available": available,
                "message": (
                    "Screenshot captured successfully using WordPress preview service"
                    if available
                    else "WordPress preview service is generating screenshot - may take a few moments"
                ),
                "manual_url": url,
                "service_name": "WordPress Preview",
            }
        except Exception as exc:
            return {
                "success": False,
                "error": str(exc),
                "fallback_message": f"Screenshot failed, but you can manually visit: {args.get('url')}",
            }

    async def screenshot_with_retry(self, args: dict[str, Any]) -> dict[str, Any]:
        """Screenshot, retried while unsuccessful. Delay doubles between attempts."""
        result: dict[str, Any] = {}
        for attempt in range(1, self._screenshot_attempts + 1):
            result = await self.screenshot(args)
            if result.get("success"):
                return result
            if attempt < self._screenshot_attempts:
                await self._sleep(self._screenshot_retry_delay * 2 ** (attempt - 1))
        return {
            "success": False,
            "error": result.get("error", "Max retries exceeded"),
            "retries_attempted": self._screenshot_attempts,
        }

    # -- search ------------------------------------------------------------

    async def _search_wikipedia(self, query: str, limit: int) -> list[dict[str, Any]]:
        response = await self._http.get(WIKIPEDIA_SEARCH_URL, params={"q": query, "limit": limit})
        response.raise_for_status()
        pages = response.json().get("pages") or []
        return [
            {
                "title": page.get("title", ""),
                "description": page.get("description") or page.get("excerpt") or "",
                "url": f"{WIKIPEDIA_ARTICLE_URL}{page.get('key', '')}",
                "source": "wikipedia",
            }
            for page in pages[:limit]
        ]

    async def _search_duckduckgo(self, query: str, limit: int) -> list[dict[str, Any]]:
        response = await self._http.get(
            DUCKDUCKGO_URL,
            params={"q": query, "format": "json", "no_html": 1, "skip_disambig": 1},
        )
        response.raise_for_status()
        data = response.json()

        results: list[dict[str, Any]] = []
        if data.get("Abstract"):
            results.append(
                {
                    "title": data.get("Heading") or "DuckDuckGo Result",
                    "description": data["Abstract"],
                    "url": data.get("AbstractURL", ""),
                    "source": "duckduckgo",
                }
            )
        for topic in data.get("RelatedTopics") or []:
            if len(results) >= limit:
                break
            if not topic.get("Text"):
                continue
            first_url = topic.get("FirstURL") or ""
            title = first_url.rstrip("/").split("/")[-1].replace("_", " ") if first_url else ""
            results.append(
                {
                    "title": title or "Related Topic",
                    "description": topic["Text"],
                    "url": first_url,
                    "source": "duckduckgo",
                }
            )
        return results

    async def web_search(self, args: dict[str, Any]) -> dict[str, Any]:
        try:
            query = _require_str(args, "query")
            source = (args.get("source") or "both").lower()
            limit = _int(args, "limit", 5)
            if limit < 1:
                raise ToolParameterError(f"limit must be at least 1, got {limit}")
            if source not in SEARCH_SOURCES:
                raise ToolParameterError(f"unknown search source: {source}")

            results: list[dict[str, Any]] = []

            if source in ("wikipedia", "both"):
                try:
                    results.extend(await self._search_wikipedia(query, limit))
                except Exception as exc:
                    logger.warning("Wikipedia search failed: %s", exc)

            if source in ("duckduckgo", "both"):
                try:
                    results.extend(await self._search_duckduckgo(query, limit))
                except Exception as exc:
                    logger.warning("DuckDuckGo search failed: %s", exc)

            return {
                "success": True,
                "query": query,
                "results": results[:limit],
                "total_results": len(results),
            }
        except Exception as exc:
            return {"success": False, "error": str(exc)}

    # -- page analysis -----------------------------------------------------

    def _analyze_flipkart(self) -> dict[str, Any]:
        return {
            "site": "Flipkart",
            "products_found": self._rng.randint(5, 24),
            "price_range": {
                "min": 15000 + self._rng.randrange(10000),
                "max": 50000 + self._rng.randrange(30000),
            },
            "categories": ["Laptops", "Gaming Laptops", "Business Laptops"],
            "filters_available": ["Brand", "Price", "RAM", "Storage", "Screen Size"],
            "top_brands": ["HP", "Dell", "Lenovo", "Asus", "Acer"],
        }

    def _analyze_amazon(self) -> dict[str, Any]:
        return {
            "site": "Amazon",
            "products_found": self._rng.randint(8, 32),
            "price_range": {
                "min": 18000 + self._rng.randrange(12000),
                "max": 55000 + self._rng.randrange(35000),
            },
            "categories": ["Laptops", "Gaming", "Ultrabooks"],
            "filters_available": ["Brand", "Price", "Customer Reviews", "Prime Eligible"],
            "top_brands": ["HP", "Dell", "Lenovo", "Apple", "Asus"],
        }

    def _analyze_generic(self) -> dict[str, Any]:
        return {
            "site": "Generic",
            "products_found": self._rng.randint(3, 17),
            "content_type": "product_listing",
            "page_analysis": "Basic product page detected",
        }

    async def page_analyzer(self, args: dict[str, Any]) -> dict[str, Any]:
        # Simulated extraction; nothing is scraped.
        try:
            url = _require_str(args, "url")
            analysis: dict[str, Any] = {
                "url": url,
                "analysis_type": args.get("analysis_type") or "product_details",
                "extract_images": _bool(args, "extract_images", True),
                "extract_specs": _bool(args, "extract_specs", True),
                "timestamp": _now(),
            }

            domain = (urlparse(_normalize_base_url(url)).hostname or "").lower()
            if "flipkart" in domain:
                analysis.update(self._analyze_flipkart())
            elif "amazon" in domain:
                analysis.update(self._analyze_amazon())
            else:
                analysis.update(self._analyze_generic())

            return {"success": True, "analysis": analysis}
        except Exception as exc:
            return {"success": False, "error": str(exc)}

    # -- multi screenshot --------------------------------------------------

    async def multi_screenshot(self, args: dict[str, Any]) -> dict[str, Any]:
        try:
            urls = args.get("urls")
            if isinstance(urls, str):
                urls = [urls]
            if not urls:
                raise ToolParameterError("missing required parameter: urls")
            width = _int(args, "width", 1200)
            height = _int(args, "height", 800)
            scroll_before_capture = _bool(args, "scroll_before_capture", True)
            capture_full_page = _bool(args, "capture_full_page", False)

            screenshots: list[dict[str, Any]] = []
            for index, url in enumerate(urls):
                if index:
                    await self._sleep(self._multi_delay)
                shot = await self.screenshot(
                    {"url": url, "width": width, "height": 1200 if capture_full_page else height}
                )
                screenshots.append(
                    {"index": index, "url": url, "screenshot": shot, "timestamp": _now()}
                )

            return {
                "success": True,
                "total_screenshots": len(screenshots),
                "screenshots": screenshots,
                "settings": {
                    "width": width,
                    "height": height,
                    "scroll_before_capture": scroll_before_capture,
                    "capture_full_page": capture_full_page,
                },
            }
        except Exception as exc:
            return {"success": False, "error": str(exc)}

    # -- url automation ----------------------------------------------------

    async def is_url_valid(self, url: str) -> bool:
        """http(s) scheme and a HEAD answer below 400 within the probe timeout."""
        if urlparse(url).scheme not in ("http", "https"):
            return False
        try:
            response = await self._http.head(url, timeout=self._probe_timeout)
        except httpx.HTTPError as exc:
            logger.info("URL probe failed for %s: %s", url, exc)
            return False
        return response.status_code < 400

    async def url_automation(self, args: dict[str, Any]) -> dict[str, Any]:
        try:
            base_url = _require_str(args, "base_url")
            search_query = _require_str(args, "search_query")
            pages_to_browse = _int(args, "pages_to_browse", 5)
            action_type = args.get("action_type") or "search_and_browse"
            wait_time = _int(args, "wait_time", 2)

            candidates = generate_site_urls(base_url, search_query, pages_to_browse)
            valid_urls = [url for url in candidates if await self.is_url_valid(url)]

            if not valid_urls:
                return {
                    "success": False,
                    "error": "No valid URLs found to process",
                    "attempted_urls": candidates,
                }

            pages: list[dict[str, Any]] = []
            for index, url in enumerate(valid_urls):
                try:
                    shot = await self.screenshot_with_retry({"url": url, "width": 1200, "height": 800})
                    analysis = await self.page_analyzer(
                        {
                            "url": url,
                            "analysis_type": "product_details",
                            "extract_images": True,
                            "extract_specs": True,
                        }
                    )
                    pages.append(
                        {
                            "page_number": index + 1,
                            "url": url,
                            "screenshot": shot,
                            "analysis": analysis,
                            "timestamp": _now(),
                            "processing_status": "success",
                        }
                    )
                except Exception as exc:
                    logger.warning("Automation failed on %s: %s", url, exc)
                    pages.append(
                        {
                            "page_number": index + 1,
                            "url": url,
                            "error": str(exc),
                            "timestamp": _now(),
                            "processing_status": "failed",
                        }
                    )

                if index < len(valid_urls) - 1:
                    await self._sleep(wait_time)

            succeeded = sum(1 for page in pages if page["processing_status"] == "success")
            return {
                "success": True,
                "action_type": action_type,
                "base_url": base_url,
                "search_query": search_query,
                "pages_processed": len(pages),
                "successful_pages": succeeded,
                "failed_pages": len(pages) - succeeded,
                "results": pages,
                "summary": automation_summary(pages),
                "performance_metrics": {
                    "total_time": len(pages) * wait_time,
                    "success_rate": f"{succeeded / len(pages) * 100:.1f}",
                },
            }
        except Exception as exc:
            return {
                "success": False,
                "error": str(exc),
                "message": "Automation failed. Please check the base URL and try again.",
            }


# ---------------------------------------------------------------------------
# Registry wiring
# ---------------------------------------------------------------------------


def build_registry(web: WebTools) -> ToolRegistry:
    """Register the fixed tool set. Called once at startup."""
    registry = ToolRegistry()

    registry.register(
        Tool(
            name=SCREENSHOT,
            description="Takes a screenshot of a webpage using WordPress preview feature",
            parameters={
                "url": ToolParameter(type="string", description="The URL to take screenshot of"),
                "width": ToolParameter(type="integer", description="Screenshot width (default: 1200)", default=1200),
                "height": ToolParameter(type="integer", description="Screenshot height (default: 800)", default=800),
            },
            executor=web.screenshot,
        )
    )
    registry.register(
        Tool(
            name=WEB_SEARCH,
            description="Searches the web using Wikipedia and DuckDuckGo",
            parameters={
                "query": ToolParameter(type="string", description="The search query"),
                "source": ToolParameter(
                    type="string", description="Search source: wikipedia, duckduckgo, or both", default="both"
                ),
                "limit": ToolParameter(type="integer", description="Number of results to return (default: 5)", default=5),
            },
            executor=web.web_search,
        )
    )
    registry.register(
        Tool(
            name=URL_AUTOMATION,
            description="Advanced URL automation for browsing multiple pages, scrolling, and taking screenshots",
            parameters={
                "base_url": ToolParameter(
                    type="string", description="The base URL to start automation (e.g., flipkart.com, amazon.com)"
                ),
                "search_query": ToolParameter(
                    type="string", description='Search query for the website (e.g., "laptop under 30k")'
                ),
                "pages_to_browse": ToolParameter(
                    type="integer", description="Number of pages to browse and screenshot", default=5
                ),
                "action_type": ToolParameter(
                    type="string",
                    description="Type of automation: search_and_browse, scroll_pages, compare_products",
                    default="search_and_browse",
                ),
                "scroll_amount": ToolParameter(
                    type="integer", description="Amount to scroll per page (pixels)", default=1000
                ),
                "wait_time": ToolParameter(
                    type="integer", description="Wait time between actions (seconds)", default=2
                ),
            },
            executor=web.url_automation,
        )
    )
    registry.register(
        Tool(
            name=MULTI_SCREENSHOT,
            description="Takes multiple screenshots across different pages for comparison and analysis",
            parameters={
                "urls": ToolParameter(type="array", description="List of URLs to screenshot"),
                "width": ToolParameter(type="integer", description="Screenshot width", default=1200),
                "height": ToolParameter(type="integer", description="Screenshot height", default=800),
                "scroll_before_capture": ToolParameter(
                    type="boolean", description="Scroll page before capturing", default=True
                ),
                "capture_full_page": ToolParameter(
                    type="boolean", description="Capture full page height", default=False
                ),
            },
            executor=web.multi_screenshot,
        )
    )
    registry.register(
        Tool(
            name=PAGE_ANALYZER,
            description="Analyzes web pages to extract product information, prices, and specifications",
            parameters={
                "url": ToolParameter(type="string", description="URL of the page to analyze"),
                "analysis_type": ToolParameter(
                    type="string",
                    description="Type of analysis: product_details, price_comparison, reviews",
                    default="product_details",
                ),
                "extract_images": ToolParameter(type="boolean", description="Extract product images", default=True),
                "extract_specs": ToolParameter(
                    type="boolean", description="Extract product specifications", default=True
                ),
            },
            executor=web.page_analyzer,
        )
    )

    return registry
