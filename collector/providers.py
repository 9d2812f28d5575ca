"""
DataForSEO-style provider client: live SERP rankings, search volume and
task-based business listings. Calls go through a shared RateLimiter and run
in a worker thread so the event loop is never blocked on HTTP.
"""
import asyncio
import logging
import os
from typing import Any, Dict, List, Optional

import requests
from pydantic import BaseModel

from core.errors import ProviderError
from core.rate_limiter import RateLimiter

logger = logging.getLogger(__name__)

DATAFORSEO_BASE_URL = os.environ.get("DATAFORSEO_BASE_URL", "https://api.dataforseo.com")
DATAFORSEO_LOGIN = os.environ.get("DATAFORSEO_LOGIN", "")
DATAFORSEO_PASSWORD = os.environ.get("DATAFORSEO_PASSWORD", "")
PROVIDER_TIMEOUT = float(os.environ.get("PROVIDER_TIMEOUT", "30"))
PROVIDER_CALLS_PER_SECOND = float(os.environ.get("PROVIDER_CALLS_PER_SECOND", "5"))

# 20000 = Ok, 20100 = Task Created
OK_STATUS_CODES = {20000, 20100}

SERP_LIVE_PATH = "/v3/serp/google/organic/live/advanced"
SEARCH_VOLUME_PATH = "/v3/keywords_data/google_ads/search_volume/live"
BUSINESS_TASK_POST_PATH = "/v3/business_data/google/my_business_info/task_post"
BUSINESS_TASKS_READY_PATH = "/v3/business_data/google/my_business_info/tasks_ready"
BUSINESS_TASK_GET_PATH = "/v3/business_data/google/my_business_info/task_get/{task_id}"


class SerpRanking(BaseModel):
    keyword: str
    position: Optional[int] = None          # None = not in the results
    url: Optional[str] = None
    serp_features: List[str] = []
    local_pack_position: Optional[int] = None
    local_pack_rating: Optional[float] = None
    local_pack_reviews: Optional[int] = None


class KeywordVolume(BaseModel):
    keyword: str
    search_volume: Optional[int] = None
    cpc: Optional[float] = None
    competition_index: Optional[float] = None
    volume_date: Optional[str] = None       # YYYY-MM of the latest monthly figure


class BusinessListing(BaseModel):
    title: Optional[str] = None
    category: Optional[str] = None
    address: Optional[str] = None
    phone: Optional[str] = None
    url: Optional[str] = None
    rating: Optional[float] = None
    reviews_count: Optional[int] = None
    is_claimed: Optional[bool] = None


def normalize_domain(value: Optional[str]) -> str:
    value = (value or "").strip().lower()
    for prefix in ("https://", "http://"):
        if value.startswith(prefix):
            value = value[len(prefix):]
    value = value.split("/")[0]
    return value[4:] if value.startswith("www.") else value


def _first_result(task: Dict[str, Any]) -> Dict[str, Any]:
    results = task.get("result") or []
    return results[0] if results else {}


def parse_serp_ranking(keyword: str, subject: str, result: Dict[str, Any]) -> SerpRanking:
    """Find the subject's organic and local-pack placement in a SERP result."""
    target = normalize_domain(subject)
    ranking = SerpRanking(keyword=keyword)
    features = []

    for item in result.get("items") or []:
        item_type = item.get("type")
        if item_type and item_type != "organic" and item_type not in features:
            features.append(item_type)

        if normalize_domain(item.get("domain")) != target:
            continue

        if item_type == "organic" and ranking.position is None:
            ranking.position = item.get("rank_group")
            ranking.url = item.get("url")
        elif item_type == "local_pack" and ranking.local_pack_position is None:
            rating = item.get("rating") or {}
            ranking.local_pack_position = item.get("rank_group")
            ranking.local_pack_rating = rating.get("value")
            ranking.local_pack_reviews = rating.get("votes_count")

    ranking.serp_features = features
    return ranking


def parse_keyword_volume(item: Dict[str, Any]) -> KeywordVolume:
    monthly = item.get("monthly_searches") or []
    volume_date = None
    if monthly:
        latest = max(monthly, key=lambda m: (m.get("year") or 0, m.get("month") or 0))
        if latest.get("year") and latest.get("month"):
            volume_date = f"{latest['year']:04d}-{latest['month']:02d}"
    return KeywordVolume(
        keyword=item.get("keyword"),
        search_volume=item.get("search_volume"),
        cpc=item.get("cpc"),
        competition_index=item.get("competition_index"),
        volume_date=volume_date,
    )


def parse_business_listing(result: Dict[str, Any]) -> Optional[BusinessListing]:
    items = result.get("items") or []
    if not items:
        return None
    item = items[0]
    rating = item.get("rating") or {}
    return BusinessListing(
        title=item.get("title"),
        category=item.get("category"),
        address=item.get("address"),
        phone=item.get("phone"),
        url=item.get("url"),
        rating=rating.get("value"),
        reviews_count=rating.get("votes_count"),
        is_claimed=item.get("is_claimed"),
    )


class BusinessTask:
    """Handle for a submitted business-listing task, pollable by the task waiter."""

    def __init__(self, client: "DataForSEOClient", task_id: str):
        self.client = client
        self.task_id = task_id

    async def is_ready(self) -> bool:
        return self.task_id in await self.client.business_tasks_ready()

    async def fetch(self) -> Optional[BusinessListing]:
        return await self.client.get_business_listing(self.task_id)


class DataForSEOClient:
    def __init__(self, login: Optional[str] = None, password: Optional[str] = None,
                 base_url: Optional[str] = None, timeout: Optional[float] = None,
                 rate_limiter: Optional[RateLimiter] = None, session: Optional[requests.Session] = None):
        self.login = login if login is not None else DATAFORSEO_LOGIN
        self.password = password if password is not None else DATAFORSEO_PASSWORD
        self.base_url = (base_url or DATAFORSEO_BASE_URL).rstrip("/")
        self.timeout = timeout or PROVIDER_TIMEOUT
        self.rate_limiter = rate_limiter or RateLimiter(calls_per_second=PROVIDER_CALLS_PER_SECOND)
        self.session = session or requests.Session()
        self.api_calls = 0

    def _request(self, method: str, path: str, payload: Optional[list] = None) -> List[Dict[str, Any]]:
        """Blocking call; returns the response's task list or raises ProviderError."""
        if not self.login or not self.password:
            raise ProviderError(
                "DataForSEO credentials not configured. Set DATAFORSEO_LOGIN and DATAFORSEO_PASSWORD.",
                status_code=40100,
            )

        resp = self.session.request(
            method,
            f"{self.base_url}{path}",
            json=payload,
            auth=(self.login, self.password),
            timeout=self.timeout,
        )
        self.api_calls += 1
        if resp.status_code >= 400:
            raise ProviderError(
                f"{method} {path} returned HTTP {resp.status_code}", http_status=resp.status_code
            )

        data = resp.json()
        status_code = data.get("status_code")
        if status_code not in OK_STATUS_CODES:
            raise ProviderError(data.get("status_message") or "Provider request failed", status_code=status_code)

        tasks = data.get("tasks") or []
        for task in tasks:
            if task.get("status_code") not in OK_STATUS_CODES:
                raise ProviderError(
                    task.get("status_message") or "Provider task failed",
                    status_code=task.get("status_code"),
                )
        return tasks

    async def _call(self, method: str, path: str, payload: Optional[list] = None) -> List[Dict[str, Any]]:
        await self.rate_limiter.wait()
        logger.debug(f"[PROVIDER] {method} {path}")
        return await asyncio.to_thread(self._request, method, path, payload)

    async def get_serp_ranking(self, keyword: str, subject: str, location_name: str = "United States",
                               language_code: str = "en", depth: int = 100) -> SerpRanking:
        tasks = await self._call("POST", SERP_LIVE_PATH, [{
            "keyword": keyword,
            "location_name": location_name,
            "language_code": language_code,
            "depth": depth,
        }])
        result = _first_result(tasks[0]) if tasks else {}
        return parse_serp_ranking(keyword, subject, result)

    async def get_search_volume(self, keywords: List[str], location_name: str = "United States",
                                language_code: str = "en") -> Dict[str, KeywordVolume]:
        if not keywords:
            return {}
        tasks = await self._call("POST", SEARCH_VOLUME_PATH, [{
            "keywords": keywords,
            "location_name": location_name,
            "language_code": language_code,
        }])
        volumes = {}
        for task in tasks:
            for item in task.get("result") or []:
                volume = parse_keyword_volume(item)
                volumes[volume.keyword] = volume
        return volumes

    async def submit_business_task(self, keyword: str, location_name: str = "United States",
                                   language_code: str = "en") -> BusinessTask:
        tasks = await self._call("POST", BUSINESS_TASK_POST_PATH, [{
            "keyword": keyword,
            "location_name": location_name,
            "language_code": language_code,
        }])
        if not tasks or not tasks[0].get("id"):
            raise ProviderError("Business task was not created")
        task_id = tasks[0]["id"]
        logger.info(f"[PROVIDER] Submitted business listing task {task_id} for '{keyword}'")
        return BusinessTask(self, task_id)

    async def business_tasks_ready(self) -> set:
        tasks = await self._call("GET", BUSINESS_TASKS_READY_PATH)
        ready = set()
        for task in tasks:
            for item in task.get("result") or []:
                if item.get("id"):
                    ready.add(item["id"])
        return ready

    async def get_business_listing(self, task_id: str) -> Optional[BusinessListing]:
        tasks = await self._call("GET", BUSINESS_TASK_GET_PATH.format(task_id=task_id))
        return parse_business_listing(_first_result(tasks[0])) if tasks else None
