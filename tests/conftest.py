import asyncio
from typing import Any, Callable, Dict, List, Optional

import httpx
import pytest

from reader.api_client import NewsAPIClient
from reader.db import Database
from reader.http_client import RequestQueue
from reader.models import Article, parse_published
from reader.network_state import NetworkState
from reader.service import ArticleService

BASE_URL = "https://api.example.test/v1"


class RecordingSleep:
    """Stands in for asyncio.sleep: remembers every delay and returns at once."""

    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, delay: float):
        self.delays.append(delay)
        await asyncio.sleep(0)


def api_article(n: int, **overrides) -> Dict[str, Any]:
    data = {
        "id": f"article-{n}",
        "title": f"Headline {n}",
        "description": f"Summary of story {n}",
        "url": f"https://www.example.com/news/{n}",
        "author": "Staff",
        "image": "None",
        "language": "en",
        "category": ["general"],
        "published": "2024-05-01 12:30:00 +0000",
    }
    data.update(overrides)
    return data


def article(n: int, **overrides) -> Article:
    fields = {
        "id": f"article-{n}",
        "title": f"Headline {n}",
        "summary": f"Summary of story {n}",
        "url": f"https://www.example.com/news/{n}",
        "published_at": parse_published("2024-05-01 12:30:00 +0000"),
        "category": ("general",),
        "language": "en",
        "source": "example.com",
        "author": "Staff",
    }
    fields.update(overrides)
    return Article(**fields)


def news_payload(items: List[Dict[str, Any]], total: Optional[int] = None, has_more: bool = False) -> Dict[str, Any]:
    return {
        "status": "ok",
        "news": items,
        "totalResults": len(items) if total is None else total,
        "page": 1,
        "hasMore": has_more,
    }


Handler = Callable[[httpx.Request], Any]


class CountingDatabase(Database):
    """In-memory Database that counts how often each storage call is made."""

    def __init__(self, **kwargs):
        super().__init__(enabled=False, **kwargs)
        self.calls: Dict[str, int] = {}

    def _count(self, name: str):
        self.calls[name] = self.calls.get(name, 0) + 1

    async def get_page_entry(self, page, key):
        self._count("get_page_entry")
        return await super().get_page_entry(page, key)

    async def get_offline_articles(self, limit=100, offset=0):
        self._count("get_offline_articles")
        return await super().get_offline_articles(limit, offset)

    async def get_all_cached_pages(self, key):
        self._count("get_all_cached_pages")
        return await super().get_all_cached_pages(key)

    async def get_cached_search_results(self, query, filters=None, page=1):
        self._count("get_cached_search_results")
        return await super().get_cached_search_results(query, filters, page)

    async def search_articles(self, query, filters=None):
        self._count("search_articles")
        return await super().search_articles(query, filters)


def make_queue(handler: Handler, sleep: Optional[RecordingSleep] = None, **kwargs) -> RequestQueue:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    kwargs.setdefault("min_request_interval", 0)
    return RequestQueue(client, sleep=sleep or RecordingSleep(), **kwargs)


def make_service(handler: Handler, *, online: bool = True, api_key: Optional[str] = "test-key",
                 storage: Optional[Database] = None, max_retries: int = 1) -> ArticleService:
    queue = make_queue(handler, max_retries=max_retries)
    api = NewsAPIClient(queue, api_key, BASE_URL)
    return ArticleService(
        api,
        storage if storage is not None else CountingDatabase(),
        network=NetworkState(online=online),
        offline_page_size=12,
    )


@pytest.fixture
def db():
    database = CountingDatabase()
    yield database
    database.close()


@pytest.fixture
def sleep():
    return RecordingSleep()
