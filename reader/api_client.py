import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Union

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from reader.config import ReaderConfig
from reader.exceptions import ConfigurationError, ReaderError, ResponseFormatError
from reader.http_client import RequestQueue, redact
from reader.models import DEFAULT_CATEGORY, Article, normalize_filters, parse_published

logger = logging.getLogger(__name__)


class ApiArticle(BaseModel):
    """One entry of the ``news`` array."""
    model_config = ConfigDict(extra="ignore")

    id: Union[str, int]
    title: str = ""
    description: Optional[str] = None
    url: str = ""
    author: Optional[str] = None
    image: Optional[str] = None
    language: Optional[str] = None
    category: List[str] = Field(default_factory=list)
    published: Optional[str] = None

    @field_validator("category", mode="before")
    @classmethod
    def _category_as_list(cls, value: Any) -> Any:
        if value is None:
            return []
        if isinstance(value, str):
            return [value]
        return value

    def to_article(self) -> Article:
        source = None
        if self.url:
            try:
                host = httpx.URL(self.url).host
            except httpx.InvalidURL:
                host = ""
            source = host.removeprefix("www.") or None
        return Article(
            id=str(self.id),
            title=self.title,
            url=self.url,
            summary=self.description or "",
            published_at=parse_published(self.published),
            category=tuple(self.category),
            language=self.language,
            source=source,
            author=self.author if self.author and self.author != "None" else None,
            image=self.image if self.image and self.image != "None" else None,
        )


class NewsResponse(BaseModel):
    """Payload shape shared by the latest-news and search endpoints."""
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    news: List[ApiArticle] = Field(default_factory=list)
    total_results: Optional[int] = Field(default=None, alias="totalResults")
    total: Optional[int] = None
    page: Optional[int] = None
    has_more: bool = Field(default=False, alias="hasMore")

    @field_validator("news", mode="before")
    @classmethod
    def _news_default(cls, value: Any) -> Any:
        return [] if value is None else value

    @property
    def result_count(self) -> int:
        # Some deployments answer with "total" instead of "totalResults"
        if self.total_results is not None:
            return self.total_results
        if self.total is not None:
            return self.total
        return 0


@dataclass
class ArticlePage:
    articles: List[Article]
    total_results: int = 0
    page: int = 1
    has_more: bool = False


def parse_news_response(data: Dict[str, Any], page: int) -> ArticlePage:
    try:
        payload = NewsResponse.model_validate(data)
    except ValidationError as e:
        raise ResponseFormatError(f"Unexpected news payload: {e.error_count()} invalid field(s)") from e
    return ArticlePage(
        articles=[entry.to_article() for entry in payload.news],
        total_results=payload.result_count,
        page=payload.page or page,
        has_more=payload.has_more,
    )


class NewsAPIClient:
    """
    Builds requests for the two news API endpoints and validates their answers.
    All network traffic goes through the shared RequestQueue.
    """

    def __init__(self, queue: RequestQueue, api_key: Optional[str], base_url: str,
                 language: str = "en", page_size: int = 30):
        self.queue = queue
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.language = language
        self.page_size = page_size

    @classmethod
    def from_config(cls, config: ReaderConfig, queue: RequestQueue) -> "NewsAPIClient":
        return cls(queue, config.api_key, config.base_url, config.language, config.page_size)

    def set_language(self, language: str):
        self.language = language

    def ensure_configured(self):
        if not self.api_key:
            raise ConfigurationError("API key not configured")

    def _base_params(self, page: int) -> Dict[str, Any]:
        return {
            "language": self.language,
            "page": page,
            "page_size": self.page_size,
            "apiKey": self.api_key,
        }

    @staticmethod
    def _add_filters(params: Dict[str, Any], filters: Mapping[str, str], *, category_filter: bool):
        # Dates only make sense as a range
        if filters.get("start_date") and filters.get("end_date"):
            params["start_date"] = filters["start_date"]
            params["end_date"] = filters["end_date"]
        if filters.get("domain"):
            params["domain"] = filters["domain"]
        if category_filter and filters.get("category"):
            params["category"] = filters["category"]

    def build_latest_news_url(self, page: int, category: str = DEFAULT_CATEGORY,
                              filters: Optional[Mapping[str, Any]] = None) -> str:
        filters = normalize_filters(filters)
        params = self._base_params(page)
        if category and category != DEFAULT_CATEGORY:
            params["category"] = category
        self._add_filters(params, filters, category_filter=False)
        if filters.get("keywords"):
            params["keywords"] = filters["keywords"]
        return str(httpx.URL(f"{self.base_url}/latest-news", params=params))

    def build_search_url(self, page: int, query: str, filters: Optional[Mapping[str, Any]] = None) -> str:
        filters = normalize_filters(filters)
        params = self._base_params(page)
        params["keywords"] = query
        self._add_filters(params, filters, category_filter=True)
        return str(httpx.URL(f"{self.base_url}/search", params=params))

    async def fetch_articles(self, page: int = 1, category: str = DEFAULT_CATEGORY,
                             filters: Optional[Mapping[str, Any]] = None) -> ArticlePage:
        self.ensure_configured()
        url = self.build_latest_news_url(page, category, filters)
        logger.info(f"Fetching articles: {redact(url)}")
        data = await self.queue.submit(url)
        return parse_news_response(data, page)

    async def search_articles(self, query: str, page: int = 1,
                              filters: Optional[Mapping[str, Any]] = None) -> ArticlePage:
        self.ensure_configured()
        if not query or not query.strip():
            raise ConfigurationError("Search query is required")
        url = self.build_search_url(page, query.strip(), filters)
        logger.info(f"Searching articles: {redact(url)}")
        data = await self.queue.submit(url)
        return parse_news_response(data, page)

    async def get_status(self) -> Dict[str, str]:
        """Cheap health check: one single-article request."""
        try:
            self.ensure_configured()
            params = self._base_params(1)
            params["page_size"] = 1
            await self.queue.submit(str(httpx.URL(f"{self.base_url}/latest-news", params=params)))
            return {"status": "ok"}
        except ReaderError as e:
            return {"status": "error", "message": str(e)}
