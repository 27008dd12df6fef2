from dataclasses import dataclass, field, asdict
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

from reader.exceptions import ConfigurationError

DEFAULT_CATEGORY = "latest"

# Keys the news API understands as filters
FILTER_KEYS = ("start_date", "end_date", "category", "domain", "keywords")

PUBLISHED_FORMATS = ("%Y-%m-%d %H:%M:%S %z", "%Y-%m-%dT%H:%M:%S%z")


def parse_published(value: Any) -> Optional[datetime]:
    """Parse the API's published timestamp ("2024-05-01 12:30:00 +0000") or an ISO string."""
    if value is None or isinstance(value, datetime):
        return value
    text = str(value).strip()
    if not text:
        return None
    for fmt in PUBLISHED_FORMATS:
        try:
            return datetime.strptime(text, fmt)
        except ValueError:
            continue
    try:
        return datetime.fromisoformat(text)
    except ValueError:
        return None


def normalize_filters(filters: Optional[Mapping[str, Any]]) -> Dict[str, str]:
    """Drop empty values and sort by key so equal filter sets compare equal."""
    if not filters:
        return {}
    return {
        key: str(filters[key]).strip()
        for key in sorted(filters)
        if filters[key] is not None and str(filters[key]).strip()
    }


def filters_signature(filters: Optional[Mapping[str, Any]]) -> str:
    """Canonical, insertion-order independent encoding of a filter set."""
    return "&".join(f"{key}={value}" for key, value in normalize_filters(filters).items())


@dataclass(frozen=True)
class Article:
    """
    A single news article as returned by the API.

    Articles are never mutated after retrieval; a re-fetch produces a new one.
    """
    id: str
    title: str
    url: str
    summary: str = ""
    published_at: Optional[datetime] = None
    category: Tuple[str, ...] = ()
    language: Optional[str] = None
    source: Optional[str] = None  # Domain of the article URL
    author: Optional[str] = None
    image: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["category"] = list(self.category)
        data["published_at"] = self.published_at.isoformat() if self.published_at else None
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Article":
        return cls(
            id=str(data["id"]),
            title=data.get("title") or "",
            url=data.get("url") or "",
            summary=data.get("summary") or "",
            published_at=parse_published(data.get("published_at")),
            category=tuple(data.get("category") or ()),
            language=data.get("language"),
            source=data.get("source"),
            author=data.get("author"),
            image=data.get("image"),
        )


@dataclass(frozen=True)
class FetchRequest:
    """
    Value object describing one call to the pipeline.

    A request is a search iff ``query`` is present and not blank; otherwise it
    is a category fetch.
    """
    page: int = 1
    category: str = DEFAULT_CATEGORY
    query: Optional[str] = None
    filters: Mapping[str, str] = field(default_factory=dict)
    language: str = "en"

    @classmethod
    def category_fetch(cls, page: int = 1, category: str = DEFAULT_CATEGORY,
                       filters: Optional[Mapping[str, Any]] = None, language: str = "en") -> "FetchRequest":
        return cls(page=page, category=category or DEFAULT_CATEGORY,
                   filters=normalize_filters(filters), language=language)

    @classmethod
    def search(cls, query: str, page: int = 1, filters: Optional[Mapping[str, Any]] = None,
               language: str = "en") -> "FetchRequest":
        if not query or not query.strip():
            raise ConfigurationError("Search query is required")
        return cls(page=page, query=query.strip(), filters=normalize_filters(filters), language=language)

    @property
    def is_search(self) -> bool:
        return bool(self.query and self.query.strip())

    @property
    def kind(self) -> str:
        return "search" if self.is_search else "category"

    @property
    def signature(self) -> str:
        return filters_signature(self.filters)

    @property
    def cache_key(self) -> str:
        """Page-cache key shared by every page of this category and filter set."""
        subject = self.query if self.is_search else self.category
        return f"{self.kind}:{subject}|{self.signature}"

    @property
    def fetch_key(self) -> str:
        """Identifies one concrete request, used to collapse duplicate in-flight calls."""
        return "|".join([
            f"page:{self.page}",
            f"category:{self.category}",
            f"language:{self.language}",
            f"query:{self.query or ''}",
            self.signature,
        ])


@dataclass(frozen=True)
class PageCacheEntry:
    key: str
    page: int
    articles: Tuple[Article, ...]
    fetched_at: datetime
    total_results: int = 0
    has_more: bool = False
    origin: str = "auto"  # "auto" for write-back, "manual" for offline downloads


class ArticleSource(str, Enum):
    """Provenance tag: which tier answered a request."""
    API = "api"
    CACHE = "cache"
    OFFLINE = "offline"
    CACHED_PAGES = "cached_pages"
    SEARCH_CACHE = "search_cache"
    SEARCH_API = "search_api"
    SEARCH_OFFLINE = "search_offline"
    SEARCH_EMPTY = "search_empty"


@dataclass(frozen=True)
class Hit:
    source: ArticleSource
    articles: Tuple[Article, ...]
    is_cached: bool
    total_results: Optional[int] = None
    has_more: bool = False


class Miss:
    """Stage outcome meaning "this tier had nothing, try the next one"."""

    def __repr__(self) -> str:
        return "MISS"


MISS = Miss()

StageOutcome = Union[Hit, Miss]


@dataclass
class ArticleResult:
    articles: List[Article]
    source: ArticleSource
    page_num: int
    total_results: int
    has_more: bool
    is_cached: bool

    @classmethod
    def from_hit(cls, hit: Hit, page: int) -> "ArticleResult":
        total = hit.total_results if hit.total_results is not None else len(hit.articles)
        return cls(
            articles=list(hit.articles),
            source=hit.source,
            page_num=page,
            total_results=total,
            has_more=hit.has_more,
            is_cached=hit.is_cached,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "articles": [a.to_dict() for a in self.articles],
            "source": self.source.value,
            "pageNum": self.page_num,
            "totalResults": self.total_results,
            "hasMore": self.has_more,
            "isCached": self.is_cached,
        }


@dataclass
class DownloadResult:
    category: str
    requested_pages: int
    downloaded_pages: int = 0
    article_count: int = 0
