import json
import logging
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional, Protocol, Sequence

import sqlite_utils
from sqlite_utils.db import NotFoundError

from reader.models import Article, PageCacheEntry, filters_signature

logger = logging.getLogger(__name__)


class Storage(Protocol):
    """What the article service needs from persistent storage."""

    async def get_articles_page(self, page: int, key: str) -> List[Article]: ...

    async def get_page_entry(self, page: int, key: str) -> Optional[PageCacheEntry]: ...

    async def cache_articles_page(self, articles: Sequence[Article], page: int, key: str, *,
                                  total_results: int = 0, has_more: bool = False,
                                  origin: str = "auto") -> bool: ...

    async def get_offline_articles(self, limit: int = 100, offset: int = 0) -> List[Article]: ...

    async def get_cached_search_results(self, query: str, filters: Optional[Mapping[str, Any]] = None,
                                        page: int = 1) -> Optional[List[Article]]: ...

    async def cache_search_results(self, query: str, filters: Optional[Mapping[str, Any]],
                                   articles: Sequence[Article], page: int = 1) -> bool: ...

    async def search_articles(self, query: str,
                              filters: Optional[Mapping[str, Any]] = None) -> List[Article]: ...

    async def get_all_cached_pages(self, key: str) -> List[PageCacheEntry]: ...

    async def save_article(self, article: Article, for_offline: bool = False) -> bool: ...


def _dump_articles(articles: Sequence[Article]) -> str:
    return json.dumps([a.to_dict() for a in articles], ensure_ascii=False)


def _load_articles(raw: Optional[str]) -> List[Article]:
    if not raw:
        return []
    return [Article.from_dict(item) for item in json.loads(raw)]


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def search_cache_key(query: str, filters: Optional[Mapping[str, Any]] = None, page: int = 1) -> str:
    return f"{query.strip().lower()}|{filters_signature(filters)}|{page}"


class Database:
    """
    SQLite-backed storage tier with three separate namespaces:

    - ``pages``: API pages keyed by (cache key, page number)
    - ``search_cache``: search results keyed by (query, filters signature, page), with a TTL
    - ``articles``: individual articles, some flagged as saved for offline reading
    """

    def __init__(self, db_path: str = "news.db", enabled: bool = True,
                 search_cache_ttl_minutes: int = 30, clock: Callable[[], float] = time.time):
        """
        Args:
            db_path: Path to SQLite database file
            enabled: If False, everything lives in an in-memory database for this run only
            search_cache_ttl_minutes: How long cached search results stay valid
            clock: Source of the current time, in seconds
        """
        self.enabled = enabled
        self.db_path = db_path
        self.search_cache_ttl = search_cache_ttl_minutes * 60
        self._clock = clock

        if self.enabled:
            self.db = sqlite_utils.Database(db_path)
            logger.info(f"Database enabled: {db_path}")
        else:
            self.db = sqlite_utils.Database(memory=True)
            logger.info("Database disabled - cached pages only live for this run")
        self.init_db()

    @classmethod
    def from_config(cls, config) -> "Database":
        return cls(config.database_path, enabled=config.database_enabled,
                   search_cache_ttl_minutes=config.search_cache_ttl_minutes)

    def init_db(self):
        """Initialize database schema"""
        self.db["articles"].create({
            "id": str,
            "title": str,
            "summary": str,
            "data": str,  # Full article as JSON
            "saved_at": str,
            "saved_for_offline": int,  # 0 or 1
        }, pk="id", if_not_exists=True)

        self.db["pages"].create({
            "cache_key": str,
            "page": int,
            "articles": str,
            "fetched_at": str,
            "total_results": int,
            "has_more": int,
            "origin": str,
        }, pk=("cache_key", "page"), if_not_exists=True)

        self.db["search_cache"].create({
            "cache_key": str,
            "query": str,
            "filters": str,
            "page": int,
            "articles": str,
            "cached_at": float,
            "count": int,
        }, pk="cache_key", if_not_exists=True)

    # ----- page cache -----

    async def get_page_entry(self, page: int, key: str) -> Optional[PageCacheEntry]:
        try:
            row = self.db["pages"].get((key, page))
        except NotFoundError:
            return None
        return self._page_from_row(row)

    async def get_articles_page(self, page: int, key: str) -> List[Article]:
        entry = await self.get_page_entry(page, key)
        if entry is None:
            return []
        logger.debug(f"Retrieved cached page {page} for {key!r}")
        return list(entry.articles)

    async def cache_articles_page(self, articles: Sequence[Article], page: int, key: str, *,
                                  total_results: int = 0, has_more: bool = False,
                                  origin: str = "auto") -> bool:
        if not articles:
            return False
        self.db["pages"].upsert({
            "cache_key": key,
            "page": page,
            "articles": _dump_articles(articles),
            "fetched_at": _now(),
            "total_results": total_results,
            "has_more": int(has_more),
            "origin": origin,
        }, pk=("cache_key", "page"))
        logger.info(f"Cached {len(articles)} articles for page {page} of {key!r} (origin: {origin})")
        return True

    async def get_all_cached_pages(self, key: str) -> List[PageCacheEntry]:
        rows = self.db["pages"].rows_where("cache_key = ?", [key], order_by="page")
        return [self._page_from_row(row) for row in rows]

    async def clear_cached_pages(self, key: str) -> int:
        count = self.db["pages"].count_where("cache_key = ?", [key])
        self.db["pages"].delete_where("cache_key = ?", [key])
        logger.info(f"Cleared {count} cached pages for {key!r}")
        return count

    @staticmethod
    def _page_from_row(row: Dict[str, Any]) -> PageCacheEntry:
        return PageCacheEntry(
            key=row["cache_key"],
            page=row["page"],
            articles=tuple(_load_articles(row["articles"])),
            fetched_at=datetime.fromisoformat(row["fetched_at"]),
            total_results=row["total_results"] or 0,
            has_more=bool(row["has_more"]),
            origin=row["origin"] or "auto",
        )

    # ----- search cache -----

    async def get_cached_search_results(self, query: str, filters: Optional[Mapping[str, Any]] = None,
                                        page: int = 1) -> Optional[List[Article]]:
        if not query:
            return None
        cache_key = search_cache_key(query, filters, page)
        try:
            row = self.db["search_cache"].get(cache_key)
        except NotFoundError:
            return None

        if self._clock() - row["cached_at"] > self.search_cache_ttl:
            self.db["search_cache"].delete(cache_key)
            logger.debug(f"Search cache expired for {query!r}")
            return None

        logger.info(f"Using cached results for query {query!r} page {page} ({row['count']} results)")
        return _load_articles(row["articles"])

    async def cache_search_results(self, query: str, filters: Optional[Mapping[str, Any]],
                                   articles: Sequence[Article], page: int = 1) -> bool:
        if not query or not articles:
            return False
        self.db["search_cache"].upsert({
            "cache_key": search_cache_key(query, filters, page),
            "query": query,
            "filters": filters_signature(filters),
            "page": page,
            "articles": _dump_articles(articles),
            "cached_at": self._clock(),
            "count": len(articles),
        }, pk="cache_key")
        logger.info(f"Cached {len(articles)} search results for {query!r}")
        return True

    # ----- saved articles -----

    async def save_article(self, article: Article, for_offline: bool = False) -> bool:
        try:
            self.db["articles"].upsert({
                "id": article.id,
                "title": article.title,
                "summary": article.summary,
                "data": json.dumps(article.to_dict(), ensure_ascii=False),
                "saved_at": _now(),
                "saved_for_offline": int(for_offline),
            }, pk="id")
            return True
        except Exception as e:
            logger.error(f"Error saving article {article.title}: {e}")
            return False

    async def delete_article(self, article_id: str) -> bool:
        try:
            self.db["articles"].delete(article_id)
        except NotFoundError:
            return False
        return True

    async def get_offline_articles(self, limit: int = 100, offset: int = 0) -> List[Article]:
        rows = self.db["articles"].rows_where(
            "saved_for_offline = 1", order_by="saved_at, rowid", limit=limit, offset=offset
        )
        return [Article.from_dict(json.loads(row["data"])) for row in rows]

    async def search_articles(self, query: str,
                              filters: Optional[Mapping[str, Any]] = None) -> List[Article]:
        """Case-insensitive search over title and summary of articles saved for offline reading."""
        needle = (query or "").strip().lower()
        wanted_category = ((filters or {}).get("category") or "").lower()

        where = "saved_for_offline = 1"
        where_args: List[str] = []
        if needle:
            pattern = "%" + needle.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_") + "%"
            where += " and (lower(title) like ? escape '\\' or lower(summary) like ? escape '\\')"
            where_args += [pattern, pattern]

        matches = []
        for row in self.db["articles"].rows_where(where, where_args, order_by="saved_at, rowid"):
            article = Article.from_dict(json.loads(row["data"]))
            if wanted_category and wanted_category not in (c.lower() for c in article.category):
                continue
            matches.append(article)
        return matches

    async def clear_old_articles(self, older_than_days: int = 7) -> int:
        """Drop articles saved before the cutoff, keeping anything saved for offline reading."""
        cutoff = (datetime.now(timezone.utc) - timedelta(days=older_than_days)).isoformat()
        where = "saved_at < ? and saved_for_offline = 0"
        count = self.db["articles"].count_where(where, [cutoff])
        self.db["articles"].delete_where(where, [cutoff])
        return count

    # ----- housekeeping -----

    async def get_storage_stats(self) -> Dict[str, int]:
        return {
            "articles": self.db["articles"].count,
            "offline_articles": self.db["articles"].count_where("saved_for_offline = 1"),
            "cached_pages": self.db["pages"].count,
            "cached_searches": self.db["search_cache"].count,
        }

    async def clear_all(self):
        for table in ("articles", "pages", "search_cache"):
            self.db[table].delete_where()
        logger.info("All stored data cleared")

    def close(self):
        self.db.close()
