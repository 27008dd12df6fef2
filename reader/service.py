import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Sequence, Set

from reader.api_client import NewsAPIClient
from reader.db import Storage
from reader.exceptions import ConfigurationError, ExhaustionError, ReaderError
from reader.models import (
    DEFAULT_CATEGORY,
    MISS,
    Article,
    ArticleResult,
    ArticleSource,
    DownloadResult,
    FetchRequest,
    Hit,
    StageOutcome,
)
from reader.network_state import NetworkState
from reader.offline import OfflineDownloader
from reader.state import ReaderState

logger = logging.getLogger(__name__)

Stage = Callable[[FetchRequest, bool], Awaitable[StageOutcome]]


class ArticleService:
    """
    Single entry point for article data.

    Decides, per request, whether the answer comes from the API, the page
    cache, the offline article store or the merged cached pages, and tags the
    result with where it came from. Callers never see a transport error: they
    get a result, an ExhaustionError or a ConfigurationError.
    """

    def __init__(
        self,
        api: NewsAPIClient,
        storage: Storage,
        *,
        network: Optional[NetworkState] = None,
        downloader: Optional[OfflineDownloader] = None,
        offline_page_size: int = 12,
    ):
        self.api = api
        self.storage = storage
        self.network = network or NetworkState()
        self.downloader = downloader or OfflineDownloader(api, storage)
        self.offline_page_size = offline_page_size
        self.state = ReaderState(language=api.language)

        self._inflight: Dict[str, asyncio.Task] = {}
        self._background: Set[asyncio.Task] = set()

    @property
    def is_online(self) -> bool:
        return self.network.online

    def set_language(self, language: str):
        self.state.set_language(language)
        self.api.set_language(language)

    # ==================== PUBLIC API ====================

    async def get_articles(
        self,
        page: Optional[int] = None,
        category: Optional[str] = None,
        query: Optional[str] = None,
        filters: Optional[Mapping[str, Any]] = None,
    ) -> ArticleResult:
        """
        Get one page of articles. Arguments left as None keep their current value.

        Raises ConfigurationError before anything else happens when the API key
        is missing, and ExhaustionError when a category request finds nothing
        anywhere. An empty search is a normal result (source "search_empty").
        """
        self.api.ensure_configured()
        request = self._resolve_request(page, category, query, filters)
        subject = f"query={request.query[:20]!r}" if request.is_search else f"category={request.category}"
        logger.info(f"Getting articles: page={request.page}, {subject}, online={self.is_online}")

        key = request.fetch_key
        task = self._inflight.get(key)
        if task is None or task.done():
            task = asyncio.create_task(self._run_pipeline(request))
            self._inflight[key] = task
            task.add_done_callback(lambda _t, key=key: self._inflight.pop(key, None))
        else:
            logger.info(f"Joining identical request already in flight: {key}")

        result = await asyncio.shield(task)
        self.state.update_pagination(result.page_num, result.total_results, self.api.page_size)
        return result

    async def download_for_offline(self, category: str = DEFAULT_CATEGORY, pages: int = 10) -> DownloadResult:
        if not self.is_online:
            raise ConfigurationError("Cannot download offline content while offline")

        logger.info(f"Starting offline download: {pages} pages of {category}")
        try:
            result = await self.downloader.download_pages(category, pages)
        except Exception as e:
            logger.error(f"Offline download failed: {e}")
            raise
        logger.info(f"Offline download completed: {result.downloaded_pages} pages")
        return result

    async def get_offline_articles(self, limit: int = 50) -> List[Article]:
        try:
            articles = await self.storage.get_offline_articles(limit)
        except Exception as e:
            logger.error(f"Failed to get offline articles: {e}")
            return []
        logger.info(f"Retrieved {len(articles)} offline articles")
        return articles

    async def search_offline_articles(self, query: str,
                                      filters: Optional[Mapping[str, Any]] = None) -> List[Article]:
        try:
            articles = await self.storage.search_articles(query, filters or {})
        except Exception as e:
            logger.error(f"Offline search failed: {e}")
            return []
        logger.info(f"Offline search found {len(articles)} articles for {query!r}")
        return articles

    async def wait_for_background_tasks(self):
        """Wait until every pending cache write-back has finished."""
        while self._background:
            await asyncio.gather(*list(self._background))

    # ==================== PIPELINE ====================

    def _resolve_request(self, page, category, query, filters) -> FetchRequest:
        if category is not None:
            self.state.set_category(category)
        if query is not None:
            self.state.set_query(query)
        if filters is not None:
            self.state.update_filters(filters)
        if page is not None:
            self.state.current_page = page
        return self.state.to_request()

    def category_stages(self) -> Sequence[Stage]:
        return (
            self.check_storage_if_offline,
            self.try_network,
            self.fallback_saved_articles,
            self.fallback_merged_pages,
        )

    def search_stages(self) -> Sequence[Stage]:
        return (
            self.check_search_cache,
            self.try_network_search,
            self.fallback_offline_search,
            self.search_empty,
        )

    async def _run_pipeline(self, request: FetchRequest) -> ArticleResult:
        online = self.is_online
        stages = self.search_stages() if request.is_search else self.category_stages()
        for stage in stages:
            outcome = await stage(request, online)
            if isinstance(outcome, Hit):
                logger.info(f"Page {request.page} served from {outcome.source.value} ({len(outcome.articles)} articles)")
                return ArticleResult.from_hit(outcome, request.page)
        raise ExhaustionError("No articles available (offline and no cache)")

    def _write_back(self, operation: Awaitable[Any], description: str):
        task = asyncio.create_task(self._guarded_write(operation, description))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _guarded_write(self, operation: Awaitable[Any], description: str):
        try:
            await operation
        except Exception as e:
            logger.warning(f"Failed to cache {description}: {e}")

    # ----- category fetch -----

    async def check_storage_if_offline(self, request: FetchRequest, online: bool) -> StageOutcome:
        if online:
            return MISS
        try:
            entry = await self.storage.get_page_entry(request.page, request.cache_key)
        except Exception as e:
            logger.warning(f"Page cache lookup failed: {e}")
            return MISS
        if entry is None or not entry.articles:
            return MISS
        return Hit(ArticleSource.CACHE, entry.articles, is_cached=True,
                   total_results=entry.total_results or None, has_more=entry.has_more)

    async def try_network(self, request: FetchRequest, online: bool) -> StageOutcome:
        if not online:
            return MISS
        try:
            response = await self.api.fetch_articles(request.page, request.category, request.filters)
        except ConfigurationError:
            raise
        except ReaderError as e:
            logger.warning(f"API fetch failed: {e}")
            return MISS
        if not response.articles:
            return MISS

        self._write_back(
            self.storage.cache_articles_page(
                response.articles, request.page, request.cache_key,
                total_results=response.total_results, has_more=response.has_more,
            ),
            f"page {request.page} of {request.cache_key}",
        )
        return Hit(ArticleSource.API, tuple(response.articles), is_cached=False,
                   total_results=response.total_results, has_more=response.has_more)

    async def fallback_saved_articles(self, request: FetchRequest, online: bool) -> StageOutcome:
        offset = (request.page - 1) * self.offline_page_size
        try:
            articles = await self.storage.get_offline_articles(self.offline_page_size, offset)
        except Exception as e:
            logger.warning(f"Offline article fallback failed: {e}")
            return MISS
        if not articles:
            return MISS
        return Hit(ArticleSource.OFFLINE, tuple(articles), is_cached=True,
                   has_more=len(articles) == self.offline_page_size)

    async def fallback_merged_pages(self, request: FetchRequest, online: bool) -> StageOutcome:
        try:
            pages = await self.storage.get_all_cached_pages(request.cache_key)
        except Exception as e:
            logger.warning(f"Cached pages fallback failed: {e}")
            return MISS
        merged = tuple(article for entry in pages for article in entry.articles)
        if not merged:
            return MISS
        return Hit(ArticleSource.CACHED_PAGES, merged, is_cached=True)

    # ----- search -----

    async def check_search_cache(self, request: FetchRequest, online: bool) -> StageOutcome:
        try:
            cached = await self.storage.get_cached_search_results(request.query, request.filters, request.page)
        except Exception as e:
            logger.warning(f"Search cache lookup failed: {e}")
            return MISS
        if not cached:
            return MISS
        return Hit(ArticleSource.SEARCH_CACHE, tuple(cached), is_cached=True)

    async def try_network_search(self, request: FetchRequest, online: bool) -> StageOutcome:
        if not online:
            return MISS
        try:
            response = await self.api.search_articles(request.query, request.page, request.filters)
        except ConfigurationError:
            raise
        except ReaderError as e:
            logger.warning(f"Search API failed: {e}")
            return MISS
        if not response.articles:
            return MISS

        self._write_back(
            self.storage.cache_search_results(request.query, request.filters, response.articles, page=request.page),
            f"search results for {request.query!r} page {request.page}",
        )
        return Hit(ArticleSource.SEARCH_API, tuple(response.articles), is_cached=False,
                   total_results=response.total_results, has_more=response.has_more)

    async def fallback_offline_search(self, request: FetchRequest, online: bool) -> StageOutcome:
        try:
            articles = await self.storage.search_articles(request.query, request.filters)
        except Exception as e:
            logger.warning(f"Offline search failed: {e}")
            return MISS
        if not articles:
            return MISS
        return Hit(ArticleSource.SEARCH_OFFLINE, tuple(articles), is_cached=True)

    async def search_empty(self, request: FetchRequest, online: bool) -> StageOutcome:
        return Hit(ArticleSource.SEARCH_EMPTY, (), is_cached=False, total_results=0)
