import logging

from reader.api_client import NewsAPIClient
from reader.db import Storage
from reader.models import DEFAULT_CATEGORY, DownloadResult, FetchRequest

logger = logging.getLogger(__name__)


class OfflineDownloader:
    """
    Pulls a run of pages from the API and stores them for offline reading.

    Each page lands in the page cache (origin "manual") and every article is
    saved to the offline article store. Errors from the API are not caught
    here; the caller decides what to do with them.
    """

    def __init__(self, api: NewsAPIClient, storage: Storage):
        self.api = api
        self.storage = storage

    async def download_pages(self, category: str = DEFAULT_CATEGORY, pages: int = 10) -> DownloadResult:
        result = DownloadResult(category=category, requested_pages=pages)
        key = FetchRequest.category_fetch(category=category, language=self.api.language).cache_key

        for page in range(1, pages + 1):
            response = await self.api.fetch_articles(page=page, category=category)
            if not response.articles:
                logger.info(f"No more articles after page {page - 1} of {category}")
                break

            await self.storage.cache_articles_page(
                response.articles, page, key,
                total_results=response.total_results,
                has_more=response.has_more,
                origin="manual",
            )
            for article in response.articles:
                if await self.storage.save_article(article, for_offline=True):
                    result.article_count += 1
            result.downloaded_pages += 1
            logger.info(f"Downloaded page {page}/{pages} of {category} ({len(response.articles)} articles)")

        return result
