import logging
import asyncio
import os
from dotenv import load_dotenv

from reader.api_client import NewsAPIClient
from reader.config import ReaderConfig
from reader.db import Database
from reader.exceptions import ReaderError
from reader.http_client import RequestQueue
from reader.network_state import ConnectivityChannel, ConnectivityProbe, NetworkState
from reader.service import ArticleService


# Load env
load_dotenv()

# Setup logging
logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

async def main():
    logger.info("Starting news reader...")

    config = ReaderConfig.from_env()

    # Initialize components
    queue = RequestQueue.from_config(config)
    api = NewsAPIClient.from_config(config, queue)
    db = Database.from_config(config)

    channel = ConnectivityChannel()
    network = NetworkState(online=True, channel=channel)
    probe = ConnectivityProbe(channel, config.base_url)
    service = ArticleService(api, db, network=network, offline_page_size=config.offline_page_size)

    category = os.getenv("READER_CATEGORY", "latest")
    query = os.getenv("READER_QUERY", "")
    page = int(os.getenv("READER_PAGE", "1"))
    offline_pages = int(os.getenv("READER_OFFLINE_PAGES", "0"))

    try:
        await probe.check()

        # 1. Optional offline download
        if offline_pages > 0:
            try:
                download = await service.download_for_offline(category=category, pages=offline_pages)
                logger.info(f"Saved {download.article_count} articles from {download.downloaded_pages} pages")
            except ReaderError as e:
                logger.error(f"Offline download failed: {e}")

        # 2. Read one page
        try:
            result = await service.get_articles(page=page, category=category, query=query)
        except ReaderError as e:
            logger.error(f"Could not load articles: {e}")
            return

        logger.info(f"Page {result.page_num} from {result.source.value} "
                    f"({len(result.articles)} of {result.total_results} articles, cached={result.is_cached})")
        for idx, article in enumerate(result.articles, 1):
            published = article.published_at.isoformat() if article.published_at else "-"
            print(f"{idx:>3}. [{published}] {article.title} ({article.source or article.url})")
        if result.has_more:
            logger.info("More articles available on the next page")

        await service.wait_for_background_tasks()
    finally:
        await probe.close()
        await queue.close()
        db.close()

if __name__ == "__main__":
    asyncio.run(main())
