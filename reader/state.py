import logging
import math
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional

from reader.models import DEFAULT_CATEGORY, FILTER_KEYS, FetchRequest, normalize_filters

logger = logging.getLogger(__name__)


@dataclass
class ReaderState:
    """
    What the reader is currently looking at.

    Changing the category, the search query or the filters sends the reader
    back to page 1. Cached pages of other categories are left alone.
    """
    current_page: int = 1
    total_pages: Optional[int] = None
    category: str = DEFAULT_CATEGORY
    language: str = "en"
    query: str = ""
    filters: Dict[str, str] = field(default_factory=dict)

    def reset_pagination(self):
        self.current_page = 1
        self.total_pages = None
        logger.debug("Pagination reset to page 1")

    def set_category(self, category: str):
        category = category or DEFAULT_CATEGORY
        if category != self.category:
            self.category = category
            self.reset_pagination()

    def set_query(self, query: Optional[str]):
        query = (query or "").strip()
        if query != self.query:
            self.query = query
            self.reset_pagination()

    def set_language(self, language: str):
        self.language = language

    def update_filters(self, filters: Mapping[str, Any]):
        """Merge new filter values in; an empty value removes that filter."""
        merged = dict(self.filters)
        for key, value in filters.items():
            if key not in FILTER_KEYS:
                logger.warning(f"Ignoring unknown filter {key!r}")
                continue
            merged[key] = value
        merged = normalize_filters(merged)
        if merged != self.filters:
            self.filters = merged
            self.reset_pagination()

    def update_pagination(self, page: int, total_results: int, page_size: int):
        self.current_page = page
        if page_size > 0 and total_results:
            self.total_pages = math.ceil(total_results / page_size)

    def to_request(self) -> FetchRequest:
        if self.query:
            return FetchRequest.search(self.query, page=self.current_page,
                                       filters=self.filters, language=self.language)
        return FetchRequest.category_fetch(page=self.current_page, category=self.category,
                                           filters=self.filters, language=self.language)
