"""Related-news search for bills, protected by the resilience layer."""

import logging
import re
from datetime import date, timedelta
from typing import Any, Optional

from ..cache.result_cache import ResultCache
from ..client.http import HttpxFetcher
from ..errors import UpstreamError, ValidationError
from ..resilience.executor import ProtectedResult, ResilientExecutor
from ..resilience.fallback import generate_fallback_news
from ..resilience.retry import RetryOptions
from ..resilience.timeout import NEWS_SERVICE_TIMEOUT, with_async_timeout

logger = logging.getLogger(__name__)

DEPENDENCY = "news_service"
STALE_MESSAGE = "This news data may be outdated due to service issues"
MAX_QUERY_LENGTH = 500

TEXAS_NEWS_DOMAINS = (
    "texastribune.org,statesman.com,dallasnews.com,"
    "houstonchronicle.com,expressnews.com,star-telegram.com"
)

_LEGISLATIVE_WORDS = re.compile(
    r"\b(relating|to|an|act|bill|senate|house|texas|legislature|amending|creating|establishing)\b"
)
_COMMON_WORDS = frozenset(
    "the and for are but not you all can had her was one our out day get has him his "
    "how man new now old see two way who boy did its let put say she too use".split()
)
_IRRELEVANT_WORDS = ("sports", "weather", "entertainment", "celebrity", "movie", "music")


class NewsService:
    """Finds news articles related to a bill."""

    def __init__(
        self,
        executor: ResilientExecutor,
        fetcher: Optional[HttpxFetcher] = None,
        api_key: str = "",
        api_url: str = "https://newsapi.org/v2/everything",
        max_articles: int = 5,
        timeout: float = NEWS_SERVICE_TIMEOUT,
        retry_options: Optional[RetryOptions] = None,
    ):
        self.executor = executor
        self.fetcher = fetcher or HttpxFetcher(dependency=DEPENDENCY)
        self.api_key = api_key
        self.api_url = api_url
        self.max_articles = max_articles
        self.timeout = timeout
        self.retry_options = retry_options or executor.retry_manager.options(
            max_retries=2, base_delay=3.0
        )

    @staticmethod
    def cache_key(bill_id: str) -> str:
        return ResultCache.generate_key("news", {"billId": bill_id})

    async def get_news_for_bill(self, bill_id: str, bill: dict[str, Any]) -> ProtectedResult:
        """Get related news for a bill.

        Args:
            bill_id: Bill identifier
            bill: Bill fields (``billNumber``, ``shortTitle``, ``fullTitle``, ``topics``)

        Returns:
            ProtectedResult whose value is a list of article dicts

        Raises:
            ValidationError: If inputs are missing
        """
        if not bill_id or not bill:
            raise ValidationError("Bill ID and data are required")

        async def search() -> list[dict[str, Any]]:
            keywords = self.extract_keywords(bill)
            logger.info(f"Searching news for bill {bill_id} with keywords: {', '.join(keywords)}")
            articles = await self._search_news(keywords)
            return self.process_articles(articles, bill)

        return await self.executor.run(
            search,
            f"news-{bill_id}",
            cache_key=self.cache_key(bill_id),
            retry_options=self.retry_options,
            degraded=lambda error: generate_fallback_news(str(error)),
            stale_message=STALE_MESSAGE,
        )

    def extract_keywords(self, bill: dict[str, Any]) -> list[str]:
        """Search keywords: bill number, up to 3 title terms, 2 topics and "Texas"."""
        keywords = []
        if bill.get("billNumber"):
            keywords.append(bill["billNumber"])

        title = bill.get("shortTitle") or bill.get("fullTitle")
        if title:
            words = _LEGISLATIVE_WORDS.sub("", title.lower()).split()
            keywords.extend([w for w in words if len(w) > 3 and w not in _COMMON_WORDS][:3])

        topics = bill.get("topics")
        if isinstance(topics, list):
            keywords.extend(topics[:2])

        keywords.append("Texas")
        return [k for k in keywords if k]

    async def _search_news(self, keywords: list[str]) -> list[dict[str, Any]]:
        query = " OR ".join(keywords)
        if len(query) > MAX_QUERY_LENGTH:
            raise ValidationError("Search query too long")

        params = {
            "q": query,
            "language": "en",
            "sortBy": "relevancy",
            "pageSize": self.max_articles * 2,
            "from": (date.today() - timedelta(days=30)).isoformat(),
            "domains": TEXAS_NEWS_DOMAINS,
        }
        data = await with_async_timeout(
            self.fetcher(self.api_url, {"params": params, "headers": {"X-Api-Key": self.api_key}}),
            self.timeout,
            "News API request timed out",
        )

        if data.get("status") != "ok":
            raise UpstreamError(
                f"News API error: {data.get('message', 'Unknown error')}", dependency=DEPENDENCY
            )
        return data.get("articles") or []

    def process_articles(
        self, articles: list[dict[str, Any]], bill: dict[str, Any]
    ) -> list[dict[str, Any]]:
        """Keep relevant articles and reshape them for clients."""
        relevant = [a for a in articles if self.is_relevant_article(a, bill)]
        return [
            {
                "headline": article["title"],
                "source": (article.get("source") or {}).get("name") or "Unknown Source",
                "url": article["url"],
                "publishedAt": article.get("publishedAt"),
                "description": article.get("description"),
                "urlToImage": article.get("urlToImage"),
            }
            for article in relevant[: self.max_articles]
        ]

    @staticmethod
    def is_relevant_article(article: dict[str, Any], bill: dict[str, Any]) -> bool:
        if not article.get("title") or not article.get("url"):
            return False

        title = article["title"].lower()
        if any(word in title for word in _IRRELEVANT_WORDS):
            return False

        content = f"{article['title']} {article.get('description') or ''}".lower()
        bill_number = (bill.get("billNumber") or "").lower()
        if bill_number and bill_number in content:
            return True

        topics = bill.get("topics")
        if isinstance(topics, list):
            return any(topic.lower() in content for topic in topics)
        return False
