"""External dependency integrations guarded by the resilience layer."""

from .news import NewsService
from .summary import SummaryService, classify_anthropic_error

__all__ = ["SummaryService", "NewsService", "classify_anthropic_error"]
