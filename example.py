"""Example script demonstrating the bill tracker resilience layer."""

import asyncio
import logging

from billtracker import build_services
from billtracker.bootstrap import configure_logging
from billtracker.config import settings
from billtracker.monitoring import generate_metrics

configure_logging(settings.log_level)
logger = logging.getLogger(__name__)

BILL = {
    "billNumber": "SB 14",
    "shortTitle": "Relating to broadband infrastructure grants for rural counties",
    "topics": ["broadband", "rural development"],
    "billText": (
        "This Act creates a grant program for broadband infrastructure in rural counties. "
        "The comptroller shall administer the program and adopt rules for awarding grants. "
        "Grants may not exceed five million dollars per county in a state fiscal year."
    ),
}


async def main():
    """Run a summary and a news lookup through the protected pipeline."""

    logger.info("=" * 60)
    logger.info("Bill Tracker Resilience Demo")
    logger.info("=" * 60)

    services = build_services(settings)
    services.start()

    try:
        summary = await services.summary_service.generate_summary(
            "sb14", BILL["billText"], "high-level"
        )
        logger.info(f"Summary ({summary.source.value}, stale={summary.stale}):")
        logger.info(f"  {summary.value}")

        news = await services.news_service.get_news_for_bill("sb14", BILL)
        logger.info(f"News ({news.source.value}, stale={news.stale}):")
        for article in news.value:
            logger.info(f"  {article['headline']} - {article['source']}")

        # Second call is served from the cache
        summary = await services.summary_service.generate_summary(
            "sb14", BILL["billText"], "high-level"
        )
        logger.info(f"Repeat summary served from {summary.source.value}")

        logger.info("-" * 60)
        health = services.health()
        logger.info(f"Health: {health['status']}")
        for name, status in health["circuit_breakers"].items():
            logger.info(f"  {name}: {status['state']} ({status['failure_count']} failures)")

        logger.info("-" * 60)
        logger.info("Metrics:")
        for line in generate_metrics().splitlines():
            if line and not line.startswith("#"):
                logger.info(f"  {line}")
    finally:
        await services.stop()


if __name__ == "__main__":
    asyncio.run(main())
