"""
Insight Enrichment Job
"""

import asyncio
from typing import Any, Dict, Optional

from kindred.core.config import settings
from kindred.core.logging import get_logger
from kindred.infra.db import build_engine, build_session_factory
from kindred.services.insights import InsightEnricher
from kindred.services.llm_clients.openai_client import OpenAIClient

logger = get_logger(__name__)


async def _enrich(session_id: str) -> Optional[Dict[str, Any]]:
    # The worker process owns its own engine; the web pool is not shared across processes
    engine = build_engine(settings.database_url)
    try:
        enricher = InsightEnricher(build_session_factory(engine), llm=OpenAIClient())
        insights = await enricher.enrich(session_id)
    finally:
        await engine.dispose()

    if insights is None:
        logger.info(f"Insights for session {session_id} were already generated")
    return insights


def enrich_session_insights(session_id: str):
    """
    RQ Job entry point (Sync wrapper)
    """
    # RQ runs in sync context, but we use async libraries
    return asyncio.run(_enrich(session_id))
