"""
Insight Enricher

Best-effort narrative insights for a finished game. Runs off the critical path
(inline task or RQ job), at most once per session, and always produces a
record: LLM output that fails validation falls back to the family's template.
"""

import asyncio
import json
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Set

from openai import OpenAIError
from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as SchemaError
from sqlalchemy import and_, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from kindred.core.config import settings
from kindred.core.logging import get_logger, log_event
from kindred.core.time import utcnow
from kindred.games.families import FAMILIES, FamilyDescriptor, answer_log
from kindred.infra.queue import JobQueue
from kindred.models.game import GameSession, SessionStatus
from kindred.realtime.rooms import RoomRouter, session_room
from kindred.services.llm_clients.openai_client import OpenAIClient

logger = get_logger(__name__)

ENRICH_JOB = "kindred.workers.jobs.enrich_insights.enrich_session_insights"

SYSTEM_PROMPT = (
    "You are a relationship insights expert. Generate warm, specific, actionable insights "
    "for a couple who just played a discovery game together. Respond only with a JSON object "
    'with the keys "summary" (2-3 sentences), "highlights" (list of short strings), '
    '"differences" (list of short strings), "tip" (one sentence) and '
    '"compatibilityScore" (integer 0-100).'
)


class GeneratedInsights(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    summary: str = Field(min_length=1)
    highlights: List[str] = Field(default_factory=list)
    differences: List[str] = Field(default_factory=list)
    tip: str = Field(min_length=1)
    compatibility_score: Optional[int] = Field(default=None, alias="compatibilityScore", ge=0, le=100)


def build_prompt(session: GameSession, family: FamilyDescriptor) -> List[Dict[str, str]]:
    lines = [f"Game: {family.name}", f"Computed results: {json.dumps(session.results or {})}", "", "Answers:"]
    for record in answer_log(session, family.bank):
        first, second = record.values
        lines.append(
            f"{record.index + 1}. [{record.question.category}] {record.question.text} | "
            f"Player 1: {family.describe_answer(first)} | Player 2: {family.describe_answer(second)}"
        )
    return [
        {"role": "system", "content": SYSTEM_PROMPT},
        {"role": "user", "content": "\n".join(lines)},
    ]


class InsightEnricher:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        llm: Optional[OpenAIClient] = None,
        rooms: Optional[RoomRouter] = None,
        families: Optional[Dict[str, FamilyDescriptor]] = None,
        queue: Optional[JobQueue] = None,
        mode: Optional[str] = None,
        use_mock: Optional[bool] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session_factory = session_factory
        self.llm = llm
        self.rooms = rooms
        self.families = families or FAMILIES
        self.queue = queue
        self.mode = mode or settings.insight_queue
        self.use_mock = settings.use_mock_insights if use_mock is None else use_mock
        self.clock = clock
        self._tasks: Set[asyncio.Task] = set()

    def schedule(self, session_id: str) -> None:
        """Queue enrichment for a completed session; never raises into the caller"""
        if self.mode == "RQ" and self.queue is not None:
            try:
                self.queue.enqueue(ENRICH_JOB, session_id, job_id=f"insights:{session_id}")
                return
            except Exception as e:
                logger.error(f"Enqueue of insights for {session_id} failed, running inline: {e}")
        task = asyncio.create_task(self.enrich(session_id), name=f"insights:{session_id}")
        self._tasks.add(task)
        task.add_done_callback(self._finished)

    def _finished(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Insight task {task.get_name()} failed: {task.exception()}")

    async def drain(self) -> None:
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def enrich(self, session_id: str) -> Optional[Dict[str, Any]]:
        """Claim, generate and store insights; returns None when another run owns the session"""
        async with self.session_factory() as db:
            claim = await db.execute(
                update(GameSession)
                .where(
                    and_(
                        GameSession.id == session_id,
                        GameSession.insights_generated.is_(False),
                        GameSession.status.in_(SessionStatus.FINISHED),
                    )
                )
                .values(insights_generated=True, insights_generated_at=self.clock())
            )
            await db.commit()
            if claim.rowcount == 0:
                log_event(logger, "insights.skipped", session=session_id)
                return None

            session = await db.get(GameSession, session_id)
            family = self.families[session.family]
            insights = await self._generate(session, family)
            session.insights = insights
            await db.commit()

        log_event(logger, "insights.stored", session=session_id, family=family.key, source=insights["generated"])
        if self.rooms is not None:
            self.rooms.emit_to_room(
                session_room(session_id),
                family.event("insights"),
                {"sessionId": session_id, "insights": insights},
            )
        return insights

    async def _generate(self, session: GameSession, family: FamilyDescriptor) -> Dict[str, Any]:
        fallback = {**family.fallback_insights(session.results or {}), "generated": "fallback"}
        if self.use_mock or self.llm is None or not self.llm.available:
            return fallback

        try:
            raw = await self.llm.chat_completion(build_prompt(session, family), json_mode=True)
            parsed = GeneratedInsights.model_validate_json(raw)
        except SchemaError as e:
            log_event(logger, "insights.fallback", session=session.id, reason="schema", errors=e.error_count())
            return fallback
        except (OpenAIError, ValueError) as e:
            log_event(logger, "insights.fallback", session=session.id, reason=type(e).__name__)
            return fallback
        except Exception:
            logger.exception(f"Insight generation failed for session {session.id}")
            return fallback

        insights = parsed.model_dump(by_alias=True)
        if insights["compatibilityScore"] is None:
            insights["compatibilityScore"] = fallback.get("compatibilityScore")
        insights["generated"] = "llm"
        return insights
