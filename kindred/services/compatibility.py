"""
Compatibility Aggregator

Read-side view combining every finished game between two users into one
profile. Never mutates sessions.
"""

from statistics import mean
from typing import Any, Dict, List, Optional

from sqlalchemy import and_, or_, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from kindred.core.errors import NotFoundError
from kindred.core.time import to_iso
from kindred.games.families import FAMILIES, FamilyDescriptor
from kindred.models.game import GameSession, SessionStatus
from kindred.models.user import Match

SUMMARY_THRESHOLD = 3


def confidence_for(completed: int) -> str:
    if completed == 0:
        return "none"
    if completed == 1:
        return "low"
    if completed < 4:
        return "moderate"
    return "high"


class CompatibilityAggregator:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        families: Optional[Dict[str, FamilyDescriptor]] = None,
    ):
        self.session_factory = session_factory
        self.families = families or FAMILIES

    async def view(self, user_id: str, partner_id: str) -> Dict[str, Any]:
        low, high = sorted((user_id, partner_id))
        async with self.session_factory() as db:
            match = (
                await db.execute(select(Match).where(and_(Match.user_low == low, Match.user_high == high)))
            ).scalar_one_or_none()
            if match is None:
                raise NotFoundError("No match with this user")

            stmt = (
                select(GameSession)
                .where(
                    or_(
                        and_(GameSession.player1_id == user_id, GameSession.player2_id == partner_id),
                        and_(GameSession.player1_id == partner_id, GameSession.player2_id == user_id),
                    )
                )
                .order_by(GameSession.invited_at.desc())
            )
            sessions = list((await db.execute(stmt)).scalars().all())

        entries: List[Dict[str, Any]] = []
        for family in self.families.values():
            entries.append(self._family_entry(family, [s for s in sessions if s.family == family.key]))

        completed = [e for e in entries if e["status"] == "completed"]
        scores = [e["score"] for e in completed if e["score"] is not None]
        return {
            "pairKey": f"{low}:{high}",
            "families": entries,
            "completedCount": len(completed),
            "totalFamilies": len(entries),
            "overallScore": round(mean(scores)) if scores else None,
            "summaryAvailable": len(completed) >= SUMMARY_THRESHOLD,
            "confidence": confidence_for(len(completed)),
        }

    @staticmethod
    def _family_entry(family: FamilyDescriptor, sessions: List[GameSession]) -> Dict[str, Any]:
        entry: Dict[str, Any] = {
            "family": family.key,
            "name": family.name,
            "dimension": family.dimension,
            "status": "not_started",
            "sessionId": None,
            "completedAt": None,
            "score": None,
        }
        finished = sorted(
            (s for s in sessions if s.status in SessionStatus.FINISHED),
            key=lambda s: s.completed_at,
            reverse=True,
        )
        if finished:
            latest = finished[0]
            entry.update(
                status="completed",
                sessionId=latest.id,
                completedAt=to_iso(latest.completed_at),
                score=family.headline_score(latest.results or {}, latest.insights),
            )
            return entry
        active = next((s for s in sessions if s.status in SessionStatus.ACTIVE), None)
        if active is not None:
            entry.update(status="in_progress", sessionId=active.id)
        return entry
