"""
Moderation Gate

Text screening is a list of rules, each returning a typed verdict. The gate
keeps the most severe verdict. New rule kinds plug in without touching the
chat pipeline. Image screening is asynchronous and defaults to allow when the
screening provider fails.
"""

import re
from dataclasses import dataclass
from enum import Enum
from functools import lru_cache
from typing import Iterable, List, Optional, Pattern, Protocol, Sequence

from better_profanity import Profanity

from kindred.core.logging import get_logger

logger = get_logger(__name__)


class Severity(str, Enum):
    NONE = "none"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]


_SEVERITY_RANK = {Severity.NONE: 0, Severity.LOW: 1, Severity.MEDIUM: 2, Severity.HIGH: 3}


class Action(str, Enum):
    ALLOW = "allow"
    FLAG = "flag"
    REJECT = "reject"


@dataclass(frozen=True)
class Verdict:
    action: Action = Action.ALLOW
    severity: Severity = Severity.NONE
    reason: Optional[str] = None
    rule: Optional[str] = None

    @property
    def flagged(self) -> bool:
        return self.action != Action.ALLOW

    @property
    def auto_report(self) -> bool:
        return self.severity == Severity.HIGH

    def to_dict(self) -> dict:
        return {"flagged": self.flagged, "reason": self.reason, "severity": self.severity.value}


ALLOW = Verdict()


class TextRule(Protocol):
    name: str

    def check(self, text: str) -> Optional[Verdict]: ...


@dataclass(frozen=True)
class PatternRule:
    """Flags text matching any of the patterns"""
    name: str
    patterns: Sequence[Pattern[str]]
    severity: Severity
    reason: str
    action: Action = Action.FLAG

    def check(self, text: str) -> Optional[Verdict]:
        for pattern in self.patterns:
            if pattern.search(text):
                return Verdict(action=self.action, severity=self.severity, reason=self.reason, rule=self.name)
        return None


class ProfanityRule:
    """Whole-word profanity check on better-profanity's word list, leetspeak spellings included"""

    def __init__(
        self,
        name: str = "profanity",
        severity: Severity = Severity.LOW,
        reason: str = "Profanity detected",
        words: Optional[Iterable[str]] = None,
    ):
        self.name = name
        self.severity = severity
        self.reason = reason
        self._filter = _default_filter() if words is None else Profanity(list(words))

    def check(self, text: str) -> Optional[Verdict]:
        if self._filter.contains_profanity(text):
            return Verdict(action=Action.FLAG, severity=self.severity, reason=self.reason, rule=self.name)
        return None


@lru_cache(maxsize=1)
def _default_filter() -> Profanity:
    # Shared by every gate in the process
    return Profanity()


def _compile(*patterns: str) -> List[Pattern[str]]:
    return [re.compile(p, re.IGNORECASE) for p in patterns]


def default_rules() -> List[TextRule]:
    return [
        ProfanityRule(),
        PatternRule(
            "violence",
            _compile(r"\b(kill|murder|hurt|harm|attack)\s+(you|him|her|them)\b"),
            Severity.HIGH,
            "Violent content detected",
        ),
        PatternRule(
            "sexual_violence",
            _compile(r"\b(rape|assault)\b"),
            Severity.HIGH,
            "Inappropriate content detected",
        ),
        PatternRule(
            "controlled_substances",
            _compile(r"\b(cocaine|heroin|meth|mdma|weed|drugs)\b"),
            Severity.HIGH,
            "Drug-related content detected",
        ),
        PatternRule(
            "personal_info",
            _compile(
                r"\d{10,}",
                r"\b[\w.+-]+@[\w-]+\.[\w.-]+\b",
            ),
            Severity.MEDIUM,
            "Personal information detected",
        ),
    ]


class ImageScreener(Protocol):
    async def screen(self, url: str) -> bool:
        """True when the image is safe"""
        ...


class AllowAllImageScreener:
    async def screen(self, url: str) -> bool:
        return True


class ModerationGate:
    def __init__(self, rules: Optional[List[TextRule]] = None, image_screener: Optional[ImageScreener] = None):
        self.rules: List[TextRule] = rules if rules is not None else default_rules()
        self.image_screener: ImageScreener = image_screener or AllowAllImageScreener()

    def screen_text(self, text: str) -> Verdict:
        worst = ALLOW
        for rule in self.rules:
            verdict = rule.check(text)
            if verdict is None:
                continue
            if verdict.action == Action.REJECT:
                return verdict
            if verdict.severity.rank > worst.severity.rank:
                worst = verdict
        return worst

    async def screen_image(self, url: str) -> bool:
        """Default-allow: provider failures never block a send"""
        try:
            return await self.image_screener.screen(url)
        except Exception as e:
            logger.warning(f"Image screening unavailable for {url}: {e}")
            return True
