"""
Game family descriptors

A family is data: its bank, round count, time budget, answer parser, per-round
scoring and results function. The engine runs one state machine for all of
them. Results are pure functions of the answer log and the bank.
"""

import random
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

from kindred.core.errors import ConflictError, NotFoundError, ValidationError
from kindred.games.banks import Question, QuestionBank, load_bank


@dataclass(frozen=True)
class AnswerEntry:
    value: Any
    timed_out: bool = False
    response_time_ms: Optional[int] = None

    @property
    def answered(self) -> bool:
        return not self.timed_out and self.value is not None


@dataclass(frozen=True)
class RoundRecord:
    index: int
    question: Question
    player1: Optional[AnswerEntry]
    player2: Optional[AnswerEntry]

    @property
    def values(self) -> Tuple[Any, Any]:
        return (
            self.player1.value if self.player1 and self.player1.answered else None,
            self.player2.value if self.player2 and self.player2.answered else None,
        )


RoundScore = Tuple[str, Tuple[int, int]]


@dataclass(frozen=True)
class FamilyDescriptor:
    key: str
    name: str
    dimension: str
    bank_file: str
    total_rounds: int
    round_seconds: Optional[float]
    invitation_ttl_hours: int
    discussion_policy: str
    parse_answer: Callable[[Any], Any]
    compute_results: Callable[[List[RoundRecord]], Dict[str, Any]]
    fallback_insights: Callable[[Dict[str, Any]], Dict[str, Any]]
    describe_answer: Callable[[Any], str]
    score_round: Optional[Callable[[Question, Any, Any], RoundScore]] = None
    counters: Callable[[Any], Dict[str, int]] = field(default=lambda value: {})
    headline_score: Callable[[Dict[str, Any], Optional[Dict[str, Any]]], Optional[int]] = field(
        default=lambda results, insights: (results or {}).get("compatibilityPercent")
    )
    shuffle_questions: bool = False
    max_voice_notes: int = 20
    max_answer_seconds: Optional[float] = None
    check_answer: Optional[Callable[[Any, Question, str, Any], None]] = None
    question_view: Optional[Callable[[Any, Question, str], Dict[str, Any]]] = None

    @property
    def is_async(self) -> bool:
        return self.round_seconds is None

    @property
    def bank(self) -> QuestionBank:
        return load_bank(self.bank_file)

    def event(self, name: str) -> str:
        return f"game:{self.key}:{name}"

    def question_order(self, session_id: str) -> List[str]:
        ids = self.bank.ids()[: self.total_rounds]
        if self.shuffle_questions:
            random.Random(session_id).shuffle(ids)
        return ids


def answer_log(session, bank: QuestionBank) -> List[RoundRecord]:
    """Flatten a session's answers into per-round records, in question order"""
    rounds = []
    for index, question_id in enumerate(session.question_order):
        entries = []
        for slot in (1, 2):
            player = session.player_in_slot(slot)
            answer = session.answer_for(player.user_id, index)
            entries.append(
                None
                if answer is None
                else AnswerEntry(answer.value, answer.timed_out, answer.response_time_ms)
            )
        rounds.append(RoundRecord(index, bank.get(question_id), entries[0], entries[1]))
    return rounds


def _percent(part: int, whole: int) -> int:
    return round(part / whole * 100) if whole else 0


def _answers_of(rounds: List[RoundRecord], slot: int) -> List[AnswerEntry]:
    return [e for e in (r.player1 if slot == 1 else r.player2 for r in rounds) if e is not None]


# ----------------------------------------------------------------------
# Never Have I Ever
# ----------------------------------------------------------------------
def parse_bool_answer(value: Any) -> bool:
    if not isinstance(value, bool):
        raise ValidationError("Answer must be true or false")
    return value


def score_nhie(question: Question, v1: Optional[bool], v2: Optional[bool]) -> RoundScore:
    if v1 is None or v2 is None:
        return "timedOut", (0, 0)
    if v1 and v2:
        return "sharedExperience", (3, 3)
    if not v1 and not v2:
        return "innocentTogether", (1, 1)
    return "secretUnlocked", (5, 0) if v1 else (0, 5)


def _nhie_badges(rounds: List[RoundRecord], slot: int) -> List[str]:
    entries = _answers_of(rounds, slot)
    yes = sum(1 for e in entries if e.answered and e.value is True)
    no = sum(1 for e in entries if e.answered and e.value is False)

    def yes_in(category: str) -> int:
        total = 0
        for r in rounds:
            entry = r.player1 if slot == 1 else r.player2
            if r.question.category == category and entry is not None and entry.answered and entry.value is True:
                total += 1
        return total

    badges = []
    if yes >= 20:
        badges.append("experienced")
    if no >= 20:
        badges.append("pure_soul")
    if yes_in("dark_confessions") >= 3:
        badges.append("open_book")
    if yes_in("physical_intimacy") >= 3:
        badges.append("spicy_past")
    timed = [e.response_time_ms for e in entries if e.answered and e.response_time_ms is not None]
    if timed and sum(timed) / len(timed) < 5000:
        badges.append("quick_draw")
    if not any(e.timed_out for e in entries):
        badges.append("committed")
    return badges


def nhie_results(rounds: List[RoundRecord]) -> Dict[str, Any]:
    totals = {"sharedExperience": 0, "innocentTogether": 0, "secretUnlocked": 0, "timedOut": 0}
    points = [0, 0]
    categories: Dict[str, Dict[str, Any]] = {}
    starters = []
    for r in rounds:
        v1, v2 = r.values
        outcome, (p1, p2) = score_nhie(r.question, v1, v2)
        totals[outcome] += 1
        points[0] += p1
        points[1] += p2

        stats = categories.setdefault(
            r.question.category,
            {"category": r.question.category, "totalQuestions": 0, "bothHave": 0, "bothHavent": 0, "different": 0, "timedOut": 0},
        )
        stats["totalQuestions"] += 1
        if outcome == "timedOut":
            stats["timedOut"] += 1
        elif outcome == "sharedExperience":
            stats["bothHave"] += 1
        elif outcome == "innocentTogether":
            stats["bothHavent"] += 1
        else:
            stats["different"] += 1
            starters.append(
                {
                    "questionIndex": r.index,
                    "questionId": r.question.id,
                    "text": r.question.text,
                    "player1Answer": v1,
                    "player2Answer": v2,
                }
            )

    both = totals["sharedExperience"] + totals["innocentTogether"] + totals["secretUnlocked"]
    return {
        "player1Points": points[0],
        "player2Points": points[1],
        "totalSharedExperiences": totals["sharedExperience"],
        "totalInnocentTogether": totals["innocentTogether"],
        "totalSecretsUnlocked": totals["secretUnlocked"],
        "totalTimedOut": totals["timedOut"],
        "categoryBreakdown": list(categories.values()),
        "player1Badges": _nhie_badges(rounds, 1),
        "player2Badges": _nhie_badges(rounds, 2),
        "conversationStarters": starters[:10],
        "compatibilityPercent": _percent(totals["sharedExperience"] + totals["innocentTogether"], both),
    }


def nhie_fallback(results: Dict[str, Any]) -> Dict[str, Any]:
    starters = results.get("conversationStarters", [])
    return {
        "summary": (
            f"You shared {results.get('totalSharedExperiences', 0)} experiences and "
            f"unlocked {results.get('totalSecretsUnlocked', 0)} secrets."
        ),
        "highlights": [
            f"{results.get('totalInnocentTogether', 0)} things neither of you has done yet",
            f"Badges earned: {', '.join(results.get('player1Badges', []) + results.get('player2Badges', [])) or 'none'}",
        ],
        "differences": [s["text"] for s in starters[:3]],
        "tip": "Pick one of the answers you differed on and ask the story behind it.",
        "compatibilityScore": results.get("compatibilityPercent"),
    }


def describe_bool(value: Any) -> str:
    if value is None:
        return "no answer"
    return "I have" if value else "I haven't"


# ----------------------------------------------------------------------
# Would You Rather
# ----------------------------------------------------------------------
def parse_option_answer(value: Any) -> str:
    if not isinstance(value, str) or value.strip().upper() not in ("A", "B"):
        raise ValidationError("Answer must be 'A' or 'B'")
    return value.strip().upper()


def score_wyr(question: Question, v1: Optional[str], v2: Optional[str]) -> RoundScore:
    if v1 is None or v2 is None:
        return "timedOut", (0, 0)
    if v1 == v2:
        return "matched", (1, 1)
    return "different", (0, 0)


def wyr_counters(value: str) -> Dict[str, int]:
    return {f"option{value}": 1}


def wyr_results(rounds: List[RoundRecord]) -> Dict[str, Any]:
    matched = different = timed_out = 0
    categories: Dict[str, Dict[str, Any]] = {}
    differences = []
    for r in rounds:
        v1, v2 = r.values
        stats = categories.setdefault(
            r.question.category,
            {
                "category": r.question.category,
                "totalQuestions": 0,
                "matchedAnswers": 0,
                "differentAnswers": 0,
                "bothTimedOut": 0,
                "compatibilityPercent": 0,
            },
        )
        stats["totalQuestions"] += 1
        outcome, _ = score_wyr(r.question, v1, v2)
        if outcome == "matched":
            matched += 1
            stats["matchedAnswers"] += 1
        elif outcome == "different":
            different += 1
            stats["differentAnswers"] += 1
            options = r.question.metadata.get("options", {})
            differences.append(
                {
                    "questionIndex": r.index,
                    "questionId": r.question.id,
                    "text": r.question.text,
                    "player1Choice": options.get(v1, v1),
                    "player2Choice": options.get(v2, v2),
                }
            )
        else:
            timed_out += 1
            if v1 is None and v2 is None:
                stats["bothTimedOut"] += 1

    for stats in categories.values():
        stats["compatibilityPercent"] = _percent(
            stats["matchedAnswers"], stats["matchedAnswers"] + stats["differentAnswers"]
        )
    scored = [s for s in categories.values() if s["matchedAnswers"] + s["differentAnswers"] > 0]
    strongest = max(scored, key=lambda s: s["compatibilityPercent"], default=None)
    weakest = min(scored, key=lambda s: s["compatibilityPercent"], default=None)

    return {
        "player1Points": matched,
        "player2Points": matched,
        "matchedCount": matched,
        "differentCount": different,
        "timedOutCount": timed_out,
        "bothAnswered": matched + different,
        "compatibilityPercent": _percent(matched, matched + different),
        "categoryBreakdown": list(categories.values()),
        "strongestCategory": strongest["category"] if strongest else None,
        "weakestCategory": weakest["category"] if weakest else None,
        "differences": differences[:10],
    }


def wyr_fallback(results: Dict[str, Any]) -> Dict[str, Any]:
    percent = results.get("compatibilityPercent", 0)
    return {
        "summary": f"You picked the same option {results.get('matchedCount', 0)} times ({percent}% agreement).",
        "highlights": [f"Most aligned on {results['strongestCategory']}"] if results.get("strongestCategory") else [],
        "differences": [f"Most different on {results['weakestCategory']}"] if results.get("weakestCategory") else [],
        "tip": "Talk through one choice where you split and what drove each pick.",
        "compatibilityScore": percent,
    }


def describe_option(value: Any) -> str:
    return f"option {value}" if value else "no answer"


# ----------------------------------------------------------------------
# Intimacy Spectrum
# ----------------------------------------------------------------------
SPECTRUM_WEIGHTS = {
    "desire_drive": 0.10,
    "initiation_power": 0.15,
    "turn_ons": 0.15,
    "communication": 0.15,
    "fantasy_roleplay": 0.20,
    "kinks_intensity": 0.25,
}

SPECTRUM_BANDS = (
    (10, "perfectMatch"),
    (20, "hotCompatibility"),
    (35, "goodChemistry"),
    (50, "worthConversation"),
    (70, "differentWavelengths"),
)


def parse_slider_answer(value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValidationError("Answer must be a number between 0 and 100")
    if not 0 <= value <= 100:
        raise ValidationError("Answer must be a number between 0 and 100")
    return int(round(value))


def spectrum_outcome(gap: int) -> str:
    for limit, label in SPECTRUM_BANDS:
        if gap <= limit:
            return label
    return "oppositeEnds"


def score_spectrum(question: Question, v1: Optional[int], v2: Optional[int]) -> RoundScore:
    if v1 is None or v2 is None:
        return "timedOut", (0, 0)
    gap = abs(v1 - v2)
    # half-up rounding of (100 - gap) / 10
    points = (100 - gap + 5) // 10
    return spectrum_outcome(gap), (points, points)


def spectrum_results(rounds: List[RoundRecord]) -> Dict[str, Any]:
    points = [0, 0]
    outcomes: Dict[str, int] = {}
    gaps_by_category: Dict[str, List[int]] = {}
    gaps = []
    for r in rounds:
        v1, v2 = r.values
        outcome, (p1, p2) = score_spectrum(r.question, v1, v2)
        outcomes[outcome] = outcomes.get(outcome, 0) + 1
        points[0] += p1
        points[1] += p2
        if outcome == "timedOut":
            continue
        gap = abs(v1 - v2)
        gaps_by_category.setdefault(r.question.category, []).append(gap)
        gaps.append(
            {
                "questionIndex": r.index,
                "questionId": r.question.id,
                "text": r.question.text,
                "player1Value": v1,
                "player2Value": v2,
                "gap": gap,
            }
        )

    breakdown = []
    weighted = weight_total = 0.0
    for category, values in gaps_by_category.items():
        average = sum(values) / len(values)
        compatibility = round(100 - average)
        breakdown.append(
            {
                "category": category,
                "questionsAnswered": len(values),
                "averageGap": round(average, 1),
                "compatibility": compatibility,
            }
        )
        weight = SPECTRUM_WEIGHTS.get(category, 0.0)
        weighted += weight * compatibility
        weight_total += weight

    overall = round(weighted / weight_total) if weight_total else 0
    return {
        "player1Points": points[0],
        "player2Points": points[1],
        "outcomes": outcomes,
        "categoryBreakdown": breakdown,
        "overallCompatibility": overall,
        "compatibilityPercent": overall,
        "biggestGaps": sorted(gaps, key=lambda g: (-g["gap"], g["questionIndex"]))[:5],
    }


def spectrum_fallback(results: Dict[str, Any]) -> Dict[str, Any]:
    breakdown = sorted(results.get("categoryBreakdown", []), key=lambda c: -c["compatibility"])
    return {
        "summary": f"Your overall intimacy alignment is {results.get('overallCompatibility', 0)}%.",
        "highlights": [f"Closest on {c['category']}" for c in breakdown[:2]],
        "differences": [g["text"] for g in results.get("biggestGaps", [])[:3]],
        "tip": "Start with the biggest gap and ask what would feel good to both of you.",
        "compatibilityScore": results.get("overallCompatibility"),
    }


def describe_slider(value: Any) -> str:
    return f"{value}/100" if value is not None else "no answer"


# ----------------------------------------------------------------------
# What Would You Do
# ----------------------------------------------------------------------
WWYD_MAX_ANSWER_SECONDS = 180
WWYD_FALLBACK_SCORE = 50


def parse_voice_answer(value: Any) -> Dict[str, Any]:
    if not isinstance(value, dict):
        raise ValidationError("Answer must include audioUrl and duration")
    audio_url = value.get("audioUrl")
    duration = value.get("duration")
    if not isinstance(audio_url, str) or not audio_url:
        raise ValidationError("audioUrl is required")
    if isinstance(duration, bool) or not isinstance(duration, (int, float)) or duration <= 0:
        raise ValidationError("duration must be a positive number of seconds")
    if duration > WWYD_MAX_ANSWER_SECONDS:
        raise ValidationError(f"Voice answers are limited to {WWYD_MAX_ANSWER_SECONDS} seconds")
    transcription = value.get("transcription")
    return {
        "audioUrl": audio_url,
        "duration": float(duration),
        "transcription": transcription if isinstance(transcription, str) and transcription.strip() else None,
    }


def compatibility_level(score: int) -> str:
    if score >= 80:
        return "highly_compatible"
    if score >= 65:
        return "compatible"
    if score >= 50:
        return "needs_discussion"
    return "significant_differences"


def wwyd_results(rounds: List[RoundRecord]) -> Dict[str, Any]:
    coverage: Dict[str, Dict[str, Any]] = {}
    answered = [0, 0]
    for r in rounds:
        v1, v2 = r.values
        stats = coverage.setdefault(
            r.question.category,
            {"category": r.question.category, "questions": 0, "player1Answered": 0, "player2Answered": 0},
        )
        stats["questions"] += 1
        if v1 is not None:
            answered[0] += 1
            stats["player1Answered"] += 1
        if v2 is not None:
            answered[1] += 1
            stats["player2Answered"] += 1
    return {
        "totalQuestions": len(rounds),
        "player1Answered": answered[0],
        "player2Answered": answered[1],
        "categoryCoverage": list(coverage.values()),
    }


def wwyd_headline(results: Dict[str, Any], insights: Optional[Dict[str, Any]]) -> Optional[int]:
    if not results:
        return None
    score = (insights or {}).get("compatibilityScore")
    return int(score) if isinstance(score, (int, float)) else WWYD_FALLBACK_SCORE


def wwyd_fallback(results: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "summary": "You both answered every scenario. Listen to each other's answers together.",
        "highlights": [f"{c['category']}: {c['questions']} scenarios" for c in results.get("categoryCoverage", [])[:3]],
        "differences": [],
        "tip": "Pick the scenario that surprised you most and talk it through.",
        "compatibilityScore": WWYD_FALLBACK_SCORE,
    }


def describe_voice(value: Any) -> str:
    if not value:
        return "no answer"
    return value.get("transcription") or f"voice answer ({value.get('duration', 0):.0f}s, not transcribed)"


# ----------------------------------------------------------------------
# Dream Board
# ----------------------------------------------------------------------
DREAM_CARDS = ("A", "B", "C", "D")
DREAM_PRIORITIES = ("heart_set", "dream", "flow")
DREAM_TIMELINES = ("cant_wait", "when_right", "someday")


def parse_dream_card(value: Any) -> Dict[str, str]:
    if not isinstance(value, dict):
        raise ValidationError("Answer must include cardId, priority and timeline")
    card = value.get("cardId")
    if not isinstance(card, str) or card.strip().upper() not in DREAM_CARDS:
        raise ValidationError("cardId must be one of A, B, C or D")
    priority = value.get("priority")
    if priority not in DREAM_PRIORITIES:
        raise ValidationError(f"priority must be one of {', '.join(DREAM_PRIORITIES)}")
    timeline = value.get("timeline")
    if timeline not in DREAM_TIMELINES:
        raise ValidationError(f"timeline must be one of {', '.join(DREAM_TIMELINES)}")
    return {"cardId": card.strip().upper(), "priority": priority, "timeline": timeline}


def dream_alignment(v1: Dict[str, str], v2: Dict[str, str]) -> Tuple[int, str]:
    """Score one category: (0-100, aligned | close | different | needs_conversation)"""
    if v1["cardId"] == v2["cardId"]:
        extras = (v1["priority"] == v2["priority"]) + (v1["timeline"] == v2["timeline"])
        return 80 + 10 * extras, "aligned"

    priorities = {v1["priority"], v2["priority"]}
    if priorities == {"flow"}:
        score, level = 70, "close"
    elif "flow" in priorities:
        score, level = 55, "close"
    elif priorities == {"heart_set"}:
        score, level = 25, "needs_conversation"
    else:
        score, level = 45, "different"
    if v1["timeline"] == v2["timeline"]:
        score = min(100, score + 10)
    return score, level


def _card(question: Question, card_id: Optional[str]) -> Dict[str, Any]:
    card = question.metadata.get("cards", {}).get(card_id, {})
    return {"cardId": card_id, "title": card.get("title", card_id), "emoji": card.get("emoji")}


def dream_board_results(rounds: List[RoundRecord]) -> Dict[str, Any]:
    counts = {"aligned": 0, "close": 0, "different": 0, "needs_conversation": 0}
    analysis = []
    scores = []
    for r in rounds:
        v1, v2 = r.values
        if v1 is None or v2 is None:
            continue
        score, level = dream_alignment(v1, v2)
        scores.append(score)
        counts[level] += 1
        analysis.append(
            {
                "questionIndex": r.index,
                "category": r.question.category,
                "title": r.question.metadata.get("title", r.question.category),
                "score": score,
                "level": level,
                "player1": {**_card(r.question, v1["cardId"]), "priority": v1["priority"], "timeline": v1["timeline"]},
                "player2": {**_card(r.question, v2["cardId"]), "priority": v2["priority"], "timeline": v2["timeline"]},
                "insight": r.question.metadata.get("insight"),
            }
        )

    overall = round(sum(scores) / len(scores)) if scores else 0
    return {
        "overallAlignment": overall,
        "alignedCount": counts["aligned"],
        "closeCount": counts["close"],
        "differentCount": counts["different"] + counts["needs_conversation"],
        "needsConversationCount": counts["needs_conversation"],
        "categoryAnalysis": analysis,
        "compatibilityPercent": overall,
    }


def dream_board_fallback(results: Dict[str, Any]) -> Dict[str, Any]:
    overall = results.get("overallAlignment", 0)
    analysis = results.get("categoryAnalysis", [])
    aligned = [c["title"] for c in analysis if c["level"] == "aligned"]
    apart = [c["title"] for c in sorted(analysis, key=lambda c: c["score"]) if c["level"] != "aligned"]
    if overall >= 70:
        summary = f"Your visions line up well: {overall}% alignment across {len(analysis)} life areas."
    elif overall >= 50:
        summary = f"You share a lot of the same picture ({overall}%), with a few areas to talk through."
    else:
        summary = f"You see the future differently in several areas ({overall}%). That is worth exploring early."
    return {
        "summary": summary,
        "highlights": [f"Both dreaming the same about {title}" for title in aligned[:3]],
        "differences": apart[:3],
        "tip": (
            f"Start with {apart[0]} and share what draws you to your card."
            if apart
            else "Pick the card you are most excited about and plan a first step together."
        ),
        "compatibilityScore": overall,
    }


def describe_dream_card(value: Any) -> str:
    if not value:
        return "no answer"
    return f"card {value['cardId']} ({value['priority']}, {value['timeline']})"


# ----------------------------------------------------------------------
# Two Truths & a Lie
# ----------------------------------------------------------------------
TTL_STATEMENT_MAX_LENGTH = 200


def parse_ttl_answer(value: Any) -> Dict[str, Any]:
    if not isinstance(value, dict):
        raise ValidationError("Answer must include statements and lieIndex, or a guess")
    if "guess" in value:
        guess = value["guess"]
        if isinstance(guess, bool) or guess not in (0, 1, 2):
            raise ValidationError("guess must be 0, 1 or 2")
        return {"guess": int(guess)}

    statements = value.get("statements")
    if not isinstance(statements, list) or len(statements) != 3:
        raise ValidationError("Write exactly three statements")
    cleaned = []
    for statement in statements:
        if not isinstance(statement, str) or not statement.strip():
            raise ValidationError("Statements cannot be empty")
        if len(statement.strip()) > TTL_STATEMENT_MAX_LENGTH:
            raise ValidationError(f"Statements are limited to {TTL_STATEMENT_MAX_LENGTH} characters")
        cleaned.append(statement.strip())
    lie = value.get("lieIndex")
    if isinstance(lie, bool) or lie not in (0, 1, 2):
        raise ValidationError("lieIndex must be 0, 1 or 2")
    return {"statements": cleaned, "lieIndex": int(lie)}


def _partner_statements(session, question: Question, user_id: str) -> Optional[Dict[str, Any]]:
    partner = session.partner_of(user_id)
    source = question.metadata.get("statementsId")
    if partner is None or source is None:
        return None
    return next(
        (a.value for a in session.answers_of(partner.user_id) if a.question_id == source),
        None,
    )


def check_ttl_answer(session, question: Question, user_id: str, parsed: Dict[str, Any]) -> None:
    phase = question.metadata.get("phase")
    if phase == "guess":
        if "guess" not in parsed:
            raise ValidationError("This round asks for a guess")
        if _partner_statements(session, question, user_id) is None:
            raise ConflictError("Your partner has not written this round yet")
    elif "guess" in parsed:
        raise ValidationError("This round asks for three statements")


def ttl_question_view(session, question: Question, user_id: str) -> Dict[str, Any]:
    if question.metadata.get("phase") != "guess":
        return {}
    written = _partner_statements(session, question, user_id)
    return {"partnerStatements": list(written["statements"]) if written else None}


def ttl_results(rounds: List[RoundRecord]) -> Dict[str, Any]:
    written = {r.question.id: r.values for r in rounds if r.question.metadata.get("phase") == "statements"}
    correct = [0, 0]
    played = 0
    breakdown = []
    for r in rounds:
        source = r.question.metadata.get("statementsId")
        if source is None:
            continue
        g1, g2 = r.values
        s1, s2 = written.get(source, (None, None))
        if None in (g1, g2, s1, s2):
            continue
        played += 1
        # each player guesses the partner's lie
        p1_right = g1["guess"] == s2["lieIndex"]
        p2_right = g2["guess"] == s1["lieIndex"]
        correct[0] += p1_right
        correct[1] += p2_right
        breakdown.append(
            {
                "round": r.question.metadata.get("round"),
                "category": r.question.category,
                "player1Statements": s1["statements"],
                "player1Lie": s1["lieIndex"],
                "player2Statements": s2["statements"],
                "player2Lie": s2["lieIndex"],
                "player1Guess": g1["guess"],
                "player2Guess": g2["guess"],
                "player1Correct": p1_right,
                "player2Correct": p2_right,
            }
        )

    if correct[0] > correct[1]:
        winner = "player1"
    elif correct[1] > correct[0]:
        winner = "player2"
    else:
        winner = "tie"
    return {
        "totalRounds": played,
        "player1Correct": correct[0],
        "player2Correct": correct[1],
        "winner": winner,
        "rounds": breakdown,
        "compatibilityPercent": _percent(correct[0] + correct[1], 2 * played),
    }


def ttl_fallback(results: Dict[str, Any]) -> Dict[str, Any]:
    played = results.get("totalRounds", 0)
    fooled = [r for r in results.get("rounds", []) if not (r["player1Correct"] and r["player2Correct"])]
    return {
        "summary": (
            f"Across {played} rounds you spotted {results.get('player1Correct', 0)} and "
            f"{results.get('player2Correct', 0)} of each other's lies."
        ),
        "highlights": [f"Winner: {results.get('winner', 'tie')}"],
        "differences": [f"Fooled on {r['category']}" for r in fooled[:3]],
        "tip": "Ask for the real story behind the lie that fooled you.",
        "compatibilityScore": results.get("compatibilityPercent"),
    }


def describe_ttl(value: Any) -> str:
    if not value:
        return "no answer"
    if "guess" in value:
        return f"guessed statement {value['guess'] + 1} is the lie"
    statements = "; ".join(value["statements"])
    return f"{statements} (lie: statement {value['lieIndex'] + 1})"


# ----------------------------------------------------------------------
FAMILIES: Dict[str, FamilyDescriptor] = {
    "nhie": FamilyDescriptor(
        key="nhie",
        name="Never Have I Ever",
        dimension="experience",
        bank_file="nhie.json",
        total_rounds=30,
        round_seconds=15.0,
        invitation_ttl_hours=24,
        discussion_policy="on_voice_note",
        parse_answer=parse_bool_answer,
        score_round=score_nhie,
        counters=lambda value: {"yes": 1} if value else {"no": 1},
        compute_results=nhie_results,
        fallback_insights=nhie_fallback,
        describe_answer=describe_bool,
    ),
    "wyr": FamilyDescriptor(
        key="wyr",
        name="Would You Rather",
        dimension="lifestyle",
        bank_file="wyr.json",
        total_rounds=50,
        round_seconds=15.0,
        invitation_ttl_hours=24,
        discussion_policy="on_completion",
        parse_answer=parse_option_answer,
        score_round=score_wyr,
        counters=wyr_counters,
        compute_results=wyr_results,
        fallback_insights=wyr_fallback,
        describe_answer=describe_option,
        shuffle_questions=True,
    ),
    "spectrum": FamilyDescriptor(
        key="spectrum",
        name="Intimacy Spectrum",
        dimension="physical",
        bank_file="spectrum.json",
        total_rounds=30,
        round_seconds=20.0,
        invitation_ttl_hours=24,
        discussion_policy="on_voice_note",
        parse_answer=parse_slider_answer,
        score_round=score_spectrum,
        compute_results=spectrum_results,
        fallback_insights=spectrum_fallback,
        describe_answer=describe_slider,
    ),
    "wwyd": FamilyDescriptor(
        key="wwyd",
        name="What Would You Do",
        dimension="character",
        bank_file="wwyd.json",
        total_rounds=15,
        round_seconds=None,
        invitation_ttl_hours=72,
        discussion_policy="on_voice_note",
        parse_answer=parse_voice_answer,
        compute_results=wwyd_results,
        fallback_insights=wwyd_fallback,
        describe_answer=describe_voice,
        headline_score=wwyd_headline,
        max_answer_seconds=WWYD_MAX_ANSWER_SECONDS,
    ),
    "dream_board": FamilyDescriptor(
        key="dream_board",
        name="Dream Board",
        dimension="future",
        bank_file="dream_board.json",
        total_rounds=10,
        round_seconds=None,
        invitation_ttl_hours=48,
        discussion_policy="on_voice_note",
        parse_answer=parse_dream_card,
        compute_results=dream_board_results,
        fallback_insights=dream_board_fallback,
        describe_answer=describe_dream_card,
    ),
    "two_truths_lie": FamilyDescriptor(
        key="two_truths_lie",
        name="Two Truths & a Lie",
        dimension="intuition",
        bank_file="two_truths_lie.json",
        total_rounds=20,
        round_seconds=None,
        invitation_ttl_hours=72,
        discussion_policy="on_voice_note",
        parse_answer=parse_ttl_answer,
        compute_results=ttl_results,
        fallback_insights=ttl_fallback,
        describe_answer=describe_ttl,
        check_answer=check_ttl_answer,
        question_view=ttl_question_view,
    ),
}


def get_family(key: str, families: Optional[Dict[str, FamilyDescriptor]] = None) -> FamilyDescriptor:
    try:
        return (families or FAMILIES)[key]
    except KeyError:
        raise NotFoundError(f"Unknown game: {key}") from None
