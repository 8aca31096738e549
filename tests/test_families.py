"""
Per-family answer parsing, round scoring and results
"""

import pytest

from kindred.core.errors import ConflictError, NotFoundError, ValidationError
from kindred.games.banks import Question, load_bank
from kindred.games.families import (
    FAMILIES,
    AnswerEntry,
    RoundRecord,
    check_ttl_answer,
    compatibility_level,
    dream_alignment,
    dream_board_results,
    get_family,
    nhie_results,
    parse_dream_card,
    parse_option_answer,
    parse_slider_answer,
    parse_ttl_answer,
    parse_voice_answer,
    score_nhie,
    score_spectrum,
    score_wyr,
    spectrum_outcome,
    spectrum_results,
    ttl_results,
    wwyd_headline,
    wyr_results,
)


def _q(category="general", index=0, **metadata):
    return Question(id=f"q-{index}", number=index + 1, category=category, text=f"Question {index}", metadata=metadata)


def _round(index, v1, v2, category="general", **metadata):
    entry = lambda v: AnswerEntry(v, timed_out=v is None)  # noqa: E731
    return RoundRecord(index, _q(category, index, **metadata), entry(v1), entry(v2))


@pytest.mark.parametrize(
    "v1,v2,expected",
    [
        (True, True, ("sharedExperience", (3, 3))),
        (False, False, ("innocentTogether", (1, 1))),
        (True, False, ("secretUnlocked", (5, 0))),
        (False, True, ("secretUnlocked", (0, 5))),
        (None, True, ("timedOut", (0, 0))),
    ],
)
def test_nhie_scoring(v1, v2, expected):
    assert score_nhie(_q(), v1, v2) == expected


def test_wyr_scoring_and_parsing():
    assert score_wyr(_q(), "A", "A") == ("matched", (1, 1))
    assert score_wyr(_q(), "A", "B") == ("different", (0, 0))
    assert score_wyr(_q(), None, "B") == ("timedOut", (0, 0))
    assert parse_option_answer(" b ") == "B"
    with pytest.raises(ValidationError):
        parse_option_answer("C")


@pytest.mark.parametrize(
    "v1,v2,points,outcome",
    [
        (50, 50, 10, "perfectMatch"),
        (40, 50, 9, "perfectMatch"),
        (0, 15, 9, "hotCompatibility"),
        (0, 35, 7, "goodChemistry"),
        (0, 45, 6, "worthConversation"),
        (0, 70, 3, "differentWavelengths"),
        (0, 100, 0, "oppositeEnds"),
    ],
)
def test_spectrum_scoring(v1, v2, points, outcome):
    assert score_spectrum(_q(), v1, v2) == (outcome, (points, points))


def test_spectrum_band_edges():
    assert spectrum_outcome(10) == "perfectMatch"
    assert spectrum_outcome(11) == "hotCompatibility"
    assert spectrum_outcome(71) == "oppositeEnds"


def test_slider_parsing():
    assert parse_slider_answer(33.6) == 34
    for bad in (True, "50", -1, 101):
        with pytest.raises(ValidationError):
            parse_slider_answer(bad)


def test_voice_answer_parsing():
    parsed = parse_voice_answer({"audioUrl": "/media/a.mp3", "duration": 12, "transcription": "  "})
    assert parsed == {"audioUrl": "/media/a.mp3", "duration": 12.0, "transcription": None}
    with pytest.raises(ValidationError):
        parse_voice_answer({"audioUrl": "", "duration": 12})
    with pytest.raises(ValidationError):
        parse_voice_answer({"audioUrl": "/media/a.mp3", "duration": 180.5})


def test_nhie_results():
    rounds = [
        _round(0, True, True, "past"),
        _round(1, True, False, "past"),
        _round(2, False, False, "dark_confessions"),
        _round(3, None, None, "dark_confessions"),
    ]
    results = nhie_results(rounds)

    assert results["player1Points"] == 3 + 5 + 1
    assert results["player2Points"] == 3 + 0 + 1
    assert results["totalTimedOut"] == 1
    assert results["compatibilityPercent"] == 67
    assert [s["questionIndex"] for s in results["conversationStarters"]] == [1]
    assert "committed" not in results["player1Badges"]
    breakdown = {c["category"]: c for c in results["categoryBreakdown"]}
    assert breakdown["dark_confessions"]["timedOut"] == 1


def test_wyr_results_use_option_labels():
    options = {"A": "Beach", "B": "Mountains"}
    rounds = [
        _round(0, "A", "A", "travel", options=options),
        _round(1, "A", "B", "travel", options=options),
        _round(2, "B", "B", "home", options=options),
        _round(3, None, "B", "home", options=options),
    ]
    results = wyr_results(rounds)

    assert results["matchedCount"] == 2
    assert results["compatibilityPercent"] == 67
    assert results["differences"][0]["player1Choice"] == "Beach"
    assert results["strongestCategory"] == "home"
    assert results["weakestCategory"] == "travel"


def test_spectrum_results_are_weighted():
    rounds = [
        _round(0, 50, 50, "kinks_intensity"),
        _round(1, 0, 100, "desire_drive"),
    ]
    results = spectrum_results(rounds)
    # (0.25 * 100 + 0.10 * 0) / 0.35
    assert results["overallCompatibility"] == 71
    assert results["biggestGaps"][0]["gap"] == 100


def test_compatibility_levels():
    assert compatibility_level(80) == "highly_compatible"
    assert compatibility_level(65) == "compatible"
    assert compatibility_level(50) == "needs_discussion"
    assert compatibility_level(49) == "significant_differences"
    assert wwyd_headline({}, None) is None
    assert wwyd_headline({"totalQuestions": 2}, {"compatibilityScore": 77}) == 77


def test_banks_cover_every_round():
    for family in FAMILIES.values():
        bank = load_bank(family.bank_file)
        assert len(bank) >= family.total_rounds
        assert len(set(bank.ids())) == len(bank)


def test_question_order_is_stable_per_session():
    wyr = FAMILIES["wyr"]
    assert wyr.question_order("abc") == wyr.question_order("abc")
    assert sorted(wyr.question_order("abc")) == sorted(wyr.bank.ids()[: wyr.total_rounds])
    nhie = FAMILIES["nhie"]
    assert nhie.question_order("x") == nhie.bank.ids()[: nhie.total_rounds]


def test_unknown_family():
    with pytest.raises(NotFoundError):
        get_family("chess")


def _card(card, priority="dream", timeline="when_right"):
    return {"cardId": card, "priority": priority, "timeline": timeline}


@pytest.mark.parametrize(
    "v1,v2,expected",
    [
        (_card("A", "flow", "someday"), _card("A", "flow", "someday"), (100, "aligned")),
        (_card("A", "flow", "someday"), _card("A", "flow", "cant_wait"), (90, "aligned")),
        (_card("A", "dream", "someday"), _card("A", "flow", "cant_wait"), (80, "aligned")),
        (_card("A", "flow", "someday"), _card("B", "flow", "cant_wait"), (70, "close")),
        (_card("A", "flow", "someday"), _card("B", "dream", "someday"), (65, "close")),
        (_card("A", "heart_set", "someday"), _card("B", "heart_set", "cant_wait"), (25, "needs_conversation")),
        (_card("A", "heart_set", "someday"), _card("B", "dream", "someday"), (55, "different")),
    ],
)
def test_dream_alignment(v1, v2, expected):
    assert dream_alignment(v1, v2) == expected


def test_dream_card_parsing():
    parsed = parse_dream_card({"cardId": " c ", "priority": "flow", "timeline": "someday"})
    assert parsed == _card("C", "flow", "someday")
    for bad in ({"cardId": "E", "priority": "flow", "timeline": "someday"}, {"cardId": "A", "priority": "maybe"}, "A"):
        with pytest.raises(ValidationError):
            parse_dream_card(bad)


def test_dream_board_results_use_card_titles():
    cards = {"A": {"title": "City Heartbeat"}, "B": {"title": "Suburb Sweet Spot"}}
    rounds = [
        _round(0, _card("A"), _card("A"), "our_home", title="Our Home", cards=cards),
        _round(1, _card("A", "heart_set"), _card("B", "heart_set", "someday"), "our_home", cards=cards),
        _round(2, None, _card("B"), "our_money", cards=cards),
    ]
    results = dream_board_results(rounds)

    assert results["overallAlignment"] == round((100 + 25) / 2)
    assert results["compatibilityPercent"] == results["overallAlignment"]
    assert results["alignedCount"] == 1
    assert results["differentCount"] == 1
    first = results["categoryAnalysis"][0]
    assert first["title"] == "Our Home"
    assert first["player1"]["title"] == "City Heartbeat"
    assert results["categoryAnalysis"][1]["player2"]["title"] == "Suburb Sweet Spot"


def _statements(lie):
    return {"statements": ["one", "two", "three"], "lieIndex": lie}


def _ttl_round(index, v1, v2, number):
    entry = lambda v: AnswerEntry(v, timed_out=v is None)  # noqa: E731
    if index % 2 == 0:
        question = Question(f"ttl-s{number}", index + 1, "travel", "Write", {"phase": "statements", "round": number})
    else:
        metadata = {"phase": "guess", "round": number, "statementsId": f"ttl-s{number}"}
        question = Question(f"ttl-g{number}", index + 1, "travel", "Guess", metadata)
    return RoundRecord(index, question, entry(v1), entry(v2))


def test_ttl_answer_parsing():
    assert parse_ttl_answer({"guess": 2}) == {"guess": 2}
    parsed = parse_ttl_answer({"statements": [" a ", "b", "c"], "lieIndex": 1})
    assert parsed == {"statements": ["a", "b", "c"], "lieIndex": 1}
    for bad in (
        {"guess": 3},
        {"guess": True},
        {"statements": ["a", "b"], "lieIndex": 0},
        {"statements": ["a", " ", "c"], "lieIndex": 0},
        {"statements": ["a", "b", "x" * 201], "lieIndex": 0},
        {"statements": ["a", "b", "c"], "lieIndex": 5},
    ):
        with pytest.raises(ValidationError):
            parse_ttl_answer(bad)


def test_ttl_results_match_guesses_to_partner_lies():
    rounds = [
        _ttl_round(0, _statements(0), _statements(2), 1),
        _ttl_round(1, {"guess": 2}, {"guess": 1}, 1),
        _ttl_round(2, _statements(1), _statements(1), 2),
        _ttl_round(3, {"guess": 1}, {"guess": 1}, 2),
        _ttl_round(4, _statements(0), None, 3),
        _ttl_round(5, {"guess": 0}, None, 3),
    ]
    results = ttl_results(rounds)

    assert results["totalRounds"] == 2
    assert results["player1Correct"] == 2
    assert results["player2Correct"] == 1
    assert results["winner"] == "player1"
    assert results["compatibilityPercent"] == 75
    assert results["rounds"][0]["player2Correct"] is False


def test_ttl_guess_waits_for_partner_statements():
    class Answer:
        def __init__(self, question_id, value):
            self.question_id = question_id
            self.value = value

    class Partner:
        user_id = "bob"

    class Session:
        answers = []

        def partner_of(self, user_id):
            return Partner()

        def answers_of(self, user_id):
            return list(self.answers)

    guess = Question("ttl-g01", 2, "childhood", "Guess", {"phase": "guess", "statementsId": "ttl-s01"})
    write = Question("ttl-s01", 1, "childhood", "Write", {"phase": "statements"})
    session = Session()

    with pytest.raises(ConflictError):
        check_ttl_answer(session, guess, "alice", {"guess": 0})
    with pytest.raises(ValidationError):
        check_ttl_answer(session, write, "alice", {"guess": 0})
    with pytest.raises(ValidationError):
        check_ttl_answer(session, guess, "alice", _statements(0))

    session.answers = [Answer("ttl-s01", _statements(1))]
    check_ttl_answer(session, guess, "alice", {"guess": 0})
    assert FAMILIES["two_truths_lie"].question_view(session, guess, "alice") == {
        "partnerStatements": ["one", "two", "three"]
    }
