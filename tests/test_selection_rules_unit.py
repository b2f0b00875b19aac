import logging
import random

import pytest

from iiif_random_core.selection_rules import (
    AtLeast,
    Exact,
    InvalidAction,
    Last,
    Numeric,
    RandomAll,
    RandomRange,
    Range,
    RuleEngine,
    RuleWarningRegistry,
    parse_action,
    parse_condition,
    parse_rules,
)


class _LowestRandom:
    """Deterministic stand-in that always returns the lower bound and records calls."""

    def __init__(self):
        self.calls: list[tuple[int, int]] = []

    def randint(self, a, b):
        self.calls.append((a, b))
        return a


def _engine(seed=1234):
    return RuleEngine(random.Random(seed), RuleWarningRegistry())


def _warnings(caplog):
    return [r for r in caplog.records if r.levelno == logging.WARNING and "Selection rules" in r.getMessage()]


def test_no_canvases_selects_nothing():
    """Ensure an empty manifest never produces an index."""
    assert _engine().select_index(0, "1+ => 1") is None
    assert _engine().select_canvas([], "1+ => 1") is None


@pytest.mark.parametrize(
    "rule_text",
    [
        "",
        "1 => 1\n2 => 2\n3+ => random(2-last-1)",
        "1+ => random(1-last-5)",
        "1-3 => 99\n2+ => last",
        "garbage\nx => y\n5 => random(9-2)",
        "1+ => RANDOM",
    ],
)
def test_selection_always_in_range(rule_text):
    """Ensure any rule text yields an index inside [0, canvas_count)."""
    engine = _engine()
    for canvas_count in range(1, 25):
        for _ in range(5):
            index = engine.select_index(canvas_count, rule_text)
            assert 0 <= index < canvas_count


def test_exact_condition_numeric_action():
    """'5 => 3' picks the third canvas of five."""
    assert _engine().select_index(5, "5 => 3") == 2


def test_range_condition_first_match_wins():
    """'1-5 => 2' matches four canvases before '6+' is considered."""
    assert _engine().select_index(4, "1-5 => 2\n6+ => 1") == 1


def test_at_least_condition_with_last():
    """'11+ => last' selects the last of twelve canvases."""
    assert _engine().select_index(12, "1-10 => 1\n11+ => last") == 11


def test_random_range_stays_within_bounds():
    """'random(3-7)' only ever yields 1-based canvases 3..7."""
    engine = _engine()
    picks = {engine.select_index(10, "10 => random(3-7)") for _ in range(200)}
    assert picks <= set(range(2, 7))


def test_random_last_offset_excludes_last():
    """'random(1-last-1)' never picks the final canvas."""
    engine = _engine()
    picks = {engine.select_index(10, "10+ => random(1-last-1)") for _ in range(200)}
    assert 9 not in picks
    assert picks <= set(range(0, 9))


def test_random_excluding_first_and_last():
    """'random(2-last-1)' stays within the inner canvases."""
    engine = _engine()
    picks = {engine.select_index(10, "10+ => random(2-last-1)") for _ in range(200)}
    assert picks <= set(range(1, 9))


def test_random_range_is_clamped_to_canvas_bounds():
    """Bounds beyond the manifest are clamped instead of failing."""
    rng = _LowestRandom()
    engine = RuleEngine(rng, RuleWarningRegistry())
    assert engine.select_index(4, "1+ => random(2-20)") == 1
    assert rng.calls == [(1, 3)]


def test_no_matching_rule_falls_back_to_global_random():
    """Unmatched conditions fall back to a random pick over all canvases."""
    rng = _LowestRandom()
    engine = RuleEngine(rng, RuleWarningRegistry())
    assert engine.select_index(8, "1-5 => 1\n10+ => 1") == 0
    assert rng.calls == [(0, 7)]


def test_empty_random_range_falls_back_silently(caplog):
    """An inverted random range continues to the fallback without a warning."""
    rng = _LowestRandom()
    engine = RuleEngine(rng, RuleWarningRegistry())
    with caplog.at_level(logging.WARNING):
        assert engine.select_index(5, "5 => random(4-2)") == 0
    assert rng.calls == [(0, 4)]
    assert _warnings(caplog) == []


def test_out_of_range_numeric_continues_to_next_rule(caplog):
    """A numeric action past the last canvas is skipped quietly."""
    with caplog.at_level(logging.WARNING):
        assert _engine().select_index(4, "4 => 99\n4 => last") == 3
    assert _warnings(caplog) == []


def test_all_invalid_actions_fall_back_to_random():
    """Zero and inverted ranges never raise and still return a canvas."""
    assert 0 <= _engine().select_index(4, "4 => 0\n4 => random(10-9)") < 4


def test_actions_are_case_insensitive():
    """Action keywords match regardless of case."""
    assert _engine().select_index(6, "6 => LAST") == 5
    assert _engine().select_index(6, "6 => Random(6-Last)") == 5


def test_crlf_and_blank_lines_are_ignored():
    """Windows line endings and empty lines do not break parsing."""
    assert _engine().select_index(3, "\r\n\r\n1 => 1\r\n\r\n3 => 2\r\n") == 1


def test_parse_rules_builds_typed_rules():
    """Ensure each supported syntax maps to its condition and action type."""
    rules, warnings = parse_rules("5 => 3\n1-4 => last\n10+ => random\n2+ => random(2-last-1)\n3 => random(1-2)")
    assert warnings == []
    assert [r.condition for r in rules] == [Exact(5), Range(1, 4), AtLeast(10), AtLeast(2), Exact(3)]
    assert [r.action for r in rules] == [
        Numeric(3),
        Last(),
        RandomAll(),
        RandomRange(2, None, 1),
        RandomRange(1, 2, 0),
    ]


def test_parse_rules_reports_bad_lines():
    """Lines without '=>' and malformed conditions become warnings and are skipped."""
    rules, warnings = parse_rules("no separator here\n1 - 4 => 1\nabc => last\n2 => 1")
    assert len(rules) == 1
    assert warnings == [
        'Invalid rule format (missing "=>"): no separator here',
        "Invalid condition: 1 - 4",
        "Invalid condition: abc",
    ]


def test_parse_action_invalid_forms():
    """Unknown keywords and broken random() syntax are kept as invalid actions."""
    assert parse_action("first") == InvalidAction("first", "Unknown action: first")
    assert parse_action("random(a-b)") == InvalidAction("random(a-b)", "Invalid random syntax: random(a-b)")
    assert parse_action("-1") == InvalidAction("-1", "Unknown action: -1")


def test_warnings_are_logged_once_per_rule_text(caplog):
    """The same faulty rule text is reported once per process."""
    engine = _engine()
    rules = "bogus\n4 => first\n4 => 0\nbogus"
    with caplog.at_level(logging.WARNING):
        engine.select_index(4, rules)
        engine.select_index(4, rules)
        engine.select_index(7, rules)

    records = _warnings(caplog)
    assert len(records) == 1
    message = records[0].getMessage()
    assert message.count('Invalid rule format (missing "=>"): bogus') == 1
    assert "Unknown action: first" in message
    assert "Invalid numeric action (must be >= 1): 0" in message


def test_distinct_rule_texts_are_reported_separately(caplog):
    """A changed rule text is a new diagnostic."""
    engine = _engine()
    with caplog.at_level(logging.WARNING):
        engine.select_index(2, "oops")
        engine.select_index(2, "oops again")
    assert len(_warnings(caplog)) == 2


def test_registry_claims_once_until_cleared():
    """The registry hands out each rule text once."""
    registry = RuleWarningRegistry()
    assert registry.claim("1 => x") is True
    assert registry.claim("1 => x") is False
    registry.clear()
    assert registry.claim("1 => x") is True


def test_select_canvas_returns_index_and_node():
    """select_canvas pairs the index with the canvas object."""
    canvases = [{"id": "c1"}, {"id": "c2"}, {"id": "c3"}]
    assert _engine().select_canvas(canvases, "3 => last") == (2, {"id": "c3"})


def test_non_ascii_digits_are_not_numbers():
    """Only ASCII digits count in conditions and actions."""
    assert parse_condition("٥") is None
    assert parse_condition("١-٣") is None
    assert isinstance(parse_action("٣"), InvalidAction)

    rules, warnings = parse_rules("٥ => 3")
    assert rules == []
    assert warnings == ["Invalid condition: ٥"]

    rng = _LowestRandom()
    assert RuleEngine(rng, RuleWarningRegistry()).select_index(5, "٥ => 3") == 0
    assert rng.calls == [(0, 4)]


def test_per_call_rng_overrides_engine_rng():
    """A generator passed to select_index is used instead of the engine's own."""
    engine_rng = _LowestRandom()
    call_rng = _LowestRandom()
    engine = RuleEngine(engine_rng, RuleWarningRegistry())

    assert engine.select_index(10, "1+ => random(3-7)", rng=call_rng) == 2
    assert call_rng.calls == [(2, 6)]
    assert engine_rng.calls == []
