"""
tests/test_tolerations.py
──────────────────────────
Test suite for placement_core/numeric.py and placement_core/tolerations.py

What we are testing
────────────────────
The matcher decides, for every (toleration, taint) pair, whether the taint
is ignored. Everything downstream (filtering, scoring, eviction timers)
trusts it, so:
  • Equal / Exists / Gt / Lt follow their exact rules
  • malformed numerals never match, and surface as ValidationError when
    checked explicitly
  • an empty-key Exists toleration matches every taint

Test groups
────────────
Group 1: parse_int64          — canonical numerals only
Group 2: toleration_matches   — single pair semantics
Group 3: untolerated_taints   — the effective taint set
Group 4: no_execute_grace     — how long a running pod may stay
Group 5: validate_toleration  — admission-time rules
"""

from __future__ import annotations

from typing import Optional

import pytest
from hypothesis import given
from hypothesis import strategies as st

from placement_core.numeric import INT64_MAX, INT64_MIN, is_int64, parse_int64
from placement_core.tolerations import (
    check_numeric_pair,
    no_execute_grace,
    toleration_matches,
    tolerates,
    untolerated_taints,
    validate_toleration,
    validate_tolerations,
)
from placement_engine.shared.errors import ValidationError
from placement_engine.shared.models import (
    Taint,
    TaintEffect,
    Toleration,
    TolerationOperator,
)


# ─────────────────────────────────────────────────────────────────────────────
# Helpers
# ─────────────────────────────────────────────────────────────────────────────

def _make_taint(
    key: str = "key1",
    value: Optional[str] = "v1",
    effect: TaintEffect = TaintEffect.NO_SCHEDULE,
) -> Taint:
    return Taint(key=key, value=value, effect=effect)


def _make_toleration(
    key: str = "key1",
    operator: TolerationOperator = TolerationOperator.EQUAL,
    value: Optional[str] = "v1",
    effect: Optional[TaintEffect] = None,
    seconds: Optional[int] = None,
) -> Toleration:
    return Toleration(
        key=key, operator=operator, value=value, effect=effect, toleration_seconds=seconds
    )


_TEXT = st.text(alphabet="abcdefghijklmnopqrstuvwxyz0123456789-./", max_size=12)

any_taint = st.builds(
    Taint,
    key=st.text(alphabet="abcdefghijklmnopqrstuvwxyz-./", min_size=1, max_size=16),
    value=st.one_of(st.none(), _TEXT),
    effect=st.sampled_from(list(TaintEffect)),
)


# ─────────────────────────────────────────────────────────────────────────────
# Group 1: parse_int64
# ─────────────────────────────────────────────────────────────────────────────

class TestParseInt64:

    @pytest.mark.parametrize(
        "text, expected",
        [
            ("0", 0),
            ("7", 7),
            ("-7", -7),
            ("550", 550),
            (str(INT64_MAX), INT64_MAX),
            (str(INT64_MIN), INT64_MIN),
        ],
    )
    def test_canonical_values_parse(self, text: str, expected: int) -> None:
        assert parse_int64(text) == expected

    @pytest.mark.parametrize(
        "text",
        ["0550", "00", "+3", "-0", " 7", "7 ", "7\n", "1_000", "", "abc", "3.0",
         str(INT64_MAX + 1), str(INT64_MIN - 1)],
    )
    def test_non_canonical_values_rejected(self, text: str) -> None:
        with pytest.raises(ValidationError):
            parse_int64(text)
        assert is_int64(text) is False

    def test_error_names_the_field(self) -> None:
        with pytest.raises(ValidationError) as info:
            parse_int64("0550", field="taint[priority].value")
        assert info.value.field == "taint[priority].value"
        assert info.value.value == "0550"

    def test_validation_error_is_a_value_error(self) -> None:
        with pytest.raises(ValueError):
            parse_int64("x")

    @given(st.integers(min_value=INT64_MIN, max_value=INT64_MAX))
    def test_every_int64_parses_from_its_decimal_form(self, n: int) -> None:
        assert parse_int64(str(n)) == n


# ─────────────────────────────────────────────────────────────────────────────
# Group 2: toleration_matches
# ─────────────────────────────────────────────────────────────────────────────

class TestTolerationMatches:

    def test_equal_same_value_matches(self) -> None:
        assert toleration_matches(_make_toleration(), _make_taint())

    def test_equal_different_value_does_not_match(self) -> None:
        assert not toleration_matches(_make_toleration(value="v2"), _make_taint())

    def test_equal_none_and_empty_value_are_equivalent(self) -> None:
        assert toleration_matches(_make_toleration(value=None), _make_taint(value=""))
        assert toleration_matches(_make_toleration(value=""), _make_taint(value=None))

    def test_key_mismatch_never_matches(self) -> None:
        tol = _make_toleration(key="other", operator=TolerationOperator.EXISTS, value=None)
        assert not toleration_matches(tol, _make_taint())

    def test_exists_matches_any_value(self) -> None:
        tol = _make_toleration(operator=TolerationOperator.EXISTS, value=None)
        assert toleration_matches(tol, _make_taint(value="anything"))
        assert toleration_matches(tol, _make_taint(value=None))

    def test_exists_carrying_a_value_never_matches(self) -> None:
        tol = _make_toleration(operator=TolerationOperator.EXISTS, value="v1")
        assert not toleration_matches(tol, _make_taint())

    def test_effect_none_is_a_wildcard(self) -> None:
        tol = _make_toleration(effect=None)
        for effect in TaintEffect:
            assert toleration_matches(tol, _make_taint(effect=effect))

    def test_effect_mismatch_does_not_match(self) -> None:
        tol = _make_toleration(effect=TaintEffect.NO_SCHEDULE)
        assert not toleration_matches(tol, _make_taint(effect=TaintEffect.NO_EXECUTE))

    def test_gt_compares_toleration_greater_than_taint(self) -> None:
        taint = _make_taint(key="priority", value="3")
        assert toleration_matches(
            _make_toleration(key="priority", operator=TolerationOperator.GT, value="5"), taint
        )
        assert not toleration_matches(
            _make_toleration(key="priority", operator=TolerationOperator.GT, value="3"), taint
        )
        assert not toleration_matches(
            _make_toleration(key="priority", operator=TolerationOperator.GT, value="1"), taint
        )

    def test_lt_compares_toleration_less_than_taint(self) -> None:
        taint = _make_taint(key="priority", value="10")
        assert toleration_matches(
            _make_toleration(key="priority", operator=TolerationOperator.LT, value="-4"), taint
        )
        assert not toleration_matches(
            _make_toleration(key="priority", operator=TolerationOperator.LT, value="10"), taint
        )

    def test_gt_against_leading_zero_taint_raises_and_never_matches(self) -> None:
        """Gt "3" vs taint priority="0550": ValidationError, and no match."""
        tol = _make_toleration(key="priority", operator=TolerationOperator.GT, value="3")
        taint = _make_taint(key="priority", value="0550")

        with pytest.raises(ValidationError) as info:
            check_numeric_pair(tol, taint)
        assert "priority" in info.value.field
        assert toleration_matches(tol, taint) is False

    def test_gt_with_non_numeric_toleration_never_matches(self) -> None:
        tol = _make_toleration(key="priority", operator=TolerationOperator.GT, value="high")
        assert not toleration_matches(tol, _make_taint(key="priority", value="3"))

    def test_lt_with_missing_taint_value_never_matches(self) -> None:
        tol = _make_toleration(key="priority", operator=TolerationOperator.LT, value="3")
        assert not toleration_matches(tol, _make_taint(key="priority", value=None))

    @given(taint=any_taint)
    def test_empty_key_exists_matches_every_taint(self, taint: Taint) -> None:
        wildcard = Toleration(key="", operator=TolerationOperator.EXISTS)
        assert toleration_matches(wildcard, taint)
        assert tolerates([wildcard], taint)


# ─────────────────────────────────────────────────────────────────────────────
# Group 3: untolerated_taints
# ─────────────────────────────────────────────────────────────────────────────

class TestUntoleratedTaints:

    def test_only_unmatched_taints_remain(self) -> None:
        taints = [_make_taint("key1", "v1"), _make_taint("key2", "v2")]
        tolerations = [_make_toleration("key1", value="v1")]

        remaining = untolerated_taints(taints, tolerations)
        assert [t.key for t in remaining] == ["key2"]

    def test_effect_filter_restricts_result(self) -> None:
        taints = [
            _make_taint("a", effect=TaintEffect.NO_SCHEDULE),
            _make_taint("b", effect=TaintEffect.PREFER_NO_SCHEDULE),
            _make_taint("c", effect=TaintEffect.NO_EXECUTE),
        ]
        soft = untolerated_taints(taints, [], effects=[TaintEffect.PREFER_NO_SCHEDULE])
        assert [t.key for t in soft] == ["b"]

    def test_node_order_is_preserved(self) -> None:
        taints = [_make_taint(k) for k in ("z", "a", "m")]
        assert [t.key for t in untolerated_taints(taints, [])] == ["z", "a", "m"]

    @given(taints=st.lists(any_taint, max_size=6))
    def test_wildcard_toleration_leaves_nothing(self, taints) -> None:
        wildcard = Toleration(key="", operator=TolerationOperator.EXISTS)
        assert untolerated_taints(taints, [wildcard]) == []


# ─────────────────────────────────────────────────────────────────────────────
# Group 4: no_execute_grace
# ─────────────────────────────────────────────────────────────────────────────

class TestNoExecuteGrace:

    taint = _make_taint("key1", "v1", TaintEffect.NO_EXECUTE)

    def test_no_match_without_default_evicts_now(self) -> None:
        assert no_execute_grace([], self.taint) == 0.0

    def test_no_match_uses_default_when_given(self) -> None:
        assert no_execute_grace([], self.taint, default_seconds=300) == 300.0

    def test_exists_without_seconds_is_forever(self) -> None:
        tol = _make_toleration(operator=TolerationOperator.EXISTS, value=None)
        assert no_execute_grace([tol], self.taint) is None

    def test_zero_seconds_evicts_now(self) -> None:
        tol = _make_toleration(seconds=0)
        assert no_execute_grace([tol], self.taint) == 0.0

    def test_negative_seconds_clamped_to_zero(self) -> None:
        tol = _make_toleration(seconds=-30)
        assert no_execute_grace([tol], self.taint) == 0.0

    def test_longest_matching_seconds_wins(self) -> None:
        tols = [_make_toleration(seconds=60), _make_toleration(seconds=300)]
        assert no_execute_grace(tols, self.taint) == 300.0

    def test_any_unbounded_match_wins(self) -> None:
        tols = [
            _make_toleration(seconds=60),
            _make_toleration(operator=TolerationOperator.EXISTS, value=None),
        ]
        assert no_execute_grace(tols, self.taint) is None

    def test_default_ignored_when_something_matches(self) -> None:
        tol = _make_toleration(seconds=10)
        assert no_execute_grace([tol], self.taint, default_seconds=300) == 10.0


# ─────────────────────────────────────────────────────────────────────────────
# Group 5: validate_toleration
# ─────────────────────────────────────────────────────────────────────────────

class TestValidateToleration:

    def test_valid_tolerations_pass(self) -> None:
        validate_tolerations([
            _make_toleration(),
            Toleration(key="", operator=TolerationOperator.EXISTS),
            _make_toleration(operator=TolerationOperator.GT, value="42"),
            _make_toleration(effect=TaintEffect.NO_EXECUTE, seconds=30),
        ])

    def test_empty_key_requires_exists(self) -> None:
        with pytest.raises(ValidationError) as info:
            validate_toleration(Toleration(key="", operator=TolerationOperator.EQUAL, value="x"))
        assert info.value.field.endswith(".operator")

    def test_exists_must_not_carry_value(self) -> None:
        with pytest.raises(ValidationError):
            validate_toleration(_make_toleration(operator=TolerationOperator.EXISTS, value="v"))

    def test_gt_value_with_leading_zero_rejected(self) -> None:
        with pytest.raises(ValidationError) as info:
            validate_tolerations([
                _make_toleration(),
                _make_toleration(operator=TolerationOperator.GT, value="0550"),
            ])
        assert info.value.field == "tolerations[1].value"

    def test_seconds_only_with_no_execute(self) -> None:
        with pytest.raises(ValidationError):
            validate_toleration(_make_toleration(effect=TaintEffect.NO_SCHEDULE, seconds=10))

    def test_seconds_allowed_with_empty_effect(self) -> None:
        validate_toleration(_make_toleration(effect=None, seconds=10))
