"""
Property-based tests for pyweft using Hypothesis.

These tests generate many cases to find edge cases in:
- Retry delay calculations
- Template id matching
- Reference path resolution
"""

import pytest
from hypothesis import given
from hypothesis import strategies as st

from pyweft.executor.graph import NodeMatcher, compile_node_pattern, get_path
from pyweft.models import EXPONENTIAL, RetryPolicy

retry_delays = st.one_of(st.integers(min_value=0, max_value=60_000), st.just(EXPONENTIAL))

node_ids = st.text(
    min_size=1, max_size=12, alphabet=st.characters(whitelist_categories=("Lu", "Ll", "Nd"))
)

# ==============================================================================
# PROPERTY 1: Retry delays
# ==============================================================================


@pytest.mark.property
@given(retries=st.integers(min_value=0, max_value=20), retry_delay=retry_delays)
def test_delay_defined_exactly_while_attempts_remain(retries, retry_delay):
    policy = RetryPolicy(retries=retries, retry_delay=retry_delay)
    for attempt in range(1, retries + 3):
        delay = policy.delay_for_attempt(attempt)
        if attempt < retries + 1:
            if retry_delay == EXPONENTIAL:
                assert policy.initial_delay_ms <= delay <= policy.max_delay_ms
            else:
                assert delay == retry_delay
        else:
            assert delay is None


@pytest.mark.property
@given(retries=st.integers(min_value=1, max_value=30))
def test_exponential_delays_are_monotonic(retries):
    policy = RetryPolicy(retries=retries, retry_delay=EXPONENTIAL)
    delays = [policy.delay_for_attempt(attempt) for attempt in range(1, retries + 1)]
    assert delays == sorted(delays)
    assert delays[0] == policy.initial_delay_ms
    assert delays[-1] <= policy.max_delay_ms


# ==============================================================================
# PROPERTY 2: Template matching
# ==============================================================================


@pytest.mark.property
@given(prefix=node_ids, value=node_ids)
def test_template_matches_any_filled_placeholder(prefix, value):
    node_id = prefix + "-${id}"
    assert compile_node_pattern(node_id).fullmatch(f"{prefix}-{value}")
    assert NodeMatcher([node_id]).match(f"{prefix}-{value}") == node_id


@pytest.mark.property
@given(name=node_ids)
def test_exact_ids_match_only_themselves(name):
    matcher = NodeMatcher([name])
    assert matcher.match(name) == name
    assert matcher.match(name + "x") is None


# ==============================================================================
# PROPERTY 3: Path resolution
# ==============================================================================


@pytest.mark.property
@given(
    items=st.lists(st.integers(), max_size=10),
    index=st.integers(min_value=0, max_value=15),
)
def test_index_paths(items, index):
    value = {"items": items}
    expected = items[index] if index < len(items) else None
    assert get_path(value, f"items[{index}]") == expected


@pytest.mark.property
@given(
    keys=st.lists(
        st.text(min_size=1, max_size=8, alphabet=st.characters(whitelist_categories=("Ll",))),
        min_size=1,
        max_size=5,
    ),
    leaf=st.integers(),
)
def test_dotted_paths_walk_nested_dicts(keys, leaf):
    value = leaf
    for key in reversed(keys):
        value = {key: value}
    assert get_path(value, ".".join(keys)) == leaf
