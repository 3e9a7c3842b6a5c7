"""Tests for the sampling policy."""

import math
from collections import Counter

import pytest

from lmchat.config import EngineDefaults
from lmchat.sampling import (
    SamplingPolicy,
    apply_penalties,
    apply_temperature,
    argmax,
    resolve_sampling,
    softmax,
    top_k_filter,
    top_p_filter,
)
from lmchat.schemas import SamplingConfig


# ─────────────────────────────────────────────────────────────────────
# RESOLUTION
# ─────────────────────────────────────────────────────────────────────

class TestResolveSampling:

    def test_unset_fields_come_from_defaults(self):
        defaults = EngineDefaults(temperature=0.3, top_k=7, seed=11)
        params = resolve_sampling(SamplingConfig(top_p=0.5), defaults)
        assert params.temperature == 0.3
        assert params.top_k == 7
        assert params.top_p == 0.5
        assert params.seed == 11

    def test_explicit_zero_is_not_replaced(self):
        """temperature=0 is a real value, not 'unset'."""
        params = resolve_sampling(SamplingConfig(temperature=0.0), EngineDefaults(temperature=0.9))
        assert params.temperature == 0.0

    def test_none_config_uses_all_defaults(self):
        defaults = EngineDefaults()
        params = resolve_sampling(None, defaults)
        assert params.temperature == defaults.temperature
        assert params.top_p == defaults.top_p


# ─────────────────────────────────────────────────────────────────────
# TRANSFORMS
# ─────────────────────────────────────────────────────────────────────

class TestTransforms:

    def test_penalties_only_touch_generated_tokens(self):
        adjusted = apply_penalties({1: 2.0, 2: 2.0}, Counter({1: 3}), 0.5, 1.0)
        assert adjusted[1] == pytest.approx(2.0 - 3 * 0.5 - 1.0)
        assert adjusted[2] == 2.0

    def test_zero_penalties_are_identity(self):
        logits = {1: 1.5, 2: -0.5}
        assert apply_penalties(logits, Counter({1: 4}), 0.0, 0.0) == logits

    def test_temperature_scales_logits(self):
        assert apply_temperature({1: 2.0}, 0.5) == {1: 4.0}

    def test_temperature_must_be_positive(self):
        with pytest.raises(ValueError):
            apply_temperature({1: 1.0}, 0.0)

    def test_top_k_keeps_highest(self):
        assert set(top_k_filter({1: 0.1, 2: 0.9, 3: 0.5}, 2)) == {2, 3}

    def test_top_k_zero_disables(self):
        logits = {1: 0.1, 2: 0.9}
        assert top_k_filter(logits, 0) == logits

    def test_softmax_sums_to_one(self):
        probs = softmax({1: 1.0, 2: 2.0, 3: 3.0})
        assert sum(probs.values()) == pytest.approx(1.0)
        assert probs[3] > probs[2] > probs[1]

    def test_softmax_is_stable_for_large_logits(self):
        probs = softmax({1: 1000.0, 2: 999.0})
        assert probs[1] == pytest.approx(1 / (1 + math.exp(-1)))

    def test_top_p_keeps_nucleus_and_renormalises(self):
        probs = top_p_filter({1: 0.6, 2: 0.3, 3: 0.1}, 0.8)
        assert set(probs) == {1, 2}
        assert sum(probs.values()) == pytest.approx(1.0)

    def test_top_p_one_keeps_everything(self):
        probs = {1: 0.6, 2: 0.4}
        assert top_p_filter(probs, 1.0) == probs

    def test_argmax_ties_go_to_lowest_id(self):
        assert argmax({7: 1.0, 3: 1.0, 9: 0.5}) == 3


# ─────────────────────────────────────────────────────────────────────
# POLICY
# ─────────────────────────────────────────────────────────────────────

class TestSamplingPolicy:

    def test_greedy_picks_argmax(self):
        policy = SamplingPolicy(SamplingConfig(temperature=0.0))
        assert policy.greedy
        assert policy.sample({1: 0.2, 2: 3.0, 3: 1.0}) == 2

    def test_greedy_respects_penalties(self):
        policy = SamplingPolicy(SamplingConfig(temperature=0.0, presence_penalty=5.0))
        assert policy.sample({1: 3.0, 2: 2.0}, Counter({1: 1})) == 2

    def test_adjust_returns_distribution(self):
        policy = SamplingPolicy(SamplingConfig(temperature=1.0, top_p=1.0, top_k=0))
        distribution = policy.adjust({1: 0.0, 2: 1.0})
        assert sum(distribution.values()) == pytest.approx(1.0)

    def test_same_seed_same_choices(self):
        logits = {i: float(i % 5) for i in range(20)}
        config = SamplingConfig(temperature=1.5, top_p=1.0, top_k=0, seed=42)
        first = SamplingPolicy(config)
        second = SamplingPolicy(config)
        assert [first.sample(logits) for _ in range(25)] == [second.sample(logits) for _ in range(25)]

    def test_choice_always_from_candidates(self):
        policy = SamplingPolicy(SamplingConfig(temperature=2.0, seed=1))
        for _ in range(50):
            assert policy.sample({4: 0.0, 8: 0.5}) in {4, 8}

    def test_empty_candidates_rejected(self):
        with pytest.raises(ValueError):
            SamplingPolicy().adjust({})
