"""
Sampling policy - turns raw next-token logits into a token choice.

Pure per-step transforms over {token_id: logit} maps. Unset request
parameters resolve against EngineDefaults, never against literals here.

Pipeline (in order):
    penalties -> temperature -> top-k -> softmax -> top-p -> renormalise
"""

import math
import random
from collections import Counter
from dataclasses import dataclass
from typing import Mapping, Optional

from lmchat.config import EngineDefaults
from lmchat.schemas import SamplingConfig


@dataclass(frozen=True)
class ResolvedSampling:
    """SamplingConfig with every field filled in."""
    temperature: float
    top_p: float
    top_k: int
    frequency_penalty: float
    presence_penalty: float
    seed: Optional[int]


def resolve_sampling(config: Optional[SamplingConfig], defaults: EngineDefaults) -> ResolvedSampling:
    """Fill unset sampling fields from engine defaults."""
    config = config or SamplingConfig()

    def pick(value, fallback):
        return fallback if value is None else value

    return ResolvedSampling(
        temperature=pick(config.temperature, defaults.temperature),
        top_p=pick(config.top_p, defaults.top_p),
        top_k=pick(config.top_k, defaults.top_k),
        frequency_penalty=pick(config.frequency_penalty, defaults.frequency_penalty),
        presence_penalty=pick(config.presence_penalty, defaults.presence_penalty),
        seed=pick(config.seed, defaults.seed),
    )


# ─────────────────────────────────────────────────────────────────────
# TRANSFORMS
# ─────────────────────────────────────────────────────────────────────


def apply_penalties(
    logits: Mapping[int, float],
    counts: Mapping[int, int],
    frequency_penalty: float,
    presence_penalty: float,
) -> dict[int, float]:
    """
    Frequency/presence penalties over tokens already generated this turn.

    logit - count * frequency_penalty - (count > 0) * presence_penalty
    """
    if not frequency_penalty and not presence_penalty:
        return dict(logits)
    adjusted = {}
    for token, logit in logits.items():
        count = counts.get(token, 0)
        if count:
            logit = logit - count * frequency_penalty - presence_penalty
        adjusted[token] = logit
    return adjusted


def apply_temperature(logits: Mapping[int, float], temperature: float) -> dict[int, float]:
    if temperature <= 0:
        raise ValueError("temperature must be positive; use greedy selection for 0")
    return {token: logit / temperature for token, logit in logits.items()}


def top_k_filter(logits: Mapping[int, float], k: int) -> dict[int, float]:
    """Keep the k highest logits. k <= 0 disables the filter."""
    if k <= 0 or k >= len(logits):
        return dict(logits)
    ranked = sorted(logits.items(), key=lambda item: (-item[1], item[0]))
    return dict(ranked[:k])


def softmax(logits: Mapping[int, float]) -> dict[int, float]:
    if not logits:
        return {}
    peak = max(logits.values())
    exps = {token: math.exp(logit - peak) for token, logit in logits.items()}
    total = sum(exps.values())
    return {token: value / total for token, value in exps.items()}


def top_p_filter(probs: Mapping[int, float], p: float) -> dict[int, float]:
    """Smallest set of most-likely tokens whose mass reaches p, renormalised."""
    if p >= 1.0:
        return dict(probs)
    ranked = sorted(probs.items(), key=lambda item: (-item[1], item[0]))
    kept = []
    cumulative = 0.0
    for token, prob in ranked:
        kept.append((token, prob))
        cumulative += prob
        if cumulative >= p:
            break
    total = sum(prob for _, prob in kept)
    return {token: prob / total for token, prob in kept}


def argmax(logits: Mapping[int, float]) -> int:
    """Highest logit; ties go to the lowest token id."""
    return min(logits.items(), key=lambda item: (-item[1], item[0]))[0]


# ─────────────────────────────────────────────────────────────────────
# POLICY
# ─────────────────────────────────────────────────────────────────────


class SamplingPolicy:
    """
    Per-request sampling policy.

    Holds the resolved parameters and the request's RNG. adjust() is a
    pure function of its inputs; choose() only advances the RNG.
    """

    def __init__(
        self,
        config: Optional[SamplingConfig] = None,
        defaults: Optional[EngineDefaults] = None,
    ):
        self.params = resolve_sampling(config, defaults or EngineDefaults())
        self._rng = random.Random(self.params.seed)

    @property
    def greedy(self) -> bool:
        return self.params.temperature == 0

    def adjust(self, logits: Mapping[int, float], counts: Optional[Counter] = None) -> dict[int, float]:
        """
        Turn candidate logits into a probability distribution.

        Args:
            logits: {token_id: logit} for the candidate tokens
            counts: How often each token was generated so far this turn

        Returns:
            {token_id: probability}, summing to 1. Greedy decoding yields
            a single token with probability 1.
        """
        if not logits:
            raise ValueError("No candidate tokens to sample from")

        params = self.params
        adjusted = apply_penalties(
            logits, counts or {}, params.frequency_penalty, params.presence_penalty
        )
        if self.greedy:
            return {argmax(adjusted): 1.0}

        adjusted = apply_temperature(adjusted, params.temperature)
        adjusted = top_k_filter(adjusted, params.top_k)
        return top_p_filter(softmax(adjusted), params.top_p)

    def choose(self, distribution: Mapping[int, float]) -> int:
        """Draw one token from a probability distribution."""
        ranked = sorted(distribution.items(), key=lambda item: (-item[1], item[0]))
        threshold = self._rng.random() * sum(prob for _, prob in ranked)
        cumulative = 0.0
        for token, prob in ranked:
            cumulative += prob
            if threshold < cumulative:
                return token
        return ranked[-1][0]

    def sample(self, logits: Mapping[int, float], counts: Optional[Counter] = None) -> int:
        return self.choose(self.adjust(logits, counts))
