# src/chaosproxy/delay.py
"""Exponentially distributed delays for ChaosProxy.

The DelayGenerator produces the pre-forwarding and post-response delays.
Each stage owns its own random stream, so a seeded proxy reproduces the
same delay sequence on every run.

Usage:
    delays = DelayGenerator(pre_rate=0.05, pre_max_ms=200, post_rate=0.0, post_max_ms=0)
    await asyncio.sleep(delays.pre_delay())
"""

from __future__ import annotations

import random as random_module
import threading
from enum import Enum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from chaosproxy.config import FaultConfig


class DelayStage(Enum):
    """Where in the request lifecycle a delay is applied."""

    PRE = "pre"  # Before the request is forwarded
    POST = "post"  # After the response (or error) is captured


def spawn_rngs(seed: int, count: int) -> list[random_module.Random]:
    """Create independent random streams from one seed.

    A non-zero seed derives every stream from a master Random(seed), so the
    same seed always yields the same streams. Seed 0 seeds each stream from
    OS entropy.

    Args:
        seed: Master seed (0 = non-deterministic).
        count: Number of streams to create.

    Returns:
        List of ``count`` Random instances.
    """
    if seed == 0:
        return [random_module.Random() for _ in range(count)]
    master = random_module.Random(seed)
    return [random_module.Random(master.getrandbits(64)) for _ in range(count)]


def sample_delay(rng: random_module.Random, rate: float, max_ms: float) -> float:
    """Draw one clamped exponential delay.

    A rate <= 0 returns 0.0 without consuming randomness. Otherwise one value
    is drawn from Exp(rate) in milliseconds, clamped to exactly ``max_ms``
    when it is larger, and truncated toward zero to whole milliseconds.

    Returns:
        Delay in seconds (suitable for asyncio.sleep()).
    """
    if rate <= 0:
        return 0.0
    value_ms = rng.expovariate(rate)
    if value_ms > max_ms:
        value_ms = max_ms
    return int(value_ms) / 1000.0


class _StageSampler:
    """One stage's rate, clamp and random stream."""

    def __init__(self, rate: float, max_ms: float, rng: random_module.Random) -> None:
        self.rate = rate
        self.max_ms = max_ms
        self._rng = rng
        self._lock = threading.Lock()

    def sample(self) -> float:
        # One draw at a time per stream
        with self._lock:
            return sample_delay(self._rng, self.rate, self.max_ms)


class DelayGenerator:
    """Samples pre- and post-forwarding delays.

    Thread-safe: each stage serializes draws from its own random stream.
    A generator belongs to exactly one transport and lives as long as it.
    """

    def __init__(
        self,
        *,
        pre_rate: float,
        pre_max_ms: float,
        post_rate: float,
        post_max_ms: float,
        pre_rng: random_module.Random | None = None,
        post_rng: random_module.Random | None = None,
    ) -> None:
        """Initialize the delay generator.

        Args:
            pre_rate: Exponential rate (per ms) of the pre-forwarding delay.
            pre_max_ms: Clamp for the pre-forwarding delay.
            post_rate: Exponential rate (per ms) of the post-response delay.
            post_max_ms: Clamp for the post-response delay.
            pre_rng: Random instance for the pre stage (default: new Random).
            post_rng: Random instance for the post stage (default: new Random).
                Inject seeded random.Random() instances for deterministic testing.
        """
        self._stages = {
            DelayStage.PRE: _StageSampler(pre_rate, pre_max_ms, pre_rng if pre_rng is not None else random_module.Random()),
            DelayStage.POST: _StageSampler(post_rate, post_max_ms, post_rng if post_rng is not None else random_module.Random()),
        }

    @classmethod
    def from_config(
        cls,
        config: FaultConfig,
        *,
        pre_rng: random_module.Random | None = None,
        post_rng: random_module.Random | None = None,
    ) -> DelayGenerator:
        """Build a generator from a FaultConfig.

        When no streams are given they are spawned from ``config.seed``.
        """
        if pre_rng is None or post_rng is None:
            spawned_pre, spawned_post = spawn_rngs(config.seed, 2)
            pre_rng = pre_rng if pre_rng is not None else spawned_pre
            post_rng = post_rng if post_rng is not None else spawned_post
        return cls(
            pre_rate=config.pre_delay_rate,
            pre_max_ms=config.pre_delay_max_ms,
            post_rate=config.post_delay_rate,
            post_max_ms=config.post_delay_max_ms,
            pre_rng=pre_rng,
            post_rng=post_rng,
        )

    def sample(self, stage: DelayStage) -> float:
        """Sample the delay for a stage, in seconds."""
        return self._stages[stage].sample()

    def pre_delay(self) -> float:
        """Sample the delay applied before forwarding, in seconds."""
        return self.sample(DelayStage.PRE)

    def post_delay(self) -> float:
        """Sample the delay applied after the response, in seconds."""
        return self.sample(DelayStage.POST)
