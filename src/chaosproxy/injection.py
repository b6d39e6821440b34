# src/chaosproxy/injection.py
"""Drop decisions for ChaosProxy.

The DropDecider is a composable utility, like DelayGenerator: the
transport owns one and asks it once per request whether to drop.
"""

import random as random_module
import threading


class DropDecider:
    """Bernoulli drop decision with a thread-safe random stream."""

    def __init__(
        self,
        probability: float,
        *,
        rng: random_module.Random | None = None,
    ) -> None:
        """Initialize the drop decider.

        Args:
            probability: Chance of dropping a request (0.0 to 1.0).
            rng: Random instance for testing (default: creates new Random instance).
        """
        self._probability = probability
        self._rng = rng if rng is not None else random_module.Random()
        self._lock = threading.Lock()

    @property
    def probability(self) -> float:
        """Configured drop probability."""
        return self._probability

    def should_drop(self) -> bool:
        """Decide whether the current request is dropped.

        Draws a uniform value in [0, 1) and drops when it is below the
        probability. A probability <= 0 never drops and consumes no
        randomness.
        """
        if self._probability <= 0:
            return False
        with self._lock:
            roll = self._rng.random()
        return roll < self._probability
