"""
Probabilistic admission for best-effort traffic.
"""

import random
from typing import Optional


class Sampler:
    """Admits a call with probability ``sampling_rate``."""

    def __init__(self, rng: Optional[random.Random] = None):
        self._rng = rng or random.Random()

    def admit(self, sampling_rate: float) -> bool:
        # random() is in [0, 1): a rate of 0.0 never admits and 1.0 always does
        return self._rng.random() < sampling_rate
