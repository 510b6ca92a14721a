import random
from dataclasses import dataclass, field
from typing import Callable


@dataclass
class BackoffPolicy:
    """
    Capped exponential backoff with proportional jitter.

    delay(attempt) = min(max_delay, base * multiplier**(attempt - 1) + jitter),
    jitter drawn uniformly from [0, jitter_ratio * exponential term]. With
    multiplier >= 1 + jitter_ratio consecutive delays never decrease.
    """

    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    multiplier: float = 2.0
    jitter_ratio: float = 0.1
    rand: Callable[[], float] = field(default=random.random, repr=False)

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.base_delay < 0 or self.max_delay < 0:
            raise ValueError("delays must be non-negative")
        if self.multiplier < 1:
            raise ValueError("multiplier must be >= 1")

    def exponential(self, attempt: int) -> float:
        return self.base_delay * self.multiplier ** max(0, attempt - 1)

    def delay(self, attempt: int) -> float:
        exp = self.exponential(attempt)
        jitter = self.rand() * self.jitter_ratio * exp
        return min(self.max_delay, exp + jitter)

    @classmethod
    def from_config(cls, cfg: dict) -> "BackoffPolicy":
        cfg = cfg or {}
        return cls(
            max_attempts=int(cfg.get("max_attempts", 3)),
            base_delay=float(cfg.get("base_delay_sec", 1.0)),
            max_delay=float(cfg.get("max_delay_sec", 30.0)),
            multiplier=float(cfg.get("multiplier", 2.0)),
            jitter_ratio=float(cfg.get("jitter_ratio", 0.1)),
        )
