from __future__ import annotations

import random
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any


@dataclass(frozen=True)
class ScenarioStratum:
    id: str
    weight: float


@dataclass(frozen=True)
class SamplerConfig:
    total: int
    strata: tuple[ScenarioStratum, ...] = ()
    tail_focus_ratio: float = 0.0


@dataclass(frozen=True)
class ScenarioSample:
    scenario_id: str
    factors: dict[str, float]
    stratum_id: str | None = None
    tags: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "scenario_id": self.scenario_id,
            "stratum_id": self.stratum_id,
            "factors": dict(self.factors),
            "tags": list(self.tags),
        }


@dataclass(frozen=True)
class _FactorRange:
    low: float
    high: float

    def draw(self, rng: random.Random) -> float:
        return round(self.low + rng.random() * (self.high - self.low), 2)


BASE_RANGES = {
    "demand": _FactorRange(0, 100),
    "cost": _FactorRange(0, 5000),
    "latency": _FactorRange(0, 300),
}
TAIL_RANGES = {
    "demand": _FactorRange(90, 100),
    "cost": _FactorRange(2000, 10000),
    "latency": _FactorRange(250, 300),
}

DEFAULT_STRATA: tuple[ScenarioStratum, ...] = (ScenarioStratum(id="default", weight=1.0),)


def _draw(ranges: dict[str, _FactorRange], rng: random.Random) -> dict[str, float]:
    return {name: r.draw(rng) for name, r in ranges.items()}


def generate_scenarios(config: SamplerConfig, seed: int | None = None) -> list[ScenarioSample]:
    """Stratified batch plus tail-focused extras tagged ``tail``.

    Each stratum gets ``max(1, round(weight / total_weight * total))`` samples
    before the batch is cut back to ``total`` plus the tail extras. The same
    seed yields the same batch.
    """
    rng = random.Random(seed)
    strata: Sequence[ScenarioStratum] = config.strata or DEFAULT_STRATA
    total_weight = sum(s.weight for s in strata) or 1.0

    samples: list[ScenarioSample] = []
    for stratum in strata:
        count = max(1, round(stratum.weight / total_weight * config.total))
        for i in range(count):
            samples.append(
                ScenarioSample(
                    scenario_id=f"{stratum.id}-{i}",
                    stratum_id=stratum.id,
                    factors=_draw(BASE_RANGES, rng),
                )
            )

    tail_count = round(max(0.0, config.tail_focus_ratio) * config.total)
    for i in range(tail_count):
        samples.append(ScenarioSample(scenario_id=f"tail-{i}", factors=_draw(TAIL_RANGES, rng), tags=("tail",)))
    return samples[: config.total + tail_count]


@dataclass
class SamplerStats:
    by_stratum: dict[str, int] = field(default_factory=dict)
    tail: int = 0


def describe_batch(samples: Sequence[ScenarioSample]) -> SamplerStats:
    stats = SamplerStats()
    for sample in samples:
        if "tail" in sample.tags:
            stats.tail += 1
        elif sample.stratum_id is not None:
            stats.by_stratum[sample.stratum_id] = stats.by_stratum.get(sample.stratum_id, 0) + 1
    return stats
