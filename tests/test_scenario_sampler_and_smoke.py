from __future__ import annotations

from policy_engine.pipeline import run_smoke
from policy_engine.scenario_sampler import (
    SamplerConfig,
    ScenarioStratum,
    describe_batch,
    generate_scenarios,
)
from policy_engine.telemetry import Telemetry


def test_same_seed_yields_same_batch():
    config = SamplerConfig(total=12, strata=(ScenarioStratum("a", 1), ScenarioStratum("b", 2)), tail_focus_ratio=0.25)
    first = [s.to_dict() for s in generate_scenarios(config, seed=7)]
    second = [s.to_dict() for s in generate_scenarios(config, seed=7)]
    assert first == second
    assert first != [s.to_dict() for s in generate_scenarios(config, seed=8)]


def test_strata_and_tail_counts():
    config = SamplerConfig(total=12, strata=(ScenarioStratum("a", 1), ScenarioStratum("b", 2)), tail_focus_ratio=0.25)
    samples = generate_scenarios(config, seed=1)
    stats = describe_batch(samples)
    assert stats.by_stratum == {"a": 4, "b": 8}
    assert stats.tail == 3
    tail = [s for s in samples if "tail" in s.tags]
    assert all(s.factors["latency"] >= 250 for s in tail)
    assert tail[0].scenario_id == "tail-0"


def test_rounding_overshoot_is_truncated_to_total():
    config = SamplerConfig(total=3, strata=(ScenarioStratum("big", 100), ScenarioStratum("tiny", 0.01)))
    samples = generate_scenarios(config, seed=3)
    assert len(samples) == 3
    assert {s.stratum_id for s in samples} == {"big"}


def test_smoke_pipeline_reaches_a_policy_version():
    sink = Telemetry()
    report = run_smoke(seed=42, total=12, telemetry=sink)

    assert report["summary"]["total"] == report["robustness"]["sample_size"] * 4
    assert report["summary"]["insufficient"] == report["robustness"]["sample_size"]
    assert report["trace"]["session"]["policy_version_id"] == report["simulation"]["policy_version_id"]
    assert report["simulation"]["policy_version_id"]
    assert report["telemetry"]["counters"]["explain.sessions.finished"] == 1
    assert "constraints.evaluate.batch" in report["telemetry"]["rollups"]["span_stats"]
    assert len(report["adaptive"]["actions"]) == 4
