import pathlib
import sys

import pytest
from fastapi.testclient import TestClient

ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from policy_engine.constraint_dsl import ConstraintDefinition, ConstraintKind, Severity
from policy_engine.main import create_app
from policy_engine.state import reset_runtime_state


@pytest.fixture(autouse=True)
def reset_state(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("PRESCRIPTIVE_ROBUST_V1", "true")
    monkeypatch.setenv("EXPLAIN_STORE_BACKEND", "memory")
    monkeypatch.delenv("ESTIMATION_TIGHTEN_MULTIPLIER", raising=False)
    monkeypatch.delenv("ESTIMATION_RELAX_MULTIPLIER", raising=False)
    reset_runtime_state()
    yield


@pytest.fixture
def client() -> TestClient:
    return TestClient(create_app())


def make_constraint(
    cid: str,
    expression: str,
    *,
    kind: ConstraintKind = ConstraintKind.HARD,
    severity: Severity = Severity.BLOCK,
    activation_predicate: str | None = None,
    required_context_keys: tuple[str, ...] = (),
) -> ConstraintDefinition:
    return ConstraintDefinition(
        id=cid,
        version="v1",
        kind=kind,
        severity=severity,
        expression=expression,
        activation_predicate=activation_predicate,
        required_context_keys=required_context_keys,
    )
