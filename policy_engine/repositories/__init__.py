from policy_engine.repositories.explain_snapshots import (
    InMemoryExplainSnapshotsRepository,
    PostgresExplainSnapshotsRepository,
)

__all__ = [
    "InMemoryExplainSnapshotsRepository",
    "PostgresExplainSnapshotsRepository",
]
