"""Application use cases for apiguard."""

from apiguard.application.use_cases.resilient_batch import (
    BatchFailure,
    BatchItem,
    BatchResult,
    BatchStats,
    ResilientOrchestrator,
    create_resilient_orchestrator,
)

__all__ = [
    "BatchFailure",
    "BatchItem",
    "BatchResult",
    "BatchStats",
    "ResilientOrchestrator",
    "create_resilient_orchestrator",
]
