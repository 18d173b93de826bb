from memloom.consolidation.locks import UserLocks
from memloom.consolidation.orchestrator import (
    Candidate,
    ConsolidationResult,
    DecisionFailure,
    MemoryConsolidator,
    collect_candidates,
)
from memloom.consolidation.schemas import FactRetrievalSchema, MemoryUpdateSchema

__all__ = [
    "Candidate",
    "ConsolidationResult",
    "DecisionFailure",
    "FactRetrievalSchema",
    "MemoryConsolidator",
    "MemoryUpdateSchema",
    "UserLocks",
    "collect_candidates",
]
