"""memloom: consolidate chat transcripts into long-term user memories."""

__version__ = "0.1.0"

from memloom.config import Config
from memloom.consolidation import ConsolidationResult, DecisionFailure, MemoryConsolidator
from memloom.engine import MemoryEngine, consolidate_user

__all__ = [
    "__version__",
    "Config",
    "ConsolidationResult",
    "DecisionFailure",
    "MemoryConsolidator",
    "MemoryEngine",
    "consolidate_user",
]
