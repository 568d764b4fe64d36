"""Processing engines.

This package provides:
- Sync orchestrator: new message metadata into the store, checkpointed
- Analysis orchestrator: EXTRACTED records through the extractor into actions

The run coordinator (engine.runner) ties both to configured accounts and is
imported directly, since it depends on the provider factory.
"""

from inbox_actions.engine.analysis import AnalysisOrchestrator, AnalysisResult
from inbox_actions.engine.sync import SyncOrchestrator, SyncResult

__all__ = [
    # Analysis
    "AnalysisOrchestrator",
    "AnalysisResult",
    # Sync
    "SyncOrchestrator",
    "SyncResult",
]
