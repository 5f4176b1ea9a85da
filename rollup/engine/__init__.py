"""
Rollup pipeline core components.

- Delta computation: absolute snapshot counters -> daily gains
- Tracking phases: age-based sampling frequency and boundary retags
- Period arithmetic: period starts/ends and finalization boundaries
- Rollup aggregation: daily -> weekly/monthly -> quarterly/yearly
- Backfill reconciliation: seed rows ahead of the main run
- Summary precomputation: windowed totals, averages and percent change
- Orchestration: sequential steps with bounded retry

Components take the Metric Store as a constructor argument and hold no
global state.
"""

from rollup.engine.backfill import BackfillReconciler
from rollup.engine.delta import DeltaComputer
from rollup.engine.phases import PhaseClassifier
from rollup.engine.pipeline import PipelineOrchestrator
from rollup.engine.rollup import RollupAggregator
from rollup.engine.summary import SummaryComputer

__all__ = [
    "BackfillReconciler",
    "DeltaComputer",
    "PhaseClassifier",
    "PipelineOrchestrator",
    "RollupAggregator",
    "SummaryComputer",
]
