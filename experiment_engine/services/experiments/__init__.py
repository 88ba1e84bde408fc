"""
Experimentation engine for A/B testing.

This module provides:
- Experiment registry and lifecycle (draft, ready, running, paused, stopped)
- Deterministic participant assignment and conversion tracking
- Two-proportion z-test analysis, sample sizing and multiple-comparison correction
- Scheduled monitoring with early stopping and results synthesis
"""

from experiment_engine.services.experiments.assignment import AssignmentEngine, AssignmentStore
from experiment_engine.services.experiments.errors import (
    ExcludedError,
    ExperimentError,
    InvalidStateError,
    NotAssignedError,
    NotFoundError,
    NotRunningError,
    ValidationError,
)
from experiment_engine.services.experiments.metrics import MetricsAggregator
from experiment_engine.services.experiments.monitoring import (
    MonitoringScheduler,
    evaluate_stopping_rules,
)
from experiment_engine.services.experiments.registry import ExperimentRegistry
from experiment_engine.services.experiments.results import ResultsSynthesizer
from experiment_engine.services.experiments.service import ExperimentService
from experiment_engine.services.experiments.stats import (
    ComparisonResult,
    StatisticalAnalyzer,
    apply_correction,
    calculate_lift,
)

__all__ = [
    "AssignmentEngine",
    "AssignmentStore",
    "MetricsAggregator",
    "ExperimentRegistry",
    "MonitoringScheduler",
    "evaluate_stopping_rules",
    "ResultsSynthesizer",
    "StatisticalAnalyzer",
    "ComparisonResult",
    "apply_correction",
    "calculate_lift",
    "ExperimentService",
    "ExperimentError",
    "ValidationError",
    "NotFoundError",
    "InvalidStateError",
    "NotRunningError",
    "ExcludedError",
    "NotAssignedError",
]
