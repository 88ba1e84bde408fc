import threading
import uuid
from typing import TYPE_CHECKING, Any, Dict, List, Optional

import structlog

from experiment_engine.core.events import Event, EventBus
from experiment_engine.core.store import ShardedStore
from experiment_engine.models.experiment import (
    ConversionEvent,
    EventType,
    Experiment,
    PerformanceMetrics,
    Variant,
)
from experiment_engine.services.experiments.errors import (
    NotAssignedError,
    NotFoundError,
    UnknownVariantError,
)

if TYPE_CHECKING:
    from experiment_engine.services.experiments.assignment import AssignmentStore

logger = structlog.get_logger("metrics")

PRIMARY_METRIC_EVENT = "primary_metric"


class MetricsAggregator:
    """
    Running per-variant counters.

    Every mutation of a variant's metrics happens under that variant's lock,
    so concurrent conversions on the same variant never lose updates.
    """

    def __init__(
        self,
        experiments: ShardedStore[Experiment],
        assignments: "AssignmentStore",
        bus: Optional[EventBus] = None,
        shards: int = 16,
    ):
        self.experiments = experiments
        self.assignments = assignments
        self.bus = bus
        self._locks: ShardedStore[threading.Lock] = ShardedStore(shards)
        self._events: ShardedStore[List[ConversionEvent]] = ShardedStore(shards)

    def _lock(self, experiment_id: str, variant_id: str) -> threading.Lock:
        lock, _ = self._locks.get_or_create((experiment_id, variant_id), threading.Lock)
        return lock

    def _variant(self, experiment_id: str, variant_id: str) -> Variant:
        experiment = self.experiments.get(experiment_id)
        if experiment is None:
            raise NotFoundError(experiment_id)
        variant = experiment.get_variant(variant_id)
        if variant is None:
            raise UnknownVariantError(variant_id, experiment_id)
        return variant

    def reset(self, experiment: Experiment) -> None:
        for variant in experiment.variants:
            with self._lock(experiment.id, variant.id):
                metrics = variant.metrics
                metrics.participant_count = 0
                metrics.conversion_count = 0
                metrics.conversion_rate = 0.0
                metrics.primary_metric_value = 0.0
                metrics.secondary_metrics = {}
                metrics.performance_impact = PerformanceMetrics()
        self._events.pop(experiment.id)

    def record_participant(self, experiment_id: str, variant_id: str) -> None:
        variant = self._variant(experiment_id, variant_id)
        with self._lock(experiment_id, variant_id):
            metrics = variant.metrics
            metrics.participant_count += 1
            metrics.conversion_rate = metrics.conversion_count / metrics.participant_count

    def record_conversion(
        self,
        experiment_id: str,
        participant_id: str,
        event_type: str,
        value: float = 1.0,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> ConversionEvent:
        """
        Attribute a conversion to the participant's assigned variant.

        Each call counts as one conversion. A "primary_metric" event adds its
        value to the primary metric total; any other event type accumulates
        under its own name in secondary_metrics.

        Raises:
            NotFoundError: unknown experiment
            NotAssignedError: participant has no assignment in this experiment
        """
        if self.experiments.get(experiment_id) is None:
            raise NotFoundError(experiment_id)

        assignment = self.assignments.get(experiment_id, participant_id)
        if assignment is None:
            raise NotAssignedError(participant_id, experiment_id)

        variant = self._variant(experiment_id, assignment.variant_id)
        event = ConversionEvent(
            id=str(uuid.uuid4()),
            experiment_id=experiment_id,
            variant_id=assignment.variant_id,
            participant_id=participant_id,
            event_type=event_type,
            value=value,
            metadata=dict(metadata or {}),
        )

        with self._lock(experiment_id, variant.id):
            metrics = variant.metrics
            metrics.conversion_count += 1
            if metrics.participant_count > 0:
                metrics.conversion_rate = metrics.conversion_count / metrics.participant_count
            if event_type == PRIMARY_METRIC_EVENT:
                metrics.primary_metric_value += value
            else:
                # Never mutated in place; snapshots read it without the variant lock
                secondary = dict(metrics.secondary_metrics)
                secondary[event_type] = secondary.get(event_type, 0.0) + value
                metrics.secondary_metrics = secondary

        self._events.append(experiment_id, event)

        logger.debug(
            "conversion_recorded",
            experiment_id=experiment_id,
            participant_id=participant_id,
            variant_id=event.variant_id,
            event_type=event_type,
        )
        if self.bus is not None:
            self.bus.publish(Event(EventType.CONVERSION_RECORDED, experiment_id, event.to_dict()))

        return event

    def conversion_events(self, experiment_id: str) -> List[ConversionEvent]:
        return list(self._events.get(experiment_id) or [])

    def total_conversions(self) -> int:
        return sum(len(events) for events in self._events.values())
