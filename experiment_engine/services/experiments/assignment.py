"""
Participant assignment.

Deterministic bucketing for hash-based experiments, weighted draws for the
other allocation methods, and the rollout, condition and segment gates that
decide whether a participant takes part at all.
"""

import random
import uuid
from typing import Any, Callable, List, Optional, Tuple

import structlog

from experiment_engine.core.events import Event, EventBus
from experiment_engine.core.store import ShardedStore
from experiment_engine.models.experiment import (
    AllocationCondition,
    AllocationMethod,
    AssignmentContext,
    ConditionOperator,
    EventType,
    Experiment,
    ExperimentStatus,
    ParticipantAssignment,
    SegmentCriteria,
    TrafficSegment,
)
from experiment_engine.services.experiments.errors import (
    ExcludedError,
    NotFoundError,
    NotRunningError,
)
from experiment_engine.services.experiments.metrics import MetricsAggregator

logger = structlog.get_logger("assignment")

# Condition attributes may be given in either spelling
_CONTEXT_ATTRIBUTES = {
    "industry": "industry",
    "user_segment": "user_segment",
    "userSegment": "user_segment",
    "device_type": "device_type",
    "deviceType": "device_type",
    "geography": "geography",
    "traffic_source": "traffic_source",
    "trafficSource": "traffic_source",
}


def participant_bucket(participant_id: str, experiment_id: str) -> int:
    """Stable bucket in [0, 100) for a participant within an experiment."""
    # UTF-16 code units, two bytes each
    data = (participant_id + experiment_id).encode("utf-16-le")
    h = 0
    for i in range(0, len(data), 2):
        h = (h * 31 + int.from_bytes(data[i : i + 2], "little")) & 0xFFFFFFFF
    return h % 100


def select_variant(experiment: Experiment, point: float) -> str:
    """Walk variants in declaration order until point falls in a cumulative range."""
    cumulative = 0.0
    for variant in experiment.variants:
        cumulative += variant.allocation
        if point < cumulative:
            return variant.id
    # Rounding gaps fall back to the first variant
    return experiment.variants[0].id


def resolve_attribute(context: AssignmentContext, attribute: str) -> Any:
    field_name = _CONTEXT_ATTRIBUTES.get(attribute)
    if field_name is not None:
        value = getattr(context, field_name)
        if value not in (None, ""):
            return value
    return context.custom_attributes.get(attribute)


def _as_number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def evaluate_condition(condition: AllocationCondition, context: AssignmentContext) -> bool:
    actual = resolve_attribute(context, condition.attribute)
    expected = condition.value
    operator = condition.operator

    if operator == ConditionOperator.EQUALS:
        return actual == expected
    if operator == ConditionOperator.NOT_EQUALS:
        return actual != expected
    if operator == ConditionOperator.IN:
        return isinstance(expected, (list, tuple, set)) and actual in expected
    if operator == ConditionOperator.NOT_IN:
        return isinstance(expected, (list, tuple, set)) and actual not in expected
    if operator in (ConditionOperator.GREATER_THAN, ConditionOperator.LESS_THAN):
        left, right = _as_number(actual), _as_number(expected)
        if left is None or right is None:
            return False
        return left > right if operator == ConditionOperator.GREATER_THAN else left < right
    if operator == ConditionOperator.CONTAINS:
        if actual is None or expected is None:
            return False
        return str(expected) in str(actual)
    return False


def matches_segment(criteria: SegmentCriteria, context: AssignmentContext) -> bool:
    checks = (
        (criteria.industry, context.industry),
        (criteria.user_type, context.user_segment),
        (criteria.geography, context.geography),
        (criteria.device_type, context.device_type),
        (criteria.traffic_source, context.traffic_source),
    )
    for allowed, value in checks:
        if allowed and value not in allowed:
            return False

    if criteria.custom_attributes:
        for key, expected in criteria.custom_attributes.items():
            if context.custom_attributes.get(key) != expected:
                return False

    return True


class AssignmentStore:
    """
    Assignments keyed by (experiment_id, participant_id).

    Keeps the latest assignment per participant for lookups plus the full
    per-experiment history in assignment order.
    """

    def __init__(self, shards: int = 16):
        self._latest: ShardedStore[ParticipantAssignment] = ShardedStore(shards)
        self._history: ShardedStore[List[ParticipantAssignment]] = ShardedStore(shards)

    def get(self, experiment_id: str, participant_id: str) -> Optional[ParticipantAssignment]:
        return self._latest.get((experiment_id, participant_id))

    def get_or_create(
        self,
        experiment_id: str,
        participant_id: str,
        factory: Callable[[], ParticipantAssignment],
    ) -> Tuple[ParticipantAssignment, bool]:
        assignment, created = self._latest.get_or_create((experiment_id, participant_id), factory)
        if created:
            self._history.append(experiment_id, assignment)
        return assignment, created

    def add(self, assignment: ParticipantAssignment) -> None:
        self._latest.put((assignment.experiment_id, assignment.participant_id), assignment)
        self._history.append(assignment.experiment_id, assignment)

    def for_experiment(self, experiment_id: str) -> List[ParticipantAssignment]:
        return list(self._history.get(experiment_id) or [])


class AssignmentEngine:
    def __init__(
        self,
        experiments: ShardedStore[Experiment],
        assignments: AssignmentStore,
        metrics: MetricsAggregator,
        bus: Optional[EventBus] = None,
        rng: Optional[random.Random] = None,
    ):
        self.experiments = experiments
        self.assignments = assignments
        self.metrics = metrics
        self.bus = bus
        self.rng = rng or random.Random()

    def assign(
        self,
        participant_id: str,
        experiment_id: str,
        context: Optional[AssignmentContext] = None,
        session_id: Optional[str] = None,
    ) -> ParticipantAssignment:
        """
        Assign a participant to a variant of a running experiment.

        Sticky experiments return the participant's existing assignment
        unchanged. Check and insert happen under one store lock, so racing
        first-time calls for the same participant produce one assignment.

        Raises:
            NotFoundError: unknown experiment
            NotRunningError: experiment is not running
            ExcludedError: participant failed a rollout, condition or segment gate
        """
        experiment = self.experiments.get(experiment_id)
        if experiment is None:
            raise NotFoundError(experiment_id)
        if experiment.status != ExperimentStatus.RUNNING:
            raise NotRunningError(experiment_id, experiment.status.value)

        context = context or AssignmentContext()

        def build() -> ParticipantAssignment:
            self._check_inclusion(experiment, participant_id, context)
            return ParticipantAssignment(
                participant_id=participant_id,
                experiment_id=experiment_id,
                variant_id=self._choose_variant(experiment, participant_id),
                session_id=session_id or str(uuid.uuid4()),
                context=context,
            )

        if experiment.traffic_allocation.sticky:
            assignment, created = self.assignments.get_or_create(
                experiment_id, participant_id, build
            )
            if not created:
                return assignment
        else:
            assignment = build()
            self.assignments.add(assignment)

        self.metrics.record_participant(experiment_id, assignment.variant_id)

        logger.debug(
            "participant_assigned",
            experiment_id=experiment_id,
            participant_id=participant_id,
            variant_id=assignment.variant_id,
        )
        if self.bus is not None:
            self.bus.publish(
                Event(EventType.PARTICIPANT_ASSIGNED, experiment_id, assignment.to_dict())
            )

        return assignment

    def _draw(self) -> float:
        return self.rng.random() * 100

    def _check_inclusion(
        self, experiment: Experiment, participant_id: str, context: AssignmentContext
    ) -> None:
        allocation = experiment.traffic_allocation

        if allocation.rollout_percentage < 100 and self._draw() >= allocation.rollout_percentage:
            raise ExcludedError(participant_id, experiment.id, "outside rollout percentage")

        for condition in allocation.conditions:
            if not evaluate_condition(condition, context):
                raise ExcludedError(
                    participant_id,
                    experiment.id,
                    f"condition failed: {condition.attribute} {condition.operator.value}",
                )

        segment = self._matching_segment(allocation.segments, context)
        if segment is not None and segment.allocation < 100:
            if self._draw() >= segment.allocation:
                raise ExcludedError(
                    participant_id, experiment.id, f"outside segment allocation: {segment.name}"
                )

    @staticmethod
    def _matching_segment(
        segments: List[TrafficSegment], context: AssignmentContext
    ) -> Optional[TrafficSegment]:
        for segment in segments:
            if matches_segment(segment.criteria, context):
                return segment
        return None

    def _choose_variant(self, experiment: Experiment, participant_id: str) -> str:
        if experiment.traffic_allocation.method == AllocationMethod.HASH_BASED:
            point = participant_bucket(participant_id, experiment.id)
        else:
            # random, weighted and segment_based all use a weighted draw
            point = self._draw()
        return select_variant(experiment, point)
