import copy
import uuid
from datetime import timedelta
from typing import Callable, Collection, List, Optional, Protocol

import structlog

from experiment_engine.core.events import Event, EventBus
from experiment_engine.core.store import ShardedStore
from experiment_engine.models.experiment import (
    AllocationCondition,
    EarlyStoppingRule,
    EventType,
    Experiment,
    ExperimentMetadata,
    ExperimentStatus,
    ExperimentType,
    SegmentCriteria,
    StatisticalConfig,
    TrafficAllocation,
    TrafficSegment,
    Variant,
    utcnow,
)
from experiment_engine.models.schemas import (
    CreateExperimentRequest,
    MetadataRequest,
    StatisticalConfigRequest,
    TrafficAllocationRequest,
    UpdateExperimentRequest,
    VariantRequest,
)
from experiment_engine.services.experiments.errors import (
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from experiment_engine.services.experiments.industry import get_industry_defaults
from experiment_engine.services.experiments.metrics import MetricsAggregator
from experiment_engine.services.experiments.results import ResultsSynthesizer
from experiment_engine.services.experiments.stats import (
    DEFAULT_BASELINE_RATE,
    StatisticalAnalyzer,
)

logger = structlog.get_logger("registry")

ALLOCATION_TOLERANCE = 0.01
DEFAULT_CONFIDENCE_LEVEL = 0.95


class MonitorHandle(Protocol):
    """The part of the monitoring scheduler the registry drives."""

    def register(self, experiment_id: str) -> None: ...

    def cancel(self, experiment_id: str) -> None: ...


def validate_experiment(experiment: Experiment) -> None:
    """
    Check the business rules every stored experiment must satisfy.

    Raises:
        ValidationError: naming the first violated rule
    """
    variants = experiment.variants
    if not variants:
        raise ValidationError("variants_required", "Experiment must have at least one variant")

    ids = [v.id for v in variants]
    if len(set(ids)) != len(ids):
        raise ValidationError("unique_variant_ids", "Variant ids must be unique")

    total = sum(v.allocation for v in variants)
    if abs(total - 100) > ALLOCATION_TOLERANCE:
        raise ValidationError(
            "allocation_sum", f"Variant allocations must sum to 100%. Current sum: {total}%"
        )

    if not any(v.is_control for v in variants):
        raise ValidationError(
            "control_variant", "Experiment must have at least one control variant"
        )

    config = experiment.statistical_config
    if not 0 < config.confidence_level < 1:
        raise ValidationError("confidence_level", "Confidence level must be between 0 and 1")
    if not 0 < config.power_level < 1:
        raise ValidationError("power_level", "Power level must be between 0 and 1")
    if not 0 < config.alpha_level < 1:
        raise ValidationError("alpha_level", "Alpha level must be between 0 and 1")

    allocation = experiment.traffic_allocation
    if not 0 <= allocation.rollout_percentage <= 100:
        raise ValidationError(
            "rollout_percentage", "Rollout percentage must be between 0 and 100"
        )
    for segment in allocation.segments:
        if not 0 <= segment.allocation <= 100:
            raise ValidationError(
                "segment_allocation",
                f"Segment {segment.name} allocation must be between 0 and 100",
            )


def build_variants(requests: List[VariantRequest]) -> List[Variant]:
    return [
        Variant(
            id=r.id or str(uuid.uuid4()),
            name=r.name,
            allocation=r.allocation,
            is_control=r.is_control,
            description=r.description,
            configuration=dict(r.configuration),
        )
        for r in requests
    ]


def build_traffic_allocation(request: TrafficAllocationRequest) -> TrafficAllocation:
    return TrafficAllocation(
        method=request.method,
        sticky=request.sticky,
        rollout_percentage=request.rollout_percentage,
        segments=[
            TrafficSegment(
                id=s.id or str(uuid.uuid4()),
                name=s.name,
                criteria=SegmentCriteria(**s.criteria.model_dump()),
                allocation=s.allocation,
            )
            for s in request.segments
        ],
        conditions=[
            AllocationCondition(attribute=c.attribute, operator=c.operator, value=c.value)
            for c in request.conditions
        ],
    )


def build_statistical_config(
    request: StatisticalConfigRequest, industry: Optional[str] = None
) -> StatisticalConfig:
    confidence = request.confidence_level
    if confidence is None:
        defaults = get_industry_defaults(industry)
        confidence = defaults.confidence_level if defaults else DEFAULT_CONFIDENCE_LEVEL

    alpha = request.alpha_level
    if alpha is None:
        alpha = round(1 - confidence, 10)

    return StatisticalConfig(
        confidence_level=confidence,
        power_level=request.power_level,
        minimum_detectable_effect=request.minimum_detectable_effect,
        alpha_level=alpha,
        test_type=request.test_type,
        correction_method=request.correction_method,
        sequential_testing=request.sequential_testing,
        early_stopping_rules=[
            EarlyStoppingRule(
                type=r.type,
                threshold=r.threshold,
                check_frequency_days=r.check_frequency_days,
                min_sample_size=r.min_sample_size,
            )
            for r in request.early_stopping_rules
        ],
    )


def build_metadata(request: MetadataRequest) -> ExperimentMetadata:
    return ExperimentMetadata(**request.model_dump())


class ExperimentRegistry:
    """
    Owns experiment definitions and their lifecycle.

    Every transition runs as one update on the experiment's store shard, so a
    rejected transition or failed validation leaves the stored experiment as
    it was.
    """

    def __init__(
        self,
        experiments: ShardedStore[Experiment],
        analyzer: StatisticalAnalyzer,
        synthesizer: ResultsSynthesizer,
        metrics: MetricsAggregator,
        scheduler: Optional[MonitorHandle] = None,
        bus: Optional[EventBus] = None,
        baseline_rate: float = DEFAULT_BASELINE_RATE,
    ):
        self.experiments = experiments
        self.analyzer = analyzer
        self.synthesizer = synthesizer
        self.metrics = metrics
        self.scheduler = scheduler
        self.bus = bus
        self.baseline_rate = baseline_rate

    def _publish(self, event_type: EventType, experiment: Experiment, **extra) -> None:
        if self.bus is None:
            return
        payload = {"experiment": experiment.to_dict(), **extra}
        self.bus.publish(Event(event_type, experiment.id, payload))

    def create(self, request: CreateExperimentRequest) -> str:
        if request.status not in (ExperimentStatus.DRAFT, ExperimentStatus.READY):
            raise ValidationError(
                "initial_status", "New experiments must start as draft or ready"
            )

        experiment = Experiment(
            id=str(uuid.uuid4()),
            name=request.name,
            hypothesis=request.hypothesis,
            description=request.description,
            type=request.type,
            status=request.status,
            industry=request.industry,
            target_segment=request.target_segment,
            success_metrics=list(request.success_metrics),
            variants=build_variants(request.variants),
            traffic_allocation=build_traffic_allocation(request.traffic_allocation),
            statistical_config=build_statistical_config(
                request.statistical_config, request.industry
            ),
            metadata=build_metadata(request.metadata),
            end_date=request.end_date,
        )

        defaults = get_industry_defaults(experiment.industry)
        if defaults is not None:
            metadata = experiment.metadata
            metadata.estimated_duration_days = (
                metadata.estimated_duration_days or defaults.typical_duration_days
            )
            metadata.required_sample_size = (
                metadata.required_sample_size or defaults.min_sample_size
            )
            if not experiment.success_metrics:
                experiment.success_metrics = list(defaults.primary_metrics)

        validate_experiment(experiment)

        if not experiment.metadata.required_sample_size:
            experiment.metadata.required_sample_size = self.analyzer.required_sample_size(
                experiment.statistical_config, self.baseline_rate
            )

        self.experiments.put(experiment.id, experiment)

        logger.info(
            "experiment_created",
            experiment_id=experiment.id,
            name=experiment.name,
            status=experiment.status.value,
            industry=experiment.industry,
        )
        self._publish(EventType.EXPERIMENT_CREATED, experiment)

        return experiment.id

    def get(self, experiment_id: str) -> Experiment:
        experiment = self.experiments.get(experiment_id)
        if experiment is None:
            raise NotFoundError(experiment_id)
        return experiment

    def list(
        self,
        status: Optional[ExperimentStatus] = None,
        industry: Optional[str] = None,
        type: Optional[ExperimentType] = None,
    ) -> List[Experiment]:
        experiments = [
            e
            for e in self.experiments.values()
            if (status is None or e.status == status)
            and (industry is None or e.industry == industry)
            and (type is None or e.type == type)
        ]
        return sorted(experiments, key=lambda e: e.created_at, reverse=True)

    def running_ids(self) -> List[str]:
        return [e.id for e in self.experiments.values() if e.status == ExperimentStatus.RUNNING]

    def update(self, experiment_id: str, request: UpdateExperimentRequest) -> Experiment:
        def apply(current: Optional[Experiment]) -> Experiment:
            if current is None:
                raise NotFoundError(experiment_id)
            if current.status == ExperimentStatus.RUNNING:
                raise InvalidStateError(
                    f"Experiment {experiment_id} is running; configuration cannot change"
                )

            candidate = copy.deepcopy(current)
            for name in (
                "name",
                "hypothesis",
                "description",
                "type",
                "industry",
                "target_segment",
                "end_date",
            ):
                value = getattr(request, name)
                if value is not None:
                    setattr(candidate, name, value)
            if request.success_metrics is not None:
                candidate.success_metrics = list(request.success_metrics)
            if request.variants is not None:
                candidate.variants = build_variants(request.variants)
                kept = {variant.id for variant in candidate.variants}
                in_use = [
                    v.id
                    for v in current.variants
                    if v.id not in kept and v.metrics.participant_count > 0
                ]
                if in_use:
                    raise ValidationError(
                        "variants_in_use",
                        f"Variants with assigned participants cannot be removed: "
                        f"{', '.join(in_use)}",
                    )
                # Counters collected so far stay with their variant
                for variant in candidate.variants:
                    existing = current.get_variant(variant.id)
                    if existing is not None:
                        variant.metrics = existing.metrics
            else:
                for variant, existing in zip(candidate.variants, current.variants):
                    variant.metrics = existing.metrics
            if request.traffic_allocation is not None:
                candidate.traffic_allocation = build_traffic_allocation(
                    request.traffic_allocation
                )
            if request.statistical_config is not None:
                candidate.statistical_config = build_statistical_config(
                    request.statistical_config, candidate.industry
                )
            if request.metadata is not None:
                candidate.metadata = build_metadata(request.metadata)

            validate_experiment(candidate)
            candidate.updated_at = utcnow()
            return candidate

        experiment = self.experiments.update(experiment_id, apply)

        logger.info("experiment_updated", experiment_id=experiment_id)
        self._publish(EventType.EXPERIMENT_UPDATED, experiment)
        return experiment

    def _transition(
        self,
        experiment_id: str,
        allowed: Collection[ExperimentStatus],
        target: ExperimentStatus,
        action: str,
        mutate: Optional[Callable[[Experiment], None]] = None,
    ) -> Experiment:
        def apply(current: Optional[Experiment]) -> Experiment:
            if current is None:
                raise NotFoundError(experiment_id)
            if current.status not in allowed:
                raise InvalidStateError(
                    f"Cannot {action} experiment {experiment_id} "
                    f"in status {current.status.value}"
                )
            if mutate is not None:
                mutate(current)
            current.status = target
            current.updated_at = utcnow()
            return current

        return self.experiments.update(experiment_id, apply)

    def mark_ready(self, experiment_id: str) -> Experiment:
        experiment = self._transition(
            experiment_id,
            {ExperimentStatus.DRAFT},
            ExperimentStatus.READY,
            "mark ready",
            mutate=validate_experiment,
        )
        logger.info("experiment_ready", experiment_id=experiment_id)
        self._publish(EventType.EXPERIMENT_READY, experiment)
        return experiment

    def start(self, experiment_id: str) -> Experiment:
        def begin(experiment: Experiment) -> None:
            validate_experiment(experiment)
            self.metrics.reset(experiment)
            now = utcnow()
            experiment.start_date = now
            duration = experiment.metadata.estimated_duration_days
            if experiment.end_date is None and duration:
                experiment.end_date = now + timedelta(days=duration)

        experiment = self._transition(
            experiment_id,
            {ExperimentStatus.READY},
            ExperimentStatus.RUNNING,
            "start",
            mutate=begin,
        )
        if self.scheduler is not None:
            self.scheduler.register(experiment_id)

        logger.info(
            "experiment_started",
            experiment_id=experiment_id,
            end_date=experiment.end_date.isoformat() if experiment.end_date else None,
        )
        self._publish(EventType.EXPERIMENT_STARTED, experiment)
        return experiment

    def pause(self, experiment_id: str) -> Experiment:
        experiment = self._transition(
            experiment_id, {ExperimentStatus.RUNNING}, ExperimentStatus.PAUSED, "pause"
        )
        if self.scheduler is not None:
            self.scheduler.cancel(experiment_id)

        logger.info("experiment_paused", experiment_id=experiment_id)
        self._publish(EventType.EXPERIMENT_PAUSED, experiment)
        return experiment

    def resume(self, experiment_id: str) -> Experiment:
        experiment = self._transition(
            experiment_id, {ExperimentStatus.PAUSED}, ExperimentStatus.RUNNING, "resume"
        )
        if self.scheduler is not None:
            self.scheduler.register(experiment_id)

        logger.info("experiment_resumed", experiment_id=experiment_id)
        self._publish(EventType.EXPERIMENT_RESUMED, experiment)
        return experiment

    def stop(self, experiment_id: str, reason: str) -> Experiment:
        """
        End a running or paused experiment and attach its final results.

        Raises:
            NotFoundError: unknown experiment
            InvalidStateError: experiment is not running or paused
        """
        return self._finish(experiment_id, reason, ExperimentStatus.STOPPED)

    def complete(self, experiment_id: str, reason: str = "Experiment completed") -> Experiment:
        return self._finish(experiment_id, reason, ExperimentStatus.COMPLETED)

    def _finish(self, experiment_id: str, reason: str, target: ExperimentStatus) -> Experiment:
        def finish(experiment: Experiment) -> None:
            experiment.end_date = utcnow()
            experiment.stop_reason = reason
            experiment.results = self._compute_results(experiment)

        experiment = self._transition(
            experiment_id,
            {ExperimentStatus.RUNNING, ExperimentStatus.PAUSED},
            target,
            "stop" if target == ExperimentStatus.STOPPED else "complete",
            mutate=finish,
        )
        if self.scheduler is not None:
            self.scheduler.cancel(experiment_id)

        event_type = (
            EventType.EXPERIMENT_STOPPED
            if target == ExperimentStatus.STOPPED
            else EventType.EXPERIMENT_COMPLETED
        )
        logger.info(
            event_type.value,
            experiment_id=experiment_id,
            reason=reason,
            winning_variant=experiment.results.winning_variant if experiment.results else None,
        )
        self._publish(event_type, experiment, reason=reason)
        return experiment

    def _compute_results(self, experiment: Experiment):
        try:
            comparisons = self.analyzer.compare_variants(experiment)
            return self.synthesizer.synthesize(experiment, comparisons)
        except Exception as e:
            # Results are advisory; the experiment still ends
            logger.error(
                "results_computation_failed", experiment_id=experiment.id, error=str(e)
            )
            return None

    def archive(self, experiment_id: str) -> Experiment:
        experiment = self._transition(
            experiment_id,
            {ExperimentStatus.COMPLETED, ExperimentStatus.STOPPED},
            ExperimentStatus.ARCHIVED,
            "archive",
        )
        logger.info("experiment_archived", experiment_id=experiment_id)
        self._publish(EventType.EXPERIMENT_ARCHIVED, experiment)
        return experiment
