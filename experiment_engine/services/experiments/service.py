import random
from datetime import datetime
from typing import Any, Callable, Collection, Dict, List, Optional

import structlog

from experiment_engine.config import Settings, get_settings
from experiment_engine.core.events import EventBus, Handler, Subscription
from experiment_engine.core.store import ShardedStore
from experiment_engine.models.experiment import (
    AssignmentContext,
    ConversionEvent,
    EventType,
    Experiment,
    ExperimentStatus,
    ExperimentType,
    ParticipantAssignment,
    utcnow,
)
from experiment_engine.models.schemas import CreateExperimentRequest, UpdateExperimentRequest
from experiment_engine.services.experiments.assignment import AssignmentEngine, AssignmentStore
from experiment_engine.services.experiments.metrics import MetricsAggregator
from experiment_engine.services.experiments.monitoring import (
    MonitoringScheduler,
    evaluate_stopping_rules,
)
from experiment_engine.services.experiments.registry import ExperimentRegistry
from experiment_engine.services.experiments.repository import (
    ExperimentRepository,
    PersistenceSubscriber,
)
from experiment_engine.services.experiments.results import ResultsSynthesizer
from experiment_engine.services.experiments.stats import StatisticalAnalyzer

logger = structlog.get_logger("experiments")

DURATION_REACHED_REASON = "Experiment duration reached"


class ExperimentService:
    """
    Entry point that wires the engine together.

    Build one per process and hand it to whoever needs it. Assignment and
    conversion calls only touch in-memory state; persistence, when a
    repository is given, happens on the event bus.

    Usage:
        service = ExperimentService(settings, repository=repository)
        await service.start()
        ...
        await service.shutdown()
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        repository: Optional[ExperimentRepository] = None,
        rng: Optional[random.Random] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        settings = settings or get_settings()
        self.settings = settings
        self.clock = clock

        self.bus = EventBus(max_queue_size=settings.EVENT_QUEUE_SIZE)
        self.experiments: ShardedStore[Experiment] = ShardedStore(settings.STORE_SHARDS)
        self.assignments = AssignmentStore(settings.STORE_SHARDS)

        self.analyzer = StatisticalAnalyzer(settings.STATS_BACKEND)
        self.synthesizer = ResultsSynthesizer()
        self.metrics = MetricsAggregator(
            self.experiments, self.assignments, self.bus, settings.STORE_SHARDS
        )
        self.scheduler = MonitoringScheduler(
            check=self.monitor_experiment,
            running_ids=lambda: self.registry.running_ids(),
            interval=settings.MONITOR_INTERVAL_SECONDS,
            sweep_interval=settings.MONITOR_SWEEP_INTERVAL_SECONDS,
        )
        self.registry = ExperimentRegistry(
            self.experiments,
            analyzer=self.analyzer,
            synthesizer=self.synthesizer,
            metrics=self.metrics,
            scheduler=self.scheduler,
            bus=self.bus,
            baseline_rate=settings.DEFAULT_BASELINE_RATE,
        )
        self.engine = AssignmentEngine(
            self.experiments, self.assignments, self.metrics, self.bus, rng
        )

        self.repository = repository
        if repository is not None:
            self.bus.subscribe(PersistenceSubscriber(repository))

        # Last evaluation time of each early stopping rule, per experiment
        self._rule_checks: Dict[str, Dict[int, datetime]] = {}

    async def start(self) -> None:
        await self.bus.start()
        await self.scheduler.start()
        logger.info("experiment_service_started", persistence=self.repository is not None)

    async def shutdown(self) -> None:
        await self.scheduler.shutdown()
        await self.bus.close()
        logger.info("experiment_service_stopped")

    def subscribe(
        self, handler: Handler, event_types: Optional[Collection[EventType]] = None
    ) -> Subscription:
        return self.bus.subscribe(handler, event_types)

    # Lifecycle

    async def create_experiment(self, request: CreateExperimentRequest) -> Experiment:
        experiment_id = self.registry.create(request)
        return self.registry.get(experiment_id)

    async def update_experiment(
        self, experiment_id: str, request: UpdateExperimentRequest
    ) -> Experiment:
        return self.registry.update(experiment_id, request)

    async def mark_ready(self, experiment_id: str) -> Experiment:
        return self.registry.mark_ready(experiment_id)

    async def start_experiment(self, experiment_id: str) -> Experiment:
        self._rule_checks.pop(experiment_id, None)
        return self.registry.start(experiment_id)

    async def pause_experiment(self, experiment_id: str) -> Experiment:
        experiment = self.registry.pause(experiment_id)
        await self.scheduler.unregister(experiment_id)
        return experiment

    async def resume_experiment(self, experiment_id: str) -> Experiment:
        return self.registry.resume(experiment_id)

    async def stop_experiment(self, experiment_id: str, reason: str) -> Experiment:
        experiment = self.registry.stop(experiment_id, reason)
        await self.scheduler.unregister(experiment_id)
        self._rule_checks.pop(experiment_id, None)
        return experiment

    async def complete_experiment(
        self, experiment_id: str, reason: str = "Experiment completed"
    ) -> Experiment:
        experiment = self.registry.complete(experiment_id, reason)
        await self.scheduler.unregister(experiment_id)
        self._rule_checks.pop(experiment_id, None)
        return experiment

    async def archive_experiment(self, experiment_id: str) -> Experiment:
        return self.registry.archive(experiment_id)

    # Hot path

    async def assign_participant(
        self,
        participant_id: str,
        experiment_id: str,
        context: Optional[AssignmentContext] = None,
        session_id: Optional[str] = None,
    ) -> ParticipantAssignment:
        return self.engine.assign(participant_id, experiment_id, context, session_id)

    async def record_conversion(
        self,
        experiment_id: str,
        participant_id: str,
        event_type: str = "conversion",
        value: float = 1.0,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> ConversionEvent:
        return self.metrics.record_conversion(
            experiment_id, participant_id, event_type, value, metadata
        )

    # Monitoring

    async def monitor_experiment(self, experiment_id: str) -> Optional[str]:
        """
        Run one monitoring check. Returns the stop reason when the check
        stopped the experiment, else None.
        """
        experiment = self.registry.get(experiment_id)
        if experiment.status != ExperimentStatus.RUNNING:
            return None

        now = self.clock()
        if experiment.end_date is not None and now > experiment.end_date:
            await self.stop_experiment(experiment_id, DURATION_REACHED_REASON)
            return DURATION_REACHED_REASON

        comparisons = self.analyzer.compare_variants(experiment)
        rule = evaluate_stopping_rules(
            experiment,
            comparisons,
            now,
            self._rule_checks.setdefault(experiment_id, {}),
        )
        if rule is None:
            logger.debug(
                "monitor_check_completed",
                experiment_id=experiment_id,
                participants=experiment.total_participants,
            )
            return None

        reason = f"Early stopping rule triggered: {rule.type.value}"
        logger.info(
            "early_stopping_triggered",
            experiment_id=experiment_id,
            rule=rule.type.value,
            threshold=rule.threshold,
        )
        await self.stop_experiment(experiment_id, reason)
        return reason

    # Read API

    async def get_experiment(self, experiment_id: str) -> Experiment:
        return self.registry.get(experiment_id)

    async def list_experiments(
        self,
        status: Optional[ExperimentStatus] = None,
        industry: Optional[str] = None,
        type: Optional[ExperimentType] = None,
    ) -> List[Experiment]:
        return self.registry.list(status=status, industry=industry, type=type)

    async def get_assignments(self, experiment_id: str) -> List[ParticipantAssignment]:
        self.registry.get(experiment_id)
        return self.assignments.for_experiment(experiment_id)

    async def get_conversion_events(self, experiment_id: str) -> List[ConversionEvent]:
        self.registry.get(experiment_id)
        return self.metrics.conversion_events(experiment_id)

    async def get_required_sample_size(
        self, experiment_id: str, baseline_rate: Optional[float] = None
    ) -> int:
        experiment = self.registry.get(experiment_id)
        rate = self.settings.DEFAULT_BASELINE_RATE if baseline_rate is None else baseline_rate
        return self.analyzer.required_sample_size(experiment.statistical_config, rate)

    async def get_experiment_stats(self) -> Dict[str, Any]:
        experiments = self.registry.list()
        durations = [e.metadata.estimated_duration_days or 0 for e in experiments]

        return {
            "total_experiments": len(experiments),
            "running_experiments": sum(
                1 for e in experiments if e.status == ExperimentStatus.RUNNING
            ),
            "completed_experiments": sum(
                1 for e in experiments if e.status == ExperimentStatus.COMPLETED
            ),
            "total_participants": sum(
                len(self.assignments.for_experiment(e.id)) for e in experiments
            ),
            "total_conversions": self.metrics.total_conversions(),
            "avg_experiment_duration": sum(durations) / len(durations) if durations else 0.0,
        }
