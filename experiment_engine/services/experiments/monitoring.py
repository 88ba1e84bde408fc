"""
Periodic monitoring of running experiments.

Each registered experiment gets its own asyncio task that sleeps for the
configured interval and then runs the monitoring check. A separate sweep
task periodically walks every running experiment, re-registering any that
lost their task and checking them.

Cancellation is deterministic: once cancel() or unregister() returns, no
further check fires for that experiment.
"""

import asyncio
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Dict, List, MutableMapping, Optional, Sequence, Set

import structlog

from experiment_engine.models.experiment import EarlyStoppingRule, Experiment, StoppingRuleType
from experiment_engine.services.experiments.stats import VariantComparison

logger = structlog.get_logger("monitoring")

DEFAULT_INTERVAL_SECONDS = 3600.0

CheckFunction = Callable[[str], Awaitable[object]]


def rule_fires(rule: EarlyStoppingRule, comparisons: Sequence[VariantComparison]) -> bool:
    results = [c.result for c in comparisons]
    if not results:
        return False

    if rule.type == StoppingRuleType.SUPERIORITY:
        return any(r.significant and r.effect_size > rule.threshold for r in results)
    if rule.type == StoppingRuleType.FUTILITY:
        return all(r.p_value > 1 - rule.threshold for r in results)
    if rule.type == StoppingRuleType.HARM:
        return any(r.effect_size < -rule.threshold for r in results)
    return False


def evaluate_stopping_rules(
    experiment: Experiment,
    comparisons: Sequence[VariantComparison],
    now: datetime,
    last_checked: MutableMapping[int, datetime],
) -> Optional[EarlyStoppingRule]:
    """
    Return the first early stopping rule that fires, if any.

    Rules only apply with sequential testing enabled and once the experiment
    has at least rule.min_sample_size participants. A rule with a check
    frequency is evaluated at most once per that many days; last_checked
    (keyed by rule position) records when each rule was last evaluated.
    """
    config = experiment.statistical_config
    if not config.sequential_testing:
        return None

    total = experiment.total_participants
    for index, rule in enumerate(config.early_stopping_rules):
        if total < rule.min_sample_size:
            continue

        previous = last_checked.get(index)
        if (
            previous is not None
            and rule.check_frequency_days > 0
            and now - previous < timedelta(days=rule.check_frequency_days)
        ):
            continue
        last_checked[index] = now

        if rule_fires(rule, comparisons):
            return rule

    return None


class MonitoringScheduler:
    def __init__(
        self,
        check: CheckFunction,
        running_ids: Callable[[], List[str]],
        interval: float = DEFAULT_INTERVAL_SECONDS,
        sweep_interval: float = DEFAULT_INTERVAL_SECONDS,
    ):
        self.check = check
        self.running_ids = running_ids
        self.interval = interval
        self.sweep_interval = sweep_interval
        self._tasks: Dict[str, asyncio.Task] = {}
        # Cancelled but not yet awaited
        self._cancelling: Dict[str, asyncio.Task] = {}
        self._pending: Set[str] = set()
        self._sweep_task: Optional[asyncio.Task] = None
        self._started = False

    @property
    def registered(self) -> List[str]:
        return list(self._tasks) + list(self._pending)

    def is_registered(self, experiment_id: str) -> bool:
        return experiment_id in self._tasks or experiment_id in self._pending

    async def start(self) -> None:
        if self._started:
            return
        self._started = True
        self._sweep_task = asyncio.create_task(self._sweep_loop())
        pending, self._pending = self._pending, set()
        for experiment_id in pending:
            self.register(experiment_id)
        logger.info("monitoring_started", experiments=len(self._tasks))

    def register(self, experiment_id: str) -> None:
        if not self._started:
            self._pending.add(experiment_id)
            return

        task = self._tasks.get(experiment_id)
        if task is not None and not task.done():
            return

        self._tasks[experiment_id] = asyncio.get_running_loop().create_task(
            self._run(experiment_id)
        )
        logger.debug("monitoring_registered", experiment_id=experiment_id)

    def cancel(self, experiment_id: str) -> Optional[asyncio.Task]:
        """Deregister without waiting. Returns the cancelled task, if any."""
        self._pending.discard(experiment_id)
        task = self._tasks.pop(experiment_id, None)
        if task is None:
            return None

        # A check that stops its own experiment must not cancel itself mid-stop
        if task is not asyncio.current_task():
            task.cancel()
            self._cancelling[experiment_id] = task
        logger.debug("monitoring_cancelled", experiment_id=experiment_id)
        return task

    async def unregister(self, experiment_id: str) -> None:
        """Deregister and wait until the experiment's task has finished."""
        self.cancel(experiment_id)
        task = self._cancelling.pop(experiment_id, None)
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)

    async def shutdown(self) -> None:
        tasks = list(self._tasks.values()) + list(self._cancelling.values())
        self._tasks.clear()
        self._cancelling.clear()
        self._pending.clear()
        if self._sweep_task is not None:
            tasks.append(self._sweep_task)
            self._sweep_task = None

        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

        self._started = False
        logger.info("monitoring_stopped", cancelled=len(tasks))

    def _owns(self, experiment_id: str) -> bool:
        return self._tasks.get(experiment_id) is asyncio.current_task()

    async def _run(self, experiment_id: str) -> None:
        while self._owns(experiment_id):
            await asyncio.sleep(self.interval)
            if not self._owns(experiment_id):
                return
            await self._tick(experiment_id)

    async def _tick(self, experiment_id: str) -> None:
        try:
            await self.check(experiment_id)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            # Retried at the next tick
            logger.error("monitor_check_failed", experiment_id=experiment_id, error=str(e))

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval)
            for experiment_id in self.running_ids():
                if experiment_id not in self._tasks:
                    self.register(experiment_id)
                await self._tick(experiment_id)
