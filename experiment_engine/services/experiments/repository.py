"""
Optional durable storage for experiments, assignments and conversions.

The engine never waits on these writes. The service subscribes a
PersistenceSubscriber to the event bus, so snapshots reach the repository
from the bus worker task, and a failed write is logged without touching the
in-memory state.
"""

import json
from typing import Any, Dict, List, Optional, Protocol

import structlog
from redis import asyncio as aioredis

from experiment_engine.core.events import Event
from experiment_engine.models.experiment import EventType

logger = structlog.get_logger("repository")

Snapshot = Dict[str, Any]


class ExperimentRepository(Protocol):
    async def save_experiment(self, experiment: Snapshot) -> None: ...

    async def save_assignment(self, assignment: Snapshot) -> None: ...

    async def save_conversion(self, conversion: Snapshot) -> None: ...


def experiment_key(experiment_id: str) -> str:
    return f"experiment:{experiment_id}"


def assignments_key(experiment_id: str) -> str:
    return f"experiment:{experiment_id}:assignments"


def conversions_key(experiment_id: str) -> str:
    return f"experiment:{experiment_id}:conversions"


class RedisExperimentRepository:
    """Stores JSON snapshots: one string per experiment, a list per log."""

    def __init__(self, redis: aioredis.Redis):
        self.redis = redis

    async def save_experiment(self, experiment: Snapshot) -> None:
        await self.redis.set(experiment_key(experiment["id"]), json.dumps(experiment))

    async def save_assignment(self, assignment: Snapshot) -> None:
        key = assignments_key(assignment["experiment_id"])
        await self.redis.rpush(key, json.dumps(assignment))

    async def save_conversion(self, conversion: Snapshot) -> None:
        key = conversions_key(conversion["experiment_id"])
        await self.redis.rpush(key, json.dumps(conversion))

    async def load_experiment(self, experiment_id: str) -> Optional[Snapshot]:
        raw = await self.redis.get(experiment_key(experiment_id))
        if raw is None:
            return None
        return json.loads(raw)

    async def load_assignments(self, experiment_id: str) -> List[Snapshot]:
        items = await self.redis.lrange(assignments_key(experiment_id), 0, -1)
        return [json.loads(raw) for raw in items]

    async def load_conversions(self, experiment_id: str) -> List[Snapshot]:
        items = await self.redis.lrange(conversions_key(experiment_id), 0, -1)
        return [json.loads(raw) for raw in items]


class PersistenceSubscriber:
    """Event bus handler that writes each event's snapshot to a repository."""

    def __init__(self, repository: ExperimentRepository):
        self.repository = repository

    async def __call__(self, event: Event) -> None:
        try:
            if event.event_type == EventType.PARTICIPANT_ASSIGNED:
                await self.repository.save_assignment(dict(event.payload))
            elif event.event_type == EventType.CONVERSION_RECORDED:
                await self.repository.save_conversion(dict(event.payload))
            elif "experiment" in event.payload:
                await self.repository.save_experiment(dict(event.payload["experiment"]))
        except Exception as e:
            logger.error(
                "persistence_failed",
                event_type=event.event_type.value,
                experiment_id=event.experiment_id,
                error=str(e),
            )
