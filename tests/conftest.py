import random

import pytest
import pytest_asyncio

from experiment_engine.config import Settings
from experiment_engine.models.schemas import CreateExperimentRequest
from experiment_engine.services.experiments.service import ExperimentService


@pytest.fixture
def settings():
    return Settings(
        _env_file=None,
        REDIS_URL="",
        STORE_SHARDS=4,
        EVENT_QUEUE_SIZE=10000,
        MONITOR_INTERVAL_SECONDS=3600.0,
        MONITOR_SWEEP_INTERVAL_SECONDS=3600.0,
    )


@pytest.fixture
def make_request():
    """Factory for a valid two-variant experiment request."""

    def _make(**overrides) -> CreateExperimentRequest:
        data = {
            "name": "Checkout button color",
            "hypothesis": "A green checkout button increases conversion",
            "status": "ready",
            "variants": [
                {"id": "control", "name": "Control", "is_control": True, "allocation": 50},
                {"id": "treatment", "name": "Green button", "allocation": 50},
            ],
        }
        data.update(overrides)
        return CreateExperimentRequest(**data)

    return _make


@pytest.fixture
def service(settings):
    """Service that is not started: no event loop work, no monitoring tasks."""
    return ExperimentService(settings, rng=random.Random(42))


@pytest_asyncio.fixture
async def running_service(settings):
    service = ExperimentService(settings, rng=random.Random(42))
    await service.start()
    yield service
    await service.shutdown()
