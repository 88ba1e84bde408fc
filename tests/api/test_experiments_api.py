import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from experiment_engine.api.deps import get_experiment_service
from experiment_engine.core.cache import get_redis
from experiment_engine.main import app

BASE = "/api/v1/experiments"


def experiment_payload(**overrides):
    data = {
        "name": "Pricing page layout",
        "hypothesis": "Showing the annual plan first increases upgrades",
        "status": "ready",
        "industry": "saas",
        "variants": [
            {"id": "control", "name": "Monthly first", "is_control": True, "allocation": 50},
            {"id": "annual", "name": "Annual first", "allocation": 50},
        ],
    }
    data.update(overrides)
    return data


@pytest_asyncio.fixture
async def client(running_service):
    app.dependency_overrides[get_experiment_service] = lambda: running_service
    app.dependency_overrides[get_redis] = lambda: None

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()


async def create_running(client, **overrides):
    response = await client.post(BASE, json=experiment_payload(**overrides))
    experiment_id = response.json()["id"]
    await client.post(f"{BASE}/{experiment_id}/start")
    return experiment_id


class TestHealth:
    @pytest.mark.asyncio
    async def test_health(self, client):
        response = await client.get("/api/v1/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["running_experiments"] == 0
        assert "X-Request-ID" in response.headers

    @pytest.mark.asyncio
    async def test_redis_disabled(self, client):
        response = await client.get("/api/v1/health/redis")
        assert response.json() == {"status": "healthy", "redis": "disabled"}


class TestExperimentEndpoints:
    @pytest.mark.asyncio
    async def test_create_experiment(self, client):
        response = await client.post(BASE, json=experiment_payload())

        assert response.status_code == 201
        data = response.json()
        assert data["status"] == "ready"
        assert data["metadata"]["estimated_duration_days"] == 14
        assert data["statistical_config"]["confidence_level"] == 0.95

    @pytest.mark.asyncio
    async def test_invalid_allocation(self, client):
        payload = experiment_payload(
            variants=[
                {"id": "control", "name": "Control", "is_control": True, "allocation": 60},
                {"id": "annual", "name": "Annual", "allocation": 30},
            ]
        )

        response = await client.post(BASE, json=payload)

        assert response.status_code == 422
        assert response.json()["rule"] == "allocation_sum"

    @pytest.mark.asyncio
    async def test_malformed_request(self, client):
        response = await client.post(BASE, json={"name": "No variants"})
        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_get_and_list(self, client):
        created = (await client.post(BASE, json=experiment_payload())).json()
        await client.post(BASE, json=experiment_payload(industry="fintech", status="draft"))

        response = await client.get(f"{BASE}/{created['id']}")
        assert response.status_code == 200
        assert response.json()["name"] == "Pricing page layout"

        response = await client.get(BASE, params={"industry": "fintech"})
        data = response.json()
        assert data["total"] == 1
        assert data["experiments"][0]["industry"] == "fintech"

        response = await client.get(BASE, params={"limit": 1})
        assert response.json()["total"] == 2
        assert len(response.json()["experiments"]) == 1

    @pytest.mark.asyncio
    async def test_unknown_experiment(self, client):
        response = await client.get(f"{BASE}/nonexistent")

        assert response.status_code == 404
        assert response.json()["error"] == "NotFoundError"

    @pytest.mark.asyncio
    async def test_update_running_experiment_conflicts(self, client):
        experiment_id = await create_running(client)

        response = await client.patch(f"{BASE}/{experiment_id}", json={"name": "Renamed"})

        assert response.status_code == 409

    @pytest.mark.asyncio
    async def test_lifecycle(self, client):
        created = (await client.post(BASE, json=experiment_payload(status="draft"))).json()
        experiment_id = created["id"]

        assert (await client.post(f"{BASE}/{experiment_id}/start")).status_code == 409

        for action, status in [
            ("ready", "ready"),
            ("start", "running"),
            ("pause", "paused"),
            ("resume", "running"),
        ]:
            response = await client.post(f"{BASE}/{experiment_id}/{action}")
            assert response.status_code == 200
            assert response.json()["status"] == status

        response = await client.post(f"{BASE}/{experiment_id}/stop", json={"reason": "Done"})
        assert response.json()["status"] == "stopped"
        assert response.json()["stop_reason"] == "Done"

        response = await client.post(f"{BASE}/{experiment_id}/archive")
        assert response.json()["status"] == "archived"

    @pytest.mark.asyncio
    async def test_monitor_now(self, client):
        experiment_id = await create_running(client)

        response = await client.post(f"{BASE}/{experiment_id}/monitor")

        assert response.json() == {
            "experiment_id": experiment_id,
            "stopped": False,
            "reason": None,
        }


class TestAssignmentEndpoints:
    @pytest.mark.asyncio
    async def test_assign_and_convert(self, client):
        experiment_id = await create_running(client)

        response = await client.post(
            f"{BASE}/{experiment_id}/assignments", json={"participant_id": "user-1"}
        )
        assert response.status_code == 200
        assignment = response.json()
        assert assignment["included"] is True
        assert assignment["variant_id"] in {"control", "annual"}

        again = await client.post(
            f"{BASE}/{experiment_id}/assignments", json={"participant_id": "user-1"}
        )
        assert again.json()["variant_id"] == assignment["variant_id"]

        response = await client.post(
            f"{BASE}/{experiment_id}/conversions",
            json={"participant_id": "user-1", "event_type": "upgrade", "value": 99.0},
        )
        assert response.status_code == 201
        assert response.json()["variant_id"] == assignment["variant_id"]

        assignments = (await client.get(f"{BASE}/{experiment_id}/assignments")).json()
        conversions = (await client.get(f"{BASE}/{experiment_id}/conversions")).json()
        assert assignments["total"] == 1
        assert conversions["total"] == 1

    @pytest.mark.asyncio
    async def test_excluded_participant(self, client):
        experiment_id = await create_running(
            client, traffic_allocation={"rollout_percentage": 0}
        )

        response = await client.post(
            f"{BASE}/{experiment_id}/assignments", json={"participant_id": "user-1"}
        )

        assert response.status_code == 200
        data = response.json()
        assert data["included"] is False
        assert data["variant_id"] is None
        assert data["reason"] == "outside rollout percentage"

    @pytest.mark.asyncio
    async def test_not_running(self, client):
        created = (await client.post(BASE, json=experiment_payload())).json()

        response = await client.post(
            f"{BASE}/{created['id']}/assignments", json={"participant_id": "user-1"}
        )

        assert response.status_code == 409
        assert response.json()["error"] == "NotRunningError"

    @pytest.mark.asyncio
    async def test_conversion_without_assignment(self, client):
        experiment_id = await create_running(client)

        response = await client.post(
            f"{BASE}/{experiment_id}/conversions", json={"participant_id": "stranger"}
        )

        assert response.status_code == 409
        assert response.json()["error"] == "NotAssignedError"


class TestReporting:
    @pytest.mark.asyncio
    async def test_stats(self, client):
        experiment_id = await create_running(client)
        for i in range(10):
            await client.post(
                f"{BASE}/{experiment_id}/assignments", json={"participant_id": f"user-{i}"}
            )

        response = await client.get(f"{BASE}/stats")

        assert response.status_code == 200
        data = response.json()
        assert data["total_experiments"] == 1
        assert data["running_experiments"] == 1
        assert data["total_participants"] == 10

    @pytest.mark.asyncio
    async def test_sample_size(self, client):
        created = (
            await client.post(
                BASE,
                json=experiment_payload(
                    industry=None, statistical_config={"minimum_detectable_effect": 0.2}
                ),
            )
        ).json()

        response = await client.get(f"{BASE}/{created['id']}/sample-size")

        assert response.status_code == 200
        assert response.json() == {
            "experiment_id": created["id"],
            "required_sample_size": 16310,
            "baseline_rate": 0.05,
        }

    @pytest.mark.asyncio
    async def test_sample_size_rejects_bad_baseline(self, client):
        created = (await client.post(BASE, json=experiment_payload())).json()

        response = await client.get(
            f"{BASE}/{created['id']}/sample-size", params={"baseline_rate": 1.5}
        )

        assert response.status_code == 422
