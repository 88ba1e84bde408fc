from datetime import timedelta

import pytest

from experiment_engine.models.experiment import ExperimentStatus, ExperimentType
from experiment_engine.models.schemas import UpdateExperimentRequest
from experiment_engine.services.experiments.errors import (
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from experiment_engine.services.experiments.industry import get_industry_defaults


@pytest.fixture
def registry(service):
    return service.registry


def two_variants(control=50, treatment=50, control_id="control", treatment_id="treatment"):
    return [
        {"id": control_id, "name": "Control", "is_control": True, "allocation": control},
        {"id": treatment_id, "name": "Treatment", "allocation": treatment},
    ]


class TestIndustryDefaults:
    def test_lookup_is_case_insensitive(self):
        assert get_industry_defaults("SaaS").min_sample_size == 1000
        assert get_industry_defaults("unknown") is None
        assert get_industry_defaults(None) is None

    def test_saas_defaults_fill_metadata(self, registry, make_request):
        experiment = registry.get(registry.create(make_request(industry="saas")))

        assert experiment.metadata.estimated_duration_days == 14
        assert experiment.metadata.required_sample_size == 1000
        assert experiment.statistical_config.confidence_level == 0.95
        assert experiment.statistical_config.alpha_level == pytest.approx(0.05)
        assert experiment.success_metrics == [
            "trial_conversion",
            "feature_adoption",
            "user_engagement",
        ]

    def test_fintech_confidence_level(self, registry, make_request):
        experiment = registry.get(registry.create(make_request(industry="fintech")))

        assert experiment.statistical_config.confidence_level == 0.99
        assert experiment.statistical_config.alpha_level == pytest.approx(0.01)
        assert experiment.metadata.estimated_duration_days == 10

    def test_explicit_values_win_over_defaults(self, registry, make_request):
        experiment = registry.get(
            registry.create(
                make_request(
                    industry="saas",
                    success_metrics=["revenue"],
                    metadata={"estimated_duration_days": 7, "required_sample_size": 50},
                    statistical_config={"confidence_level": 0.9},
                )
            )
        )

        assert experiment.metadata.estimated_duration_days == 7
        assert experiment.metadata.required_sample_size == 50
        assert experiment.success_metrics == ["revenue"]
        assert experiment.statistical_config.alpha_level == pytest.approx(0.1)

    def test_sample_size_is_computed_without_industry(self, registry, make_request):
        experiment = registry.get(
            registry.create(make_request(statistical_config={"minimum_detectable_effect": 0.2}))
        )
        assert experiment.metadata.required_sample_size == 16310


class TestValidation:
    """Each business rule rejects the experiment and stores nothing."""

    @pytest.mark.parametrize(
        "overrides,rule",
        [
            ({"variants": two_variants(60, 30)}, "allocation_sum"),
            ({"variants": two_variants(control_id="a", treatment_id="a")}, "unique_variant_ids"),
            (
                {
                    "variants": [
                        {"id": "a", "name": "A", "allocation": 50},
                        {"id": "b", "name": "B", "allocation": 50},
                    ]
                },
                "control_variant",
            ),
            ({"statistical_config": {"confidence_level": 1.0}}, "confidence_level"),
            ({"statistical_config": {"power_level": 0.0}}, "power_level"),
            ({"statistical_config": {"alpha_level": 1.5}}, "alpha_level"),
            ({"traffic_allocation": {"rollout_percentage": 120}}, "rollout_percentage"),
            (
                {"traffic_allocation": {"segments": [{"name": "Too big", "allocation": 150}]}},
                "segment_allocation",
            ),
            ({"status": "running"}, "initial_status"),
        ],
    )
    def test_rule_rejects_and_stores_nothing(self, registry, make_request, overrides, rule):
        with pytest.raises(ValidationError) as exc_info:
            registry.create(make_request(**overrides))

        assert exc_info.value.rule == rule
        assert registry.list() == []

    def test_allocation_within_tolerance(self, registry, make_request):
        variants = [
            {"id": "a", "name": "A", "is_control": True, "allocation": 33.33},
            {"id": "b", "name": "B", "allocation": 33.33},
            {"id": "c", "name": "C", "allocation": 33.34},
        ]
        experiment_id = registry.create(make_request(variants=variants))
        assert registry.get(experiment_id).status == ExperimentStatus.READY

    def test_allocation_error_reports_sum(self, registry, make_request):
        with pytest.raises(ValidationError) as exc_info:
            registry.create(make_request(variants=two_variants(60, 30)))
        assert "90" in exc_info.value.message


class TestUpdate:
    def test_update_merges_fields(self, registry, make_request):
        experiment_id = registry.create(make_request(status="draft"))

        updated = registry.update(
            experiment_id, UpdateExperimentRequest(name="Renamed", industry="healthcare")
        )

        assert updated.name == "Renamed"
        assert updated.industry == "healthcare"
        assert updated.hypothesis == make_request().hypothesis
        assert registry.get(experiment_id).name == "Renamed"

    def test_invalid_update_keeps_stored_experiment(self, registry, make_request):
        experiment_id = registry.create(make_request(status="draft"))

        with pytest.raises(ValidationError):
            registry.update(
                experiment_id,
                UpdateExperimentRequest(name="Broken", variants=two_variants(70, 20)),
            )

        experiment = registry.get(experiment_id)
        assert experiment.name == "Checkout button color"
        assert sum(v.allocation for v in experiment.variants) == 100

    def test_running_experiment_cannot_be_updated(self, registry, make_request):
        experiment_id = registry.create(make_request())
        registry.start(experiment_id)

        with pytest.raises(InvalidStateError):
            registry.update(experiment_id, UpdateExperimentRequest(name="Nope"))

    def test_paused_experiment_keeps_metrics_on_update(self, service, registry, make_request):
        experiment_id = registry.create(make_request())
        registry.start(experiment_id)
        for i in range(20):
            service.engine.assign(f"user-{i}", experiment_id)
        registry.pause(experiment_id)

        updated = registry.update(experiment_id, UpdateExperimentRequest(description="Paused"))

        assert updated.total_participants == 20

    def test_variants_with_participants_cannot_be_removed(
        self, service, registry, make_request
    ):
        experiment_id = registry.create(make_request())
        registry.start(experiment_id)
        first = service.engine.assign("user-1", experiment_id)
        registry.pause(experiment_id)

        replacement = two_variants(control_id="control-v2", treatment_id="treatment-v2")
        with pytest.raises(ValidationError) as exc_info:
            registry.update(experiment_id, UpdateExperimentRequest(variants=replacement))
        assert exc_info.value.rule == "variants_in_use"

        registry.resume(experiment_id)
        again = service.engine.assign("user-1", experiment_id)
        assert again.variant_id == first.variant_id
        assert registry.get(experiment_id).get_variant(again.variant_id) is not None

        service.metrics.record_conversion(experiment_id, "user-1", "conversion")
        variant = registry.get(experiment_id).get_variant(first.variant_id)
        assert variant.metrics.conversion_count == 1

    def test_unused_variants_can_be_replaced(self, registry, make_request):
        experiment_id = registry.create(make_request())

        replacement = two_variants(control_id="control-v2", treatment_id="treatment-v2")
        updated = registry.update(experiment_id, UpdateExperimentRequest(variants=replacement))

        assert [v.id for v in updated.variants] == ["control-v2", "treatment-v2"]

    def test_update_unknown_experiment(self, registry):
        with pytest.raises(NotFoundError):
            registry.update("missing", UpdateExperimentRequest(name="x"))


class TestLifecycle:
    def test_draft_to_ready(self, registry, make_request):
        experiment_id = registry.create(make_request(status="draft"))
        assert registry.mark_ready(experiment_id).status == ExperimentStatus.READY

        with pytest.raises(InvalidStateError):
            registry.mark_ready(experiment_id)

    def test_draft_cannot_start(self, registry, make_request):
        experiment_id = registry.create(make_request(status="draft"))

        with pytest.raises(InvalidStateError):
            registry.start(experiment_id)

        assert registry.get(experiment_id).status == ExperimentStatus.DRAFT

    def test_start_sets_dates(self, registry, make_request):
        experiment_id = registry.create(make_request(industry="saas"))

        experiment = registry.start(experiment_id)

        assert experiment.status == ExperimentStatus.RUNNING
        assert experiment.start_date is not None
        assert experiment.end_date - experiment.start_date == timedelta(days=14)
        assert registry.running_ids() == [experiment_id]

    def test_start_registers_monitoring(self, service, registry, make_request):
        experiment_id = registry.create(make_request())
        registry.start(experiment_id)
        assert service.scheduler.is_registered(experiment_id)

        registry.pause(experiment_id)
        assert not service.scheduler.is_registered(experiment_id)

        registry.resume(experiment_id)
        assert service.scheduler.is_registered(experiment_id)

    def test_pause_and_resume(self, registry, make_request):
        experiment_id = registry.create(make_request())
        registry.start(experiment_id)

        assert registry.pause(experiment_id).status == ExperimentStatus.PAUSED
        with pytest.raises(InvalidStateError):
            registry.pause(experiment_id)
        assert registry.resume(experiment_id).status == ExperimentStatus.RUNNING

    def test_stop_attaches_results(self, service, registry, make_request):
        experiment_id = registry.create(make_request())
        registry.start(experiment_id)
        for i in range(50):
            service.engine.assign(f"user-{i}", experiment_id)

        experiment = registry.stop(experiment_id, "Enough data")

        assert experiment.status == ExperimentStatus.STOPPED
        assert experiment.stop_reason == "Enough data"
        assert experiment.results is not None
        assert set(experiment.results.comparisons) == {"treatment"}
        assert not service.scheduler.is_registered(experiment_id)

    def test_paused_experiment_can_be_completed(self, registry, make_request):
        experiment_id = registry.create(make_request())
        registry.start(experiment_id)
        registry.pause(experiment_id)

        experiment = registry.complete(experiment_id)

        assert experiment.status == ExperimentStatus.COMPLETED
        assert experiment.results is not None

    def test_ready_experiment_cannot_stop(self, registry, make_request):
        experiment_id = registry.create(make_request())
        with pytest.raises(InvalidStateError):
            registry.stop(experiment_id, "too early")

    def test_results_failure_does_not_block_stop(self, registry, make_request, monkeypatch):
        experiment_id = registry.create(make_request())
        registry.start(experiment_id)

        def explode(experiment):
            raise RuntimeError("analysis failed")

        monkeypatch.setattr(registry.analyzer, "compare_variants", explode)

        experiment = registry.stop(experiment_id, "Stopped manually")

        assert experiment.status == ExperimentStatus.STOPPED
        assert experiment.results is None

    def test_archive_only_after_finish(self, registry, make_request):
        experiment_id = registry.create(make_request())
        with pytest.raises(InvalidStateError):
            registry.archive(experiment_id)

        registry.start(experiment_id)
        registry.stop(experiment_id, "done")

        assert registry.archive(experiment_id).status == ExperimentStatus.ARCHIVED
        with pytest.raises(InvalidStateError):
            registry.start(experiment_id)

    def test_unknown_experiment(self, registry):
        with pytest.raises(NotFoundError):
            registry.start("missing")
        with pytest.raises(NotFoundError):
            registry.get("missing")


class TestListing:
    def test_filters(self, registry, make_request):
        saas = registry.create(make_request(industry="saas"))
        fintech = registry.create(
            make_request(industry="fintech", type="pricing_strategy", status="draft")
        )

        assert [e.id for e in registry.list(status=ExperimentStatus.DRAFT)] == [fintech]
        assert [e.id for e in registry.list(industry="saas")] == [saas]
        assert [e.id for e in registry.list(type=ExperimentType.PRICING_STRATEGY)] == [fintech]
        assert len(registry.list()) == 2

    def test_newest_first(self, registry, make_request):
        for name in ("First", "Second", "Third"):
            registry.create(make_request(name=name))

        created = [e.created_at for e in registry.list()]
        assert created == sorted(created, reverse=True)
