import random
from collections import Counter
from concurrent.futures import ThreadPoolExecutor

import pytest

from experiment_engine.models.experiment import (
    AllocationCondition,
    AssignmentContext,
    ConditionOperator,
    Experiment,
    SegmentCriteria,
    Variant,
)
from experiment_engine.services.experiments.assignment import (
    AssignmentEngine,
    AssignmentStore,
    evaluate_condition,
    matches_segment,
    participant_bucket,
    select_variant,
)
from experiment_engine.services.experiments.errors import (
    ExcludedError,
    InvalidStateError,
    NotFoundError,
    NotRunningError,
)
from experiment_engine.services.experiments.metrics import MetricsAggregator


def start(service, request):
    experiment_id = service.registry.create(request)
    service.registry.start(experiment_id)
    return service.registry.get(experiment_id)


class TestBucketing:
    def test_bucket_is_polynomial_hash_mod_100(self):
        # h = 97 * 31 + 98 = 3105
        assert participant_bucket("a", "b") == 5

    def test_bucket_hashes_utf16_code_units(self):
        # The emoji is a surrogate pair: 0xD83D, 0xDE00
        assert participant_bucket("user-\N{GRINNING FACE}", "exp-1") == 44

    def test_bucket_is_stable(self):
        buckets = {participant_bucket("user-42", "exp-1") for _ in range(10)}
        assert len(buckets) == 1
        assert 0 <= buckets.pop() < 100

    def test_hash_is_masked_to_32_bits(self):
        bucket = participant_bucket("x" * 500, "experiment-with-a-long-id")
        assert 0 <= bucket < 100

    def test_select_variant_cumulative_walk(self):
        experiment = Experiment(
            id="exp-1",
            name="Split",
            hypothesis="h",
            variants=[
                Variant(id="a", name="A", allocation=20, is_control=True),
                Variant(id="b", name="B", allocation=30),
                Variant(id="c", name="C", allocation=50),
            ],
        )
        assert select_variant(experiment, 0) == "a"
        assert select_variant(experiment, 19.9) == "a"
        assert select_variant(experiment, 20) == "b"
        assert select_variant(experiment, 49.9) == "b"
        assert select_variant(experiment, 50) == "c"
        assert select_variant(experiment, 99) == "c"

    def test_rounding_gap_falls_back_to_first_variant(self):
        experiment = Experiment(
            id="exp-1",
            name="Split",
            hypothesis="h",
            variants=[
                Variant(id="a", name="A", allocation=33.33, is_control=True),
                Variant(id="b", name="B", allocation=33.33),
                Variant(id="c", name="C", allocation=33.33),
            ],
        )
        assert select_variant(experiment, 99.995) == "a"


class TestConditions:
    @pytest.fixture
    def context(self):
        return AssignmentContext(
            industry="saas",
            user_segment="enterprise",
            device_type="desktop",
            geography="US",
            traffic_source="organic",
            custom_attributes={"plan": "pro", "seats": 25, "tags": "beta,early"},
        )

    def condition(self, attribute, operator, value):
        return AllocationCondition(
            attribute=attribute, operator=ConditionOperator(operator), value=value
        )

    def test_equals_and_not_equals(self, context):
        assert evaluate_condition(self.condition("industry", "equals", "saas"), context)
        assert not evaluate_condition(self.condition("industry", "equals", "fintech"), context)
        assert evaluate_condition(self.condition("geography", "not_equals", "DE"), context)

    def test_camel_case_attribute_names(self, context):
        assert evaluate_condition(self.condition("deviceType", "equals", "desktop"), context)
        assert evaluate_condition(self.condition("userSegment", "equals", "enterprise"), context)

    def test_custom_attribute_fallback(self, context):
        assert evaluate_condition(self.condition("plan", "equals", "pro"), context)

    def test_in_and_not_in_require_a_list(self, context):
        assert evaluate_condition(self.condition("geography", "in", ["US", "CA"]), context)
        assert not evaluate_condition(self.condition("geography", "in", "US"), context)
        assert evaluate_condition(self.condition("geography", "not_in", ["DE"]), context)
        assert not evaluate_condition(self.condition("geography", "not_in", "DE"), context)

    def test_numeric_comparisons(self, context):
        assert evaluate_condition(self.condition("seats", "greater_than", 10), context)
        assert evaluate_condition(self.condition("seats", "less_than", "30"), context)
        assert not evaluate_condition(self.condition("seats", "less_than", 10), context)

    def test_numeric_comparison_on_text_is_false(self, context):
        assert not evaluate_condition(self.condition("plan", "greater_than", 1), context)
        assert not evaluate_condition(self.condition("missing", "less_than", 1), context)

    def test_contains(self, context):
        assert evaluate_condition(self.condition("tags", "contains", "beta"), context)
        assert not evaluate_condition(self.condition("tags", "contains", "ga"), context)
        assert not evaluate_condition(self.condition("missing", "contains", "x"), context)

    def test_segment_matching(self, context):
        assert matches_segment(SegmentCriteria(industry=["saas"], geography=["US"]), context)
        assert matches_segment(SegmentCriteria(custom_attributes={"plan": "pro"}), context)
        assert not matches_segment(SegmentCriteria(device_type=["mobile"]), context)
        assert matches_segment(SegmentCriteria(), context)


class TestAssignmentEngine:
    def test_requires_running_experiment(self, service, make_request):
        experiment_id = service.registry.create(make_request())

        with pytest.raises(NotRunningError) as exc_info:
            service.engine.assign("user-1", experiment_id)

        assert isinstance(exc_info.value, InvalidStateError)
        assert exc_info.value.status == "ready"

    def test_unknown_experiment(self, service):
        with pytest.raises(NotFoundError):
            service.engine.assign("user-1", "missing")

    def test_sticky_assignment_is_idempotent(self, service, make_request):
        experiment = start(service, make_request())

        first = service.engine.assign("user-1", experiment.id)
        for _ in range(5):
            assert service.engine.assign("user-1", experiment.id) == first

        assert experiment.total_participants == 1
        assert len(service.assignments.for_experiment(experiment.id)) == 1

    def test_hash_assignment_matches_bucket(self, service, make_request):
        experiment = start(service, make_request())

        for i in range(100):
            participant_id = f"user-{i}"
            assignment = service.engine.assign(participant_id, experiment.id)
            expected = select_variant(experiment, participant_bucket(participant_id, experiment.id))
            assert assignment.variant_id == expected

    def test_hash_assignment_survives_a_new_engine(self, service, make_request):
        """Buckets depend only on participant and experiment ids."""
        experiment = start(service, make_request())
        participants = [f"user-{i}" for i in range(200)]
        first = {p: service.engine.assign(p, experiment.id).variant_id for p in participants}

        assignments = AssignmentStore(shards=4)
        metrics = MetricsAggregator(service.experiments, assignments)
        fresh = AssignmentEngine(service.experiments, assignments, metrics, rng=random.Random(7))
        second = {p: fresh.assign(p, experiment.id).variant_id for p in participants}

        assert first == second

    def test_participant_counts_follow_assignments(self, service, make_request):
        experiment = start(service, make_request())
        for i in range(300):
            service.engine.assign(f"user-{i}", experiment.id)

        counts = Counter(a.variant_id for a in service.assignments.for_experiment(experiment.id))
        for variant in experiment.variants:
            assert variant.metrics.participant_count == counts[variant.id]
        assert experiment.total_participants == 300

    def test_zero_rollout_excludes_everyone(self, service, make_request):
        experiment = start(service, make_request(traffic_allocation={"rollout_percentage": 0}))

        with pytest.raises(ExcludedError) as exc_info:
            service.engine.assign("user-1", experiment.id)

        assert exc_info.value.reason == "outside rollout percentage"
        assert service.assignments.get(experiment.id, "user-1") is None
        assert experiment.total_participants == 0

    def test_partial_rollout(self, service, make_request):
        experiment = start(service, make_request(traffic_allocation={"rollout_percentage": 50}))

        included = 0
        for i in range(400):
            try:
                service.engine.assign(f"user-{i}", experiment.id)
                included += 1
            except ExcludedError:
                pass

        assert 120 < included < 280
        assert experiment.total_participants == included

    def test_failed_condition_excludes(self, service, make_request):
        experiment = start(
            service,
            make_request(
                traffic_allocation={
                    "conditions": [{"attribute": "industry", "operator": "equals", "value": "saas"}]
                }
            ),
        )

        with pytest.raises(ExcludedError):
            service.engine.assign("user-1", experiment.id, AssignmentContext(industry="fintech"))

        assignment = service.engine.assign(
            "user-2", experiment.id, AssignmentContext(industry="saas")
        )
        assert assignment.variant_id in {"control", "treatment"}

    def test_matching_segment_gates_inclusion(self, service, make_request):
        experiment = start(
            service,
            make_request(
                traffic_allocation={
                    "segments": [
                        {
                            "name": "Mobile holdout",
                            "criteria": {"device_type": ["mobile"]},
                            "allocation": 0,
                        }
                    ]
                }
            ),
        )

        with pytest.raises(ExcludedError):
            service.engine.assign("user-1", experiment.id, AssignmentContext(device_type="mobile"))

        assignment = service.engine.assign(
            "user-2", experiment.id, AssignmentContext(device_type="desktop")
        )
        assert assignment.participant_id == "user-2"

    def test_non_sticky_reassigns_every_call(self, service, make_request):
        experiment = start(
            service,
            make_request(traffic_allocation={"method": "random", "sticky": False}),
        )

        for _ in range(10):
            service.engine.assign("user-1", experiment.id)

        history = service.assignments.for_experiment(experiment.id)
        assert len(history) == 10
        assert experiment.total_participants == 10
        assert service.assignments.get(experiment.id, "user-1") == history[-1]

    def test_weighted_draws_follow_allocation(self, service, make_request):
        experiment = start(
            service,
            make_request(
                variants=[
                    {"id": "control", "name": "Control", "is_control": True, "allocation": 80},
                    {"id": "treatment", "name": "Treatment", "allocation": 20},
                ],
                traffic_allocation={"method": "weighted"},
            ),
        )

        for i in range(1000):
            service.engine.assign(f"user-{i}", experiment.id)

        control = experiment.get_variant("control").metrics.participant_count
        assert 720 < control < 880

    def test_concurrent_first_assignments_agree(self, service, make_request):
        """Racing first calls for one participant create a single assignment."""
        experiment = start(service, make_request(traffic_allocation={"method": "random"}))

        with ThreadPoolExecutor(max_workers=16) as pool:
            results = list(
                pool.map(lambda _: service.engine.assign("user-1", experiment.id), range(64))
            )

        assert len({a.variant_id for a in results}) == 1
        assert len({a.session_id for a in results}) == 1
        assert len(service.assignments.for_experiment(experiment.id)) == 1
        assert experiment.total_participants == 1

    def test_concurrent_assignments_count_every_participant(self, service, make_request):
        experiment = start(service, make_request())
        participants = [f"user-{i}" for i in range(2000)]

        with ThreadPoolExecutor(max_workers=16) as pool:
            list(pool.map(lambda p: service.engine.assign(p, experiment.id), participants))

        assert experiment.total_participants == 2000
        assert len(service.assignments.for_experiment(experiment.id)) == 2000
