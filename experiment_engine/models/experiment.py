import enum
import math
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ExperimentStatus(str, enum.Enum):
    """Status of an experiment lifecycle."""

    DRAFT = "draft"
    READY = "ready"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    STOPPED = "stopped"
    ARCHIVED = "archived"

    @property
    def is_terminal(self) -> bool:
        return self in (
            ExperimentStatus.COMPLETED,
            ExperimentStatus.STOPPED,
            ExperimentStatus.ARCHIVED,
        )


class ExperimentType(str, enum.Enum):
    DASHBOARD_CONFIG = "dashboard_config"
    ONBOARDING_FLOW = "onboarding_flow"
    FEATURE_RECOMMENDATION = "feature_recommendation"
    UI_COMPONENT = "ui_component"
    CONTENT_VARIATION = "content_variation"
    WORKFLOW_OPTIMIZATION = "workflow_optimization"
    PRICING_STRATEGY = "pricing_strategy"
    NOTIFICATION_STRATEGY = "notification_strategy"


class AllocationMethod(str, enum.Enum):
    RANDOM = "random"
    HASH_BASED = "hash_based"
    WEIGHTED = "weighted"
    SEGMENT_BASED = "segment_based"


class ConditionOperator(str, enum.Enum):
    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    IN = "in"
    NOT_IN = "not_in"
    GREATER_THAN = "greater_than"
    LESS_THAN = "less_than"
    CONTAINS = "contains"


class TestType(str, enum.Enum):
    TWO_SIDED = "two_sided"
    ONE_SIDED_GREATER = "one_sided_greater"
    ONE_SIDED_LESS = "one_sided_less"

    # Keep pytest from collecting this enum as a test class
    __test__ = False


class CorrectionMethod(str, enum.Enum):
    NONE = "none"
    BONFERRONI = "bonferroni"
    HOLM = "holm"
    BENJAMINI_HOCHBERG = "benjamini_hochberg"


class StoppingRuleType(str, enum.Enum):
    FUTILITY = "futility"
    SUPERIORITY = "superiority"
    HARM = "harm"


class EventType(str, enum.Enum):
    EXPERIMENT_CREATED = "experiment_created"
    EXPERIMENT_UPDATED = "experiment_updated"
    EXPERIMENT_READY = "experiment_ready"
    EXPERIMENT_STARTED = "experiment_started"
    EXPERIMENT_PAUSED = "experiment_paused"
    EXPERIMENT_RESUMED = "experiment_resumed"
    EXPERIMENT_STOPPED = "experiment_stopped"
    EXPERIMENT_COMPLETED = "experiment_completed"
    EXPERIMENT_ARCHIVED = "experiment_archived"
    PARTICIPANT_ASSIGNED = "participant_assigned"
    CONVERSION_RECORDED = "conversion_recorded"


class RiskLevel(str, enum.Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


@dataclass
class PerformanceMetrics:
    load_time: float = 0.0
    render_time: float = 0.0
    interaction_latency: float = 0.0
    error_count: int = 0
    crash_rate: float = 0.0


@dataclass
class VariantMetrics:
    """
    Running aggregates for a single variant.

    Only the MetricsAggregator mutates these, always under the variant's lock.
    """

    participant_count: int = 0
    conversion_count: int = 0
    conversion_rate: float = 0.0
    primary_metric_value: float = 0.0
    secondary_metrics: Dict[str, float] = field(default_factory=dict)
    performance_impact: PerformanceMetrics = field(default_factory=PerformanceMetrics)


@dataclass
class Variant:
    id: str
    name: str
    allocation: float  # Percentage of traffic (0-100)
    is_control: bool = False
    description: str = ""
    configuration: Dict[str, Any] = field(default_factory=dict)
    metrics: VariantMetrics = field(default_factory=VariantMetrics)


@dataclass
class SegmentCriteria:
    industry: Optional[List[str]] = None
    user_type: Optional[List[str]] = None
    geography: Optional[List[str]] = None
    device_type: Optional[List[str]] = None
    traffic_source: Optional[List[str]] = None
    custom_attributes: Optional[Dict[str, Any]] = None


@dataclass
class TrafficSegment:
    id: str
    name: str
    criteria: SegmentCriteria
    allocation: float  # Share of matching traffic admitted (0-100)


@dataclass
class AllocationCondition:
    attribute: str
    operator: ConditionOperator
    value: Any


@dataclass
class TrafficAllocation:
    method: AllocationMethod = AllocationMethod.HASH_BASED
    sticky: bool = True
    rollout_percentage: float = 100.0
    segments: List[TrafficSegment] = field(default_factory=list)
    conditions: List[AllocationCondition] = field(default_factory=list)


@dataclass
class EarlyStoppingRule:
    type: StoppingRuleType
    threshold: float
    check_frequency_days: float = 0.0
    min_sample_size: int = 0


@dataclass
class StatisticalConfig:
    confidence_level: float = 0.95
    power_level: float = 0.8
    minimum_detectable_effect: float = 0.1  # Relative lift over baseline
    alpha_level: float = 0.05
    test_type: TestType = TestType.TWO_SIDED
    correction_method: CorrectionMethod = CorrectionMethod.NONE
    sequential_testing: bool = False
    early_stopping_rules: List[EarlyStoppingRule] = field(default_factory=list)


@dataclass
class ExperimentMetadata:
    owner: str = ""
    stakeholders: List[str] = field(default_factory=list)
    tags: List[str] = field(default_factory=list)
    priority: str = "medium"
    estimated_duration_days: Optional[int] = None
    required_sample_size: Optional[int] = None
    business_context: str = ""
    technical_notes: List[str] = field(default_factory=list)
    dependencies: List[str] = field(default_factory=list)
    rollback_plan: str = ""


@dataclass
class ConfidenceInterval:
    lower: float
    upper: float
    level: float


@dataclass
class RiskFactor:
    factor: str
    severity: float
    probability: float
    impact: str


@dataclass
class RiskAssessment:
    overall_risk: RiskLevel = RiskLevel.LOW
    factors: List[RiskFactor] = field(default_factory=list)
    mitigation_strategies: List[str] = field(default_factory=list)


@dataclass
class IndustryInsight:
    industry: str
    insight: str
    evidence: str
    confidence: float
    applicability: List[str] = field(default_factory=list)


@dataclass
class ExperimentResults:
    """
    Final analysis attached to an experiment when it stops or completes.

    Computed once per stop event and never mutated afterwards.
    """

    statistical_significance: bool
    p_value: float
    confidence_interval: ConfidenceInterval
    effect_size: float
    winning_variant: Optional[str] = None
    comparisons: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    recommendations: List[str] = field(default_factory=list)
    industry_insights: List[IndustryInsight] = field(default_factory=list)
    risk_assessment: RiskAssessment = field(default_factory=RiskAssessment)
    learnings: List[str] = field(default_factory=list)
    next_steps: List[str] = field(default_factory=list)
    computed_at: datetime = field(default_factory=utcnow)


@dataclass
class Experiment:
    """
    Represents an A/B experiment definition and its live state.

    Configuration is immutable while the experiment is running; variant
    metrics are the only part that changes during that phase.
    """

    id: str
    name: str
    hypothesis: str
    variants: List[Variant]
    traffic_allocation: TrafficAllocation = field(default_factory=TrafficAllocation)
    statistical_config: StatisticalConfig = field(default_factory=StatisticalConfig)
    metadata: ExperimentMetadata = field(default_factory=ExperimentMetadata)
    description: str = ""
    type: ExperimentType = ExperimentType.UI_COMPONENT
    status: ExperimentStatus = ExperimentStatus.DRAFT
    industry: Optional[str] = None
    target_segment: Optional[str] = None
    success_metrics: List[str] = field(default_factory=list)
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    stop_reason: Optional[str] = None
    results: Optional[ExperimentResults] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def control(self) -> Optional[Variant]:
        for variant in self.variants:
            if variant.is_control:
                return variant
        return None

    @property
    def treatments(self) -> List[Variant]:
        return [v for v in self.variants if not v.is_control]

    def get_variant(self, variant_id: str) -> Optional[Variant]:
        for variant in self.variants:
            if variant.id == variant_id:
                return variant
        return None

    @property
    def total_participants(self) -> int:
        return sum(v.metrics.participant_count for v in self.variants)

    def to_dict(self) -> Dict[str, Any]:
        return to_serializable(asdict(self))


@dataclass
class AssignmentContext:
    industry: str = ""
    user_segment: str = ""
    device_type: str = ""
    geography: str = ""
    traffic_source: str = ""
    custom_attributes: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ParticipantAssignment:
    participant_id: str
    experiment_id: str
    variant_id: str
    session_id: str
    context: AssignmentContext
    assigned_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return to_serializable(asdict(self))


@dataclass(frozen=True)
class ConversionEvent:
    id: str
    experiment_id: str
    variant_id: str
    participant_id: str
    event_type: str
    value: float
    metadata: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return to_serializable(asdict(self))


def to_serializable(value: Any) -> Any:
    """Convert an asdict() tree to JSON types. Non-finite floats become None."""
    if isinstance(value, dict):
        return {k: to_serializable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_serializable(v) for v in value]
    if isinstance(value, enum.Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, float) and not math.isfinite(value):
        return None
    return value
