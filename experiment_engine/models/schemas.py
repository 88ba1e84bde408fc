from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from experiment_engine.models.experiment import (
    AllocationMethod,
    ConditionOperator,
    CorrectionMethod,
    ExperimentStatus,
    ExperimentType,
    StoppingRuleType,
    TestType,
)


class SegmentCriteriaRequest(BaseModel):
    industry: Optional[List[str]] = None
    user_type: Optional[List[str]] = None
    geography: Optional[List[str]] = None
    device_type: Optional[List[str]] = None
    traffic_source: Optional[List[str]] = None
    custom_attributes: Optional[Dict[str, Any]] = None


class TrafficSegmentRequest(BaseModel):
    id: Optional[str] = None
    name: str
    criteria: SegmentCriteriaRequest = Field(default_factory=SegmentCriteriaRequest)
    allocation: float = Field(100.0, description="Share of matching traffic admitted (0-100)")


class AllocationConditionRequest(BaseModel):
    attribute: str
    operator: ConditionOperator
    value: Any = None


class TrafficAllocationRequest(BaseModel):
    method: AllocationMethod = AllocationMethod.HASH_BASED
    sticky: bool = True
    rollout_percentage: float = Field(100.0, description="Overall experiment exposure (0-100)")
    segments: List[TrafficSegmentRequest] = Field(default_factory=list)
    conditions: List[AllocationConditionRequest] = Field(default_factory=list)


class EarlyStoppingRuleRequest(BaseModel):
    type: StoppingRuleType
    threshold: float
    check_frequency_days: float = Field(0.0, ge=0)
    min_sample_size: int = Field(0, ge=0)


class StatisticalConfigRequest(BaseModel):
    confidence_level: Optional[float] = Field(
        None, description="Defaults to the industry's level, else 0.95"
    )
    power_level: float = 0.8
    minimum_detectable_effect: float = Field(
        0.1, description="Relative lift over the baseline conversion rate"
    )
    alpha_level: Optional[float] = Field(None, description="Defaults to 1 - confidence_level")
    test_type: TestType = TestType.TWO_SIDED
    correction_method: CorrectionMethod = CorrectionMethod.NONE
    sequential_testing: bool = False
    early_stopping_rules: List[EarlyStoppingRuleRequest] = Field(default_factory=list)


class MetadataRequest(BaseModel):
    owner: str = ""
    stakeholders: List[str] = Field(default_factory=list)
    tags: List[str] = Field(default_factory=list)
    priority: str = "medium"
    estimated_duration_days: Optional[int] = Field(None, ge=1)
    required_sample_size: Optional[int] = Field(None, ge=1)
    business_context: str = ""
    technical_notes: List[str] = Field(default_factory=list)
    dependencies: List[str] = Field(default_factory=list)
    rollback_plan: str = ""


class VariantRequest(BaseModel):
    id: Optional[str] = Field(None, description="Generated when omitted")
    name: str = Field(..., min_length=1, max_length=200)
    is_control: bool = Field(False, description="Whether this is the control group")
    allocation: float = Field(..., ge=0, description="Percentage of traffic (0-100)")
    description: str = ""
    configuration: Dict[str, Any] = Field(default_factory=dict)


class CreateExperimentRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    hypothesis: str = Field(..., min_length=1, description="The hypothesis being tested")
    description: str = ""
    type: ExperimentType = ExperimentType.UI_COMPONENT
    status: ExperimentStatus = Field(
        ExperimentStatus.DRAFT, description="Initial status: draft or ready"
    )
    industry: Optional[str] = None
    target_segment: Optional[str] = None
    success_metrics: List[str] = Field(default_factory=list)
    variants: List[VariantRequest] = Field(..., min_length=1)
    traffic_allocation: TrafficAllocationRequest = Field(default_factory=TrafficAllocationRequest)
    statistical_config: StatisticalConfigRequest = Field(default_factory=StatisticalConfigRequest)
    metadata: MetadataRequest = Field(default_factory=MetadataRequest)
    end_date: Optional[datetime] = None


class UpdateExperimentRequest(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=200)
    hypothesis: Optional[str] = None
    description: Optional[str] = None
    type: Optional[ExperimentType] = None
    industry: Optional[str] = None
    target_segment: Optional[str] = None
    success_metrics: Optional[List[str]] = None
    variants: Optional[List[VariantRequest]] = None
    traffic_allocation: Optional[TrafficAllocationRequest] = None
    statistical_config: Optional[StatisticalConfigRequest] = None
    metadata: Optional[MetadataRequest] = None
    end_date: Optional[datetime] = None


class AssignmentContextRequest(BaseModel):
    industry: str = ""
    user_segment: str = ""
    device_type: str = ""
    geography: str = ""
    traffic_source: str = ""
    custom_attributes: Dict[str, Any] = Field(default_factory=dict)


class AssignParticipantRequest(BaseModel):
    participant_id: str = Field(..., min_length=1)
    session_id: Optional[str] = None
    context: AssignmentContextRequest = Field(default_factory=AssignmentContextRequest)


class AssignmentResponse(BaseModel):
    experiment_id: str
    participant_id: str
    included: bool
    variant_id: Optional[str] = None
    session_id: Optional[str] = None
    reason: Optional[str] = None


class RecordConversionRequest(BaseModel):
    participant_id: str = Field(..., min_length=1)
    event_type: str = Field("conversion", min_length=1)
    value: float = 1.0
    metadata: Dict[str, Any] = Field(default_factory=dict)


class StopExperimentRequest(BaseModel):
    reason: str = Field("Stopped manually", min_length=1)


class ExperimentStatsResponse(BaseModel):
    total_experiments: int
    running_experiments: int
    completed_experiments: int
    total_participants: int
    total_conversions: int
    avg_experiment_duration: float


class SampleSizeResponse(BaseModel):
    experiment_id: str
    required_sample_size: int
    baseline_rate: float


class ExperimentListResponse(BaseModel):
    experiments: List[Dict[str, Any]]
    total: int
