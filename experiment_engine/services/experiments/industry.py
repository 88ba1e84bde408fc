from dataclasses import dataclass, field
from typing import Dict, List, Optional


@dataclass(frozen=True)
class IndustryDefaults:
    typical_duration_days: int
    min_sample_size: int
    confidence_level: float
    primary_metrics: List[str] = field(default_factory=list)
    secondary_metrics: List[str] = field(default_factory=list)


INDUSTRY_DEFAULTS: Dict[str, IndustryDefaults] = {
    "saas": IndustryDefaults(
        typical_duration_days=14,
        min_sample_size=1000,
        confidence_level=0.95,
        primary_metrics=["trial_conversion", "feature_adoption", "user_engagement"],
        secondary_metrics=["time_to_value", "support_tickets", "churn_risk"],
    ),
    "manufacturing": IndustryDefaults(
        typical_duration_days=21,
        min_sample_size=500,
        confidence_level=0.90,
        primary_metrics=["process_efficiency", "error_reduction", "time_savings"],
        secondary_metrics=["user_satisfaction", "training_time", "adoption_rate"],
    ),
    "healthcare": IndustryDefaults(
        typical_duration_days=30,
        min_sample_size=300,
        confidence_level=0.95,
        primary_metrics=["patient_outcomes", "workflow_efficiency", "error_reduction"],
        secondary_metrics=["user_adoption", "training_requirements", "compliance_score"],
    ),
    "fintech": IndustryDefaults(
        typical_duration_days=10,
        min_sample_size=2000,
        confidence_level=0.99,
        primary_metrics=["transaction_completion", "security_compliance", "user_trust"],
        secondary_metrics=["abandonment_rate", "support_inquiries", "feature_usage"],
    ),
    "college_consulting": IndustryDefaults(
        typical_duration_days=28,
        min_sample_size=200,
        confidence_level=0.90,
        primary_metrics=["student_engagement", "completion_rate", "satisfaction_score"],
        secondary_metrics=["time_on_platform", "resource_usage", "goal_achievement"],
    ),
}


def get_industry_defaults(industry: Optional[str]) -> Optional[IndustryDefaults]:
    if not industry:
        return None
    return INDUSTRY_DEFAULTS.get(industry.lower())
