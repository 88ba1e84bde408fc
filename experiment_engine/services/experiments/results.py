from typing import Callable, List, Optional, Sequence, Tuple

import structlog

from experiment_engine.models.experiment import (
    ConfidenceInterval,
    Experiment,
    ExperimentResults,
    IndustryInsight,
    RiskAssessment,
    RiskFactor,
    RiskLevel,
)
from experiment_engine.services.experiments.industry import get_industry_defaults
from experiment_engine.services.experiments.stats import VariantComparison

logger = structlog.get_logger("results")

MITIGATION_STRATEGIES = [
    "Implement gradual rollout",
    "Monitor key metrics closely",
    "Prepare rollback strategy",
]

# Absolute effect size above which a difference is called large
LARGE_EFFECT_SIZE = 0.2


def select_winner(comparisons: Sequence[VariantComparison]) -> Optional[VariantComparison]:
    """Significant comparison with the largest positive improvement; first wins ties."""
    winner = None
    best_improvement = 0.0
    for comparison in comparisons:
        result = comparison.result
        if result.significant and result.improvement_percent > best_improvement:
            best_improvement = result.improvement_percent
            winner = comparison
    return winner


def risk_level(score: float) -> RiskLevel:
    if score < 4:
        return RiskLevel.LOW
    if score < 7:
        return RiskLevel.MEDIUM
    return RiskLevel.HIGH


class ResultsSynthesizer:
    """
    Turns final variant comparisons into an ExperimentResults report.

    Headline statistics are deterministic. The advisory sections
    (recommendations, insights, risk, learnings, next steps) are built
    independently; one that fails is logged and left empty.
    """

    def synthesize(
        self, experiment: Experiment, comparisons: Sequence[VariantComparison]
    ) -> ExperimentResults:
        results = self._headline(experiment, comparisons)

        sections: List[Tuple[str, Callable]] = [
            ("recommendations", self.generate_recommendations),
            ("industry_insights", self.generate_industry_insights),
            ("risk_assessment", self.assess_risks),
            ("learnings", self.extract_learnings),
            ("next_steps", self.generate_next_steps),
        ]
        for name, build in sections:
            try:
                setattr(results, name, build(experiment, results))
            except Exception as e:
                logger.warning(
                    "results_section_failed",
                    experiment_id=experiment.id,
                    section=name,
                    error=str(e),
                )

        return results

    def _headline(
        self, experiment: Experiment, comparisons: Sequence[VariantComparison]
    ) -> ExperimentResults:
        level = experiment.statistical_config.confidence_level
        results = ExperimentResults(
            statistical_significance=False,
            p_value=1.0,
            confidence_interval=ConfidenceInterval(lower=0.0, upper=0.0, level=level),
            effect_size=0.0,
            comparisons={c.variant.id: self._comparison_summary(c) for c in comparisons},
        )

        winner = select_winner(comparisons)
        headline = winner
        if headline is None and comparisons:
            headline = min(comparisons, key=lambda c: c.result.p_value)

        if headline is not None:
            results.p_value = headline.result.p_value
            results.effect_size = headline.result.effect_size
            results.confidence_interval = headline.result.confidence_interval

        if winner is not None:
            results.statistical_significance = True
            results.winning_variant = winner.variant.id

        return results

    @staticmethod
    def _comparison_summary(comparison: VariantComparison) -> dict:
        summary = comparison.result.to_dict()
        summary["variant_name"] = comparison.variant.name
        summary["participants"] = comparison.variant.metrics.participant_count
        summary["conversions"] = comparison.variant.metrics.conversion_count
        summary["power"] = comparison.power
        return summary

    def generate_recommendations(
        self, experiment: Experiment, results: ExperimentResults
    ) -> List[str]:
        recommendations = []

        if results.statistical_significance:
            recommendations.append(
                f"Implement winning variant {results.winning_variant} "
                f"with {results.effect_size:.2f} effect size"
            )
            days = experiment.metadata.estimated_duration_days
            if days:
                recommendations.append(f"Monitor performance for {days} days post-implementation")
            else:
                recommendations.append("Monitor performance closely post-implementation")
        else:
            recommendations.append(
                "Continue experiment or increase sample size for statistical significance"
            )
            recommendations.append(
                "Consider adjusting variant configurations based on preliminary trends"
            )

        defaults = get_industry_defaults(experiment.industry)
        if defaults is not None:
            recommendations.append(
                f"Consider industry-specific metrics: {', '.join(defaults.primary_metrics)}"
            )

        return recommendations

    def generate_industry_insights(
        self, experiment: Experiment, results: ExperimentResults
    ) -> List[IndustryInsight]:
        if not experiment.industry:
            return []

        direction = "positive" if results.effect_size > 0 else "negative"
        return [
            IndustryInsight(
                industry=experiment.industry,
                insight=f"{experiment.type.value} optimization shows {direction} impact",
                evidence=(
                    f"Effect size: {results.effect_size:.3f}, P-value: {results.p_value:.4f}"
                ),
                confidence=0.9 if results.statistical_significance else 0.5,
                applicability=[experiment.industry],
            )
        ]

    def assess_risks(self, experiment: Experiment, results: ExperimentResults) -> RiskAssessment:
        factors = []

        if not results.statistical_significance:
            factors.append(
                RiskFactor(
                    factor="Insufficient statistical evidence",
                    severity=7,
                    probability=0.8,
                    impact="May lead to incorrect decisions",
                )
            )

        if results.effect_size < 0:
            factors.append(
                RiskFactor(
                    factor="Negative performance impact",
                    severity=8,
                    probability=1.0,
                    impact="Could harm business metrics",
                )
            )

        score = sum(f.severity for f in factors) / len(factors) if factors else 3

        return RiskAssessment(
            overall_risk=risk_level(score),
            factors=factors,
            mitigation_strategies=list(MITIGATION_STRATEGIES),
        )

    def extract_learnings(self, experiment: Experiment, results: ExperimentResults) -> List[str]:
        industry = experiment.industry or "general"
        required = experiment.metadata.required_sample_size
        learnings = [
            f"{experiment.type.value} experiments in {industry} require {required} participants",
            f"Observed {experiment.total_participants} participants across "
            f"{len(experiment.variants)} variants",
            f"Statistical significance achieved: {results.statistical_significance}",
        ]

        if results.effect_size != 0:
            magnitude = "large" if abs(results.effect_size) > LARGE_EFFECT_SIZE else "small"
            learnings.append(
                f"Effect size of {results.effect_size:.3f} indicates "
                f"{magnitude} practical significance"
            )

        return learnings

    def generate_next_steps(self, experiment: Experiment, results: ExperimentResults) -> List[str]:
        if results.statistical_significance and results.winning_variant:
            return [
                f"Implement winning variant {results.winning_variant} across all traffic",
                "Document learnings for future experiment design",
                "Plan follow-up experiments to optimize further",
            ]
        return [
            "Extend experiment duration or increase sample size",
            "Analyze secondary metrics for insights",
            "Consider modifying variant configurations",
        ]
