import math
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

from experiment_engine.models.experiment import (
    ConfidenceInterval,
    CorrectionMethod,
    Experiment,
    StatisticalConfig,
    TestType,
    Variant,
    VariantMetrics,
    to_serializable,
)
from experiment_engine.services.experiments.numerics import get_normal_distribution

DEFAULT_BASELINE_RATE = 0.05


@dataclass
class ComparisonResult:
    significant: bool
    p_value: float
    z_score: float
    effect_size: float
    confidence_interval: ConfidenceInterval
    improvement_percent: float  # Relative lift over control, percent

    def to_dict(self) -> dict:
        return to_serializable(
            {
                "significant": self.significant,
                "p_value": self.p_value,
                "z_score": self.z_score,
                "effect_size": self.effect_size,
                "confidence_interval": {
                    "lower": self.confidence_interval.lower,
                    "upper": self.confidence_interval.upper,
                    "level": self.confidence_interval.level,
                },
                "improvement_percent": self.improvement_percent,
            }
        )


@dataclass
class VariantComparison:
    variant: Variant
    control: Variant
    result: ComparisonResult
    power: Optional[float] = None


def observed_rate(metrics: VariantMetrics) -> float:
    if metrics.participant_count == 0:
        return 0.0
    return metrics.conversion_count / metrics.participant_count


def calculate_lift(control_rate: float, variant_rate: float) -> Tuple[float, float]:
    # Absolute lift in percentage points
    absolute_lift = (variant_rate - control_rate) * 100

    # Relative lift as percentage improvement
    if control_rate == 0:
        relative_lift = float("inf") if variant_rate > 0 else 0.0
    else:
        relative_lift = ((variant_rate - control_rate) / control_rate) * 100

    return absolute_lift, relative_lift


def calculate_pooled_proportion(control: VariantMetrics, variant: VariantMetrics) -> float:
    total_conversions = control.conversion_count + variant.conversion_count
    total_users = control.participant_count + variant.participant_count

    if total_users == 0:
        return 0.0

    return total_conversions / total_users


def _not_significant(confidence_level: float) -> ComparisonResult:
    return ComparisonResult(
        significant=False,
        p_value=1.0,
        z_score=0.0,
        effect_size=0.0,
        confidence_interval=ConfidenceInterval(lower=0.0, upper=0.0, level=confidence_level),
        improvement_percent=0.0,
    )


class StatisticalAnalyzer:
    """
    Two-proportion z-test workflow for conversion-rate experiments.

    Sparse or degenerate data never raises: zero participants or a pooled
    rate of 0 or 1 produce a "not significant, p = 1" result so monitoring
    and reporting code needs no special failure path.
    """

    def __init__(self, backend: str = "approximation"):
        self.backend = backend
        self._cdf, self._ppf = get_normal_distribution(backend)

    def evaluate(
        self,
        control: VariantMetrics,
        variant: VariantMetrics,
        config: StatisticalConfig,
    ) -> ComparisonResult:
        n1 = control.participant_count
        n2 = variant.participant_count

        if n1 == 0 or n2 == 0:
            return _not_significant(config.confidence_level)

        p1 = observed_rate(control)
        p2 = observed_rate(variant)
        pooled = calculate_pooled_proportion(control, variant)

        if pooled <= 0 or pooled >= 1:
            return _not_significant(config.confidence_level)

        se = math.sqrt(pooled * (1 - pooled) * (1 / n1 + 1 / n2))
        z_score = (p2 - p1) / se
        p_value = self._p_value(z_score, config.test_type)

        effect_size = (p2 - p1) / math.sqrt(pooled * (1 - pooled))
        _, improvement = calculate_lift(p1, p2)

        # Unpooled SE for confidence intervals
        variance = p2 * (1 - p2) / n2 + p1 * (1 - p1) / n1
        se_ci = math.sqrt(max(variance, 0.0))
        z_critical = self._ppf((1 + config.confidence_level) / 2)
        margin = z_critical * se_ci

        return ComparisonResult(
            significant=p_value < config.alpha_level,
            p_value=p_value,
            z_score=z_score,
            effect_size=effect_size,
            confidence_interval=ConfidenceInterval(
                lower=(p2 - p1) - margin,
                upper=(p2 - p1) + margin,
                level=config.confidence_level,
            ),
            improvement_percent=improvement,
        )

    def _p_value(self, z_score: float, test_type: TestType) -> float:
        if test_type == TestType.ONE_SIDED_GREATER:
            p_value = 1 - self._cdf(z_score)
        elif test_type == TestType.ONE_SIDED_LESS:
            p_value = self._cdf(z_score)
        else:
            p_value = 2 * (1 - self._cdf(abs(z_score)))
        return min(max(p_value, 0.0), 1.0)

    def required_sample_size(
        self, config: StatisticalConfig, baseline_rate: float = DEFAULT_BASELINE_RATE
    ) -> int:
        """
        Total participants needed across both arms.

        The minimum detectable effect is relative to the baseline rate, so
        mde=0.2 on a 5% baseline plans for detecting 5% -> 6%.
        """
        z_alpha = self._ppf(1 - config.alpha_level / 2)
        z_beta = self._ppf(config.power_level)

        p1 = baseline_rate
        p2 = baseline_rate * (1 + config.minimum_detectable_effect)

        denominator = (p2 - p1) ** 2
        if denominator == 0:
            return 0

        n = (z_alpha + z_beta) ** 2 * (p1 * (1 - p1) + p2 * (1 - p2)) / denominator

        return math.ceil(n * 2)

    def statistical_power(
        self, control: VariantMetrics, variant: VariantMetrics, alpha: float = 0.05
    ) -> float:
        n1 = control.participant_count
        n2 = variant.participant_count
        if n1 == 0 or n2 == 0:
            return 0.0

        p1 = observed_rate(control)
        p2 = observed_rate(variant)

        if p1 == p2:
            return alpha  # Power equals alpha when there's no effect

        effect = abs(p2 - p1)

        # Pooled SE under null
        pooled = calculate_pooled_proportion(control, variant)
        se_null = math.sqrt(max(pooled * (1 - pooled), 0.0) * (1 / n1 + 1 / n2))

        # SE under alternative
        se_alt = math.sqrt(max(p1 * (1 - p1) / n1 + p2 * (1 - p2) / n2, 0.0))

        if se_alt == 0:
            return 1.0

        z_alpha = self._ppf(1 - alpha / 2)
        power = self._cdf((effect - z_alpha * se_null) / se_alt)

        return min(max(power, 0.0), 1.0)

    def compare_variants(self, experiment: Experiment) -> List[VariantComparison]:
        """Compare every non-control variant against the first control."""
        control = experiment.control
        if control is None:
            return []

        config = experiment.statistical_config
        comparisons = []
        for variant in experiment.treatments:
            result = self.evaluate(control.metrics, variant.metrics, config)
            power = self.statistical_power(control.metrics, variant.metrics, config.alpha_level)
            comparisons.append(
                VariantComparison(variant=variant, control=control, result=result, power=power)
            )

        if len(comparisons) > 1 and config.correction_method != CorrectionMethod.NONE:
            flags = apply_correction(
                [c.result.p_value for c in comparisons],
                config.alpha_level,
                config.correction_method,
            )
            for comparison, significant in zip(comparisons, flags):
                comparison.result.significant = significant

        return comparisons


def apply_correction(
    p_values: Sequence[float], alpha: float, method: CorrectionMethod
) -> List[bool]:
    """Significance flags for a family of comparisons under a correction method."""
    m = len(p_values)
    if m == 0:
        return []

    if method == CorrectionMethod.NONE:
        return [p < alpha for p in p_values]

    if method == CorrectionMethod.BONFERRONI:
        return [p < alpha / m for p in p_values]

    order = sorted(range(m), key=lambda i: p_values[i])
    flags = [False] * m

    if method == CorrectionMethod.HOLM:
        # Step-down: reject until the first failure
        for rank, index in enumerate(order):
            if p_values[index] < alpha / (m - rank):
                flags[index] = True
            else:
                break
        return flags

    if method == CorrectionMethod.BENJAMINI_HOCHBERG:
        # Step-up: largest k with p_(k) <= k/m * alpha, reject 1..k
        cutoff = -1
        for rank, index in enumerate(order):
            if p_values[index] <= (rank + 1) / m * alpha:
                cutoff = rank
        for rank in range(cutoff + 1):
            flags[order[rank]] = True
        return flags

    raise ValueError(f"Unknown correction method '{method}'")
