from sqlalchemy.orm import Session
import logging

from models.results import SignificanceReport, SignificanceResult
from services import registry
from services.aggregation import ConversionCounts, conversion_counts
from services.errors import InsufficientData
from services.stats_math import two_proportion_z_test, lift_percentage

logger = logging.getLogger(__name__)

DEFAULT_ALPHA = 0.05

def compare_to_control(control: ConversionCounts, treatment: ConversionCounts,
                       alpha: float = DEFAULT_ALPHA, minimum_sample_size: int = 0) -> SignificanceResult:
    z, p = two_proportion_z_test(control.conversions, control.sample_size,
                                 treatment.conversions, treatment.sample_size)
    return SignificanceResult(
        variant_name=treatment.variant.name,
        control_rate=control.rate,
        treatment_rate=treatment.rate,
        lift_percentage=lift_percentage(control.rate, treatment.rate),
        z_score=z,
        p_value=p,
        is_significant=p < alpha,
        confidence_level=(1 - p) * 100,
        control_sample_size=control.sample_size,
        treatment_sample_size=treatment.sample_size,
        meets_minimum_sample=min(control.sample_size, treatment.sample_size) >= minimum_sample_size,
    )

def calculate_significance(db: Session, test_name: str, metric_name: str = "conversion") -> SignificanceReport:
    """
    Pooled two-proportion z-test of every treatment against the control for one metric.
    The significance threshold comes from the test's confidence level (95% -> alpha 0.05).
    """
    test = registry.get_test(db, test_name)
    groups = conversion_counts(db, test, metric_name)

    if len(groups) < 2:
        raise InsufficientData(f"Not enough variants with '{metric_name}' results in test {test_name} "
                               f"for statistical analysis ({len(groups)} found).")

    controls = [g for g in groups if g.variant.is_control]
    if len(controls) != 1:
        raise InsufficientData(f"Expected exactly one control variant with results in test {test_name}, "
                               f"found {len(controls)}.")
    control = controls[0]

    alpha = round(1 - test.statistical_significance / 100, 10) if test.statistical_significance else DEFAULT_ALPHA
    analysis = [
        compare_to_control(control, treatment, alpha=alpha, minimum_sample_size=test.minimum_sample_size)
        for treatment in sorted(groups, key=lambda g: g.variant.name)
        if not treatment.variant.is_control
    ]

    logger.info("significance of %s on %s: %s", metric_name, test_name,
                ", ".join(f"{r.variant_name} p={r.p_value:.4f}" for r in analysis))
    return SignificanceReport(
        test_name=test.name,
        metric_name=metric_name,
        control_variant=control.variant.name,
        alpha=alpha,
        statistical_analysis=analysis,
    )
