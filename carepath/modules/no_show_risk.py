"""
CarePath - No-Show Risk Estimator
Rule-based risk score driving confirmation and hold policy for new bookings
"""

import logging
from typing import Optional

from sqlalchemy.orm import Session

from carepath.models import NoShowRiskConfig
from carepath.schemas import NoShowRisk, NoShowRiskCoefficients, NoShowRiskInput

logger = logging.getLogger(__name__)

DEFAULT_COEFFICIENTS = NoShowRiskCoefficients()

# no_show_risk_config keys that may override a coefficient
CONFIG_KEYS = (
    "base_risk",
    "no_show_1_penalty",
    "no_show_2_penalty",
    "lead_time_penalty",
    "early_morning_penalty",
    "requires_confirmation_threshold",
    "short_hold_threshold",
)


def compute_no_show_risk(
    inputs: NoShowRiskInput,
    coefficients: NoShowRiskCoefficients = DEFAULT_COEFFICIENTS,
) -> NoShowRisk:
    """
    Additive risk formula, clamped to [0, max_risk]

    base + penalty for >=1 prior no-show (12 months) + extra for >=2
    + long lead time + early-morning start.
    """
    c = coefficients
    risk = c.base_risk
    if inputs.prior_no_shows_12m >= 1:
        risk += c.no_show_1_penalty
    if inputs.prior_no_shows_12m >= 2:
        risk += c.no_show_2_penalty
    if inputs.lead_days > c.lead_time_threshold_days:
        risk += c.lead_time_penalty
    if c.early_morning_start_hour <= inputs.start_hour < c.early_morning_end_hour:
        risk += c.early_morning_penalty

    risk = round(max(0.0, min(c.max_risk, risk)), 4)
    return NoShowRisk(
        risk=risk,
        requires_confirmation=risk >= c.requires_confirmation_threshold,
        hold_hours=c.short_hold_hours if risk >= c.short_hold_threshold else c.default_hold_hours,
    )


def load_coefficients(session: Session, base: Optional[NoShowRiskCoefficients] = None) -> NoShowRiskCoefficients:
    """Defaults overlaid with rows from no_show_risk_config"""
    base = base or DEFAULT_COEFFICIENTS
    rows = session.query(NoShowRiskConfig).filter(NoShowRiskConfig.key.in_(CONFIG_KEYS)).all()
    overrides = {row.key: float(row.value) for row in rows}
    if overrides:
        logger.debug(f"No-show coefficient overrides: {overrides}")
    return base.model_copy(update=overrides)
