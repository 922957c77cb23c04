"""Credit cost functions for metered features.

Each feature has a flat or volume-tiered cost. Administrators can override a
unit cost with an active row in ``credit_pricing_rules``; pass ``db`` to
honour those overrides.
"""

import math

from sqlalchemy import select
from sqlalchemy.orm import Session

from metering.core.config import settings
from metering.models.credit_reference import CreditPricingRule
from metering.services.credits.exceptions import InvalidAmountError

# Attribution tags written to ledger entries
FEATURE_GEOGRID = "geo-grid"
FEATURE_RANK_CHECK = "rank-check"
FEATURE_BACKLINK_LOOKUP = "backlink-lookup"
FEATURE_DOMAIN_ANALYSIS = "domain-analysis"
FEATURE_URL_ANALYSIS = "url-analysis"
FEATURE_SENTIMENT_ANALYSIS = "sentiment-analysis"
FEATURE_KEYWORD_RESEARCH = "keyword-research"
FEATURE_CONTENT_GENERATION = "content-generation"


def get_pricing_rules(db: Session, feature: str) -> list[CreditPricingRule]:
    """Active pricing overrides for a feature."""
    return list(
        db.execute(
            select(CreditPricingRule)
            .where(CreditPricingRule.feature == feature, CreditPricingRule.is_active.is_(True))
            .order_by(CreditPricingRule.rule_key)
        )
        .scalars()
        .all()
    )


def _unit_cost(db: Session | None, feature: str, rule_key: str, default: int) -> int:
    if db is None:
        return default
    cost = db.execute(
        select(CreditPricingRule.credit_cost).where(
            CreditPricingRule.feature == feature,
            CreditPricingRule.rule_key == rule_key,
            CreditPricingRule.is_active.is_(True),
        )
    ).scalar_one_or_none()
    return default if cost is None else cost


def _require_positive(name: str, value: int) -> None:
    if value < 1:
        raise InvalidAmountError(f"{name} must be at least 1, got {value}")


def calculate_geogrid_cost(grid_size: int, keyword_count: int = 1, db: Session | None = None) -> int:
    """Base cost plus one credit per grid cell and two per keyword.

    A 5x5 grid with 5 keywords costs 10 + 25 + 10 = 45.
    """
    _require_positive("grid_size", grid_size)
    _require_positive("keyword_count", keyword_count)
    base = _unit_cost(db, FEATURE_GEOGRID, "base", settings.GEOGRID_BASE_COST)
    per_cell = _unit_cost(db, FEATURE_GEOGRID, "per_cell", settings.GEOGRID_COST_PER_CELL)
    per_keyword = _unit_cost(db, FEATURE_GEOGRID, "per_keyword", settings.GEOGRID_COST_PER_KEYWORD)
    return base + grid_size * grid_size * per_cell + keyword_count * per_keyword


def calculate_rank_check_cost(keyword_count: int, db: Session | None = None) -> int:
    """Every keyword is checked on desktop and mobile."""
    _require_positive("keyword_count", keyword_count)
    return keyword_count * _unit_cost(db, FEATURE_RANK_CHECK, "per_keyword", settings.RANK_CHECK_COST_PER_KEYWORD)


def calculate_backlink_check_cost(check_type: str = "full", db: Session | None = None) -> int:
    if check_type == "full":
        return _unit_cost(db, FEATURE_BACKLINK_LOOKUP, "full", settings.BACKLINK_FULL_COST)
    if check_type == "summary":
        return _unit_cost(db, FEATURE_BACKLINK_LOOKUP, "summary", settings.BACKLINK_SUMMARY_COST)
    raise ValueError(f"Unknown backlink check type: {check_type}")


def calculate_domain_analysis_cost(domain_count: int = 1, db: Session | None = None) -> int:
    _require_positive("domain_count", domain_count)
    return domain_count * _unit_cost(db, FEATURE_DOMAIN_ANALYSIS, "per_domain", settings.DOMAIN_ANALYSIS_COST)


def calculate_url_analysis_cost(url_count: int = 1, db: Session | None = None) -> int:
    _require_positive("url_count", url_count)
    return url_count * _unit_cost(db, FEATURE_URL_ANALYSIS, "per_url", settings.URL_ANALYSIS_COST)


def calculate_keyword_research_cost(keyword_count: int = 1, db: Session | None = None) -> int:
    _require_positive("keyword_count", keyword_count)
    return keyword_count * _unit_cost(
        db, FEATURE_KEYWORD_RESEARCH, "per_keyword", settings.KEYWORD_RESEARCH_COST
    )


def calculate_content_generation_cost(db: Session | None = None) -> int:
    return _unit_cost(db, FEATURE_CONTENT_GENERATION, "per_generation", settings.CONTENT_GENERATION_COST)


def calculate_sentiment_analysis_cost(review_count: int, db: Session | None = None) -> int:
    """Tiered by review volume; above the largest tier, scale its rate linearly.

    A tier's cost is overridden by the rule ``up_to_<max_reviews>``.
    """
    _require_positive("review_count", review_count)
    if not settings.SENTIMENT_COST_TIERS:
        raise ValueError("SENTIMENT_COST_TIERS must define at least one tier")
    tiers = [
        (max_reviews, _unit_cost(db, FEATURE_SENTIMENT_ANALYSIS, f"up_to_{max_reviews}", credits))
        for max_reviews, credits in sorted(settings.SENTIMENT_COST_TIERS)
    ]
    for max_reviews, credits in tiers:
        if review_count <= max_reviews:
            return credits
    max_reviews, credits = tiers[-1]
    return math.ceil(review_count * credits / max_reviews)
