"""Default dimension set for the Municipal Innovation Index.

Six dimensions, weights summing to 1.0. Indicators read five sources:
``profile`` (one record per municipality), ``challenges``, ``pilots``,
``partnerships`` and ``case_studies``. Point multipliers follow the
published MII methodology (e.g. 20 points per completed pilot, capped
at 100).
"""

import logging

from mii_engine.engine.registry import DimensionRegistry
from mii_engine.models.common import AggregationKind
from mii_engine.models.dimension import Dimension, DimensionCreate, Indicator

logger = logging.getLogger(__name__)

_AVG = AggregationKind.AVERAGE
_RATIO = AggregationKind.RATIO
_COUNT = AggregationKind.COUNT_RATE
_COVER = AggregationKind.FIELD_COVERAGE

ACTIVE_PILOT_STAGES = ["active", "monitoring"]

DEFAULT_DIMENSIONS: list[DimensionCreate] = [
    DimensionCreate(
        code="LEADERSHIP",
        name_en="Leadership",
        name_ar="القيادة",
        description="Profile completeness and active engagement in innovation.",
        weight=0.20,
        sort_order=1,
        indicators=[
            Indicator(
                code="profile_completeness", source="profile", aggregation=_COVER,
                weight=0.3,
                coverage_fields=["contact_person", "contact_email", "website",
                                 "strategic_plan_id"],
            ),
            Indicator(code="challenge_engagement", source="challenges",
                      aggregation=_COUNT, weight=0.2, points_per_record=10),
            Indicator(code="pilot_engagement", source="pilots",
                      aggregation=_COUNT, weight=0.2, points_per_record=15),
            Indicator(code="strategic_alignment", source="profile", aggregation=_COVER,
                      weight=0.3, coverage_fields=["strategic_plan_id"]),
        ],
    ),
    DimensionCreate(
        code="STRATEGY",
        name_en="Strategy",
        name_ar="الاستراتيجية",
        description="Strategic planning and challenge-to-pilot conversion.",
        weight=0.15,
        sort_order=2,
        indicators=[
            Indicator(code="strategic_planning", source="profile", aggregation=_COVER,
                      weight=0.4, coverage_fields=["strategic_plan_id"]),
            Indicator(code="challenge_to_pilot_conversion", source="challenges",
                      aggregation=_RATIO, weight=0.35,
                      where={"status": ["converted_to_pilot", "in_pilot"]}),
            Indicator(code="strategic_goal_linkage", source="challenges",
                      aggregation=_RATIO, weight=0.25, require_fields=["strategic_goal"]),
        ],
    ),
    DimensionCreate(
        code="CULTURE",
        name_en="Culture",
        name_ar="الثقافة",
        description="Experimentation rate, risk tolerance and learning.",
        weight=0.15,
        sort_order=3,
        indicators=[
            Indicator(code="experimentation_rate", source="pilots", aggregation=_COUNT,
                      weight=0.4, points_per_record=20, per_capita=True),
            Indicator(code="risk_tolerance", source="pilots", aggregation=_COUNT,
                      weight=0.3, points_per_record=20, distinct_field="stage"),
            Indicator(code="learning_mindset", source="pilots", aggregation=_RATIO,
                      weight=0.3, require_fields=["lessons_learned"]),
        ],
    ),
    DimensionCreate(
        code="PARTNERSHIPS",
        name_en="Partnerships",
        name_ar="الشراكات",
        description="Active partnerships, their diversity and reach.",
        weight=0.15,
        sort_order=4,
        indicators=[
            Indicator(code="partnership_count", source="partnerships", aggregation=_COUNT,
                      weight=0.4, points_per_record=15, where={"status": "active"}),
            Indicator(code="partnership_diversity", source="partnerships",
                      aggregation=_COUNT, weight=0.3, points_per_record=25,
                      where={"status": "active"}, distinct_field="partnership_type"),
            Indicator(code="cross_municipality", source="partnerships",
                      aggregation=_RATIO, weight=0.3,
                      where={"scope": "cross_municipality"}),
        ],
    ),
    DimensionCreate(
        code="CAPABILITIES",
        name_en="Capabilities",
        name_ar="القدرات",
        description="Digital infrastructure and execution capacity.",
        weight=0.15,
        sort_order=5,
        indicators=[
            Indicator(code="digital_infrastructure", source="profile", aggregation=_COVER,
                      weight=0.3, coverage_fields=["website"]),
            Indicator(code="execution_capacity", source="pilots", aggregation=_COUNT,
                      weight=0.4, points_per_record=25,
                      where={"stage": ACTIVE_PILOT_STAGES}),
            Indicator(code="challenge_management", source="challenges",
                      aggregation=_COUNT, weight=0.3, points_per_record=12),
        ],
    ),
    DimensionCreate(
        code="IMPACT",
        name_en="Impact",
        name_ar="الأثر",
        description="Completed pilots, their success and shared knowledge.",
        weight=0.20,
        sort_order=6,
        indicators=[
            Indicator(code="completed_pilots", source="pilots", aggregation=_COUNT,
                      weight=0.4, points_per_record=20, where={"stage": "completed"}),
            Indicator(code="success_rate", source="pilots", aggregation=_AVG,
                      weight=0.35, value_field="success_probability",
                      where={"stage": "completed"}),
            Indicator(code="knowledge_sharing", source="case_studies",
                      aggregation=_COUNT, weight=0.25, points_per_record=25,
                      where={"is_published": True}),
        ],
    ),
]


async def seed_default_dimensions(registry: DimensionRegistry) -> list[Dimension]:
    """Add every default dimension whose code is not registered yet."""
    existing = {d.code for d in await registry.list_all()}
    added: list[Dimension] = []
    for payload in DEFAULT_DIMENSIONS:
        if payload.code in existing:
            continue
        added.append(await registry.add(payload))
    logger.info("Seeded %d default dimensions (%d already present)",
                len(added), len(DEFAULT_DIMENSIONS) - len(added))
    return added
