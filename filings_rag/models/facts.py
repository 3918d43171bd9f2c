# =============================================================================
# Structured Extracted Facts — Closed Variant Set
# =============================================================================
#
# Every chunk carries three JSONB arrays of facts extracted during ingestion:
#
#   time_based_facts    → TimeBasedFact    (category "TB")
#   qualitative_facts   → QualitativeFact  (category "PAQL")
#   quantitative_facts  → QuantitativeFact (category "PAQN")
#
# The three variants form a tagged union discriminated by `category`, so a
# consumer always gets a concrete type back rather than an untyped dict.
#
# The JSONB payloads use camelCase keys (eventType, metricName, ...) because
# that is what the ingestion pipeline writes. The models accept either
# spelling and always dump camelCase.
# =============================================================================

from __future__ import annotations

from typing import Annotated, Literal

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError
from pydantic.alias_generators import to_camel

from filings_rag.errors import InvalidInput


class _FactModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
    )


class TimeBasedFact(_FactModel):
    """Forward-looking event, expected date or timeline commitment."""

    category: Literal["TB"] = "TB"
    text: str
    event_type: str
    expected_date: str | None = None
    description: str


class QualitativeFact(_FactModel):
    """Non-numeric business narrative: operations, expansions, strategy."""

    category: Literal["PAQL"] = "PAQL"
    text: str
    topic: str
    context: str
    sentiment: Literal["positive", "neutral", "negative"] | None = None


class QuantitativeFact(_FactModel):
    """A named numeric metric with unit and reporting period."""

    category: Literal["PAQN"] = "PAQN"
    metric_name: str
    value: float
    unit: str
    period: str | None = None
    context: str | None = None


ExtractedFact = Annotated[
    TimeBasedFact | QualitativeFact | QuantitativeFact,
    Field(discriminator="category"),
]

FactCategory = Literal["TB", "PAQL", "PAQN"]

_facts_adapter: TypeAdapter[list[ExtractedFact]] = TypeAdapter(list[ExtractedFact])


def parse_facts(
    raw: list[dict] | None,
    category: FactCategory,
) -> list[ExtractedFact]:
    """
    Parse one JSONB fact column into typed variants.

    Items without a `category` key are tagged with the column's category.
    Items tagged with a different category than the column holds are
    rejected, as are items that fail validation.

    Raises:
        InvalidInput: If any item is malformed or belongs to another column.
    """
    if not raw:
        return []

    tagged = [{"category": category, **item} for item in raw]
    try:
        facts = _facts_adapter.validate_python(tagged)
    except ValidationError as e:
        raise InvalidInput(f"Malformed {category} facts: {e}") from e

    for fact in facts:
        if fact.category != category:
            raise InvalidInput(
                f"Fact of category {fact.category} stored in {category} column"
            )
    return facts


def dump_facts(facts: list[ExtractedFact]) -> list[dict]:
    """Serialise typed facts to the camelCase JSONB shape."""
    return _facts_adapter.dump_python(list(facts), by_alias=True, mode="json")
