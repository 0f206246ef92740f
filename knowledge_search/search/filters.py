"""Structured tag filter compilation.

Turns the loosely-typed filters a caller sends into SQLAlchemy predicates over
the 17 tag columns of the ``embeddings`` table.

Combination rules:
    - Filters on the same tag slot are OR-ed (any match on the slot qualifies).
    - Predicates for different slots are AND-ed by the caller.

Malformed filters (unknown slot, wrong field type, illegal operator, bad
number or date value) are dropped with a debug log. The remaining filters
still apply.
"""

import logging
import math
import operator as op
import re
from dataclasses import dataclass
from datetime import date
from enum import Enum
from typing import Any, Callable, Iterable, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from sqlalchemy import ColumnElement, func, or_
from sqlalchemy.orm import InstrumentedAttribute

from knowledge_search.models.knowledge import Embedding
from knowledge_search.search.sql import as_date

logger = logging.getLogger(__name__)

_DATE_PATTERN = re.compile(r"^\d{4}-\d{2}-\d{2}$")


class FieldType(str, Enum):
    """Value type of a tag slot."""

    TEXT = "text"
    NUMBER = "number"
    DATE = "date"
    BOOLEAN = "boolean"


class TagSlot(str, Enum):
    """The fixed tag slots available on every chunk."""

    TAG1 = "tag1"
    TAG2 = "tag2"
    TAG3 = "tag3"
    TAG4 = "tag4"
    TAG5 = "tag5"
    TAG6 = "tag6"
    TAG7 = "tag7"
    NUMBER1 = "number1"
    NUMBER2 = "number2"
    NUMBER3 = "number3"
    NUMBER4 = "number4"
    NUMBER5 = "number5"
    DATE1 = "date1"
    DATE2 = "date2"
    BOOLEAN1 = "boolean1"
    BOOLEAN2 = "boolean2"
    BOOLEAN3 = "boolean3"

    @property
    def field_type(self) -> FieldType:
        return _SLOT_FIELD_TYPES[self]

    @property
    def column(self) -> InstrumentedAttribute:
        return _SLOT_COLUMNS[self]

    @classmethod
    def parse(cls, value: str) -> "TagSlot | None":
        try:
            return cls(value)
        except ValueError:
            return None


_SLOT_FIELD_TYPES: dict[TagSlot, FieldType] = {
    TagSlot.TAG1: FieldType.TEXT,
    TagSlot.TAG2: FieldType.TEXT,
    TagSlot.TAG3: FieldType.TEXT,
    TagSlot.TAG4: FieldType.TEXT,
    TagSlot.TAG5: FieldType.TEXT,
    TagSlot.TAG6: FieldType.TEXT,
    TagSlot.TAG7: FieldType.TEXT,
    TagSlot.NUMBER1: FieldType.NUMBER,
    TagSlot.NUMBER2: FieldType.NUMBER,
    TagSlot.NUMBER3: FieldType.NUMBER,
    TagSlot.NUMBER4: FieldType.NUMBER,
    TagSlot.NUMBER5: FieldType.NUMBER,
    TagSlot.DATE1: FieldType.DATE,
    TagSlot.DATE2: FieldType.DATE,
    TagSlot.BOOLEAN1: FieldType.BOOLEAN,
    TagSlot.BOOLEAN2: FieldType.BOOLEAN,
    TagSlot.BOOLEAN3: FieldType.BOOLEAN,
}

_SLOT_COLUMNS: dict[TagSlot, InstrumentedAttribute] = {
    TagSlot.TAG1: Embedding.tag1,
    TagSlot.TAG2: Embedding.tag2,
    TagSlot.TAG3: Embedding.tag3,
    TagSlot.TAG4: Embedding.tag4,
    TagSlot.TAG5: Embedding.tag5,
    TagSlot.TAG6: Embedding.tag6,
    TagSlot.TAG7: Embedding.tag7,
    TagSlot.NUMBER1: Embedding.number1,
    TagSlot.NUMBER2: Embedding.number2,
    TagSlot.NUMBER3: Embedding.number3,
    TagSlot.NUMBER4: Embedding.number4,
    TagSlot.NUMBER5: Embedding.number5,
    TagSlot.DATE1: Embedding.date1,
    TagSlot.DATE2: Embedding.date2,
    TagSlot.BOOLEAN1: Embedding.boolean1,
    TagSlot.BOOLEAN2: Embedding.boolean2,
    TagSlot.BOOLEAN3: Embedding.boolean3,
}


class TextOperator(str, Enum):
    EQ = "eq"
    NEQ = "neq"
    CONTAINS = "contains"
    NOT_CONTAINS = "not_contains"
    STARTS_WITH = "starts_with"
    ENDS_WITH = "ends_with"


class NumberOperator(str, Enum):
    EQ = "eq"
    NEQ = "neq"
    GT = "gt"
    GTE = "gte"
    LT = "lt"
    LTE = "lte"
    BETWEEN = "between"


class DateOperator(str, Enum):
    EQ = "eq"
    NEQ = "neq"
    GT = "gt"
    GTE = "gte"
    LT = "lt"
    LTE = "lte"
    BETWEEN = "between"


class BooleanOperator(str, Enum):
    EQ = "eq"
    NEQ = "neq"


class StructuredFilter(BaseModel):
    """A filter as received from a caller, before validation against the slots."""

    model_config = ConfigDict(populate_by_name=True)

    tag_slot: str = Field(..., alias="tagSlot")
    field_type: str = Field(..., alias="fieldType")
    operator: str = "eq"
    value: Any = None
    value_to: Any | None = Field(default=None, alias="valueTo")


@dataclass(frozen=True)
class TextFilter:
    slot: TagSlot
    operator: TextOperator
    value: str


@dataclass(frozen=True)
class NumberFilter:
    slot: TagSlot
    operator: NumberOperator
    value: float
    value_to: float | None = None


@dataclass(frozen=True)
class DateFilter:
    slot: TagSlot
    operator: DateOperator
    value: date
    value_to: date | None = None


@dataclass(frozen=True)
class BooleanFilter:
    slot: TagSlot
    operator: BooleanOperator
    value: bool


TypedFilter = Union[TextFilter, NumberFilter, DateFilter, BooleanFilter]


# -------------------------------------------------------------------------
# Parsing
# -------------------------------------------------------------------------


def _parse_number(value: Any) -> float | None:
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    else:
        try:
            number = float(str(value).strip())
        except ValueError:
            return None
    if not math.isfinite(number):
        return None
    return number


def _parse_date(value: Any) -> date | None:
    if value is None:
        return None
    date_str = str(value)
    if not _DATE_PATTERN.match(date_str):
        return None
    try:
        return date.fromisoformat(date_str)
    except ValueError:
        return None


def _parse_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return isinstance(value, str) and value.strip().lower() == "true"


def parse_filter(raw: StructuredFilter) -> TypedFilter | None:
    """Validate a raw filter against its slot.

    Returns:
        The typed filter, or None if the filter should be dropped.
    """
    slot = TagSlot.parse(raw.tag_slot)
    if slot is None:
        logger.debug(f"Dropping filter on unknown tag slot: {raw.tag_slot}")
        return None

    if raw.field_type != slot.field_type.value:
        logger.debug(
            f"Dropping filter on {slot.value}: field type {raw.field_type!r} "
            f"does not match slot type {slot.field_type.value!r}"
        )
        return None

    logger.debug(f"Processing {slot.value} ({raw.field_type}) {raw.operator} {raw.value}")

    try:
        if slot.field_type is FieldType.TEXT:
            text_op = TextOperator(raw.operator)
            if raw.value is None:
                logger.debug(f"Dropping filter on {slot.value}: missing value")
                return None
            return TextFilter(slot, text_op, str(raw.value))

        if slot.field_type is FieldType.NUMBER:
            number_op = NumberOperator(raw.operator)
            number = _parse_number(raw.value)
            if number is None:
                logger.debug(f"Dropping filter on {slot.value}: invalid number {raw.value!r}")
                return None
            if number_op is NumberOperator.BETWEEN:
                upper = _parse_number(raw.value_to)
                if upper is None:
                    return NumberFilter(slot, NumberOperator.EQ, number)
                return NumberFilter(slot, number_op, number, upper)
            return NumberFilter(slot, number_op, number)

        if slot.field_type is FieldType.DATE:
            date_op = DateOperator(raw.operator)
            day = _parse_date(raw.value)
            if day is None:
                logger.debug(
                    f"Dropping filter on {slot.value}: invalid date {raw.value!r}, "
                    "expected YYYY-MM-DD"
                )
                return None
            if date_op is DateOperator.BETWEEN:
                upper_day = _parse_date(raw.value_to)
                if upper_day is None:
                    return DateFilter(slot, DateOperator.EQ, day)
                return DateFilter(slot, date_op, day, upper_day)
            return DateFilter(slot, date_op, day)

        return BooleanFilter(slot, BooleanOperator(raw.operator), _parse_bool(raw.value))

    except ValueError:
        logger.debug(
            f"Dropping filter on {slot.value}: operator {raw.operator!r} "
            f"is not valid for {slot.field_type.value} tags"
        )
        return None


# -------------------------------------------------------------------------
# Condition building
# -------------------------------------------------------------------------

_COMPARISONS: dict[str, Callable[[Any, Any], ColumnElement[bool]]] = {
    "eq": op.eq,
    "neq": op.ne,
    "gt": op.gt,
    "gte": op.ge,
    "lt": op.lt,
    "lte": op.le,
}


def _text_condition(f: TextFilter) -> ColumnElement[bool]:
    lowered = func.lower(f.slot.column)
    value = f.value.lower()

    if f.operator is TextOperator.EQ:
        return lowered == value
    if f.operator is TextOperator.NEQ:
        return lowered != value
    if f.operator is TextOperator.CONTAINS:
        return lowered.contains(value, autoescape=True)
    if f.operator is TextOperator.NOT_CONTAINS:
        return ~lowered.contains(value, autoescape=True)
    if f.operator is TextOperator.STARTS_WITH:
        return lowered.startswith(value, autoescape=True)
    return lowered.endswith(value, autoescape=True)


def _number_condition(f: NumberFilter) -> ColumnElement[bool]:
    column = f.slot.column
    if f.operator is NumberOperator.BETWEEN:
        return column.between(f.value, f.value_to)
    return _COMPARISONS[f.operator.value](column, f.value)


def _date_condition(f: DateFilter) -> ColumnElement[bool]:
    day = as_date(f.slot.column)
    if f.operator is DateOperator.BETWEEN:
        return day.between(f.value, f.value_to)
    return _COMPARISONS[f.operator.value](day, f.value)


def _boolean_condition(f: BooleanFilter) -> ColumnElement[bool]:
    column = f.slot.column
    if f.operator is BooleanOperator.NEQ:
        return column != f.value
    return column == f.value


def build_filter_condition(f: TypedFilter) -> ColumnElement[bool]:
    """Build the SQL predicate for a single typed filter."""
    if isinstance(f, TextFilter):
        return _text_condition(f)
    if isinstance(f, NumberFilter):
        return _number_condition(f)
    if isinstance(f, DateFilter):
        return _date_condition(f)
    return _boolean_condition(f)


def _coerce(raw: StructuredFilter | dict[str, Any]) -> StructuredFilter | None:
    if isinstance(raw, StructuredFilter):
        return raw
    try:
        return StructuredFilter.model_validate(raw)
    except ValidationError as e:
        logger.debug(f"Dropping malformed filter {raw!r}: {e.error_count()} validation errors")
        return None


def build_tag_filter_conditions(
    filters: Iterable[StructuredFilter | dict[str, Any]],
) -> list[ColumnElement[bool]]:
    """Compile structured filters into predicates to be AND-ed together.

    Args:
        filters: Filters in request order.

    Returns:
        One predicate per tag slot that kept at least one valid filter. Slots
        with several valid filters yield an OR group.
    """
    by_slot: dict[str, list[StructuredFilter]] = {}
    for raw in filters:
        structured = _coerce(raw)
        if structured is None:
            continue
        by_slot.setdefault(structured.tag_slot, []).append(structured)

    conditions: list[ColumnElement[bool]] = []
    for slot, slot_filters in by_slot.items():
        slot_conditions = [
            build_filter_condition(typed)
            for typed in (parse_filter(f) for f in slot_filters)
            if typed is not None
        ]
        if not slot_conditions:
            continue
        if len(slot_conditions) == 1:
            conditions.append(slot_conditions[0])
        else:
            logger.debug(f"OR'ing {len(slot_conditions)} conditions for {slot}")
            conditions.append(or_(*slot_conditions))

    return conditions
