"""Tests for structured tag filter compilation."""

from datetime import date

from sqlalchemy.dialects import postgresql

from knowledge_search.search.filters import (
    BooleanFilter,
    DateFilter,
    DateOperator,
    NumberFilter,
    NumberOperator,
    StructuredFilter,
    TagSlot,
    TextFilter,
    TextOperator,
    build_tag_filter_conditions,
    parse_filter,
)


def _filter(tag_slot: str, field_type: str, operator: str = "eq", value=None, value_to=None):
    return StructuredFilter(
        tag_slot=tag_slot,
        field_type=field_type,
        operator=operator,
        value=value,
        value_to=value_to,
    )


def _pg_sql(condition) -> str:
    return str(
        condition.compile(
            dialect=postgresql.dialect(),
            compile_kwargs={"literal_binds": True},
        )
    )


class TestStructuredFilter:
    """Tests for the wire model."""

    def test_accepts_camel_case_aliases(self):
        """Test filters sent with camelCase keys are understood."""
        f = StructuredFilter.model_validate(
            {
                "tagSlot": "number1",
                "fieldType": "number",
                "operator": "between",
                "value": 1,
                "valueTo": 5,
            }
        )

        assert f.tag_slot == "number1"
        assert f.field_type == "number"
        assert f.value_to == 5

    def test_operator_defaults_to_eq(self):
        """Test a filter without operator means equality."""
        f = StructuredFilter.model_validate({"tagSlot": "tag1", "fieldType": "text", "value": "x"})

        assert f.operator == "eq"


class TestParseFilter:
    """Tests for per-filter validation against tag slots."""

    def test_text_filter(self):
        """Test a text filter keeps its operator and value."""
        parsed = parse_filter(_filter("tag2", "text", "starts_with", "Intro"))

        assert parsed == TextFilter(TagSlot.TAG2, TextOperator.STARTS_WITH, "Intro")

    def test_unknown_slot_is_dropped(self):
        """Test filters on non-existent slots are dropped."""
        assert parse_filter(_filter("tag9", "text", "eq", "x")) is None

    def test_field_type_mismatch_is_dropped(self):
        """Test a number filter on a text slot is dropped."""
        assert parse_filter(_filter("tag1", "number", "eq", 3)) is None

    def test_illegal_operator_is_dropped(self):
        """Test operators not defined for the field type are dropped."""
        assert parse_filter(_filter("boolean1", "boolean", "gt", True)) is None
        assert parse_filter(_filter("tag1", "text", "between", "a")) is None

    def test_number_strings_are_parsed(self):
        """Test numeric strings are accepted as numbers."""
        parsed = parse_filter(_filter("number1", "number", "gte", " 4.5 "))

        assert parsed == NumberFilter(TagSlot.NUMBER1, NumberOperator.GTE, 4.5)

    def test_invalid_number_is_dropped(self):
        """Test non-numeric and non-finite values are dropped."""
        assert parse_filter(_filter("number1", "number", "eq", "abc")) is None
        assert parse_filter(_filter("number1", "number", "eq", "nan")) is None
        assert parse_filter(_filter("number1", "number", "eq", True)) is None

    def test_number_between_without_upper_bound_degrades_to_eq(self):
        """Test between with a missing upper bound becomes equality on the lower bound."""
        parsed = parse_filter(_filter("number2", "number", "between", 7))

        assert parsed == NumberFilter(TagSlot.NUMBER2, NumberOperator.EQ, 7.0)

    def test_number_between_with_invalid_upper_bound_degrades_to_eq(self):
        """Test between with a non-numeric upper bound becomes equality."""
        parsed = parse_filter(_filter("number2", "number", "between", 7, "lots"))

        assert parsed == NumberFilter(TagSlot.NUMBER2, NumberOperator.EQ, 7.0)

    def test_date_filter(self):
        """Test a valid date range is parsed to calendar dates."""
        parsed = parse_filter(_filter("date1", "date", "between", "2024-01-01", "2024-03-31"))

        assert parsed == DateFilter(
            TagSlot.DATE1,
            DateOperator.BETWEEN,
            date(2024, 1, 1),
            date(2024, 3, 31),
        )

    def test_invalid_date_is_dropped(self):
        """Test dates outside YYYY-MM-DD are dropped."""
        assert parse_filter(_filter("date1", "date", "eq", "01/15/2024")) is None
        assert parse_filter(_filter("date1", "date", "eq", "2024-13-01")) is None
        assert parse_filter(_filter("date1", "date", "eq", "2024-01-15T00:00:00")) is None

    def test_date_between_without_upper_bound_degrades_to_eq(self):
        """Test date between with a bad upper bound becomes equality."""
        parsed = parse_filter(_filter("date2", "date", "between", "2024-05-01", "soon"))

        assert parsed == DateFilter(TagSlot.DATE2, DateOperator.EQ, date(2024, 5, 1))

    def test_boolean_coercion(self):
        """Test only true or the string 'true' mean true."""
        assert parse_filter(_filter("boolean1", "boolean", "eq", True)).value is True
        assert parse_filter(_filter("boolean1", "boolean", "eq", "true")).value is True
        assert parse_filter(_filter("boolean1", "boolean", "eq", "yes")).value is False
        assert parse_filter(_filter("boolean1", "boolean", "eq", 1)).value is False

    def test_boolean_neq(self):
        """Test boolean inequality is kept."""
        parsed = parse_filter(_filter("boolean3", "boolean", "neq", False))

        assert parsed == BooleanFilter(TagSlot.BOOLEAN3, "neq", False)


class TestBuildTagFilterConditions:
    """Tests for combining filters into SQL predicates."""

    def test_empty_filters(self):
        """Test no filters yields no predicates."""
        assert build_tag_filter_conditions([]) == []

    def test_different_slots_are_separate_predicates(self):
        """Test each slot yields its own predicate, to be AND-ed."""
        conditions = build_tag_filter_conditions(
            [
                _filter("tag1", "text", "eq", "report"),
                _filter("number1", "number", "gt", 5),
            ]
        )

        assert len(conditions) == 2
        assert "lower(embeddings.tag1) = 'report'" in _pg_sql(conditions[0])
        assert "embeddings.number1 >" in _pg_sql(conditions[1])

    def test_same_slot_filters_are_or_grouped(self):
        """Test filters on one slot are combined with OR."""
        conditions = build_tag_filter_conditions(
            [
                _filter("tag1", "text", "eq", "report"),
                _filter("number1", "number", "gt", 5),
                _filter("tag1", "text", "eq", "memo"),
            ]
        )

        assert len(conditions) == 2
        sql = _pg_sql(conditions[0])
        assert " OR " in sql
        assert "'report'" in sql
        assert "'memo'" in sql

    def test_text_comparison_is_case_insensitive(self):
        """Test both column and value are lower-cased."""
        (condition,) = build_tag_filter_conditions([_filter("tag3", "text", "contains", "MiXeD")])

        sql = _pg_sql(condition)
        assert "lower(embeddings.tag3) LIKE" in sql
        assert "mixed" in sql
        assert "MiXeD" not in sql

    def test_text_wildcards_are_escaped(self):
        """Test LIKE metacharacters in values match literally."""
        (condition,) = build_tag_filter_conditions([_filter("tag1", "text", "contains", "snake_case")])

        sql = _pg_sql(condition)
        assert "ESCAPE '/'" in sql
        assert "snake/_case" in sql

    def test_not_contains_negates(self):
        """Test not_contains compiles to NOT LIKE."""
        (condition,) = build_tag_filter_conditions([_filter("tag1", "text", "not_contains", "draft")])

        assert "NOT LIKE" in _pg_sql(condition)

    def test_date_compares_calendar_date(self):
        """Test date filters compare the date part of the column."""
        (condition,) = build_tag_filter_conditions(
            [_filter("date1", "date", "between", "2024-01-01", "2024-12-31")]
        )

        sql = str(condition.compile(dialect=postgresql.dialect()))
        assert "CAST(embeddings.date1 AS DATE) BETWEEN" in sql

    def test_invalid_filters_are_dropped_and_valid_ones_kept(self):
        """Test malformed filters do not invalidate the rest."""
        conditions = build_tag_filter_conditions(
            [
                _filter("tag1", "text", "eq", "report"),
                _filter("date1", "date", "eq", "yesterday"),
                _filter("tag99", "text", "eq", "x"),
                {"fieldType": "text"},
            ]
        )

        assert len(conditions) == 1
        assert "embeddings.tag1" in _pg_sql(conditions[0])

    def test_dict_filters_are_validated(self):
        """Test raw dicts are accepted alongside models."""
        conditions = build_tag_filter_conditions(
            [{"tagSlot": "boolean2", "fieldType": "boolean", "value": "true"}]
        )

        assert len(conditions) == 1
        sql = _pg_sql(conditions[0])
        assert "embeddings.boolean2 =" in sql
        assert "true" in sql.lower()
