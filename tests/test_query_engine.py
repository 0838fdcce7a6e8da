import math
from datetime import datetime, timedelta, timezone

import bson
import pytest
from bson import ObjectId

from app.schemas.query import QueryTemplate
from app.services import query_engine
from app.services.query_executor import to_jsonable


def make_template(parameters, query, **extra):
    return QueryTemplate.model_validate(
        {"name": "sample", "collection": "users", "query": query, "parameters": parameters, **extra}
    )


@pytest.fixture
def age_template():
    return make_template(
        [
            {"name": "age", "type": "number", "validation": {"min": 13, "max": 120}},
        ],
        {"age": {"$gte": "{{age}}"}},
    )


# --- validate_parameters ---


def test_missing_required_parameter(find_by_uni_template):
    errors = query_engine.validate_parameters(find_by_uni_template, {})
    assert errors == ["Required parameter 'uni' is missing"]


def test_valid_parameters_produce_no_errors(find_by_uni_template):
    assert query_engine.validate_parameters(find_by_uni_template, {"uni": "Colombo"}) == []


def test_number_above_max(age_template):
    errors = query_engine.validate_parameters(age_template, {"age": 200})
    assert errors == ["Parameter 'age' must be at most 120"]


def test_number_below_min(age_template):
    errors = query_engine.validate_parameters(age_template, {"age": 12})
    assert errors == ["Parameter 'age' must be at least 13"]


@pytest.mark.parametrize("age", [13, 120, 64, "13", 13.0])
def test_range_bounds_are_inclusive(age_template, age):
    assert query_engine.validate_parameters(age_template, {"age": age}) == []


def test_non_numeric_value_skips_range_checks(age_template):
    errors = query_engine.validate_parameters(age_template, {"age": "abc"})
    assert errors == ["Parameter 'age' must be a number"]


def test_invalid_object_id():
    template = make_template([{"name": "id", "type": "objectId"}], {"_id": "{{id}}"})
    errors = query_engine.validate_parameters(template, {"id": "not-an-id"})
    assert errors == ["Parameter 'id' must be a valid ObjectId"]


def test_boolean_requires_real_boolean():
    template = make_template([{"name": "flag", "type": "boolean"}], {"active": "{{flag}}"})
    assert query_engine.validate_parameters(template, {"flag": "true"}) == [
        "Parameter 'flag' must be a boolean"
    ]
    assert query_engine.validate_parameters(template, {"flag": False}) == []


def test_date_must_parse():
    template = make_template([{"name": "since", "type": "date"}], {"createdAt": "{{since}}"})
    assert query_engine.validate_parameters(template, {"since": "2024-01-15"}) == []
    assert query_engine.validate_parameters(template, {"since": "2024-01-15T10:00:00Z"}) == []
    assert query_engine.validate_parameters(template, {"since": "yesterday"}) == [
        "Parameter 'since' must be a valid date"
    ]


def test_enum_membership():
    template = make_template(
        [{"name": "role", "type": "string", "validation": {"enum": ["student", "lecturer"]}}],
        {"role": "{{role}}"},
    )
    assert query_engine.validate_parameters(template, {"role": "student"}) == []
    assert query_engine.validate_parameters(template, {"role": "admin"}) == [
        "Parameter 'role' must be one of: student, lecturer"
    ]


def test_unknown_parameter_reported_once_without_further_checks(find_by_uni_template):
    errors = query_engine.validate_parameters(
        find_by_uni_template, {"uni": "Colombo", "age": "not a number"}
    )
    assert errors == ["Unknown parameter 'age'"]


def test_all_errors_are_collected_in_order():
    template = make_template(
        [
            {"name": "uni", "type": "string", "required": True},
            {"name": "year", "type": "number", "required": True},
            {"name": "age", "type": "number", "validation": {"min": 13, "max": 120}},
        ],
        {"university": "{{uni}}", "year": "{{year}}", "age": "{{age}}"},
    )
    errors = query_engine.validate_parameters(template, {"extra": 1, "age": 5})
    assert errors == [
        "Required parameter 'uni' is missing",
        "Required parameter 'year' is missing",
        "Unknown parameter 'extra'",
        "Parameter 'age' must be at least 13",
    ]


# --- substitute_parameters ---


def test_substitute_string(find_by_uni_template):
    concrete = query_engine.substitute_parameters(find_by_uni_template, {"uni": "Colombo"})
    assert concrete == {"university": "Colombo", "active": True}


def test_substitute_does_not_mutate_template(find_by_uni_template):
    query_engine.substitute_parameters(find_by_uni_template, {"uni": "Colombo"})
    assert find_by_uni_template.query == {"university": "{{uni}}", "active": True}


def test_numeric_string_becomes_number(age_template):
    concrete = query_engine.substitute_parameters(age_template, {"age": "42"})
    assert concrete == {"age": {"$gte": 42}}
    assert isinstance(concrete["age"]["$gte"], int)


def test_no_parameters_leaves_query_unchanged():
    template = make_template([], {"active": True, "tags": ["a", "b"], "nested": {"n": 1}})
    assert query_engine.substitute_parameters(template, {}) == template.query


def test_unresolved_placeholders_are_left_as_text(find_by_uni_template):
    concrete = query_engine.substitute_parameters(find_by_uni_template, {})
    assert concrete["university"] == "{{uni}}"
    assert query_engine.find_placeholders(concrete) == ["uni"]


def test_embedded_placeholder_uses_text():
    template = make_template(
        [{"name": "prefix", "type": "string"}],
        {"name": {"$regex": "^{{prefix}}", "$options": "i"}},
    )
    concrete = query_engine.substitute_parameters(template, {"prefix": "Col"})
    assert concrete == {"name": {"$regex": "^Col", "$options": "i"}}


def test_placeholders_in_lists_and_repeated():
    template = make_template(
        [{"name": "uni", "type": "string"}],
        {"$or": [{"university": "{{uni}}"}, {"formerUniversity": "{{uni}}"}]},
    )
    concrete = query_engine.substitute_parameters(template, {"uni": "Kandy"})
    assert concrete == {"$or": [{"university": "Kandy"}, {"formerUniversity": "Kandy"}]}


def test_typed_coercion():
    template = make_template(
        [
            {"name": "id", "type": "objectId"},
            {"name": "since", "type": "date"},
            {"name": "flag", "type": "boolean"},
        ],
        {"_id": "{{id}}", "createdAt": {"$gte": "{{since}}"}, "active": "{{flag}}"},
    )
    concrete = query_engine.substitute_parameters(
        template,
        {"id": "652f1c2a9d3e4b0012345678", "since": "2024-01-15", "flag": True},
    )
    assert concrete["_id"] == ObjectId("652f1c2a9d3e4b0012345678")
    assert concrete["createdAt"]["$gte"] == datetime(2024, 1, 15, tzinfo=timezone.utc)
    assert concrete["active"] is True


def test_undeclared_placeholders():
    template = make_template(
        [{"name": "uni", "type": "string"}],
        {"university": "{{uni}}", "faculty": "{{faculty}}"},
    )
    assert query_engine.undeclared_placeholders(template) == ["faculty"]


# --- record_execution ---


def test_record_execution_running_average(find_by_uni_template):
    first = query_engine.record_execution(find_by_uni_template, 120)
    assert first.execution_count == 1
    assert first.average_execution_time == 120
    assert first.last_executed is not None

    second = query_engine.record_execution(first, 240)
    assert second.execution_count == 2
    assert second.average_execution_time == 180


def test_record_execution_returns_copy(find_by_uni_template):
    query_engine.record_execution(find_by_uni_template, 50)
    assert find_by_uni_template.execution_count == 0
    assert find_by_uni_template.last_executed is None


def test_record_execution_clamps_negative_elapsed(find_by_uni_template):
    updated = query_engine.record_execution(find_by_uni_template, -5)
    assert updated.average_execution_time == 0


def test_last_executed_never_moves_backward(find_by_uni_template):
    later = datetime(2030, 1, 1, tzinfo=timezone.utc)
    executed = query_engine.record_execution(find_by_uni_template, 10, now=later)
    again = query_engine.record_execution(executed, 10, now=later - timedelta(days=1))
    assert again.last_executed == later


# --- type interpretation ---


@pytest.mark.parametrize(
    "value, expected",
    [("42", 42), (" 3.5 ", 3.5), ("", 0), (None, 0), (True, 1), (7.0, 7), ("1e3", 1000)],
)
def test_as_number(value, expected):
    assert query_engine.as_number(value) == expected


@pytest.mark.parametrize("value", ["abc", float("nan"), [1], {"a": 1}])
def test_as_number_rejects(value):
    assert query_engine.as_number(value) is None


# --- number edges ---

HUGE_NUMBERS = ["1" * 5000, 1e20, "1e400", "-1e400", 10**30, "99999999999999999999"]


@pytest.fixture
def unbounded_template():
    return make_template([{"name": "n", "type": "number"}], {"n": {"$gte": "{{n}}"}})


@pytest.mark.parametrize("value", HUGE_NUMBERS)
def test_huge_numbers_are_valid_numbers(unbounded_template, value):
    assert query_engine.validate_parameters(unbounded_template, {"n": value}) == []


@pytest.mark.parametrize("value", ["1" * 5000, 1e20, "1e400", 10**30])
def test_huge_numbers_fail_range_check(age_template, value):
    errors = query_engine.validate_parameters(age_template, {"age": value})
    assert errors == ["Parameter 'age' must be at most 120"]


@pytest.mark.parametrize("value", HUGE_NUMBERS)
def test_huge_numbers_substitute_to_encodable_values(unbounded_template, value):
    concrete = query_engine.substitute_parameters(unbounded_template, {"n": value})
    assert isinstance(concrete["n"]["$gte"], float)
    bson.encode(concrete)


@pytest.mark.parametrize(
    "value, expected",
    [
        ("9223372036854775807", 9223372036854775807),
        (str(2**63), float(2**63)),
        (1e18, 10**18),
        ("1e400", math.inf),
        ("-1e400", -math.inf),
    ],
)
def test_int64_boundary(value, expected):
    result = query_engine.as_number(value)
    assert result == expected
    assert type(result) is type(expected)


def test_non_finite_numbers_render_as_text():
    assert to_jsonable({"n": math.inf, "m": [-math.inf]}) == {
        "n": "Infinity",
        "m": ["-Infinity"],
    }


# --- date formats ---


@pytest.mark.parametrize(
    "value",
    ["2024-01-15", "2024/01/15", "01/15/2024", "Jan 15 2024", "January 15, 2024", "15 Jan 2024"],
)
def test_common_date_formats(value):
    assert query_engine.as_datetime(value) == datetime(2024, 1, 15, tzinfo=timezone.utc)


@pytest.mark.parametrize("value", ["yesterday", "2024/13/45", "15.01", "   "])
def test_unparseable_dates(value):
    assert query_engine.as_datetime(value) is None


def test_slash_date_substitutes_to_datetime():
    template = make_template([{"name": "since", "type": "date"}], {"createdAt": "{{since}}"})
    assert query_engine.validate_parameters(template, {"since": "2024/01/15"}) == []
    concrete = query_engine.substitute_parameters(template, {"since": "Jan 15 2024"})
    assert concrete["createdAt"] == datetime(2024, 1, 15, tzinfo=timezone.utc)
