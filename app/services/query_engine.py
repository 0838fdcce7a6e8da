"""
Dynamic query engine.

Pure functions over a `QueryTemplate`:

- `validate_parameters` checks caller arguments against the declared
  parameter schema and returns every error it finds.
- `substitute_parameters` walks the template's query document and replaces
  `{{name}}` placeholders with values coerced to the declared type.
- `record_execution` folds one observed execution time into the template's
  statistics.

None of these touch the database; persistence is the registry's job.
"""

import logging
import math
import re
from datetime import date, datetime, timezone
from typing import Any, Dict, List, Optional, Union

from bson import ObjectId

from app.schemas.query import ParameterSchema, ParameterType, QueryTemplate

logger = logging.getLogger(__name__)

PLACEHOLDER_PATTERN = re.compile(r"\{\{([^{}]+)\}\}")
OBJECT_ID_PATTERN = re.compile(r"^[0-9a-fA-F]{24}$")
NUMERIC_PATTERN = re.compile(r"^[+-]?(\d+\.?\d*|\.\d+)([eE][+-]?\d+)?$")

Number = Union[int, float]

# BSON stores integers in at most 8 bytes; anything wider stays a double
INT64_MIN = -(2**63)
INT64_MAX = 2**63 - 1
MAX_INT64_DIGITS = 19

# Accepted besides ISO 8601
DATE_FORMATS = (
    "%Y/%m/%d",
    "%Y/%m/%d %H:%M:%S",
    "%m/%d/%Y",
    "%b %d %Y",
    "%B %d %Y",
    "%b %d, %Y",
    "%B %d, %Y",
    "%d %b %Y",
    "%d %B %Y",
    "%a %b %d %Y",
)


# --- Type interpretation ---


def _normalize_number(value: float) -> Number:
    if math.isfinite(value) and value == int(value) and INT64_MIN <= value <= INT64_MAX:
        return int(value)
    return value


def _narrow_int(value: int) -> Number:
    if INT64_MIN <= value <= INT64_MAX:
        return value
    try:
        return float(value)
    except OverflowError:
        return math.inf if value > 0 else -math.inf


def as_number(value: Any) -> Optional[Number]:
    """
    Interpret `value` as a number, or return None when it is not one.

    Numeric strings (surrounding whitespace ignored) count as numbers, an
    empty string and None count as 0, and booleans count as 0/1. NaN is
    never a number. Integers outside the 64-bit range become floats, and
    values too large for a float become infinity.
    """
    if value is None:
        return 0
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, int):
        return _narrow_int(value)
    if isinstance(value, float):
        return None if math.isnan(value) else _normalize_number(value)
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return 0
        if text in ("Infinity", "+Infinity", "-Infinity"):
            return float(text.replace("Infinity", "inf"))
        if NUMERIC_PATTERN.match(text):
            digits = text.lstrip("+-")
            if digits.isdigit() and len(digits) <= MAX_INT64_DIGITS:
                return _narrow_int(int(text))
            return _normalize_number(float(text))
    return None


def _parse_date_text(text: str) -> Optional[datetime]:
    try:
        return datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        pass
    for fmt in DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt)
        except ValueError:
            continue
    return None


def as_datetime(value: Any) -> Optional[datetime]:
    """Parse `value` into a timezone-aware datetime, or None if it is not a date."""
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime(value.year, value.month, value.day)
    elif isinstance(value, str) and value.strip():
        parsed = _parse_date_text(value.strip())
        if parsed is None:
            return None
    else:
        return None

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def is_object_id(value: Any) -> bool:
    """True for ObjectId instances and 24-character hexadecimal strings."""
    if isinstance(value, ObjectId):
        return True
    return isinstance(value, str) and bool(OBJECT_ID_PATTERN.match(value))


def _format_bound(bound: Number) -> str:
    return str(_normalize_number(bound) if isinstance(bound, float) else bound)


def _format_enum(values: List[Any]) -> str:
    return ", ".join(str(v) for v in values)


# --- Validation ---


def _check_type(parameter: ParameterSchema, value: Any) -> Optional[str]:
    name = parameter.name

    if parameter.type == ParameterType.NUMBER and as_number(value) is None:
        return f"Parameter '{name}' must be a number"
    if parameter.type == ParameterType.BOOLEAN and not isinstance(value, bool):
        return f"Parameter '{name}' must be a boolean"
    if parameter.type == ParameterType.DATE and as_datetime(value) is None:
        return f"Parameter '{name}' must be a valid date"
    if parameter.type == ParameterType.OBJECT_ID and not is_object_id(value):
        return f"Parameter '{name}' must be a valid ObjectId"
    return None


def _check_range(parameter: ParameterSchema, value: Any) -> List[str]:
    errors = []
    number = as_number(value)
    rules = parameter.validation

    if number is None or rules is None:
        return errors

    if rules.min is not None and number < rules.min:
        errors.append(
            f"Parameter '{parameter.name}' must be at least {_format_bound(rules.min)}"
        )
    if rules.max is not None and number > rules.max:
        errors.append(
            f"Parameter '{parameter.name}' must be at most {_format_bound(rules.max)}"
        )
    return errors


def validate_parameters(
    template: QueryTemplate, provided_params: Dict[str, Any]
) -> List[str]:
    """
    Validate caller-supplied parameters against the template's schema.

    All applicable errors are collected; an empty list means the parameters
    are acceptable. Never raises.

    Order of reporting:
        1. missing required parameters, in declaration order
        2. per provided key, in the caller's order: unknown parameter, or
           type error, range errors and enum error
    """
    errors: List[str] = []

    for parameter in template.parameters:
        if parameter.required and parameter.name not in provided_params:
            errors.append(f"Required parameter '{parameter.name}' is missing")

    for name, value in provided_params.items():
        parameter = template.get_parameter(name)

        if parameter is None:
            errors.append(f"Unknown parameter '{name}'")
            continue

        type_error = _check_type(parameter, value)
        if type_error:
            errors.append(type_error)

        if parameter.type == ParameterType.NUMBER:
            errors.extend(_check_range(parameter, value))

        rules = parameter.validation
        if rules is not None and rules.enum is not None and value not in rules.enum:
            errors.append(
                f"Parameter '{name}' must be one of: {_format_enum(rules.enum)}"
            )

    return errors


# --- Coercion & substitution ---


def coerce_value(parameter: Optional[ParameterSchema], value: Any) -> Any:
    """
    Convert a raw value to the native representation of the parameter's type.

    Values that cannot be converted become None, except for ObjectIds, where
    `bson.errors.InvalidId` propagates. Without a parameter the raw value is
    returned untouched.
    """
    if parameter is None:
        return value

    if parameter.type == ParameterType.NUMBER:
        return as_number(value)
    if parameter.type == ParameterType.BOOLEAN:
        return bool(value)
    if parameter.type == ParameterType.DATE:
        return as_datetime(value)
    if parameter.type == ParameterType.OBJECT_ID:
        return value if isinstance(value, ObjectId) else ObjectId(value)
    return value


def _as_text(value: Any) -> str:
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return "null"
    if isinstance(value, datetime):
        return value.isoformat()
    return str(value)


def _substitute_node(node: Any, replacements: Dict[str, Any]) -> Any:
    if isinstance(node, dict):
        return {key: _substitute_node(item, replacements) for key, item in node.items()}
    if isinstance(node, list):
        return [_substitute_node(item, replacements) for item in node]
    if not isinstance(node, str):
        return node

    whole = PLACEHOLDER_PATTERN.fullmatch(node)
    if whole and whole.group(1) in replacements:
        return replacements[whole.group(1)]

    def _replace(match: "re.Match[str]") -> str:
        name = match.group(1)
        if name in replacements:
            return _as_text(replacements[name])
        return match.group(0)

    return PLACEHOLDER_PATTERN.sub(_replace, node)


def substitute_parameters(
    template: QueryTemplate, provided_params: Dict[str, Any]
) -> Dict[str, Any]:
    """
    Build a concrete query document from the template.

    Every occurrence of `{{key}}` for a provided key is replaced. A string
    that is exactly one placeholder becomes the coerced value itself; a
    placeholder embedded in a longer string is replaced by the value's text.
    Placeholders without a provided value are left as they are. Parameters
    are not validated here.
    """
    replacements = {
        name: coerce_value(template.get_parameter(name), value)
        for name, value in provided_params.items()
    }
    return _substitute_node(template.query, replacements)


def find_placeholders(document: Any) -> List[str]:
    """Return the distinct placeholder names found in a document, in order of appearance."""
    found: List[str] = []

    def _walk(node: Any):
        if isinstance(node, dict):
            for item in node.values():
                _walk(item)
        elif isinstance(node, list):
            for item in node:
                _walk(item)
        elif isinstance(node, str):
            for name in PLACEHOLDER_PATTERN.findall(node):
                if name not in found:
                    found.append(name)

    _walk(document)
    return found


def undeclared_placeholders(template: QueryTemplate) -> List[str]:
    """Placeholders in the template's query that no parameter declares."""
    declared = {p.name for p in template.parameters}
    return [name for name in find_placeholders(template.query) if name not in declared]


# --- Execution statistics ---


def next_average(previous_average: float, elapsed_ms: float) -> float:
    """
    Fold one sample into the running average.

    The first sample is taken as-is; later samples are averaged with the
    previous value, so recent executions weigh more than a true mean would.
    """
    if previous_average == 0:
        return elapsed_ms
    return (previous_average + elapsed_ms) / 2


def record_execution(
    template: QueryTemplate, elapsed_ms: float, now: Optional[datetime] = None
) -> QueryTemplate:
    """Return a copy of the template with one more successful execution recorded."""
    elapsed_ms = max(float(elapsed_ms), 0.0)
    now = now or datetime.now(timezone.utc)

    last_executed = template.last_executed
    if last_executed is not None and last_executed.tzinfo is None:
        last_executed = last_executed.replace(tzinfo=timezone.utc)
    if last_executed is not None and last_executed > now:
        now = last_executed

    updated = template.model_copy(
        update={
            "execution_count": template.execution_count + 1,
            "last_executed": now,
            "average_execution_time": next_average(
                template.average_execution_time, elapsed_ms
            ),
        }
    )
    logger.debug(
        f"📈 Recorded execution of '{template.name}': "
        f"{elapsed_ms:.2f}ms (count={updated.execution_count}, "
        f"avg={updated.average_execution_time:.2f}ms)"
    )
    return updated
