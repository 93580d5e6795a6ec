"""
Type conversion between SQLite storage values and PostgreSQL-ready values.

SQLite stores everything in a handful of storage classes and happily accepts
columns without a declared type, so each column is resolved to one of the
closed set of TypeName values and every value is converted to that type's
canonical form:

- integer   -> int
- text      -> str
- decimal   -> float
- binary    -> "\\x" prefixed hex string
- timestamp -> "YYYY-MM-DDTHH:MM:SS.mmmZ" (UTC)
- boolean   -> bool
- json      -> parsed structure (unparsable strings pass through as text)
"""

import json
import re
from datetime import UTC, date, datetime
from typing import Any

from migrations.sqlite_to_postgres.exceptions import ConversionError
from migrations.sqlite_to_postgres.models import TypeName

DETECTION_SAMPLE_SIZE = 100
DETECTION_THRESHOLD = 0.5

# Epoch numbers at or above this are milliseconds (1e11 seconds is year 5138)
EPOCH_MILLISECONDS_THRESHOLD = 1e11

DATE_PATTERN = re.compile(r"^\d{4}-\d{2}-\d{2}")
HEX_PATTERN = re.compile(r"^\\x([0-9a-fA-F]{2})*$")

TRUE_STRINGS = {"true", "1", "yes", "t"}
FALSE_STRINGS = {"false", "0", "no", "f"}

TARGET_SQL_TYPES = {
    TypeName.INTEGER: "INTEGER",
    TypeName.TEXT: "TEXT",
    TypeName.DECIMAL: "DECIMAL",
    TypeName.BINARY: "BYTEA",
    TypeName.TIMESTAMP: "TIMESTAMP",
    TypeName.BOOLEAN: "BOOLEAN",
    TypeName.JSON: "JSONB",
}


def normalize_declared_type(declared: str | None) -> TypeName | None:
    """Map a SQLite declared column type to a TypeName.

    Follows SQLite's affinity rules, extended with the BOOLEAN, DATE/TIME and
    JSON keywords that SQLite itself ignores. Returns None for typeless
    columns and TEXT for anything unrecognised.
    """
    if not declared or not declared.strip():
        return None

    upper = declared.upper()
    if "BOOL" in upper:
        return TypeName.BOOLEAN
    if "JSON" in upper:
        return TypeName.JSON
    if "DATE" in upper or "TIME" in upper:
        return TypeName.TIMESTAMP
    if "INT" in upper:
        return TypeName.INTEGER
    if any(keyword in upper for keyword in ("CHAR", "CLOB", "TEXT")):
        return TypeName.TEXT
    if "BLOB" in upper or "BINARY" in upper:
        return TypeName.BINARY
    if any(keyword in upper for keyword in ("REAL", "FLOA", "DOUB", "DEC", "NUM")):
        return TypeName.DECIMAL
    return TypeName.TEXT


def target_sql_type(type_name: TypeName) -> str:
    return TARGET_SQL_TYPES.get(type_name, "TEXT")


# ---------------------------------------------------------------------------
# Timestamps
# ---------------------------------------------------------------------------


def format_timestamp(value: datetime) -> str:
    """Render a datetime in the canonical UTC form with millisecond precision"""
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    value = value.astimezone(UTC)
    # strftime does not zero pad years below 1000 on every platform
    return (
        f"{value.year:04d}-{value.month:02d}-{value.day:02d}T"
        f"{value.hour:02d}:{value.minute:02d}:{value.second:02d}.{value.microsecond // 1000:03d}Z"
    )


def now_timestamp() -> str:
    return format_timestamp(datetime.now(UTC))


def parse_timestamp(value: Any) -> datetime:
    """Parse a datetime, date, epoch number or ISO-like string into an aware UTC datetime.

    Raises ValueError when the value cannot be interpreted as a point in time.
    """
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime(value.year, value.month, value.day)
    elif isinstance(value, (int, float)) and not isinstance(value, bool):
        seconds = value / 1000 if abs(value) >= EPOCH_MILLISECONDS_THRESHOLD else value
        try:
            parsed = datetime.fromtimestamp(seconds, UTC)
        except (OverflowError, OSError) as e:
            raise ValueError(f"epoch value out of range: {value}") from e
    elif isinstance(value, str):
        candidate = value.strip()
        if not DATE_PATTERN.match(candidate):
            raise ValueError(f"not a date-like string: {value!r}")
        parsed = datetime.fromisoformat(candidate)
    else:
        raise ValueError(f"unsupported timestamp value: {value!r}")

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


# ---------------------------------------------------------------------------
# Conversion
# ---------------------------------------------------------------------------


def _to_integer(value: Any) -> int:
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        if value.is_integer():
            return int(value)
        raise ValueError("number is not integral")
    if isinstance(value, str):
        text = value.strip()
        try:
            return int(text)
        except ValueError:
            number = float(text)
            if number.is_integer():
                return int(number)
            raise ValueError("number is not integral") from None
    raise ValueError(f"unsupported type {type(value).__name__}")


def _to_text(value: Any) -> str:
    if isinstance(value, str):
        return value
    if isinstance(value, (bytes, bytearray, memoryview)):
        return bytes(value).decode("utf-8")
    if isinstance(value, (dict, list)):
        return json.dumps(value)
    if isinstance(value, datetime):
        return format_timestamp(value)
    return str(value)


def _to_decimal(value: Any) -> float:
    if isinstance(value, str):
        return float(value.strip())
    return float(value)


def _to_binary(value: Any) -> str:
    if isinstance(value, (bytes, bytearray, memoryview)):
        return "\\x" + bytes(value).hex()
    if isinstance(value, str):
        if HEX_PATTERN.match(value):
            return value.lower()
        return "\\x" + value.encode("utf-8").hex()
    raise ValueError(f"unsupported type {type(value).__name__}")


def _to_timestamp(value: Any) -> str | None:
    if isinstance(value, str) and not value.strip():
        return None
    return format_timestamp(parse_timestamp(value))


def _to_boolean(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)) and value in (0, 1):
        return bool(value)
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in TRUE_STRINGS:
            return True
        if lowered in FALSE_STRINGS:
            return False
    raise ValueError("expected 0/1 or true/false")


def _to_json(value: Any) -> Any:
    if isinstance(value, str):
        try:
            return json.loads(value)
        except json.JSONDecodeError:
            return value
    return value


CONVERTERS = {
    TypeName.INTEGER: _to_integer,
    TypeName.TEXT: _to_text,
    TypeName.DECIMAL: _to_decimal,
    TypeName.BINARY: _to_binary,
    TypeName.TIMESTAMP: _to_timestamp,
    TypeName.BOOLEAN: _to_boolean,
    TypeName.JSON: _to_json,
}


def convert(value: Any, type_name: TypeName | str, field: str | None = None, table: str | None = None) -> Any:
    """Convert a SQLite value to the canonical form of ``type_name``.

    None always converts to None. Unknown type names are treated as text.
    Raises ConversionError naming the table and field on failure.
    """
    if value is None:
        return None

    try:
        type_name = TypeName(type_name)
    except ValueError:
        type_name = TypeName.TEXT

    try:
        return CONVERTERS[type_name](value)
    except (ValueError, TypeError, UnicodeDecodeError) as e:
        raise ConversionError(value, type_name, field=field, table=table, reason=str(e)) from e


def validate(value: Any, type_name: TypeName | str) -> bool:
    """Check that a value is already in the canonical form for ``type_name``"""
    if value is None:
        return True

    match TypeName(type_name):
        case TypeName.INTEGER:
            return isinstance(value, int) and not isinstance(value, bool)
        case TypeName.TEXT:
            return isinstance(value, str)
        case TypeName.DECIMAL:
            return isinstance(value, (int, float)) and not isinstance(value, bool)
        case TypeName.BINARY:
            return isinstance(value, str) and bool(HEX_PATTERN.match(value))
        case TypeName.TIMESTAMP:
            if not isinstance(value, str):
                return False
            try:
                parse_timestamp(value)
            except ValueError:
                return False
            return True
        case TypeName.BOOLEAN:
            return isinstance(value, bool)
        case TypeName.JSON:
            try:
                json.dumps(value)
            except (TypeError, ValueError):
                return False
            return True
    return False


# ---------------------------------------------------------------------------
# Detection
# ---------------------------------------------------------------------------


def _looks_like_json(value: Any) -> bool:
    if isinstance(value, (dict, list)):
        return True
    if not isinstance(value, str):
        return False
    text = value.strip()
    if not text or text[0] not in "{[":
        return False
    try:
        return isinstance(json.loads(text), (dict, list))
    except json.JSONDecodeError:
        return False


def is_key_column(name: str) -> bool:
    return name == "id" or name.endswith("_id")


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _is_date_string(value: Any) -> bool:
    """A string that starts like a date and parses as one ("2024-01-11-match-report" does not)"""
    if not isinstance(value, str) or not DATE_PATTERN.match(value):
        return False
    try:
        parse_timestamp(value)
    except ValueError:
        return False
    return True


def detect_type(values: list[Any], allow_boolean: bool = True) -> TypeName:
    """Infer a TypeName from sample values.

    Only the first 100 non-null values are inspected. JSON payloads and
    date-like strings win on a simple majority; the remaining rules need every
    sampled value to agree. ``allow_boolean`` disables the 0/1 heuristic for
    key columns, where a single row with id 1 would otherwise look boolean.
    """
    sample = [value for value in values if value is not None][:DETECTION_SAMPLE_SIZE]
    if not sample:
        return TypeName.TEXT

    threshold = len(sample) * DETECTION_THRESHOLD
    if sum(1 for value in sample if _looks_like_json(value)) > threshold:
        return TypeName.JSON
    if sum(1 for value in sample if _is_date_string(value)) > threshold:
        return TypeName.TIMESTAMP

    if allow_boolean:
        if all(isinstance(value, bool) for value in sample):
            return TypeName.BOOLEAN
        if all(_is_number(value) and value in (0, 1) for value in sample):
            return TypeName.BOOLEAN

    if all(isinstance(value, int) and not isinstance(value, bool) for value in sample):
        return TypeName.INTEGER
    if all(_is_number(value) for value in sample):
        return TypeName.DECIMAL
    return TypeName.TEXT
