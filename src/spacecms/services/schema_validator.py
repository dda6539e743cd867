"""Validation of content blocks against component field schemas."""

from __future__ import annotations

import json
import math
import re
from datetime import date, datetime
from typing import Any, Callable, Dict, List, Mapping, Optional
from urllib.parse import urlparse

from dateutil import parser as date_parser

from spacecms.content import COMPONENT_KEY, UID_KEY, is_block

FIELD_TYPES = (
    "text",
    "textarea",
    "markdown",
    "richtext",
    "number",
    "boolean",
    "date",
    "datetime",
    "select",
    "multiselect",
    "image",
    "file",
    "asset",
    "link",
    "email",
    "url",
    "color",
    "json",
    "table",
    "blocks",
    "story",
    "component",
)

TEXT_TYPES = ("text", "textarea", "markdown", "richtext")

BOOLEAN_STRINGS = ("1", "0", "true", "false")

URL_SCHEMES = ("http", "https", "ftp", "ftps", "sftp", "ws", "wss")

RELATIVE_DATES = ("now", "today", "tomorrow", "yesterday")

CONDITION_OPERATORS = (
    "equals", "==", "not_equals", "!=",
    "contains", "not_contains", "in", "not_in",
    "greater_than", ">", "less_than", "<",
    "greater_equal", ">=", "less_equal", "<=",
    "empty", "not_empty", "is_true", "is_false",
)

OPERATORS_WITHOUT_VALUE = ("empty", "not_empty", "is_true", "is_false")

EMAIL_RE = re.compile(
    r"^[A-Za-z0-9!#$%&'*+/=?^_`{|}~-]+(\.[A-Za-z0-9!#$%&'*+/=?^_`{|}~-]+)*"
    r"@([A-Za-z0-9]([A-Za-z0-9-]{0,61}[A-Za-z0-9])?\.)+[A-Za-z]{2,}$"
)

COLOR_RE = re.compile(r"^#(?:[0-9a-fA-F]{3}|[0-9a-fA-F]{6}|[0-9a-fA-F]{8})$")

ComponentResolver = Callable[[str], Optional[Mapping[str, Any]]]


def _is_empty(value: Any) -> bool:
    return value is None or value == "" or (isinstance(value, (list, dict)) and len(value) == 0)


def _to_number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        try:
            number = float(value.strip())
        except ValueError:
            return None
    else:
        return None
    if math.isnan(number) or math.isinf(number):
        return None
    return number


def _format_bound(bound: Any) -> str:
    number = _to_number(bound)
    if number is not None and number.is_integer():
        return str(int(number))
    return str(bound)


def _option_values(options: Any) -> List[Any]:
    """Options may be plain values or ``{"name": ..., "value": ...}`` entries."""
    values = []
    for option in options or []:
        if isinstance(option, Mapping):
            values.append(option.get("value"))
        else:
            values.append(option)
    return values


def normalize_schema(schema: Any) -> Dict[str, Dict[str, Any]]:
    """Accept a field map or a list of ``{"key": ...}`` entries."""
    if not schema:
        return {}
    if isinstance(schema, Mapping):
        return {name: dict(config) for name, config in schema.items() if isinstance(config, Mapping)}
    if isinstance(schema, list):
        return {
            entry["key"]: {k: v for k, v in entry.items() if k != "key"}
            for entry in schema
            if isinstance(entry, Mapping) and entry.get("key")
        }
    return {}


class SchemaValidator:
    """Pure validators. Every method returns errors instead of raising."""

    # -- field values -------------------------------------------------

    @staticmethod
    def validate(schema: Any, data: Mapping[str, Any]) -> Dict[str, str]:
        """Validate ``data`` against a component schema.

        Returns a flat ``field -> message`` map; empty means valid. A missing
        or empty schema is permissive.
        """
        fields = normalize_schema(schema)
        if not fields:
            return {}

        data = data or {}
        errors: Dict[str, str] = {}

        for name, config in fields.items():
            if not SchemaValidator.is_field_visible(config, data):
                continue

            value = data.get(name)
            if _is_empty(value):
                if config.get("required"):
                    errors[name] = f"Field '{name}' is required"
                continue

            error = SchemaValidator.validate_value(value, config)
            if error:
                errors[name] = error

        return errors

    @staticmethod
    def validate_value(value: Any, config: Mapping[str, Any]) -> Optional[str]:
        """First failing rule for one non-empty value, or None."""
        field_type = config.get("type", "text")

        if field_type in TEXT_TYPES:
            return _validate_text(value, config)
        if field_type == "number":
            return _validate_number(value, config)
        if field_type == "boolean":
            return _validate_boolean(value)
        if field_type == "email":
            return _validate_email(value)
        if field_type == "url":
            return _validate_url(value)
        if field_type in ("date", "datetime"):
            return _validate_date(value)
        if field_type == "select":
            return _validate_select(value, config)
        if field_type == "multiselect":
            return _validate_multiselect(value, config)
        if field_type == "json":
            return _validate_json(value)
        if field_type == "color":
            if not isinstance(value, str) or not COLOR_RE.match(value):
                return "Value must be a hex color"
            return None
        if field_type == "blocks":
            return _validate_blocks_field(value, config)
        if field_type == "table":
            if not isinstance(value, Mapping):
                return "Value must be a table object"
            return None
        if field_type in ("image", "file", "asset", "link"):
            if not isinstance(value, (str, Mapping)):
                return "Value must be a reference object or string"
            return None
        if field_type == "story":
            if not isinstance(value, str):
                return "Value must be a story uuid"
            return None
        return None

    # -- conditional visibility ------------------------------------------

    @staticmethod
    def is_field_visible(config: Mapping[str, Any], data: Mapping[str, Any]) -> bool:
        conditions = config.get("conditions")
        if not isinstance(conditions, list):
            return True
        return all(
            _evaluate_condition(condition, data)
            for condition in conditions
            if isinstance(condition, Mapping)
        )

    # -- schema definitions ------------------------------------------------

    @staticmethod
    def validate_schema(schema: Any) -> Dict[str, str]:
        """Check a component schema definition. Returns ``field -> message``."""
        if not schema:
            return {"schema": "Schema cannot be empty"}
        if not isinstance(schema, (Mapping, list)):
            return {"schema": "Schema must be a field map"}

        errors: Dict[str, str] = {}
        if isinstance(schema, Mapping):
            entries = list(schema.items())
        else:
            entries = [(entry.get("key") if isinstance(entry, Mapping) else None, entry) for entry in schema]

        for name, config in entries:
            if not name:
                errors["schema"] = "Every field needs a key"
                continue
            error = SchemaValidator.validate_field_schema(config)
            if error:
                errors[name] = error
        return errors

    @staticmethod
    def validate_field_schema(config: Any) -> Optional[str]:
        if not isinstance(config, Mapping):
            return "Field configuration must be an object"

        field_type = config.get("type")
        if not field_type:
            return "Field type is required"
        if field_type not in FIELD_TYPES:
            return f"Invalid field type '{field_type}'"

        if "required" in config and not isinstance(config["required"], bool):
            return "required must be a boolean"

        if field_type in TEXT_TYPES:
            for key in ("min_length", "max_length"):
                if key in config and _to_number(config[key]) is None:
                    return f"{key} must be numeric"
            if "regex" in config:
                try:
                    re.compile(config["regex"])
                except (re.error, TypeError):
                    return "regex pattern is invalid"

        if field_type == "number":
            for key in ("min", "max", "step"):
                if key in config and _to_number(config[key]) is None:
                    return f"{key} must be numeric"

        if field_type in ("select", "multiselect"):
            options = config.get("options")
            if not isinstance(options, list):
                return "options array is required for select fields"
            if not options:
                return "options array cannot be empty"

        if field_type == "blocks":
            if "component_whitelist" in config and not isinstance(config["component_whitelist"], list):
                return "component_whitelist must be an array"
            if "maximum" in config and _to_number(config["maximum"]) is None:
                return "maximum must be numeric"

        if field_type == "table" and not isinstance(config.get("columns"), list):
            return "columns array is required for table fields"

        conditions = config.get("conditions")
        if conditions is not None:
            return _validate_conditions(conditions)

        return None

    # -- whole content trees -----------------------------------------------

    @staticmethod
    def validate_content(content: Optional[Mapping[str, Any]], resolve_component: ComponentResolver) -> Dict[str, str]:
        """Validate every block in a story content tree.

        ``resolve_component`` maps a component name to its schema (or None,
        which skips field checks for that block). Errors are keyed by the
        dotted path of the offending block or field.
        """
        if not content:
            return {}
        if not isinstance(content, Mapping):
            return {"content": "Content must be an object"}

        body = content.get("body")
        if body is not None and not isinstance(body, list):
            return {"body": "Content body must be an array"}

        errors: Dict[str, str] = {}
        seen_uids: Dict[str, str] = {}
        for key, value in content.items():
            if isinstance(value, list):
                _validate_block_list(value, key, resolve_component, errors, seen_uids)
        return errors


def _validate_block_list(
    blocks: List[Any],
    path: str,
    resolve_component: ComponentResolver,
    errors: Dict[str, str],
    seen_uids: Dict[str, str],
) -> None:
    for index, block in enumerate(blocks):
        block_path = f"{path}.{index}"
        if not isinstance(block, Mapping):
            # Plain value lists (tags, multiselect values) are not block containers.
            if index == 0:
                return
            errors[block_path] = "Each content block must be an object"
            continue
        if COMPONENT_KEY not in block:
            errors[block_path] = "Each content block must specify a component"
            continue
        uid = block.get(UID_KEY)
        if not isinstance(uid, str) or not uid:
            errors[f"{block_path}.{UID_KEY}"] = "Each content block must have a unique _uid"
            continue
        if uid in seen_uids:
            errors[f"{block_path}.{UID_KEY}"] = f"Duplicate _uid '{uid}' (also at {seen_uids[uid]})"
            continue
        seen_uids[uid] = block_path

        schema = resolve_component(block[COMPONENT_KEY])
        for field_name, message in SchemaValidator.validate(schema, block).items():
            errors[f"{block_path}.{field_name}"] = message

        for key, value in block.items():
            if isinstance(value, list) and value and is_block(value[0]):
                _validate_block_list(value, f"{block_path}.{key}", resolve_component, errors, seen_uids)


def _validate_text(value: Any, config: Mapping[str, Any]) -> Optional[str]:
    if not isinstance(value, str):
        return "Value must be a string"
    min_length = _to_number(config.get("min_length"))
    if min_length is not None and len(value) < min_length:
        return f"Value must be at least {_format_bound(min_length)} characters"
    max_length = _to_number(config.get("max_length"))
    if max_length is not None and len(value) > max_length:
        return f"Value must not exceed {_format_bound(max_length)} characters"
    regex = config.get("regex")
    if regex and not re.search(regex, value):
        return "Value does not match the required format"
    return None


def _validate_number(value: Any, config: Mapping[str, Any]) -> Optional[str]:
    number = _to_number(value)
    if number is None:
        return "Value must be a number"
    minimum = _to_number(config.get("min"))
    if minimum is not None and number < minimum:
        return f"Value must be at least {_format_bound(minimum)}"
    maximum = _to_number(config.get("max"))
    if maximum is not None and number > maximum:
        return f"Value must not exceed {_format_bound(maximum)}"
    return None


def _validate_boolean(value: Any) -> Optional[str]:
    if value is True or value is False:
        return None
    if type(value) is int and value in (0, 1):
        return None
    if isinstance(value, str) and value in BOOLEAN_STRINGS:
        return None
    return "Value must be a boolean"


def _validate_email(value: Any) -> Optional[str]:
    if not isinstance(value, str) or not EMAIL_RE.match(value):
        return "Value must be a valid email address"
    return None


def _validate_url(value: Any) -> Optional[str]:
    if not isinstance(value, str):
        return "Value must be a valid URL"
    try:
        parsed = urlparse(value.strip())
        host = parsed.hostname
    except ValueError:
        return "Value must be a valid URL"
    if parsed.scheme.lower() not in URL_SCHEMES or not host:
        return "Value must be a valid URL"
    return None


def parse_date(value: str) -> Optional[datetime]:
    """Parse ISO 8601, common written formats and a few relative words."""
    text = value.strip()
    if not text:
        return None
    lowered = text.lower()
    if lowered in RELATIVE_DATES:
        today = datetime.combine(date.today(), datetime.min.time())
        offsets = {"tomorrow": 1, "yesterday": -1}
        return datetime.fromordinal(today.toordinal() + offsets.get(lowered, 0))
    try:
        return datetime.fromisoformat(text)
    except ValueError:
        pass
    try:
        return date_parser.parse(text)
    except (ValueError, OverflowError):
        return None


def _validate_date(value: Any) -> Optional[str]:
    if not isinstance(value, str):
        return "Date must be a string"
    if parse_date(value) is None:
        return "Value must be a valid date"
    return None


def _validate_select(value: Any, config: Mapping[str, Any]) -> Optional[str]:
    if not isinstance(value, str):
        return "Value must be one of the allowed options"
    if value not in _option_values(config.get("options")):
        return "Value must be one of the allowed options"
    return None


def _validate_multiselect(value: Any, config: Mapping[str, Any]) -> Optional[str]:
    if not isinstance(value, list):
        return "Value must be an array"
    allowed = _option_values(config.get("options"))
    for item in value:
        if item not in allowed:
            return "All values must be from the allowed options"
    return None


def _validate_json(value: Any) -> Optional[str]:
    if isinstance(value, (Mapping, list)):
        return None
    if not isinstance(value, str):
        return "JSON value must be a string or object"
    try:
        json.loads(value)
    except ValueError:
        return "Value must be valid JSON"
    return None


def _validate_blocks_field(value: Any, config: Mapping[str, Any]) -> Optional[str]:
    if not isinstance(value, list):
        return "Value must be an array of blocks"
    if not all(is_block(item) for item in value):
        return "Every entry must be a block with component and _uid"
    maximum = _to_number(config.get("maximum"))
    if maximum is not None and len(value) > maximum:
        return f"No more than {_format_bound(maximum)} blocks allowed"
    whitelist = config.get("component_whitelist")
    if whitelist:
        for item in value:
            if item[COMPONENT_KEY] not in whitelist:
                return f"Component '{item[COMPONENT_KEY]}' is not allowed here"
    return None


def _validate_conditions(conditions: Any) -> Optional[str]:
    if not isinstance(conditions, list):
        return "conditions must be an array"
    for index, condition in enumerate(conditions):
        if not isinstance(condition, Mapping):
            return f"Condition {index} must be an object"
        if not condition.get("field"):
            return f"Condition {index} must have a field property"
        operator = condition.get("operator")
        if operator not in CONDITION_OPERATORS:
            return f"Condition {index} has invalid operator '{operator}'"
        if operator not in OPERATORS_WITHOUT_VALUE and "value" not in condition:
            return f"Condition {index} must have a value property"
    return None


def _contains(actual: Any, expected: Any) -> bool:
    if isinstance(actual, str):
        return str(expected) in actual
    return isinstance(actual, list) and expected in actual


def _evaluate_condition(condition: Mapping[str, Any], data: Mapping[str, Any]) -> bool:
    field_name = condition.get("field")
    if not field_name:
        return True
    operator = condition.get("operator", "equals")
    expected = condition.get("value")
    actual = data.get(field_name)

    if operator in ("equals", "=="):
        return actual == expected
    if operator in ("not_equals", "!="):
        return actual != expected
    if operator == "contains":
        return _contains(actual, expected)
    if operator == "not_contains":
        return isinstance(actual, (str, list)) and not _contains(actual, expected)
    if operator == "in":
        return isinstance(expected, list) and actual in expected
    if operator == "not_in":
        return isinstance(expected, list) and actual not in expected
    if operator in ("greater_than", ">", "less_than", "<", "greater_equal", ">=", "less_equal", "<="):
        left, right = _to_number(actual), _to_number(expected)
        if left is None or right is None:
            return False
        if operator in ("greater_than", ">"):
            return left > right
        if operator in ("less_than", "<"):
            return left < right
        if operator in ("greater_equal", ">="):
            return left >= right
        return left <= right
    if operator == "empty":
        return _is_empty(actual)
    if operator == "not_empty":
        return not _is_empty(actual)
    if operator == "is_true":
        return actual in (True, 1, "1", "true") and actual is not False
    if operator == "is_false":
        return actual in (False, 0, "0", "false") and actual is not True
    return True
