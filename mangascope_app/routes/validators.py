"""Lightweight request validation helpers."""

from typing import Any, Dict, List, Optional, Sequence, Tuple

from werkzeug.datastructures import MultiDict


Rule = Tuple[str, type, Optional[int]]

MAX_LIMIT = 100
DEFAULT_LIMIT = 20


class ValidationError(ValueError):
    """Request shape problem; the route answers 400 with this message."""


def validate_fields(payload: Dict[str, Any], rules: List[Rule]) -> Optional[str]:
    """
    Validate optional fields' types and max length.

    Args:
        payload: Incoming JSON dict.
        rules: List of (field, type, max_length or None).

    Returns:
        None if valid, or error message string.
    """
    for field, expected_type, max_len in rules:
        if field not in payload or payload.get(field) is None:
            continue
        value = payload.get(field)
        if not isinstance(value, expected_type):
            return f"Field '{field}' must be {expected_type.__name__}"
        if max_len is not None and len(str(value)) > max_len:
            return f"Field '{field}' exceeds max length {max_len}"
    return None


def sanitize_string(value: str, max_length: int = 500, allow_newlines: bool = False) -> str:
    """
    Sanitize a string by removing control characters and limiting length.

    Args:
        value: String to sanitize
        max_length: Maximum allowed length
        allow_newlines: Whether to allow newlines

    Returns:
        Sanitized string
    """
    if not isinstance(value, str):
        return ""

    # Remove control characters (except newlines if allowed)
    if allow_newlines:
        result = ''.join(c for c in value if c >= ' ' or c in '\n\r\t')
    else:
        result = ''.join(c for c in value if c >= ' ')

    # Limit length
    return result[:max_length]


def get_list_arg(args: MultiDict, *names: str) -> List[str]:
    """
    Collect a list parameter given as `key[]=a&key[]=b`, `key=a&key=b` or
    `key=a,b`, under any of the given names. Order kept, duplicates dropped.
    """
    values: List[str] = []
    for name in names:
        for raw in args.getlist(f"{name}[]") + args.getlist(name):
            for part in str(raw).split(','):
                part = sanitize_string(part.strip(), 100)
                if part and part not in values:
                    values.append(part)
    return values


def parse_int_arg(args: MultiDict, name: str, default: Optional[int] = None,
                  minimum: Optional[int] = None) -> Optional[int]:
    raw = args.get(name)
    if raw is None or str(raw).strip() == '':
        return default
    try:
        value = int(raw)
    except (TypeError, ValueError):
        raise ValidationError(f"'{name}' must be an integer")
    if minimum is not None and value < minimum:
        raise ValidationError(f"'{name}' must be >= {minimum}")
    return value


def validate_choice(value: Optional[str], name: str, choices: Sequence[str]) -> Optional[str]:
    if value is None or value == '':
        return None
    if value not in choices:
        raise ValidationError(f"'{name}' must be one of: {', '.join(choices)}")
    return value


def validate_choices(values: List[str], name: str, choices: Sequence[str]) -> List[str]:
    invalid = [v for v in values if v not in choices]
    if invalid:
        raise ValidationError(f"Invalid {name}: {', '.join(invalid)}")
    return values


def validate_pagination(limit: Optional[int], offset: Optional[int]) -> Tuple[int, int]:
    """Clamp limit to 1..MAX_LIMIT (default DEFAULT_LIMIT); offset >= 0."""
    limit = DEFAULT_LIMIT if limit is None else limit
    limit = max(1, min(limit, MAX_LIMIT))
    offset = max(0, offset or 0)
    return limit, offset
