import logging
from decimal import Decimal, InvalidOperation
from typing import Optional

logger = logging.getLogger(__name__)

# Longest prefixes first so ">=" is never read as ">"
_OPERATORS = (
    (">=", lambda value, threshold: value >= threshold),
    ("<=", lambda value, threshold: value <= threshold),
    ("==", lambda value, threshold: value == threshold),
    (">", lambda value, threshold: value > threshold),
    ("<", lambda value, threshold: value < threshold),
)


def _parse_decimal(text: str) -> Optional[Decimal]:
    try:
        value = Decimal(text.strip())
    except (InvalidOperation, ValueError):
        return None
    if not value.is_finite():
        return None
    return value


def evaluate_threshold(criteria: Optional[str], output: Optional[str]) -> Optional[bool]:
    """Judges check output against a textual threshold criteria.

    Supported criteria are numeric comparisons (">=80", "<5", "==0", ...) applied
    when the whole trimmed output is a number, and the named predicates
    "not_empty" / "empty".

    Args:
        criteria: The threshold criteria of the check definition.
        output: Raw output of a successful engine execution.

    Returns:
        True or False for a definite verdict, None when the criteria does not
        apply (no criteria, unparseable threshold, unknown predicate).
    """
    try:
        if not criteria or not criteria.strip():
            return None
        output = output or ""
        criteria = criteria.strip()

        numeric_value = _parse_decimal(output)
        if numeric_value is not None:
            for prefix, compare in _OPERATORS:
                if criteria.startswith(prefix):
                    threshold = _parse_decimal(criteria[len(prefix):])
                    if threshold is None:
                        return None
                    return compare(numeric_value, threshold)

        lowered = criteria.lower()
        if lowered == "not_empty":
            return bool(output.strip())
        if lowered == "empty":
            return not output.strip()
        return None
    except Exception as e:
        logger.warning(f"Failed to evaluate threshold '{criteria}': {e}")
        return None
