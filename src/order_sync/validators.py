"""
Input validation for order records.

Records arrive from the scraping collaborator, from user edits, and from
the remote API.  Anything that is to be queued for upload must pass
``validate_order()`` first; a record without a usable business key can
never be matched across replicas.
"""

from datetime import datetime

import pydantic

from .errors import ValidationError
from .models import Order

MAX_BUSINESS_KEY_LENGTH = 128


# ---------------------------------------------------------------------------
# Error message formatting helpers
# ---------------------------------------------------------------------------


def format_validation_error(field_name: str, reason: str) -> str:
    """
    Generate consistent error message for validation failures.

    Args:
        field_name: Human-readable field name (e.g., "Order number")
        reason: Description of validation failure (e.g., "cannot be empty")

    Returns:
        Formatted error message string
    """
    return f"{field_name} {reason}"


def validate_business_key(business_key: str | None) -> tuple[bool, str]:
    """
    Validate an order number (business key).

    Returns:
        Tuple of (is_valid, error_message).
        Returns (True, "") if valid, (False, reason) if invalid.

    Validation rules:
        - Cannot be missing, empty or whitespace-only
        - Cannot carry leading/trailing whitespace
        - Cannot contain control characters
        - At most MAX_BUSINESS_KEY_LENGTH characters
    """
    if business_key is None or not business_key.strip():
        return (
            False,
            format_validation_error("Order number", "cannot be empty"),
        )

    if business_key != business_key.strip():
        return (
            False,
            format_validation_error(
                "Order number",
                "cannot have leading or trailing whitespace",
            ),
        )

    if any(ord(ch) < 32 for ch in business_key):
        return (
            False,
            format_validation_error(
                "Order number", "cannot contain control characters"
            ),
        )

    if len(business_key) > MAX_BUSINESS_KEY_LENGTH:
        return (
            False,
            format_validation_error(
                "Order number",
                f"exceeds maximum length of {MAX_BUSINESS_KEY_LENGTH} characters",
            ),
        )

    return True, ""


def validate_timestamp(value: str | None, field_name: str) -> tuple[bool, str]:
    """
    Validate an optional ISO 8601 timestamp.

    ``None`` is valid (the field is optional).  A trailing ``Z`` is accepted.
    """
    if value is None:
        return True, ""
    try:
        datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return (
            False,
            format_validation_error(
                field_name, f"is not an ISO 8601 timestamp: '{value}'"
            ),
        )
    return True, ""


def validate_order(order: Order) -> None:
    """Check an order before it may enter the outbox.

    Raises:
        ValidationError: On the first rule the order breaks.
    """
    ok, message = validate_business_key(order.business_key)
    if not ok:
        raise ValidationError(message, field="orderNumber")

    if not order.user_id or not order.user_id.strip():
        raise ValidationError(
            format_validation_error("User ID", "cannot be empty"),
            field="userId",
        )

    for field, label in (
        ("created_at", "createdAt"),
        ("updated_at", "updatedAt"),
        ("deleted_at", "deletedAt"),
    ):
        ok, message = validate_timestamp(getattr(order, field), label)
        if not ok:
            raise ValidationError(message, field=label)


def parse_order(data: dict) -> Order:
    """Build and validate an ``Order`` from a camelCase dict.

    Raises:
        ValidationError: If the dict cannot form a valid order.
    """
    try:
        order = Order.model_validate(data)
    except pydantic.ValidationError as exc:
        first = exc.errors()[0]
        field = ".".join(str(p) for p in first.get("loc", ()))
        raise ValidationError(
            f"Malformed order: {field or 'record'}: {first.get('msg')}",
            field=field or None,
        ) from exc
    validate_order(order)
    return order
