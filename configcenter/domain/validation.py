"""Metadata validation rules evaluation."""

import re

from configcenter.domain.config import ValidationRules


def validate_value(
    rules: ValidationRules | None,
    value: str | None,
    is_required: bool = False,
) -> list[str]:
    """
    Check a candidate raw value against validation rules.

    Pure function shared by the write path and by form validation.

    Args:
        rules: Rules from the key's metadata, or None
        value: Raw candidate text
        is_required: Metadata ``is_required`` flag

    Returns:
        Violation messages, empty when the value is acceptable
    """
    required = is_required or bool(rules and rules.required)
    if value is None or value == "":
        return ["Value is required"] if required else []
    if rules is None:
        return []

    violations: list[str] = []

    if rules.min_length is not None and len(value) < rules.min_length:
        violations.append(f"Must be at least {rules.min_length} characters")
    if rules.max_length is not None and len(value) > rules.max_length:
        violations.append(f"Must be at most {rules.max_length} characters")

    if rules.min is not None or rules.max is not None:
        try:
            number = float(value)
        except ValueError:
            violations.append("Must be a number")
        else:
            if rules.min is not None and number < rules.min:
                violations.append(f"Must be greater than or equal to {rules.min:g}")
            if rules.max is not None and number > rules.max:
                violations.append(f"Must be less than or equal to {rules.max:g}")

    if rules.pattern:
        try:
            if re.fullmatch(rules.pattern, value) is None:
                violations.append(f"Does not match pattern {rules.pattern}")
        except re.error:
            violations.append(f"Invalid validation pattern {rules.pattern}")

    if rules.options and value not in rules.options:
        violations.append("Must be one of: " + ", ".join(rules.options))

    return violations
