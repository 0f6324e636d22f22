"""
kubestrap/models/validator.py

Helper for validating loosely typed documents (persisted state, JSON read
back from disk) against pydantic-based types using TypeAdapter.
"""

from typing import Type, TypeVar

from pydantic import TypeAdapter, ValidationError

T = TypeVar("T")


def validate_json(raw: str, expected_type: Type[T]) -> T:
    """Parse and validate a JSON document in one step.

    Raises:
        ValueError: If the text is not valid JSON or does not match the type.
    """
    try:
        return TypeAdapter(expected_type).validate_json(raw)
    except ValidationError as e:
        raise ValueError(f"Validation failed for type {expected_type}: {e}") from e
