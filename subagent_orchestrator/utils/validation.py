"""
Validation utilities for the Subagent Orchestrator.
"""

import re
from typing import Any, Dict, Type, TypeVar, Union
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from ..models.errors import ValidationError

ModelT = TypeVar("ModelT", bound=BaseModel)

_TAG_PATTERN = re.compile(r'^[a-z0-9][a-z0-9._+\-/ ]*$')


def parse_model(model_class: Type[ModelT], data: Union[ModelT, Dict[str, Any]], what: str) -> ModelT:
    """
    Coerce input into a Pydantic model, translating schema errors.

    Args:
        model_class: Pydantic model class to validate against
        data: Model instance or raw dictionary
        what: Human-readable name of the input, used in the error message

    Returns:
        The validated model instance

    Raises:
        ValidationError: If the data does not satisfy the model
    """
    if isinstance(data, model_class):
        return data
    if isinstance(data, BaseModel):
        data = data.model_dump()
    if not isinstance(data, dict):
        raise ValidationError(f"Invalid {what}: expected an object, got {type(data).__name__}")

    try:
        return model_class.model_validate(data)
    except PydanticValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(part) for part in err['loc']) or what}: {err['msg']}"
            for err in e.errors()
        )
        fields = [".".join(str(part) for part in err["loc"]) for err in e.errors()]
        raise ValidationError(f"Invalid {what}: {problems}", fields=fields) from e


def normalize_tags(tags) -> set:
    """
    Normalize free-form capability tags (trimmed, lower-case).

    Raises:
        ValidationError: If a tag is empty or contains unsupported characters
    """
    normalized = set()
    for tag in tags or ():
        if not isinstance(tag, str):
            raise ValidationError(f"Capability tags must be strings, got {type(tag).__name__}")
        value = tag.strip().lower()
        if not value or not _TAG_PATTERN.match(value):
            raise ValidationError(f"Invalid capability tag: {tag!r}")
        normalized.add(value)
    return normalized
