# app/schemas/base.py
from __future__ import annotations

from typing import Any, Type, TypeVar

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from app.core.errors import ValidationError

M = TypeVar("M", bound=BaseModel)


def parse_model(model: Type[M], data: Any, *, what: str) -> M:
    """
    Validate `data` into `model` at the boundary.
    Pydantic errors are re-raised as the core ValidationError so callers only
    deal with one error family.
    """
    if isinstance(data, model):
        data = data.model_dump()
    try:
        return model.model_validate(data)
    except PydanticValidationError as exc:
        raise ValidationError(f"Invalid {what}: {describe_errors(exc)}") from exc


def describe_errors(exc: PydanticValidationError) -> str:
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ())) or "value"
        parts.append(f"{loc}: {err.get('msg')}")
    return "; ".join(parts)
