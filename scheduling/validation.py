"""
scheduling/validation.py

Input checks shared by the lifecycle manager and the access graph.
User-facing messages are in Spanish, as shown by the patient and doctor
portals; log/exception messages stay in English.
"""

from __future__ import annotations

import re
from datetime import date, datetime
from collections.abc import Mapping
from typing import Any

import pydantic

from storage.errors import ValidationError
from scheduling.time_utils import local_today

EMAIL_PATTERN = re.compile(r"\S+@\S+\.\S+")

MIN_AGE = 0
MAX_AGE = 120


def is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def is_valid_email(value: str) -> bool:
    return bool(EMAIL_PATTERN.search(value or ""))


def coerce_date(value: Any) -> date | None:
    """Accept a ``date``, ``datetime`` or ISO string; ``None`` if unparseable."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value)[:10])
    except ValueError:
        return None


def calculate_age(date_of_birth: date, today: date | None = None) -> int:
    """Whole years since *date_of_birth*; negative for dates in the future."""
    today = today or local_today()
    age = today.year - date_of_birth.year
    if (today.month, today.day) < (date_of_birth.month, date_of_birth.day):
        age -= 1
    return age


def parse_model(model: type[pydantic.BaseModel], data: Any, what: str):
    """
    Validate *data* into *model*, turning pydantic errors into our
    ``ValidationError`` with a field -> message mapping.
    """
    if isinstance(data, model):
        return data
    if isinstance(data, pydantic.BaseModel):
        data = data.model_dump(by_alias=True)
    try:
        return model.model_validate(data)
    except pydantic.ValidationError as exc:
        errors = {}
        for err in exc.errors():
            field = ".".join(str(p) for p in err["loc"]) or what
            errors[field] = err["msg"]
        raise ValidationError(f"invalid {what}: {errors}", errors) from None


def normalize_keys(model: type[pydantic.BaseModel], data: Mapping[str, Any]) -> dict[str, Any]:
    """
    Map camelCase, snake_case and legacy keys in *data* onto *model*'s field
    names.  Unknown keys are dropped.
    """
    lookup: dict[str, str] = {}
    for name, field in model.model_fields.items():
        lookup[name] = name
        if field.alias:
            lookup[field.alias] = name
        alias = field.validation_alias
        if isinstance(alias, str):
            lookup[alias] = name
        elif isinstance(alias, pydantic.AliasChoices):
            for choice in alias.choices:
                if isinstance(choice, str):
                    lookup[choice] = name
    return {lookup[k]: v for k, v in data.items() if k in lookup}
