"""
Server-side validation of form submissions.
"""

import re
from typing import Any, Mapping, Union

from .ports import ValidationError, ValidationErrorKind
from .schema import SanitizedSubmission, SubmissionRequest


# Latin letters incl. Latin-1 accented letters (without the × and ÷ signs) and whitespace
NAME_PATTERN = re.compile(r"[A-Za-zÀ-ÖØ-öø-ÿ\s]{2,50}")
PHONE_PATTERN = re.compile(r"\+593[0-9]{9}")

MISSING_FIELD_MESSAGE = "Por favor, complete su nombre y número de teléfono."
INVALID_NAME_MESSAGE = "El nombre debe contener solo letras y espacios, entre 2 y 50 caracteres."
INVALID_PHONE_MESSAGE = "El número debe tener el formato: +593XXXXXXXXX"


def _clean(value: Any) -> str:
    if not isinstance(value, str):
        return ""
    return value.strip()


def validate_submission(
    raw: Union[SubmissionRequest, SanitizedSubmission, Mapping[str, Any]]
) -> SanitizedSubmission:
    """
    Trim and validate a raw submission.

    Args:
        raw: Request body model or a plain mapping with name/phone

    Returns:
        SanitizedSubmission with trimmed values

    Raises:
        ValidationError: MISSING_FIELD, INVALID_NAME or INVALID_PHONE
    """
    if isinstance(raw, Mapping):
        name, phone = raw.get("name"), raw.get("phone")
    else:
        name, phone = raw.name, raw.phone

    name = _clean(name)
    phone = _clean(phone)

    if not name:
        raise ValidationError(ValidationErrorKind.MISSING_FIELD, MISSING_FIELD_MESSAGE, "name")
    if not phone:
        raise ValidationError(ValidationErrorKind.MISSING_FIELD, MISSING_FIELD_MESSAGE, "phone")

    if not NAME_PATTERN.fullmatch(name):
        raise ValidationError(ValidationErrorKind.INVALID_NAME, INVALID_NAME_MESSAGE, "name")

    if not PHONE_PATTERN.fullmatch(phone):
        raise ValidationError(ValidationErrorKind.INVALID_PHONE, INVALID_PHONE_MESSAGE, "phone")

    return SanitizedSubmission(name=name, phone=phone)
