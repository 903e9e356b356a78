import pytest

from form_relay.domain.ports import ValidationError, ValidationErrorKind
from form_relay.domain.schema import SubmissionRequest
from form_relay.domain.validation import (
    validate_submission,
    INVALID_NAME_MESSAGE,
    INVALID_PHONE_MESSAGE,
    MISSING_FIELD_MESSAGE,
)


def test_accepts_accented_name_and_trims():
    result = validate_submission({"name": "  Ana María ", "phone": " +593991234567 "})

    assert result.name == "Ana María"
    assert result.phone == "+593991234567"


@pytest.mark.parametrize("name", ["A", "John123", "Ana_María", "x" * 51, "Ana × Luis"])
def test_rejects_invalid_names(name):
    with pytest.raises(ValidationError) as exc_info:
        validate_submission({"name": name, "phone": "+593991234567"})

    assert exc_info.value.kind == ValidationErrorKind.INVALID_NAME
    assert exc_info.value.message == INVALID_NAME_MESSAGE


def test_name_length_bounds_are_inclusive():
    assert validate_submission({"name": "Al", "phone": "+593991234567"}).name == "Al"
    assert validate_submission({"name": "a" * 50, "phone": "+593991234567"}).name == "a" * 50


@pytest.mark.parametrize("phone", ["+59399123456", "0991234567", "+5939912345678", "+593 99123456", "+59399123456a"])
def test_rejects_invalid_phones(phone):
    with pytest.raises(ValidationError) as exc_info:
        validate_submission({"name": "Carlos Pérez", "phone": phone})

    assert exc_info.value.kind == ValidationErrorKind.INVALID_PHONE
    assert exc_info.value.message == INVALID_PHONE_MESSAGE


@pytest.mark.parametrize(
    "raw, field",
    [
        ({"phone": "+593991234567"}, "name"),
        ({"name": "Ana"}, "phone"),
        ({"name": "   ", "phone": "+593991234567"}, "name"),
        ({"name": 42, "phone": "+593991234567"}, "name"),
        ({"name": "Ana", "phone": None}, "phone"),
    ],
)
def test_missing_or_non_string_fields(raw, field):
    with pytest.raises(ValidationError) as exc_info:
        validate_submission(raw)

    assert exc_info.value.kind == ValidationErrorKind.MISSING_FIELD
    assert exc_info.value.message == MISSING_FIELD_MESSAGE
    assert exc_info.value.field == field


def test_validating_sanitized_output_is_idempotent():
    first = validate_submission(SubmissionRequest(name=" José Núñez ", phone="+593987654321"))
    second = validate_submission(first)

    assert second == first


def test_sanitized_submission_is_frozen():
    result = validate_submission({"name": "Ana", "phone": "+593991234567"})

    with pytest.raises(Exception):
        result.name = "Otro"
