from __future__ import annotations

import re
from datetime import date
from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator

DOCUMENT_CATEGORIES: tuple[str, ...] = ("personal", "investment", "insurance", "loans", "retirement")

DocumentCategory = Literal["personal", "investment", "insurance", "loans", "retirement"]
Relationship = Literal["spouse", "parent", "child", "sibling", "other"]
AccessLevel = Literal["view", "download", "full"]
Priority = Literal["low", "medium", "high"]

_AADHAAR_RE = re.compile(r"^\d{12}$")
_PAN_RE = re.compile(r"^[A-Z]{5}[0-9]{4}[A-Z]$")
_MOBILE_RE = re.compile(r"^\d{10}$")
_EMAIL_RE = re.compile(r"^\S+@\S+\.\S+$")


def _blank_to_none(value: Any) -> Any:
    if isinstance(value, str):
        value = value.strip()
        if not value:
            return None
    return value


class DocumentUpdateRequest(BaseModel):
    title: str | None = None
    metadata: dict[str, Any] | None = None
    tags: list[str] | None = None


class ShareDocumentRequest(BaseModel):
    expiry_hours: int = Field(default=24, ge=1, le=168)
    note: str | None = Field(default=None, max_length=200)


class NomineeAddress(BaseModel):
    street: str | None = None
    city: str | None = None
    state: str | None = None
    pincode: str | None = None
    country: str = "India"


class _NomineeIdentityFields(BaseModel):
    """Optional identity fields shared by create and update payloads.

    Empty strings are treated as "not provided" so that forms can submit every
    field without tripping the format checks.
    """

    aadhaar_number: str | None = None
    pan_number: str | None = None
    mobile_number: str | None = None
    email: str | None = None

    @field_validator("aadhaar_number", mode="before")
    @classmethod
    def _check_aadhaar(cls, value: Any) -> Any:
        value = _blank_to_none(value)
        if value is not None and not _AADHAAR_RE.match(str(value)):
            raise ValueError("Aadhaar number must be exactly 12 digits")
        return value

    @field_validator("pan_number", mode="before")
    @classmethod
    def _check_pan(cls, value: Any) -> Any:
        value = _blank_to_none(value)
        if value is None:
            return None
        value = str(value).upper()
        if not _PAN_RE.match(value):
            raise ValueError("PAN must be in format: ABCDE1234F")
        return value

    @field_validator("mobile_number", mode="before")
    @classmethod
    def _check_mobile(cls, value: Any) -> Any:
        value = _blank_to_none(value)
        if value is not None and not _MOBILE_RE.match(str(value)):
            raise ValueError("Mobile number must be exactly 10 digits")
        return value

    @field_validator("email", mode="before")
    @classmethod
    def _check_email(cls, value: Any) -> Any:
        value = _blank_to_none(value)
        if value is None:
            return None
        value = str(value).lower()
        if not _EMAIL_RE.match(value):
            raise ValueError("Invalid email format")
        return value


class NomineeCreateRequest(_NomineeIdentityFields):
    full_name: str = Field(min_length=1)
    relationship: Relationship
    date_of_birth: date
    address: NomineeAddress | None = None
    share_percentage: float = Field(default=0, ge=0, le=100)
    notes: str | None = None

    @field_validator("full_name", "notes", mode="before")
    @classmethod
    def _strip(cls, value: Any) -> Any:
        return value.strip() if isinstance(value, str) else value


class NomineeUpdateRequest(_NomineeIdentityFields):
    full_name: str | None = Field(default=None, min_length=1)
    relationship: Relationship | None = None
    date_of_birth: date | None = None
    address: NomineeAddress | None = None
    share_percentage: float | None = Field(default=None, ge=0, le=100)
    notes: str | None = None
    is_active: bool | None = None

    @field_validator("full_name", "relationship", "date_of_birth", "share_percentage", mode="before")
    @classmethod
    def _not_null(cls, value: Any) -> Any:
        # omitted keeps the stored value; explicit null is rejected
        if value is None:
            raise ValueError("field cannot be cleared")
        return value

    @field_validator("full_name", "notes", mode="before")
    @classmethod
    def _strip(cls, value: Any) -> Any:
        return value.strip() if isinstance(value, str) else value


class NomineeInviteRequest(BaseModel):
    access_level: AccessLevel = "view"
    can_view_categories: list[DocumentCategory] | None = Field(default=None, min_length=1)
    expires_in_days: int | None = Field(default=None, ge=1, le=3650)


class MobileOtpConfirmRequest(BaseModel):
    otp: str = Field(pattern=r"^\d{6}$")


class TodoCreateRequest(BaseModel):
    task_name: str = ""
    priority: Priority = "medium"


class TodoUpdateRequest(BaseModel):
    task_name: str | None = None
    priority: Priority | None = None
    is_completed: bool | None = None


def success_envelope(data: Any, trace_id: str, message: str = "ok") -> dict[str, Any]:
    return {
        "success": True,
        "data": data,
        "message": message,
        "meta": {
            "trace_id": trace_id,
        },
    }


def error_envelope(
    *,
    code: str,
    message: str,
    error_class: str,
    retryable: bool,
    trace_id: str,
    details: Any | None = None,
) -> dict[str, Any]:
    error: dict[str, Any] = {
        "code": code,
        "message": message,
        "retryable": retryable,
        "class": error_class,
    }
    if details is not None:
        error["details"] = details
    return {
        "success": False,
        "error": error,
        "meta": {
            "trace_id": trace_id,
        },
    }
