"""
Pydantic schemas for reservations.

`ReservationFields` and `ReservationFieldUpdates` hold the business rules for
guest and scheduling fields. The lifecycle service validates against them so
REST and GraphQL callers get identical errors; the REST request models below
only check shape.
"""

from datetime import datetime
from typing import Generic, Optional, TypeVar

from pydantic import BaseModel, EmailStr, Field, ValidationError, field_validator
from pydantic_core import PydanticCustomError

from table_booking.domain.queries import Page
from table_booking.domain.reservation import ReservationDraft, ReservationStatus

DataT = TypeVar("DataT")

PHONE_PATTERN = r"^1[3-9]\d{9}$"
REQUIRED_FIELDS = ("guest_name", "phone_number", "email", "arrival_time", "table_size")


class ReservationFields(BaseModel):
    guest_name: str = Field(..., min_length=2, max_length=50)
    phone_number: str = Field(..., pattern=PHONE_PATTERN)
    email: EmailStr
    arrival_time: datetime
    table_size: int = Field(..., ge=1, le=20)
    special_requests: Optional[str] = Field(None, max_length=500)

    model_config = {"str_strip_whitespace": True}

    @field_validator("email")
    @classmethod
    def lowercase_email(cls, value: str) -> str:
        return value.lower()

    @field_validator("special_requests")
    @classmethod
    def blank_request_is_none(cls, value: Optional[str]) -> Optional[str]:
        return value or None


class ReservationFieldUpdates(BaseModel):
    """Partial edit. Only keys present in the input are validated and applied."""

    guest_name: Optional[str] = Field(None, min_length=2, max_length=50)
    phone_number: Optional[str] = Field(None, pattern=PHONE_PATTERN)
    email: Optional[EmailStr] = None
    arrival_time: Optional[datetime] = None
    table_size: Optional[int] = Field(None, ge=1, le=20)
    special_requests: Optional[str] = Field(None, max_length=500)

    model_config = {"str_strip_whitespace": True}

    @field_validator(*REQUIRED_FIELDS, mode="before")
    @classmethod
    def required_field_not_cleared(cls, value):
        if value is None or (isinstance(value, str) and not value.strip()):
            raise PydanticCustomError("required", "this field is required")
        return value

    @field_validator("email")
    @classmethod
    def lowercase_email(cls, value: Optional[str]) -> Optional[str]:
        return value.lower() if value else value

    @field_validator("special_requests")
    @classmethod
    def blank_request_is_none(cls, value: Optional[str]) -> Optional[str]:
        return value or None


class ReservationCreate(BaseModel):
    guest_name: str
    phone_number: str
    email: EmailStr
    arrival_time: datetime
    table_size: int
    special_requests: Optional[str] = None

    def to_draft(self) -> ReservationDraft:
        return ReservationDraft(**self.model_dump())


class ReservationUpdate(BaseModel):
    guest_name: Optional[str] = None
    phone_number: Optional[str] = None
    email: Optional[EmailStr] = None
    arrival_time: Optional[datetime] = None
    table_size: Optional[int] = None
    special_requests: Optional[str] = None


class StatusUpdate(BaseModel):
    status: ReservationStatus
    reason: Optional[str] = Field(None, max_length=200)


class CancelRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=200)


class StatusHistoryResponse(BaseModel):
    status: ReservationStatus
    reason: Optional[str]
    changed_at: datetime
    changed_by: Optional[int]

    model_config = {"from_attributes": True}


class ReservationResponse(BaseModel):
    id: int
    user_id: int
    guest_name: str
    phone_number: str
    email: str
    arrival_time: datetime
    table_size: int
    status: ReservationStatus
    special_requests: Optional[str]
    cancellation_reason: Optional[str]
    status_history: list[StatusHistoryResponse]
    can_edit: bool
    can_cancel: bool
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class PaginationInfo(BaseModel):
    page: int
    limit: int
    total_pages: int
    has_next_page: bool
    has_prev_page: bool


class ApiResponse(BaseModel, Generic[DataT]):
    """Success envelope: {code: 0, message, data, total?, info?}."""

    code: int = 0
    message: str = "success"
    data: DataT
    total: Optional[int] = None
    info: Optional[PaginationInfo] = None


def page_response(page: Page, message: str = "success") -> ApiResponse[list[ReservationResponse]]:
    return ApiResponse[list[ReservationResponse]](
        message=message,
        data=[ReservationResponse.model_validate(r) for r in page.items],
        total=page.total,
        info=PaginationInfo(
            page=page.page,
            limit=page.limit,
            total_pages=page.total_pages,
            has_next_page=page.has_next_page,
            has_prev_page=page.has_prev_page,
        ),
    )


def field_errors(exc: ValidationError) -> dict[str, str]:
    """First message per field, keyed by field name."""
    errors: dict[str, str] = {}
    for error in exc.errors():
        field = str(error["loc"][0]) if error["loc"] else "reservation"
        errors.setdefault(field, error["msg"])
    return errors
