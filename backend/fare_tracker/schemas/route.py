import re
from datetime import date
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, EmailStr, Field, field_validator

from fare_tracker.config import get_settings
from fare_tracker.utils import utcnow

IATA_CODE = re.compile(r"^[A-Z]{3}$")


def _check_flexibility(v: int) -> int:
    limit = get_settings().max_date_flexibility_days
    if not 0 <= v <= limit:
        raise ValueError(f"date_flexibility_days must be between 0 and {limit}")
    return v


def _check_max_stops(v: Optional[int]) -> Optional[int]:
    limit = get_settings().max_stops_limit
    if v is not None and not 0 <= v <= limit:
        raise ValueError(f"max_stops must be between 0 and {limit}, or empty for any")
    return v


def _check_threshold(v: Decimal) -> Decimal:
    settings = get_settings()
    if not Decimal(str(settings.threshold_percent_min)) < v <= Decimal(str(settings.threshold_percent_max)):
        raise ValueError(
            f"threshold_percent must be greater than {settings.threshold_percent_min} "
            f"and at most {settings.threshold_percent_max}"
        )
    return v


def _check_interval(v: int) -> int:
    settings = get_settings()
    if not settings.polling_interval_min_minutes <= v <= settings.polling_interval_max_minutes:
        raise ValueError(
            f"polling_interval_minutes must be between {settings.polling_interval_min_minutes} "
            f"and {settings.polling_interval_max_minutes}"
        )
    return v


class TrackedRouteCreate(BaseModel):
    owner_id: str = Field(min_length=1)
    origin: str
    destination: str
    departure_date: date
    date_flexibility_days: int = Field(default_factory=lambda: get_settings().default_date_flexibility_days)
    max_stops: Optional[int] = None
    threshold_percent: Decimal = Field(default_factory=lambda: Decimal(str(get_settings().default_threshold_percent)))
    polling_interval_minutes: int = Field(default_factory=lambda: get_settings().default_polling_interval_minutes)

    @field_validator("origin", "destination")
    @classmethod
    def validate_airport_code(cls, v: str) -> str:
        """Airport codes are three-letter IATA codes, stored uppercase."""
        v = v.upper().strip()
        if not IATA_CODE.match(v):
            raise ValueError("must be a 3-letter IATA airport code")
        return v

    @field_validator("departure_date")
    @classmethod
    def validate_departure_date(cls, v: date) -> date:
        if v < utcnow().date():
            raise ValueError("departure_date cannot be in the past")
        return v

    @field_validator("date_flexibility_days")
    @classmethod
    def validate_flexibility(cls, v: int) -> int:
        return _check_flexibility(v)

    @field_validator("max_stops")
    @classmethod
    def validate_max_stops(cls, v: Optional[int]) -> Optional[int]:
        return _check_max_stops(v)

    @field_validator("threshold_percent")
    @classmethod
    def validate_threshold(cls, v: Decimal) -> Decimal:
        return _check_threshold(v)

    @field_validator("polling_interval_minutes")
    @classmethod
    def validate_interval(cls, v: int) -> int:
        return _check_interval(v)


class TrackedRouteUpdate(BaseModel):
    """Only the fields that may change once a route exists; unset fields are left alone."""
    threshold_percent: Optional[Decimal] = None
    polling_interval_minutes: Optional[int] = None
    is_active: Optional[bool] = None
    date_flexibility_days: Optional[int] = None
    max_stops: Optional[int] = None

    @field_validator("threshold_percent")
    @classmethod
    def validate_threshold(cls, v: Optional[Decimal]) -> Optional[Decimal]:
        return v if v is None else _check_threshold(v)

    @field_validator("polling_interval_minutes")
    @classmethod
    def validate_interval(cls, v: Optional[int]) -> Optional[int]:
        return v if v is None else _check_interval(v)

    @field_validator("date_flexibility_days")
    @classmethod
    def validate_flexibility(cls, v: Optional[int]) -> Optional[int]:
        return v if v is None else _check_flexibility(v)

    @field_validator("max_stops")
    @classmethod
    def validate_max_stops(cls, v: Optional[int]) -> Optional[int]:
        return _check_max_stops(v)


class RecipientCreate(BaseModel):
    email: EmailStr
    name: Optional[str] = Field(default=None, max_length=100)

    @field_validator("email")
    @classmethod
    def normalize_email(cls, v: str) -> str:
        """Recipients are matched case-insensitively, so store them lowercase."""
        return v.lower()
