"""Data models for the sync engine.

The key idea: the store should own a *stable* canonical schema regardless of
the upstream source(s). We also keep the `raw_data` payload so records can be
re-parsed later without re-fetching.

This file uses Pydantic v2.
"""

from __future__ import annotations

import json
import re
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .utils import parse_datetime, utc_now

_CAMEL_RE = re.compile(r"(?<=[a-z0-9])(?=[A-Z])")

class TaskStatus(str, Enum):
    DRAFT = "draft"
    ACTIVE = "active"
    INACTIVE = "inactive"


class DuplicateAction(str, Enum):
    UPDATE = "update"
    SKIP = "skip"
    CREATE_NEW = "create-new"


class AuthType(str, Enum):
    NONE = "none"
    HEADER_KEY = "header_key"
    QUERY_KEY = "query_key"
    BEARER = "bearer"


class PaginationType(str, Enum):
    PAGE_NUMBER = "page_number"
    NONE = "none"


class ScheduleFrequency(str, Enum):
    HOURLY = "hourly"
    TWICEDAILY = "twicedaily"
    DAILY = "daily"
    WEEKLY = "weekly"


class TriggerType(str, Enum):
    MANUAL = "manual"
    SCHEDULED = "scheduled"


class RunStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_final(self) -> bool:
        return self is not RunStatus.RUNNING


class RunPhase(str, Enum):
    PENDING = "pending"
    FETCHING = "fetching"
    MAPPING = "mapping"
    RECONCILING = "reconciling"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


# ---------------------------------------------------------------------------
# Canonical record
# ---------------------------------------------------------------------------


class Address(BaseModel):
    model_config = ConfigDict(frozen=True, coerce_numbers_to_str=True)

    address_line1: str = ""
    address_line2: str = ""
    address_line3: str = ""
    address_line4: str = ""
    postcode: str = ""
    latitude: Optional[float] = None
    longitude: Optional[float] = None

    @model_validator(mode="before")
    @classmethod
    def _drop_nulls(cls, data: Any) -> Any:
        # Accept source-style camelCase keys (addressLine1) as well as our own.
        if isinstance(data, dict):
            return {_CAMEL_RE.sub("_", str(k)).lower(): v for k, v in data.items() if v is not None}
        return data


_LIST_FIELDS = ("addresses", "skills_required", "qualifications_required")
_DATE_FIELDS = ("posted_date", "closing_date", "start_date")


class CanonicalRecord(BaseModel):
    """A normalized vacancy record.

    Every field has a zero-value default, so a record built from a sparse
    source is still complete. Instances are immutable: build a new one with
    `model_copy(update=...)` instead of patching.
    """

    model_config = ConfigDict(frozen=True, coerce_numbers_to_str=True)

    # Core identifiers
    vacancy_reference: str = ""
    vacancy_url: str = ""
    provider_id: str = ""

    # Basic info
    title: str = ""
    description: str = ""
    short_description: str = ""

    # Employer
    employer_name: str = ""
    employer_website: str = ""
    employer_description: str = ""
    employer_contact_email: str = ""
    employer_contact_phone: str = ""
    employer_contact_name: str = ""

    # Training provider
    provider_name: str = ""
    provider_ukprn: str = ""
    provider_contact_email: str = ""
    provider_contact_phone: str = ""
    provider_contact_name: str = ""

    # Location
    addresses: List[Address] = Field(default_factory=list)
    primary_address: Address = Field(default_factory=Address)

    # Course / qualification
    course_title: str = ""
    course_route: str = ""
    course_level: int = 0
    course_id: int = 0
    qualification: str = ""
    apprenticeship_level: str = ""

    # Wage / employment
    wage_type: str = ""
    wage_amount: float = 0.0
    wage_amount_lower: float = 0.0
    wage_amount_upper: float = 0.0
    wage_unit: str = ""
    wage_text: str = ""
    wage_additional_info: str = ""
    working_week: str = ""
    hours_per_week: float = 0.0
    expected_duration: str = ""
    employment_type: str = ""
    positions_available: int = 1

    # Requirements
    skills_required: List[str] = Field(default_factory=list)
    qualifications_required: List[Any] = Field(default_factory=list)
    things_to_consider: str = ""
    outcome_description: str = ""

    # Lifecycle dates
    posted_date: Optional[datetime] = None
    closing_date: Optional[datetime] = None
    start_date: Optional[datetime] = None

    # Application
    apply_url: str = ""
    apply_email: str = ""
    apply_instructions: str = ""

    # Status flags
    status: str = "active"
    is_disability_confident: bool = False
    is_national: bool = False

    # Meta
    raw_data: Dict[str, Any] = Field(default_factory=dict, description="Original payload.")
    imported_at: datetime = Field(default_factory=utc_now)

    @model_validator(mode="before")
    @classmethod
    def _fill_zero_values(cls, data: Any) -> Any:
        """Nulls from upstream fall back to the field default; scalars in list slots are wrapped."""
        if not isinstance(data, dict):
            return data
        cleaned: Dict[str, Any] = {}
        for key, value in data.items():
            if value is None and key not in _DATE_FIELDS:
                continue
            if key in _LIST_FIELDS and value is not None and not isinstance(value, (list, tuple)):
                value = [value] if value != "" else []
            cleaned[key] = value
        return cleaned

    @field_validator(*_DATE_FIELDS, mode="before")
    @classmethod
    def _parse_dates(cls, value: Any) -> Optional[datetime]:
        return parse_datetime(value)

    @field_validator("skills_required", mode="before")
    @classmethod
    def _stringify_skills(cls, value: Any) -> Any:
        if isinstance(value, (list, tuple)):
            return [str(v) for v in value if v is not None and v != ""]
        return value


# ---------------------------------------------------------------------------
# Import task
# ---------------------------------------------------------------------------


DEFAULT_UK_GOV_FIELD_MAPPINGS: Dict[str, str] = {
    "title": "title",
    "description": "description",
    "short_description": "shortDescription",
    "vacancy_reference": "vacancyReference",
    "vacancy_url": "vacancyUrl",
    "employer_name": "employerName",
    "employer_website": "employerWebsiteUrl",
    "employer_description": "employerDescription",
    "provider_name": "providerName",
    "provider_ukprn": "ukprn",
    "course_title": "courseTitle",
    "course_level": "courseLevel",
    "apprenticeship_level": "apprenticeshipLevel",
    "wage_type": "wageType",
    "wage_amount": "wageAmount",
    "wage_unit": "wageUnit",
    "wage_text": "wageText",
    "working_week": "workingWeek",
    "hours_per_week": "hoursPerWeek",
    "expected_duration": "expectedDuration",
    "positions_available": "numberOfPositions",
    "posted_date": "postedDate",
    "closing_date": "closingDate",
    "start_date": "startDate",
    "addresses": "addresses",
    "primary_address.address_line1": "addresses[0].addressLine1",
    "primary_address.address_line2": "addresses[0].addressLine2",
    "primary_address.address_line3": "addresses[0].addressLine3",
    "primary_address.postcode": "addresses[0].postcode",
    "primary_address.latitude": "addresses[0].latitude",
    "primary_address.longitude": "addresses[0].longitude",
    "skills_required": "skills",
    "qualifications_required": "qualifications",
    "is_disability_confident": "isDisabilityConfident",
}


class ImportTask(BaseModel):
    """Operator-configured description of one import job.

    `provider_id` is optional: when it names a registered provider, that
    provider does the fetching and normalization and `field_mappings` are
    applied on top. Otherwise the HTTP description on the task itself is used.
    """

    id: str
    name: str
    description: str = ""
    status: TaskStatus = TaskStatus.DRAFT
    provider_id: str = ""

    # HTTP description
    api_base_url: str = ""
    api_endpoint: str = ""
    api_method: str = "GET"
    api_headers: Dict[str, str] = Field(default_factory=dict)
    api_params: Dict[str, Any] = Field(default_factory=dict)
    api_auth_type: AuthType = AuthType.NONE
    api_auth_key: str = ""
    api_auth_value: str = ""

    # Response shape
    response_format: str = "json"
    data_path: str = "data"
    total_path: str = "total"
    total_pages_path: str = "totalPages"
    pagination_type: PaginationType = PaginationType.PAGE_NUMBER
    page_param: str = "page"
    page_size_param: str = "page_size"
    page_size: int = Field(default=100, gt=0)
    max_pages: Optional[int] = Field(default=None, gt=0)

    # Mapping
    field_mappings: Dict[str, str] = Field(default_factory=dict)
    # Empty defers to the provider's own identifier.
    unique_id_field: str = ""
    transforms_enabled: bool = False
    transforms_code: str = ""

    # Target repository policy
    target_post_type: str = "vacancy"
    post_status: str = "publish"
    duplicate_action: DuplicateAction = DuplicateAction.UPDATE
    retire_missing: bool = False
    retention_days: Optional[int] = Field(default=None, ge=0)

    # Schedule
    schedule_enabled: bool = False
    schedule_frequency: ScheduleFrequency = ScheduleFrequency.DAILY
    schedule_time: str = "03:00"

    @classmethod
    def uk_gov_template(cls, task_id: str, name: str, subscription_key: str = "", **overrides: Any) -> "ImportTask":
        """A ready-to-edit task for the UK Gov apprenticeships API."""
        values: Dict[str, Any] = dict(
            id=task_id,
            name=name,
            api_base_url="https://api.apprenticeships.education.gov.uk/vacancies",
            api_endpoint="/vacancy",
            api_headers={"X-Version": "2"},
            api_params={"Sort": "AgeDesc"},
            api_auth_type=AuthType.HEADER_KEY,
            api_auth_key="Ocp-Apim-Subscription-Key",
            api_auth_value=subscription_key,
            data_path="vacancies",
            total_path="total",
            total_pages_path="totalPages",
            page_param="PageNumber",
            page_size_param="PageSize",
            page_size=100,
            field_mappings=dict(DEFAULT_UK_GOV_FIELD_MAPPINGS),
            unique_id_field="vacancyReference",
            target_post_type="apprco_vacancy",
        )
        values.update(overrides)
        return cls(**values)

    @field_validator("api_headers", "api_params", "field_mappings", mode="before")
    @classmethod
    def _decode_json(cls, value: Any) -> Any:
        # Persisted tasks may store these blobs as JSON text.
        if value is None or value == "":
            return {}
        if isinstance(value, str):
            return json.loads(value)
        return value

    @field_validator("api_method")
    @classmethod
    def _upper_method(cls, value: str) -> str:
        value = (value or "GET").upper()
        if value not in ("GET", "POST"):
            raise ValueError(f"Unsupported api_method: {value}")
        return value

    @field_validator("schedule_time")
    @classmethod
    def _check_time(cls, value: str) -> str:
        hour, _, minute = (value or "03:00").partition(":")
        if not (hour.isdigit() and minute[:2].isdigit() and 0 <= int(hour) < 24 and 0 <= int(minute[:2]) < 60):
            raise ValueError(f"schedule_time must be HH:MM, got {value!r}")
        return f"{int(hour):02d}:{int(minute[:2]):02d}"


# ---------------------------------------------------------------------------
# Runs, logs, stored records
# ---------------------------------------------------------------------------


class RunCounts(BaseModel):
    fetched: int = 0
    created: int = 0
    updated: int = 0
    deleted: int = 0
    skipped: int = 0
    errors: int = 0


class ImportRun(BaseModel):
    id: str
    task_id: str
    provider_id: str = ""
    trigger: TriggerType = TriggerType.MANUAL
    status: RunStatus = RunStatus.RUNNING
    started_at: datetime = Field(default_factory=utc_now)
    finished_at: Optional[datetime] = None
    counts: RunCounts = Field(default_factory=RunCounts)
    error: Optional[str] = None


class LogEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    run_id: Optional[str] = None
    level: str = "info"
    component: str = "system"
    message: str
    context: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utc_now)


class StoredRecord(BaseModel):
    """A canonical record as held by a record repository."""

    id: str
    unique_id: str
    task_id: str
    provider_id: str = ""
    kind: str = "vacancy"
    status: str = "publish"
    record: CanonicalRecord
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)


# ---------------------------------------------------------------------------
# Operator-facing results
# ---------------------------------------------------------------------------


class ConnectionTestResult(BaseModel):
    success: bool
    message: str
    total: int = 0
    total_pages: int = 0
    sample: List[Dict[str, Any]] = Field(default_factory=list)
    response_keys: List[str] = Field(default_factory=list)
    available_fields: List[str] = Field(default_factory=list)


class ImportResult(BaseModel):
    success: bool
    run_id: Optional[str] = None
    status: Optional[RunStatus] = None
    fetched: int = 0
    created: int = 0
    updated: int = 0
    deleted: int = 0
    skipped: int = 0
    errors: int = 0
    message: str = ""


class RunStatusView(BaseModel):
    run_id: str
    status: RunStatus
    phase: RunPhase
    current: int = 0
    total: int = 0
