"""UK Government apprenticeships connector (Display Advert API v2).

Docs: https://developer.apprenticeships.education.gov.uk/

Requests carry the subscription key in `Ocp-Apim-Subscription-Key` and pin
the API version with `X-Version: 2`. Listings page with `PageNumber` /
`PageSize` and come back under `vacancies` with `total` and `totalPages`.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from ..models import Address, CanonicalRecord
from ..utils import clean_description
from .base import ConfigField, Provider, RateLimits


def _float(value: Any) -> Optional[float]:
    if value is None or value == "":
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _address(payload: Dict[str, Any]) -> Address:
    return Address(
        address_line1=payload.get("addressLine1") or "",
        address_line2=payload.get("addressLine2") or "",
        address_line3=payload.get("addressLine3") or "",
        address_line4=payload.get("addressLine4") or "",
        postcode=payload.get("postcode") or "",
        latitude=_float(payload.get("latitude")),
        longitude=_float(payload.get("longitude")),
    )


class UKGovApprenticeshipsProvider(Provider):
    """Fetch apprenticeship vacancies from the UK Gov API and normalize them."""

    id = "uk-gov-apprenticeships"
    name = "UK Government Apprenticeships"
    description = "Official apprenticeship vacancies from the Find an Apprenticeship service."
    default_base_url = "https://api.apprenticeships.education.gov.uk/vacancies"
    api_version = "2"

    list_endpoint = "/vacancy"
    single_endpoint = "/vacancy/{ref}"
    items_key = "vacancies"
    total_key = "total"
    total_pages_key = "totalPages"
    page_param = "PageNumber"
    page_size_param = "PageSize"
    default_rate_limits = RateLimits(requests_per_minute=60, delay_ms=250)

    endpoints = {
        "vacancy": "/vacancy",
        "vacancy_single": "/vacancy/{ref}",
        "referencedata_courses": "/referencedata/courses",
        "referencedata_routes": "/referencedata/courses/routes",
    }

    @classmethod
    def config_schema(cls) -> Dict[str, ConfigField]:
        return {
            "subscription_key": ConfigField(
                type="string",
                required=True,
                default="",
                label="Subscription Key",
                description="Ocp-Apim-Subscription-Key from the API Management Portal",
            ),
            "base_url": ConfigField(
                type="url",
                default=cls.default_base_url,
                label="Base URL",
                description="API base URL (production or sandbox)",
            ),
            "ukprn": ConfigField(
                type="string",
                default="",
                label="UKPRN",
                description="UK Provider Reference Number for filtering",
            ),
            "page_size": ConfigField(
                type="int",
                default=100,
                label="Page Size",
                description="Number of results per page (max 100)",
            ),
        }

    def default_headers(self) -> Dict[str, str]:
        return {
            "X-Version": self.api_version,
            "Ocp-Apim-Subscription-Key": self.config.subscription_key,
        }

    def base_params(self) -> Dict[str, Any]:
        params: Dict[str, Any] = {"Sort": "AgeDesc"}
        if self.page_size():
            params["PageSize"] = self.page_size()
        ukprn = self.config.ukprn
        if ukprn:
            params["Ukprn"] = int(ukprn) if ukprn.isdigit() else ukprn
            params["FilterBySubscription"] = "true"
        return params

    def page_size(self) -> Optional[int]:
        size = self.config.page_size
        return max(1, min(int(size), 100)) if size else 100

    def supported_endpoints(self) -> Dict[str, str]:
        return dict(self.endpoints)

    def unique_id(self, raw: Dict[str, Any]) -> str:
        return str(raw.get("vacancyReference") or "").strip()

    # Reference data

    def fetch_courses(self) -> List[Dict[str, Any]]:
        self.ensure_configured()
        return self.client.get(self.endpoints["referencedata_courses"]).raise_for_error() or []

    def fetch_routes(self) -> List[Dict[str, Any]]:
        self.ensure_configured()
        return self.client.get(self.endpoints["referencedata_routes"]).raise_for_error() or []

    def normalize(self, raw: Dict[str, Any]) -> CanonicalRecord:
        addresses = [_address(a) for a in raw.get("addresses") or [] if isinstance(a, dict)]
        # v2 lists addresses; older payloads put one address at top level.
        primary = addresses[0] if addresses else _address(raw)

        skills = raw.get("skills") if isinstance(raw.get("skills"), list) else []
        qualifications = raw.get("qualifications") if isinstance(raw.get("qualifications"), list) else []

        return CanonicalRecord(
            vacancy_reference=raw.get("vacancyReference"),
            vacancy_url=raw.get("vacancyUrl"),
            provider_id=self.id,
            title=raw.get("title"),
            description=clean_description(raw.get("description")),
            short_description=clean_description(raw.get("shortDescription")),
            employer_name=raw.get("employerName"),
            employer_website=raw.get("employerWebsiteUrl"),
            employer_description=clean_description(raw.get("employerDescription")),
            employer_contact_email=raw.get("employerContactEmail"),
            employer_contact_phone=raw.get("employerContactPhone"),
            employer_contact_name=raw.get("employerContactName"),
            provider_name=raw.get("providerName"),
            provider_ukprn=raw.get("ukprn"),
            provider_contact_email=raw.get("providerContactEmail"),
            provider_contact_phone=raw.get("providerContactPhone"),
            provider_contact_name=raw.get("providerContactName"),
            addresses=addresses,
            primary_address=primary,
            course_title=raw.get("courseTitle"),
            course_route=raw.get("courseRoute"),
            course_level=raw.get("courseLevel"),
            course_id=raw.get("courseId"),
            apprenticeship_level=raw.get("apprenticeshipLevel"),
            wage_type=raw.get("wageType"),
            wage_amount=raw.get("wageAmount"),
            wage_amount_lower=raw.get("wageAmountLowerBound"),
            wage_amount_upper=raw.get("wageAmountUpperBound"),
            wage_unit=raw.get("wageUnit") or "Annually",
            wage_text=raw.get("wageText"),
            wage_additional_info=raw.get("wageAdditionalInformation"),
            working_week=raw.get("workingWeek"),
            hours_per_week=raw.get("hoursPerWeek"),
            expected_duration=raw.get("expectedDuration"),
            employment_type=raw.get("employmentType") or "Apprenticeship",
            positions_available=raw.get("numberOfPositions"),
            skills_required=skills,
            qualifications_required=qualifications,
            things_to_consider=raw.get("thingsToConsider"),
            outcome_description=raw.get("outcomeDescription"),
            posted_date=raw.get("postedDate"),
            closing_date=raw.get("closingDate"),
            start_date=raw.get("startDate"),
            apply_url=raw.get("applicationUrl"),
            apply_instructions=raw.get("applicationInstructions"),
            is_disability_confident=bool(raw.get("isDisabilityConfident")),
            is_national=bool(raw.get("isNational")),
            raw_data=raw,
        )
