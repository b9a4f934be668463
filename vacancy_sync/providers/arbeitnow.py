"""Arbeitnow jobs connector.

Docs: https://www.arbeitnow.com/api/job-board-api

A keyless public board. We page with `page` until `meta.last_page` is reached
or a page comes back empty, and map the fields onto the canonical schema.
"""

from __future__ import annotations

from typing import Any, Dict

from ..models import Address, CanonicalRecord
from ..utils import clean_description, stable_id, uniq_preserve_order
from .base import ConfigField, Provider, RateLimits


class ArbeitnowProvider(Provider):
    """Fetch jobs from Arbeitnow and normalize them."""

    id = "arbeitnow"
    name = "Arbeitnow"
    description = "Public job board API (Europe, remote friendly)."
    default_base_url = "https://www.arbeitnow.com/api/job-board-api"

    list_endpoint = ""
    items_key = "data"
    total_key = None
    total_pages_key = "meta.last_page"
    page_param = "page"
    default_rate_limits = RateLimits(requests_per_minute=30, delay_ms=500)

    @classmethod
    def config_schema(cls) -> Dict[str, ConfigField]:
        return {
            "base_url": ConfigField(type="url", default=cls.default_base_url, label="Base URL"),
            "visa_sponsorship": ConfigField(
                type="bool",
                default=False,
                label="Visa sponsorship only",
                description="Only list jobs that offer visa sponsorship",
            ),
        }

    def base_params(self) -> Dict[str, Any]:
        if self.config.visa_sponsorship:
            return {"visa_sponsorship": "true"}
        return {}

    def page_size(self):
        return None

    def unique_id(self, raw: Dict[str, Any]) -> str:
        slug = (raw.get("slug") or "").strip()
        if slug:
            return slug
        url = (raw.get("url") or "").strip()
        return stable_id(self.id, url) if url else ""

    @staticmethod
    def _extract_salary(payload: Dict[str, Any]) -> str:
        """Return the salary string, or '' if missing/empty."""
        val = payload.get("salary_range") or payload.get("salary") or payload.get("compensation")
        if isinstance(val, (int, float)):
            return str(val)
        if isinstance(val, str):
            return val.strip()
        return ""

    def normalize(self, raw: Dict[str, Any]) -> CanonicalRecord:
        url = (raw.get("url") or "").strip()
        location = (raw.get("location") or "").strip()
        job_types = raw.get("job_types") or []

        return CanonicalRecord(
            vacancy_reference=self.unique_id(raw),
            vacancy_url=url,
            provider_id=self.id,
            title=(raw.get("title") or "").strip(),
            description=clean_description(raw.get("description")),
            employer_name=(raw.get("company_name") or raw.get("company") or "").strip(),
            addresses=[Address(address_line1=location)] if location else [],
            primary_address=Address(address_line1=location),
            wage_text=self._extract_salary(raw),
            employment_type=", ".join(str(t) for t in job_types),
            skills_required=uniq_preserve_order(str(t) for t in raw.get("tags") or []),
            # Arbeitnow sends epoch seconds; the model parses them.
            posted_date=raw.get("created_at"),
            apply_url=url,
            is_national=bool(raw.get("remote", False)),
            raw_data=raw,
        )
