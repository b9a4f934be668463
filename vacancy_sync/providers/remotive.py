"""Remotive jobs connector.

Remotive provides a public JSON endpoint that returns every matching job in a
single unpaginated response under `jobs`.

Docs: https://remotive.com/api/remote-jobs

Note: Free APIs can change; treat this as a pluggable connector.
"""

from __future__ import annotations

from typing import Any, Callable, Dict, Optional

from ..client import FetchResult, PageResult, ProgressCallback
from ..models import Address, CanonicalRecord
from ..utils import clean_description, uniq_preserve_order
from .base import ConfigField, Provider, RateLimits


class RemotiveProvider(Provider):
    """Fetch jobs from Remotive and normalize them."""

    id = "remotive"
    name = "Remotive"
    description = "Remote jobs from the Remotive public API."
    default_base_url = "https://remotive.com/api/remote-jobs"

    list_endpoint = ""
    items_key = "jobs"
    total_key = "job-count"
    total_pages_key = None
    default_rate_limits = RateLimits(requests_per_minute=4, delay_ms=1000)

    @classmethod
    def config_schema(cls) -> Dict[str, ConfigField]:
        return {
            "base_url": ConfigField(type="url", default=cls.default_base_url, label="Base URL"),
            "search": ConfigField(type="string", default="", label="Search", description="Free-text query"),
            "category": ConfigField(type="string", default="", label="Category", description="Category slug"),
            "limit": ConfigField(type="int", default=0, label="Limit", description="Soft cap, 0 for no cap"),
        }

    def base_params(self) -> Dict[str, Any]:
        params: Dict[str, Any] = {}
        for key in ("search", "category", "limit"):
            value = getattr(self.config, key)
            if value:
                params[key] = value
        return params

    def page_size(self) -> Optional[int]:
        return None

    def fetch_page(self, params: Optional[Dict[str, Any]] = None) -> PageResult:
        # No pagination: drop page params the caller may have added.
        params = {k: v for k, v in (params or {}).items() if k != self.page_param}
        return super().fetch_page(params)

    def fetch_all(
        self,
        *,
        max_pages: Optional[int] = None,
        should_stop: Optional[Callable[[], bool]] = None,
        on_page: Optional[ProgressCallback] = None,
    ) -> FetchResult:
        page = self.fetch_page()
        if on_page is not None:
            on_page(1, 1, len(page.items))
        return FetchResult(
            items=page.items,
            total=page.total if page.total is not None else len(page.items),
            pages_fetched=1,
            total_pages=1,
        )

    def normalize(self, raw: Dict[str, Any]) -> CanonicalRecord:
        location = (raw.get("candidate_required_location") or "").strip()
        url = (raw.get("url") or "").strip()
        return CanonicalRecord(
            vacancy_reference=raw.get("id"),
            vacancy_url=url,
            provider_id=self.id,
            title=(raw.get("title") or "").strip(),
            description=clean_description(raw.get("description")),
            employer_name=(raw.get("company_name") or "").strip(),
            addresses=[Address(address_line1=location)] if location else [],
            primary_address=Address(address_line1=location or "Remote"),
            wage_text=(raw.get("salary") or "").strip() if isinstance(raw.get("salary"), str) else raw.get("salary"),
            employment_type=raw.get("job_type"),
            skills_required=uniq_preserve_order(str(t) for t in raw.get("tags") or []),
            # Remotive has "publication_date" like "2024-01-01T12:34:56"
            posted_date=raw.get("publication_date"),
            apply_url=url,
            is_national=True,
            raw_data=raw,
        )
