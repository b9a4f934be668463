"""Provider built from an import task's own HTTP description.

Lets an operator point a task at any JSON listing API without writing a
connector: the base URL, auth, params and response paths all come from the
task. Normalization only stamps the provider id and keeps the raw payload;
the task's field mappings do the rest.
"""

from __future__ import annotations

from typing import Any, Callable, Dict, List, Optional

from ..client import FetchResult, PageResult, ProgressCallback
from ..models import AuthType, CanonicalRecord, ImportTask, PaginationType
from ..utils import resolve_path
from .base import ClientFactory, ConfigField, Provider


class TaskProvider(Provider):
    name = "Custom API"
    description = "Generic connector described by an import task."

    def __init__(self, task: ImportTask, client_factory: Optional[ClientFactory] = None) -> None:
        self.task = task
        self.id = f"task:{task.id}"
        self.name = task.name or self.name
        self.list_endpoint = task.api_endpoint
        self.method = task.api_method
        self.items_key = task.data_path or None
        self.total_key = task.total_path or None
        self.total_pages_key = task.total_pages_path or None
        self.page_param = task.page_param or "page"
        self.page_size_param = task.page_size_param or None
        super().__init__(client_factory)

    @classmethod
    def config_schema(cls) -> Dict[str, ConfigField]:
        return {}

    @property
    def paginated(self) -> bool:
        return self.task.pagination_type is not PaginationType.NONE

    def missing_required(self) -> List[str]:
        missing = []
        if not self.task.api_base_url:
            missing.append("api_base_url")
        if self.task.api_auth_type is not AuthType.NONE and not self.task.api_auth_value:
            missing.append("api_auth_value")
        if not self.task.unique_id_field:
            missing.append("unique_id_field")
        return missing

    def base_url(self) -> str:
        return self.task.api_base_url

    def default_headers(self) -> Dict[str, str]:
        headers = {str(k): str(v) for k, v in self.task.api_headers.items()}
        auth_type = self.task.api_auth_type
        if auth_type is AuthType.HEADER_KEY:
            headers[self.task.api_auth_key or "X-API-Key"] = self.task.api_auth_value
        elif auth_type is AuthType.BEARER:
            headers["Authorization"] = f"Bearer {self.task.api_auth_value}"
        return headers

    def base_params(self) -> Dict[str, Any]:
        params = dict(self.task.api_params)
        if self.task.api_auth_type is AuthType.QUERY_KEY:
            params[self.task.api_auth_key or "api_key"] = self.task.api_auth_value
        return params

    def page_size(self) -> Optional[int]:
        return self.task.page_size

    def fetch_page(self, params: Optional[Dict[str, Any]] = None) -> PageResult:
        params = dict(params or {})
        if not self.paginated:
            params.pop(self.page_param, None)
            if self.page_size_param:
                params.pop(self.page_size_param, None)
        return super().fetch_page(params)

    def fetch_all(
        self,
        *,
        max_pages: Optional[int] = None,
        should_stop: Optional[Callable[[], bool]] = None,
        on_page: Optional[ProgressCallback] = None,
    ) -> FetchResult:
        if self.paginated:
            return super().fetch_all(
                max_pages=max_pages or self.task.max_pages,
                should_stop=should_stop,
                on_page=on_page,
            )
        page = self.fetch_page()
        if on_page is not None:
            on_page(1, 1, len(page.items))
        return FetchResult(
            items=page.items,
            total=page.total if page.total is not None else len(page.items),
            pages_fetched=1,
            total_pages=1,
        )

    def unique_id(self, raw: Dict[str, Any]) -> str:
        if not self.task.unique_id_field:
            return ""
        value = resolve_path(raw, self.task.unique_id_field)
        return "" if value is None or isinstance(value, (dict, list)) else str(value).strip()

    def normalize(self, raw: Dict[str, Any]) -> CanonicalRecord:
        return CanonicalRecord(provider_id=self.id, raw_data=raw)
