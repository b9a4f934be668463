"""
Shared fixtures: fake time, mock HTTP sources and in-memory collaborators.
"""
from __future__ import annotations

from typing import Any, Callable, Dict, List, Optional

import httpx
import pytest

from vacancy_sync.client import ApiClient
from vacancy_sync.config import Settings
from vacancy_sync.models import ImportTask
from vacancy_sync.providers import ProviderRegistry
from vacancy_sync.storage import InMemoryRecordRepository, InMemoryRunRecorder, InMemoryTaskStore


class FakeClock:
    """Monotonic clock that only moves when something sleeps."""

    def __init__(self) -> None:
        self.now = 1000.0
        self.sleeps: List[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


class PagedSource:
    """Mock API serving `items` in pages, recording every request it sees."""

    def __init__(
        self,
        items: List[Dict[str, Any]],
        page_size: int = 2,
        items_key: str = "data",
        page_param: str = "page",
        report_total_pages: Optional[int] = None,
    ) -> None:
        self.items = items
        self.page_size = page_size
        self.items_key = items_key
        self.page_param = page_param
        self.report_total_pages = report_total_pages
        self.requests: List[httpx.Request] = []

    @property
    def total_pages(self) -> int:
        return max(1, -(-len(self.items) // self.page_size))

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        page = int(request.url.params.get(self.page_param, "1"))
        start = (page - 1) * self.page_size
        body = {
            self.items_key: self.items[start : start + self.page_size],
            "total": len(self.items),
            "totalPages": self.report_total_pages if self.report_total_pages is not None else self.total_pages,
        }
        return httpx.Response(200, json=body)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        retry_max=3,
        retry_delay_ms=0,
        rate_limit_delay_ms=0,
        cache_enabled=False,
        retention_days=7,
    )


@pytest.fixture
def make_client(clock: FakeClock) -> Callable[..., ApiClient]:
    """Build an ApiClient whose HTTP is served by `handler` and whose sleeps are fake."""

    def _make(handler: Callable[[httpx.Request], httpx.Response], base_url: str = "https://api.test", **kwargs) -> ApiClient:
        kwargs.setdefault("delay_ms", 0)
        kwargs.setdefault("retry_delay_ms", 0)
        return ApiClient(
            base_url,
            transport=httpx.MockTransport(handler),
            sleep=clock.sleep,
            clock=clock,
            **kwargs,
        )

    return _make


@pytest.fixture
def client_factory_for(clock: FakeClock):
    """Return a provider client factory bound to a mock handler."""

    def _factory(handler: Callable[[httpx.Request], httpx.Response], **kwargs):
        def factory(provider) -> ApiClient:
            return ApiClient(
                provider.base_url(),
                headers=provider.default_headers(),
                transport=httpx.MockTransport(handler),
                sleep=clock.sleep,
                clock=clock,
                delay_ms=kwargs.get("delay_ms", 0),
                retry_delay_ms=0,
                retry_max=kwargs.get("retry_max", 2),
            )

        return factory

    return _factory


@pytest.fixture
def repository() -> InMemoryRecordRepository:
    return InMemoryRecordRepository()


@pytest.fixture
def recorder() -> InMemoryRunRecorder:
    return InMemoryRunRecorder()


@pytest.fixture
def registry() -> ProviderRegistry:
    return ProviderRegistry()


def make_task(task_id: str = "t1", **overrides: Any) -> ImportTask:
    values: Dict[str, Any] = dict(
        id=task_id,
        name="Test task",
        status="active",
        api_base_url="https://api.test",
        api_endpoint="/vacancies",
        data_path="data",
        page_param="page",
        page_size_param="page_size",
        page_size=2,
        field_mappings={"title": "title", "vacancy_reference": "vacancyReference"},
        unique_id_field="vacancyReference",
    )
    values.update(overrides)
    return ImportTask(**values)


@pytest.fixture
def task_store() -> InMemoryTaskStore:
    return InMemoryTaskStore()
