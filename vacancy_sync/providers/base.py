"""Base classes for provider connectors.

A provider knows how to talk to one vacancy source: its config schema, the
endpoint and response shape to page through, and how to turn one raw item into
a `CanonicalRecord`. HTTP itself is delegated to `ApiClient`, built by an
injected client factory.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, ClassVar, Dict, List, Optional, Tuple, Type

from pydantic import BaseModel, ConfigDict, create_model

from ..client import ApiClient, FetchResult, PageResult, ProgressCallback
from ..config import Settings, get_settings
from ..errors import ConfigurationError, FetchError
from ..logging import get_logger
from ..models import CanonicalRecord, ConnectionTestResult
from ..utils import flatten_keys

log = get_logger("provider")

FIELD_TYPES = ("string", "url", "int", "bool", "array")

_PY_TYPES: Dict[str, Any] = {
    "string": str,
    "url": str,
    "int": int,
    "bool": bool,
    "array": List[Any],
}

_ZERO: Dict[str, Any] = {"string": "", "url": "", "int": 0, "bool": False}


@dataclass(frozen=True)
class ConfigField:
    """One entry in a provider's configuration schema."""

    type: str = "string"
    required: bool = False
    default: Any = None
    label: str = ""
    description: str = ""

    def __post_init__(self) -> None:
        if self.type not in FIELD_TYPES:
            raise ValueError(f"Unknown config field type: {self.type}")

    def zero(self) -> Any:
        if self.default is not None:
            return list(self.default) if self.type == "array" else self.default
        return [] if self.type == "array" else _ZERO[self.type]

    def sanitize(self, value: Any) -> Any:
        """Coerce a raw input value to this field's declared type."""
        if value is None:
            return self.zero()
        if self.type == "string":
            return str(value).strip()
        if self.type == "url":
            text = str(value).strip()
            return text.rstrip("/") if text.startswith(("http://", "https://")) else ""
        if self.type == "int":
            try:
                return int(str(value).strip())
            except ValueError:
                return self.zero()
        if self.type == "bool":
            if isinstance(value, str):
                return value.strip().lower() in ("1", "true", "yes", "on")
            return bool(value)
        if isinstance(value, str):
            return [part.strip() for part in value.split(",") if part.strip()]
        if isinstance(value, (list, tuple)):
            return list(value)
        return [value]


@dataclass(frozen=True)
class RateLimits:
    requests_per_minute: int = 60
    delay_ms: int = 200


ClientFactory = Callable[["Provider"], ApiClient]


def default_client_factory(settings: Optional[Settings] = None, **client_kwargs) -> ClientFactory:
    """Return a factory that builds an `ApiClient` for a provider from settings."""

    def factory(provider: "Provider") -> ApiClient:
        return ApiClient.from_settings(
            provider.base_url(),
            settings or get_settings(),
            headers=provider.default_headers(),
            rate_limits=provider.rate_limits(),
            **client_kwargs,
        )

    return factory


class Provider(ABC):
    """Abstract base class for a vacancy source connector.

    Subclasses declare `id`, `name`, `default_base_url`, the response shape
    (`list_endpoint`, `items_key`, ...) and implement `config_schema()` and
    `normalize()`. Everything else has a sensible default.
    """

    id: ClassVar[str]
    name: ClassVar[str]
    description: ClassVar[str] = ""
    default_base_url: ClassVar[str] = ""

    list_endpoint: ClassVar[str] = ""
    single_endpoint: ClassVar[Optional[str]] = None
    method: ClassVar[str] = "GET"
    items_key: ClassVar[Optional[str]] = "data"
    total_key: ClassVar[Optional[str]] = "total"
    total_pages_key: ClassVar[Optional[str]] = "totalPages"
    page_param: ClassVar[str] = "page"
    page_size_param: ClassVar[Optional[str]] = None
    default_rate_limits: ClassVar[RateLimits] = RateLimits()

    _config_models: ClassVar[Dict[Tuple[type, Tuple[str, ...]], Type[BaseModel]]] = {}

    def __init__(self, client_factory: Optional[ClientFactory] = None) -> None:
        self._client_factory = client_factory or default_client_factory()
        self._client: Optional[ApiClient] = None
        self._config: BaseModel = self._build_config({})

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    @classmethod
    @abstractmethod
    def config_schema(cls) -> Dict[str, ConfigField]:
        """Ordered mapping of config field name -> declaration."""
        raise NotImplementedError

    @classmethod
    def config_model(cls) -> Type[BaseModel]:
        """Pydantic model mirroring `config_schema()`, built once per class."""
        schema = cls.config_schema()
        key = (cls, tuple(schema))
        model = cls._config_models.get(key)
        if model is None:
            fields = {name: (_PY_TYPES[spec.type], spec.zero()) for name, spec in schema.items()}
            model = create_model(
                f"{cls.__name__}Config",
                __config__=ConfigDict(frozen=True, extra="ignore"),
                **fields,
            )
            cls._config_models[key] = model
        return model

    def _build_config(self, raw: Dict[str, Any]) -> BaseModel:
        values: Dict[str, Any] = {}
        for name, spec in self.config_schema().items():
            values[name] = spec.sanitize(raw[name]) if name in raw else spec.zero()
        return self.config_model()(**values)

    def set_config(self, raw: Dict[str, Any]) -> BaseModel:
        """Validate raw input against the schema and store the sanitized config.

        Unknown keys are ignored; missing keys take their declared default.
        """
        self._config = self._build_config(dict(raw or {}))
        self.close()
        return self._config

    @property
    def config(self) -> BaseModel:
        return self._config

    def missing_required(self) -> List[str]:
        missing = []
        for name, spec in self.config_schema().items():
            value = getattr(self._config, name)
            # Zero values count as unset, including 0 and False.
            if spec.required and not value:
                missing.append(name)
        return missing

    def is_configured(self) -> bool:
        return not self.missing_required()

    def ensure_configured(self) -> None:
        missing = self.missing_required()
        if missing:
            raise ConfigurationError(
                f"Provider '{self.id}' is not configured: missing {', '.join(missing)}",
                details={"provider_id": self.id, "missing": missing},
            )

    # ------------------------------------------------------------------
    # HTTP shape
    # ------------------------------------------------------------------

    def base_url(self) -> str:
        return getattr(self._config, "base_url", "") or self.default_base_url

    def default_headers(self) -> Dict[str, str]:
        return {}

    def base_params(self) -> Dict[str, Any]:
        return {}

    def page_size(self) -> Optional[int]:
        size = getattr(self._config, "page_size", None)
        return size if size else None

    def rate_limits(self) -> RateLimits:
        return self.default_rate_limits

    def supported_endpoints(self) -> Dict[str, str]:
        endpoints = {"list": self.list_endpoint or "/"}
        if self.single_endpoint:
            endpoints["single"] = self.single_endpoint
        return endpoints

    @property
    def client(self) -> ApiClient:
        if self._client is None:
            self._client = self._client_factory(self)
        return self._client

    def close(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None

    # ------------------------------------------------------------------
    # Fetching
    # ------------------------------------------------------------------

    def fetch_page(self, params: Optional[Dict[str, Any]] = None) -> PageResult:
        """Fetch a single page. `params` override the provider's base params."""
        self.ensure_configured()
        merged = {**self.base_params(), **(params or {})}
        return self.client.fetch_page(
            self.list_endpoint,
            merged,
            items_key=self.items_key,
            total_key=self.total_key,
            total_pages_key=self.total_pages_key,
            page_size=self.page_size(),
            method=self.method,
        )

    def fetch_all(
        self,
        *,
        max_pages: Optional[int] = None,
        should_stop: Optional[Callable[[], bool]] = None,
        on_page: Optional[ProgressCallback] = None,
    ) -> FetchResult:
        """Fetch every page the source reports, up to `max_pages`."""
        self.ensure_configured()
        log.info(f"Fetching from {self.name} ({self.base_url()})")
        return self.client.fetch_all_pages(
            self.list_endpoint,
            self.base_params(),
            page_param=self.page_param,
            items_key=self.items_key,
            total_pages_key=self.total_pages_key,
            max_pages=max_pages,
            total_key=self.total_key,
            page_size=self.page_size(),
            page_size_param=self.page_size_param,
            method=self.method,
            should_stop=should_stop,
            on_page=on_page,
        )

    def fetch_one(self, reference: str) -> Optional[Dict[str, Any]]:
        """Fetch a single raw item by reference, or None when unsupported/not found."""
        if not self.single_endpoint:
            return None
        self.ensure_configured()
        response = self.client.get(self.single_endpoint.format(ref=reference))
        if not response.success:
            if response.status_code == 404:
                return None
            response.raise_for_error()
        return response.data if isinstance(response.data, dict) else None

    @abstractmethod
    def normalize(self, raw: Dict[str, Any]) -> CanonicalRecord:
        """Turn one raw item into a complete canonical record."""
        raise NotImplementedError

    def unique_id(self, raw: Dict[str, Any]) -> str:
        """Default dedup key for raw items when a task does not name one."""
        value = raw.get("id") if isinstance(raw, dict) else None
        return "" if value is None else str(value).strip()

    # ------------------------------------------------------------------
    # Diagnostics
    # ------------------------------------------------------------------

    def test_connection(self, sample_size: int = 3) -> ConnectionTestResult:
        missing = self.missing_required()
        if missing:
            return ConnectionTestResult(
                success=False,
                message=f"Provider not configured. Missing: {', '.join(missing)}",
            )

        params: Dict[str, Any] = {self.page_param: 1}
        if self.page_size_param:
            params[self.page_size_param] = min(sample_size, self.page_size() or sample_size)
        try:
            page = self.fetch_page(params)
        except FetchError as exc:
            log.warning(f"Connection test failed for {self.id}: {exc.message}")
            return ConnectionTestResult(success=False, message=f"Connection failed: {exc.message}")

        total = page.total if page.total is not None else len(page.items)
        sample = [item for item in page.items[:sample_size] if isinstance(item, dict)]
        return ConnectionTestResult(
            success=True,
            message=f"Connected to {self.name}. {total} records available.",
            total=total,
            total_pages=page.total_pages or 0,
            sample=sample,
            response_keys=page.response_keys,
            available_fields=flatten_keys(sample[0]) if sample else [],
        )

    def info(self) -> Dict[str, Any]:
        limits = self.rate_limits()
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "base_url": self.base_url(),
            "configured": self.is_configured(),
            "endpoints": self.supported_endpoints(),
            "rate_limits": {"requests_per_minute": limits.requests_per_minute, "delay_ms": limits.delay_ms},
        }
