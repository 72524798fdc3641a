"""
Core SIS configuration and the provider interface the sync engine pulls from.
"""

import os
from abc import ABC, abstractmethod
from datetime import date
from typing import Any, AsyncIterator, Dict, List, Optional

from pydantic import BaseModel, Field, ValidationError, field_validator

from attendance_sync.integrations.sis.error_handler import InvalidConfigurationError


class DateChunk(BaseModel):
    """Contiguous, inclusive sub-range of a sync's overall date range."""
    start: date
    end: date

    model_config = {"frozen": True}

    @property
    def days(self) -> int:
        return (self.end - self.start).days + 1

    def __str__(self) -> str:
        return f"{self.start.isoformat()}..{self.end.isoformat()}"


class AttendancePage(BaseModel):
    """One page of raw remote attendance records."""
    records: List[Dict[str, Any]] = Field(default_factory=list)
    next_page_token: Optional[str] = None

    @property
    def done(self) -> bool:
        return self.next_page_token is None


class SISProviderConfig(BaseModel):
    """Configuration for the Aeries SIS provider."""
    name: str = "aeries"
    base_url: str
    api_key: str
    district_code: Optional[str] = None
    certificate_path: Optional[str] = None
    private_key_path: Optional[str] = None
    ca_cert_path: Optional[str] = None
    timeout: float = 30.0
    page_size: int = Field(default=500, ge=1)
    rate_limit: int = Field(default=60, ge=1, le=300)  # requests per minute
    rate_limit_jitter: float = Field(default=0.25, ge=0)

    @field_validator('base_url')
    @classmethod
    def validate_base_url(cls, v):
        if not v.startswith(('http://', 'https://')):
            raise ValueError('Base URL must start with http:// or https://')
        return v.rstrip('/')

    @field_validator('api_key')
    @classmethod
    def validate_api_key(cls, v):
        if not v or not v.strip():
            raise ValueError('API key is required')
        return v.strip()

    @field_validator('certificate_path', 'private_key_path', 'ca_cert_path')
    @classmethod
    def validate_readable_file(cls, v):
        if not v:
            return None
        if not os.path.isfile(v) or not os.access(v, os.R_OK):
            raise ValueError(f'Certificate file is not readable: {v}')
        return v

    @property
    def uses_client_certificate(self) -> bool:
        return bool(self.certificate_path)

    @classmethod
    def from_settings(cls, settings) -> "SISProviderConfig":
        """
        Build the provider configuration from application settings.

        Raises:
            InvalidConfigurationError: If any provider setting is invalid
        """
        try:
            return cls(
                base_url=settings.AERIES_API_BASE_URL,
                api_key=settings.AERIES_API_KEY,
                district_code=settings.AERIES_DISTRICT_CODE or None,
                certificate_path=settings.AERIES_CERTIFICATE_PATH or None,
                private_key_path=settings.AERIES_PRIVATE_KEY_PATH or None,
                ca_cert_path=settings.AERIES_CA_CERT_PATH or None,
                timeout=settings.AERIES_REQUEST_TIMEOUT_SECONDS,
                page_size=settings.AERIES_PAGE_SIZE,
                rate_limit=settings.AERIES_RATE_LIMIT_PER_MINUTE,
                rate_limit_jitter=settings.AERIES_RATE_LIMIT_JITTER_SECONDS,
            )
        except ValidationError as e:
            problems = "; ".join(
                f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
            )
            raise InvalidConfigurationError(
                f"Invalid SIS provider configuration: {problems}",
                details={'errors': [err['msg'] for err in e.errors()]},
                original_exception=e
            )


class BaseSISProvider(ABC):
    """
    Base class for remote attendance sources.

    Implementations are async context managers owning their transport.
    """

    name = "sis"

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        return None

    @abstractmethod
    async def fetch_page(
        self,
        school_code: str,
        chunk: DateChunk,
        page_token: Optional[str] = None
    ) -> AttendancePage:
        """Fetch one page of records for a single (school, chunk) pair."""
        pass

    async def health_check(self) -> bool:
        """Default health check implementation."""
        return True

    async def iter_pages(
        self,
        school_code: str,
        chunk: DateChunk,
        executor=None
    ) -> AsyncIterator[AttendancePage]:
        """
        Yield the pages of one (school, chunk) pair in order.

        Args:
            school_code: Remote school code
            chunk: Date chunk to fetch
            executor: Optional RetryPolicy wrapping each page fetch
        """
        page_token: Optional[str] = None
        while True:
            fetch = lambda token=page_token: self.fetch_page(school_code, chunk, token)  # noqa: E731
            if executor is not None:
                page = await executor.execute(
                    fetch, stage="fetch",
                    description=f"{self.name} page {school_code} {chunk} [{page_token or 'first'}]"
                )
            else:
                page = await fetch()
            yield page
            if page.done:
                return
            page_token = page.next_page_token
