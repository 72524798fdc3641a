"""
Aeries SIS API integration client.
"""

import asyncio
import logging
import ssl
import uuid
from typing import Any, Dict, List, Optional
from urllib.parse import urljoin

import aiohttp

from attendance_sync.core.sis_config import (
    AttendancePage, BaseSISProvider, DateChunk, SISProviderConfig
)
from attendance_sync.gateway.throttler import RequestThrottler, ThrottleConfig
from attendance_sync.integrations.sis.error_handler import SISTransportError


logger = logging.getLogger(__name__)


def parse_retry_after(value: Optional[str]) -> Optional[float]:
    """Parse a Retry-After header given in seconds."""
    if not value:
        return None
    try:
        seconds = float(value)
    except (TypeError, ValueError):
        return None
    return seconds if seconds >= 0 else None


class AeriesProvider(BaseSISProvider):
    """
    Aeries SIS attendance source.

    Every call passes through the request throttler first and is scoped to a
    single (school, date chunk) pair. Non-2xx responses and transport failures
    are raised as SISTransportError for the error classifier to triage.
    """

    name = "aeries"

    def __init__(
        self,
        config: SISProviderConfig,
        throttler: Optional[RequestThrottler] = None,
        session: Optional[aiohttp.ClientSession] = None
    ):
        self.config = config
        self.throttler = throttler or RequestThrottler(ThrottleConfig(
            provider=self.name,
            max_requests_per_minute=config.rate_limit,
            jitter_seconds=config.rate_limit_jitter,
        ))
        self._http_session: Optional[aiohttp.ClientSession] = session
        self._owns_session = session is None
        self.total_api_calls = 0

    async def __aenter__(self):
        """Async context manager entry."""
        if self._http_session is None:
            timeout = aiohttp.ClientTimeout(total=self.config.timeout)
            connector = aiohttp.TCPConnector(ssl=self._build_ssl_context())
            self._http_session = aiohttp.ClientSession(
                timeout=timeout,
                connector=connector,
                headers=self._default_headers()
            )
            self._owns_session = True
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Async context manager exit."""
        if self._http_session and self._owns_session:
            await self._http_session.close()
            self._http_session = None

    def _default_headers(self) -> Dict[str, str]:
        headers = {
            'User-Agent': 'Attendance-Sync/1.0',
            'Accept': 'application/json',
            'AERIES-CERT': self.config.api_key,
        }
        if self.config.district_code:
            headers['X-District-Code'] = self.config.district_code
        return headers

    def _build_ssl_context(self):
        """Client-certificate TLS context, or the default verification when none is configured."""
        if not self.config.uses_client_certificate and not self.config.ca_cert_path:
            return True

        context = ssl.create_default_context(cafile=self.config.ca_cert_path)
        if self.config.uses_client_certificate:
            context.load_cert_chain(
                self.config.certificate_path,
                keyfile=self.config.private_key_path
            )
        return context

    def _url(self, endpoint: str) -> str:
        return urljoin(self.config.base_url + '/', endpoint.lstrip('/'))

    async def fetch_page(
        self,
        school_code: str,
        chunk: DateChunk,
        page_token: Optional[str] = None
    ) -> AttendancePage:
        """
        Get one page of attendance records for a school and date chunk.

        Args:
            school_code: Aeries school code
            chunk: Inclusive date range of the request
            page_token: Continuation token of the previous page, None for the first

        Returns:
            The page; an empty page is a terminal page
        """
        params = {
            'school': school_code,
            'start': chunk.start.isoformat(),
            'end': chunk.end.isoformat(),
            'pageSize': self.config.page_size,
        }
        if page_token:
            params['page'] = page_token

        body = await self._make_api_request('GET', '/attendance', params=params)
        page = self._parse_page(body)

        logger.debug(
            f"Retrieved {len(page.records)} attendance records from Aeries "
            f"for school {school_code} {chunk} (page {page_token or 'first'})"
        )
        return page

    def _parse_page(self, body: Any) -> AttendancePage:
        if body is None:
            return AttendancePage()
        if isinstance(body, list):
            return AttendancePage(records=body)

        records: List[Dict[str, Any]] = (
            body.get('records') or body.get('data') or body.get('attendance') or []
        )
        next_token = body.get('nextPageToken') or body.get('next_page_token')
        if not records or body.get('hasMore') is False:
            next_token = None
        return AttendancePage(
            records=records,
            next_page_token=str(next_token) if next_token is not None else None
        )

    async def health_check(self) -> bool:
        """
        Check that the Aeries API is reachable with the configured credential.

        Raises:
            SISTransportError: If the API answers with a non-2xx status or cannot be reached
        """
        await self._make_api_request('GET', '/health')
        logger.info("Aeries API health check passed")
        return True

    async def _make_api_request(
        self,
        method: str,
        endpoint: str,
        params: Optional[Dict] = None,
        **kwargs
    ) -> Any:
        """Make a throttled API request to Aeries."""
        if not self._http_session:
            raise RuntimeError("HTTP session not initialized")

        await self.throttler.acquire()

        url = self._url(endpoint)
        headers = dict(kwargs.pop('headers', {}))
        headers['X-Request-ID'] = uuid.uuid4().hex

        # Track API call
        self.total_api_calls += 1

        try:
            async with self._http_session.request(
                method,
                url,
                params=params,
                headers=headers,
                **kwargs
            ) as response:
                if response.status == 429:
                    retry_after = parse_retry_after(response.headers.get('Retry-After'))
                    if retry_after:
                        await self.throttler.defer(retry_after)
                    raise SISTransportError(
                        f"Aeries rate limit exceeded for {endpoint}",
                        status=429,
                        retry_after=retry_after
                    )

                if not 200 <= response.status < 300:
                    error_text = await response.text()
                    raise SISTransportError(
                        f"Aeries API error {response.status} for {endpoint}: {error_text[:200]}",
                        status=response.status,
                        retry_after=parse_retry_after(response.headers.get('Retry-After'))
                    )

                if response.status == 204:
                    return None
                try:
                    return await response.json(content_type=None)
                except ValueError as e:
                    raise SISTransportError(
                        f"Aeries returned a malformed body for {endpoint}: {e}",
                        status=response.status,
                        original_exception=e
                    ) from e

        except SISTransportError:
            raise
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as e:
            raise SISTransportError(
                f"Aeries request to {endpoint} failed: {type(e).__name__}: {e}",
                original_exception=e
            ) from e
