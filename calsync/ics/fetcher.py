"""HTTP client for downloading remote iCalendar feeds."""

import asyncio
import ipaddress
import logging
from typing import Any, Optional
from urllib.parse import urlparse

import httpx

from .exceptions import ICSAuthError, ICSFetchError, ICSNetworkError, ICSTimeoutError
from .models import ICSResponse

logger = logging.getLogger(__name__)

_WEBCAL_SCHEMES = {"webcal": "https", "webcals": "https"}


def normalize_calendar_url(url: str) -> str:
    """Rewrite ``webcal://`` style URLs to ``https://``.

    Args:
        url: Subscription URL as entered by the user

    Returns:
        URL with an HTTP(S) scheme
    """
    stripped = url.strip()
    scheme, sep, rest = stripped.partition("://")
    if sep and scheme.lower() in _WEBCAL_SCHEMES:
        return f"{_WEBCAL_SCHEMES[scheme.lower()]}://{rest}"
    return stripped


def _decode_numeric_host(hostname: str) -> Optional[ipaddress.IPv4Address]:
    """Decode decimal (2130706433) or hex (0x7f000001) IPv4 encodings."""
    try:
        if hostname.isdigit():
            value = int(hostname)
        elif hostname.lower().startswith("0x"):
            value = int(hostname, 16)
        else:
            return None
    except (ValueError, OverflowError):
        return None
    if 0 <= value <= 0xFFFFFFFF:
        return ipaddress.IPv4Address(value)
    return None


class ICSFetcher:
    """Async HTTP client for downloading iCalendar documents."""

    def __init__(self, settings: Any, transport: Optional[httpx.AsyncBaseTransport] = None):
        """Initialize fetcher.

        Args:
            settings: Application settings (timeouts, retries, URL policy)
            transport: Optional httpx transport, used by tests to stub the network
        """
        self.settings = settings
        self.transport = transport
        self.client: Optional[httpx.AsyncClient] = None

        logger.debug("ICS fetcher initialized")

    async def __aenter__(self) -> "ICSFetcher":
        """Async context manager entry."""
        await self._ensure_client()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        """Async context manager exit."""
        await self.close()

    async def _ensure_client(self) -> None:
        """Ensure HTTP client exists."""
        if self.client is None or self.client.is_closed:
            timeout = httpx.Timeout(
                connect=10.0, read=self.settings.request_timeout, write=10.0, pool=30.0
            )

            self.client = httpx.AsyncClient(
                timeout=timeout,
                follow_redirects=True,
                transport=self.transport,
                headers={
                    "User-Agent": f"{self.settings.app_name}/1.0 ICS-Client",
                    "Accept": "text/calendar, text/plain, */*",
                    "Accept-Charset": "utf-8",
                },
            )

    async def close(self) -> None:
        """Close HTTP client."""
        if self.client and not self.client.is_closed:
            await self.client.aclose()

    def validate_url(self, url: str) -> bool:
        """Reject URLs that would let a subscription reach internal services.

        Only HTTP(S) is allowed. Literal private, loopback and link-local
        addresses (including decimal and hex encoded IPv4) and ``localhost`` are
        blocked unless ``allow_private_urls`` is enabled.

        Args:
            url: Fully normalized URL

        Returns:
            True if the URL may be fetched
        """
        parsed = urlparse(url)

        if parsed.scheme not in ("http", "https"):
            logger.warning("Blocked non-HTTP(S) calendar URL scheme: %s", parsed.scheme)
            return False

        hostname = parsed.hostname
        if not hostname:
            logger.warning("Blocked calendar URL with empty hostname")
            return False

        if getattr(self.settings, "allow_private_urls", False):
            return True

        try:
            address: Optional[Any] = ipaddress.ip_address(hostname)
        except ValueError:
            address = _decode_numeric_host(hostname)

        if address is not None and (
            address.is_private or address.is_loopback or address.is_link_local
        ):
            logger.warning("Blocked private/loopback calendar host: %s", hostname)
            return False

        if hostname.lower() == "localhost" or hostname.lower().endswith(".localhost"):
            logger.warning("Blocked localhost calendar host: %s", hostname)
            return False

        return True

    async def fetch(
        self, url: str, conditional_headers: Optional[dict[str, str]] = None
    ) -> ICSResponse:
        """Download a calendar document.

        Args:
            url: Calendar URL (``webcal://`` is accepted)
            conditional_headers: Optional If-None-Match / If-Modified-Since headers

        Returns:
            ICSResponse with content on success, or an unsuccessful response for
            non-auth HTTP errors and blocked URLs

        Raises:
            ICSAuthError: Remote answered 401 or 403
            ICSTimeoutError: All attempts timed out
            ICSNetworkError: All attempts failed at the transport level
            ICSFetchError: Any other unexpected failure
        """
        await self._ensure_client()
        url = normalize_calendar_url(url)

        if not self.validate_url(url):
            return ICSResponse(
                success=False, error_message="URL blocked for security reasons", status_code=403
            )

        headers: dict[str, str] = {}
        if conditional_headers:
            headers.update(conditional_headers)

        try:
            logger.debug(f"Fetching calendar from {url}")
            response = await self._make_request_with_retry("GET", url, headers)
            return self._create_response(response)

        except httpx.TimeoutException as e:
            logger.error(f"Timeout fetching calendar from {url}: {e}")
            raise ICSTimeoutError(f"Request timeout after {self.settings.request_timeout}s")

        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            logger.error(f"HTTP error fetching calendar from {url}: {status}")

            if status == 401:
                raise ICSAuthError("Authentication failed - check credentials", status)
            if status == 403:
                raise ICSAuthError("Access forbidden - insufficient permissions", status)
            return ICSResponse(
                success=False,
                status_code=status,
                error_message=f"HTTP {status}: {e.response.reason_phrase}",
                headers=dict(e.response.headers),
            )

        except httpx.NetworkError as e:
            logger.error(f"Network error fetching calendar from {url}: {e}")
            raise ICSNetworkError(f"Network error: {e}")

        except ICSFetchError:
            raise

        except Exception as e:
            logger.error(f"Unexpected error fetching calendar from {url}: {e}")
            raise ICSFetchError(f"Unexpected error: {e}")

    async def fetch_headers(
        self, url: str, conditional_headers: Optional[dict[str, str]] = None
    ) -> httpx.Response:
        """Issue a single HEAD request, without retries.

        Args:
            url: Calendar URL (``webcal://`` is accepted)
            conditional_headers: Optional validator headers

        Returns:
            Raw HTTP response, whatever its status

        Raises:
            ICSFetchError: URL is blocked
            httpx.HTTPError: Transport failure
        """
        await self._ensure_client()
        url = normalize_calendar_url(url)

        if not self.validate_url(url):
            raise ICSFetchError("URL blocked for security reasons", 403)
        if self.client is None:
            raise ICSFetchError("HTTP client not initialized")

        return await self.client.head(url, headers=conditional_headers or {})

    async def _make_request_with_retry(
        self, method: str, url: str, headers: dict[str, str]
    ) -> httpx.Response:
        """Make HTTP request with retry logic.

        Args:
            method: HTTP method
            url: URL to fetch
            headers: Request headers

        Returns:
            HTTP response
        """
        last_exception: Optional[Exception] = None

        for attempt in range(self.settings.max_retries + 1):
            try:
                if self.client is None:
                    raise ICSFetchError("HTTP client not initialized")

                response = await self.client.request(method, url, headers=headers)

                # 304 Not Modified is a successful response
                if response.status_code != 304:
                    response.raise_for_status()

                logger.debug(f"Successfully fetched {url} (attempt {attempt + 1})")
                return response

            except (httpx.TimeoutException, httpx.NetworkError) as e:
                last_exception = e

                if attempt < self.settings.max_retries:
                    backoff_time = self.settings.retry_backoff_factor**attempt
                    logger.warning(
                        f"Request failed (attempt {attempt + 1}/{self.settings.max_retries + 1}), "
                        f"retrying in {backoff_time:.1f}s: {e}"
                    )
                    await asyncio.sleep(backoff_time)
                else:
                    logger.error(f"All retry attempts failed for {url}")
                    raise

        if last_exception:
            raise last_exception
        raise ICSFetchError("Maximum retries exceeded")

    def _create_response(self, http_response: httpx.Response) -> ICSResponse:
        """Create ICSResponse from HTTP response.

        Args:
            http_response: HTTP response object

        Returns:
            ICS response object
        """
        headers = dict(http_response.headers)

        if http_response.status_code == 304:
            logger.debug("Calendar content not modified (304)")
            return ICSResponse(
                success=True,
                status_code=304,
                headers=headers,
                etag=headers.get("etag"),
                last_modified=headers.get("last-modified"),
                cache_control=headers.get("cache-control"),
            )

        content = http_response.text
        content_type = headers.get("content-type", "").lower()

        if content_type and not any(ct in content_type for ct in ("text/calendar", "text/plain")):
            logger.warning(f"Unexpected content type: {content_type}")

        if not content or not content.strip():
            logger.error("Empty calendar content received")
            return ICSResponse(
                success=False,
                status_code=http_response.status_code,
                error_message="Empty content received",
                headers=headers,
            )

        if "BEGIN:VCALENDAR" not in content:
            logger.warning("Content does not appear to be valid iCalendar format")

        logger.debug(f"Successfully fetched calendar content ({len(content)} bytes)")

        return ICSResponse(
            success=True,
            content=content,
            status_code=http_response.status_code,
            headers=headers,
            etag=headers.get("etag"),
            last_modified=headers.get("last-modified"),
            cache_control=headers.get("cache-control"),
        )

    @staticmethod
    def get_conditional_headers(
        etag: Optional[str] = None, last_modified: Optional[str] = None
    ) -> dict[str, str]:
        """Get conditional request headers for caching.

        Args:
            etag: ETag value from previous response
            last_modified: Last-Modified value from previous response

        Returns:
            Dictionary of conditional headers
        """
        headers = {}

        if etag:
            headers["If-None-Match"] = etag

        if last_modified:
            headers["If-Modified-Since"] = last_modified

        return headers
