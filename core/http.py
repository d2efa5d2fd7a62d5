"""HTTP client bound to an optional upstream proxy.

Scripts (and the CAPTCHA adapter) reach the network only through this
module.  A client is a thin wrapper around :class:`aiohttp.ClientSession`:

* **SOCKS5** proxies are handled by an :mod:`aiohttp_socks` connector.
* **HTTP / HTTPS** proxies are passed per request via aiohttp's
  ``proxy=`` argument.
* A proxy that cannot be used is *not* fatal: a warning is logged and the
  client falls back to a direct connection.

Usage::

    async with create_client(proxy) as client:
        resp = await client.get("https://httpbin.org/ip")
        print(resp.status, resp.data)
"""

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional, Union
from urllib.parse import quote

import aiohttp
from aiohttp_socks import ProxyConnector

from core.config import ProxyRef, ProxyType

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 30.0

ProxyLike = Union[ProxyRef, Mapping[str, Any]]


@dataclass
class HttpResponse:
    """Fully-read response returned by :class:`HttpClient`.

    Attributes:
        status: HTTP status code.
        url: Final URL after redirects.
        headers: Response headers.
        text: Raw body text.
        data: Decoded JSON body when the response is JSON, else ``text``.
    """

    status: int
    url: str
    headers: Dict[str, str] = field(default_factory=dict)
    text: str = ""
    data: Any = None

    @property
    def ok(self) -> bool:
        """``True`` for 2xx/3xx status codes."""
        return self.status < 400


def _proxy_fields(proxy: ProxyLike) -> Dict[str, Any]:
    if isinstance(proxy, ProxyRef):
        return proxy.model_dump()
    return dict(proxy)


def _proxy_type(fields: Mapping[str, Any]) -> ProxyType:
    raw = fields.get("type") or ProxyType.HTTP
    if isinstance(raw, ProxyType):
        return raw
    try:
        return ProxyType(str(raw).upper())
    except ValueError:
        return ProxyType.HTTP


def format_proxy_url(proxy: Optional[ProxyLike]) -> Optional[str]:
    """Build ``scheme://[user[:pass]@]host:port`` from a proxy description.

    Args:
        proxy: A :class:`ProxyRef` or a mapping with the same keys.

    Returns:
        The proxy URL, or ``None`` if *proxy* is empty or lacks a host or
        port.  Credentials are percent-encoded.
    """
    if not proxy:
        return None
    fields = _proxy_fields(proxy)
    host = fields.get("host")
    port = fields.get("port")
    if not host or not port:
        return None

    proxy_type = _proxy_type(fields)
    if proxy_type is ProxyType.SOCKS5:
        scheme = "socks5"
    elif proxy_type is ProxyType.HTTPS:
        scheme = "https"
    else:
        scheme = "http"

    auth = ""
    username = fields.get("username")
    if username:
        password = fields.get("password")
        if password:
            auth = f"{quote(str(username), safe='')}:{quote(str(password), safe='')}@"
        else:
            auth = f"{quote(str(username), safe='')}@"

    return f"{scheme}://{auth}{host}:{port}"


class HttpClient:
    """Async HTTP client routed through an optional proxy.

    The underlying session is created lazily on first request and must be
    released with :meth:`close` (or by using the client as an async
    context manager).
    """

    def __init__(
        self,
        proxy: Optional[ProxyLike] = None,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        headers: Optional[Dict[str, str]] = None,
    ) -> None:
        """Initialise the client.

        Args:
            proxy: Optional proxy description.
            timeout: Total per-request timeout in seconds.
            headers: Default headers sent with every request.
        """
        self.proxy_url = format_proxy_url(proxy)
        self.proxy_type = _proxy_type(_proxy_fields(proxy)) if proxy else None
        self.timeout = timeout
        self.headers = dict(headers or {})
        self._session: Optional[aiohttp.ClientSession] = None
        self._request_proxy: Optional[str] = None

        if proxy and not self.proxy_url:
            logger.warning(
                "Proxy configuration is incomplete; using a direct connection"
            )

    def _build_connector(self) -> Optional[aiohttp.BaseConnector]:
        """Return the connector for SOCKS proxies, or ``None``.

        Also decides which proxy URL (if any) is passed per request.
        """
        if not self.proxy_url:
            return None
        if self.proxy_type is ProxyType.SOCKS5:
            try:
                return ProxyConnector.from_url(self.proxy_url)
            except ValueError as e:
                logger.warning(
                    "Invalid SOCKS proxy (%s); using a direct connection", e,
                )
                return None
        self._request_proxy = self.proxy_url
        return None

    async def _get_session(self) -> aiohttp.ClientSession:
        """Return the open session, creating it on first use."""
        if not self._session or self._session.closed:
            self._session = aiohttp.ClientSession(
                connector=self._build_connector(),
                timeout=aiohttp.ClientTimeout(total=self.timeout),
                headers=self.headers,
            )
        return self._session

    async def request(
        self,
        method: str,
        url: str,
        *,
        params: Optional[Mapping[str, Any]] = None,
        json_body: Any = None,
        data: Any = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> HttpResponse:
        """Send a request and read the whole response.

        Args:
            method: HTTP verb.
            url: Target URL.
            params: Query string parameters.
            json_body: Body serialised as JSON.
            data: Raw or form body.
            headers: Extra headers for this request.

        Returns:
            The read :class:`HttpResponse`.

        Raises:
            aiohttp.ClientError: On connection or protocol failures.
            asyncio.TimeoutError: When the request exceeds the timeout.
        """
        session = await self._get_session()
        async with session.request(
            method.upper(),
            url,
            params=params,
            json=json_body,
            data=data,
            headers=headers,
            proxy=self._request_proxy,
        ) as resp:
            text = await resp.text()
            body: Any = text
            if "json" in resp.headers.get("Content-Type", "").lower():
                try:
                    body = json.loads(text) if text else None
                except ValueError:
                    logger.debug("Response from %s is not valid JSON", url)
            return HttpResponse(
                status=resp.status,
                url=str(resp.url),
                headers=dict(resp.headers),
                text=text,
                data=body,
            )

    async def get(self, url: str, **kwargs: Any) -> HttpResponse:
        return await self.request("GET", url, **kwargs)

    async def post(self, url: str, json_body: Any = None, **kwargs: Any) -> HttpResponse:
        return await self.request("POST", url, json_body=json_body, **kwargs)

    async def put(self, url: str, json_body: Any = None, **kwargs: Any) -> HttpResponse:
        return await self.request("PUT", url, json_body=json_body, **kwargs)

    async def delete(self, url: str, **kwargs: Any) -> HttpResponse:
        return await self.request("DELETE", url, **kwargs)

    async def close(self) -> None:
        """Close the underlying aiohttp session."""
        if self._session and not self._session.closed:
            await self._session.close()

    async def __aenter__(self) -> "HttpClient":
        return self

    async def __aexit__(
        self,
        exc_type: Optional[type],
        exc_val: Optional[BaseException],
        exc_tb: Optional[Any],
    ) -> None:
        await self.close()


def create_client(
    proxy: Optional[ProxyLike] = None, **options: Any,
) -> HttpClient:
    """Create an :class:`HttpClient` routed through *proxy* (if any).

    Args:
        proxy: Optional proxy description.
        **options: Forwarded to :class:`HttpClient` (``timeout``,
            ``headers``).

    Returns:
        A new, not yet connected client.
    """
    return HttpClient(proxy, **options)


# One-shot convenience verbs: a fresh client per call, no pooling.

async def get(url: str, proxy: Optional[ProxyLike] = None, **options: Any) -> HttpResponse:
    async with create_client(proxy, **options) as client:
        return await client.get(url)


async def post(
    url: str, json_body: Any = None, proxy: Optional[ProxyLike] = None, **options: Any,
) -> HttpResponse:
    async with create_client(proxy, **options) as client:
        return await client.post(url, json_body)


async def put(
    url: str, json_body: Any = None, proxy: Optional[ProxyLike] = None, **options: Any,
) -> HttpResponse:
    async with create_client(proxy, **options) as client:
        return await client.put(url, json_body)


async def delete(url: str, proxy: Optional[ProxyLike] = None, **options: Any) -> HttpResponse:
    async with create_client(proxy, **options) as client:
        return await client.delete(url)
