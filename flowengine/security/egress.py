"""
Network egress guard for workflow HTTP calls.

Marketplace graphs are written by third parties and run with the
platform's network position, so every outbound request a node makes goes
through here:

- URL policy: http/https only; no loopback, link-local, cloud metadata,
  RFC1918, ``.local``/``.internal`` hosts, or explicitly denied hosts.
  Once an allow list exists only listed hosts pass. Platform, workflow
  and node lists are intersected: graph content can narrow the platform
  list but never widen it.
- Numeric hosts are read the way inet_aton reads them (`127.1`,
  `0x7f000001`, `0177.0.0.1`) before the private-range checks, and the
  default client re-checks every address a host name resolves to.
- Request hygiene: headers that carry caller identity or session context
  are stripped before sending.
- Response caps: the body is streamed and the read aborted past the byte
  cap; parsed JSON is checked for nesting depth and string length.
- Redirects are never followed blindly: each Location is re-validated
  against the same policy before the next hop.
"""

import asyncio
import ipaddress
import json
import logging
import re
import socket
from collections.abc import Awaitable, Callable, Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import urljoin, urlsplit

import httpx

from flowengine.errors import (
    EgressDeniedError,
    JsonLimitExceededError,
    NodeExecutionError,
    ResponseTooLargeError,
)
from flowengine.graph.node import RunMode

logger = logging.getLogger(__name__)

MAX_URL_LENGTH = 2000
MAX_HTTP_RESPONSE_BYTES = 10 * 1024 * 1024  # 10MB
MAX_HTTP_RESPONSE_BYTES_MARKETPLACE = 2 * 1024 * 1024  # 2MB for marketplace/demo runs
MAX_JSON_DEPTH = 32
MAX_STRING_LENGTH = 1024 * 1024  # 1MB per parsed string value
MAX_REDIRECTS = 5

DEFAULT_DENY_HOSTS = frozenset(
    {
        "localhost",
        "127.0.0.1",
        "0.0.0.0",
        "::1",
        "169.254.169.254",
        "metadata.google.internal",
        "metadata",
    }
)

DENIED_HOST_SUFFIXES = (".local", ".internal", ".localhost")

PRIVATE_NETWORKS = (
    ipaddress.ip_network("0.0.0.0/8"),
    ipaddress.ip_network("10.0.0.0/8"),
    ipaddress.ip_network("172.16.0.0/12"),
    ipaddress.ip_network("192.168.0.0/16"),
    ipaddress.ip_network("fc00::/7"),
)

# Headers that must not leave with a workflow request (exfil risk: user context, session)
STRIP_OUTGOING_HEADERS = frozenset(
    {
        "cookie",
        "cookie2",
        "origin",
        "referer",
        "host",
        "x-forwarded-for",
        "x-forwarded-host",
        "x-forwarded-proto",
        "forwarded",
        "x-real-ip",
        "cf-connecting-ip",
        "true-client-ip",
        "sec-ch-ua",
        "sec-ch-ua-mobile",
        "sec-ch-ua-platform",
    }
)


def _normalize_hosts(hosts: Iterable[str] | str | None) -> list[str]:
    if isinstance(hosts, str):
        hosts = [hosts]
    out = []
    for entry in hosts or []:
        for host in str(entry).split(","):
            host = host.strip().lower().rstrip(".")
            if host:
                out.append(host)
    return out


@dataclass
class EgressPolicy:
    """
    Host and size policy for one run.

    ``allow_hosts`` is the platform-wide allow list, ``workflow_allowlist``
    the list the publisher declared and ``node_allowlist`` a single HTTP
    node's ``allowOnly``. Every non-empty list must contain the host, so
    any one of them switches to default-deny.
    """

    allow_hosts: list[str] = field(default_factory=list)
    deny_hosts: list[str] = field(default_factory=list)
    workflow_allowlist: list[str] = field(default_factory=list)
    node_allowlist: list[str] = field(default_factory=list)
    max_response_bytes: int = MAX_HTTP_RESPONSE_BYTES
    max_json_depth: int = MAX_JSON_DEPTH
    max_string_length: int = MAX_STRING_LENGTH
    max_redirects: int = MAX_REDIRECTS

    @classmethod
    def for_mode(cls, mode: RunMode | str, **kwargs: Any) -> "EgressPolicy":
        """Policy with the response cap appropriate to the run mode."""
        if RunMode(mode) == RunMode.MARKETPLACE:
            kwargs.setdefault("max_response_bytes", MAX_HTTP_RESPONSE_BYTES_MARKETPLACE)
        return cls(**kwargs)

    def with_node_lists(
        self,
        allow_only: Iterable[str] | str | None = None,
        deny_hosts: Iterable[str] | str | None = None,
    ) -> "EgressPolicy":
        """Copy of this policy narrowed by a node's own allow/deny lists."""
        return EgressPolicy(
            allow_hosts=list(self.allow_hosts),
            deny_hosts=self.deny_hosts + _normalize_hosts(deny_hosts),
            workflow_allowlist=list(self.workflow_allowlist),
            node_allowlist=self.node_allowlist + _normalize_hosts(allow_only),
            max_response_bytes=self.max_response_bytes,
            max_json_depth=self.max_json_depth,
            max_string_length=self.max_string_length,
            max_redirects=self.max_redirects,
        )


@dataclass
class EgressDecision:
    allowed: bool
    reason: str | None = None


_IPV4_PART = re.compile(r"0x[0-9a-f]*|0[0-7]*|[1-9][0-9]*")
_NUMERIC_LABEL = re.compile(r"0x[0-9a-f]*|[0-9]+")


def _parse_ipv4(host: str) -> ipaddress.IPv4Address | None:
    """
    Read a host the way inet_aton does: one to four dot-separated parts,
    each decimal, octal (leading 0) or hex (0x); the last part fills the
    remaining bytes. "127.1", "0x7f000001" and "0177.0.0.1" are all
    127.0.0.1.
    """
    parts = host.split(".")
    if not 1 <= len(parts) <= 4:
        return None
    values = []
    for part in parts:
        if not _IPV4_PART.fullmatch(part):
            return None
        if part.startswith("0x"):
            values.append(int(part[2:] or "0", 16))
        elif len(part) > 1 and part.startswith("0"):
            values.append(int(part, 8))
        else:
            values.append(int(part))
    *head, last = values
    if any(v > 255 for v in head) or last >= 256 ** (5 - len(values)):
        return None
    number = last
    for i, v in enumerate(head):
        number += v << (8 * (3 - i))
    return ipaddress.IPv4Address(number)


def _looks_numeric(host: str) -> bool:
    return bool(_NUMERIC_LABEL.fullmatch(host.rsplit(".", 1)[-1]))


def _parse_ip(host: str) -> ipaddress.IPv4Address | ipaddress.IPv6Address | None:
    candidate = host.strip("[]").lower()
    try:
        return ipaddress.ip_address(candidate)
    except ValueError:
        pass
    return _parse_ipv4(candidate)


def _is_blocked_ip(ip: ipaddress.IPv4Address | ipaddress.IPv6Address) -> bool:
    if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped is not None:
        ip = ip.ipv4_mapped
    if ip.is_loopback or ip.is_link_local or ip.is_unspecified or ip.is_multicast:
        return True
    return any(ip in net for net in PRIVATE_NETWORKS if ip.version == net.version)


def validate_url(url: str, policy: EgressPolicy | None = None) -> EgressDecision:
    """
    Decide whether a node may call ``url``.

    Example:
        validate_url("http://169.254.169.254/latest/meta-data")
        # EgressDecision(allowed=False, reason="Access denied: 169.254.169.254 ...")
    """
    policy = policy or EgressPolicy()
    if not isinstance(url, str) or not url.strip():
        return EgressDecision(False, "Invalid URL: empty")
    if len(url) > MAX_URL_LENGTH:
        return EgressDecision(False, f"Invalid URL: longer than {MAX_URL_LENGTH} characters")

    try:
        parts = urlsplit(url.strip())
        host = (parts.hostname or "").lower().rstrip(".")
    except ValueError as e:
        return EgressDecision(False, f"Invalid URL: {e}")

    if parts.scheme not in ("http", "https"):
        return EgressDecision(False, f"Invalid URL: scheme '{parts.scheme}' is not allowed")
    if not host:
        return EgressDecision(False, "Invalid URL: missing host")

    deny = DEFAULT_DENY_HOSTS.union(_normalize_hosts(policy.deny_hosts))
    if host in deny:
        return EgressDecision(False, f"Access denied: {host} is not allowed")

    ip = _parse_ip(host)
    if ip is None and _looks_numeric(host):
        return EgressDecision(False, f"Invalid URL: malformed IPv4 host {host}")
    if ip is not None and _is_blocked_ip(ip):
        return EgressDecision(False, f"Access denied: {host} is in a private or reserved range")
    if host.endswith(DENIED_HOST_SUFFIXES):
        return EgressDecision(False, f"Access denied: {host} is not allowed")

    for label, hosts in (
        ("platform", policy.allow_hosts),
        ("workflow", policy.workflow_allowlist),
        ("node", policy.node_allowlist),
    ):
        allow = _normalize_hosts(hosts)
        if allow and host not in allow:
            return EgressDecision(False, f"Access denied: {host} is not in the {label} allow list")

    return EgressDecision(True)


def strip_sensitive_headers(headers: Mapping[str, str] | None) -> dict[str, str]:
    """Drop headers that could leak caller identity or session context."""
    return {
        k: v for k, v in (headers or {}).items() if str(k).lower() not in STRIP_OUTGOING_HEADERS
    }


def check_json_limits(
    value: Any,
    max_depth: int = MAX_JSON_DEPTH,
    max_string_length: int = MAX_STRING_LENGTH,
) -> None:
    """Raise JsonLimitExceededError if containers nest deeper than max_depth
    or any string (value or key) is longer than max_string_length."""
    stack: list[tuple[Any, int]] = [(value, 0)]
    while stack:
        current, depth = stack.pop()
        if isinstance(current, str):
            if len(current) > max_string_length:
                raise JsonLimitExceededError(
                    f"JSON string of {len(current)} characters exceeds {max_string_length}"
                )
            continue
        if isinstance(current, dict | list):
            depth += 1
            if depth > max_depth:
                raise JsonLimitExceededError(f"JSON nesting exceeds {max_depth} levels")
            if isinstance(current, dict):
                for k, v in current.items():
                    stack.append((k, depth))
                    stack.append((v, depth))
            else:
                stack.extend((v, depth) for v in current)


def get_network_access(graph: Any) -> dict[str, Any]:
    """Summarise a graph's HTTP usage for listing pages: does it make HTTP
    calls, and to which declared hosts."""
    allowed: list[str] = []
    has_http = False
    for node in graph.nodes:
        if node.spec_id != "http-request":
            continue
        has_http = True
        allow_only = node.config.get("allowOnly")
        if isinstance(allow_only, str):
            allowed.extend(h.strip() for h in allow_only.split(",") if h.strip())
        elif isinstance(allow_only, list):
            allowed.extend(str(h).strip() for h in allow_only if str(h).strip())
    return {"has_http_request": has_http, "allowed_domains": list(dict.fromkeys(allowed))}


Resolver = Callable[[str, int], Awaitable[list[str]]]


async def resolve_host(host: str, port: int) -> list[str]:
    """Addresses ``host`` resolves to, via the event loop's getaddrinfo."""
    infos = await asyncio.get_running_loop().getaddrinfo(host, port, type=socket.SOCK_STREAM)
    return [info[4][0] for info in infos]


class ResolvingTransport(httpx.AsyncBaseTransport):
    """
    Refuses to connect when a host name resolves to a blocked address.

    validate_url only sees the name; this catches public names that point
    at loopback or private ranges.
    """

    def __init__(
        self,
        transport: httpx.AsyncBaseTransport | None = None,
        resolver: Resolver | None = None,
    ):
        self._transport = transport or httpx.AsyncHTTPTransport()
        self._resolver = resolver or resolve_host

    async def handle_async_request(self, request: httpx.Request) -> httpx.Response:
        host = request.url.host
        if _parse_ip(host) is None:
            port = request.url.port or (443 if request.url.scheme == "https" else 80)
            try:
                addresses = await self._resolver(host, port)
            except OSError as e:
                raise httpx.ConnectError(f"Could not resolve {host}: {e}", request=request) from e
            for address in addresses:
                ip = _parse_ip(address.split("%", 1)[0])
                if ip is None or _is_blocked_ip(ip):
                    logger.warning(
                        "Egress denied: %s resolves to %s",
                        host,
                        address,
                        extra={"event": "egress_denied"},
                    )
                    raise EgressDeniedError(
                        f"Access denied: {host} resolves to a private or reserved address"
                    )
        return await self._transport.handle_async_request(request)

    async def aclose(self) -> None:
        await self._transport.aclose()


@dataclass
class EgressResponse:
    """What a guarded request hands back to the node."""

    status: int
    reason: str
    headers: dict[str, str]
    data: Any
    url: str

    def to_output(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "statusText": self.reason,
            "headers": self.headers,
            "data": self.data,
        }


class EgressGuard:
    """
    Validates and performs outbound HTTP for workflow nodes.

    Example:
        guard = EgressGuard(EgressPolicy.for_mode("marketplace"))
        response = await guard.request("GET", "https://api.example.com/items")
    """

    def __init__(self, policy: EgressPolicy | None = None, client: httpx.AsyncClient | None = None):
        self.policy = policy or EgressPolicy()
        self._client = client

    @property
    def client(self) -> httpx.AsyncClient | None:
        return self._client

    def validate(self, url: str) -> EgressDecision:
        return validate_url(url, self.policy)

    def _ensure_allowed(self, url: str) -> None:
        decision = self.validate(url)
        if not decision.allowed:
            logger.warning("Egress denied: %s", decision.reason, extra={"event": "egress_denied"})
            raise EgressDeniedError(decision.reason or "Access denied")

    async def request(
        self,
        method: str,
        url: str,
        headers: Mapping[str, str] | None = None,
        body: Any = None,
        timeout: float = 30.0,
        follow_redirects: bool = True,
    ) -> EgressResponse:
        """Perform a guarded request, following only re-validated redirects.

        With follow_redirects=False the redirect response itself is returned.
        """
        method = method.upper()
        clean_headers = strip_sensitive_headers(headers)
        content: bytes | None = None
        if body is not None and method in ("POST", "PUT", "PATCH"):
            content = body.encode() if isinstance(body, str) else json.dumps(body).encode()
            clean_headers.setdefault("Content-Type", "application/json")

        if self._client is not None:
            return await self._request_with(
                self._client, method, url, clean_headers, content, timeout, follow_redirects
            )
        transport = ResolvingTransport()
        async with httpx.AsyncClient(transport=transport, follow_redirects=False) as client:
            return await self._request_with(
                client, method, url, clean_headers, content, timeout, follow_redirects
            )

    async def _request_with(
        self,
        client: httpx.AsyncClient,
        method: str,
        url: str,
        headers: dict[str, str],
        content: bytes | None,
        timeout: float,
        follow_redirects: bool = True,
    ) -> EgressResponse:
        current = url
        for _hop in range(self.policy.max_redirects + 1):
            self._ensure_allowed(current)
            request = client.build_request(
                method, current, headers=headers, content=content, timeout=timeout
            )
            response = await client.send(request, stream=True, follow_redirects=False)
            try:
                if response.is_redirect and follow_redirects:
                    current = urljoin(current, response.headers["location"])
                    if response.status_code == 303 or (
                        response.status_code in (301, 302) and method == "POST"
                    ):
                        method, content = "GET", None
                    logger.debug("Redirect %d → %s", response.status_code, current)
                    continue
                raw = await self._read_capped(response)
            finally:
                await response.aclose()
            return self._build_response(response, raw, current)

        raise EgressDeniedError(f"Too many redirects (limit {self.policy.max_redirects})")

    async def _read_capped(self, response: httpx.Response) -> bytes:
        cap = self.policy.max_response_bytes
        declared = response.headers.get("content-length")
        if declared and declared.isdigit() and int(declared) > cap:
            raise ResponseTooLargeError(f"Response of {declared} bytes exceeds cap of {cap} bytes")

        chunks: list[bytes] = []
        total = 0
        async for chunk in response.aiter_bytes():
            total += len(chunk)
            if total > cap:
                raise ResponseTooLargeError(f"Response exceeded cap of {cap} bytes")
            chunks.append(chunk)
        return b"".join(chunks)

    def _build_response(self, response: httpx.Response, raw: bytes, url: str) -> EgressResponse:
        content_type = response.headers.get("content-type", "")
        data: Any
        if "application/json" in content_type and raw:
            try:
                data = json.loads(raw)
            except RecursionError as e:
                raise JsonLimitExceededError(
                    f"JSON nesting exceeds {self.policy.max_json_depth} levels"
                ) from e
            except ValueError as e:
                raise NodeExecutionError(
                    f"Invalid JSON response: {e}", status=response.status_code
                ) from e
            check_json_limits(data, self.policy.max_json_depth, self.policy.max_string_length)
        else:
            data = raw.decode(response.encoding or "utf-8", errors="replace")

        return EgressResponse(
            status=response.status_code,
            reason=response.reason_phrase,
            headers=dict(response.headers),
            data=data,
            url=url,
        )
