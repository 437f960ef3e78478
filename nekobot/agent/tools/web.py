"""HTTP request tool with SSRF protection and an optional domain allowlist."""

import asyncio
import html
import ipaddress
import json
import re
import socket
from typing import Any
from urllib.parse import urlparse

import httpx

from nekobot.agent.tools.base import Tool
from nekobot.errors import InvalidArgumentsError, ToolExecutionError

USER_AGENT = "nekobot/0.1 (+https://github.com/nekobot)"
MAX_REDIRECTS = 5

# Private/internal networks that must never be reached from a tool call.
BLOCKED_IP_RANGES = [
    ipaddress.ip_network("127.0.0.0/8"),
    ipaddress.ip_network("10.0.0.0/8"),
    ipaddress.ip_network("172.16.0.0/12"),
    ipaddress.ip_network("192.168.0.0/16"),
    ipaddress.ip_network("169.254.0.0/16"),   # cloud metadata
    ipaddress.ip_network("100.64.0.0/10"),
    ipaddress.ip_network("0.0.0.0/8"),
    ipaddress.ip_network("224.0.0.0/4"),
    ipaddress.ip_network("240.0.0.0/4"),
    ipaddress.ip_network("::1/128"),
    ipaddress.ip_network("fc00::/7"),
    ipaddress.ip_network("fe80::/10"),
    ipaddress.ip_network("::ffff:0:0/96"),
]

BLOCKED_HOSTNAMES = {
    "localhost",
    "localhost.localdomain",
    "metadata.google.internal",
    "metadata.goog",
    "metadata.azure.com",
    "kubernetes.default.svc",
    "kubernetes.default",
}


class SSRFError(InvalidArgumentsError):
    """Raised when a URL points at a blocked host."""


def _is_ip_blocked(ip_str: str) -> bool:
    try:
        ip = ipaddress.ip_address(ip_str)
    except ValueError:
        return True
    return any(ip in net for net in BLOCKED_IP_RANGES)


def _host_allowed(hostname: str, allowed_domains: list[str]) -> bool:
    """Exact match or subdomain of an allowed domain."""
    hostname = hostname.lower().rstrip(".")
    for domain in allowed_domains:
        domain = domain.lower().lstrip(".")
        if hostname == domain or hostname.endswith("." + domain):
            return True
    return False


async def validate_url(url: str, allowed_domains: list[str] | None = None, block_private: bool = True) -> str:
    """
    Check scheme, allowlist and (when ``block_private``) resolved addresses.

    Raises:
        SSRFError: If the URL is not safe to fetch
    """
    parsed = urlparse(url)
    scheme = (parsed.scheme or "").lower()
    if scheme not in ("http", "https"):
        raise SSRFError(f"Protocol not allowed: '{scheme or 'none'}'. Only http/https permitted.")
    hostname = (parsed.hostname or "").lower().strip("[]")
    if not hostname:
        raise SSRFError("No hostname in URL")

    if allowed_domains and not _host_allowed(hostname, allowed_domains):
        raise SSRFError(f"Domain not allowed: {hostname}. Allowed: {', '.join(allowed_domains)}")

    if not block_private:
        return url

    if hostname in BLOCKED_HOSTNAMES or hostname.endswith((".internal", ".local")):
        raise SSRFError(f"Hostname blocked: {hostname}")

    try:
        ipaddress.ip_address(hostname)
        addresses = [hostname]
    except ValueError:
        loop = asyncio.get_running_loop()
        try:
            infos = await loop.getaddrinfo(hostname, parsed.port or (443 if scheme == "https" else 80))
        except socket.gaierror as e:
            raise SSRFError(f"Cannot resolve hostname '{hostname}': {e}") from None
        addresses = [info[4][0] for info in infos]

    for addr in addresses:
        if _is_ip_blocked(addr):
            raise SSRFError(f"Access blocked: {hostname} resolves to private address {addr}")
    return url


def _strip_tags(text: str) -> str:
    """Remove HTML tags and decode entities."""
    text = re.sub(r"<script[\s\S]*?</script>", "", text, flags=re.I)
    text = re.sub(r"<style[\s\S]*?</style>", "", text, flags=re.I)
    text = re.sub(r"<[^>]+>", "", text)
    text = html.unescape(text)
    text = re.sub(r"[ \t]+", " ", text)
    return re.sub(r"\n{3,}", "\n\n", text).strip()


class HttpRequestTool(Tool):
    """GET or POST a URL and return status and (truncated) body."""

    def __init__(
        self,
        allowed_domains: list[str] | None = None,
        max_chars: int = 20000,
        timeout: float = 30.0,
        block_private: bool = True,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.allowed_domains = allowed_domains or []
        self.max_chars = max_chars
        self.timeout = timeout
        self.block_private = block_private
        self._transport = transport

    @property
    def name(self) -> str:
        return "http_request"

    @property
    def description(self) -> str:
        desc = "Make an HTTP GET or POST request. HTML responses are reduced to text."
        if self.allowed_domains:
            desc += f" Allowed domains: {', '.join(self.allowed_domains)}."
        return desc

    @property
    def parameters(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "url": {"type": "string", "description": "http(s) URL"},
                "method": {"type": "string", "enum": ["GET", "POST"]},
                "headers": {"type": "object", "description": "Extra request headers"},
                "body": {"type": "string", "description": "Request body for POST"},
            },
            "required": ["url"],
        }

    async def execute(
        self,
        url: str,
        method: str = "GET",
        headers: dict[str, Any] | None = None,
        body: str | None = None,
        **kwargs: Any,
    ) -> str:
        await validate_url(url, self.allowed_domains, self.block_private)

        req_headers = {"User-Agent": USER_AGENT}
        req_headers.update({str(k): str(v) for k, v in (headers or {}).items()})

        try:
            async with httpx.AsyncClient(
                follow_redirects=True,
                max_redirects=MAX_REDIRECTS,
                timeout=self.timeout,
                transport=self._transport,
            ) as client:
                r = await client.request(method, url, headers=req_headers, content=body)
        except httpx.HTTPError as e:
            raise ToolExecutionError(f"{method} {url} failed: {e}") from None

        ctype = r.headers.get("content-type", "")
        if "application/json" in ctype:
            try:
                text = json.dumps(r.json(), indent=2, ensure_ascii=False)
            except ValueError:
                text = r.text
        elif "text/html" in ctype:
            text = _strip_tags(r.text)
        else:
            text = r.text

        truncated = len(text) > self.max_chars
        if truncated:
            text = text[: self.max_chars] + f"\n... (truncated, {len(text)} chars total)"
        return f"HTTP {r.status_code} {r.reason_phrase}\n\n{text}"
