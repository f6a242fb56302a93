"""
Blocking HTTP helper for the external provider calls.

Design goals:
- No extra dependency (stdlib urllib), certifi CA bundle when available
- Explicit timeout on every call
- One error mapping for every adapter:
    non-2xx        -> UpstreamError(code=status)
    timeout        -> UpstreamError("timeout")
    network / IO   -> TransportError (incl. truncated bodies)

This is blocking. Call it via asyncio.to_thread(...) from async code.
"""

from __future__ import annotations

import http.client
import json
import socket
import ssl
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional
from urllib.error import HTTPError, URLError
from urllib.parse import urlencode
from urllib.request import Request, urlopen

from src.relay.errors import TransportError, UpstreamError


def create_ssl_context() -> Optional[ssl.SSLContext]:
    """
    Returns an SSLContext configured with certifi CA bundle if available.

    If certifi is not installed, returns None (urllib will use default context).
    """
    try:
        import certifi  # type: ignore
    except Exception:
        return None

    return ssl.create_default_context(cafile=certifi.where())


@dataclass(frozen=True)
class HttpResponse:
    status: int
    body: bytes
    headers: Dict[str, str] = field(default_factory=dict)

    @property
    def content_type(self) -> str:
        """Media type without parameters, lower-cased (e.g. 'audio/mp3')."""
        raw = self.headers.get("content-type", "")
        return raw.split(";", 1)[0].strip().lower()

    def text(self, limit: Optional[int] = None) -> str:
        body = self.body if limit is None else self.body[:limit]
        return body.decode("utf-8", errors="replace")

    def json(self, *, service: str = "") -> Any:
        try:
            return json.loads(self.body.decode("utf-8"))
        except (UnicodeDecodeError, ValueError) as exc:
            raise UpstreamError(f"non-JSON response: {self.text(200)!r}", service=service) from exc


def build_url(url: str, params: Optional[Mapping[str, Any]] = None) -> str:
    if not params:
        return url
    sep = "&" if "?" in url else "?"
    return f"{url}{sep}{urlencode({k: v for k, v in params.items() if v is not None})}"


def http_request(
    url: str,
    *,
    method: str = "GET",
    params: Optional[Mapping[str, Any]] = None,
    data: Optional[bytes] = None,
    headers: Optional[Mapping[str, str]] = None,
    timeout: float = 30.0,
    service: str = "",
) -> HttpResponse:
    """Perform one HTTP call and return the full response body."""
    req = Request(
        build_url(url, params),
        data=data,
        method=method,
        headers=dict(headers or {}),
    )

    ssl_ctx = create_ssl_context()
    try:
        with urlopen(req, timeout=timeout, context=ssl_ctx) as resp:
            body = resp.read()
            status = resp.status
            resp_headers = {k.lower(): v for k, v in resp.headers.items()}
    except HTTPError as exc:
        try:
            err_body = (exc.read() or b"").decode("utf-8", errors="replace")
        except Exception:
            err_body = ""
        raise UpstreamError(f"HTTP {exc.code}: {err_body[:200]}", code=exc.code, service=service) from exc
    except (TimeoutError, socket.timeout) as exc:
        raise UpstreamError(f"timeout after {timeout}s", service=service) from exc
    except URLError as exc:
        if isinstance(exc.reason, (TimeoutError, socket.timeout)):
            raise UpstreamError(f"timeout after {timeout}s", service=service) from exc
        raise TransportError(f"{service or 'http'}: {exc.reason}") from exc
    except OSError as exc:
        raise TransportError(f"{service or 'http'}: {exc}") from exc
    except http.client.HTTPException as exc:
        # e.g. IncompleteRead when the connection drops mid-body
        raise TransportError(f"{service or 'http'}: {type(exc).__name__}: {exc}") from exc

    return HttpResponse(status=status, body=body, headers=resp_headers)
