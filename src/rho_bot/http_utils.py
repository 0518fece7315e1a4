from __future__ import annotations

import json
import os
import ssl
from functools import lru_cache
from typing import Any, Mapping
from urllib.parse import urlencode
from urllib.request import Request, urlopen

import certifi

USER_AGENT = "rho-bot/0.1"


@lru_cache(maxsize=1)
def _ssl_context() -> ssl.SSLContext:
    capath = os.getenv("SSL_CERT_DIR")
    if capath and not os.getenv("SSL_CERT_FILE"):
        return ssl.create_default_context(capath=capath)
    return ssl.create_default_context(cafile=os.getenv("SSL_CERT_FILE") or certifi.where())


def build_url(url: str, params: Mapping[str, Any] | None = None) -> str:
    if not params:
        return url
    separator = "&" if "?" in url else "?"
    return f"{url}{separator}{urlencode(params)}"


def get_json(url: str, params: Mapping[str, Any] | None = None, timeout: float = 10.0) -> Any:
    full_url = build_url(url, params)
    request = Request(full_url, headers={"User-Agent": USER_AGENT, "Accept": "application/json"})
    context = _ssl_context() if full_url.startswith("https://") else None
    with urlopen(request, timeout=timeout, context=context) as response:
        body = response.read().decode("utf-8")
    try:
        return json.loads(body)
    except json.JSONDecodeError as exc:
        raise RuntimeError(f"non-JSON response from {full_url}: {body[:120]!r}") from exc
