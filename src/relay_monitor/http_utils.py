from __future__ import annotations

import json
import os
import ssl
from functools import lru_cache
from typing import Any
from urllib.parse import urlencode
from urllib.request import Request, urlopen

import certifi

USER_AGENT = "relay-monitor/0.1"


def _resolve_ca_bundle() -> tuple[str | None, str | None]:
    env_cafile = os.getenv("SSL_CERT_FILE")
    if env_cafile:
        return env_cafile, None

    env_capath = os.getenv("SSL_CERT_DIR")
    if env_capath:
        return None, env_capath

    return certifi.where(), None


@lru_cache(maxsize=1)
def _ssl_context() -> ssl.SSLContext:
    cafile, capath = _resolve_ca_bundle()
    if cafile:
        return ssl.create_default_context(cafile=cafile)
    if capath:
        return ssl.create_default_context(capath=capath)
    return ssl.create_default_context()


def _open_json(request: Request, timeout: float) -> Any:
    with urlopen(request, timeout=timeout, context=_ssl_context()) as response:
        body = response.read().decode("utf-8")
    if not body.strip():
        return {}
    return json.loads(body)


def get_json(url: str, params: dict[str, str] | None = None, timeout: float = 10.0) -> Any:
    if params:
        query = urlencode(params)
        separator = "&" if "?" in url else "?"
        full_url = f"{url}{separator}{query}"
    else:
        full_url = url

    request = Request(full_url, headers={"User-Agent": USER_AGENT})
    return _open_json(request, timeout)


def post_json(url: str, payload: dict[str, Any], timeout: float = 10.0) -> Any:
    data = json.dumps(payload).encode("utf-8")
    request = Request(
        url,
        data=data,
        method="POST",
        headers={
            "User-Agent": USER_AGENT,
            "Content-Type": "application/json",
            "Accept": "application/json",
        },
    )
    return _open_json(request, timeout)
