from __future__ import annotations

import json
import os
import ssl
import urllib.error
import urllib.request
from pathlib import Path

import certifi

from . import __version__

DEFAULT_USER_AGENT = f"community-pulse/{__version__}"
_CA_ENV_VARS = ("SSL_CERT_FILE", "REQUESTS_CA_BUNDLE", "CURL_CA_BUNDLE")


class FetchError(RuntimeError):
    def __init__(self, message: str, *, url: str = "", status: int = 0) -> None:
        super().__init__(message)
        self.url = url
        self.status = status


def http_get(
    url: str,
    *,
    headers: dict[str, str] | None = None,
    timeout_s: int = 30,
    ca_bundle_path: str = "",
    user_agent: str = DEFAULT_USER_AGENT,
) -> str:
    """
    GET `url` and return the decoded body. Any network failure or non-2xx status
    raises FetchError; there are no retries.
    """
    hdrs = {"User-Agent": user_agent}
    hdrs.update(headers or {})
    req = urllib.request.Request(url, method="GET", headers=hdrs)
    ctx = _ssl_context(ca_bundle_path=ca_bundle_path) if url.lower().startswith("https://") else None
    try:
        with urllib.request.urlopen(req, timeout=timeout_s, context=ctx) as resp:
            code = int(getattr(resp, "status", 0) or 0)
            body = resp.read().decode("utf-8", errors="replace")
            if 200 <= code < 300:
                return body
            raise FetchError(f"GET {url} failed: HTTP {code}: {body[:200]}", url=url, status=code)
    except urllib.error.HTTPError as e:
        payload = ""
        try:
            payload = e.read().decode("utf-8", errors="replace")
        except Exception:
            payload = ""
        raise FetchError(f"GET {url} failed: HTTP {e.code}: {payload[:200]}", url=url, status=int(e.code or 0)) from e
    except urllib.error.URLError as e:
        msg = f"GET {url} failed: {e}"
        if _is_cert_verify_error(e):
            msg = msg + "\n" + _cert_verify_hint(ca_bundle_path=ca_bundle_path)
        raise FetchError(msg, url=url) from e
    except (TimeoutError, OSError) as e:
        raise FetchError(f"GET {url} failed: {e}", url=url) from e


def http_get_json(
    url: str,
    *,
    headers: dict[str, str] | None = None,
    timeout_s: int = 30,
    ca_bundle_path: str = "",
    user_agent: str = DEFAULT_USER_AGENT,
) -> object:
    hdrs = {"Accept": "application/json"}
    hdrs.update(headers or {})
    body = http_get(url, headers=hdrs, timeout_s=timeout_s, ca_bundle_path=ca_bundle_path, user_agent=user_agent)
    try:
        return json.loads(body)
    except json.JSONDecodeError as e:
        raise FetchError(f"GET {url} returned invalid JSON: {e}", url=url) from e


def _ssl_context(*, ca_bundle_path: str) -> ssl.SSLContext:
    cafile, capath = _resolve_ca_paths(ca_bundle_path)
    if cafile or capath:
        return ssl.create_default_context(cafile=cafile, capath=capath)
    return ssl.create_default_context()


def _resolve_ca_paths(explicit: str) -> tuple[str | None, str | None]:
    """
    (cafile, capath) of the first trust store found: `ca_bundle_path`, the usual CA
    bundle env vars, the interpreter's OpenSSL defaults, then certifi's bundle.
    """
    for raw in [explicit, *(os.environ.get(k) for k in _CA_ENV_VARS)]:
        if (raw or "").strip():
            return _split_ca_location(Path(raw.strip()).expanduser())

    vp = ssl.get_default_verify_paths()
    for cand in (vp.cafile, vp.openssl_cafile, vp.capath, vp.openssl_capath, certifi.where()):
        if cand and Path(cand).exists():
            return _split_ca_location(Path(cand))
    return None, None


def _split_ca_location(path: Path) -> tuple[str | None, str | None]:
    return (None, str(path)) if path.is_dir() else (str(path), None)


def _is_cert_verify_error(e: urllib.error.URLError) -> bool:
    return isinstance(e.reason, ssl.SSLCertVerificationError) or "certificate verify failed" in str(e).lower()


def _cert_verify_hint(*, ca_bundle_path: str) -> str:
    cafile, capath = _resolve_ca_paths(ca_bundle_path)
    return (
        f"Hint: the server certificate was not trusted (CA file {cafile!r}, CA dir {capath!r}). "
        "Set `ca_bundle_path` in config.json to a bundle that includes the issuer."
    )
