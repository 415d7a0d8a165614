"""URL cleanup and reachability probing for discovery sources.

Normalisation never drops a URL: malformed input is logged and returned as-is.
The reachability probe applies the same private-address guard used for every
outbound fetch before it opens a connection.
"""

from __future__ import annotations

import ipaddress
import quopri
import re
import socket
import urllib.error
import urllib.parse
import urllib.request
from dataclasses import dataclass

from tracker.log import get_logger

logger = get_logger(__name__)

_USER_AGENT = "tracker/0.1 (+discovery link check)"
_ALLOWED_SCHEMES = {"https", "http"}
_DEFAULT_PROBE_TIMEOUT = 5.0
_MAX_REDIRECTS = 5

TRACKING_PARAMS: frozenset[str] = frozenset(
    ["utm_source", "utm_medium", "utm_campaign", "utm_term", "utm_content"]
)

# Link shorteners whose path carries only an opaque code. Query strings and
# fragments on these hosts are tracking noise.
SHORTENER_HOSTS: frozenset[str] = frozenset(["link.alphasignal.ai"])
_SHORTENER_RE = re.compile(
    r"(?:https?://)?(link\.alphasignal\.ai)/([A-Za-z0-9]+)", re.IGNORECASE
)

_SOFT_BREAK_RE = re.compile(r"=\r?\n")
# "=3D" (an encoded "=") or a run of escaped UTF-8 bytes only shows up in
# bodies that were never decoded.
_QP_MARKER_RE = re.compile(r"=3D|=[89A-F][0-9A-F]=[89A-F][0-9A-F]")
# Any other "=XX" counts once HTML tags and URL query pairs ("?id=AB") are
# set aside.
_QP_ESCAPE_RE = re.compile(r"=[0-9A-F]{2}")
_SET_ASIDE_RE = re.compile(r"<[^<>]*>|[?&;][\w.%-]+=[^\s&#\"'<>]*")


# ------------------------------------------------------------------
# Normalisation
# ------------------------------------------------------------------


def decode_quoted_printable(text: str) -> str:
    """Decode quoted-printable artifacts (``=3D``, ``=2C``, ``=E2=80=99``, soft breaks).

    Text without encoded-body markers is returned with only soft line breaks
    removed, so already-decoded bodies (and query strings like ``?id=AB``)
    pass through unchanged.
    """
    if not text:
        return text
    text = _SOFT_BREAK_RE.sub("", text)
    if not _looks_encoded(text):
        return text
    try:
        return quopri.decodestring(text.encode("utf-8")).decode("utf-8", errors="replace")
    except (ValueError, UnicodeError) as exc:
        logger.warning("Quoted-printable decode failed, keeping raw text: %s", exc)
        return text


def _looks_encoded(text: str) -> bool:
    if _QP_MARKER_RE.search(text):
        return True
    return bool(_QP_ESCAPE_RE.search(_SET_ASIDE_RE.sub("", text)))


def canonicalize_shortener(url: str) -> str | None:
    """Return ``https://<host>/<code>`` for a known shortener URL, else None."""
    match = _SHORTENER_RE.search(url)
    if not match:
        return None
    return f"https://{match.group(1).lower()}/{match.group(2)}"


def shortener_code(url: str) -> str | None:
    match = _SHORTENER_RE.search(url)
    return match.group(2) if match else None


def strip_tracking_params(url: str) -> str:
    """Remove utm_* tracking parameters, keeping every other query parameter in order."""
    parts = urllib.parse.urlsplit(url)
    if not parts.query:
        return url
    kept = [
        (k, v)
        for k, v in urllib.parse.parse_qsl(parts.query, keep_blank_values=True)
        if k.lower() not in TRACKING_PARAMS
    ]
    return urllib.parse.urlunsplit(
        (parts.scheme, parts.netloc, parts.path, urllib.parse.urlencode(kept), parts.fragment)
    )


def normalize_url(url: str) -> str:
    """Canonicalise *url* for storage and dedup.

    Decodes quoted-printable residue, rewrites shortener links to their
    canonical form and strips tracking parameters. Malformed URLs are logged
    and returned unchanged (never dropped).
    """
    raw = (url or "").strip()
    cleaned = decode_quoted_printable(raw).strip().strip("\"'<>")

    canonical = canonicalize_shortener(cleaned)
    if canonical:
        return canonical

    try:
        parts = urllib.parse.urlsplit(cleaned)
    except ValueError as exc:
        logger.warning("Malformed URL left as-is: %r (%s)", raw, exc)
        return raw
    if parts.scheme.lower() not in _ALLOWED_SCHEMES or not parts.netloc:
        logger.warning("Malformed URL left as-is: %r", raw)
        return raw
    return strip_tracking_params(cleaned)


# ------------------------------------------------------------------
# Reachability probe
# ------------------------------------------------------------------


@dataclass
class UrlCheck:
    """Outcome of a reachability probe.

    ``reason`` is one of: ok, malformed, domain-not-found, private-address,
    too-many-redirects, timeout, http-<status>, unreachable.
    """

    valid: bool
    reason: str = "ok"


def _check_address(hostname: str) -> str | None:
    """Resolve *hostname*; return a failure reason or None when it is public."""
    try:
        addrinfos = socket.getaddrinfo(hostname, None)
    except socket.gaierror:
        return "domain-not-found"

    for addrinfo in addrinfos:
        addr_str = addrinfo[4][0]
        try:
            ip = ipaddress.ip_address(addr_str)
        except ValueError:
            continue
        if (
            ip.is_private
            or ip.is_loopback
            or ip.is_link_local
            or ip.is_reserved
            or ip.is_multicast
            or ip.is_unspecified
        ):
            return "private-address"
    return None


class _RedirectRejected(Exception):
    """A redirect hop was refused; ``reason`` is a UrlCheck reason."""

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


class _GuardedRedirectHandler(urllib.request.HTTPRedirectHandler):
    """Follow at most *max_redirects* hops, each to a public address."""

    def __init__(self, max_redirects: int) -> None:
        self._max_redirects = max_redirects
        self._count = 0

    def redirect_request(self, req, fp, code, msg, headers, newurl):
        self._count += 1
        if self._count > self._max_redirects:
            raise _RedirectRejected("too-many-redirects")
        parts = urllib.parse.urlsplit(newurl)
        if parts.scheme.lower() not in _ALLOWED_SCHEMES or not parts.hostname:
            raise _RedirectRejected("malformed")
        reason = _check_address(parts.hostname)
        if reason:
            raise _RedirectRejected(reason)
        return super().redirect_request(req, fp, code, msg, headers, newurl)


def _open(request: urllib.request.Request, timeout: float):
    opener = urllib.request.build_opener(_GuardedRedirectHandler(_MAX_REDIRECTS))
    return opener.open(request, timeout=timeout)


def _request_status(url: str, method: str, timeout: float) -> int:
    request = urllib.request.Request(url, method=method, headers={"User-Agent": _USER_AGENT})
    try:
        with _open(request, timeout) as response:
            return response.status
    except urllib.error.HTTPError as exc:
        return exc.code


def probe_url(url: str, timeout: float = _DEFAULT_PROBE_TIMEOUT) -> UrlCheck:
    """HEAD-probe *url* once; no retry.

    Servers that reject HEAD (403/405) get one GET. Redirects are followed
    up to five hops and each target is re-checked against private addresses.
    Any final status other than 404, 410 or 5xx counts as reachable.
    """
    try:
        parts = urllib.parse.urlsplit(url)
    except ValueError:
        return UrlCheck(False, "malformed")
    if parts.scheme.lower() not in _ALLOWED_SCHEMES or not parts.hostname:
        return UrlCheck(False, "malformed")

    reason = _check_address(parts.hostname)
    if reason:
        return UrlCheck(False, reason)

    try:
        status = _request_status(url, "HEAD", timeout)
        if status in (403, 405):
            status = _request_status(url, "GET", timeout)
    except _RedirectRejected as exc:
        return UrlCheck(False, exc.reason)
    except (socket.timeout, TimeoutError):
        return UrlCheck(False, "timeout")
    except urllib.error.URLError as exc:
        if isinstance(exc.reason, (socket.timeout, TimeoutError)):
            return UrlCheck(False, "timeout")
        if isinstance(exc.reason, socket.gaierror):
            return UrlCheck(False, "domain-not-found")
        return UrlCheck(False, "unreachable")
    except (OSError, ValueError):
        return UrlCheck(False, "unreachable")

    if status in (404, 410) or status >= 500:
        return UrlCheck(False, f"http-{status}")
    return UrlCheck(True)
