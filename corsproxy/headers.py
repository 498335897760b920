# corsproxy/headers.py
from typing import Iterable

from corsproxy.router import TargetURL

# Headers that describe the inbound connection only.
_HOP_BY_HOP = {
    "connection",
    "keep-alive",
    "proxy-connection",
    "proxy-authenticate",
    "proxy-authorization",
    "te",
    "trailer",
    "trailers",
    "transfer-encoding",
    "upgrade",
}

# Headers that reveal the caller's or an intermediary's network position.
_CLIENT_IDENTITY = {
    "x-forwarded-for",
    "x-forwarded-proto",
    "x-forwarded-host",
    "x-forwarded-port",
    "x-forwarded-prefix",
    "forwarded",
    "x-real-ip",
    "x-client-ip",
    "true-client-ip",
    "via",
    "cf-connecting-ip",
    "cf-connecting-ipv6",
    "cf-ipcountry",
    "cf-ray",
    "cf-visitor",
    "cf-worker",
    "cdn-loop",
}

_STRIP_REQUEST_HEADERS = _HOP_BY_HOP | _CLIENT_IDENTITY | {"content-length"}
_STRIP_RESPONSE_HEADERS = _HOP_BY_HOP | {"content-encoding"}

# Encodings httpx decodes without optional extras. The relay decodes these
# before streaming, so they are the only ones requested from the destination.
DECODABLE_ENCODINGS = {"gzip", "deflate", "identity"}
ACCEPT_ENCODING = "gzip, deflate"


def sanitize_request_headers(
    items: Iterable[tuple[str, str]], target: TargetURL
) -> dict[str, str]:
    """Build the outbound header set from the inbound header pairs.

    Keys are lower-cased; a repeated header collapses into one value.
    """
    headers: dict[str, str] = {}
    for name, value in items:
        key = name.lower()
        if key in _STRIP_REQUEST_HEADERS:
            continue
        if key in headers:
            sep = "; " if key == "cookie" else ", "
            headers[key] = f"{headers[key]}{sep}{value}"
        else:
            headers[key] = value

    headers["host"] = target.host
    if "origin" in headers:
        headers["origin"] = target.origin
    if headers.get("accept-encoding", "").strip().lower() != "identity":
        headers["accept-encoding"] = ACCEPT_ENCODING
    return headers


def content_encodings(value: str | None) -> list[str]:
    if not value:
        return []
    return [v.strip().lower() for v in value.split(",") if v.strip()]


def is_decodable(value: str | None) -> bool:
    return all(enc in DECODABLE_ENCODINGS for enc in content_encodings(value))


def filter_response_headers(
    items: Iterable[tuple[str, str]], decode: bool
) -> list[tuple[str, str]]:
    """Relay the destination's headers minus transport framing.

    Multi-valued headers (``set-cookie``) are kept as separate pairs. When
    ``decode`` is true the body is decompressed on the way through, so the
    original ``content-length`` no longer applies; otherwise the encoding
    declaration travels with the untouched bytes.
    """
    strip = (_STRIP_RESPONSE_HEADERS | {"content-length"}) if decode else _HOP_BY_HOP
    return [(name, value) for name, value in items if name.lower() not in strip]
