# corsproxy/router.py
from dataclasses import dataclass

import httpx

from corsproxy.errors import InvalidTarget

_SCHEMES = ("http://", "https://")


@dataclass(frozen=True)
class TargetURL:
    """Absolute http(s) destination recovered from the inbound path."""

    raw: str
    url: httpx.URL

    @property
    def scheme(self) -> str:
        return self.url.scheme

    @property
    def host(self) -> str:
        """Host as sent in the Host header: includes the port when it is not the default."""
        return self.url.netloc.decode("ascii")

    @property
    def path(self) -> str:
        return self.url.path

    @property
    def query(self) -> str:
        return self.url.query.decode("ascii")

    @property
    def origin(self) -> str:
        return f"{self.scheme}://{self.host}"

    def __str__(self) -> str:
        return self.raw


def extract_target(path: str, query: str = "") -> TargetURL:
    """Recover the destination URL from a request path such as
    ``/https://api.example.com/items?page=2``.

    Everything after the leading ``/`` is taken as one opaque string, so the
    destination keeps its own path segments; ``query`` is the inbound query
    string, which belongs to the destination.
    """
    raw = path[1:] if path.startswith("/") else path
    if query:
        raw = f"{raw}?{query}"

    if not raw.startswith(_SCHEMES):
        raise InvalidTarget(raw)

    try:
        url = httpx.URL(raw)
    except httpx.InvalidURL as exc:
        raise InvalidTarget(raw, message=f"Target is not a valid absolute URL: {exc}")

    if url.scheme not in ("http", "https") or not url.host:
        raise InvalidTarget(raw, message="Target must be an absolute http:// or https:// URL with a host")
    return TargetURL(raw=raw, url=url)
