from typing import Iterable, Iterator, Optional
from urllib.parse import urljoin, urlparse


def _normalize_path(path: str) -> str:
    if len(path) > 1:
        path = path.rstrip("/") or "/"
    return path


class FriendlyPathIndex:
    """Read-only set of the friendly paths baked in this build."""

    def __init__(self, paths: Iterable[str] = ()):
        self._paths = frozenset(_normalize_path(p) for p in paths if p)

    def __contains__(self, path: object) -> bool:
        return isinstance(path, str) and _normalize_path(path) in self._paths

    def __iter__(self) -> Iterator[str]:
        return iter(sorted(self._paths))

    def __len__(self) -> int:
        return len(self._paths)


def classify(
    href: str,
    origin: str,
    index: FriendlyPathIndex,
    path_prefix: Optional[str] = None,
    route_prefix: str = "/pages",
) -> str:
    """Point ``href`` at its static route, back at the source, or leave it.

    Root-relative hrefs are paths on ``origin``, whatever ``<base>`` the page
    declares. Links to other hosts (and anything without a host, such as
    fragments or ``mailto:``) are returned unchanged. Same-host links whose
    path is in ``index``, with or without ``path_prefix``, become
    ``route_prefix + path``; the rest become absolute URLs on the source so
    they keep working once the page is served from elsewhere.
    """
    if not href:
        return href
    root_relative = href.startswith("/") and not href.startswith("//")
    try:
        url = urlparse(urljoin(origin, href) if root_relative else href)
        origin_host = urlparse(origin).hostname
    except ValueError:
        return href
    if not url.hostname or url.hostname != origin_host:
        return href

    path = _normalize_path(url.path or "/")
    candidates = []
    prefix = (path_prefix or "").rstrip("/")
    if prefix and (path == prefix or path.startswith(prefix + "/")):
        candidates.append(_normalize_path(path[len(prefix) :] or "/"))
    candidates.append(path)
    for candidate in candidates:
        if candidate in index:
            target = f"{route_prefix}{candidate}"
            return f"{target}#{url.fragment}" if url.fragment else target

    if root_relative:
        return urljoin(origin, href)
    return href
