"""Enumerate the pages to bake from the source's headless content API."""

import logging
from dataclasses import dataclass
from typing import Iterable, List, Optional

import requests

from .links import FriendlyPathIndex
from .settings import BakeContext, Settings


class PageSourceError(RuntimeError):
    pass


@dataclass
class PageEntry:
    friendly_path: str
    render_url: str
    title: Optional[str] = None
    page_id: Optional[int] = None


def render_url_for(settings: Settings, friendly_path: str) -> str:
    prefix = (settings.path_prefix or "").rstrip("/")
    return f"{settings.source_origin.rstrip('/')}{prefix}{friendly_path}"


def get_api_content(ctx: BakeContext, api_path: str, params: Optional[dict] = None) -> dict:
    if not ctx.settings.api_endpoint:
        raise PageSourceError("api_endpoint is not configured")
    url = f"{ctx.settings.api_endpoint.rstrip('/')}{api_path}"
    try:
        r = ctx.session.get(
            url,
            params=params,
            headers={"Accept": "application/json"},
            timeout=ctx.settings.timeout,
        )
    except requests.RequestException as e:
        raise PageSourceError(f"failed to fetch {url}: {e}") from e
    if r.status_code >= 400:
        raise PageSourceError(f"failed to fetch {url}: HTTP {r.status_code}")
    try:
        return r.json()
    except ValueError as e:
        raise PageSourceError(f"invalid JSON from {url}: {e}") from e


def fetch_site_pages(ctx: BakeContext) -> List[PageEntry]:
    """List every site page, following the API's pagination."""
    settings = ctx.settings
    if not settings.site_id:
        raise PageSourceError("site_id is not configured")
    api_path = f"/v1.0/sites/{settings.site_id}/site-pages"
    entries: List[PageEntry] = []
    page = 1
    while True:
        data = get_api_content(
            ctx, api_path, params={"page": page, "pageSize": settings.page_size}
        )
        for item in data.get("items") or []:
            path = item.get("friendlyUrlPath")
            if not path:
                logging.warning("site page without friendlyUrlPath: %s", item.get("id"))
                continue
            entries.append(
                PageEntry(
                    friendly_path=path,
                    render_url=render_url_for(settings, path),
                    title=item.get("title"),
                    page_id=item.get("id"),
                )
            )
        last_page = data.get("lastPage") or page
        if page >= last_page:
            break
        page += 1
    logging.info("found %d site pages", len(entries))
    return entries


def pages_from_paths(settings: Settings, paths: Iterable[str]) -> List[PageEntry]:
    entries = []
    for p in paths:
        path = p if p.startswith("/") else f"/{p}"
        entries.append(PageEntry(friendly_path=path, render_url=render_url_for(settings, path)))
    return entries


def build_index(entries: Iterable[PageEntry]) -> FriendlyPathIndex:
    return FriendlyPathIndex(e.friendly_path for e in entries)
