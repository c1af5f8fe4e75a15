import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Dict, List
from urllib.parse import urlparse

import requests

from .document import bs4_parse, can_fetch_url, effective_base_url, join_url
from .settings import BakeContext


class RenderFailure(RuntimeError):
    """The page itself could not be rendered; fatal for that page only."""


@dataclass
class RenderedPage:
    url: str
    html: str
    stylesheet_urls: List[str] = field(default_factory=list)
    script_urls: List[str] = field(default_factory=list)


class RenderDriver:
    def __init__(self, ctx: BakeContext):
        self.ctx = ctx

    def render(self, url: str) -> RenderedPage:
        raise NotImplementedError

    def close(self) -> None:
        pass

    def __enter__(self) -> "RenderDriver":
        return self

    def __exit__(self, *exc) -> None:
        self.close()


class RequestsRenderDriver(RenderDriver):
    """Plain HTTP fetch; no script runs, so observed URLs come from the markup."""

    def render(self, url: str) -> RenderedPage:
        try:
            r = self.ctx.session.get(url, timeout=self.ctx.settings.timeout)
        except requests.RequestException as e:
            raise RenderFailure(f"failed to fetch {url}: {e}") from e
        if r.status_code >= 400:
            raise RenderFailure(f"failed to fetch {url}: HTTP {r.status_code}")
        ct = (r.headers.get("Content-Type") or "").lower()
        if "text/html" not in ct and "application/xhtml+xml" not in ct:
            raise RenderFailure(f"not an HTML document: {url} ({ct or 'no type'})")
        if not r.encoding:
            r.encoding = r.apparent_encoding or "utf-8"
        html = r.text

        soup = bs4_parse(html)
        base = effective_base_url(soup, r.url or url)
        css: Dict[str, None] = {}
        js: Dict[str, None] = {}
        for link in soup.select("link[href]"):
            rels = {x.lower() for x in (link.get("rel") or [])}
            href = link.get("href")
            if "stylesheet" in rels and can_fetch_url(href):
                absu = join_url(base, href)
                if absu and self.ctx.is_source_origin(absu):
                    css[absu] = None
        for script in soup.select("script[src]"):
            src = script.get("src")
            if can_fetch_url(src):
                absu = join_url(base, src)
                if absu and self.ctx.is_source_origin(absu):
                    js[absu] = None
        return RenderedPage(r.url or url, html, list(css), list(js))


class PlaywrightRenderDriver(RenderDriver):
    """Headless Chromium render that records the stylesheets and scripts loaded.

    Playwright's sync API is bound to the thread that started it, so every
    browser call runs on one thread owned by the driver; callers on other
    threads simply wait for their turn.
    """

    def __init__(
        self,
        ctx: BakeContext,
        wait_until: str = "networkidle",
        timeout_ms: int = 30000,
    ):
        super().__init__(ctx)
        self.wait_until = wait_until
        self.timeout_ms = timeout_ms
        self._pl = None
        self._browser = None
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="render")

    def _cookies_for_url(self, url: str) -> List[dict]:
        out = []
        u = urlparse(url)
        host = u.hostname or ""
        path = u.path or "/"
        secure = u.scheme == "https"
        for c in self.ctx.session.cookies:
            dom = (c.domain or "").lstrip(".")
            host_ok = (host == dom) or (dom and host.endswith("." + dom))
            path_ok = (path or "/").startswith(c.path or "/")
            sec_ok = (not c.secure) or secure
            if host_ok and path_ok and sec_ok:
                out.append(
                    {
                        "name": c.name,
                        "value": c.value,
                        "domain": c.domain or host,
                        "path": c.path or "/",
                        "secure": bool(c.secure),
                        "httpOnly": False,
                    }
                )
        return out

    def _ensure_browser(self) -> None:
        if self._pl is None or self._browser is None:
            try:
                from playwright.sync_api import sync_playwright
            except ImportError as e:
                raise RenderFailure(
                    "Playwright not installed. Run: pip install playwright && playwright install"
                ) from e
            self._pl = sync_playwright().start()
            self._browser = self._pl.chromium.launch(
                headless=True, args=["--no-sandbox", "--disable-setuid-sandbox"]
            )

    def _render(self, url: str) -> RenderedPage:
        session = self.ctx.session
        ua = session.headers.get("User-Agent")
        locale = (session.headers.get("Accept-Language") or "en-US").split(",")[0]
        css: Dict[str, None] = {}
        js: Dict[str, None] = {}

        def on_request(request) -> None:
            u = request.url
            if not self.ctx.is_source_origin(u):
                return
            if request.resource_type == "stylesheet":
                css[u] = None
            elif request.resource_type == "script":
                js[u] = None

        context = None
        try:
            self._ensure_browser()
            context = self._browser.new_context(user_agent=ua, locale=locale)
            cookies = self._cookies_for_url(url)
            if cookies:
                context.add_cookies(cookies)
            # applies to every sub-request, not just the navigation
            context.set_extra_http_headers(dict(session.headers))
            page = context.new_page()
            page.on("request", on_request)
            page.goto(url, wait_until=self.wait_until, timeout=self.timeout_ms)
            html = page.content()
            final_url = page.url
        except RenderFailure:
            raise
        except Exception as e:
            raise RenderFailure(f"Playwright render failed for {url}: {e}") from e
        finally:
            if context is not None:
                context.close()
        logging.debug(
            "rendered %s: %d stylesheets, %d scripts", url, len(css), len(js)
        )
        return RenderedPage(final_url, html, list(css), list(js))

    def render(self, url: str) -> RenderedPage:
        return self._executor.submit(self._render, url).result()

    def _shutdown_browser(self) -> None:
        try:
            if self._browser:
                self._browser.close()
        finally:
            self._browser = None
            if self._pl:
                self._pl.stop()
            self._pl = None

    def close(self) -> None:
        try:
            self._executor.submit(self._shutdown_browser).result()
        finally:
            self._executor.shutdown(wait=True)


def get_render_driver(ctx: BakeContext) -> RenderDriver:
    if ctx.settings.render_js:
        return PlaywrightRenderDriver(
            ctx, ctx.settings.wait_until, ctx.settings.render_timeout_ms
        )
    return RequestsRenderDriver(ctx)
