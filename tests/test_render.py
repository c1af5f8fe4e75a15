from __future__ import annotations

import logging

import pytest
import requests

from conftest import ORIGIN
from web_bake.render import (
    PlaywrightRenderDriver,
    RenderFailure,
    RequestsRenderDriver,
    get_render_driver,
)

PAGE = f"""<html><head>
<link rel="stylesheet" href="/o/a.css">
<link rel="preload stylesheet" href="{ORIGIN}/o/b.css">
<link rel="stylesheet" href="https://cdn.example/lib.css">
<link rel="icon" href="/favicon.ico">
<script src="/o/app.js"></script>
<script src="https://cdn.example/lib.js"></script>
<script>inline()</script>
</head><body><p>hello</p></body></html>"""


def test_requests_driver_discovers_same_origin_assets(ctx, session) -> None:
    url = f"{ORIGIN}/web/guest/home"
    session.add(url, PAGE, content_type="text/html; charset=utf-8")

    page = RequestsRenderDriver(ctx).render(url)

    assert page.url == url
    assert "<p>hello</p>" in page.html
    assert page.stylesheet_urls == [f"{ORIGIN}/o/a.css", f"{ORIGIN}/o/b.css"]
    assert page.script_urls == [f"{ORIGIN}/o/app.js"]


def test_requests_driver_honours_base_href(ctx, session) -> None:
    url = f"{ORIGIN}/web/guest/home"
    html = '<html><head><base href="/theme/"><link rel="stylesheet" href="main.css"></head></html>'
    session.add(url, html, content_type="text/html")

    page = RequestsRenderDriver(ctx).render(url)

    assert page.stylesheet_urls == [f"{ORIGIN}/theme/main.css"]


@pytest.mark.parametrize(
    ("setup", "message"),
    [
        (lambda s, u: s.add(u, "nope", status=500, content_type="text/html"), "HTTP 500"),
        (lambda s, u: s.fail(u, requests.Timeout("read timed out")), "read timed out"),
        (lambda s, u: s.add(u, "{}", content_type="application/json"), "not an HTML document"),
    ],
)
def test_requests_driver_failures_are_render_failures(ctx, session, setup, message) -> None:
    url = f"{ORIGIN}/broken"
    setup(session, url)

    with pytest.raises(RenderFailure, match=message):
        RequestsRenderDriver(ctx).render(url)


def test_get_render_driver_follows_settings(ctx) -> None:
    ctx.settings.render_js = False
    with get_render_driver(ctx) as driver:
        assert isinstance(driver, RequestsRenderDriver)

    ctx.settings.render_js = True
    ctx.settings.wait_until = "load"
    driver = get_render_driver(ctx)
    try:
        assert isinstance(driver, PlaywrightRenderDriver)
        assert driver.wait_until == "load"
    finally:
        driver.close()


def test_playwright_cookies_are_scoped_to_url(ctx, session) -> None:
    session.cookies.set("sid", "abc", domain="src.test", path="/")
    session.cookies.set("other", "x", domain="elsewhere.test", path="/")
    session.cookies.set("admin", "y", domain="src.test", path="/admin")
    driver = PlaywrightRenderDriver(ctx)
    try:
        cookies = driver._cookies_for_url(f"{ORIGIN}/web/guest/home")
    finally:
        driver.close()

    assert [c["name"] for c in cookies] == ["sid"]
    assert cookies[0]["domain"] == "src.test"


def test_requests_driver_skips_malformed_hrefs(ctx, session, caplog) -> None:
    url = f"{ORIGIN}/home"
    html = (
        '<html><head><link rel="stylesheet" href="http://[bad/x.css">'
        '<link rel="stylesheet" href="/o/ok.css"><script src="http://[bad/x.js"></script>'
        "</head></html>"
    )
    session.add(url, html, content_type="text/html")

    with caplog.at_level(logging.WARNING):
        page = RequestsRenderDriver(ctx).render(url)

    assert page.stylesheet_urls == [f"{ORIGIN}/o/ok.css"]
    assert page.script_urls == []
    assert "malformed reference" in caplog.text
