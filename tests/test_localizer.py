from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor

import requests

from conftest import ORIGIN, sha
from web_bake.localizer import (
    FONTS,
    IMAGES,
    SCRIPTS,
    STYLES,
    asset_filename,
    asset_type_for_css_url,
    is_localized,
    local_path_for,
    localize,
    localize_many,
    read_asset_text,
)


def test_localize_names_file_by_url_hash(ctx, session, out_dir) -> None:
    url = f"{ORIGIN}/image.png"
    session.add(url, b"\x89PNG-data", content_type="image/png")

    path = localize(ctx, url, IMAGES)

    assert path == f"/assets/images/{sha(url)}.png"
    assert (out_dir / "assets" / "images" / f"{sha(url)}.png").read_bytes() == b"\x89PNG-data"


def test_localize_fetches_once_and_returns_same_path(ctx, session) -> None:
    url = f"{ORIGIN}/logo.svg"
    session.add(url, "<svg/>", content_type="image/svg+xml")

    first = localize(ctx, url, IMAGES)
    second = localize(ctx, url, IMAGES)

    assert first == second
    assert session.count(url) == 1


def test_existing_file_is_reused_without_network(ctx, session) -> None:
    url = f"{ORIGIN}/cached.png"
    dest = local_path_for(ctx, f"/assets/images/{sha(url)}.png")
    dest.parent.mkdir(parents=True)
    dest.write_bytes(b"from a previous run")

    assert localize(ctx, url, IMAGES) == f"/assets/images/{sha(url)}.png"
    assert session.calls == []


def test_http_error_degrades_to_original_url(ctx, session, caplog) -> None:
    url = f"{ORIGIN}/missing.png"
    session.add(url, b"gone", status=404)

    with caplog.at_level(logging.WARNING):
        assert localize(ctx, url, IMAGES) == url

    assert "HTTP 404" in caplog.text
    assert not local_path_for(ctx, f"/assets/images/{sha(url)}.png").exists()


def test_transport_error_degrades_to_original_url(ctx, session, caplog) -> None:
    url = f"{ORIGIN}/timeout.woff2"
    session.fail(url, requests.ConnectionError("connection reset"))

    with caplog.at_level(logging.WARNING):
        assert localize(ctx, url, FONTS) == url

    assert "connection reset" in caplog.text


def test_oversized_body_degrades(ctx, session) -> None:
    ctx.settings.max_bytes = 4
    url = f"{ORIGIN}/big.png"
    session.add(url, b"0123456789")

    assert localize(ctx, url, IMAGES) == url


def test_styles_and_scripts_get_fixed_extensions() -> None:
    assert asset_filename(f"{ORIGIN}/combo?a=1", STYLES).endswith(".css")
    assert asset_filename(f"{ORIGIN}/bundle.mjs?v=3", SCRIPTS).endswith(".js")
    assert asset_filename(f"{ORIGIN}/photo.jpeg?w=200", IMAGES).endswith(".jpeg")
    assert asset_filename(f"{ORIGIN}/no-extension", IMAGES) == sha(f"{ORIGIN}/no-extension")


def test_postprocess_runs_on_text_assets_before_write(ctx, session) -> None:
    url = f"{ORIGIN}/main.css"
    session.add(url, "body { color: red }", content_type="text/css")

    path = localize(ctx, url, STYLES, postprocess=lambda t: t.replace("red", "blue"))

    assert read_asset_text(ctx, path) == "body { color: blue }"


def test_postprocess_skipped_when_cached(ctx, session) -> None:
    url = f"{ORIGIN}/main.css"
    session.add(url, "a{}", content_type="text/css")
    localize(ctx, url, STYLES)
    seen = []

    localize(ctx, url, STYLES, postprocess=lambda t: seen.append(t) or t)

    assert seen == []


def test_concurrent_calls_for_one_url_converge(ctx, session) -> None:
    url = f"{ORIGIN}/hero.webp"
    session.add(url, b"webp-bytes" * 100, content_type="image/webp")

    with ThreadPoolExecutor(max_workers=8) as pool:
        paths = list(pool.map(lambda _: localize(ctx, url, IMAGES), range(16)))

    assert set(paths) == {f"/assets/images/{sha(url)}.webp"}
    assert local_path_for(ctx, paths[0]).read_bytes() == b"webp-bytes" * 100
    leftovers = [p for p in local_path_for(ctx, paths[0]).parent.iterdir() if p.suffix == ".tmp"]
    assert leftovers == []


def test_localize_many_dedupes_and_maps_every_item(ctx, session) -> None:
    a = f"{ORIGIN}/a.png"
    b = f"{ORIGIN}/b.woff"
    session.add(a, b"a")
    session.add(b, b"b")

    result = localize_many(ctx, [(a, IMAGES), (b, FONTS), (a, IMAGES)])

    assert result == {
        (a, IMAGES): f"/assets/images/{sha(a)}.png",
        (b, FONTS): f"/assets/fonts/{sha(b)}.woff",
    }
    assert session.count(a) == 1


def test_css_reference_classification() -> None:
    assert asset_type_for_css_url(f"{ORIGIN}/f/icons.woff2?v=1") == FONTS
    assert asset_type_for_css_url(f"{ORIGIN}/f/Roboto.TTF") == FONTS
    assert asset_type_for_css_url(f"{ORIGIN}/img/bg.png") == IMAGES
    assert asset_type_for_css_url(f"{ORIGIN}/img/sprite.svg#x") == IMAGES


def test_is_localized() -> None:
    assert is_localized("/assets/images/abc.png")
    assert not is_localized(f"{ORIGIN}/image.png")
