"""Content-addressed download cache for page assets.

Every remote asset is stored once under ``<output_dir>/assets/<type>/`` with a
file name derived from the SHA-256 of its URL, and referenced from the baked
page through the public path ``/assets/<type>/<hash><ext>``. A file that is
already on disk is never fetched again, which makes repeated and concurrent
calls for the same URL converge on the same result.
"""

import hashlib
import logging
import os
import tempfile
from concurrent.futures import ThreadPoolExecutor, wait
from pathlib import Path
from typing import Callable, Dict, Iterable, Optional, Tuple
from urllib.parse import urlparse

import requests

from .settings import BakeContext

IMAGES = "images"
FONTS = "fonts"
STYLES = "styles"
SCRIPTS = "scripts"

ASSET_URL_PREFIX = "/assets/"
FONT_EXTS = {".woff", ".woff2", ".ttf", ".otf", ".eot"}


def asset_filename(url: str, asset_type: str) -> str:
    digest = hashlib.sha256(url.encode("utf-8")).hexdigest()
    if asset_type == STYLES:
        ext = ".css"
    elif asset_type == SCRIPTS:
        ext = ".js"
    else:
        ext = os.path.splitext(urlparse(url).path)[1]
    return f"{digest}{ext}"


def public_path_for(url: str, asset_type: str) -> str:
    return f"{ASSET_URL_PREFIX}{asset_type}/{asset_filename(url, asset_type)}"


def local_path_for(ctx: BakeContext, public_path: str) -> Path:
    return ctx.output_dir.joinpath(*public_path.strip("/").split("/"))


def is_localized(path: str) -> bool:
    return path.startswith(ASSET_URL_PREFIX)


def is_text_asset(asset_type: str, filename: str) -> bool:
    return asset_type in (STYLES, SCRIPTS) or filename.lower().endswith(".svg")


def asset_type_for_css_url(url: str) -> str:
    ext = os.path.splitext(urlparse(url).path)[1].lower()
    return FONTS if ext in FONT_EXTS else IMAGES


def _write_atomic(dest: Path, data: bytes) -> None:
    # racing writers each use their own temp file; os.replace keeps the last one
    fd, tmp = tempfile.mkstemp(prefix=".dl_", suffix=".tmp", dir=dest.parent)
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
        os.replace(tmp, dest)
    except BaseException:
        try:
            os.unlink(tmp)
        except OSError:
            pass
        raise


def localize(
    ctx: BakeContext,
    url: str,
    asset_type: str,
    postprocess: Optional[Callable[[str], str]] = None,
) -> str:
    """Download ``url`` once and return the public path it is served from.

    On any fetch failure the original absolute URL is returned so the page
    keeps pointing at the live asset. ``postprocess`` is applied to the text
    of text assets before they are written, only when a download happens.
    """
    if not url:
        return ""
    public_path = public_path_for(url, asset_type)
    dest = local_path_for(ctx, public_path)
    if dest.exists():
        return public_path
    dest.parent.mkdir(parents=True, exist_ok=True)

    try:
        resp = ctx.session.get(url, timeout=ctx.settings.timeout)
    except requests.RequestException as e:
        logging.warning("error downloading %s: %s", url, e)
        return url
    if resp.status_code >= 400:
        logging.warning("failed %s -> HTTP %s", url, resp.status_code)
        return url
    data = resp.content
    if len(data) > ctx.settings.max_bytes:
        logging.warning("skip large file %s (%s bytes)", url, len(data))
        return url

    if is_text_asset(asset_type, dest.name):
        if not resp.encoding:
            resp.encoding = "utf-8"
        text = resp.text
        if postprocess is not None:
            text = postprocess(text)
        data = text.encode("utf-8")

    _write_atomic(dest, data)
    logging.info("downloaded asset: %s -> %s", url, public_path)
    return public_path


def localize_many(
    ctx: BakeContext, items: Iterable[Tuple[str, str]]
) -> Dict[Tuple[str, str], str]:
    """Localize every ``(url, asset_type)`` pair concurrently.

    Returns only after every download has settled.
    """
    keys = list(dict.fromkeys(items))
    result: Dict[Tuple[str, str], str] = {}
    if not keys:
        return result
    with ThreadPoolExecutor(max_workers=ctx.settings.workers) as pool:
        future_map = {pool.submit(localize, ctx, u, t): (u, t) for u, t in keys}
        wait(future_map)
        for fut, key in future_map.items():
            result[key] = fut.result()
    return result


def read_asset_text(ctx: BakeContext, public_path: str) -> str:
    return local_path_for(ctx, public_path).read_text(encoding="utf-8", errors="ignore")
