"""Inline ``<use href="sprite.svg#id">`` references as standalone graphics."""

import copy
import logging
from typing import Optional
from urllib.parse import urljoin

from bs4 import BeautifulSoup, Tag

from .localizer import IMAGES, is_localized, localize, read_asset_text
from .settings import BakeContext

USE_HREF_ATTRS = ("href", "xlink:href")


def use_href(use: Tag) -> Optional[str]:
    for attr in USE_HREF_ATTRS:
        val = use.get(attr)
        if val:
            return val
    return None


def load_sprite(ctx: BakeContext, public_path: str) -> Optional[BeautifulSoup]:
    """Parse a localized sprite file once per build run."""
    with ctx.sprites_lock:
        sprite = ctx.sprites.get(public_path)
        if sprite is None:
            try:
                text = read_asset_text(ctx, public_path)
            except OSError as e:
                logging.warning("cannot read sprite %s: %s", public_path, e)
                return None
            # the file is always written as UTF-8 whatever its declaration says
            sprite = BeautifulSoup(text.encode("utf-8"), "xml", from_encoding="utf-8")
            ctx.sprites[public_path] = sprite
        return sprite


def resolve_symbol(ctx: BakeContext, href: str, base_url: str) -> Optional[Tag]:
    """Localize the sprite behind ``href`` and return the referenced element.

    None means the reference stays as it is: the sprite is off-origin, has no
    fragment, failed to download, or does not contain the fragment.
    """
    sprite_ref, _, fragment = href.partition("#")
    if not sprite_ref:
        return None
    try:
        sprite_url = urljoin(base_url, sprite_ref)
    except ValueError as e:
        logging.warning("skipping malformed sprite reference %s: %s", href, e)
        return None
    if not ctx.is_source_origin(sprite_url):
        return None
    if not fragment:
        logging.warning("sprite reference without fragment: %s", href)
        return None
    public_path = localize(ctx, sprite_url, IMAGES)
    if not is_localized(public_path):
        logging.warning("sprite %s not localized; leaving %s", sprite_url, href)
        return None
    sprite = load_sprite(ctx, public_path)
    symbol = sprite.find(id=fragment) if sprite is not None else None
    if symbol is None:
        logging.warning("sprite symbol #%s not found in %s", fragment, sprite_url)
        return None
    return symbol


def inline_symbol(soup: BeautifulSoup, use: Tag, symbol: Tag) -> Tag:
    """Replace the graphic holding ``use`` with a copy of ``symbol``."""
    graphic = use.find_parent("svg") or use
    attrs = {}
    for name in ("class", "role"):
        if graphic.get(name):
            attrs[name] = graphic[name]
    if symbol.get("viewBox"):
        attrs["viewBox"] = symbol["viewBox"]
    svg = soup.new_tag("svg", attrs=attrs)
    for child in list(symbol.children):
        svg.append(copy.copy(child))
    graphic.replace_with(svg)
    return svg
