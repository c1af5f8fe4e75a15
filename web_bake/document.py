"""Rewrite a rendered page so it only references localized assets.

``rewrite_document`` runs in two phases. Planning walks the tree on the
calling thread, performs the rewrites that need no network (anchors, tag
removal) and queues one job per node that does. All jobs then run on a
thread pool behind a single barrier, and only after every one has settled
are their results applied to the tree, again on the calling thread and in
document order. The tree is never touched by a worker.
"""

import logging
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from functools import partial
from typing import Any, Callable, Iterable, List, Optional, Set, Tuple
from urllib.parse import urljoin

from bs4 import BeautifulSoup, FeatureNotFound, Tag

from .css import (
    MalformedReference,
    iter_url_refs,
    resolve_reference,
    rewrite_stylesheet,
)
from .links import FriendlyPathIndex, classify
from .localizer import (
    IMAGES,
    SCRIPTS,
    STYLES,
    asset_type_for_css_url,
    localize,
    localize_many,
)
from .settings import BakeContext
from .sprites import inline_symbol, resolve_symbol, use_href


@dataclass
class RewriteResult:
    html: str
    inline_styles: List[str] = field(default_factory=list)
    stylesheets: List[str] = field(default_factory=list)
    scripts: List[str] = field(default_factory=list)


# -------------------- HTML utils --------------------


def bs4_parse(html: str) -> BeautifulSoup:
    try:
        return BeautifulSoup(html, "lxml")
    except FeatureNotFound:
        return BeautifulSoup(html, "html.parser")


def effective_base_url(soup: BeautifulSoup, fallback: str) -> str:
    tag = soup.find("base", href=True)
    if tag and tag.get("href"):
        try:
            return urljoin(fallback, tag["href"])
        except ValueError:
            pass
    return fallback


def serialize_html(soup: BeautifulSoup) -> str:
    return soup.decode(formatter="html")


def can_fetch_url(u: Optional[str]) -> bool:
    if not u:
        return False
    u = u.strip()
    if u.startswith(("#", "mailto:", "tel:", "javascript:", "data:", "blob:")):
        return False
    return True


def _rels(tag: Tag) -> Set[str]:
    rel = tag.get("rel") or []
    if isinstance(rel, str):
        rel = rel.split()
    return {r.lower() for r in rel}


# -------------------- srcset --------------------


def parse_srcset(value: str) -> List[Tuple[str, str]]:
    """Split a srcset into ``(url, descriptor)`` candidates, in order.

    URLs may contain commas; a candidate ends at a comma following the
    descriptor (or at a trailing comma of the URL itself).
    """
    out: List[Tuple[str, str]] = []
    i = 0
    n = len(value)
    while i < n:
        while i < n and (value[i].isspace() or value[i] == ","):
            i += 1
        if i >= n:
            break
        start = i
        while i < n and not value[i].isspace():
            i += 1
        url = value[start:i]
        if url.endswith(","):
            out.append((url.rstrip(","), ""))
            continue
        depth = 0
        start = i
        while i < n:
            c = value[i]
            if c == "(":
                depth += 1
            elif c == ")":
                depth = max(0, depth - 1)
            elif c == "," and depth == 0:
                break
            i += 1
        out.append((url, value[start:i].strip()))
        i += 1
    return out


def format_srcset(candidates: Iterable[Tuple[str, str]]) -> str:
    return ", ".join(f"{u} {d}".strip() for u, d in candidates)


# -------------------- Planner --------------------


class _Plan:
    def __init__(self, ctx: BakeContext):
        self.ctx = ctx
        self.jobs: List[Tuple[Callable[[], Any], Callable[[Any], None]]] = []

    def add(self, run: Callable[[], Any], apply: Callable[[Any], None]) -> None:
        self.jobs.append((run, apply))

    def execute(self) -> None:
        if not self.jobs:
            return
        with ThreadPoolExecutor(max_workers=self.ctx.settings.workers) as pool:
            futures = [pool.submit(run) for run, _ in self.jobs]
            wait(futures)
        for (_, apply), fut in zip(self.jobs, futures):
            apply(fut.result())


def join_url(base_url: str, value: str) -> Optional[str]:
    try:
        return resolve_reference(base_url, value.strip())
    except MalformedReference as e:
        logging.warning("skipping malformed reference: %s", e)
        return None


def _origin_url(ctx: BakeContext, base_url: str, value: Optional[str]) -> Optional[str]:
    if not can_fetch_url(value):
        return None
    absu = join_url(base_url, value)
    return absu if absu and ctx.is_source_origin(absu) else None


def _setter(tag: Tag, attr: str) -> Callable[[str], None]:
    def apply(value: str) -> None:
        tag[attr] = value

    return apply


def _rewrite_srcset(ctx: BakeContext, value: str, base_url: str) -> str:
    candidates = parse_srcset(value)
    targets = [_origin_url(ctx, base_url, u) for u, _ in candidates]
    if not any(targets):
        return value
    localized = localize_many(ctx, [(t, IMAGES) for t in targets if t])
    return format_srcset(
        (localized[(t, IMAGES)] if t else u, d)
        for (u, d), t in zip(candidates, targets)
    )


def rewrite_style_attribute(ctx: BakeContext, style: str, base_url: str) -> str:
    """Localize same-origin ``url()``s in an inline ``style`` attribute.

    Replacements are applied longest URL first so a URL that is a prefix of
    another never clobbers the longer one.
    """
    found = {}
    for ref in iter_url_refs(style):
        if not ref.value or ref.value.lower().startswith("data:"):
            continue
        try:
            absu = resolve_reference(base_url, ref.value)
        except MalformedReference as e:
            logging.warning("skipping malformed css reference: %s", e)
            continue
        if not ctx.is_source_origin(absu):
            continue
        found[style[ref.start : ref.end]] = (ref, absu, asset_type_for_css_url(absu))
    if not found:
        return style
    localized = localize_many(ctx, [(u, t) for _, u, t in found.values()])

    def longest_first(token: str) -> Tuple[int, int]:
        return len(found[token][0].value), len(token)

    for token in sorted(found, key=longest_first, reverse=True):
        ref, absu, asset_type = found[token]
        q = ref.quote
        style = style.replace(token, f"url({q}{localized[(absu, asset_type)]}{q})")
    return style


def _stylesheet_postprocess(ctx: BakeContext, url: str) -> Callable[[str], str]:
    def apply(text: str) -> str:
        return rewrite_stylesheet(ctx, text, url)

    return apply


# -------------------- Document rewrite --------------------


def rewrite_document(
    ctx: BakeContext,
    html: str,
    base_url: str,
    stylesheet_urls: Iterable[str] = (),
    script_urls: Iterable[str] = (),
    index: Optional[FriendlyPathIndex] = None,
) -> RewriteResult:
    """Localize every asset a rendered page uses and re-point its links.

    ``stylesheet_urls`` and ``script_urls`` are the URLs the renderer saw
    being loaded; their tags are dropped from the document and their local
    paths returned instead, in the same order.
    """
    soup = bs4_parse(html)
    base = effective_base_url(soup, base_url)
    index = index if index is not None else FriendlyPathIndex()
    settings = ctx.settings
    css_urls = list(dict.fromkeys(stylesheet_urls))
    js_urls = list(dict.fromkeys(script_urls))
    result = RewriteResult(html="")
    plan = _Plan(ctx)

    for img in soup.find_all("img", src=True):
        absu = _origin_url(ctx, base, img["src"])
        if absu:
            plan.add(partial(localize, ctx, absu, IMAGES), _setter(img, "src"))

    for tag in soup.find_all(["source", "img"], srcset=True):
        plan.add(
            partial(_rewrite_srcset, ctx, tag["srcset"], base),
            _setter(tag, "srcset"),
        )

    for use in soup.find_all("use"):
        href = use_href(use)
        if not href:
            continue

        def apply_symbol(symbol: Optional[Tag], use: Tag = use) -> None:
            if symbol is None:
                return
            graphic = use.find_parent("svg") or use
            if graphic.parent is None:
                # already replaced through a sibling <use>
                return
            inline_symbol(soup, use, symbol)

        plan.add(partial(resolve_symbol, ctx, href, base), apply_symbol)

    for a in soup.find_all("a", href=True):
        a["href"] = classify(
            a["href"],
            ctx.source_origin,
            index,
            settings.path_prefix,
            settings.route_prefix,
        )

    for style in soup.find_all("style"):
        css = style.string if style.string is not None else style.get_text()

        def apply_style(new_css: str, style: Tag = style) -> None:
            result.inline_styles.append(new_css)
            style.decompose()

        if css and css.strip():
            plan.add(partial(rewrite_stylesheet, ctx, css, base), apply_style)

    for tag in soup.find_all(style=lambda v: bool(v) and "url(" in v.lower()):
        plan.add(
            partial(rewrite_style_attribute, ctx, tag["style"], base),
            _setter(tag, "style"),
        )

    discovered_css = set(css_urls)
    discovered_js = set(js_urls)
    for link in soup.find_all("link", href=True):
        if "stylesheet" in _rels(link) and join_url(base, link["href"]) in discovered_css:
            link.decompose()
    for script in soup.find_all("script", src=True):
        if join_url(base, script["src"]) in discovered_js:
            script.decompose()

    for url in css_urls:
        plan.add(
            partial(localize, ctx, url, STYLES, _stylesheet_postprocess(ctx, url)),
            result.stylesheets.append,
        )
    for url in js_urls:
        plan.add(partial(localize, ctx, url, SCRIPTS), result.scripts.append)

    plan.execute()
    result.html = serialize_html(soup)
    return result
