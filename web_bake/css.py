"""Stylesheet rewriting: ``@import`` inlining and ``url()`` localization.

The scanner below walks CSS text the way a tokenizer would, so ``url(`` inside
comments and quoted strings is never mistaken for a reference, quoted and
unquoted forms are both understood, and balanced parentheses inside an
unquoted value do not end it early.
"""

import logging
import re
from dataclasses import dataclass
from typing import Iterator, List, Optional, Tuple
from urllib.parse import urldefrag, urljoin

import requests

from .localizer import asset_type_for_css_url, localize_many
from .settings import BakeContext

IDENT_CHAR_RE = re.compile(r"[-\w]")
ESCAPE_RE = re.compile(r"\\(?:([0-9a-fA-F]{1,6})\s?|(.))", re.S)
MAX_CODE_POINT = 0x10FFFF


class MalformedReference(ValueError):
    """A single ``url()`` or ``@import`` that cannot be parsed or resolved."""


@dataclass
class UrlRef:
    start: int
    end: int
    value: str
    quote: str


@dataclass
class ImportRule:
    start: int
    end: int
    url: str
    media: str


# -------------------- Scanner --------------------


def _escaped_char(m: re.Match) -> str:
    if m.group(1) is None:
        return m.group(2)
    cp = int(m.group(1), 16)
    # NUL, surrogates and out-of-range values decode to U+FFFD
    if cp == 0 or 0xD800 <= cp <= 0xDFFF or cp > MAX_CODE_POINT:
        return "\ufffd"
    return chr(cp)


def _unescape(value: str) -> str:
    if "\\" not in value:
        return value
    return ESCAPE_RE.sub(_escaped_char, value)


def _skip_comment(text: str, i: int) -> int:
    end = text.find("*/", i + 2)
    return len(text) if end < 0 else end + 2


def _read_string(text: str, i: int) -> Tuple[str, int]:
    """Read a quoted string starting at ``i``; return (raw body, index after)."""
    quote = text[i]
    j = i + 1
    n = len(text)
    while j < n:
        c = text[j]
        if c == "\\":
            j += 2
            continue
        if c == quote:
            return text[i + 1 : j], j + 1
        if c == "\n":
            break
        j += 1
    raise MalformedReference(f"unterminated string at offset {i}")


def _skip_ws(text: str, i: int) -> int:
    n = len(text)
    while i < n:
        if text[i].isspace():
            i += 1
        elif text.startswith("/*", i):
            i = _skip_comment(text, i)
        else:
            break
    return i


def _read_url_body(text: str, i: int) -> Tuple[str, str, int]:
    """Parse what follows ``url(``; return (value, quote, index after ``)``)."""
    n = len(text)
    j = _skip_ws(text, i)
    if j < n and text[j] in "\"'":
        quote = text[j]
        raw, j = _read_string(text, j)
        j = _skip_ws(text, j)
        if j >= n or text[j] != ")":
            raise MalformedReference(f"unterminated url() at offset {i}")
        return _unescape(raw), quote, j + 1
    depth = 0
    start = j
    while j < n:
        c = text[j]
        if c == "\\":
            j += 2
            continue
        if c == "(":
            depth += 1
        elif c == ")":
            if depth == 0:
                return _unescape(text[start:j].strip()), "", j + 1
            depth -= 1
        elif c in "\"'":
            raise MalformedReference(f"quote inside unquoted url() at offset {i}")
        j += 1
    raise MalformedReference(f"unterminated url() at offset {i}")


def _is_function_start(text: str, i: int, name: str) -> bool:
    if text[i : i + len(name)].lower() != name:
        return False
    return i == 0 or not IDENT_CHAR_RE.match(text[i - 1])


def iter_url_refs(text: str) -> Iterator[UrlRef]:
    """Yield every ``url()`` in ``text``; malformed ones are logged and skipped."""
    i = 0
    n = len(text)
    while i < n:
        c = text[i]
        if c == "/" and text.startswith("/*", i):
            i = _skip_comment(text, i)
        elif c in "\"'":
            try:
                _, i = _read_string(text, i)
            except MalformedReference:
                nl = text.find("\n", i)
                i = n if nl < 0 else nl + 1
        elif c in "uU" and _is_function_start(text, i, "url("):
            try:
                value, quote, end = _read_url_body(text, i + 4)
            except MalformedReference as e:
                logging.warning("skipping malformed css reference: %s", e)
                i += 4
                continue
            yield UrlRef(i, end, value, quote)
            i = end
        else:
            i += 1


def _statement_end(text: str, i: int) -> int:
    n = len(text)
    depth = 0
    while i < n:
        c = text[i]
        if c == "/" and text.startswith("/*", i):
            i = _skip_comment(text, i)
            continue
        if c in "\"'":
            _, i = _read_string(text, i)
            continue
        if c == "(":
            depth += 1
        elif c == ")":
            depth = max(0, depth - 1)
        elif c == ";" and depth == 0:
            return i
        elif c in "{}" and depth == 0:
            break
        i += 1
    raise MalformedReference("@import without terminating ';'")


def _parse_import(text: str, i: int) -> ImportRule:
    j = _skip_ws(text, i + len("@import"))
    if j < len(text) and text[j] in "\"'":
        raw, j = _read_string(text, j)
        url = _unescape(raw)
    elif _is_function_start(text, j, "url("):
        url, _, j = _read_url_body(text, j + 4)
    else:
        raise MalformedReference(f"@import without a target at offset {i}")
    semi = _statement_end(text, j)
    return ImportRule(i, semi + 1, url, text[j:semi].strip())


def iter_imports(text: str) -> Iterator[ImportRule]:
    """Yield every ``@import`` statement; malformed ones are logged and skipped."""
    i = 0
    n = len(text)
    while i < n:
        c = text[i]
        if c == "/" and text.startswith("/*", i):
            i = _skip_comment(text, i)
        elif c in "\"'":
            try:
                _, i = _read_string(text, i)
            except MalformedReference:
                nl = text.find("\n", i)
                i = n if nl < 0 else nl + 1
        elif c == "@" and text[i : i + 7].lower() == "@import":
            try:
                rule = _parse_import(text, i)
            except MalformedReference as e:
                logging.warning("skipping malformed @import: %s", e)
                i += 7
                continue
            yield rule
            i = rule.end
        else:
            i += 1


# -------------------- Rewriting --------------------


def _cycle_key(url: str) -> str:
    return urldefrag(url)[0]


def resolve_reference(base_url: str, value: str) -> str:
    """Resolve one reference, raising MalformedReference if it is unusable."""
    try:
        absu = urljoin(base_url, value)
        # cache file names hash the UTF-8 form of the URL
        absu.encode("utf-8")
        return absu
    except ValueError as e:
        raise MalformedReference(f"cannot resolve {value!r}: {e}") from e


def fetch_text(ctx: BakeContext, url: str) -> Optional[str]:
    try:
        resp = ctx.session.get(url, timeout=ctx.settings.timeout)
    except requests.RequestException as e:
        logging.warning("error downloading %s: %s", url, e)
        return None
    if resp.status_code >= 400:
        logging.warning("failed %s -> HTTP %s", url, resp.status_code)
        return None
    if not resp.encoding:
        resp.encoding = "utf-8"
    return resp.text


def _remote_import(url: str, media: str) -> str:
    cond = f" {media}" if media else ""
    return f'@import url("{url}"){cond};'


def _inline_import(
    ctx: BakeContext, rule: ImportRule, base_url: str, ancestors: Tuple[str, ...]
) -> Optional[str]:
    """Return the replacement for ``rule``, or None to leave it as written."""
    try:
        target = resolve_reference(base_url, rule.url)
    except MalformedReference as e:
        logging.warning("skipping malformed @import: %s", e)
        return None
    if not ctx.is_source_origin(target):
        return None
    if _cycle_key(target) in ancestors:
        logging.debug("dropping cyclic @import of %s from %s", target, base_url)
        return ""
    media = rule.media
    if media.lower().startswith(("layer", "supports(")):
        # cascade layers and supports() cannot be expressed by wrapping
        return _remote_import(target, media)
    text = fetch_text(ctx, target)
    if text is None:
        return _remote_import(target, media)
    inlined = _rewrite(ctx, text, target, ancestors)
    if media:
        return f"@media {media} {{\n{inlined}\n}}"
    return inlined


def _splice(text: str, replacements: List[Tuple[int, int, str]]) -> str:
    out = []
    last = 0
    for s, e, repl in sorted(replacements, key=lambda x: x[0]):
        out.append(text[last:s])
        out.append(repl)
        last = e
    out.append(text[last:])
    return "".join(out)


def _rewrite(
    ctx: BakeContext, css_text: str, base_url: str, ancestors: Tuple[str, ...]
) -> str:
    ancestors = ancestors + (_cycle_key(base_url),)
    replacements: List[Tuple[int, int, str]] = []

    spans: List[Tuple[int, int]] = []
    for rule in iter_imports(css_text):
        spans.append((rule.start, rule.end))
        repl = _inline_import(ctx, rule, base_url, ancestors)
        if repl is not None:
            replacements.append((rule.start, rule.end, repl))

    # references inside @import spans belong to the imported sheet, not this one
    wanted: List[Tuple[UrlRef, str, str]] = []
    for ref in iter_url_refs(css_text):
        if any(s <= ref.start < e for s, e in spans):
            continue
        if not ref.value or ref.value.lower().startswith("data:"):
            continue
        try:
            absu = resolve_reference(base_url, ref.value)
        except MalformedReference as e:
            logging.warning("skipping malformed css reference: %s", e)
            continue
        if not ctx.is_source_origin(absu):
            continue
        wanted.append((ref, absu, asset_type_for_css_url(absu)))

    localized = localize_many(ctx, [(u, t) for _, u, t in wanted])
    for ref, absu, asset_type in wanted:
        new_url = localized[(absu, asset_type)]
        q = ref.quote
        replacements.append((ref.start, ref.end, f"url({q}{new_url}{q})"))

    if not replacements:
        return css_text
    return _splice(css_text, replacements)


def rewrite_stylesheet(ctx: BakeContext, css_text: str, base_url: str) -> str:
    """Inline same-origin ``@import`` chains and localize same-origin ``url()``s.

    Off-origin and ``data:`` references are left exactly as written, and a
    stylesheet importing one of its ancestors has that directive dropped.
    """
    return _rewrite(ctx, css_text, base_url, ())
