import json
import logging
import os
import re
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from .document import bs4_parse, rewrite_document, serialize_html
from .links import FriendlyPathIndex
from .pages import PageEntry, build_index
from .render import RenderDriver, RenderFailure
from .settings import BakeContext

INVALID_FILENAME_CHARS_RE = re.compile(r'[<>:"/\\|?*]')
URL_ATTRS = ("href", "src", "action", "formaction", "xlink:href")


@dataclass
class PageArtifact:
    friendly_path: str
    title: Optional[str]
    html: str
    inline_styles: List[str] = field(default_factory=list)
    stylesheets: List[str] = field(default_factory=list)
    scripts: List[str] = field(default_factory=list)


@dataclass
class BakeReport:
    pages: Dict[str, Path] = field(default_factory=dict)
    failures: Dict[str, str] = field(default_factory=dict)


# -------------------- Utils --------------------


def sanitize_filename(name: str) -> str:
    name = INVALID_FILENAME_CHARS_RE.sub("_", name)
    name = name or "file"
    if name.startswith("."):
        name = "_" + name[1:]
    return name[:200]


def atomic_write_json(path: Path, data: dict) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(path.suffix + ".tmp")
    tmp.write_text(json.dumps(data, indent=2), encoding="utf-8")
    os.replace(tmp, path)


def artifact_path_for(ctx: BakeContext, friendly_path: str) -> Path:
    root = ctx.output_dir / "pages"
    segs = [sanitize_filename(s) for s in friendly_path.split("/") if s]
    if not segs:
        return root / "index.json"
    return root.joinpath(*segs[:-1], segs[-1] + ".json")


def sanitize_body(html: str) -> str:
    """Return the inner HTML of ``<body>`` without anything executable.

    Script tags, ``on*`` handlers and ``javascript:`` URLs are removed; the
    scripts the page needs come back through the artifact's script list.
    """
    soup = bs4_parse(html)
    body = soup.body or soup
    for tag in body.find_all(["script", "noscript"]):
        tag.decompose()
    for tag in body.find_all(True):
        for attr in list(tag.attrs):
            if attr.lower().startswith("on"):
                del tag.attrs[attr]
            elif attr.lower() in URL_ATTRS:
                val = tag.attrs[attr]
                if isinstance(val, str) and val.strip().lower().startswith("javascript:"):
                    del tag.attrs[attr]
    return body.decode_contents(formatter="html") if soup.body else serialize_html(soup)


def page_title(html: str) -> Optional[str]:
    soup = bs4_parse(html)
    if soup.title and soup.title.string:
        return soup.title.string.strip()
    return None


# -------------------- Bake --------------------


def bake_page(
    ctx: BakeContext,
    driver: RenderDriver,
    entry: PageEntry,
    index: FriendlyPathIndex,
) -> PageArtifact:
    """Render one page and turn it into its static artifact.

    Raises RenderFailure when the page cannot be rendered; every asset-level
    problem is absorbed by the rewrite.
    """
    logging.info("GET %s", entry.render_url)
    rendered = driver.render(entry.render_url)
    logging.debug(
        "discovered %d stylesheets, %d scripts for %s",
        len(rendered.stylesheet_urls),
        len(rendered.script_urls),
        entry.friendly_path,
    )
    result = rewrite_document(
        ctx,
        rendered.html,
        rendered.url or entry.render_url,
        rendered.stylesheet_urls,
        rendered.script_urls,
        index,
    )
    return PageArtifact(
        friendly_path=entry.friendly_path,
        title=entry.title or page_title(rendered.html),
        html=sanitize_body(result.html),
        inline_styles=result.inline_styles,
        stylesheets=result.stylesheets,
        scripts=result.scripts,
    )


def write_artifact(ctx: BakeContext, artifact: PageArtifact) -> Path:
    path = artifact_path_for(ctx, artifact.friendly_path)
    atomic_write_json(path, asdict(artifact))
    logging.info("saved page: %s -> %s", artifact.friendly_path, path)
    return path


def bake_site(
    ctx: BakeContext,
    driver: RenderDriver,
    entries: Iterable[PageEntry],
    index: Optional[FriendlyPathIndex] = None,
) -> BakeReport:
    """Bake every page with bounded parallelism.

    A page that fails to render or rewrite is recorded in the report and
    skipped; its siblings are unaffected.
    """
    entries = list(entries)
    index = index if index is not None else build_index(entries)
    report = BakeReport()
    if not entries:
        return report
    with ThreadPoolExecutor(max_workers=max(1, ctx.settings.page_workers)) as pool:
        future_map = {
            pool.submit(bake_page, ctx, driver, entry, index): entry for entry in entries
        }
        for fut in as_completed(future_map):
            entry = future_map[fut]
            try:
                artifact = fut.result()
            except RenderFailure as e:
                logging.error("failed to bake %s: %s", entry.friendly_path, e)
                report.failures[entry.friendly_path] = str(e)
                continue
            except Exception as e:
                logging.exception("unexpected error baking %s", entry.friendly_path)
                report.failures[entry.friendly_path] = f"{type(e).__name__}: {e}"
                continue
            report.pages[entry.friendly_path] = write_artifact(ctx, artifact)
    return report


# -------------------- Manifest --------------------


def write_manifest(ctx: BakeContext, report: BakeReport) -> Path:
    root = ctx.output_dir
    created_ts = (
        datetime.now(timezone.utc)
        .replace(microsecond=0)
        .isoformat()
        .replace("+00:00", "Z")
    )
    data = {
        "site": ctx.source_origin,
        "created_utc": created_ts,
        "pages": {
            path: str(p.resolve().relative_to(root))
            for path, p in sorted(report.pages.items())
        },
        "failures": dict(sorted(report.failures.items())),
        "layout": {
            "pages_dir": "pages/",
            "assets_dir": "assets/",
        },
    }
    path = root / "meta" / "manifest.json"
    atomic_write_json(path, data)
    return path
