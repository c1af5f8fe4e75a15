import argparse
import logging
import sys
from typing import List, Optional
from urllib.parse import urlparse

from .bake import bake_site, write_manifest
from .pages import PageSourceError, build_index, fetch_site_pages, pages_from_paths
from .render import get_render_driver
from .settings import BakeContext, Settings, load_config_file


def build_arg_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        description="Bake rendered pages into self-contained static artifacts.",
        add_help=True,
    )
    p.add_argument("--config", type=str, help="path to config.toml|.yaml", default=None)

    p.add_argument("source_origin", help="http(s) origin of the source site")
    p.add_argument("output_dir", help="output directory")
    p.add_argument(
        "--page",
        action="append",
        default=[],
        help="friendly path to bake (repeatable); skips the content API",
    )
    p.add_argument(
        "--timeout", type=float, default=15.0, help="request timeout seconds"
    )
    p.add_argument("--workers", type=int, default=16, help="concurrent downloads per page")
    p.add_argument("--page-workers", type=int, default=2, help="pages baked in parallel")
    p.add_argument(
        "--max-bytes", type=int, default=50_000_000, help="max bytes per file"
    )
    p.add_argument("--verbose", action="store_true", help="debug logging")

    # links
    p.add_argument(
        "--path-prefix",
        type=str,
        default="/web/guest",
        help="source path prefix stripped before matching friendly paths",
    )
    p.add_argument(
        "--route-prefix", type=str, default="/pages", help="static route namespace"
    )

    # page enumeration
    p.add_argument("--api-endpoint", type=str, default=None, help="content API base URL")
    p.add_argument("--site-id", type=str, default=None, help="site id for the content API")
    p.add_argument("--page-size", type=int, default=100, help="content API page size")

    # render
    p.add_argument(
        "--no-render-js",
        action="store_true",
        help="fetch pages over plain HTTP instead of rendering with Playwright",
    )
    p.add_argument(
        "--render-timeout-ms", type=int, default=30000, help="Playwright timeout ms"
    )
    p.add_argument(
        "--wait-until", type=str, default="networkidle", help="Playwright wait_until"
    )

    # auth / session
    p.add_argument(
        "--cookies",
        type=str,
        default=None,
        help="cookies.txt (Netscape/Mozilla format)",
    )
    p.add_argument(
        "--header",
        action="append",
        default=[],
        help="extra request header 'Name: value'",
    )
    p.add_argument("--auth-basic", type=str, default=None, help="basic auth user:pass")
    p.add_argument("--auth-bearer", type=str, default=None, help="bearer token")

    return p


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = build_arg_parser()
    preliminary, _ = parser.parse_known_args(argv)
    if preliminary.config:
        cfg = load_config_file(preliminary.config)
        if isinstance(cfg, dict):
            flat = dict(cfg)
            for g in ("links", "api", "render", "auth", "general"):
                if isinstance(cfg.get(g), dict):
                    flat.update(cfg[g])
            if "render_js" in flat:
                flat["no_render_js"] = not flat.pop("render_js")
            parser.set_defaults(**{k.replace("-", "_"): v for k, v in flat.items()})
    args = parser.parse_args(argv)
    return args


def settings_from_args(args: argparse.Namespace) -> Settings:
    return Settings(
        source_origin=args.source_origin.rstrip("/"),
        output_dir=args.output_dir,
        timeout=args.timeout,
        workers=max(1, args.workers),
        page_workers=max(1, args.page_workers),
        max_bytes=max(1024, args.max_bytes),
        path_prefix=args.path_prefix or None,
        route_prefix=args.route_prefix,
        api_endpoint=args.api_endpoint,
        site_id=args.site_id,
        page_size=max(1, args.page_size),
        render_js=not args.no_render_js,
        render_timeout_ms=args.render_timeout_ms,
        wait_until=args.wait_until,
        cookies_file=args.cookies,
        extra_headers=args.header or [],
        auth_basic=args.auth_basic,
        auth_bearer=args.auth_bearer,
    )


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    if urlparse(args.source_origin).scheme not in {"http", "https"}:
        print("Invalid URL. Use http:// or https://")
        return 1

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(levelname)s: %(message)s",
    )
    settings = settings_from_args(args)

    with BakeContext.create(settings) as ctx:
        if args.page:
            entries = pages_from_paths(settings, args.page)
        else:
            try:
                entries = fetch_site_pages(ctx)
            except PageSourceError as e:
                print(f"Critical error: cannot list pages: {e}")
                return 1
        with get_render_driver(ctx) as driver:
            report = bake_site(ctx, driver, entries, build_index(entries))
        manifest = write_manifest(ctx, report)

    print("Bake complete")
    print(f"Pages saved: {len(report.pages)}")
    if report.failures:
        print(f"Pages failed: {len(report.failures)}")
    print(f"Manifest: {manifest}")
    return 1 if report.failures else 0


if __name__ == "__main__":
    sys.exit(main())
