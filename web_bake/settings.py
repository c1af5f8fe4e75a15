import base64
import logging
from dataclasses import dataclass, field
from http.cookiejar import MozillaCookieJar
from pathlib import Path
from threading import Lock
from typing import Dict, List, Optional, Union
from urllib.parse import urlparse

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

# -------------------- Config --------------------

DEFAULT_HEADERS = {
    "User-Agent": "Mozilla/5.0 (Windows NT 10.0; Win64; x64) "
    "AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/124.0.0.0 Safari/537.36",
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.7",
}


@dataclass
class Settings:
    source_origin: str = ""
    output_dir: str = "public"
    timeout: float = 15.0
    workers: int = 16
    page_workers: int = 2
    max_bytes: int = 50_000_000

    # Links
    path_prefix: Optional[str] = "/web/guest"
    route_prefix: str = "/pages"

    # Page enumeration
    api_endpoint: Optional[str] = None
    site_id: Optional[str] = None
    page_size: int = 100

    # Rendering
    render_js: bool = True
    render_timeout_ms: int = 30000
    wait_until: str = "networkidle"

    # Auth / session
    cookies_file: Optional[str] = None
    extra_headers: List[str] = field(default_factory=list)  # "Name: value"
    auth_basic: Optional[str] = None  # "user:pass"
    auth_bearer: Optional[str] = None

    def authorization_header(self) -> Optional[str]:
        if self.auth_bearer:
            return f"Bearer {self.auth_bearer}"
        if self.auth_basic:
            if ":" not in self.auth_basic:
                logging.error("--auth-basic requires user:pass")
                return None
            token = base64.b64encode(self.auth_basic.encode("utf-8")).decode("ascii")
            return f"Basic {token}"
        return None


# -------------------- Session --------------------


def build_session(headers: Optional[Dict[str, str]] = None) -> requests.Session:
    s = requests.Session()
    retry = Retry(
        total=5,
        backoff_factor=0.5,
        status_forcelist=[429, 500, 502, 503, 504],
        allowed_methods={"GET", "HEAD"},
        raise_on_status=False,
        respect_retry_after_header=True,
    )
    adapter = HTTPAdapter(max_retries=retry, pool_connections=128, pool_maxsize=128)
    s.mount("http://", adapter)
    s.mount("https://", adapter)
    s.headers.update(DEFAULT_HEADERS if headers is None else headers)
    return s


def apply_auth_to_session(session: requests.Session, settings: Settings) -> None:
    for h in settings.extra_headers:
        if ":" not in h:
            logging.warning("invalid header (no colon): %s", h)
            continue
        k, v = h.split(":", 1)
        session.headers[k.strip()] = v.strip()
    # sent as a plain header so the browser can replay it on sub-requests
    auth = settings.authorization_header()
    if auth:
        session.headers["Authorization"] = auth
    if settings.cookies_file:
        try:
            jar = MozillaCookieJar()
            jar.load(settings.cookies_file, ignore_discard=True, ignore_expires=True)
            session.cookies.update(jar)
            logging.info("loaded cookies: %s", settings.cookies_file)
        except (OSError, ValueError) as e:
            logging.error("failed to load cookies: %s", e)


# -------------------- Build context --------------------


class BakeContext:
    """Everything one build run shares between pipeline calls.

    Holds the HTTP session, the settings and the parsed-sprite cache. Create
    one per run and close it when the run is over; nothing here outlives it
    except the files written under ``output_dir``.
    """

    def __init__(
        self,
        settings: Settings,
        session: Optional[requests.Session] = None,
    ):
        if not settings.source_origin:
            raise ValueError("settings.source_origin is required")
        self.settings = settings
        self.session = session if session is not None else build_session()
        self.output_dir = Path(settings.output_dir).resolve()
        self.sprites: Dict[str, object] = {}
        self.sprites_lock = Lock()

    @classmethod
    def create(cls, settings: Settings) -> "BakeContext":
        session = build_session()
        apply_auth_to_session(session, settings)
        return cls(settings, session)

    @property
    def source_origin(self) -> str:
        return self.settings.source_origin

    def is_source_origin(self, url: str) -> bool:
        b, o = urlparse(self.settings.source_origin), urlparse(url)
        return (b.scheme, b.netloc) == (o.scheme, o.netloc)

    def close(self) -> None:
        with self.sprites_lock:
            self.sprites.clear()
        self.session.close()

    def __enter__(self) -> "BakeContext":
        return self

    def __exit__(self, *exc) -> None:
        self.close()


# -------------------- Config loader --------------------


def load_config_file(path: str) -> Dict[str, Union[str, int, float, bool, List[str]]]:
    p = Path(path)
    suf = p.suffix.lower()
    if suf in {".toml", ".tml"}:
        import tomllib

        with open(p, "rb") as f:
            return tomllib.load(f) or {}
    elif suf in {".yaml", ".yml"}:
        import yaml

        with open(p, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
            if not isinstance(data, dict):
                raise RuntimeError("Top-level YAML must be a mapping")
            return data
    else:
        raise RuntimeError("Unsupported config format. Use .toml or .yaml")
