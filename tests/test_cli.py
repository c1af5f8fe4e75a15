from __future__ import annotations

import json

import pytest

from conftest import ORIGIN
from web_bake import cli
from web_bake.render import RenderDriver, RenderedPage, RenderFailure
from web_bake.settings import BakeContext


class StaticDriver(RenderDriver):
    def render(self, url: str) -> RenderedPage:
        if url.endswith("/broken"):
            raise RenderFailure("boom")
        return RenderedPage(url, f"<p>{url}</p>")


@pytest.fixture
def fake_build(monkeypatch, session):
    created = {}

    def create(settings):
        created["settings"] = settings
        return BakeContext(settings, session=session)

    monkeypatch.setattr(cli.BakeContext, "create", staticmethod(create))
    monkeypatch.setattr(cli, "get_render_driver", StaticDriver)
    return created


def test_config_file_supplies_defaults(tmp_path) -> None:
    cfg = tmp_path / "bake.toml"
    cfg.write_text(
        "workers = 3\n"
        "[links]\npath_prefix = \"/web/site\"\n"
        "[render]\nrender_js = false\nwait-until = \"load\"\n",
        encoding="utf-8",
    )

    args = cli.parse_args(["--config", str(cfg), ORIGIN, "out", "--workers", "5"])
    settings = cli.settings_from_args(args)

    assert settings.workers == 5
    assert settings.path_prefix == "/web/site"
    assert settings.render_js is False
    assert settings.wait_until == "load"


def test_yaml_config(tmp_path) -> None:
    cfg = tmp_path / "bake.yaml"
    cfg.write_text("api:\n  site_id: '20121'\n  page_size: 10\n", encoding="utf-8")

    settings = cli.settings_from_args(cli.parse_args(["--config", str(cfg), ORIGIN, "out"]))

    assert settings.site_id == "20121"
    assert settings.page_size == 10
    assert settings.render_js is True


def test_main_bakes_listed_pages(fake_build, tmp_path, capsys) -> None:
    out = tmp_path / "site"

    code = cli.main([ORIGIN + "/", str(out), "--page", "/", "--page", "about", "--no-render-js"])

    assert code == 0
    assert fake_build["settings"].source_origin == ORIGIN
    manifest = json.loads((out / "meta" / "manifest.json").read_text(encoding="utf-8"))
    assert manifest["pages"] == {"/": "pages/index.json", "/about": "pages/about.json"}
    assert "Pages saved: 2" in capsys.readouterr().out


def test_main_reports_failed_pages(fake_build, tmp_path, capsys) -> None:
    code = cli.main([ORIGIN, str(tmp_path / "site"), "--page", "/ok", "--page", "/broken"])

    assert code == 1
    assert "Pages failed: 1" in capsys.readouterr().out


def test_main_without_page_source(fake_build, tmp_path, capsys) -> None:
    code = cli.main([ORIGIN, str(tmp_path / "site")])

    assert code == 1
    assert "cannot list pages" in capsys.readouterr().out


def test_main_rejects_non_http_origin(capsys) -> None:
    assert cli.main(["ftp://src.test", "out"]) == 1
    assert "Invalid URL" in capsys.readouterr().out
