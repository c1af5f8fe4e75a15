"""Bake dynamically rendered pages into self-contained static artifacts."""

from .bake import BakeReport, PageArtifact, bake_page, bake_site
from .css import rewrite_stylesheet
from .document import RewriteResult, rewrite_document
from .links import FriendlyPathIndex, classify
from .localizer import localize
from .render import RenderDriver, RenderedPage, RenderFailure
from .settings import BakeContext, Settings

__version__ = "0.1.0"

__all__ = [
    "BakeContext",
    "BakeReport",
    "FriendlyPathIndex",
    "PageArtifact",
    "RenderDriver",
    "RenderFailure",
    "RenderedPage",
    "RewriteResult",
    "Settings",
    "bake_page",
    "bake_site",
    "classify",
    "localize",
    "rewrite_document",
    "rewrite_stylesheet",
]
