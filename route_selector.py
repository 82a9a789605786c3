import logging
import re
from dataclasses import dataclass
from enum import Enum
from urllib.parse import urljoin

from proxy_config import STUDIO_CDN_ORIGIN

logger = logging.getLogger(__name__)

STUDIO_PREFIX = "/studio"
CDN_PREFIX = "/cdn-cgi"

_LEADING_SLASHES = re.compile(r"^/{2,}")


class RouteKind(Enum):
    DEFAULT_TARGET = "default"
    STUDIO = "studio"
    CDN = "cdn"


@dataclass(frozen=True)
class Route:
    kind: RouteKind
    base_url: str
    path: str

    @property
    def url(self) -> str:
        return build_target_url(self.base_url, self.path)


def _normalize_path(path: str) -> str:
    if not path:
        return "/"
    if not path.startswith("/"):
        path = "/" + path
    return _LEADING_SLASHES.sub("/", path)


def select_route(path: str, target: str) -> Route:
    """Pick the upstream for an inbound path (with query) by literal prefix."""
    if path.startswith(STUDIO_PREFIX):
        rewritten = _normalize_path(path[len(STUDIO_PREFIX):])
        logger.info(f"Studio route: {path} -> {STUDIO_CDN_ORIGIN}{rewritten}")
        return Route(RouteKind.STUDIO, STUDIO_CDN_ORIGIN, rewritten)

    if path.startswith(CDN_PREFIX):
        rewritten = _normalize_path(path)
        logger.info(f"CDN route: {path} -> {STUDIO_CDN_ORIGIN}{rewritten}")
        return Route(RouteKind.CDN, STUDIO_CDN_ORIGIN, rewritten)

    return Route(RouteKind.DEFAULT_TARGET, target, _normalize_path(path))


def build_target_url(base_url: str, path: str) -> str:
    # Path-absolute reference: replaces any path on the base, keeps scheme and authority
    return urljoin(base_url, _normalize_path(path))
