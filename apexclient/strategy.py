"""
Classification of intercepted requests into caching strategies.

Every rule looks at the URL path only. Query strings and the origin never
influence the strategy.

Extension matching is case-sensitive for static assets and case-insensitive
for images. `/logo.png` is a static asset, `/logo.PNG` is an image and lands
in the dynamic generation, and `/STYLE.CSS` is neither, so it is handled as a
page.
"""

from dataclasses import dataclass, field
from enum import Enum
import re
from typing import Mapping, Pattern, Sequence


STATIC_ASSET = re.compile(r'\.(css|js|woff2?|ttf|eot|ico|png|jpg|jpeg|gif|svg|webp|avif)$')
IMAGE = re.compile(r'\.(png|jpg|jpeg|gif|svg|webp|avif)$', re.IGNORECASE)
API_PREFIX = '/api/'

# /api/apprenticeships/public is never cached so listings are always fresh.
DEFAULT_API_CACHE_PATTERNS = (
    re.compile(r'^/api/health'),
    re.compile(r'^/api/test'),
    re.compile(r'^/api/company/search'),
)

DEFAULT_NO_CACHE_API_PATTERNS = (
    re.compile(r'^/api/apprenticeships/public'),
    re.compile(r'^/api/email/subscribe'),
)

NO_STORE_HEADERS: Mapping[str, str] = {
    'Cache-Control': 'no-cache, no-store, must-revalidate',
    'Pragma': 'no-cache',
}


class Strategy(Enum):
    STATIC_ASSET = 'static-asset'
    """
    Cache first, stored in the static generation.
    """
    API = 'api'
    """
    Network first with a cache fallback, subject to the API cache policy.
    """
    IMAGE = 'image'
    """
    Cache first, stored in the dynamic generation.
    """
    PAGE = 'page'
    """
    Network first, falling back to the cache and then the root document.
    """


def classify(path: str) -> Strategy:
    """
    Pick the strategy for a request path. The first matching rule wins.
    """
    if STATIC_ASSET.search(path):
        return Strategy.STATIC_ASSET
    if path.startswith(API_PREFIX):
        return Strategy.API
    if IMAGE.search(path):
        return Strategy.IMAGE
    return Strategy.PAGE


@dataclass(frozen=True)
class ApiCachePolicy:
    """
    Which API paths may be stored, and which must bypass every cache.

    The never-cache list wins over the cache list.
    """
    cache_patterns: Sequence[Pattern] = field(default=DEFAULT_API_CACHE_PATTERNS)
    never_cache_patterns: Sequence[Pattern] = field(default=DEFAULT_NO_CACHE_API_PATTERNS)

    def should_cache(self, path: str) -> bool:
        return (not self.should_never_cache(path)
                and any(pattern.search(path) for pattern in self.cache_patterns))

    def should_never_cache(self, path: str) -> bool:
        return any(pattern.search(path) for pattern in self.never_cache_patterns)
