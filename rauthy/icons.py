"""
Brand icon lookup for credential issuers.

Icons are cosmetic: a failed lookup is logged and yields an empty string,
it never blocks a vault operation.
"""

import logging
import os
from dataclasses import dataclass
from typing import List, Optional
from urllib.parse import quote

import requests

from . import config

logger = logging.getLogger(__name__)


@dataclass
class Brand:
    """A single brand search result."""
    brand_id: str
    name: str
    domain: str
    icon: str
    claimed: bool = False

    @classmethod
    def from_dict(cls, data: dict) -> 'Brand':
        return cls(
            brand_id=data.get('brandId', ''),
            name=data.get('name') or '',
            domain=data.get('domain') or '',
            icon=data.get('icon') or '',
            claimed=bool(data.get('claimed', False)),
        )


def search_brand(name: str, client_id: str, timeout: float = config.ICON_LOOKUP_TIMEOUT_SECONDS) -> List[Brand]:
    """
    Search brands matching ``name``.

    Raises:
        requests.RequestException: On network errors or a non-200 response
        ValueError: If the response body is not the expected JSON list
    """
    url = config.BRANDFETCH_SEARCH_URL.format(name=quote(name, safe=''))
    response = requests.get(url, params={'c': client_id}, timeout=timeout)
    response.raise_for_status()
    body = response.json()
    if not isinstance(body, list):
        raise ValueError(f"Unexpected brand search response: {type(body).__name__}")
    return [Brand.from_dict(item) for item in body if isinstance(item, dict)]


class IconLookup:
    """Callable returning an icon URL for an issuer, or "" when none is found."""

    def __init__(self, client_id: Optional[str] = None):
        if client_id is None:
            client_id = os.environ.get(config.BRANDFETCH_CLIENT_ID_ENV)
        self.client_id = client_id

    @property
    def enabled(self) -> bool:
        return bool(self.client_id)

    def __call__(self, issuer: str) -> str:
        if not self.enabled or not issuer:
            return ""
        try:
            brands = search_brand(issuer, self.client_id)
        except (requests.RequestException, ValueError) as e:
            logger.warning(f"Error searching brand logo for {issuer!r}: {e}")
            return ""
        if not brands:
            logger.debug(f"No brand found for {issuer!r}")
            return ""
        return brands[0].icon
