from __future__ import annotations

import re
from collections import Counter
from dataclasses import asdict, dataclass
from typing import Dict, List, Optional
from urllib.parse import urlparse

import requests
from bs4 import BeautifulSoup
from requests.adapters import HTTPAdapter

from errors import FetchError


BROWSER_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36"
)
TOOL_USER_AGENT = "WordPress Backup Tool"
PAGE_TIMEOUT = 10
API_PROBE_TIMEOUT = 5
WP_ASSET_MARKERS = ("wp-content", "wp-includes")
WP_API_REL = "https://api.w.org/"
WP_API_NAMESPACE = "wp/v2"
GENERATOR_VERSION_RE = re.compile(r"WordPress\s+(\d+\.\d+(?:\.\d+)?)")
ASSET_VERSION_RE = re.compile(r"ver=(\d+\.\d+(?:\.\d+)?)")
THEME_MARKER = "wp-content/themes/"


@dataclass(frozen=True)
class SiteInfo:
    is_wordpress: bool
    version: Optional[str] = None
    theme: Optional[str] = None
    has_rest_api: bool = False
    rest_api_url: Optional[str] = None
    requires_auth: bool = False

    def to_dict(self) -> Dict[str, object]:
        return asdict(self)


class SiteDetector:
    """Fingerprints a site as WordPress and locates its REST API.

    Detection is a plain OR over independent HTML signals, so a positive
    result is provisional: false positives are accepted for recall.
    """

    def __init__(self, session: Optional[requests.Session] = None) -> None:
        if session is None:
            session = requests.Session()
            adapter = HTTPAdapter(max_retries=0)
            session.mount("https://", adapter)
            session.mount("http://", adapter)
        self.session = session

    def classify(self, url: str) -> SiteInfo:
        html = self._fetch_page(url)
        info = self.classify_html(url, html)
        if not info.is_wordpress:
            return info

        status = self._probe_rest_api(info.rest_api_url or "")
        return SiteInfo(
            is_wordpress=True,
            version=info.version,
            theme=info.theme,
            has_rest_api=status == 200,
            rest_api_url=info.rest_api_url,
            requires_auth=status in (401, 403),
        )

    def classify_html(self, url: str, html: str) -> SiteInfo:
        """Classify already-fetched HTML without touching the network.

        The REST API is reported as unavailable here; ``classify`` fills in
        the probe result.
        """
        soup = BeautifulSoup(html or "", "html.parser")
        if not self._has_wordpress_signals(soup, html or ""):
            return SiteInfo(is_wordpress=False)

        return SiteInfo(
            is_wordpress=True,
            version=self._extract_version(soup, html or ""),
            theme=self._extract_theme(soup),
            has_rest_api=False,
            rest_api_url=self._extract_rest_api_url(soup, url),
            requires_auth=False,
        )

    def _fetch_page(self, url: str) -> str:
        try:
            response = self.session.get(
                url,
                timeout=PAGE_TIMEOUT,
                headers={"User-Agent": BROWSER_USER_AGENT},
            )
            response.raise_for_status()
        except requests.RequestException as exc:
            raise FetchError(f"Failed to analyze website: {exc}") from exc
        return response.text or ""

    def _probe_rest_api(self, api_url: str) -> Optional[int]:
        if not api_url:
            return None
        try:
            response = self.session.get(
                api_url,
                timeout=API_PROBE_TIMEOUT,
                headers={"User-Agent": TOOL_USER_AGENT},
            )
        except requests.RequestException:
            return None
        return int(response.status_code)

    def _has_wordpress_signals(self, soup: BeautifulSoup, html: str) -> bool:
        if "WordPress" in self._generator(soup):
            return True

        if any(marker in html for marker in WP_ASSET_MARKERS):
            return True

        for tag in soup.find_all("script", src=True):
            if self._mentions_wp_assets(tag.get("src")):
                return True
        for tag in soup.find_all("link", href=True):
            if self._mentions_wp_assets(tag.get("href")):
                return True

        body = soup.find("body")
        body_class = " ".join(body.get("class") or []) if body is not None else ""
        return "wp-" in body_class or "wordpress" in body_class

    def _mentions_wp_assets(self, value: Optional[str]) -> bool:
        return bool(value) and any(marker in value for marker in WP_ASSET_MARKERS)

    def _generator(self, soup: BeautifulSoup) -> str:
        tag = soup.find("meta", attrs={"name": "generator"})
        if tag is None:
            return ""
        return str(tag.get("content") or "")

    def _extract_version(self, soup: BeautifulSoup, html: str) -> Optional[str]:
        generator = self._generator(soup)
        if "WordPress" in generator:
            match = GENERATOR_VERSION_RE.search(generator)
            if match:
                return match.group(1)

        versions = [m.group(1) for m in ASSET_VERSION_RE.finditer(html)]
        return self._most_common_version(versions)

    def _most_common_version(self, versions: List[str]) -> Optional[str]:
        # Counter keeps insertion order, so equal counts go to the first seen.
        if not versions:
            return None
        return Counter(versions).most_common(1)[0][0]

    def _extract_theme(self, soup: BeautifulSoup) -> Optional[str]:
        for tag in soup.find_all("link", href=True):
            if "stylesheet" not in (tag.get("rel") or []):
                continue
            href = str(tag.get("href") or "")
            if THEME_MARKER not in href:
                continue
            slug = href.split(THEME_MARKER, 1)[1].split("/", 1)[0].split("?", 1)[0].strip()
            if slug:
                return slug
        return None

    def _extract_rest_api_url(self, soup: BeautifulSoup, base_url: str) -> str:
        for tag in soup.find_all("link", href=True):
            if WP_API_REL not in (tag.get("rel") or []):
                continue
            href = str(tag.get("href") or "").strip()
            parsed = urlparse(href)
            if parsed.scheme in {"http", "https"} and not parsed.query:
                root = href.rstrip("/")
                if root.endswith(WP_API_NAMESPACE):
                    return root
                return f"{root}/{WP_API_NAMESPACE}"

        parsed = urlparse(base_url)
        return f"{parsed.scheme}://{parsed.netloc}/wp-json/{WP_API_NAMESPACE}"
