from __future__ import annotations

import logging
import posixpath
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional, Tuple
from urllib.parse import unquote, urlparse

import requests
from requests.adapters import HTTPAdapter

from detector import BROWSER_USER_AGENT, TOOL_USER_AGENT, SiteInfo
from errors import ExtractionError


logger = logging.getLogger(__name__)

API_PAGE_SIZE = 100
API_TIMEOUT = 30
SCRAPE_TIMEOUT = 30
MEDIA_LIMIT = 10
MEDIA_TIMEOUT = 30
MEDIA_WORKERS = 4
CONTENT_KINDS = ("posts", "pages", "media")

MediaFile = Tuple[str, bytes]


@dataclass
class ExtractedContent:
    posts: List[dict] = field(default_factory=list)
    pages: List[dict] = field(default_factory=list)
    media: List[dict] = field(default_factory=list)

    def to_dict(self) -> Dict[str, List[dict]]:
        return {"posts": self.posts, "pages": self.pages, "media": self.media}


def _session(pool_size: int = MEDIA_LIMIT) -> requests.Session:
    session = requests.Session()
    adapter = HTTPAdapter(pool_connections=pool_size, pool_maxsize=pool_size, max_retries=0)
    session.mount("https://", adapter)
    session.mount("http://", adapter)
    return session


class ContentExtractor:
    def __init__(self, session: Optional[requests.Session] = None) -> None:
        self.session = session or _session()

    def extract(self, job, site_info: SiteInfo) -> ExtractedContent:
        if site_info.has_rest_api and site_info.rest_api_url:
            return self._fetch_from_api(site_info.rest_api_url, job.credentials)
        return self._scrape_home_page(job.website_url)

    def _fetch_from_api(self, api_url: str, credentials: Optional[dict]) -> ExtractedContent:
        auth = None
        if credentials and credentials.get("username"):
            auth = (str(credentials["username"]), str(credentials.get("password") or ""))

        collected: Dict[str, List[dict]] = {}
        for kind in CONTENT_KINDS:
            collected[kind] = self._fetch_collection(f"{api_url.rstrip('/')}/{kind}", auth)
        return ExtractedContent(**collected)

    def _fetch_collection(self, url: str, auth: Optional[Tuple[str, str]]) -> List[dict]:
        try:
            response = self.session.get(
                url,
                params={"per_page": API_PAGE_SIZE},
                auth=auth,
                timeout=API_TIMEOUT,
                headers={"User-Agent": TOOL_USER_AGENT, "Accept": "application/json"},
            )
            response.raise_for_status()
            payload = response.json()
        except (requests.RequestException, ValueError) as exc:
            raise ExtractionError(f"Failed to fetch WordPress content: {exc}") from exc

        if not isinstance(payload, list):
            raise ExtractionError(f"Failed to fetch WordPress content: unexpected response from {url}")
        return [item for item in payload if isinstance(item, dict)]

    def _scrape_home_page(self, url: str) -> ExtractedContent:
        try:
            response = self.session.get(
                url,
                timeout=SCRAPE_TIMEOUT,
                headers={"User-Agent": BROWSER_USER_AGENT},
            )
            response.raise_for_status()
        except requests.RequestException as exc:
            raise ExtractionError(f"Failed to fetch website content: {exc}") from exc

        page = {
            "title": {"rendered": "Home Page"},
            "content": {"rendered": response.text or ""},
            "date": datetime.now(timezone.utc).isoformat(timespec="seconds"),
            "type": "page",
            "link": url,
        }
        return ExtractedContent(posts=[], pages=[page], media=[])


class MediaFetcher:
    """Downloads the first ``MEDIA_LIMIT`` media items.

    Items are fetched concurrently; a failing item is logged and left out,
    the rest keep their input order.
    """

    def __init__(self, session: Optional[requests.Session] = None, max_workers: int = MEDIA_WORKERS) -> None:
        self.session = session or _session()
        self.max_workers = max(1, max_workers)

    def fetch_media(self, items: List[dict]) -> List[MediaFile]:
        selected = list(items or [])[:MEDIA_LIMIT]
        if not selected:
            return []

        with ThreadPoolExecutor(max_workers=min(self.max_workers, len(selected))) as pool:
            results = list(pool.map(self._fetch_one, selected))

        files: List[MediaFile] = []
        used_names: set[str] = set()
        for result in results:
            if result is None:
                continue
            name, body = result
            files.append((self._unique_name(name, used_names), body))
        return files

    def _fetch_one(self, item: dict) -> Optional[MediaFile]:
        item = item if isinstance(item, dict) else {}
        url = str(item.get("source_url") or "").strip()
        name = self._media_name(url)
        if not name:
            logger.warning("Skipping media item without a usable source_url: %r", item.get("id"))
            return None
        try:
            response = self.session.get(url, timeout=MEDIA_TIMEOUT, headers={"User-Agent": TOOL_USER_AGENT})
            response.raise_for_status()
        except requests.RequestException as exc:
            logger.warning("Failed to download media file %s: %s", url, exc)
            return None
        return name, response.content

    def _media_name(self, url: str) -> str:
        parsed = urlparse(url)
        if parsed.scheme not in {"http", "https"}:
            return ""
        name = posixpath.basename(unquote(parsed.path or "")).strip()
        if name in {".", ".."} or "\\" in name:
            return ""
        return name

    def _unique_name(self, name: str, used: set[str]) -> str:
        candidate = name
        stem, ext = posixpath.splitext(name)
        counter = 2
        while candidate in used:
            candidate = f"{stem}-{counter}{ext}"
            counter += 1
        used.add(candidate)
        return candidate
