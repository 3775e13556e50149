from __future__ import annotations

import unittest

import requests

from content import ContentExtractor, ExtractedContent, MediaFetcher, MEDIA_LIMIT
from db import BackupJob
from detector import SiteInfo
from errors import ExtractionError
from http_stubs import json_response, make_response, StubSession


SITE = "https://example.com/"
API = "https://example.com/wp-json/wp/v2"
API_SITE = SiteInfo(is_wordpress=True, version="6.4", has_rest_api=True, rest_api_url=API)
NO_API_SITE = SiteInfo(is_wordpress=True, version="6.2", has_rest_api=False, rest_api_url=API)


def _job(credentials=None) -> BackupJob:
    return BackupJob(id=1, website_url=SITE, backup_type="full", options={"include_media": True}, credentials=credentials)


class ContentExtractorTest(unittest.TestCase):
    def _api_session(self) -> StubSession:
        return StubSession(
            {
                f"{API}/posts": json_response(f"{API}/posts", [{"id": 1, "slug": "hello"}, {"id": 2}]),
                f"{API}/pages": json_response(f"{API}/pages", [{"id": 10, "type": "page"}]),
                f"{API}/media": json_response(f"{API}/media", [{"id": 20, "source_url": "https://example.com/a.jpg"}]),
            }
        )

    def test_api_path_fetches_posts_pages_and_media(self) -> None:
        session = self._api_session()
        content = ContentExtractor(session=session).extract(_job(), API_SITE)
        self.assertEqual([p["id"] for p in content.posts], [1, 2])
        self.assertEqual([p["id"] for p in content.pages], [10])
        self.assertEqual(len(content.media), 1)
        self.assertEqual(session.called_urls(), [f"{API}/posts", f"{API}/pages", f"{API}/media"])
        for _, kwargs in session.calls:
            self.assertEqual(kwargs["params"], {"per_page": 100})
            self.assertIsNone(kwargs["auth"])

    def test_api_path_sends_basic_auth_when_credentials_given(self) -> None:
        session = self._api_session()
        ContentExtractor(session=session).extract(_job({"username": "admin", "password": "s3cret"}), API_SITE)
        for _, kwargs in session.calls:
            self.assertEqual(kwargs["auth"], ("admin", "s3cret"))

    def test_api_failure_raises_extraction_error(self) -> None:
        session = self._api_session()
        session.routes[f"{API}/pages"] = requests.ConnectionError("connection reset")
        with self.assertRaises(ExtractionError) as ctx:
            ContentExtractor(session=session).extract(_job(), API_SITE)
        self.assertIn("Failed to fetch WordPress content", str(ctx.exception))

    def test_api_http_error_raises_extraction_error(self) -> None:
        session = self._api_session()
        session.routes[f"{API}/media"] = json_response(f"{API}/media", {"code": "rest_forbidden"}, status=403)
        with self.assertRaises(ExtractionError):
            ContentExtractor(session=session).extract(_job(), API_SITE)

    def test_api_non_list_payload_raises_extraction_error(self) -> None:
        session = self._api_session()
        session.routes[f"{API}/posts"] = json_response(f"{API}/posts", {"posts": []})
        with self.assertRaises(ExtractionError):
            ContentExtractor(session=session).extract(_job(), API_SITE)

    def test_scrape_fallback_returns_single_page(self) -> None:
        html = "<html><body><h1>Welcome</h1></body></html>"
        session = StubSession({SITE: make_response(SITE, html)})
        content = ContentExtractor(session=session).extract(_job(), NO_API_SITE)
        self.assertEqual(content.posts, [])
        self.assertEqual(content.media, [])
        self.assertEqual(len(content.pages), 1)
        page = content.pages[0]
        self.assertEqual(page["title"]["rendered"], "Home Page")
        self.assertEqual(page["content"]["rendered"], html)
        self.assertEqual(page["type"], "page")
        self.assertEqual(session.called_urls(), [SITE])

    def test_scrape_failure_raises_extraction_error(self) -> None:
        session = StubSession({SITE: requests.Timeout("timed out")})
        with self.assertRaises(ExtractionError):
            ContentExtractor(session=session).extract(_job(), NO_API_SITE)

    def test_to_dict_layout(self) -> None:
        content = ExtractedContent(posts=[{"id": 1}], pages=[], media=[])
        self.assertEqual(content.to_dict(), {"posts": [{"id": 1}], "pages": [], "media": []})


class MediaFetcherTest(unittest.TestCase):
    def _items(self, count: int) -> list[dict]:
        return [{"id": i, "source_url": f"https://example.com/wp-content/uploads/img-{i}.jpg"} for i in range(1, count + 1)]

    def _session(self, items: list[dict]) -> StubSession:
        return StubSession({item["source_url"]: make_response(item["source_url"], f"bytes-{item['id']}".encode(), content_type="image/jpeg") for item in items})

    def test_only_first_ten_items_are_fetched(self) -> None:
        items = self._items(12)
        session = self._session(items)
        files = MediaFetcher(session=session).fetch_media(items)
        self.assertEqual(len(files), MEDIA_LIMIT)
        self.assertEqual([name for name, _ in files], [f"img-{i}.jpg" for i in range(1, 11)])
        self.assertEqual([body for _, body in files], [f"bytes-{i}".encode() for i in range(1, 11)])
        self.assertNotIn(items[10]["source_url"], session.called_urls())
        self.assertNotIn(items[11]["source_url"], session.called_urls())

    def test_failed_item_is_dropped_and_order_kept(self) -> None:
        items = self._items(4)
        session = self._session(items)
        session.routes[items[1]["source_url"]] = requests.Timeout("slow")
        session.routes[items[2]["source_url"]] = make_response(items[2]["source_url"], "missing", status=404)
        with self.assertLogs("content", level="WARNING"):
            files = MediaFetcher(session=session).fetch_media(items)
        self.assertEqual([name for name, _ in files], ["img-1.jpg", "img-4.jpg"])

    def test_items_without_source_url_are_skipped(self) -> None:
        items = [{"id": 1}, {"id": 2, "source_url": "ftp://example.com/x.jpg"}] + self._items(1)
        files = MediaFetcher(session=self._session(self._items(1))).fetch_media(items)
        self.assertEqual([name for name, _ in files], ["img-1.jpg"])

    def test_duplicate_basenames_get_suffix(self) -> None:
        items = [
            {"id": 1, "source_url": "https://example.com/2023/01/photo.jpg"},
            {"id": 2, "source_url": "https://example.com/2024/02/photo.jpg"},
        ]
        session = StubSession({item["source_url"]: make_response(item["source_url"], b"x") for item in items})
        files = MediaFetcher(session=session).fetch_media(items)
        self.assertEqual([name for name, _ in files], ["photo.jpg", "photo-2.jpg"])

    def test_media_requests_use_thirty_second_timeout(self) -> None:
        items = self._items(2)
        session = self._session(items)
        MediaFetcher(session=session).fetch_media(items)
        self.assertTrue(all(kwargs["timeout"] == 30 for _, kwargs in session.calls))

    def test_empty_input(self) -> None:
        self.assertEqual(MediaFetcher(session=StubSession()).fetch_media([]), [])


if __name__ == "__main__":
    unittest.main(verbosity=2)
