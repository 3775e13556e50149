from __future__ import annotations

import unittest

import requests

from detector import SiteDetector, SiteInfo
from errors import FetchError
from http_stubs import make_response, StubSession


SITE = "https://example.com/"
API = "https://example.com/wp-json/wp/v2"

GENERATOR_ONLY_HTML = """
<html><head><meta name="generator" content="WordPress 6.2"><title>Blog</title></head>
<body class="home"><p>Hello</p></body></html>
"""

PLAIN_HTML = """
<html><head><title>Plain</title><link rel="stylesheet" href="/static/site.css"></head>
<body class="landing"><p>Nothing to see here</p></body></html>
"""

ASSET_HTML = """
<html><head>
<link rel="stylesheet" href="https://example.com/wp-content/themes/astra/style.css?ver=5.1">
<script src="https://example.com/wp-includes/js/jquery.js?ver=6.0"></script>
<script src="https://example.com/wp-includes/js/embed.js?ver=6.0"></script>
<link rel="stylesheet" href="https://example.com/wp-content/plugins/forms/forms.css?ver=5.1">
<link rel="https://api.w.org/" href="https://example.com/wp-json/">
</head><body class="page"></body></html>
"""

BODY_CLASS_HTML = """
<html><head><title>Themed</title></head>
<body class="home wp-custom-logo"><p>Hi</p></body></html>
"""


class SiteDetectorTest(unittest.TestCase):
    def _detector(self, html: str, probe: object) -> tuple[SiteDetector, StubSession]:
        session = StubSession({SITE: make_response(SITE, html), API: probe})
        return SiteDetector(session=session), session

    def test_generator_tag_without_api_link(self) -> None:
        detector, _ = self._detector(GENERATOR_ONLY_HTML, make_response(API, "not found", status=404))
        info = detector.classify(SITE)
        self.assertTrue(info.is_wordpress)
        self.assertEqual(info.version, "6.2")
        self.assertFalse(info.has_rest_api)
        self.assertEqual(info.rest_api_url, API)
        self.assertFalse(info.requires_auth)

    def test_plain_html_is_negative_and_skips_api_probe(self) -> None:
        detector, session = self._detector(PLAIN_HTML, make_response(API, "[]"))
        info = detector.classify(SITE)
        self.assertEqual(info, SiteInfo(is_wordpress=False))
        self.assertEqual(session.called_urls(), [SITE])

    def test_asset_versions_theme_and_advertised_api(self) -> None:
        detector, session = self._detector(ASSET_HTML, make_response(API, "{}", content_type="application/json"))
        info = detector.classify(SITE)
        self.assertTrue(info.is_wordpress)
        # 5.1 and 6.0 appear twice each; the first one seen wins.
        self.assertEqual(info.version, "5.1")
        self.assertEqual(info.theme, "astra")
        self.assertEqual(info.rest_api_url, API)
        self.assertTrue(info.has_rest_api)
        self.assertEqual(session.called_urls(), [SITE, API])

    def test_most_frequent_asset_version_wins(self) -> None:
        html = ASSET_HTML.replace("forms.css?ver=5.1", "forms.css?ver=6.0")
        info = SiteDetector(session=StubSession()).classify_html(SITE, html)
        self.assertEqual(info.version, "6.0")

    def test_body_class_signal(self) -> None:
        info = SiteDetector(session=StubSession()).classify_html(SITE, BODY_CLASS_HTML)
        self.assertTrue(info.is_wordpress)
        self.assertIsNone(info.version)
        self.assertIsNone(info.theme)

    def test_protected_api_sets_requires_auth(self) -> None:
        detector, _ = self._detector(GENERATOR_ONLY_HTML, make_response(API, "{}", status=401))
        info = detector.classify(SITE)
        self.assertFalse(info.has_rest_api)
        self.assertTrue(info.requires_auth)

    def test_probe_network_failure_is_not_an_error(self) -> None:
        detector, _ = self._detector(GENERATOR_ONLY_HTML, requests.Timeout("probe timed out"))
        info = detector.classify(SITE)
        self.assertTrue(info.is_wordpress)
        self.assertFalse(info.has_rest_api)

    def test_unreachable_site_raises_fetch_error(self) -> None:
        detector = SiteDetector(session=StubSession({SITE: requests.Timeout("timed out")}))
        with self.assertRaises(FetchError) as ctx:
            detector.classify(SITE)
        self.assertIn("Failed to analyze website", str(ctx.exception))

    def test_server_error_raises_fetch_error(self) -> None:
        detector = SiteDetector(session=StubSession({SITE: make_response(SITE, "oops", status=500)}))
        with self.assertRaises(FetchError):
            detector.classify(SITE)

    def test_classification_is_deterministic(self) -> None:
        detector = SiteDetector(session=StubSession())
        first = detector.classify_html(SITE, ASSET_HTML)
        second = detector.classify_html(SITE, ASSET_HTML)
        self.assertEqual(first, second)
        self.assertEqual(first.to_dict(), second.to_dict())

    def test_page_fetch_uses_browser_user_agent_and_timeouts(self) -> None:
        detector, session = self._detector(GENERATOR_ONLY_HTML, make_response(API, "[]"))
        detector.classify(SITE)
        page_kwargs = session.calls[0][1]
        probe_kwargs = session.calls[1][1]
        self.assertIn("Mozilla/5.0", page_kwargs["headers"]["User-Agent"])
        self.assertEqual(page_kwargs["timeout"], 10)
        self.assertEqual(probe_kwargs["timeout"], 5)


if __name__ == "__main__":
    unittest.main(verbosity=2)
