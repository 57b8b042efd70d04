"""Unit tests for the link verifier."""

import unittest
from unittest.mock import AsyncMock, MagicMock, patch

import requests

from essai.services.link_verifier import (
    LinkVerifier,
    extract_title,
    is_search_fallback,
    title_match_score,
)


def make_response(status, body=b"", content_type="text/html"):
    resp = MagicMock()
    resp.status_code = status
    resp.headers = {"content-type": content_type}
    resp.encoding = "utf-8"
    resp.iter_content.return_value = [body]
    return resp


class TestHelpers(unittest.TestCase):
    def test_search_fallback_shape(self):
        self.assertTrue(is_search_fallback("https://www.google.com/search?q=on+liberty"))
        self.assertTrue(is_search_fallback("https://duckduckgo.com/?q=essay"))
        self.assertFalse(is_search_fallback("https://www.google.com/maps"))
        self.assertFalse(is_search_fallback("https://aeon.co/essays/search?q=x"))
        self.assertFalse(is_search_fallback("not a url"))

    def test_extract_title(self):
        self.assertEqual(extract_title("<html><TITLE> Hello </TITLE></html>"), "Hello")
        self.assertEqual(extract_title("<html></html>"), "")

    def test_title_match_score(self):
        self.assertEqual(title_match_score("Politics and the English Language", "Politics and the English Language | Orwell"), 1.0)
        self.assertEqual(title_match_score("The Use of Knowledge in Society", "Cheap flights"), 0.0)
        # No word longer than three characters: cannot judge
        self.assertEqual(title_match_score("On It", "anything"), 1.0)
        self.assertEqual(title_match_score("", "anything"), 0.0)


class TestVerify(unittest.TestCase):
    def setUp(self):
        self.session = MagicMock()
        self.verifier = LinkVerifier(session=self.session)

    def test_search_fallback_skips_network(self):
        result = self.verifier.verify_sync("https://www.google.com/search?q=on+liberty+mill")
        self.assertTrue(result["is_valid"])
        self.assertEqual(result["confidence"], "low")
        self.assertTrue(result["is_search_fallback"])
        self.session.head.assert_not_called()
        self.session.get.assert_not_called()

    def test_trusted_head_ok_is_high(self):
        self.session.head.return_value = make_response(200)
        result = self.verifier.verify_sync("https://aeon.co/essays/some-essay")
        self.assertTrue(result["is_valid"])
        self.assertEqual(result["confidence"], "high")
        self.session.get.assert_not_called()

    def test_pdf_accepted_on_any_domain(self):
        self.session.head.return_value = make_response(200, content_type="application/pdf")
        result = self.verifier.verify_sync("https://unknown.example.edu/paper.pdf")
        self.assertTrue(result["is_valid"])
        self.assertEqual(result["confidence"], "high")
        self.assertTrue(result["is_pdf"])

    def test_paywall_head_ok_is_flagged(self):
        self.session.head.return_value = make_response(200)
        result = self.verifier.verify_sync("https://www.nytimes.com/2020/01/01/opinion/x.html")
        self.assertTrue(result["is_valid"])
        self.assertEqual(result["confidence"], "medium")
        self.assertTrue(result["is_paywall"])

    def test_404_invalid_even_when_trusted(self):
        self.session.head.return_value = make_response(404)
        self.session.get.return_value = make_response(404, b"<title>Not Found</title>")
        result = self.verifier.verify_sync("https://aeon.co/essays/missing")
        self.assertFalse(result["is_valid"])
        self.assertEqual(result["confidence"], "high")
        self.assertEqual(result["status"], 404)

    def test_403_is_valid_paywall(self):
        self.session.head.return_value = make_response(403)
        self.session.get.return_value = make_response(403)
        result = self.verifier.verify_sync("https://blog.example.com/post")
        self.assertTrue(result["is_valid"])
        self.assertTrue(result["is_paywall"])
        self.assertEqual(result["confidence"], "medium")

    def test_soft_404(self):
        self.session.head.return_value = make_response(200)
        self.session.get.return_value = make_response(
            200, b"<html><title>Oops</title>Sorry, this page is no longer available.</html>"
        )
        result = self.verifier.verify_sync("https://blog.example.com/post")
        self.assertFalse(result["is_valid"])
        self.assertEqual(result["confidence"], "medium")

    def test_title_match_raises_confidence(self):
        self.session.head.side_effect = requests.exceptions.ConnectionError("HEAD not allowed")
        self.session.get.return_value = make_response(
            200, b"<title>The Tyranny of Structurelessness - Jo Freeman</title>"
        )
        result = self.verifier.verify_sync(
            "https://www.jofreeman.com/joreen/tyranny.htm",
            "The Tyranny of Structurelessness",
        )
        self.assertTrue(result["is_valid"])
        self.assertEqual(result["confidence"], "high")

    def test_title_mismatch_lowers_confidence(self):
        self.session.head.return_value = make_response(200)
        self.session.get.return_value = make_response(200, b"<title>Buy cheap shoes online</title>")
        result = self.verifier.verify_sync(
            "https://shop.example.com/item", "On the Shortness of Life"
        )
        self.assertTrue(result["is_valid"])
        self.assertEqual(result["confidence"], "low")
        self.assertIn("Title mismatch", result["reason"])

    def test_server_error(self):
        self.session.head.return_value = make_response(503)
        self.session.get.return_value = make_response(503)
        result = self.verifier.verify_sync("https://blog.example.com/post")
        self.assertFalse(result["is_valid"])
        self.assertEqual(result["confidence"], "low")

    def test_dns_failure(self):
        error = requests.exceptions.ConnectionError(
            "Failed to resolve 'nope.invalid' ([Errno -2] Name or service not known)"
        )
        self.session.head.side_effect = error
        self.session.get.side_effect = error
        result = self.verifier.verify_sync("https://nope.invalid/post")
        self.assertFalse(result["is_valid"])
        self.assertEqual(result["confidence"], "high")
        self.assertEqual(result["reason"], "Domain not found")

    def test_connection_refused(self):
        error = requests.exceptions.ConnectionError("[Errno 111] Connection refused")
        self.session.head.side_effect = error
        self.session.get.side_effect = error
        result = self.verifier.verify_sync("https://blog.example.com/post")
        self.assertFalse(result["is_valid"])
        self.assertEqual(result["confidence"], "high")

    def test_timeout_is_low_confidence_invalid(self):
        self.session.head.side_effect = requests.exceptions.ReadTimeout("timed out")
        self.session.get.side_effect = requests.exceptions.ReadTimeout("timed out")
        result = self.verifier.verify_sync("https://blog.example.com/post")
        self.assertFalse(result["is_valid"])
        self.assertEqual(result["confidence"], "low")
        self.assertEqual(result["reason"], "Timeout")

    def test_ssl_error_is_valid_low(self):
        self.session.head.side_effect = requests.exceptions.SSLError("CERTIFICATE_VERIFY_FAILED")
        self.session.get.side_effect = requests.exceptions.SSLError("CERTIFICATE_VERIFY_FAILED")
        result = self.verifier.verify_sync("https://blog.example.com/post")
        self.assertTrue(result["is_valid"])
        self.assertEqual(result["confidence"], "low")

    def test_blocked_trusted_domain_is_valid_low(self):
        error = requests.exceptions.ConnectionError("Connection reset by peer")
        self.session.head.side_effect = error
        self.session.get.side_effect = error
        result = self.verifier.verify_sync("https://gwern.net/scaling")
        self.assertTrue(result["is_valid"])
        self.assertEqual(result["confidence"], "low")

    def test_injected_allow_list(self):
        verifier = LinkVerifier(trusted_domains=["example.org"], session=self.session)
        self.session.head.return_value = make_response(200)
        result = verifier.verify_sync("https://essays.example.org/one")
        self.assertEqual(result["confidence"], "high")
        self.assertFalse(verifier.is_trusted("https://aeon.co/essays/x"))

    def test_body_is_capped(self):
        verifier = LinkVerifier(session=self.session, max_body_bytes=10)
        self.session.head.return_value = make_response(500)
        resp = make_response(200)
        resp.iter_content.return_value = [b"a" * 8, b"b" * 8, b"c" * 8]
        self.session.get.return_value = resp
        result = verifier.verify_sync("https://blog.example.com/post")
        self.assertTrue(result["is_valid"])
        resp.close.assert_called_once()


class TestAsyncVerify(unittest.IsolatedAsyncioTestCase):
    async def test_verify_runs_sync_check(self):
        session = MagicMock()
        verifier = LinkVerifier(session=session)
        result = await verifier.verify("https://www.google.com/search?q=x")
        self.assertTrue(result["is_valid"])
        session.head.assert_not_called()

    async def test_verify_never_raises(self):
        verifier = LinkVerifier(session=MagicMock())
        with patch.object(verifier, "verify_sync", side_effect=RuntimeError("boom")):
            result = await verifier.verify("https://a.example")
        self.assertFalse(result["is_valid"])
        self.assertEqual(result["confidence"], "failed")

    async def test_find_first_valid(self):
        verifier = LinkVerifier(session=MagicMock())
        verifier.verify = AsyncMock(
            side_effect=[
                {"is_valid": False, "confidence": "high", "reason": "Page not found"},
                RuntimeError("boom"),
                {"is_valid": True, "confidence": "medium"},
            ]
        )
        candidates = [
            {"url": "https://a.example/1", "title": "A"},
            {"url": "https://b.example/2", "title": "B"},
            {"url": "https://c.example/3", "title": "C"},
        ]
        match = await verifier.find_first_valid(candidates)
        self.assertEqual(match["index"], 2)
        self.assertEqual(match["article"]["title"], "C")

    async def test_find_first_valid_none(self):
        verifier = LinkVerifier(session=MagicMock())
        verifier.verify = AsyncMock(return_value={"is_valid": False, "confidence": "high"})
        self.assertIsNone(await verifier.find_first_valid([{"url": "https://a.example"}]))


if __name__ == "__main__":
    unittest.main()
