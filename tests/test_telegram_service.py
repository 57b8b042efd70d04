"""Unit tests for Telegram formatting and delivery."""

import unittest
from unittest.mock import patch

import requests

from essai.services.telegram_service import (
    TelegramService,
    format_recommendation,
    parse_rating_callback,
    rating_keyboard,
    status_badge,
)


def recommendation(verification=None):
    primary = {
        "title": "How to Do Great Work",
        "author": "Paul Graham",
        "description": "On ambition.",
        "reason": "You like philosophy.",
        "tags": ["Philosophy", "Game Theory"],
        "category": "gem",
        "url": "https://paulgraham.com/greatwork.html",
    }
    alternate = {
        "title": "On Liberty",
        "author": "J. S. Mill",
        "url": "https://www.google.com/search?q=On+Liberty",
        "is_search_fallback": True,
    }
    return {
        "primary": primary,
        "alternatives": [alternate],
        "verification": verification or {"is_valid": True, "confidence": "high"},
    }


class TestFormatting(unittest.TestCase):
    def test_status_badges(self):
        self.assertIn("verified", status_badge({"is_valid": True, "confidence": "high"}))
        self.assertIn("subscription", status_badge({"is_valid": True, "is_paywall": True}))
        self.assertIn(
            "search", status_badge({"is_valid": True, "confidence": "low", "is_search_fallback": True})
        )
        self.assertIn("unverified", status_badge({"is_valid": True, "confidence": "low"}))
        self.assertIn("unverified", status_badge({"is_valid": False, "confidence": "high"}))

    def test_format_recommendation(self):
        text = format_recommendation(recommendation())
        self.assertIn("<b>How to Do Great Work</b>", text)
        self.assertIn("#GameTheory", text)
        self.assertIn('<a href="https://paulgraham.com/greatwork.html">Read article</a> ✅ verified', text)
        self.assertIn("Alternative Readings", text)
        self.assertIn('<a href="https://www.google.com/search?q=On+Liberty">On Liberty</a> 🔎', text)

    def test_model_text_is_escaped(self):
        rec = recommendation()
        rec["primary"]["title"] = "Snake_case & <Stars*>"
        rec["primary"]["reason"] = "Because [reasons]_"
        rec["primary"]["url"] = "https://x.org/a?b=1&c=\"2\""
        text = format_recommendation(rec)
        self.assertIn("<b>Snake_case &amp; &lt;Stars*&gt;</b>", text)
        self.assertIn('href="https://x.org/a?b=1&amp;c=&quot;2&quot;"', text)
        self.assertNotIn("<Stars", text)

    def test_rating_keyboard(self):
        keyboard = rating_keyboard("abc")["inline_keyboard"]
        self.assertEqual(
            [b["callback_data"] for b in keyboard[0]],
            [f"rate:abc:{i}" for i in range(1, 6)],
        )
        self.assertEqual(keyboard[1][0]["callback_data"], "rate:abc:0")

    def test_parse_rating_callback(self):
        self.assertEqual(parse_rating_callback("rate:abc:4"), ("abc", 4))
        self.assertEqual(parse_rating_callback("rate:abc:0"), ("abc", 0))
        self.assertIsNone(parse_rating_callback("rate:abc:9"))
        self.assertIsNone(parse_rating_callback("rate:abc:x"))
        self.assertIsNone(parse_rating_callback("approve:123"))
        self.assertIsNone(parse_rating_callback(""))


class TestTelegramService(unittest.TestCase):
    @patch("essai.services.telegram_service.requests.post")
    def test_send_recommendation(self, mock_post):
        mock_post.return_value.json.return_value = {"ok": True, "result": {"message_id": 99}}

        service = TelegramService("TOKEN")
        message_id = service.send_recommendation(12, recommendation(), "rec-1")

        self.assertEqual(message_id, 99)
        url = mock_post.call_args.args[0]
        payload = mock_post.call_args.kwargs["json"]
        self.assertEqual(url, "https://api.telegram.org/botTOKEN/sendMessage")
        self.assertEqual(payload["chat_id"], 12)
        self.assertEqual(payload["parse_mode"], "HTML")
        self.assertEqual(payload["reply_markup"], rating_keyboard("rec-1"))

    @patch("essai.services.telegram_service.requests.post")
    def test_api_error_raises(self, mock_post):
        mock_post.return_value.json.return_value = {"ok": False, "description": "chat not found"}
        with self.assertRaises(requests.HTTPError):
            TelegramService("TOKEN").edit_rated_message(1, 2, "hi", 3)

    @patch("essai.services.telegram_service.requests.post")
    def test_answer_callback(self, mock_post):
        mock_post.return_value.json.return_value = {"ok": True, "result": True}
        TelegramService("TOKEN").answer_callback("cb-1", "Rated 4/5!")

        self.assertTrue(mock_post.call_args.args[0].endswith("/answerCallbackQuery"))
        payload = mock_post.call_args.kwargs["json"]
        self.assertEqual(payload["callback_query_id"], "cb-1")
        self.assertFalse(payload["show_alert"])

    @patch("essai.services.telegram_service.requests.post")
    def test_send_text(self, mock_post):
        mock_post.return_value.json.return_value = {"ok": True, "result": {"message_id": 5}}
        self.assertEqual(TelegramService("TOKEN").send_text(12, "hi"), 5)
        self.assertEqual(mock_post.call_args.kwargs["json"]["parse_mode"], "HTML")

    @patch("essai.services.telegram_service.requests.post")
    def test_edit_rated_message(self, mock_post):
        mock_post.return_value.json.return_value = {"ok": True, "result": {}}
        TelegramService("TOKEN").edit_rated_message(12, 99, "Original <text>", 0)

        payload = mock_post.call_args.kwargs["json"]
        self.assertTrue(mock_post.call_args.args[0].endswith("/editMessageText"))
        self.assertIn("Skipped", payload["text"])
        self.assertTrue(payload["text"].startswith("Original &lt;text&gt;"))
        self.assertEqual(payload["reply_markup"], {"inline_keyboard": []})


if __name__ == "__main__":
    unittest.main()
