"""
Telegram delivery service.

This module provides the TelegramService class which handles:
- Rendering a recommendation (primary, status badge, alternates) as a chat message
- Building the rating keyboard and parsing its callback data
- Sending and editing messages through the Telegram Bot API
"""

import html
import logging
from typing import Any, Dict, List, Optional, Tuple

import requests

from essai.models import Recommendation, VerificationResult

logger = logging.getLogger(__name__)

API_BASE = "https://api.telegram.org"


def status_badge(verification: VerificationResult) -> str:
    """Maps a verification result to a user-facing status label."""
    if verification.get("is_search_fallback"):
        return "🔎 search result"
    if verification.get("is_paywall"):
        return "⚠️ may require subscription"
    if verification.get("is_valid") and verification.get("confidence") in ("high", "medium"):
        return "✅ verified"
    return "❓ unverified"


def _link(url: str, text: str) -> str:
    return f'<a href="{html.escape(url, quote=True)}">{html.escape(text)}</a>'


def format_recommendation(recommendation: Recommendation) -> str:
    """Renders the primary article and its alternates as Telegram HTML."""
    article = recommendation["primary"]
    category_emoji = "🏛️" if article.get("category") == "classic" else "💎"
    tags = " ".join(f"#{t.replace(' ', '')}" for t in article.get("tags", []))

    message = (
        f"{category_emoji} <b>{html.escape(article['title'])}</b>\n"
        f"<i>by {html.escape(article.get('author') or 'Unknown')}</i>\n\n"
        f"{html.escape(article.get('description', ''))}\n\n"
        f"💡 <b>Why this?</b> {html.escape(article.get('reason', ''))}\n\n"
        f"{html.escape(tags)}\n\n"
        f"🔗 {_link(article['url'], 'Read article')} {status_badge(recommendation['verification'])}"
    )

    alternatives = recommendation.get("alternatives") or []
    if alternatives:
        message += "\n\n📚 <b>Alternative Readings:</b>\n"
        for alt in alternatives:
            marker = " 🔎" if alt.get("is_search_fallback") else ""
            author = html.escape(alt.get("author") or "")
            message += f"\n• {_link(alt['url'], alt['title'])}{marker} - <i>{author}</i>"
    return message


def rating_keyboard(recommendation_id: str) -> Dict[str, Any]:
    """Inline keyboard with 1-5 stars and a skip (0) button."""
    stars = [
        {"text": f"⭐{i}", "callback_data": f"rate:{recommendation_id}:{i}"}
        for i in range(1, 6)
    ]
    skip = [{"text": "⏭️ Skip", "callback_data": f"rate:{recommendation_id}:0"}]
    return {"inline_keyboard": [stars, skip]}


def parse_rating_callback(data: str) -> Optional[Tuple[str, int]]:
    """Parses 'rate:{id}:{rating}' into (id, rating); None if malformed."""
    parts = (data or "").split(":")
    if len(parts) < 3 or parts[0] != "rate" or not parts[1]:
        return None
    try:
        rating = int(parts[2])
    except ValueError:
        return None
    if not 0 <= rating <= 5:
        return None
    return parts[1], rating


def rating_feedback(rating: int) -> str:
    if rating == 0:
        return "⏭️ <i>Skipped - won't affect your preferences</i>"
    return f"{'⭐' * rating} <i>Rated {rating}/5 - taste profile updated!</i>"


class TelegramService:
    """Service for sending recommendations over the Bot API."""

    def __init__(self, token: str, timeout: float = 15):
        self.token = token
        self.timeout = timeout

    def _call(self, method: str, payload: Dict[str, Any]) -> Any:
        resp = requests.post(
            f"{API_BASE}/bot{self.token}/{method}", json=payload, timeout=self.timeout
        )
        resp.raise_for_status()
        body = resp.json()
        if not body.get("ok"):
            raise requests.HTTPError(f"Telegram {method} failed: {body.get('description')}")
        return body.get("result")

    def send_text(self, chat_id: int, text: str) -> Optional[int]:
        """Sends an HTML message. Returns the message id."""
        result = self._call(
            "sendMessage", {"chat_id": chat_id, "text": text, "parse_mode": "HTML"}
        )
        return (result or {}).get("message_id")

    def delete_message(self, chat_id: int, message_id: int) -> None:
        self._call("deleteMessage", {"chat_id": chat_id, "message_id": message_id})

    def send_recommendation(
        self, chat_id: int, recommendation: Recommendation, recommendation_id: str
    ) -> int:
        """Sends the recommendation with rating buttons. Returns the message id."""
        result = self._call(
            "sendMessage",
            {
                "chat_id": chat_id,
                "text": format_recommendation(recommendation),
                "parse_mode": "HTML",
                "disable_web_page_preview": False,
                "reply_markup": rating_keyboard(recommendation_id),
            },
        )
        logger.info("Message sent to %s.", chat_id)
        return (result or {}).get("message_id")

    def edit_rated_message(
        self, chat_id: int, message_id: int, original_text: str, rating: int
    ) -> None:
        """Appends the rating to the message and removes the keyboard."""
        empty_keyboard: Dict[str, List[Any]] = {"inline_keyboard": []}
        self._call(
            "editMessageText",
            {
                "chat_id": chat_id,
                "message_id": message_id,
                "text": f"{html.escape(original_text)}\n\n{rating_feedback(rating)}",
                "parse_mode": "HTML",
                "reply_markup": empty_keyboard,
            },
        )

    def answer_callback(self, callback_query_id: str, text: str, show_alert: bool = False) -> None:
        """Acknowledges a button press so the client stops its spinner."""
        self._call(
            "answerCallbackQuery",
            {"callback_query_id": callback_query_id, "text": text, "show_alert": show_alert},
        )
