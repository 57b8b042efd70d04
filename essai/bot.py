"""
Telegram bot update handling.

EssaiBot turns Bot API updates (chat commands and rating button presses) into
calls on the stores and the shared recommendation flow. It does not receive
updates itself: whichever transport does (webhook function, poller) hands each
update to handle_update. The essai-update entry point handles a single update
read as JSON from stdin.
"""

import asyncio
import html
import json
import logging
import sys
from typing import Any, Callable, Dict, Optional, Tuple, cast

from essai.recommender import deliver_to_user, handle_rating
from essai.scheduled_push import (
    CONFIG,
    GCP_PROJECT_ID,
    GEMINI_API_KEY,
    TELEGRAM_BOT_TOKEN,
    build_pipeline,
    build_verifier,
)
from essai.services.curator import CuratorPipeline
from essai.services.db import HistoryStore, PreferenceStore, UserStore, connect
from essai.services.link_verifier import LinkVerifier
from essai.services.taste import NEUTRAL_WEIGHT, format_preferences
from essai.services.telegram_service import TelegramService, parse_rating_callback

logger = logging.getLogger(__name__)

WELCOME_MESSAGE = """📚 <b>Welcome to Essai!</b>

I'm your personal reading curator. I find intellectually stimulating essays, papers, and articles tailored to your interests.

<b>Commands:</b>
• /recommend - Get a reading recommendation
• /preferences - See your taste profile
• /settag &lt;tag&gt; &lt;weight&gt; - Set a tag weight (0-100)
• /addtag &lt;tag&gt; - Add new interest
• /removetag &lt;tag&gt; - Remove a tag
• /resettaste - Reset all preferences
• /pause / /resume - Toggle scheduled pushes

Start with /preferences to see your interests, then /recommend!"""

NOT_REGISTERED = "❌ Please /start first."
PREFERENCES_SHOWN = 7


def parse_command(text: str) -> Optional[Tuple[str, str]]:
    """Splits '/cmd@bot args' into ('cmd', 'args'); None if text is not a command."""
    text = (text or "").strip()
    if not text.startswith("/"):
        return None
    head, _, args = text.partition(" ")
    command = head[1:].split("@", 1)[0].lower()
    return (command, args.strip()) if command else None


def parse_tag_weight(args: str) -> Optional[Tuple[str, int]]:
    """Parses 'Tag Name 80' into ('Tag Name', 80); None unless the weight is 0-100."""
    tag, _, weight = args.strip().rpartition(" ")
    try:
        value = int(weight)
    except ValueError:
        return None
    if not tag.strip() or not 0 <= value <= 100:
        return None
    return tag.strip(), value


class EssaiBot:
    """Dispatches chat commands and rating callbacks."""

    def __init__(
        self,
        users: UserStore,
        preferences: PreferenceStore,
        history: HistoryStore,
        telegram: TelegramService,
        pipeline: CuratorPipeline,
        verifier: LinkVerifier,
    ):
        self.users = users
        self.preferences = preferences
        self.history = history
        self.telegram = telegram
        self.pipeline = pipeline
        self.verifier = verifier
        self.commands: Dict[str, Callable[..., Any]] = {
            "start": self.start,
            "recommend": self.recommend,
            "preferences": self.show_preferences,
            "settag": self.set_tag,
            "addtag": self.add_tag,
            "removetag": self.remove_tag,
            "resettaste": self.reset_taste,
            "pause": self.pause,
            "resume": self.resume,
        }

    async def handle_update(self, update: Dict[str, Any]) -> bool:
        """Routes one Bot API update. Returns True when it was acted on."""
        if "callback_query" in update:
            return self.handle_callback_query(update["callback_query"])
        if "message" in update:
            return await self.handle_message(update["message"])
        return False

    async def handle_message(self, message: Dict[str, Any]) -> bool:
        parsed = parse_command(message.get("text", ""))
        if parsed is None or parsed[0] not in self.commands:
            return False

        command, args = parsed
        chat_id = message["chat"]["id"]
        sender = message.get("from") or {}
        try:
            result = self.commands[command](chat_id, sender, args)
            if asyncio.iscoroutine(result):
                await result
        except Exception as e:  # pylint: disable=broad-exception-caught
            logger.error("Error in /%s: %s", command, e)
            self.telegram.send_text(chat_id, "❌ Something went wrong. Please try again.")
        return True

    def _registered(self, chat_id: int, sender: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        user = self.users.get_user(sender["id"])
        if user is None:
            self.telegram.send_text(chat_id, NOT_REGISTERED)
        return user

    def start(self, chat_id: int, sender: Dict[str, Any], _args: str) -> None:
        self.users.create_user(sender["id"], sender.get("username") or sender.get("first_name"))
        self.telegram.send_text(chat_id, WELCOME_MESSAGE)

    async def recommend(self, chat_id: int, sender: Dict[str, Any], _args: str) -> None:
        """On-demand delivery, same flow as the scheduled push."""
        user = self._registered(chat_id, sender)
        if user is None:
            return

        loading_id = self.telegram.send_text(
            chat_id,
            "🧠 <b>Curating recommendations...</b>\n\n<i>Exploring libraries, journals, and archives</i> 🏛️",
        )
        try:
            await deliver_to_user(
                user,
                self.pipeline,
                self.verifier,
                self.preferences,
                self.history,
                self.telegram,
                top_interests=self.pipeline.top_interests,
            )
        except Exception as e:  # pylint: disable=broad-exception-caught
            logger.error("Error in /recommend for %s: %s", sender["id"], e)
            self.telegram.send_text(chat_id, "❌ Failed to generate recommendation. Please try again.")
        finally:
            if loading_id is not None:
                self.telegram.delete_message(chat_id, loading_id)

    def show_preferences(self, chat_id: int, sender: Dict[str, Any], _args: str) -> None:
        user = self._registered(chat_id, sender)
        if user is None:
            return
        profile = self.preferences.get_top_preferences(user["id"], PREFERENCES_SHOWN)
        self.telegram.send_text(chat_id, format_preferences(profile))

    def set_tag(self, chat_id: int, sender: Dict[str, Any], args: str) -> None:
        user = self._registered(chat_id, sender)
        if user is None:
            return
        parsed = parse_tag_weight(args)
        if parsed is None:
            self.telegram.send_text(
                chat_id, "⚠️ Usage: /settag &lt;tag&gt; &lt;weight 0-100&gt;"
            )
            return
        tag, weight = parsed
        self.preferences.set_preference(user["id"], tag, weight)
        self.telegram.send_text(chat_id, f"✅ Set <b>{html.escape(tag)}</b> to {weight}%")

    def add_tag(self, chat_id: int, sender: Dict[str, Any], args: str) -> None:
        user = self._registered(chat_id, sender)
        if user is None:
            return
        if not args:
            self.telegram.send_text(chat_id, "⚠️ Usage: /addtag &lt;tag&gt;")
            return
        self.preferences.set_preference(user["id"], args, NEUTRAL_WEIGHT)
        self.telegram.send_text(chat_id, f"✅ Added interest: <b>{html.escape(args)}</b>")

    def remove_tag(self, chat_id: int, sender: Dict[str, Any], args: str) -> None:
        user = self._registered(chat_id, sender)
        if user is None:
            return
        if not args:
            self.telegram.send_text(chat_id, "⚠️ Usage: /removetag &lt;tag&gt;")
            return
        if self.preferences.remove_preference(user["id"], args):
            self.telegram.send_text(chat_id, f"🗑️ Removed interest: <b>{html.escape(args)}</b>")
        else:
            self.telegram.send_text(chat_id, f"🤷 No interest named <b>{html.escape(args)}</b>")

    def reset_taste(self, chat_id: int, sender: Dict[str, Any], _args: str) -> None:
        user = self._registered(chat_id, sender)
        if user is None:
            return
        self.preferences.reset_preferences(user["id"])
        self.telegram.send_text(chat_id, "🔄 Taste profile reset to defaults.")

    def pause(self, chat_id: int, sender: Dict[str, Any], _args: str) -> None:
        if not self.users.set_scheduled(sender["id"], False):
            self.telegram.send_text(chat_id, NOT_REGISTERED)
            return
        self.telegram.send_text(
            chat_id, "⏸️ Scheduled recommendations paused. Use /resume to continue."
        )

    def resume(self, chat_id: int, sender: Dict[str, Any], _args: str) -> None:
        if not self.users.set_scheduled(sender["id"], True):
            self.telegram.send_text(chat_id, NOT_REGISTERED)
            return
        self.telegram.send_text(chat_id, "▶️ Scheduled recommendations resumed!")

    def handle_callback_query(self, query: Dict[str, Any]) -> bool:
        """Applies a rating button press. Returns True when a rating was stored."""
        query_id = query.get("id", "")
        parsed = parse_rating_callback(query.get("data", ""))
        if parsed is None:
            logger.warning("Ignoring callback data: %r", query.get("data"))
            self.telegram.answer_callback(query_id, "Unknown action")
            return False

        recommendation_id, rating = parsed
        user_id = str(query["from"]["id"])
        message = query.get("message") or {}
        try:
            rec = handle_rating(
                user_id,
                recommendation_id,
                rating,
                message.get("message_id"),
                self.preferences,
                self.history,
            )
            if rec is None:
                self.telegram.answer_callback(query_id, "Already rated or not found")
                return False

            if message:
                self.telegram.edit_rated_message(
                    message["chat"]["id"], message["message_id"], message.get("text", ""), rating
                )
            self.telegram.answer_callback(
                query_id, "Skipped!" if rating == 0 else f"Rated {rating}/5!"
            )
            return True
        except Exception as e:  # pylint: disable=broad-exception-caught
            logger.error("Error in rating callback: %s", e)
            self.telegram.answer_callback(query_id, "❌ Failed to save rating", show_alert=True)
            return False


def main():
    """Handles one Bot API update read as JSON from stdin."""
    if not GEMINI_API_KEY:
        logger.error("Error: GEMINI_KEY not set.")
        sys.exit(1)

    if not TELEGRAM_BOT_TOKEN:
        logger.error("Error: TELEGRAM_BOT_TOKEN not set.")
        sys.exit(1)

    db = connect(GCP_PROJECT_ID)
    if db is None:
        logger.error("Error: Firestore unavailable.")
        sys.exit(1)

    bot = EssaiBot(
        UserStore(db),
        PreferenceStore(db, CONFIG.get("default_tags")),
        HistoryStore(db),
        TelegramService(cast(str, TELEGRAM_BOT_TOKEN)),
        build_pipeline(CONFIG, cast(str, GEMINI_API_KEY)),
        build_verifier(CONFIG),
    )
    update = json.load(sys.stdin)
    handled = asyncio.run(bot.handle_update(update))
    logger.info("Update %s handled: %s", update.get("update_id"), handled)


if __name__ == "__main__":
    main()
