"""
Scheduled recommendation push.
This script loads every user who opted into scheduled recommendations, curates a
reading pick for each with Google Gemini, verifies the link, stores it in
Firestore and delivers it over Telegram.
"""

import asyncio
import json
import logging
import os
import sys
from typing import Any, Dict, Optional, cast

from essai.recommender import deliver_to_user
from essai.services.curator import CuratorPipeline
from essai.services.db import HistoryStore, PreferenceStore, UserStore, connect
from essai.services.link_verifier import LinkVerifier
from essai.services.llm import LLMService
from essai.services.telegram_service import TelegramService


# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(levelname)s - %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger(__name__)


def load_config(config_filename: str = "config.json") -> Dict[str, Any]:
    """Loads configuration from a JSON file."""
    # Build absolute path relative to this script
    base_dir = os.path.dirname(os.path.abspath(__file__))
    config_path = os.path.join(base_dir, config_filename)

    try:
        with open(config_path, "r", encoding="utf-8") as f:
            return json.load(f)
    except FileNotFoundError:
        logger.warning("Config file not found at %s. Using defaults.", config_path)
        return {}


CONFIG: Dict[str, Any] = load_config()

# Env Vars
GEMINI_API_KEY: Optional[str] = os.environ.get("GEMINI_KEY")
TELEGRAM_BOT_TOKEN: Optional[str] = os.environ.get("TELEGRAM_BOT_TOKEN")
GCP_PROJECT_ID: Optional[str] = os.environ.get("GCP_PROJECT_ID")


def build_verifier(config: Dict[str, Any]) -> LinkVerifier:
    settings = config.get("verifier", {})
    return LinkVerifier(
        trusted_domains=config.get("trusted_domains"),
        paywall_domains=config.get("paywall_domains"),
        probe_timeout=settings.get("probe_timeout", 6),
        fetch_timeout=settings.get("fetch_timeout", 10),
        max_body_bytes=settings.get("max_body_bytes", 500_000),
    )


def build_pipeline(config: Dict[str, Any], api_key: str) -> CuratorPipeline:
    models = config.get("models", {})
    retry = config.get("retry", {})
    llm = LLMService(
        api_key,
        model=models.get("curation", "gemini-2.0-flash"),
        search_model=models.get("search"),
        max_attempts=retry.get("max_attempts", 3),
        base_delay=retry.get("base_delay", 2.0),
    )
    return CuratorPipeline(
        llm,
        count=config.get("recommendation_count", 3),
        top_interests=config.get("top_interests", 5),
        max_seen_titles=config.get("max_seen_titles", 30),
    )


async def push_all(
    users,
    pipeline: CuratorPipeline,
    verifier: LinkVerifier,
    preferences: PreferenceStore,
    history: HistoryStore,
    telegram: TelegramService,
    delay: float = 2,
) -> int:
    """Delivers to each user in turn. Returns the number of failures."""
    failed = 0
    for i, user in enumerate(users):
        if i:
            # Small delay between users to stay under provider rate limits
            await asyncio.sleep(delay)
        try:
            await deliver_to_user(
                user,
                pipeline,
                verifier,
                preferences,
                history,
                telegram,
                top_interests=pipeline.top_interests,
            )
        except Exception as e:  # pylint: disable=broad-exception-caught
            failed += 1
            logger.error("Failed for %s: %s", user.get("telegram_id"), e)
    logger.info("Summary: %d successful, %d failed.", len(users) - failed, failed)
    return failed


def main():
    """Main execution entry point."""
    if not GEMINI_API_KEY:
        logger.error("Error: GEMINI_KEY not set. Workflow failed.")
        sys.exit(1)

    if not TELEGRAM_BOT_TOKEN:
        logger.error("Error: TELEGRAM_BOT_TOKEN not set.")
        sys.exit(1)

    db = connect(GCP_PROJECT_ID)
    if db is None:
        logger.error("Error: Firestore unavailable. Workflow failed.")
        sys.exit(1)

    preferences = PreferenceStore(db, CONFIG.get("default_tags"))
    history = HistoryStore(db)
    users = UserStore(db).get_scheduled_users()
    logger.info("Found %d users to notify.", len(users))
    if not users:
        return

    failed = asyncio.run(
        push_all(
            users,
            build_pipeline(CONFIG, cast(str, GEMINI_API_KEY)),
            build_verifier(CONFIG),
            preferences,
            history,
            TelegramService(cast(str, TELEGRAM_BOT_TOKEN)),
            delay=CONFIG.get("delay_between_users", 2),
        )
    )
    if failed:
        sys.exit(1)


if __name__ == "__main__":
    main()
