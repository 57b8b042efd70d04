"""
Recommendation flow shared by every entry point.

Entry points only wire configuration and transport; the curate, locate,
verify, assemble, persist and rate steps all live here.
"""

import logging
from typing import Any, Dict, Optional, Sequence

from essai.models import Recommendation, TagWeight
from essai.services.assembler import assemble, filter_seen_titles, filter_seen_urls
from essai.services.curator import CuratorPipeline
from essai.services.db import HistoryStore, PreferenceStore
from essai.services.link_verifier import LinkVerifier
from essai.services.taste import update_taste_from_rating
from essai.services.telegram_service import TelegramService

logger = logging.getLogger(__name__)


async def build_recommendation(
    pipeline: CuratorPipeline,
    verifier: LinkVerifier,
    preferences: Sequence[TagWeight],
    seen_urls: Sequence[str] = (),
    seen_titles: Sequence[str] = (),
) -> Recommendation:
    """Runs ideation, dedup, URL location and assembly for one cycle."""
    ideas = await pipeline.curate_ideas(preferences, seen_titles)
    ideas = filter_seen_titles(ideas, seen_titles)

    articles = await pipeline.locate_all(ideas)
    articles = filter_seen_urls(articles, seen_urls)

    return await assemble(articles, verifier)


async def deliver_to_user(
    user: Dict[str, Any],
    pipeline: CuratorPipeline,
    verifier: LinkVerifier,
    preferences: PreferenceStore,
    history: HistoryStore,
    telegram: TelegramService,
    top_interests: int = 5,
) -> str:
    """Builds, stores and sends one recommendation. Returns the recommendation id."""
    user_id = user["id"]
    logger.info("Sending to: %s", user.get("telegram_username") or user.get("telegram_id"))

    profile = preferences.get_top_preferences(user_id, top_interests)
    seen_urls = history.get_existing_urls(user_id)
    seen_titles = history.get_existing_titles(user_id)

    recommendation = await build_recommendation(
        pipeline, verifier, profile, seen_urls, seen_titles
    )
    primary = recommendation["primary"]
    verified = bool(recommendation["verification"].get("is_valid"))

    rec_id = history.save_recommendation(primary, verified=verified)
    history.update_verification(rec_id, verified)

    message_id = telegram.send_recommendation(user["telegram_id"], recommendation, rec_id)
    history.save_delivery(user_id, rec_id, message_id, primary)
    logger.info("  Sent: %s", primary["title"])
    return rec_id


def handle_rating(
    user_id: str,
    recommendation_id: str,
    rating: int,
    message_id: Optional[int],
    preferences: PreferenceStore,
    history: HistoryStore,
) -> Optional[Dict[str, Any]]:
    """
    Records a rating and updates the taste profile.

    message_id identifies which delivery of the recommendation was rated.
    A skip (0) is stored but never changes weights. Returns the rated
    recommendation, or None if it could not be rated.
    """
    rec = history.record_rating(user_id, recommendation_id, rating, message_id)
    if rec is None:
        return None

    update_taste_from_rating(preferences, user_id, rec.get("tags") or [], rating)
    logger.info("User %s rated recommendation %s: %d/5", user_id, recommendation_id, rating)
    return rec
