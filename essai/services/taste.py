"""
Taste model.

Pure helpers that turn star ratings into tag-weight changes, plus the small
amount of glue that applies those changes through a preference store.
"""

import html
import logging
from typing import Iterable, List, Sequence

from essai.models import TagWeight

logger = logging.getLogger(__name__)

NEUTRAL_WEIGHT = 50
MIN_WEIGHT = 0
MAX_WEIGHT = 100

DEFAULT_TAGS = [
    "Psychology",
    "Philosophy",
    "Economics",
    "Physics",
    "History",
    "Essays",
    "Game Theory",
    "Biology",
    "Sociology",
    "Mathematics",
    "Computer Science",
    "Geopolitics",
]


def impact_of(rating: int) -> int:
    """Maps a 0-5 rating to a weight delta: 5 -> +4, 3 -> 0, 0 -> -6."""
    return (rating - 3) * 2


def clamp_weight(weight: float) -> float:
    """Clamps a weight into [0, 100]."""
    return max(MIN_WEIGHT, min(MAX_WEIGHT, weight))


def apply_impact(current_weight: float, impact: int) -> float:
    """Returns the new weight after applying an impact, saturating at the bounds."""
    return clamp_weight(current_weight + impact)


def initialize_defaults(tags: Iterable[str] = DEFAULT_TAGS) -> List[TagWeight]:
    """Seeds every tag at the neutral weight."""
    return [
        TagWeight(tag=tag, weight=NEUTRAL_WEIGHT, sample_count=1) for tag in tags
    ]


def top_n(profile: Sequence[TagWeight], n: int) -> List[TagWeight]:
    """Returns at most n entries by descending weight; ties keep input order."""
    # sorted() is stable, so equal weights stay in their original order
    return sorted(profile, key=lambda p: p["weight"], reverse=True)[: max(n, 0)]


def update_taste_from_rating(store, user_id: str, tags: Iterable[str], rating: int) -> int:
    """
    Applies a rating to every tag of the rated article.

    Skips (rating 0) never change the profile, and a neutral rating has no
    impact. Each tag receives the full impact independently. Returns the
    number of tags updated.
    """
    if rating == 0:
        logger.info("Rating skipped for user %s; preferences unchanged.", user_id)
        return 0

    impact = impact_of(rating)
    if impact == 0:
        return 0

    updated = 0
    for tag in tags:
        new_weight = store.update_preference(user_id, tag, impact)
        logger.info("Tag '%s' for user %s -> %s (%+d)", tag, user_id, new_weight, impact)
        updated += 1
    return updated


def _weight_bar(weight: float) -> str:
    filled = int(round(clamp_weight(weight) / 10))
    return "█" * filled + "░" * (10 - filled)


def format_preferences(profile: Sequence[TagWeight]) -> str:
    """Renders a ranked taste profile as Telegram HTML."""
    if not profile:
        return "📊 No taste profile yet."

    lines = [
        f"{i}. <b>{html.escape(p['tag'])}</b> {_weight_bar(p['weight'])} {int(round(p['weight']))}%"
        for i, p in enumerate(profile, start=1)
    ]
    return "📊 <b>Your Interests:</b>\n\n" + "\n".join(lines)
