"""
Recommendation assembler.

Deduplicates candidates against the user's history, then picks a primary and
ranks the rest as alternates, promoting a verified alternate when the primary
link is broken.
"""

import logging
from typing import Iterable, List, Sequence, TypeVar

from essai.models import ArticleIdea, Recommendation, ResolvedArticle
from essai.services.link_verifier import LinkVerifier

logger = logging.getLogger(__name__)

IdeaT = TypeVar("IdeaT", bound=ArticleIdea)


class NoCandidatesError(Exception):
    """Nothing survived the pipeline; the only user-visible failure."""


def _normalize_title(title: str) -> str:
    return (title or "").lower().strip()


def filter_seen_titles(ideas: Sequence[IdeaT], seen_titles: Iterable[str]) -> List[IdeaT]:
    """Drops ideas whose title was already delivered, unless that would drop them all."""
    seen = {_normalize_title(t) for t in seen_titles}
    fresh = []
    for idea in ideas:
        if _normalize_title(idea["title"]) in seen:
            logger.info("  Skipping duplicate title: '%s'", idea["title"])
            continue
        fresh.append(idea)
    return fresh if fresh else list(ideas)


def filter_seen_urls(
    articles: Sequence[ResolvedArticle], seen_urls: Iterable[str]
) -> List[ResolvedArticle]:
    """Drops articles whose URL was already delivered, unless that would drop them all."""
    seen = set(seen_urls)
    fresh = []
    for article in articles:
        if article.get("url") in seen:
            logger.info("  Skipping duplicate URL: %s", article.get("url"))
            continue
        fresh.append(article)
    return fresh if fresh else list(articles)


def resolved_first(articles: Sequence[ResolvedArticle]) -> List[ResolvedArticle]:
    """Orders articles with a real URL ahead of search fallbacks, keeping order within each group."""
    resolved = [a for a in articles if not a.get("is_search_fallback")]
    fallbacks = [a for a in articles if a.get("is_search_fallback")]
    return resolved + fallbacks


async def assemble(
    articles: Sequence[ResolvedArticle], verifier: LinkVerifier
) -> Recommendation:
    """
    Selects the primary article and alternates.

    The first article with a real URL is the primary; search fallbacks only
    lead when nothing else resolved. If its link fails verification outright, the
    first alternate that verifies is promoted; the demoted primary and any
    alternates skipped over stay in the alternates list, in order.
    """
    if not articles:
        raise NoCandidatesError("No articles found after deduplication")

    ranked = resolved_first(articles)
    primary = ranked[0]
    alternatives = ranked[1:]
    verification = await verifier.verify(primary["url"], primary.get("title", ""))

    if not verification.get("is_valid") and alternatives:
        logger.info(
            "Primary link failed (%s); checking %d alternates",
            verification.get("reason"),
            len(alternatives),
        )
        match = await verifier.find_first_valid(alternatives)
        if match:
            index = match["index"]
            promoted = alternatives[index]
            alternatives = [primary] + alternatives[:index] + alternatives[index + 1 :]
            primary = promoted
            verification = match["verification"]
            logger.info("Promoted alternate: '%s'", primary["title"])

    suffix = " (search fallback)" if primary.get("is_search_fallback") else ""
    logger.info("Primary: '%s' by %s%s", primary["title"], primary.get("author"), suffix)
    logger.info("URL: %s", primary["url"])
    return Recommendation(primary=primary, alternatives=alternatives, verification=verification)
