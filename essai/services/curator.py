"""
Two-stage curator pipeline.

Stage A asks the model for article ideas (no URLs). Stage B resolves each idea
to a real URL with a search-grounded call, fanned out concurrently. An idea
whose lookup fails degrades to a search-engine query URL; no idea is dropped.
"""

import asyncio
import logging
import re
from typing import Any, Dict, List, Optional, Sequence
from urllib.parse import quote_plus, urlparse

from essai.models import ArticleIdea, ResolvedArticle, TagWeight
from essai.services.llm import LLMService, parse_json_response
from essai.services.taste import top_n

logger = logging.getLogger(__name__)

DEFAULT_INTERESTS = "Philosophy, Psychology, Economics, History, Essays"
SEARCH_FALLBACK_BASE = "https://www.google.com/search?q="

_URL_RE = re.compile(r"https?://[^\s\"'<>)\]]+")


class NoIdeasError(Exception):
    """Stage A produced no usable ideas for this cycle."""


CURATION_PROMPT = """
You are an elite reading curator: a blend of university professor, Arts & Letters Daily editor,
and librarian with encyclopedic knowledge.

# USER INTERESTS
{interests}

# TASK
Recommend exactly {count} pieces of exceptional reading material (essays, articles, papers; NOT books,
videos, or podcasts).

## Mix Required:
- At least one TIMELESS CLASSIC (category "classic"): Montaigne, Orwell, Woolf, Didion, Baldwin, Sontag,
  Seneca, Emerson, Berlin, Arendt, Kahneman, Coase, or major journal longform.
- At least one HIDDEN GEM (category "gem"): Paul Graham, Gwern, Scott Alexander, Tyler Cowen, niche journals
  (Aeon, The New Atlantis, Works in Progress, N+1), or academic preprints (arXiv, SSRN, NBER).

## Prefer:
- Open access articles and academic PDFs
- Depth and analysis over news

# RULES
- Do NOT include URLs
- Each recommendation MUST be a specific, real, existing article or essay
- Include the publication where it was originally published
- Do NOT recommend anything in the ALREADY READ list
{already_read}

# OUTPUT FORMAT
Respond with ONLY this JSON (no markdown):
{{"recommendations": [{{"title": "Exact title", "author": "Author name", "publication": "Where it was published",
"description": "2-3 sentence summary", "reason": "Why this matches the user's interests",
"tags": ["Tag1", "Tag2"], "category": "classic" or "gem"}}]}}
"""

URL_FINDER_PROMPT = """
Find the exact, working URL for this specific article. Search the web for it.

Article: "{title}" by {author}
Published in/on: {publication}

Rules:
- Return ONLY the direct URL to this article (not a search results page)
- Prefer: direct PDF links > original publication page > mirrors/archives
- The URL must be the actual article, not a book listing, review, or summary
- If you cannot find this exact article, find the closest matching article by the same author on a similar topic

Respond with ONLY this JSON (no markdown):
{{"url": "https://...", "found_title": "actual title found", "source": "domain.com"}}
"""


def format_interests(preferences: Sequence[TagWeight], k: int = 5) -> str:
    """Joins the top-k tags as 'tag (weight%)', heaviest first."""
    top = top_n(preferences, k)
    if not top:
        return DEFAULT_INTERESTS
    return ", ".join(f"{p['tag']} ({int(round(p['weight']))}%)" for p in top)


def format_already_read(titles: Sequence[str], limit: int = 30) -> str:
    if not titles:
        return "# ALREADY READ: None yet. This is their first recommendation!"
    listed = "\n".join(f'- "{t}"' for t in list(titles)[:limit])
    return f"# ALREADY READ (do NOT recommend these again):\n{listed}"


def is_valid_url(url: Any) -> bool:
    """True for an absolute http(s) URL with a host."""
    if not isinstance(url, str):
        return False
    try:
        parsed = urlparse(url.strip())
    except ValueError:
        return False
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)


def search_fallback_url(idea: ArticleIdea) -> str:
    """Builds a search-engine query URL from title, author and publication."""
    parts = [idea.get("title", ""), idea.get("author", ""), idea.get("publication") or ""]
    query = " ".join(p for p in parts if p).strip()
    return SEARCH_FALLBACK_BASE + quote_plus(query)


def _normalize_idea(row: Any) -> Optional[ArticleIdea]:
    if not isinstance(row, dict):
        return None
    title = str(row.get("title") or "").strip()
    if not title:
        return None
    tags = row.get("tags") or []
    if isinstance(tags, str):
        tags = [t.strip() for t in tags.split(",") if t.strip()]
    category = str(row.get("category") or "").lower()
    return ArticleIdea(
        title=title,
        author=str(row.get("author") or "Unknown").strip(),
        publication=(str(row["publication"]).strip() if row.get("publication") else None),
        description=str(row.get("description") or ""),
        reason=str(row.get("reason") or ""),
        tags=[str(t) for t in tags],
        category=category if category in ("classic", "gem") else "gem",
    )


def parse_ideas(text: str) -> List[ArticleIdea]:
    """Parses Stage A output into ideas. Raises NoIdeasError when nothing usable remains."""
    try:
        payload = parse_json_response(text)
    except ValueError as e:
        logger.error("Idea JSON parse failed: %s", (text or "")[:300])
        raise NoIdeasError("Failed to parse curation response") from e

    if isinstance(payload, dict) and isinstance(payload.get("recommendations"), list):
        rows = payload["recommendations"]
    elif isinstance(payload, list):
        rows = payload
    else:
        rows = [payload]

    ideas = [idea for idea in (_normalize_idea(r) for r in rows) if idea]
    if not ideas:
        raise NoIdeasError("No ideas generated")
    return ideas


def parse_url_response(text: str) -> Optional[Dict[str, Any]]:
    """Extracts {"url", ...} from Stage B output, falling back to the first URL in the text."""
    try:
        payload = parse_json_response(text)
        if isinstance(payload, dict) and payload.get("url"):
            return payload
    except ValueError:
        pass

    match = _URL_RE.search(text or "")
    return {"url": match.group(0).rstrip(".,;:")} if match else None


class CuratorPipeline:
    """Runs ideation and URL location against an LLMService."""

    def __init__(
        self,
        llm: LLMService,
        count: int = 3,
        top_interests: int = 5,
        max_seen_titles: int = 30,
    ):
        self.llm = llm
        self.count = count
        self.top_interests = top_interests
        self.max_seen_titles = max_seen_titles

    def build_curation_prompt(
        self, preferences: Sequence[TagWeight], seen_titles: Sequence[str]
    ) -> str:
        return CURATION_PROMPT.format(
            interests=format_interests(preferences, self.top_interests),
            count=self.count,
            already_read=format_already_read(seen_titles, self.max_seen_titles),
        )

    async def curate_ideas(
        self, preferences: Sequence[TagWeight], seen_titles: Sequence[str] = ()
    ) -> List[ArticleIdea]:
        """Stage A: ask for article ideas without URLs."""
        prompt = self.build_curation_prompt(preferences, seen_titles)
        logger.info(
            "Stage A: curating %d ideas for %s (excluding %d seen)",
            self.count,
            format_interests(preferences, self.top_interests),
            len(seen_titles),
        )
        text = await self.llm.generate(prompt, json_output=True, temperature=0.9)
        ideas = parse_ideas(text)
        for i, idea in enumerate(ideas, start=1):
            logger.info("  %d. '%s' by %s [%s]", i, idea["title"], idea["author"], idea["category"])
        return ideas

    async def locate(self, idea: ArticleIdea) -> Optional[ResolvedArticle]:
        """Stage B for one idea. Returns None when no usable URL was found."""
        prompt = URL_FINDER_PROMPT.format(
            title=idea["title"],
            author=idea["author"],
            publication=idea.get("publication") or "unknown",
        )
        text = await self.llm.generate(prompt, use_search=True)
        result = parse_url_response(text)
        if not result or not is_valid_url(result.get("url")):
            logger.info("  No usable URL for '%s'", idea["title"])
            return None

        url = result["url"].strip()
        logger.info("  Found: %s", url)
        resolved = ResolvedArticle(**idea)
        resolved["url"] = url
        resolved["found_title"] = str(result.get("found_title") or idea["title"])
        resolved["source"] = str(result.get("source") or urlparse(url).hostname or "")
        resolved["is_search_fallback"] = False
        return resolved

    def fallback(self, idea: ArticleIdea) -> ResolvedArticle:
        resolved = ResolvedArticle(**idea)
        resolved["url"] = search_fallback_url(idea)
        resolved["source"] = "google.com (search)"
        resolved["is_search_fallback"] = True
        return resolved

    async def locate_all(self, ideas: Sequence[ArticleIdea]) -> List[ResolvedArticle]:
        """Stage B: resolve every idea concurrently, preserving idea order."""
        logger.info("Stage B: finding URLs for %d ideas (parallel)...", len(ideas))
        results = await asyncio.gather(
            *(self.locate(idea) for idea in ideas), return_exceptions=True
        )

        articles: List[ResolvedArticle] = []
        for idea, result in zip(ideas, results):
            if isinstance(result, BaseException):
                logger.warning("  URL search failed for '%s': %s", idea["title"], result)
                result = None
            articles.append(result if result is not None else self.fallback(idea))
        return articles
