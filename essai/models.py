"""
Data models for the Essai reading curator.
"""

from typing import List, Optional, TypedDict


class TagWeight(TypedDict):
    """A single interest tag and its 0-100 weight."""

    tag: str
    weight: float
    sample_count: int


class ArticleIdea(TypedDict):
    """A recommendation from the curation stage, before a URL is known."""

    title: str
    author: str
    publication: Optional[str]
    description: str
    reason: str
    tags: List[str]
    category: str  # "classic" or "gem"


class ResolvedArticle(ArticleIdea, total=False):
    """An idea with a located (or synthetic search) URL."""

    url: str
    found_title: str
    source: str
    is_search_fallback: bool


class VerificationResult(TypedDict, total=False):
    """Outcome of a single link check."""

    is_valid: bool
    confidence: str  # "high", "medium", "low" or "failed"
    status: int
    is_paywall: bool
    is_pdf: bool
    is_search_fallback: bool
    reason: str
    title: str


class Recommendation(TypedDict):
    """Primary pick plus ranked alternates, ready for delivery."""

    primary: ResolvedArticle
    alternatives: List[ResolvedArticle]
    verification: VerificationResult
