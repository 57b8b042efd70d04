"""
Database services for users, taste profiles and delivery history.

This module provides the UserStore, PreferenceStore and HistoryStore classes
which interface with Google Firestore. Layout:

    users/{user_id}                              telegram_id, telegram_username, receive_scheduled, is_active
    users/{user_id}/preferences/{tag_id}         tag, weight, sample_count
    users/{user_id}/deliveries/{delivery_id}     recommendation_id, url, title, message_id, rating, sent_at, rated_at
    recommendations/{rec_id}                     article fields + is_verified

User ids are the Telegram id as a string. Recommendation ids are a hash of the
URL, so saving is idempotent on URL. A delivery id combines the recommendation
id with the Telegram message id, so sending the same article again creates a
new delivery and never touches an earlier rating.
"""

import datetime
import hashlib
import logging
from typing import Any, Dict, List, Optional

from google.cloud import firestore  # type: ignore

from essai.models import ResolvedArticle, TagWeight
from essai.services.taste import (
    DEFAULT_TAGS,
    NEUTRAL_WEIGHT,
    clamp_weight,
    initialize_defaults,
    top_n,
)

logger = logging.getLogger(__name__)


def get_id(value: str) -> str:
    """Creates a deterministic hash of a URL or tag."""
    return hashlib.md5(value.encode("utf-8")).hexdigest()


def _tag_id(tag: str) -> str:
    return get_id(tag.strip().lower())


def delivery_id(rec_id: str, message_id: Optional[int]) -> str:
    return f"{rec_id}-{message_id}"


def _now() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


def connect(project_id: Optional[str]):
    """Returns a Firestore client, or None when the project is unset or unreachable."""
    if not project_id:
        logger.warning("GCP_PROJECT_ID not set. Persistence disabled.")
        return None
    try:
        db = firestore.Client(project=project_id)
        logger.info("Connected to Firestore.")
        return db
    except Exception as e:  # pylint: disable=broad-exception-caught
        logger.warning("Firestore connection failed: %s", e)
        return None


class UserStore:
    """Registered Telegram users and their schedule opt-in."""

    def __init__(self, db):
        self.users = db.collection("users")

    def create_user(self, telegram_id: int, username: Optional[str]) -> Dict[str, Any]:
        """Registers a user, or refreshes the username of an existing one."""
        user_id = str(telegram_id)
        ref = self.users.document(user_id)
        snap = ref.get()
        if snap.exists:
            ref.update({"telegram_username": username})
            return dict(snap.to_dict() or {}, telegram_username=username, id=user_id)

        data = {
            "telegram_id": telegram_id,
            "telegram_username": username,
            "is_active": True,
            "receive_scheduled": True,
            "created_at": _now(),
        }
        ref.set(data)
        logger.info("User registered: %s (%s)", username, telegram_id)
        return dict(data, id=user_id)

    def get_user(self, telegram_id: int) -> Optional[Dict[str, Any]]:
        snap = self.users.document(str(telegram_id)).get()
        if not snap.exists:
            return None
        return dict(snap.to_dict() or {}, id=snap.id)

    def set_scheduled(self, telegram_id: int, receive_scheduled: bool) -> bool:
        """Toggles scheduled pushes. Returns False for an unknown user."""
        ref = self.users.document(str(telegram_id))
        if not ref.get().exists:
            return False
        ref.update({"receive_scheduled": receive_scheduled})
        return True

    def get_scheduled_users(self) -> List[Dict[str, Any]]:
        query = self.users.where("is_active", "==", True).where(
            "receive_scheduled", "==", True
        )
        return [dict(snap.to_dict() or {}, id=snap.id) for snap in query.stream()]


class PreferenceStore:
    """Per-user tag weights."""

    def __init__(self, db, default_tags: Optional[List[str]] = None):
        self.db = db
        self.default_tags = list(DEFAULT_TAGS if default_tags is None else default_tags)

    def _collection(self, user_id: str):
        return self.db.collection("users").document(user_id).collection("preferences")

    def get_preferences(self, user_id: str) -> List[TagWeight]:
        """All tags for a user, heaviest first."""
        prefs = []
        for snap in self._collection(user_id).stream():
            data = snap.to_dict() or {}
            prefs.append(
                TagWeight(
                    tag=data.get("tag", ""),
                    weight=clamp_weight(data.get("weight", NEUTRAL_WEIGHT)),
                    sample_count=data.get("sample_count", 0),
                )
            )
        return top_n(prefs, len(prefs))

    def get_top_preferences(self, user_id: str, n: int = 5) -> List[TagWeight]:
        """Top n tags; seeds the default profile for users who have none."""
        prefs = self.get_preferences(user_id)
        if not prefs:
            logger.info("No preferences for user %s; seeding defaults.", user_id)
            self.initialize_defaults(user_id)
            prefs = self.get_preferences(user_id)
        return top_n(prefs, n)

    def initialize_defaults(self, user_id: str, tags: Optional[List[str]] = None) -> None:
        batch = self.db.batch()
        for pref in initialize_defaults(self.default_tags if tags is None else tags):
            batch.set(self._collection(user_id).document(_tag_id(pref["tag"])), dict(pref))
        batch.commit()

    def set_preference(self, user_id: str, tag: str, weight: float) -> float:
        clamped = clamp_weight(weight)
        self._collection(user_id).document(_tag_id(tag)).set(
            {"tag": tag, "weight": clamped, "sample_count": 1}
        )
        return clamped

    def update_preference(self, user_id: str, tag: str, delta: float) -> float:
        """Read-modify-write; concurrent updates to one tag are last-write-wins."""
        ref = self._collection(user_id).document(_tag_id(tag))
        snap = ref.get()
        data = (snap.to_dict() or {}) if snap.exists else {}
        new_weight = clamp_weight(data.get("weight", NEUTRAL_WEIGHT) + delta)
        ref.set(
            {
                "tag": data.get("tag", tag),
                "weight": new_weight,
                "sample_count": data.get("sample_count", 0) + 1,
            }
        )
        return new_weight

    def remove_preference(self, user_id: str, tag: str) -> bool:
        """Deletes a tag. Returns False if the user did not have it."""
        ref = self._collection(user_id).document(_tag_id(tag))
        if not ref.get().exists:
            return False
        ref.delete()
        return True

    def reset_preferences(self, user_id: str) -> None:
        """Drops every tag; the default profile is seeded again on next read."""
        batch = self.db.batch()
        for snap in self._collection(user_id).stream():
            batch.delete(snap.reference)
        batch.commit()


class HistoryStore:
    """Saved recommendations, deliveries and ratings."""

    def __init__(self, db):
        self.db = db
        self.recommendations = db.collection("recommendations")

    def _deliveries(self, user_id: str):
        return self.db.collection("users").document(user_id).collection("deliveries")

    def _recent(self, user_id: str, limit: int):
        query = self._deliveries(user_id).order_by(
            "sent_at", direction=firestore.Query.DESCENDING
        )
        return [snap.to_dict() or {} for snap in query.limit(limit).stream()]

    def get_existing_urls(self, user_id: str, limit: int = 50) -> List[str]:
        return [d["url"] for d in self._recent(user_id, limit) if d.get("url")]

    def get_existing_titles(self, user_id: str, limit: int = 50) -> List[str]:
        return [d["title"] for d in self._recent(user_id, limit) if d.get("title")]

    def save_recommendation(self, article: ResolvedArticle, verified: bool = False) -> str:
        """Stores the article once per URL and returns its id."""
        rec_id = get_id(article["url"])
        ref = self.recommendations.document(rec_id)
        if ref.get().exists:
            return rec_id

        ref.set(
            {
                "title": article["title"],
                "author": article.get("author"),
                "url": article["url"],
                "description": article.get("description", ""),
                "reason": article.get("reason", ""),
                "tags": list(article.get("tags", [])),
                "is_verified": verified,
                "created_at": _now(),
            }
        )
        return rec_id

    def update_verification(self, rec_id: str, verified: bool) -> None:
        self.recommendations.document(rec_id).update({"is_verified": verified})

    def save_delivery(
        self, user_id: str, rec_id: str, message_id: Optional[int], article: ResolvedArticle
    ) -> str:
        """Records one send of a recommendation. Returns the delivery id."""
        doc_id = delivery_id(rec_id, message_id)
        self._deliveries(user_id).document(doc_id).create(
            {
                "recommendation_id": rec_id,
                "url": article["url"],
                "title": article["title"],
                "message_id": message_id,
                "rating": None,
                "sent_at": _now(),
                "rated_at": None,
            }
        )
        return doc_id

    def record_rating(
        self, user_id: str, rec_id: str, rating: int, message_id: Optional[int]
    ) -> Optional[Dict[str, Any]]:
        """
        Stores a 0-5 rating on the delivery sent as message_id.

        The check and the write run in one transaction, so a delivery is rated
        at most once. Returns the recommendation document, or None when the
        delivery is unknown or was already rated.
        """
        if not 0 <= rating <= 5:
            raise ValueError(f"Rating must be between 0 and 5, got {rating}")

        ref = self._deliveries(user_id).document(delivery_id(rec_id, message_id))

        @firestore.transactional
        def rate(transaction) -> bool:
            snap = ref.get(transaction=transaction)
            if not snap.exists:
                logger.warning("No delivery %s/%s for user %s.", rec_id, message_id, user_id)
                return False
            if (snap.to_dict() or {}).get("rating") is not None:
                logger.info("Delivery %s/%s for user %s already rated.", rec_id, message_id, user_id)
                return False
            transaction.update(ref, {"rating": rating, "rated_at": _now()})
            return True

        if not rate(self.db.transaction()):
            return None

        rec = self.recommendations.document(rec_id).get()
        return rec.to_dict() if rec.exists else {}
