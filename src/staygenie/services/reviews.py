"""Review filtering for the hotel reviews endpoint.

Keeps English reviews, marks low-information ("generic") ones, and orders
meaningful reviews first. Provider scores are on a 0-10 scale.
"""

import math
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any, Dict, List

PLACEHOLDER_HEADLINES = {"Very good", "Good", "Guest Review"}

GENERIC_HEADLINES = {
    "ok",
    "fine",
    "nice",
    "great",
    "excellent",
    "good stay",
    "nice stay",
    "great stay",
    "excellent stay",
    "recommended",
    "would recommend",
    "perfect",
    "amazing",
    "awesome",
    "fantastic",
    "wonderful",
    "terrible",
    "bad",
    "horrible",
    "disappointing",
}

MIN_MEANINGFUL_WORDS = 3


@dataclass
class HotelReview:
    id: str
    author: str
    rating: float
    date: str
    headline: str
    pros: str
    cons: str
    country: str
    travelerType: str
    language: str
    source: str
    content: str
    isGeneric: bool

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _text(review: Dict[str, Any], key: str) -> str:
    return str(review.get(key) or "").strip()


def _word_count(text: str) -> int:
    return len(text.split()) if text else 0


def review_score(review: Dict[str, Any]) -> float:
    """The 0-10 ``averageScore`` as a float; 0 when missing or not numeric."""
    try:
        score = float(review.get("averageScore") or 0)
    except (TypeError, ValueError):
        return 0.0
    return score if math.isfinite(score) else 0.0


def is_english(review: Dict[str, Any]) -> bool:
    return _text(review, "language").lower().startswith("en")


def is_generic_review(review: Dict[str, Any]) -> bool:
    """True for reviews with too little text to be worth showing first."""
    pros, cons, headline = _text(review, "pros"), _text(review, "cons"), _text(review, "headline")

    if not pros and not cons and (not headline or headline in PLACEHOLDER_HEADLINES):
        return True
    if headline.lower() in GENERIC_HEADLINES:
        return True

    headline_words = _word_count(headline)
    if _word_count(pros) == 1 and not cons and headline_words <= 2:
        return True
    if _word_count(cons) == 1 and not pros and headline_words <= 2:
        return True
    if headline_words == 1 and not pros and not cons:
        return True

    combined = f"{pros} {cons} {headline}".split()
    return len([w for w in combined if len(w) > 2]) < MIN_MEANINGFUL_WORDS


def review_content(review: Dict[str, Any]) -> str:
    """Readable paragraph from headline, pros and cons, with a score-based stand-in when all are empty."""
    parts: List[str] = []
    headline = _text(review, "headline")
    if headline and headline not in PLACEHOLDER_HEADLINES:
        parts.append(headline)
    pros, cons = _text(review, "pros"), _text(review, "cons")
    if pros:
        parts.append(pros)
    if cons:
        parts.append(f"However, {cons.lower()}")

    if not parts:
        score = review_score(review)
        if score >= 8:
            return "Had an excellent stay at this hotel. Would recommend to others."
        if score >= 6:
            return "Overall a good experience with some room for improvement."
        return "The stay met basic expectations with mixed results."

    return ". ".join(parts).replace("..", ".")


def format_review_date(value: str | None, now: datetime) -> str:
    if not value:
        return "Recently"
    try:
        date = datetime.fromisoformat(str(value).replace("Z", "+00:00")).replace(tzinfo=None)
    except ValueError:
        return "Recently"

    days = math.ceil(abs((now - date).total_seconds()) / 86400)
    if days == 1:
        return "Yesterday"
    if days < 7:
        return f"{days} days ago"
    if days < 30:
        return f"{math.ceil(days / 7)} weeks ago"
    if days < 365:
        return f"{math.ceil(days / 30)} months ago"
    return date.strftime("%b %Y")


def format_review(review: Dict[str, Any], now: datetime) -> HotelReview:
    return HotelReview(
        id=f"{review.get('name')}-{review.get('date')}",
        author=review.get("name") or "Anonymous",
        rating=review_score(review),
        date=format_review_date(review.get("date"), now),
        headline=review.get("headline") or "Guest Review",
        pros=review.get("pros") or "",
        cons=review.get("cons") or "",
        country=review.get("country") or "",
        travelerType=review.get("type") or "Guest",
        language=review.get("language") or "en",
        source=review.get("source") or "Hotel Partner",
        content=review_content(review),
        isGeneric=is_generic_review(review),
    )


def rating_distribution(reviews: List[HotelReview]) -> Dict[int, int]:
    """Histogram on a 1-5 scale (half the 0-10 score, rounded and clamped)."""
    distribution = {stars: 0 for stars in range(1, 6)}
    for review in reviews:
        stars = max(1, min(5, math.floor(review.rating / 2 + 0.5)))
        distribution[stars] += 1
    return distribution


def summarize_reviews(
    payload: Dict[str, Any],
    hotel_id: str,
    limit: int,
    now: datetime | None = None,
) -> Dict[str, Any]:
    """Build the ``data`` block of the reviews response from the provider payload."""
    now = now or datetime.now()
    raw = [r for r in (payload.get("data") or []) if isinstance(r, dict)]
    if not raw:
        return {"reviews": [], "total": 0, "message": "No reviews available for this hotel yet"}

    english = [r for r in raw if is_english(r)]
    if not english:
        return {"reviews": [], "total": 0, "message": "No English reviews available for this hotel"}

    formatted = [format_review(r, now) for r in english]
    meaningful = [r for r in formatted if not r.isGeneric]
    generic = [r for r in formatted if r.isGeneric]
    chosen = (meaningful + generic)[:limit]

    average = sum(r.rating for r in chosen) / len(chosen) if chosen else 0.0

    sentiment = payload.get("sentiment")
    sentiment_block = None
    if sentiment:
        sentiment_block = {
            "overall": sentiment.get("overall"),
            "positiveKeywords": sentiment.get("positiveKeywords") or [],
            "negativeKeywords": sentiment.get("negativeKeywords") or [],
            "averageRating": sentiment.get("averageRating") or average,
        }

    return {
        "reviews": [r.to_dict() for r in chosen],
        "total": len(formatted),
        "averageRating": round(average, 1),
        "ratingDistribution": rating_distribution(chosen),
        "sentiment": sentiment_block,
        "hotelId": hotel_id,
        "filtered": {
            "originalCount": len(raw),
            "englishCount": len(english),
            "meaningfulCount": len(meaningful),
            "genericCount": len(generic),
            "filteredOut": len(raw) - len(english),
        },
    }
