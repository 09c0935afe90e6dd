"""Question answering about a single hotel.

Answers come from the chat-completion service, grounded in the hotel's
consolidated details. When the model is unavailable a keyword-driven answer
is built from whatever the client sent about the hotel.
"""

import logging
import re
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Tuple

from openai import AsyncOpenAI, OpenAIError

from ..models import ChatMessage

logger = logging.getLogger(__name__)

HTML_TAG_RE = re.compile(r"<[^>]*>")

HOTEL_CHAT_SYSTEM_PROMPT = """You are a helpful hotel concierge AI for this specific hotel. Answer questions directly using the provided information.

Hotel Information:
{hotel_context}

Response Guidelines:
- Keep responses short and direct (1-2 sentences max)
- Include all relevant facts but no extra fluff
- Be helpful and friendly but concise
- Use specific details from the hotel data
- If you don't have info, say so briefly and suggest contacting the hotel
- Don't repeat the hotel name unless necessary
"""


def consolidate_hotel_info(details: Dict[str, Any]) -> str:
    """Flatten a ``/data/hotel`` payload into one text block for the model."""
    hotel = details.get("data") if isinstance(details, dict) else None
    if not hotel:
        return "Detailed hotel information not available for chat context"

    sections: List[str] = []

    description = hotel.get("hotelDescription")
    if description:
        clean = HTML_TAG_RE.sub("", description).replace("&nbsp;", " ").strip()
        sections.append(f"HOTEL DESCRIPTION:\n{clean}")

    important = hotel.get("hotelImportantInformation")
    if important:
        sections.append(f"IMPORTANT INFORMATION:\n{important.strip()}")

    facilities = hotel.get("hotelFacilities") or []
    if facilities:
        sections.append("HOTEL FACILITIES & AMENITIES:\n" + "\n".join(f"• {f}" for f in facilities))

    extra = [f.get("name") for f in hotel.get("facilities") or [] if isinstance(f, dict) and f.get("name")]
    if extra:
        sections.append("ADDITIONAL FACILITIES:\n" + "\n".join(f"• {name}" for name in extra))

    policies = hotel.get("policies") or []
    if policies:
        sections.append(
            "HOTEL POLICIES:\n"
            + "\n\n".join(
                f"{str(p.get('name', '')).upper()}:\n{str(p.get('description', '')).strip()}"
                for p in policies
                if isinstance(p, dict)
            )
        )

    sentiment = hotel.get("sentiment_analysis")
    if sentiment:
        block = ["GUEST SENTIMENT ANALYSIS:"]
        if sentiment.get("pros"):
            block.append("What Guests Love:\n" + "\n".join(f"• {p}" for p in sentiment["pros"]))
        if sentiment.get("cons"):
            block.append("Areas for Improvement:\n" + "\n".join(f"• {c}" for c in sentiment["cons"]))
        if sentiment.get("categories"):
            block.append(
                "Category Ratings:\n"
                + "\n".join(
                    f"• {c.get('name')}: {c.get('rating')}/10 - {c.get('description')}"
                    for c in sentiment["categories"]
                )
            )
        sections.append("\n".join(block))

    basic = [
        "BASIC INFORMATION:",
        f"Name: {hotel.get('name')}",
        f"Address: {hotel.get('address')}",
        f"City: {hotel.get('city')}",
        f"Country: {hotel.get('country')}",
        f"Star Rating: {hotel.get('starRating')} stars",
        f"Guest Rating: {hotel.get('rating')}/10 ({hotel.get('reviewCount')} reviews)",
    ]
    times = hotel.get("checkinCheckoutTimes") or {}
    if times:
        basic.append(f"Check-in: {times.get('checkin')}")
        basic.append(f"Check-out: {times.get('checkout')}")
    sections.append("\n".join(basic))

    return "\n\n".join(sections).strip()


def build_hotel_context(hotel: Dict[str, Any]) -> str:
    lines = [f"Hotel Name: {hotel.get('name')}", f"Hotel ID: {hotel.get('id')}"]
    if hotel.get("allHotelInfo"):
        lines.append(f"\nDetailed Hotel Information: {hotel['allHotelInfo']}")
    else:
        lines.append(
            "\nNote: Limited hotel information available. "
            "Please contact the hotel directly for detailed information."
        )
    return "\n".join(lines)


@dataclass(frozen=True)
class _Topic:
    name: str
    matches: Callable[[str], bool]
    answer: Callable[[Dict[str, Any]], str]


def _amenities(hotel: Dict[str, Any]) -> List[str]:
    return [str(a) for a in (hotel.get("topAmenities") or hotel.get("features") or [])]


def _having(hotel: Dict[str, Any], *needles: str) -> List[str]:
    return [a for a in _amenities(hotel) if any(n in a.lower() for n in needles)]


def _answer_amenities(hotel: Dict[str, Any]) -> str:
    name, amenities = hotel["name"], _amenities(hotel)
    if amenities:
        return f"{name} offers these amenities: {', '.join(amenities)}. {hotel.get('fullDescription') or ''}".strip()
    return (
        f"I'd be happy to help with amenities information for {name}. Based on the available "
        "information, this hotel offers quality facilities and services."
    )


def _answer_location(hotel: Dict[str, Any]) -> str:
    where = hotel.get("locationHighlight") or hotel.get("fullAddress") or hotel.get("location")
    answer = f"{hotel['name']} is located at {where}."
    attractions = hotel.get("nearbyAttractions") or []
    if attractions:
        answer += f" Nearby attractions include: {', '.join(attractions)}."
    return answer


def _answer_rooms(hotel: Dict[str, Any]) -> str:
    name = hotel["name"]
    if hotel.get("roomTypes"):
        detail = hotel.get("fullDescription") or "Contact the hotel directly for detailed room information."
        return f"{name} offers various room types. {detail}"
    return (
        f"{name} offers comfortable accommodations. For specific room details and availability, "
        "I recommend contacting the hotel directly."
    )


def _answer_reviews(hotel: Dict[str, Any]) -> str:
    answer = f"{hotel['name']} has a {hotel.get('rating')}/10 rating based on {hotel.get('reviews')} reviews."
    if hotel.get("guestInsights"):
        answer += f" {hotel['guestInsights']}"
    if hotel.get("sentimentPros"):
        answer += f" Guests particularly appreciate: {', '.join(hotel['sentimentPros'])}."
    if hotel.get("sentimentCons"):
        answer += f" Some areas mentioned for improvement include: {', '.join(hotel['sentimentCons'])}."
    return answer


def _answer_price(hotel: Dict[str, Any]) -> str:
    price = (hotel.get("pricePerNight") or {}).get("display") or f"{hotel.get('price')}"
    answer = f"{hotel['name']} is priced at {price} per night."
    if hotel.get("isRefundable"):
        answer += " This rate includes free cancellation."
    if hotel.get("refundableInfo"):
        answer += f" {hotel['refundableInfo']}"
    return answer


def _answer_cancellation(hotel: Dict[str, Any]) -> str:
    if hotel.get("isRefundable"):
        terms = hotel.get("refundableInfo") or "Check the specific terms when booking."
        return f"Yes, {hotel['name']} offers free cancellation. {terms}"
    return (
        f"For cancellation policies at {hotel['name']}, please check the specific booking terms "
        "or contact the hotel directly."
    )


def _answer_parking(hotel: Dict[str, Any]) -> str:
    if _having(hotel, "parking", "valet"):
        return (
            f"Yes, {hotel['name']} offers parking facilities. "
            "Check with the hotel for specific details about rates and availability."
        )
    return f"For parking information at {hotel['name']}, please contact the hotel directly for the most current details."


def _answer_wifi(hotel: Dict[str, Any]) -> str:
    if _having(hotel, "wifi", "internet"):
        return f"Yes, {hotel['name']} offers WiFi access. Most modern hotels provide complimentary internet access."
    return f"For internet access information at {hotel['name']}, please check with the hotel directly."


def _answer_breakfast(hotel: Dict[str, Any]) -> str:
    tags = [str(t).lower() for t in hotel.get("tags") or []]
    if any("breakfast" in t for t in tags) or _having(hotel, "breakfast"):
        return f"Yes, {hotel['name']} offers breakfast services. Check your booking for inclusion details."
    return (
        f"For dining and breakfast information at {hotel['name']}, "
        "please contact the hotel directly for current offerings."
    )


def _answer_wellness(hotel: Dict[str, Any]) -> str:
    found = _having(hotel, "pool", "spa", "fitness", "gym")
    if found:
        return f"Yes, {hotel['name']} offers: {', '.join(found)}."
    return (
        f"For recreation and wellness facilities at {hotel['name']}, "
        "please contact the hotel directly for current amenities."
    )


def _answer_times(hotel: Dict[str, Any]) -> str:
    return (
        f"For check-in and check-out times at {hotel['name']}, please contact the hotel directly as these "
        "can vary. Standard check-in is typically 3-4 PM and check-out is 11 AM-12 PM."
    )


def _answer_pets(hotel: Dict[str, Any]) -> str:
    if _having(hotel, "pet", "dog"):
        return (
            f"{hotel['name']} appears to be pet-friendly. Please contact the hotel directly to confirm "
            "their current pet policy and any associated fees."
        )
    return f"For pet policies at {hotel['name']}, please contact the hotel directly as policies can vary and change."


def _has(*needles: str) -> Callable[[str], bool]:
    return lambda message: any(n in message for n in needles)


TOPICS: Tuple[_Topic, ...] = (
    _Topic("amenities", _has("amenities", "facilities"), _answer_amenities),
    _Topic("location", _has("location", "nearby", "attractions", "around"), _answer_location),
    _Topic("rooms", _has("room", "bed", "accommodation"), _answer_rooms),
    _Topic("reviews", _has("review", "guest", "rating", "opinion"), _answer_reviews),
    _Topic("price", _has("price", "cost", "rate", "expensive"), _answer_price),
    _Topic("cancellation", _has("cancel", "refund", "policy"), _answer_cancellation),
    _Topic("parking", _has("parking", "car"), _answer_parking),
    _Topic("wifi", _has("wifi", "internet"), _answer_wifi),
    _Topic("breakfast", _has("breakfast", "food", "dining"), _answer_breakfast),
    _Topic("wellness", _has("pool", "spa", "fitness", "gym"), _answer_wellness),
    _Topic(
        "times",
        lambda m: ("check" in m and ("in" in m or "out" in m)) or "time" in m,
        _answer_times,
    ),
    _Topic("pets", _has("pet", "dog", "cat", "animal"), _answer_pets),
)


def fallback_answer(user_message: str, hotel: Dict[str, Any]) -> str:
    """Keyword answer used when the model cannot be reached."""
    message = user_message.lower()
    for topic in TOPICS:
        if topic.matches(message):
            return topic.answer(hotel)
    return (
        f"I'd be happy to help you learn more about {hotel['name']}! I have information about their "
        "amenities, location, reviews, and pricing. Could you please be more specific about what you'd "
        "like to know? For example, you can ask about rooms, amenities, location, reviews, or policies."
    )


class HotelChatService:
    """Answers one question about one hotel; reports whether the fallback was used."""

    def __init__(
        self,
        client: AsyncOpenAI | None,
        model: str,
        temperature: float = 0.3,
        max_tokens: int = 120,
        history_limit: int = 10,
    ) -> None:
        self._client = client
        self._model = model
        self._temperature = temperature
        self._max_tokens = max_tokens
        self._history_limit = history_limit

    async def answer(
        self,
        user_message: str,
        hotel: Dict[str, Any],
        history: List[ChatMessage],
    ) -> Tuple[str, bool]:
        """``history`` already ends with the user's message."""
        if self._client is None:
            logger.info("OpenAI not configured; answering about %s from fallback", hotel.get("id"))
            return fallback_answer(user_message, hotel), True

        system = HOTEL_CHAT_SYSTEM_PROMPT.format(hotel_context=build_hotel_context(hotel))
        messages = [{"role": "system", "content": system}]
        messages.extend(m.to_openai() for m in history[-self._history_limit:])
        try:
            completion = await self._client.chat.completions.create(
                model=self._model,
                messages=messages,
                max_tokens=self._max_tokens,
                temperature=self._temperature,
                presence_penalty=0.0,
                frequency_penalty=0.2,
            )
        except OpenAIError as e:
            logger.warning("Hotel chat model call failed for %s: %s", hotel.get("id"), e)
            return fallback_answer(user_message, hotel), True

        content = completion.choices[0].message.content if completion.choices else None
        text = (content or "").strip()
        if not text:
            logger.warning("Empty hotel chat reply for %s", hotel.get("id"))
            return fallback_answer(user_message, hotel), True
        return text, False
