"""Rule-based search refinement.

The rules form an ordered table of ``RefinementRule(name, matches, apply)``.
:func:`fallback_refinement` lower-cases and trims the user's message, walks the
table top to bottom and lets the first matching rule build the reply. Price
comes first so that "under $150 with breakfast" is read as a price constraint.

Every rule appends to the current search string. Earlier refinements of the
same kind are kept, so applying two prices yields a search holding both.
"""

import re
from dataclasses import dataclass
from typing import Callable, NamedTuple, Tuple

from ..models import RefinementResult

DEFAULT_RESPONSE = "I understand. Tell me what else you'd like to refine!"
DEFAULT_SUGGESTIONS = ("Add price range", "Add amenities")

HELP_RESPONSE = (
    "I can help you refine your search! Tell me what you want - price ranges "
    "(like 'under $200'), dates, or amenities (like 'with pool' or 'free breakfast')."
)

PRICE_RE = re.compile(r"\$?(\d+)")
PRICE_RANGE_RE = re.compile(r"\$?(\d+)[\s-]+\$?(\d+)")
STAR_RE = re.compile(r"(\d+)\s*star")
DATE_PATTERNS = (
    re.compile(r"(\w+\s+\d+)"),  # "march 15", "dec 25"
    re.compile(r"(\d+/\d+)"),  # "3/15"
    re.compile(r"(\d+-\d+)"),  # "15-18"
)

VERBATIM_MIN_LENGTH = 3
VERBATIM_MAX_LENGTH = 49


class RuleInput(NamedTuple):
    message: str
    raw_message: str
    current_search: str

    def refine(self, suffix: str) -> str:
        return f"{self.current_search} {suffix}"


@dataclass(frozen=True)
class RefinementRule:
    name: str
    matches: Callable[[str], bool]
    apply: Callable[[RuleInput], RefinementResult]


def _any_of(*needles: str) -> Callable[[str], bool]:
    return lambda message: any(n in message for n in needles)


def _result(response: str, refined_search: str | None, *suggestions: str) -> RefinementResult:
    return RefinementResult(
        response=response,
        refined_search=refined_search,
        suggestions=list(suggestions or DEFAULT_SUGGESTIONS),
    )


def _price(turn: RuleInput) -> RefinementResult:
    message = turn.message
    match = PRICE_RE.search(message)
    if not match:
        return _result(
            "I'd love to help with pricing! Tell me something like 'under $200' or "
            "'between $150-300' and I'll add it to your search.",
            None,
            "Under $200",
            "Between $150-300",
        )

    price = match.group(1)
    if any(w in message for w in ("under", "less than", "below")):
        return _result(
            f"Got it! I've updated your search to include hotels under {price}. "
            "Tell me what else you'd like - maybe dates or amenities?",
            turn.refine(f"under {price}"),
            "Add check-in dates",
            "Include free breakfast",
        )
    if any(w in message for w in ("over", "more than", "above")):
        return _result(
            f"Perfect! Now looking for hotels over {price}. Tell me what other features you want!",
            turn.refine(f"over {price}"),
            "Add free WiFi",
            "Include parking",
        )
    if "between" in message or "-" in message:
        span = PRICE_RANGE_RE.search(message)
        if span:
            low, high = span.group(1), span.group(2)
            return _result(
                f"Great! Searching for hotels between ${low}-${high}. What else can I help with?",
                turn.refine(f"${low}-${high}"),
                "Add check-in dates",
                "Include pool access",
            )
        return _result(
            f"Noted! Looking for hotels around ${price}. Want to specify dates or add amenities?",
            turn.refine(f"around ${price}"),
            "Add check-in dates",
            "Include pool access",
        )
    # A bare number is too ambiguous to apply.
    return _result(DEFAULT_RESPONSE, None)


def _dates(turn: RuleInput) -> RefinementResult:
    for pattern in DATE_PATTERNS:
        found = pattern.findall(turn.message)
        if len(found) >= 2:
            first, second = found[0], found[1]
            return _result(
                f"Perfect! Added dates {first} to {second}. Want to set a budget or add amenities?",
                turn.refine(f"{first} to {second}"),
                "Add budget range",
                "Include free breakfast",
            )
        if found:
            return _result(
                "Got the check-in date! When are you checking out?",
                turn.refine(f"starting {found[0]}"),
                "Add budget range",
                "Include free breakfast",
            )
    return _result(
        "I can help with dates! Try 'March 15 to March 18' or 'check in 3/15 check out 3/18'.",
        None,
        "March 15-18",
        "This weekend",
    )


def _fixed(suffix: str, response: str, *suggestions: str) -> Callable[[RuleInput], RefinementResult]:
    return lambda turn: _result(response, turn.refine(suffix), *suggestions)


def _pool(turn: RuleInput) -> RefinementResult:
    suggestions = ("Add spa services", "Add fitness center")
    if "indoor" in turn.message:
        return _result("Indoor pool added! Looking for anything else?", turn.refine("with indoor pool"), *suggestions)
    if "outdoor" in turn.message:
        return _result(
            "Outdoor pool added! Want to specify other amenities?", turn.refine("with outdoor pool"), *suggestions
        )
    return _result("Pool access added! Need any other amenities?", turn.refine("with pool"), *suggestions)


def _beach(turn: RuleInput) -> RefinementResult:
    suggestions = ("Ocean view rooms", "Beachfront property")
    if "view" in turn.message:
        return _result("Ocean view added! Want beachfront access too?", turn.refine("with ocean view"), *suggestions)
    return _result(
        "Beach location noted! Want ocean views or beachfront access?", turn.refine("near beach"), *suggestions
    )


def _stars(turn: RuleInput) -> RefinementResult:
    match = STAR_RE.search(turn.message)
    if match:
        stars = match.group(1)
        return _result(
            f"{stars}+ star hotels added! Want luxury amenities to match?",
            turn.refine(f"{stars}+ star rating"),
            "Add spa services",
            "Add concierge",
        )
    return _result(
        "High ratings specified! Looking for any particular amenities?",
        turn.refine("highly rated"),
        "Add breakfast",
        "Add pool",
    )


RULES: Tuple[RefinementRule, ...] = (
    # price
    RefinementRule("price", _any_of("$", "budget", "price"), _price),
    # dates
    RefinementRule("dates", _any_of("date", "check", "stay"), _dates),
    # amenities
    RefinementRule(
        "breakfast",
        _any_of("breakfast"),
        _fixed(
            "with free breakfast",
            "Excellent! I've added free breakfast to your search. "
            "Want to tell me about other amenities like WiFi or parking?",
            "Add free WiFi",
            "Add parking",
        ),
    ),
    RefinementRule(
        "wifi",
        _any_of("wifi", "internet"),
        _fixed(
            "with free WiFi",
            "Great! Free WiFi added to your search. Tell me what else you need - breakfast, pool, or something else?",
            "Add breakfast",
            "Add pool access",
        ),
    ),
    RefinementRule("pool", _any_of("pool"), _pool),
    RefinementRule(
        "parking",
        _any_of("parking"),
        _fixed(
            "with free parking",
            "Perfect! I've added free parking. Tell me what else would make your stay better!",
            "Add breakfast",
            "Set price range",
        ),
    ),
    RefinementRule(
        "spa",
        _any_of("spa"),
        _fixed(
            "with spa",
            "Spa services added! Want to include other luxury amenities?",
            "Add room service",
            "Add concierge",
        ),
    ),
    RefinementRule(
        "fitness",
        _any_of("gym", "fitness"),
        _fixed(
            "with fitness center",
            "Fitness center added! Any other health and wellness amenities?",
            "Add spa services",
            "Add pool access",
        ),
    ),
    RefinementRule(
        "cancellation",
        _any_of("cancel"),
        _fixed(
            "with free cancellation",
            "Smart choice! I've added free cancellation for flexibility. What else can I help you refine?",
            "Add breakfast",
            "Set budget",
        ),
    ),
    # location
    RefinementRule(
        "city_center",
        _any_of("downtown", "city center"),
        _fixed(
            "in city center",
            "City center location added! Want walkable areas or near public transport?",
            "Near metro station",
            "Walking distance restaurants",
        ),
    ),
    RefinementRule("beach", _any_of("beach", "ocean"), _beach),
    RefinementRule(
        "quiet",
        _any_of("quiet", "peaceful"),
        _fixed(
            "in quiet area",
            "Quiet location added! Looking for any specific amenities for a relaxing stay?",
            "Add spa services",
            "Add room service",
        ),
    ),
    RefinementRule(
        "walkable",
        _any_of("walkable", "walking"),
        _fixed(
            "in walkable area",
            "Walkable area specified! Want restaurants and shops within walking distance?",
            "Near restaurants",
            "Near shopping",
        ),
    ),
    # guest profile
    RefinementRule(
        "family",
        _any_of("family", "kids", "children"),
        _fixed(
            "family-friendly",
            "Family-friendly options added! Want a pool or connecting rooms?",
            "Add pool access",
            "Add connecting rooms",
        ),
    ),
    RefinementRule(
        "business",
        _any_of("business", "work"),
        _fixed(
            "business-friendly",
            "Business amenities noted! Want meeting rooms or business center access?",
            "Add business center",
            "Add meeting rooms",
        ),
    ),
    RefinementRule(
        "romantic",
        _any_of("romantic", "couple"),
        _fixed(
            "romantic",
            "Perfect for a romantic getaway! Want spa services or room service?",
            "Add spa services",
            "Add room service",
        ),
    ),
    # rating and quality
    RefinementRule("stars", _any_of("star", "rating"), _stars),
    RefinementRule(
        "luxury",
        _any_of("luxury", "upscale"),
        _fixed(
            "luxury",
            "Luxury accommodations noted! Want spa, concierge, or room service?",
            "Add spa services",
            "Add concierge service",
        ),
    ),
    RefinementRule(
        "budget",
        _any_of("budget", "cheap", "affordable"),
        _fixed(
            "budget-friendly",
            "Budget-friendly options added! Want to set a specific price range?",
            "Under $100",
            "Under $150",
        ),
    ),
)


def _verbatim(turn: RuleInput) -> RefinementResult:
    clean = turn.raw_message.strip()
    if VERBATIM_MIN_LENGTH <= len(clean) <= VERBATIM_MAX_LENGTH:
        return _result(
            "I've added that to your search! Want to refine it further?",
            turn.refine(clean),
            "Add price range",
            "Add amenities",
        )
    return _result(HELP_RESPONSE, None, "Under $200", "With free breakfast")


def match_rule(message: str) -> RefinementRule | None:
    """Return the first rule whose predicate accepts the lower-cased message."""
    for rule in RULES:
        if rule.matches(message):
            return rule
    return None


def fallback_refinement(user_message: str, current_search: str) -> RefinementResult:
    """Deterministic refinement used when the model path is unavailable. Never raises."""
    turn = RuleInput(
        message=(user_message or "").lower().strip(),
        raw_message=user_message or "",
        current_search=current_search or "",
    )
    rule = match_rule(turn.message)
    if rule is None:
        return _verbatim(turn)
    return rule.apply(turn)
