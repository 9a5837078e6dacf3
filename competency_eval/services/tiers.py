"""CEFR tier ordering helpers.

Tiers are plain strings ("A1" .. "C2"); every public entry point that
accepts a tier runs it through validate_tier() so that a typo surfaces as
InvalidTierError instead of silently falling back to a default.
"""

from typing import Optional

from competency_eval.errors import InvalidTierError

# CEFR level ordering for comparison
CEFR_ORDER = {"A1": 1, "A2": 2, "B1": 3, "B2": 4, "C1": 5, "C2": 6}
CEFR_FROM_ORDER = {v: k for k, v in CEFR_ORDER.items()}

TIERS = tuple(sorted(CEFR_ORDER, key=CEFR_ORDER.get))
LOWEST_TIER = TIERS[0]
HIGHEST_TIER = TIERS[-1]


def is_valid_tier(tier) -> bool:
    return tier in CEFR_ORDER


def validate_tier(tier) -> str:
    """Return the tier unchanged, or raise InvalidTierError."""
    if not is_valid_tier(tier):
        raise InvalidTierError(tier)
    return tier


def tier_index(tier: str) -> int:
    """Zero-based position of a tier in TIERS."""
    return CEFR_ORDER[validate_tier(tier)] - 1


def next_tier(tier: str) -> Optional[str]:
    """The tier above, or None at the terminal tier."""
    return CEFR_FROM_ORDER.get(CEFR_ORDER[validate_tier(tier)] + 1)


def previous_tier(tier: str) -> Optional[str]:
    """The tier below, or None at the lowest tier."""
    return CEFR_FROM_ORDER.get(CEFR_ORDER[validate_tier(tier)] - 1)


def clamp_shift(tier: str, steps: int) -> str:
    """Move `steps` tiers up (positive) or down (negative), clamped to the ends."""
    order = CEFR_ORDER[validate_tier(tier)] + steps
    order = max(1, min(len(TIERS), order))
    return CEFR_FROM_ORDER[order]


def compare_tiers(a: str, b: str) -> int:
    """Negative if a < b, zero if equal, positive if a > b."""
    return CEFR_ORDER[validate_tier(a)] - CEFR_ORDER[validate_tier(b)]
