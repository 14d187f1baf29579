"""
addon_store.identifiers — Resource names and unique identifiers.

Randomness comes from an injectable random.Random so tests can seed it.
Neither generator checks for collisions; callers that need unique names
compare against the tenant's existing resources and regenerate.
"""

from __future__ import annotations

import random

ADJECTIVES: tuple[str, ...] = (
    "amber",
    "azure",
    "crimson",
    "golden",
    "indigo",
    "ivory",
    "jade",
    "ochre",
    "scarlet",
    "silver",
    "slate",
    "violet",
)

NOUNS: tuple[str, ...] = (
    "argon",
    "boron",
    "carbon",
    "cobalt",
    "copper",
    "helium",
    "iron",
    "neon",
    "nickel",
    "oxygen",
    "radon",
    "zinc",
)

_HEX_DIGITS = "0123456789abcdef"
_UUID_GROUPS = (8, 4, 4, 4, 12)
_NAME_DIGITS = 4


class IdentifierGenerator:
    def __init__(self, rng: random.Random | None = None) -> None:
        self._rng = rng or random.Random()

    def resource_name(self) -> str:
        """Return a label such as "amber-carbon-4821"."""
        adjective = self._rng.choice(ADJECTIVES)
        noun = self._rng.choice(NOUNS)
        digits = "".join(str(self._rng.randrange(10)) for _ in range(_NAME_DIGITS))
        return f"{adjective}-{noun}-{digits}"

    def unique_id(self) -> str:
        """Return a lowercase 8-4-4-4-12 hex identifier."""
        return "-".join(
            "".join(self._rng.choice(_HEX_DIGITS) for _ in range(size)) for size in _UUID_GROUPS
        )
