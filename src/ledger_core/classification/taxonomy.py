"""
Standard taxonomy and regex fallback tables.

Both tables are data held by a TaxonomyConfig and injected into the
classification pipeline, so they can be replaced per region from a YAML
file. Matching is case-insensitive throughout.
"""

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import yaml

from ..schemas.ledger import Priority

logger = logging.getLogger(__name__)


class TaxonomyError(ValueError):
    """A taxonomy override cannot be used."""

    pass

DEFAULT_KEYWORDS: dict[str, list[str]] = {
    "SHOPPING": ["AMAZON", "WALMART", "RETAIL", "EBAY", "ALIEXPRESS"],
    "TRANSPORT": [
        "UBER",
        "LYFT",
        "SHELL",
        "BP",
        "EXXON",
        "CHEVRON",
        "TRANSPORT",
        "BOLT",
        "RENFE",
        "FGC",
        "MOBILITAT",
    ],
    "SUBSCRIPTIONS": ["NETFLIX", "SPOTIFY", "APPLE", "DISNEY", "HBO", "ADOBE"],
    "DINING": [
        "STARBUCKS",
        "MCDONALD",
        "BURGER KING",
        "RESTAURANT",
        "TACO BELL",
        "KFC",
        "LA SIRENA",
    ],
    "GROCERIES": [
        "KROGER",
        "WHOLE FOODS",
        "MERCADONA",
        "TESCO",
        "ALDI",
        "LIDL",
        "CARREFOUR",
        "CAPRABO",
        "EROSKI",
        "LLOBET",
    ],
    "TRAVEL": [
        "AIRBNB",
        "HOTEL",
        "AIRLINES",
        "BOOKING.COM",
        "EXPEDIA",
        "VUELING",
        "RYANAIR",
        "EASYJET",
    ],
    "UTILITIES": ["POWER", "GAS", "ELECTRIC", "WATER", "ENERGIA"],
    "CONNECTIVITY": [
        "INTERNET",
        "WIFI",
        "MOBILE",
        "ORANGE",
        "VODAFONE",
        "AT&T",
        "VERIZON",
        "FINETWORK",
    ],
    "PETS": ["BARKCELONA", "ANIMALESA", "VET", "PETCO"],
    "CHARITY": ["INTERMON", "OXFAM", "UNICEF", "NGO"],
    "GAMES": ["STEAM", "STEAMGAMES", "BLIZZARD", "PLAYSTATION", "EPIC"],
    "RENT": ["IMPULS", "ADMINISTRACION", "LLOGUER", "RENT"],
    "HEALTH": ["HOSPITAL", "DOCTOR", "CLINIC", "DENTIST", "PHARMACY", "FARMACIA"],
}

# Ordered: first matching pattern wins
DEFAULT_FALLBACKS: list[tuple[str, str]] = [
    (r"(POWER|GAS|ELECTRIC|ENERGIA|NUFRI)", "UTILITIES"),
    (r"(VUELING|RYANAIR|EASYJET|WIZZAIR|ELAL|FINNAIR)", "TRAVEL"),
    (r"(BARKCELONA|ANIMALESA)", "PETS"),
    (r"(INTERMON|OXFAM)", "CHARITY"),
    (r"(MOBILITAT|BEENETWORK|BEE NETWORK|BEE|TRANSPORTE|RENFE|FGC)", "TRANSPORT"),
    (r"(LA SIRENA|MCDONALDS|BURGER KING)", "DINING"),
    (
        r"(STEAM|STEAMGAMES|BLIZZARD|PLAYSTATION|PLAYSTATIONNETWORK|EPIC GAMES|EPICGAMES|RAIDBOTS)",
        "GAMES",
    ),
    (
        r"(CAPRABO|ALDI|CARREFOUR|LLOBET|LLOVI|SUKHA|EROSKI|MERCADONA|TESCO|LIDL|EDEKA)",
        "GROCERIES",
    ),
    (r"(IMPULS|ADMINISTRACION|LLOGUER)", "RENT"),
    (r"(AIGUES|WATER)", "UTILITIES"),
    (r"(INTERNET|WIFI|CABLE|COMCAST|AT&T|VERIZON|T-MOBILE|ORANGE|FINETWORK)", "CONNECTIVITY"),
    (r"(HOSTEL|HOSTELS|HOTEL|HOTELS|HOSTELWORLD|TOC|UNITE|BOOKING|BOOKING\.COM)", "TRAVEL"),
    (
        r"(HOSPITAL|DOCTOR|CLINIC|DENTIST|PHARMACY|CVS|WALGREENS|PERRUQUERS|NADEU|FARMACIA)",
        "HEALTH",
    ),
]

DEFAULT_PRIORITIES: dict[str, Priority] = {
    "SHOPPING": Priority.WANTS,
    "TRANSPORT": Priority.NEEDS,
    "SUBSCRIPTIONS": Priority.WANTS,
    "DINING": Priority.WANTS,
    "GROCERIES": Priority.NEEDS,
    "TRAVEL": Priority.WANTS,
    "UTILITIES": Priority.NEEDS,
    "CONNECTIVITY": Priority.NEEDS,
    "PETS": Priority.NEEDS,
    "CHARITY": Priority.WANTS,
    "GAMES": Priority.WANTS,
    "RENT": Priority.NEEDS,
    "HEALTH": Priority.NEEDS,
}


@dataclass
class RegexFallback:
    """One (pattern, slug) entry of the regex fallback table."""

    pattern: str
    slug: str
    _compiled: re.Pattern = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        try:
            self._compiled = re.compile(self.pattern, re.IGNORECASE)
        except re.error as e:
            raise TaxonomyError(
                f"Invalid fallback pattern {self.pattern!r} for {self.slug}: {e}"
            ) from e

    def search(self, text: str) -> Optional[re.Match]:
        return self._compiled.search(text)


@dataclass
class TaxonomyConfig:
    """Injectable taxonomy: slug keywords, ordered regex fallbacks, slug priorities."""

    keywords: dict[str, list[str]]
    fallbacks: list[RegexFallback] = field(default_factory=list)
    priorities: dict[str, Priority] = field(default_factory=dict)

    @classmethod
    def default(cls) -> "TaxonomyConfig":
        return cls(
            keywords={slug: list(words) for slug, words in DEFAULT_KEYWORDS.items()},
            fallbacks=[RegexFallback(pattern, slug) for pattern, slug in DEFAULT_FALLBACKS],
            priorities=dict(DEFAULT_PRIORITIES),
        )

    @classmethod
    def from_dict(cls, data: dict) -> "TaxonomyConfig":
        """
        Build from a mapping with optional `keywords`, `fallbacks` and
        `priorities` sections. Missing sections keep the defaults.
        """
        base = cls.default()

        keywords = data.get("keywords")
        if keywords is not None:
            base.keywords = {
                str(slug).upper(): [str(k).upper() for k in words or []]
                for slug, words in keywords.items()
            }

        fallbacks = data.get("fallbacks")
        if fallbacks is not None:
            base.fallbacks = [
                RegexFallback(pattern=entry["pattern"], slug=str(entry["slug"]).upper())
                for entry in fallbacks
            ]

        priorities = data.get("priorities")
        if priorities is not None:
            base.priorities = {
                str(slug).upper(): Priority(value) for slug, value in priorities.items()
            }

        return base

    def keywords_for(self, slug: str) -> list[str]:
        """Keywords associated with a slug; the slug itself when unknown."""
        return self.keywords.get(slug, [slug])

    def priority_for(self, slug: str) -> Optional[Priority]:
        return self.priorities.get(slug)

    def match_keyword(self, text: str) -> Optional[tuple[str, str]]:
        """First slug with a keyword contained in text. Returns (slug, keyword)."""
        upper = text.upper()
        for slug, words in self.keywords.items():
            for word in words:
                if word.upper() in upper:
                    return slug, word
        return None

    def match_fallback(self, text: str) -> Optional[tuple[str, str]]:
        """First fallback pattern found in text. Returns (slug, matched text)."""
        for entry in self.fallbacks:
            found = entry.search(text)
            if found:
                return entry.slug, found.group(0)
        return None


def load_taxonomy(path: Optional[Path]) -> TaxonomyConfig:
    """Load a taxonomy override from YAML, or the defaults when no file is given.

    Raises:
        TaxonomyError: The file has a bad fallback pattern, priority or entry.
    """
    if path is None:
        return TaxonomyConfig.default()
    if not path.exists():
        logger.warning("Taxonomy file %s not found, using built-in taxonomy", path)
        return TaxonomyConfig.default()

    with open(path) as f:
        data = yaml.safe_load(f) or {}

    try:
        taxonomy = TaxonomyConfig.from_dict(data)
    except (KeyError, TypeError, ValueError) as e:
        raise TaxonomyError(f"Invalid taxonomy file {path}: {e}") from e

    logger.info(
        "Loaded taxonomy from %s (%d slugs, %d fallbacks)",
        path,
        len(taxonomy.keywords),
        len(taxonomy.fallbacks),
    )
    return taxonomy
