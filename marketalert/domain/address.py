# marketalert/domain/address.py
from __future__ import annotations

import re
from dataclasses import dataclass
from functools import lru_cache

# USPS-style suffix abbreviations (subset that actually shows up in listing feeds)
STREET_TYPES: dict[str, str] = {
    "street": "st",
    "str": "st",
    "avenue": "ave",
    "av": "ave",
    "aven": "ave",
    "boulevard": "blvd",
    "boul": "blvd",
    "drive": "dr",
    "drv": "dr",
    "road": "rd",
    "lane": "ln",
    "court": "ct",
    "place": "pl",
    "terrace": "ter",
    "circle": "cir",
    "highway": "hwy",
    "parkway": "pkwy",
    "pky": "pkwy",
    "trail": "trl",
    "square": "sq",
    "crossing": "xing",
    "expressway": "expy",
    "freeway": "fwy",
    "point": "pt",
    "heights": "hts",
    "mount": "mt",
    "center": "ctr",
    "cove": "cv",
    "creek": "crk",
    "ridge": "rdg",
    "hollow": "holw",
}

DIRECTIONALS: dict[str, str] = {
    "north": "n",
    "south": "s",
    "east": "e",
    "west": "w",
    "northeast": "ne",
    "northwest": "nw",
    "southeast": "se",
    "southwest": "sw",
}

# Secondary unit designators; the designator and everything after it is the unit.
UNIT_DESIGNATORS: set[str] = {
    "apt",
    "apartment",
    "unit",
    "suite",
    "ste",
    "bldg",
    "building",
    "fl",
    "floor",
    "rm",
    "room",
    "lot",
    "spc",
    "space",
    "trlr",
    "#",
}

_PUNCT = re.compile(r"[^\w#\s]")
_HASH = re.compile(r"#")
_WS = re.compile(r"\s+")


@dataclass(frozen=True)
class NormalizedStreet:
    number: str | None
    name_tokens: tuple[str, ...]
    unit: str | None = None

    @property
    def base(self) -> str:
        """Street line without secondary designators."""
        parts = [self.number] if self.number else []
        return " ".join([*parts, *self.name_tokens])

    @property
    def full(self) -> str:
        if not self.unit:
            return self.base
        return f"{self.base} # {self.unit}"

    @property
    def numeric_number(self) -> int | None:
        if self.number and self.number.isdigit():
            return int(self.number)
        return None


def _tokenize(text: str) -> list[str]:
    s = (text or "").casefold()
    s = _HASH.sub(" # ", s)
    s = _PUNCT.sub(" ", s)
    return [t for t in _WS.split(s) if t]


def _canonical_token(tok: str) -> str:
    if tok in STREET_TYPES:
        return STREET_TYPES[tok]
    if tok in DIRECTIONALS:
        return DIRECTIONALS[tok]
    return tok


@lru_cache(maxsize=8192)
def normalize_street(text: str) -> NormalizedStreet:
    """
    Case-fold, strip punctuation, split off unit/suite designators and standardize
    street-type/directional abbreviations.

      "123 Main Street, Apt. 4B" -> number="123", name=("main", "st"), unit="4b"
    """
    tokens = _tokenize(text)

    unit_tokens: list[str] = []
    street_tokens: list[str] = tokens
    # a designator in first position is a street name ("Lot Road"), not a unit
    for i, tok in enumerate(tokens):
        if i > 0 and tok in UNIT_DESIGNATORS:
            street_tokens = tokens[:i]
            unit_tokens = [t for t in tokens[i + 1 :] if t not in UNIT_DESIGNATORS]
            break

    number: str | None = None
    if street_tokens and any(ch.isdigit() for ch in street_tokens[0]):
        number = street_tokens[0]
        street_tokens = street_tokens[1:]

    name = tuple(_canonical_token(t) for t in street_tokens)
    unit = " ".join(unit_tokens) or None
    return NormalizedStreet(number=number, name_tokens=name, unit=unit)


def normalize_city(city: str | None) -> str:
    return " ".join(_tokenize(city or ""))


def normalize_state(state: str | None) -> str:
    return (state or "").strip().upper()


def normalize_zip(zip_code: str | None) -> str | None:
    if not zip_code:
        return None
    digits = re.sub(r"\D", "", str(zip_code))
    return digits[:5] or None


def normalize_address(street: str, city: str | None, state: str | None, zip_code: str | None = None) -> str:
    """Canonical single-line form cached on MemberAddress.normalized_address."""
    out = f"{normalize_street(street).full}, {normalize_city(city)}, {normalize_state(state)}"
    z = normalize_zip(zip_code)
    return f"{out} {z}" if z else out


def collapse_raw(text: str | None) -> str:
    """Case-folded, whitespace-collapsed original text (no abbreviation mapping)."""
    return " ".join((text or "").casefold().replace(",", " ").split())
