"""Shared constants used across the resolver, parser, and aggregator.

Single source of truth for the brand catalogue, plate format, and the
registry/marketplace vocabulary maps.
"""

from __future__ import annotations

import re

# Closed catalogue offered to the description parser (display spelling).
KNOWN_BRANDS: tuple[str, ...] = (
    "Abarth", "Alfa Romeo", "Audi", "BMW", "Citroën", "Cupra", "Dacia", "DS",
    "Fiat", "Ford", "Honda", "Hyundai", "Jaguar", "Jeep", "Kia", "Land Rover",
    "Lexus", "Mazda", "Mercedes-Benz", "Mercedes", "Mini", "Mitsubishi",
    "Nissan", "Opel", "Peugeot", "Porsche", "Renault", "Seat", "Skoda",
    "Škoda", "Suzuki", "Tesla", "Toyota", "Volkswagen", "VW", "Volvo",
)

# Catalogue aliases folded onto their canonical brand.
BRAND_ALIASES: dict[str, str] = {
    "vw": "Volkswagen",
    "mercedes": "Mercedes-Benz",
    "skoda": "Škoda",
    "citroen": "Citroën",
}

# Normalized plates are 1-8 alphanumerics.
PLATE_RE = re.compile(r"^[A-Z0-9]{1,8}$")
PLATE_SEPARATORS_RE = re.compile(r"[-\s]")

# ── Registry vocabulary ───────────────────────────────────────────

REGISTRY_BRAND_MAP: dict[str, str] = {
    "VOLKSWAGEN": "Volkswagen",
    "MERCEDES-BENZ": "Mercedes-Benz",
    "BMW": "BMW",
    "AUDI": "Audi",
    "TOYOTA": "Toyota",
    "FORD": "Ford",
    "OPEL": "Opel",
    "PEUGEOT": "Peugeot",
    "RENAULT": "Renault",
    "CITROËN": "Citroën",
    "CITROEN": "Citroën",
    "VOLVO": "Volvo",
    "KIA": "Kia",
    "HYUNDAI": "Hyundai",
    "MAZDA": "Mazda",
    "NISSAN": "Nissan",
    "SKODA": "Škoda",
    "ŠKODA": "Škoda",
    "SEAT": "Seat",
    "FIAT": "Fiat",
    "HONDA": "Honda",
    "SUZUKI": "Suzuki",
    "MINI": "Mini",
    "LAND ROVER": "Land Rover",
    "JAGUAR": "Jaguar",
    "PORSCHE": "Porsche",
    "TESLA": "Tesla",
    "LEXUS": "Lexus",
    "ALFA ROMEO": "Alfa Romeo",
    "JEEP": "Jeep",
    "MITSUBISHI": "Mitsubishi",
    "DACIA": "Dacia",
}

REGISTRY_FUEL_MAP: dict[str, str] = {
    "Benzine": "Benzine",
    "Diesel": "Diesel",
    "Elektriciteit": "Elektrisch",
    "Waterstof": "Waterstof",
    "LPG": "LPG",
    "CNG": "CNG",
}

REGISTRY_BODY_MAP: dict[str, str] = {
    "sedan": "Sedan",
    "hatchback": "Hatchback",
    "stationwagen": "Station",
    "suv": "SUV",
    "terreinwagen": "SUV",
    "cabriolet": "Cabrio",
    "coupé": "Coupé",
    "coupe": "Coupé",
    "mpv": "MPV",
    "monovolume": "MPV",
    "pick-up": "Pick-up",
    "gesloten opbouw": "Bestelwagen",
    "open opbouw": "Pick-up",
    "personenauto": "Onbekend",
}

REGISTRY_COLOR_MAP: dict[str, str] = {
    "GRIJS": "Grijs",
    "ZWART": "Zwart",
    "WIT": "Wit",
    "BLAUW": "Blauw",
    "ROOD": "Rood",
    "ZILVER": "Zilver",
    "GROEN": "Groen",
    "BRUIN": "Bruin",
    "BEIGE": "Beige",
    "ORANJE": "Oranje",
    "GEEL": "Geel",
    "PAARS": "Paars",
    "ROZE": "Roze",
    "GOUD": "Goud",
    "DIVERSEN": "Overig",
    "N.V.T.": "Onbekend",
}

UNKNOWN = "Onbekend"
KW_TO_HP = 1.36

# ── Description keyword dictionaries (first match wins) ───────────

FUEL_KEYWORDS: tuple[tuple[re.Pattern[str], str], ...] = (
    (re.compile(r"\b(?:benzine|petrol)\b", re.IGNORECASE), "Benzine"),
    (re.compile(r"\bdiesel\b", re.IGNORECASE), "Diesel"),
    (re.compile(r"\b(?:hybride|hybrid|phev|plug-in)\b", re.IGNORECASE), "Hybride"),
    (re.compile(r"\b(?:elektrisch|electric|ev|bev)\b", re.IGNORECASE), "Elektrisch"),
    (re.compile(r"\blpg\b", re.IGNORECASE), "LPG"),
)

TRANSMISSION_KEYWORDS: tuple[tuple[re.Pattern[str], str], ...] = (
    (
        re.compile(r"\b(?:automaat|automatic|aut|dsg|tiptronic|cvt)\b", re.IGNORECASE),
        "Automaat",
    ),
    (
        re.compile(r"\b(?:handgeschakeld|manual|schakelbak|handbak)\b", re.IGNORECASE),
        "Handgeschakeld",
    ),
)

BODY_KEYWORDS: tuple[tuple[re.Pattern[str], str], ...] = (
    (
        re.compile(r"\b(?:touring|wagon|station|stationwagen|avant|variant|break|sw)\b", re.IGNORECASE),
        "Station",
    ),
    (re.compile(r"\b(?:sedan|limousine|saloon)\b", re.IGNORECASE), "Sedan"),
    (re.compile(r"\bhatchback\b", re.IGNORECASE), "Hatchback"),
    (re.compile(r"\bsuv\b", re.IGNORECASE), "SUV"),
    (re.compile(r"\b(?:coupe|coupé)\b", re.IGNORECASE), "Coupé"),
    (re.compile(r"\b(?:cabrio|cabriolet|convertible|roadster)\b", re.IGNORECASE), "Cabrio"),
    (re.compile(r"\bmpv\b", re.IGNORECASE), "MPV"),
)

YEAR_RE = re.compile(r"\b(?:19|20)\d{2}\b")
POWER_RE = re.compile(r"\b(\d{2,3})\s*(?:pk|hp|ps)\b", re.IGNORECASE)
MILEAGE_RE = re.compile(r"\b(\d{1,3}(?:[.\s]\d{3})+|\d{4,6})\s*km\b", re.IGNORECASE)

# ── Marketplace search vocabulary ─────────────────────────────────

MARKETPLACE_FUEL_SLUGS: dict[str, str] = {
    "Benzine": "benzine",
    "Diesel": "diesel",
    "Elektrisch": "elektrisch",
    "Hybride": "hybride",
    "LPG": "lpg",
}

# ── Pricing index vocabulary ──────────────────────────────────────

INDEX_FUEL_MAP: dict[str, str] = {
    "Benzine": "PETROL",
    "Diesel": "DIESEL",
    "Elektrisch": "ELECTRIC",
    "Hybride": "HYBRID",
    "LPG": "LPG",
}

INDEX_GEAR_MAP: dict[str, str] = {
    "Automaat": "AUTOMATIC_GEAR",
    "Handgeschakeld": "MANUAL_GEAR",
}
