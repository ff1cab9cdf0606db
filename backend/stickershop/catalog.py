"""Country normalisation, variant catalog caching and SKU selection.

The print partner exposes a per-country catalog of variants (SKUs) for our
sticker product. This module:

1. Normalises free-form country input ("Canada", "U.S.A.", "ca") to ISO-2
2. Parses the partner's catalog through a small set of tagged strategies,
   because field names are not stable across API versions
3. Caches the enabled variants per country with a TTL
4. Picks the SKU that best matches the configured size/pack/variant

Selection policy, in order:
    a) preferred SKU override, only if enabled for the country
    b) exact match on size + pack + variant tokens
    c) relaxed match on size + pack
    d) first enabled variant
"""

import logging
import re
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from stickershop.errors import NoEnabledVariants, NoSkuResolved
from stickershop.providers.print_partner import PrintPartnerClient

logger = logging.getLogger(__name__)


# -----------------------------
# Country normalisation
# -----------------------------

# Keys are upper-cased with punctuation and whitespace removed
_COUNTRY_ALIASES: Dict[str, str] = {
    "US": "US", "USA": "US", "UNITEDSTATES": "US", "UNITEDSTATESOFAMERICA": "US",
    "AMERICA": "US", "THEUNITEDSTATES": "US",
    "CA": "CA", "CAN": "CA", "CANADA": "CA",
    "GB": "GB", "UK": "GB", "GBR": "GB", "UNITEDKINGDOM": "GB", "GREATBRITAIN": "GB",
    "ENGLAND": "GB", "SCOTLAND": "GB", "WALES": "GB", "NORTHERNIRELAND": "GB",
    "AU": "AU", "AUS": "AU", "AUSTRALIA": "AU",
    "NZ": "NZ", "NZL": "NZ", "NEWZEALAND": "NZ",
    "IE": "IE", "IRL": "IE", "IRELAND": "IE",
    "DE": "DE", "DEU": "DE", "GERMANY": "DE", "DEUTSCHLAND": "DE",
    "FR": "FR", "FRA": "FR", "FRANCE": "FR",
    "ES": "ES", "ESP": "ES", "SPAIN": "ES", "ESPANA": "ES",
    "IT": "IT", "ITA": "IT", "ITALY": "IT", "ITALIA": "IT",
    "NL": "NL", "NLD": "NL", "NETHERLANDS": "NL", "THENETHERLANDS": "NL", "HOLLAND": "NL",
    "MX": "MX", "MEX": "MX", "MEXICO": "MX",
    "JP": "JP", "JPN": "JP", "JAPAN": "JP",
    "SE": "SE", "SWE": "SE", "SWEDEN": "SE",
    "NO": "NO", "NOR": "NO", "NORWAY": "NO",
    "DK": "DK", "DNK": "DK", "DENMARK": "DK",
}

_NON_ALPHA = re.compile(r"[^A-Z]")


def normalize_country(value: Optional[str], fallback: str = "US") -> str:
    """Return the ISO-2 code for a country name, abbreviation or code.

    Unrecognised input yields ``fallback``. Any two-letter alphabetic input is
    taken as an ISO-2 code as-is.
    """
    if not value:
        return fallback

    key = _NON_ALPHA.sub("", value.strip().upper())
    if not key:
        return fallback

    code = _COUNTRY_ALIASES.get(key)
    if code:
        return code
    if len(key) == 2:
        return key

    logger.warning("Unrecognised country %r, using %s", value, fallback)
    return fallback


# -----------------------------
# Catalog parsing
# -----------------------------

@dataclass(frozen=True)
class Variant:
    """One enabled catalog entry, in our own shape."""
    sku: str
    name: str


def _list_under(payload: Any, *keys: str) -> Optional[List[Any]]:
    if not isinstance(payload, dict):
        return None
    for key in keys:
        value = payload.get(key)
        if isinstance(value, list):
            return value
    return None


def _parse_product_variants(payload: Any) -> Optional[List[Any]]:
    """{"ProductVariants": [...]} (current partner API)."""
    return _list_under(payload, "ProductVariants", "productVariants")


def _parse_variants_key(payload: Any) -> Optional[List[Any]]:
    """{"variants": [...]} or {"Variants": [...]}."""
    return _list_under(payload, "variants", "Variants")


def _parse_envelope(payload: Any) -> Optional[List[Any]]:
    """{"data": [...]}, {"result": [...]} or {"result": {"variants": [...]}}."""
    found = _list_under(payload, "data", "result", "items", "Items")
    if found is not None:
        return found
    if isinstance(payload, dict):
        for key in ("data", "result"):
            inner = payload.get(key)
            nested = _list_under(inner, "variants", "Variants", "ProductVariants", "items")
            if nested is not None:
                return nested
    return None


def _parse_bare_list(payload: Any) -> Optional[List[Any]]:
    """[...] with no envelope."""
    return payload if isinstance(payload, list) else None


PARSE_STRATEGIES: Tuple[Tuple[str, Callable[[Any], Optional[List[Any]]]], ...] = (
    ("product_variants", _parse_product_variants),
    ("variants", _parse_variants_key),
    ("envelope", _parse_envelope),
    ("bare_list", _parse_bare_list),
)


def extract_raw_variants(payload: Any) -> List[Dict[str, Any]]:
    """Run the parse strategies in order and return the first match."""
    for tag, strategy in PARSE_STRATEGIES:
        found = strategy(payload)
        if found is not None:
            logger.debug("Catalog payload parsed with %s strategy (%d entries)", tag, len(found))
            return [item for item in found if isinstance(item, dict)]
    logger.warning("Catalog payload matched no known shape")
    return []


def _first(raw: Dict[str, Any], *keys: str) -> Any:
    for key in keys:
        value = raw.get(key)
        if value not in (None, ""):
            return value
    return None


def _country_codes(entries: Any) -> Iterable[str]:
    if not isinstance(entries, list):
        return []
    codes = []
    for entry in entries:
        if isinstance(entry, str):
            codes.append(entry.upper())
        elif isinstance(entry, dict):
            code = _first(entry, "code", "Code", "country_code", "CountryCode", "country")
            if isinstance(code, str):
                codes.append(code.upper())
    return codes


def _is_enabled(raw: Dict[str, Any], country_code: str) -> bool:
    flag = _first(raw, "IsEnabled", "isEnabled", "is_enabled", "enabled", "Enabled")
    if flag is not None:
        if isinstance(flag, str):
            return flag.strip().lower() in ("true", "1", "yes")
        return bool(flag)

    countries = _first(raw, "EnabledCountries", "enabledCountries", "enabled_countries",
                       "AvailableCountries", "available_countries", "countries")
    return country_code in _country_codes(countries)


def _variant_name(raw: Dict[str, Any]) -> str:
    name = _first(raw, "Name", "name", "DisplayName", "displayName", "display_name", "title")
    if name:
        return str(name)
    options = raw.get("Options") or raw.get("options")
    if isinstance(options, list):
        values = [str(_first(o, "Value", "value") or "") for o in options if isinstance(o, dict)]
        return " ".join(v for v in values if v)
    return ""


def parse_enabled_variants(pages: List[Any], country_code: str) -> List[Variant]:
    """Turn raw catalog pages into the enabled variants for one country."""
    variants: List[Variant] = []
    seen = set()
    for payload in pages:
        for raw in extract_raw_variants(payload):
            sku = _first(raw, "Sku", "sku", "SKU", "variant_id", "id")
            if sku is None or not _is_enabled(raw, country_code):
                continue
            sku = str(sku)
            if sku in seen:
                continue
            seen.add(sku)
            variants.append(Variant(sku=sku, name=_variant_name(raw)))
    return variants


# -----------------------------
# Cache
# -----------------------------

class VariantCache:
    """Per-country variant lists with a time-to-live.

    Concurrent misses for the same country may both fetch and both store;
    the values are equivalent so the last write wins.
    """

    def __init__(self, ttl_seconds: float, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: Dict[str, Tuple[float, List[Variant]]] = {}

    def get(self, country_code: str) -> Optional[List[Variant]]:
        entry = self._entries.get(country_code)
        if not entry:
            return None
        stored_at, variants = entry
        if self.ttl_seconds > 0 and self._clock() - stored_at > self.ttl_seconds:
            del self._entries[country_code]
            return None
        return variants

    def set(self, country_code: str, variants: List[Variant]) -> None:
        self._entries[country_code] = (self._clock(), variants)

    def invalidate(self, country_code: Optional[str] = None) -> None:
        """Drop one country, or everything when no country is given."""
        if country_code is None:
            self._entries.clear()
        else:
            self._entries.pop(country_code, None)


# -----------------------------
# Resolver
# -----------------------------

@dataclass
class DesiredAttributes:
    size: str = ""
    pack: str = ""
    variant: str = ""


def _contains(variant: Variant, token: str) -> bool:
    if not token:
        return True
    token = token.lower()
    return token in variant.sku.lower() or token in variant.name.lower()


class CatalogResolver:
    """Resolve a printable SKU for a destination country."""

    def __init__(self, client: PrintPartnerClient, cache: VariantCache, fallback_country: str = "US"):
        self.client = client
        self.cache = cache
        self.fallback_country = fallback_country

    def normalize_country(self, value: Optional[str]) -> str:
        return normalize_country(value, self.fallback_country)

    async def enabled_variants(self, country_code: str) -> List[Variant]:
        cached = self.cache.get(country_code)
        if cached is not None:
            return cached

        pages = await self.client.fetch_variant_pages(country_code)
        variants = parse_enabled_variants(pages, country_code)
        self.cache.set(country_code, variants)
        logger.info("Cached %d enabled variants for %s", len(variants), country_code)
        return variants

    async def resolve_sku(
        self,
        country: Optional[str],
        desired: DesiredAttributes,
        preferred_sku: Optional[str] = None,
    ) -> str:
        """Pick the SKU to print for this destination.

        Raises:
            NoEnabledVariants: the country has no enabled variants at all
            NoSkuResolved: nothing survived the selection tiers
        """
        country_code = self.normalize_country(country)
        variants = await self.enabled_variants(country_code)
        if not variants:
            raise NoEnabledVariants(f"No enabled variants for {country_code}", country=country_code)

        sku = select_sku(variants, desired, preferred_sku, country_code)
        if not sku:
            raise NoSkuResolved(f"No variant matched for {country_code}", country=country_code)
        logger.info("Resolved SKU %s for %s", sku, country_code)
        return sku


def select_sku(
    variants: List[Variant],
    desired: DesiredAttributes,
    preferred_sku: Optional[str] = None,
    country_code: str = "",
) -> Optional[str]:
    """Apply the override / exact / relaxed / first-enabled tiers."""
    if preferred_sku:
        if any(v.sku == preferred_sku for v in variants):
            return preferred_sku
        logger.warning("Preferred SKU %s not enabled for %s, falling back to matching",
                       preferred_sku, country_code or "destination")

    exact = [
        v for v in variants
        if _contains(v, desired.size) and _contains(v, desired.pack) and _contains(v, desired.variant)
    ]
    if exact:
        return exact[0].sku

    relaxed = [v for v in variants if _contains(v, desired.size) and _contains(v, desired.pack)]
    if relaxed:
        return relaxed[0].sku

    return variants[0].sku if variants else None
