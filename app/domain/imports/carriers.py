"""
Carrier recognition for tracking codes.

Codes are matched against a catalogue of Brazilian and international carrier
patterns. When several carriers accept the same shape, the pattern with the
highest priority wins.
"""
import logging
import re
import threading
import unicodedata
from dataclasses import dataclass
from typing import Dict, List, Optional, Pattern, Sequence, Tuple

from app.domain.imports.models import (
    CanonicalRecord,
    OutcomeKind,
    Severity,
    ValidationOutcome,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CarrierPattern:
    carrier_id: str
    name: str
    country: str
    patterns: Tuple[Pattern, ...]
    priority: int
    aliases: Tuple[str, ...] = ()


def _compile(*patterns: str) -> Tuple[Pattern, ...]:
    return tuple(re.compile(pattern, re.IGNORECASE) for pattern in patterns)


CARRIER_PATTERNS: Tuple[CarrierPattern, ...] = (
    CarrierPattern("correios", "Correios", "BR",
                   _compile(r"^[A-Z]{2}\d{9}BR$", r"^[A-Z]{2}\s?\d{9}\s?[A-Z]{2}$", r"^[A-Z]{2}\d{10}[A-Z]{2}$"),
                   priority=100, aliases=("correios", "sedex", "pac")),
    CarrierPattern("ups", "UPS", "US", _compile(r"^1Z[A-Z0-9]{16}$", r"^T\d{10}$"), priority=95),
    CarrierPattern("usps", "USPS", "US", _compile(r"^[A-Z]{2}\d{9}US$", r"^94\d{20}$"), priority=90),
    CarrierPattern("dhl", "DHL", "DE", _compile(r"^\d{10}$", r"^[A-Z]{3}\d{7}$"), priority=85),
    CarrierPattern("loggi", "Loggi", "BR",
                   _compile(r"^LG\d{9}BR$", r"^LOG\d{12}$",
                            r"^[A-Z0-9]{8}-[A-Z0-9]{4}-[A-Z0-9]{4}-[A-Z0-9]{4}-[A-Z0-9]{12}$"),
                   priority=82),
    CarrierPattern("ctt", "CTT Portugal", "PT", _compile(r"^[A-Z]{2}\d{9}PT$"), priority=80),
    CarrierPattern("total-express", "Total Express", "BR",
                   _compile(r"^TE\d{9}BR$", r"^TE\d{10}$", r"^[A-Z]{3}\d{9,10}$"),
                   priority=78, aliases=("total express", "totalexpress")),
    CarrierPattern("azul-cargo", "Azul Cargo", "BR",
                   _compile(r"^AC\d{9}BR$", r"^\d{3}-\d{8}$"),
                   priority=76, aliases=("azul", "azul cargo", "azul cargo express")),
    CarrierPattern("mercado-envios", "Mercado Envios", "BR", _compile(r"^ME\d{12}$"),
                   priority=75, aliases=("mercado envios", "mercado livre")),
    CarrierPattern("jadlog", "Jadlog", "BR", _compile(r"^\d{12,15}$"), priority=70),
    CarrierPattern("shopee", "Shopee Xpress", "SG", _compile(r"^SPXBR\d{10,12}$"),
                   priority=70, aliases=("shopee", "spx")),
    CarrierPattern("china-post", "China Post", "CN", _compile(r"^[A-Z]{2}\d{9}CN$"), priority=70),
    CarrierPattern("tnt", "TNT", "NL", _compile(r"^[A-Z]{2}\d{9}$"), priority=65),
    CarrierPattern("fedex", "FedEx", "US", _compile(r"^\d{20}$", r"^\d{22}$"), priority=60),
    CarrierPattern("aramex", "Aramex", "AE", _compile(r"^\d{11}$"), priority=55),
)


@dataclass(frozen=True)
class CarrierMatch:
    carrier_id: str
    name: str
    priority: int


def _normalize_name(value: str) -> str:
    text = unicodedata.normalize("NFKD", value).encode("ascii", "ignore").decode("ascii")
    return re.sub(r"[^a-z0-9]+", " ", text.lower()).strip()


def _normalize_code(code: str) -> str:
    return re.sub(r"\s+", "", code or "").upper()


class CarrierLookup:
    """
    Identify carriers for tracking codes, caching results for the lifetime
    of the lookup (one mapping session).
    """

    def __init__(self, catalogue: Sequence[CarrierPattern] = CARRIER_PATTERNS):
        self._catalogue = sorted(catalogue, key=lambda entry: entry.priority, reverse=True)
        self._cache: Dict[str, Optional[CarrierMatch]] = {}
        self._lock = threading.Lock()

    def identify(self, code: str) -> Optional[CarrierMatch]:
        normalized = _normalize_code(code)
        if not normalized:
            return None
        with self._lock:
            if normalized in self._cache:
                return self._cache[normalized]

        match = None
        for entry in self._catalogue:
            if any(pattern.match(normalized) for pattern in entry.patterns):
                match = CarrierMatch(entry.carrier_id, entry.name, entry.priority)
                break

        with self._lock:
            self._cache[normalized] = match
        return match

    def validate_codes(self, codes: Sequence[str]) -> List[ValidationOutcome]:
        """Per-chunk validator: one outcome per distinct tracking code."""
        outcomes = []
        for code in codes:
            match = self.identify(code)
            outcomes.append(ValidationOutcome(
                item_id=code,
                is_valid=match is not None,
                kind=OutcomeKind.CARRIER_LOOKUP,
                payload={"carrier": match.carrier_id, "carrier_name": match.name} if match else {},
                severity=Severity.INFO if match else Severity.WARNING,
                message=None if match else f"Tracking code '{code}' does not match any known carrier",
                field="tracking_code",
            ))
        return outcomes

    def matches_carrier(self, declared: str, match: CarrierMatch) -> bool:
        declared_name = _normalize_name(declared)
        if not declared_name:
            return True
        entry = next((item for item in self._catalogue if item.carrier_id == match.carrier_id), None)
        candidates = {_normalize_name(match.name), _normalize_name(match.carrier_id)}
        if entry is not None:
            candidates.update(_normalize_name(alias) for alias in entry.aliases)
        return any(candidate and (candidate in declared_name or declared_name in candidate) for candidate in candidates)

    def check_consistency(self, records: Sequence[CanonicalRecord]) -> List[ValidationOutcome]:
        """Warn about records whose mapped carrier disagrees with the one recognized from the code."""
        outcomes = []
        for record in records:
            declared = record.get("carrier")
            code = record.get("tracking_code")
            if not declared or not code:
                continue
            match = self.identify(code)
            if match is None or self.matches_carrier(declared, match):
                continue
            outcomes.append(ValidationOutcome(
                item_id=record.item_id,
                is_valid=False,
                kind=OutcomeKind.CARRIER_LOOKUP,
                payload={"declared": declared, "recognized": match.carrier_id, "tracking_code": code},
                severity=Severity.WARNING,
                message=(
                    f"Row {record.row_number}: carrier '{declared}' does not match tracking code "
                    f"'{code}' (looks like {match.name})"
                ),
                field="carrier",
            ))
        return outcomes
