"""
Postal code (CEP) existence lookup against a ViaCEP-compatible service.
"""
import logging
import re
import threading
from typing import Dict, List, Optional, Sequence

import requests

from app.core.config import settings
from app.domain.imports.cancellation import CancellationToken
from app.domain.imports.errors import LookupUnavailableError
from app.domain.imports.models import OutcomeKind, Severity, ValidationOutcome

logger = logging.getLogger(__name__)

SERVICE_NAME = "Postal code"


def normalize_postal_code(value: str) -> Optional[str]:
    """Return the 8 CEP digits, or None when the value does not have that shape."""
    digits = re.sub(r"\D", "", value or "")
    return digits if len(digits) == 8 else None


class PostalCodeLookup:
    """
    Checks whether postal codes exist. Results are cached for the lifetime of
    the lookup object so each code is queried at most once per session.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        *,
        timeout_seconds: Optional[float] = None,
        session: Optional[requests.Session] = None,
    ):
        self.base_url = (base_url or settings.postal_lookup_base_url).rstrip("/")
        self.timeout_seconds = timeout_seconds or settings.postal_lookup_timeout_seconds
        self._session = session or requests.Session()
        self._cache: Dict[str, dict] = {}
        self._lock = threading.Lock()

    def lookup(self, postal_code: str) -> dict:
        """
        Resolve one CEP.

        Returns a dict with ``exists`` and, when found, the address fields the
        service reports. Raises LookupUnavailableError for transport failures
        and server errors; those are never cached.
        """
        digits = normalize_postal_code(postal_code)
        if digits is None:
            return {"exists": False, "reason": "malformed"}

        with self._lock:
            cached = self._cache.get(digits)
        if cached is not None:
            return cached

        url = f"{self.base_url}/{digits}/json/"
        try:
            response = self._session.get(url, timeout=self.timeout_seconds)
        except requests.RequestException as exc:
            raise LookupUnavailableError(SERVICE_NAME, str(exc)) from exc

        if response.status_code >= 500:
            raise LookupUnavailableError(SERVICE_NAME, f"HTTP {response.status_code}")

        if response.status_code >= 400:
            result = {"exists": False, "reason": f"HTTP {response.status_code}"}
        else:
            try:
                body = response.json()
            except ValueError as exc:
                raise LookupUnavailableError(SERVICE_NAME, "response was not valid JSON") from exc
            if body.get("erro"):
                result = {"exists": False, "reason": "not_found"}
            else:
                result = {
                    "exists": True,
                    "city": body.get("localidade"),
                    "state": body.get("uf"),
                    "neighborhood": body.get("bairro"),
                    "street": body.get("logradouro"),
                }

        with self._lock:
            self._cache[digits] = result
        return result

    def validate_codes(
        self, codes: Sequence[str], token: Optional[CancellationToken] = None,
    ) -> List[ValidationOutcome]:
        """
        Per-chunk validator: one outcome per distinct postal code. Stops before
        the next request once ``token`` is cancelled.
        """
        outcomes = []
        for code in codes:
            if token is not None and token.cancelled:
                logger.debug("Postal code lookup stopped after %d of %d codes", len(outcomes), len(codes))
                return outcomes
            result = self.lookup(code)
            exists = bool(result.get("exists"))
            outcomes.append(ValidationOutcome(
                item_id=code,
                is_valid=exists,
                kind=OutcomeKind.POSTAL_LOOKUP,
                payload=result,
                severity=Severity.INFO if exists else Severity.WARNING,
                message=None if exists else f"Postal code '{code}' was not found",
                field="delivery_zipcode",
            ))
        logger.debug("Checked %d postal codes", len(codes))
        return outcomes
