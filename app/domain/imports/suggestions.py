"""
Mapping suggestions and mapping memory.

Suggests canonical fields for source columns using:
1. Learned patterns from previously confirmed mappings
2. Synonym tables for common Portuguese and English header names
3. Fuzzy name similarity against field keys and labels
4. The shape of sample values (emails, tracking codes, postal codes...)

Suggestions are advisory only; they never change the session's mapping.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple
import re
import threading
import unicodedata
from difflib import SequenceMatcher
import logging

from app.domain.imports.fields import CANONICAL_FIELDS, FIELDS_BY_KEY, field_label
from app.domain.imports.models import (
    FieldMapping,
    OutcomeKind,
    RawRow,
    Severity,
    ValidationOutcome,
    ValidatorResult,
)
from app.domain.imports.validators import validate_with_preset

logger = logging.getLogger(__name__)

INITIAL_PATTERN_CONFIDENCE = 0.6
PATTERN_CONFIDENCE_STEP = 0.1
TEMPLATE_CONFIDENCE = 0.9
MIN_SUGGESTION_CONFIDENCE = 0.5
SAMPLE_SIZE = 20

SYNONYMS: Dict[str, Tuple[str, ...]] = {
    "tracking_code": ("codigorastreio", "codigoderastreio", "rastreio", "trackingcode", "trackingnumber",
                      "tracking", "numerorastreio", "codigoderastreiodoenvio", "rastreioenvio"),
    "customer_name": ("nomecliente", "nomedocliente", "cliente", "customername", "customer", "nome",
                      "name", "comprador", "nomedocomprador", "buyer"),
    "customer_email": ("emailcliente", "emaildocliente", "email", "customeremail", "mail"),
    "customer_phone": ("telefonecliente", "telefone", "phone", "celular", "whatsapp", "fone",
                       "customerphone", "telefoneparaaentrega"),
    "customer_document": ("cpf", "cnpj", "cpfcnpj", "documento", "document", "taxid"),
    "carrier": ("transportadora", "carrier", "formadeentrega", "frete", "shippingmethod"),
    "order_number": ("numeropedido", "pedido", "ordernumber", "orderid", "numerodopedido", "order"),
    "order_value": ("valorpedido", "valor", "valortotal", "total", "ordervalue", "amount", "price", "preco"),
    "shipping_cost": ("valorfrete", "custofrete", "shippingcost", "freight"),
    "discount": ("desconto", "discount", "cupom"),
    "currency": ("moeda", "currency"),
    "order_date": ("datapedido", "datadopedido", "data", "orderdate", "date", "datadacompra"),
    "estimated_delivery": ("previsaoentrega", "dataprevista", "estimateddelivery", "prazoentrega"),
    "shipped_at": ("dataenvio", "enviadoem", "shippedat", "shipdate"),
    "delivered_at": ("dataentrega", "entregueem", "deliveredat", "deliverydate"),
    "destination": ("destino", "destination"),
    "delivery_address": ("endereco", "rua", "logradouro", "address", "street"),
    "delivery_number": ("numero", "number", "numeroendereco"),
    "delivery_complement": ("complemento", "complement"),
    "delivery_neighborhood": ("bairro", "neighborhood", "district"),
    "delivery_city": ("cidade", "city", "municipio"),
    "delivery_state": ("estado", "uf", "state"),
    "delivery_zipcode": ("cep", "zipcode", "zip", "postalcode", "codigopostal"),
    "delivery_country": ("pais", "country"),
    "product_name": ("produto", "nomeproduto", "product", "productname", "item"),
    "product_sku": ("sku", "codigoproduto", "productsku"),
    "quantity": ("quantidade", "qtd", "qty", "quantity"),
    "weight_kg": ("peso", "pesokg", "weight", "weightkg"),
    "payment_method": ("formadepagamento", "pagamento", "paymentmethod", "payment"),
    "sales_channel": ("canal", "canaldevenda", "saleschannel", "marketplace"),
    "store_name": ("loja", "nomedaloja", "store", "storename"),
    "status": ("status", "situacao", "statusdopedido"),
    "notes": ("observacoes", "obs", "notas", "notes", "anotacoesdocomprador", "anotacoesdovendedor"),
}

# Preset -> (field suggested when most sample values match, confidence, required match ratio)
VALUE_SHAPES: Tuple[Tuple[str, str, float, float], ...] = (
    ("email", "customer_email", 0.85, 0.8),
    ("tracking_code", "tracking_code", 0.8, 0.6),
    ("tax_id", "customer_document", 0.8, 0.8),
    ("postal_code", "delivery_zipcode", 0.75, 0.8),
    ("date", "order_date", 0.6, 0.8),
    ("phone", "customer_phone", 0.6, 0.8),
)


def normalize_column_name(name: str) -> str:
    """
    Normalize a column name for comparison.

    Examples:
        "Código de Rastreio" -> "codigoderastreio"
        "customer_email" -> "customeremail"
        "E-mail" -> "email"
    """
    normalized = unicodedata.normalize("NFKD", name or "").encode("ascii", "ignore").decode("ascii")
    normalized = normalized.lower()
    normalized = re.sub(r"[\s\-_]+", "", normalized)
    return re.sub(r"[^a-z0-9]", "", normalized)


def calculate_similarity(str1: str, str2: str) -> float:
    """Calculate similarity ratio between two strings (0.0 to 1.0)."""
    return SequenceMatcher(None, str1, str2).ratio()


@dataclass
class MappingSuggestion:
    column: str
    field: str
    confidence: float
    reasoning: str
    alternatives: List[Tuple[str, float]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "column": self.column,
            "field": self.field,
            "confidence": round(self.confidence, 2),
            "reasoning": self.reasoning,
            "alternatives": [{"field": key, "confidence": round(score, 2)} for key, score in self.alternatives],
        }


def _sample_values(rows: Sequence[RawRow], column: str) -> List[str]:
    values = []
    for row in rows:
        value = (row.get(column) or "").strip()
        if value:
            values.append(value)
            if len(values) >= SAMPLE_SIZE:
                break
    return values


def _shape_candidates(values: Sequence[str]) -> List[Tuple[str, float, str]]:
    if not values:
        return []
    candidates = []
    for preset, field_key, confidence, required_ratio in VALUE_SHAPES:
        matching = sum(1 for value in values if validate_with_preset(value, preset)[0])
        ratio = matching / len(values)
        if ratio >= required_ratio:
            candidates.append((field_key, confidence * ratio, f"{round(ratio * 100)}% of sample values look like {preset}"))
    return candidates


class MappingAdvisor:
    """
    Ranks canonical-field suggestions per column and remembers confirmed
    mappings. Learned patterns live in the order store when one is given.
    """

    def __init__(self, store=None):
        self.store = store
        self._patterns: Optional[Dict[Tuple[str, str], Dict[str, Any]]] = None
        self._lock = threading.Lock()

    def _load_patterns(self) -> Dict[Tuple[str, str], Dict[str, Any]]:
        with self._lock:
            if self._patterns is None:
                loaded = self.store.load_mapping_patterns() if self.store is not None else []
                self._patterns = {
                    (pattern["column_pattern"], pattern["field"]): dict(pattern) for pattern in loaded
                }
            return self._patterns

    def learned_patterns(self) -> List[Dict[str, Any]]:
        return [dict(pattern) for pattern in self._load_patterns().values()]

    def rank(self, column: str, values: Sequence[str]) -> List[Tuple[str, float, str]]:
        """All candidate fields for one column, best first."""
        normalized = normalize_column_name(column)
        scores: Dict[str, Tuple[float, str]] = {}

        def consider(field_key: str, confidence: float, reason: str) -> None:
            if field_key not in FIELDS_BY_KEY:
                return
            current = scores.get(field_key)
            if current is None or confidence > current[0]:
                scores[field_key] = (min(confidence, 1.0), reason)

        for (pattern_column, field_key), pattern in self._load_patterns().items():
            if pattern_column == normalized:
                consider(field_key, float(pattern["confidence"]),
                         f"learned from {pattern.get('usage_count', 1)} confirmed mapping(s)")

        for field_key, synonyms in SYNONYMS.items():
            if normalized in synonyms:
                consider(field_key, 0.85, f"'{column}' is a common name for {field_label(field_key)}")

        for canonical in CANONICAL_FIELDS:
            similarity = max(
                calculate_similarity(normalized, normalize_column_name(canonical.key)),
                calculate_similarity(normalized, normalize_column_name(canonical.label)),
            )
            if similarity >= 0.6:
                consider(canonical.key, similarity * 0.9, f"name is {round(similarity * 100)}% similar")

        for field_key, confidence, reason in _shape_candidates(values):
            consider(field_key, confidence, reason)

        ranked = sorted(scores.items(), key=lambda item: (-item[1][0], item[0]))
        return [(field_key, confidence, reason) for field_key, (confidence, reason) in ranked]

    def suggest(self, headers: Sequence[str], rows: Sequence[RawRow]) -> List[MappingSuggestion]:
        """Best suggestion per column (columns without a confident candidate are skipped)."""
        suggestions = []
        for column in headers:
            ranked = self.rank(column, _sample_values(rows, column))
            if not ranked or ranked[0][1] < MIN_SUGGESTION_CONFIDENCE:
                continue
            field_key, confidence, reason = ranked[0]
            suggestions.append(MappingSuggestion(
                column=column,
                field=field_key,
                confidence=confidence,
                reasoning=reason,
                alternatives=[(key, score) for key, score, _ in ranked[1:3]],
            ))
        return suggestions

    def initial_mapping(self, headers: Sequence[str], rows: Sequence[RawRow]) -> Tuple[FieldMapping, List[MappingSuggestion]]:
        """Starting mapping: each field goes to its most confident column."""
        suggestions = sorted(self.suggest(headers, rows), key=lambda item: -item.confidence)
        assignments: Dict[str, str] = {}
        taken = set()
        for suggestion in suggestions:
            if suggestion.field in taken:
                continue
            assignments[suggestion.column] = suggestion.field
            taken.add(suggestion.field)
        ordered = {column: assignments[column] for column in headers if column in assignments}
        return FieldMapping(ordered), suggestions

    def check(self, headers: Sequence[str], rows: Sequence[RawRow], mapping: FieldMapping) -> ValidatorResult:
        """
        Suggestions for columns the mapping leaves unassigned, limited to
        fields that are not mapped yet.
        """
        assigned_columns = set(mapping.assignments)
        mapped_fields = set(mapping.assignments.values())
        outcomes = []
        suggestions = []
        for suggestion in self.suggest([column for column in headers if column not in assigned_columns], rows):
            if suggestion.field in mapped_fields:
                continue
            suggestions.append(suggestion)
            outcomes.append(ValidationOutcome(
                item_id=suggestion.column,
                is_valid=True,
                kind=OutcomeKind.MAPPING_SUGGESTION,
                payload=suggestion.to_dict(),
                severity=Severity.INFO,
                message=(
                    f"Map '{suggestion.column}' to '{field_label(suggestion.field)}' "
                    f"({round(suggestion.confidence * 100)}% confidence: {suggestion.reasoning})"
                ),
                field=suggestion.field,
            ))
        return ValidatorResult(
            kind=OutcomeKind.MAPPING_SUGGESTION,
            outcomes=outcomes,
            summary={"suggestions": [suggestion.to_dict() for suggestion in suggestions]},
        )

    def learn_from_mapping(self, mapping: FieldMapping) -> List[Dict[str, Any]]:
        """
        Reinforce patterns for every confirmed assignment: new patterns start
        at 0.6 and each reuse adds 0.1, capped at 1.0.
        """
        patterns = self._load_patterns()
        touched = []
        with self._lock:
            for column, field_key in mapping.assignments.items():
                if field_key not in FIELDS_BY_KEY:
                    continue
                key = (normalize_column_name(column), field_key)
                if not key[0]:
                    continue
                pattern = patterns.get(key)
                if pattern is None:
                    pattern = {
                        "column_pattern": key[0],
                        "field": field_key,
                        "confidence": INITIAL_PATTERN_CONFIDENCE,
                        "usage_count": 1,
                    }
                    patterns[key] = pattern
                else:
                    pattern["confidence"] = round(min(float(pattern["confidence"]) + PATTERN_CONFIDENCE_STEP, 1.0), 2)
                    pattern["usage_count"] = int(pattern.get("usage_count", 0)) + 1
                touched.append(dict(pattern))

        if touched and self.store is not None:
            self.store.save_mapping_patterns(touched)
        logger.info("Learned %d mapping pattern(s)", len(touched))
        return touched


def compatible_templates(templates: Sequence[Mapping[str, Any]], headers: Sequence[str]) -> List[Mapping[str, Any]]:
    """Templates whose mapped columns are all present in ``headers``."""
    header_set = set(headers)
    return [
        template for template in templates
        if template.get("assignments") and set(template["assignments"]).issubset(header_set)
    ]


def apply_template(template: Mapping[str, Any], headers: Sequence[str]) -> Tuple[FieldMapping, List[MappingSuggestion]]:
    """Mapping from a template, restricted to present columns, with fixed template confidence."""
    header_set = set(headers)
    assignments = {
        column: field_key for column, field_key in template.get("assignments", {}).items()
        if column in header_set and field_key
    }
    suggestions = [
        MappingSuggestion(column=column, field=field_key, confidence=TEMPLATE_CONFIDENCE,
                          reasoning=f"from template '{template.get('name')}'")
        for column, field_key in assignments.items()
    ]
    ordered = {column: assignments[column] for column in headers if column in assignments}
    return FieldMapping(ordered), suggestions
