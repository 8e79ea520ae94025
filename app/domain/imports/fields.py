"""
Canonical order field catalogue.

Every import maps source columns onto these field keys. Three fields are
required; the rest are optional and only validated when mapped.
"""
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple


@dataclass(frozen=True)
class CanonicalField:
    key: str
    label: str
    required: bool = False
    # Preset name in app.domain.imports.validators, if values have a shape to check
    format_preset: Optional[str] = None
    # Fraction of non-empty values that must pass before the column is flagged
    pass_threshold: float = 0.8
    # Hard format failures make the record invalid; soft ones only warn
    hard_format: bool = False
    # Points added to the quality score when the mapped column passes its format check
    format_points: int = 10


CANONICAL_FIELDS: Tuple[CanonicalField, ...] = (
    CanonicalField("tracking_code", "Tracking code", required=True, format_preset="tracking_code",
                   pass_threshold=0.6, hard_format=True, format_points=15),
    CanonicalField("customer_name", "Customer name", required=True),
    CanonicalField("customer_email", "Customer email", required=True, format_preset="email",
                   pass_threshold=0.8, hard_format=True),
    CanonicalField("customer_phone", "Customer phone", format_preset="phone", pass_threshold=0.7),
    CanonicalField("customer_document", "Customer tax id (CPF/CNPJ)", format_preset="tax_id"),
    CanonicalField("carrier", "Carrier"),
    CanonicalField("order_number", "Order number"),
    CanonicalField("order_value", "Order value", format_preset="currency"),
    CanonicalField("shipping_cost", "Shipping cost", format_preset="currency", format_points=0),
    CanonicalField("discount", "Discount", format_preset="currency", format_points=0),
    CanonicalField("currency", "Currency"),
    CanonicalField("order_date", "Order date", format_preset="date"),
    CanonicalField("estimated_delivery", "Estimated delivery", format_preset="date"),
    CanonicalField("shipped_at", "Shipped at", format_preset="date", format_points=0),
    CanonicalField("delivered_at", "Delivered at", format_preset="date", format_points=0),
    CanonicalField("destination", "Destination"),
    CanonicalField("delivery_address", "Delivery street"),
    CanonicalField("delivery_number", "Delivery number"),
    CanonicalField("delivery_complement", "Delivery complement"),
    CanonicalField("delivery_neighborhood", "Delivery neighborhood"),
    CanonicalField("delivery_city", "Delivery city"),
    CanonicalField("delivery_state", "Delivery state"),
    CanonicalField("delivery_zipcode", "Delivery postal code", format_preset="postal_code"),
    CanonicalField("delivery_country", "Delivery country"),
    CanonicalField("product_name", "Product name"),
    CanonicalField("product_sku", "Product SKU"),
    CanonicalField("quantity", "Quantity", format_preset="quantity", format_points=5),
    CanonicalField("weight_kg", "Weight (kg)"),
    CanonicalField("payment_method", "Payment method"),
    CanonicalField("sales_channel", "Sales channel"),
    CanonicalField("store_name", "Store name"),
    CanonicalField("status", "Order status"),
    CanonicalField("notes", "Notes"),
)

FIELDS_BY_KEY: Dict[str, CanonicalField] = {field.key: field for field in CANONICAL_FIELDS}

REQUIRED_FIELDS: List[str] = [field.key for field in CANONICAL_FIELDS if field.required]


def get_field(key: str) -> Optional[CanonicalField]:
    return FIELDS_BY_KEY.get(key)


def field_label(key: str) -> str:
    field = FIELDS_BY_KEY.get(key)
    return field.label if field else key
