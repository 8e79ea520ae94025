"""
Tests for mapping suggestions, learned patterns and mapping templates.
"""
import pytest

from app.domain.imports.models import FieldMapping, OutcomeKind, Severity, to_raw_rows
from app.domain.imports.suggestions import (
    MappingAdvisor,
    apply_template,
    compatible_templates,
    normalize_column_name,
)


@pytest.mark.parametrize("name,expected", [
    ("Código de Rastreio", "codigoderastreio"),
    ("customer_email", "customeremail"),
    ("E-mail", "email"),
    ("  Data  Pedido ", "datapedido"),
])
def test_normalize_column_name(name, expected):
    assert normalize_column_name(name) == expected


class TestSuggestions:
    def test_synonym_beats_similarity(self):
        ranked = MappingAdvisor().rank("E-mail", ["ana@example.com"])
        assert ranked[0][0] == "customer_email"
        assert ranked[0][1] == pytest.approx(0.85)

    def test_value_shape_suggests_field_for_unknown_header(self):
        rows = to_raw_rows([{"Coluna 7": f"SM{i:010d}BR"} for i in range(5)])
        suggestions = MappingAdvisor().suggest(["Coluna 7"], rows)
        assert [(s.column, s.field) for s in suggestions] == [("Coluna 7", "tracking_code")]

    def test_columns_without_confident_candidate_are_skipped(self):
        rows = to_raw_rows([{"zzqx": "foo"}])
        assert MappingAdvisor().suggest(["zzqx"], rows) == []

    def test_initial_mapping_assigns_each_field_once(self, headers, make_rows, full_mapping):
        mapping, suggestions = MappingAdvisor().initial_mapping(headers, to_raw_rows(make_rows(5)))
        assert mapping == full_mapping
        assert len(suggestions) == len(headers)

    def test_check_only_suggests_unmapped_columns_for_unmapped_fields(self, headers, make_rows, full_mapping):
        rows = to_raw_rows(make_rows(5))
        advisor = MappingAdvisor()

        result = advisor.check(headers, rows, full_mapping.with_assignment("Email", None))
        assert [outcome.item_id for outcome in result.outcomes] == ["Email"]
        outcome = result.outcomes[0]
        assert outcome.kind == OutcomeKind.MAPPING_SUGGESTION
        assert outcome.is_valid
        assert outcome.severity == Severity.INFO
        assert outcome.field == "customer_email"

        remapped = full_mapping.with_assignment("Email", None).with_assignment("Pedido", "customer_email")
        assert advisor.check(headers, rows, remapped).outcomes == []


class TestLearning:
    def test_confidence_starts_at_point_six_and_grows(self, fake_store):
        advisor = MappingAdvisor(fake_store)
        mapping = FieldMapping({"Obs Vendedor": "notes"})

        first = advisor.learn_from_mapping(mapping)
        second = advisor.learn_from_mapping(mapping)

        assert first[0]["confidence"] == pytest.approx(0.6)
        assert second[0]["confidence"] == pytest.approx(0.7)
        assert second[0]["usage_count"] == 2
        assert fake_store.patterns[0]["column_pattern"] == "obsvendedor"

    def test_confidence_is_capped(self):
        advisor = MappingAdvisor()
        mapping = FieldMapping({"Obs Vendedor": "notes"})
        for _ in range(8):
            learned = advisor.learn_from_mapping(mapping)
        assert learned[0]["confidence"] == 1.0

    def test_learned_patterns_are_loaded_from_store(self, fake_store):
        fake_store.patterns = [{"column_pattern": "obsvendedor", "field": "notes", "confidence": 0.9, "usage_count": 4}]
        ranked = MappingAdvisor(fake_store).rank("Obs Vendedor", [])
        assert ranked[0][0] == "notes"
        assert ranked[0][1] == pytest.approx(0.9)

    def test_unknown_fields_are_not_learned(self):
        assert MappingAdvisor().learn_from_mapping(FieldMapping({"X": "fax_number"})) == []


class TestTemplates:
    TEMPLATES = [
        {"id": "1", "name": "loja-a", "assignments": {"Rastreio": "tracking_code", "Email": "customer_email"}},
        {"id": "2", "name": "loja-b", "assignments": {"Tracking": "tracking_code"}},
        {"id": "3", "name": "empty", "assignments": {}},
    ]

    def test_compatible_when_all_columns_present(self, headers):
        assert [t["name"] for t in compatible_templates(self.TEMPLATES, headers)] == ["loja-a"]

    def test_apply_template_uses_fixed_confidence(self, headers):
        mapping, suggestions = apply_template(self.TEMPLATES[0], headers)
        assert mapping.assignments == {"Rastreio": "tracking_code", "Email": "customer_email"}
        assert {s.confidence for s in suggestions} == {0.9}
        assert all("loja-a" in s.reasoning for s in suggestions)
