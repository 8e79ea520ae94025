"""
Tests for carrier recognition and the postal code lookup client.
"""
from unittest.mock import MagicMock

import pytest
import requests

from app.domain.imports.cancellation import CancellationToken
from app.domain.imports.carriers import CarrierLookup
from app.domain.imports.errors import LookupUnavailableError
from app.domain.imports.lookups import PostalCodeLookup, normalize_postal_code
from app.domain.imports.models import CanonicalRecord, to_raw_rows
from app.domain.imports.pipeline import ValidationSuite


class TestCarrierLookup:
    @pytest.mark.parametrize("code,carrier", [
        ("SM1234567890BR", "correios"),
        ("AB123456789BR", "correios"),
        ("1Z999AA10123456784", "ups"),
        ("ME123456789012", "mercado-envios"),
        ("123456789012", "jadlog"),
        ("SPXBR1234567890", "shopee"),
    ])
    def test_identify(self, code, carrier):
        match = CarrierLookup().identify(code)
        assert match is not None
        assert match.carrier_id == carrier

    def test_unknown_code(self):
        assert CarrierLookup().identify("INVALID-001") is None
        assert CarrierLookup().identify("") is None

    def test_validate_codes_reports_unrecognized_codes(self):
        outcomes = CarrierLookup().validate_codes(["SM1234567890BR", "INVALID-001"])
        assert [outcome.is_valid for outcome in outcomes] == [True, False]
        assert outcomes[0].payload["carrier"] == "correios"
        assert "INVALID-001" in outcomes[1].message

    def test_declared_carrier_must_match_code(self):
        records = [
            CanonicalRecord(row_number=1, values={"tracking_code": "SM1234567890BR", "carrier": "Correios - SEDEX"}),
            CanonicalRecord(row_number=2, values={"tracking_code": "SM1234567890BR", "carrier": "Jadlog"}),
            CanonicalRecord(row_number=3, values={"tracking_code": "INVALID-001", "carrier": "Jadlog"}),
        ]
        outcomes = CarrierLookup().check_consistency(records)

        assert [outcome.item_id for outcome in outcomes] == ["row-2"]
        assert outcomes[0].field == "carrier"
        assert outcomes[0].payload["recognized"] == "correios"


def _response(status_code=200, body=None, invalid_json=False):
    response = MagicMock()
    response.status_code = status_code
    if invalid_json:
        response.json.side_effect = ValueError("not json")
    else:
        response.json.return_value = body or {}
    return response


class TestPostalCodeLookup:
    def test_normalize_postal_code(self):
        assert normalize_postal_code("01001-000") == "01001000"
        assert normalize_postal_code("1001-000") is None

    def test_found_code_is_cached(self):
        session = MagicMock()
        session.get.return_value = _response(body={"cep": "01001-000", "localidade": "São Paulo", "uf": "SP"})
        lookup = PostalCodeLookup("https://cep.example/ws", timeout_seconds=2, session=session)

        first = lookup.lookup("01001-000")
        second = lookup.lookup("01001000")

        assert first["exists"] is True
        assert first["city"] == "São Paulo"
        assert second == first
        session.get.assert_called_once_with("https://cep.example/ws/01001000/json/", timeout=2)

    def test_erro_flag_means_missing(self):
        session = MagicMock()
        session.get.return_value = _response(body={"erro": True})
        outcomes = PostalCodeLookup("https://cep.example/ws", session=session).validate_codes(["99999999"])

        assert outcomes[0].is_valid is False
        assert outcomes[0].payload["reason"] == "not_found"

    def test_client_error_means_missing(self):
        session = MagicMock()
        session.get.return_value = _response(status_code=400)
        assert PostalCodeLookup("https://cep.example/ws", session=session).lookup("12345678")["exists"] is False

    @pytest.mark.parametrize("response", [_response(status_code=503), _response(invalid_json=True)])
    def test_server_problems_raise_unavailable(self, response):
        session = MagicMock()
        session.get.return_value = response
        with pytest.raises(LookupUnavailableError):
            PostalCodeLookup("https://cep.example/ws", session=session).lookup("01001000")

    def test_transport_error_is_not_cached(self):
        session = MagicMock()
        session.get.side_effect = [requests.ConnectionError("down"), _response(body={"localidade": "Rio"})]
        lookup = PostalCodeLookup("https://cep.example/ws", session=session)

        with pytest.raises(LookupUnavailableError) as excinfo:
            lookup.lookup("20040020")
        assert excinfo.value.service == "Postal code"
        assert lookup.lookup("20040020")["exists"] is True

    def test_malformed_code_skips_request(self):
        session = MagicMock()
        assert PostalCodeLookup("https://cep.example/ws", session=session).lookup("abc")["exists"] is False
        session.get.assert_not_called()

    def test_cancelled_token_stops_lookups_within_a_chunk(self):
        token = CancellationToken()
        session = MagicMock()

        def fetch(url, timeout):
            token.cancel()
            return _response(body={"localidade": "São Paulo"})

        session.get.side_effect = fetch
        lookup = PostalCodeLookup("https://cep.example/ws", session=session)

        outcomes = lookup.validate_codes(["01001000", "20040002", "30130010"], token=token)

        assert session.get.call_count == 1
        assert [outcome.item_id for outcome in outcomes] == ["01001000"]

    def test_suite_cancellation_reaches_postal_lookups(self, test_settings, fake_store, make_rows, headers, full_mapping):
        token = CancellationToken()
        session = MagicMock()

        def fetch(url, timeout):
            token.cancel()
            return _response(body={"localidade": "São Paulo"})

        session.get.side_effect = fetch
        rows = make_rows(5)
        for number, row in enumerate(rows):
            row["CEP"] = f"0100{number}-000"
        config = test_settings.model_copy(update={"postal_lookup_enabled": True, "postal_lookup_chunk_size": 10})
        suite = ValidationSuite(
            store=fake_store,
            config=config,
            postal_lookup=PostalCodeLookup("https://cep.example/ws", session=session),
        )

        result = suite.run(to_raw_rows(rows), headers, full_mapping, token=token)

        assert result.cancelled
        assert session.get.call_count == 1
