"""Unit tests for the conversion event normalizer.

WHAT:
    Tests PII hashing, null filtering, client IP resolution, value
    resolution and CAPI payload construction.

WHY:
    Meta silently drops or misattributes events with empty identity
    fields, unhashed PII or wrong values; these are pure functions and
    cheap to pin down exactly.

REFERENCES:
    - capi_bridge/services/conversion_normalizer.py (module under test)
"""

import hashlib
from decimal import Decimal
from unittest.mock import patch

import pytest
from starlette.datastructures import Headers

from capi_bridge.exceptions import InsufficientIdentifiersError
from capi_bridge.services.conversion_normalizer import (
    LineItem,
    PaymentSession,
    assemble_event,
    build_custom_data,
    build_envelope,
    build_product_custom_data,
    build_user_data,
    hash_pii,
    omit_empty,
    resolve_client_ip,
    resolve_value,
)


def sha256(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


def make_session(**overrides) -> PaymentSession:
    fields = {
        "id": "cs_test_123",
        "payment_status": "succeeded",
        "customer_email": "A@B.com",
        "amount_total": 2500,
        "currency": "usd",
        "line_items": [LineItem(product_id="p1", quantity=1, unit_amount=2500)],
    }
    fields.update(overrides)
    return PaymentSession(**fields)


class TestHashPII:
    """Test PII hashing contract."""

    @pytest.mark.parametrize("value", [None, "", "   "])
    def test_empty_values_return_none(self, value):
        """WHAT: Empty input is never hashed.
        WHY: A hash of "" is a present-but-empty signal to Meta.
        """
        assert hash_pii(value) is None

    def test_trims_and_lowercases_before_digest(self):
        assert hash_pii(" Foo@Bar.COM ") == hash_pii("foo@bar.com")
        assert hash_pii("foo@bar.com") == sha256("foo@bar.com")

    def test_digest_is_lowercase_hex(self):
        digest = hash_pii("someone@example.com")
        assert len(digest) == 64
        assert digest == digest.lower()


class TestOmitEmpty:

    def test_drops_none_and_empty_string(self):
        assert omit_empty({"a": None, "b": "", "c": "x"}) == {"c": "x"}

    def test_keeps_falsy_non_empty_values(self):
        """WHAT: 0, False and empty lists are real values.
        WHY: num_items=0 is meaningful and must not disappear.
        """
        assert omit_empty({"n": 0, "f": False, "l": []}) == {"n": 0, "f": False, "l": []}


class TestResolveClientIp:

    def test_first_forwarded_for_entry_wins(self):
        headers = {"x-forwarded-for": "1.2.3.4, 5.6.7.8", "x-real-ip": "9.9.9.9"}
        assert resolve_client_ip(headers) == "1.2.3.4"

    def test_falls_back_to_real_ip(self):
        assert resolve_client_ip({"x-real-ip": "9.9.9.9"}) == "9.9.9.9"

    def test_none_when_no_headers(self):
        assert resolve_client_ip({}) is None

    def test_blank_forwarded_for_falls_through(self):
        assert resolve_client_ip({"x-forwarded-for": " ", "x-real-ip": "9.9.9.9"}) == "9.9.9.9"

    def test_starlette_headers_are_case_insensitive(self):
        headers = Headers({"X-Forwarded-For": "10.0.0.1,10.0.0.2"})
        assert resolve_client_ip(headers) == "10.0.0.1"


class TestResolveValue:

    def test_uses_amount_total(self):
        assert resolve_value(make_session(amount_total=1999)) == Decimal("19.99")

    def test_falls_back_to_line_items(self):
        session = make_session(
            amount_total=None,
            line_items=[
                LineItem(product_id="a", quantity=2, unit_amount=500),
                LineItem(product_id="b", quantity=1, unit_amount=1000),
            ],
        )
        assert resolve_value(session) == Decimal("20.00")

    def test_none_when_both_absent(self):
        """WHAT: Unresolvable value is None, not 0.
        WHY: Reporting a zero-value purchase corrupts ROAS.
        """
        assert resolve_value(make_session(amount_total=None, line_items=[])) is None

    def test_zero_total_is_a_real_value(self):
        assert resolve_value(make_session(amount_total=0)) == Decimal("0")


class TestBuildUserData:

    def test_all_identifiers_empty_raises(self):
        with pytest.raises(InsufficientIdentifiersError):
            build_user_data(email="", phone=None, fbc="", fbp=None, client_ip="1.2.3.4")

    def test_fbclid_alone_is_not_an_identity_signal(self):
        with pytest.raises(InsufficientIdentifiersError):
            build_user_data(fbclid="IwAR123")

    def test_only_fbp_succeeds(self):
        assert build_user_data(fbp="fb.1.1.123") == {"fbp": "fb.1.1.123"}

    def test_hashes_pii_and_keeps_browser_ids_raw(self):
        user_data = build_user_data(
            email="A@B.com",
            name=" Ada ",
            phone="+1 555 0100",
            fbc="fb.1.1.abc",
            fbclid="IwAR123",
            client_ip="1.2.3.4",
            client_user_agent="Mozilla/5.0",
        )
        assert user_data["em"] == sha256("a@b.com")
        assert user_data["fn"] == sha256("ada")
        assert user_data["ph"] == sha256("+1 555 0100")
        assert user_data["fbc"] == "fb.1.1.abc"
        assert user_data["fbclid"] == "IwAR123"
        assert user_data["client_ip_address"] == "1.2.3.4"
        assert user_data["client_user_agent"] == "Mozilla/5.0"

    def test_never_contains_empty_values(self):
        user_data = build_user_data(email="a@b.com", name="", phone=None, fbp="", client_user_agent="")
        assert set(user_data) == {"em"}
        assert all(value not in (None, "") for value in user_data.values())


class TestBuildCustomData:

    def test_purchase_scenario(self):
        custom_data = build_custom_data(make_session())
        assert custom_data == {
            "currency": "USD",
            "value": 25.0,
            "contents": [{"id": "p1", "quantity": 1, "item_price": 25.0}],
            "content_type": "product",
            "content_ids": ["p1"],
            "num_items": 1,
        }

    def test_drops_contents_without_product_id(self):
        session = make_session(line_items=[
            LineItem(product_id="p1", quantity=1, unit_amount=100),
            LineItem(product_id=None, quantity=3, unit_amount=200),
            LineItem(product_id="p1", quantity=2, unit_amount=100),
        ])
        custom_data = build_custom_data(session)
        assert [c["id"] for c in custom_data["contents"]] == ["p1", "p1"]
        assert custom_data["content_ids"] == ["p1", "p1"]
        assert custom_data["num_items"] == 6

    def test_no_line_items(self):
        custom_data = build_custom_data(make_session(line_items=[]))
        assert custom_data["num_items"] == 0
        assert custom_data["contents"] == []
        assert custom_data["content_ids"] == []

    def test_value_omitted_when_unresolved(self):
        custom_data = build_custom_data(make_session(amount_total=None, line_items=[]))
        assert "value" not in custom_data

    def test_item_price_omitted_without_unit_amount(self):
        session = make_session(line_items=[LineItem(product_id="p1", quantity=1, unit_amount=None)])
        assert build_custom_data(session)["contents"] == [{"id": "p1", "quantity": 1}]


class TestBuildProductCustomData:

    def test_single_product_shape(self):
        assert build_product_custom_data("eur", Decimal("9.5"), "Poster") == {
            "currency": "EUR",
            "value": 9.5,
            "content_type": "product",
            "content_name": "Poster",
            "content_ids": ["Poster"],
        }

    def test_without_product_name(self):
        custom_data = build_product_custom_data("usd", Decimal("1"))
        assert "content_name" not in custom_data
        assert "content_ids" not in custom_data


class TestAssembleEvent:

    @patch("capi_bridge.services.conversion_normalizer.time.time", return_value=1719830400.9)
    def test_event_time_is_whole_seconds_at_assembly(self, mock_time):
        event = assemble_event("Purchase", {"fbp": "x"})
        assert event["event_time"] == 1719830400

    def test_optional_keys_omitted(self):
        event = assemble_event("Lead", {"fbp": "x"}, custom_data={})
        assert event["action_source"] == "website"
        for key in ("test_event_code", "event_id", "event_source_url", "custom_data"):
            assert key not in event

    def test_optional_keys_present_when_given(self):
        event = assemble_event(
            "Purchase",
            {"fbp": "x"},
            custom_data={"currency": "USD"},
            event_source_url="https://shop.example.com/thanks",
            test_event_code="TEST123",
            event_id="cs_test_123",
        )
        assert event["test_event_code"] == "TEST123"
        assert event["event_id"] == "cs_test_123"
        assert event["event_source_url"] == "https://shop.example.com/thanks"
        assert event["custom_data"] == {"currency": "USD"}


def test_build_envelope_only_sets_test_code_when_given():
    assert build_envelope([{"event_name": "Lead"}]) == {"data": [{"event_name": "Lead"}]}
    assert build_envelope([], "TEST1")["test_event_code"] == "TEST1"
