"""Tests for phone/channel normalization: accepted shapes, round-trips, provider aliases."""
import pytest

from checkout.services.payments.errors import InvalidPhoneFormat
from checkout.services.payments.phone import (
    map_provider_to_channel,
    mask_phone,
    normalize_local,
    phone_variants,
    subscriber_number,
    to_country_code,
    to_plus_country_code,
)


@pytest.mark.parametrize(
    "raw",
    ["0712345678", "712345678", "255712345678", "+255712345678", "+255 712 345 678", "0712-345-678"],
)
def test_normalize_local_accepted_shapes(raw):
    assert normalize_local(raw) == "0712345678"


@pytest.mark.parametrize("raw", ["", "12345", "07123456789", "254712345678", "abc", None])
def test_normalize_local_rejects_other_shapes(raw):
    with pytest.raises(InvalidPhoneFormat):
        normalize_local(raw)


def test_international_forms():
    assert to_country_code("0712345678") == "255712345678"
    assert to_plus_country_code("0712345678") == "+255712345678"
    assert to_country_code("+255712345678") == "255712345678"


def test_international_requires_nine_digits():
    with pytest.raises(InvalidPhoneFormat):
        to_country_code("07123")


@pytest.mark.parametrize("raw", ["0712345678", "712345678", "255712345678", "+255712345678"])
def test_all_forms_round_trip_to_same_subscriber(raw):
    expected = subscriber_number(raw)
    for _, value in phone_variants(raw):
        assert subscriber_number(value) == expected
        assert normalize_local(value) == normalize_local(raw)


def test_phone_variants_order():
    assert [name for name, _ in phone_variants("0712345678")] == ["local", "country_code", "plus_country_code"]


@pytest.mark.parametrize(
    "label, channel",
    [
        ("M-Pesa", "vodacom"),
        ("Vodacom M-Pesa", "vodacom"),
        ("MPESA", "vodacom"),
        ("Tigo Pesa", "tigo"),
        ("Mixx by Yas", "tigo"),
        ("Airtel Money", "airtel"),
        ("HaloPesa", "halotel"),
        ("T-Pesa", "ttcl"),
        ("TTCL", "ttcl"),
        ("Some Bank", None),
        ("", None),
        (None, None),
    ],
)
def test_map_provider_to_channel(label, channel):
    assert map_provider_to_channel(label) == channel


def test_mask_phone():
    assert mask_phone("0712345678") == "0712***678"
    assert mask_phone("+255712345678") == "+255***678"
    assert mask_phone("0712") == "***"
