"""
Unit tests for the lenient type converters used by every mapper.

Version: 1.0.0
"""
import pytest

from platform_bridge.utils.type_converters import (
    amount_of,
    split_tags,
    to_float,
    to_id,
    to_int,
    to_iso8601,
    to_money,
    to_optional_money,
    to_quantity,
    to_str,
)

pytestmark = pytest.mark.unit


class TestNumbers:

    @pytest.mark.parametrize(
        "value,expected",
        [("12.50", 12.5), (3, 3.0), (None, 0.0), ("abc", 0.0), (True, 0.0), ("nan", 0.0), ("inf", 0.0)],
    )
    def test_to_float(self, value, expected):
        assert to_float(value) == expected

    def test_to_money_clamps_and_rounds(self):
        assert to_money("-4.00") == 0.0
        assert to_money("19.999") == 20.0
        assert to_money("") == 0.0

    def test_to_optional_money(self):
        assert to_optional_money(None) is None
        assert to_optional_money("") is None
        assert to_optional_money("0") == 0.0

    def test_to_int(self):
        assert to_int("7") == 7
        assert to_int("7.9") == 7
        assert to_int(None) == 0
        assert to_int(False) == 0

    def test_to_quantity_floor(self):
        assert to_quantity(0) == 1
        assert to_quantity("3") == 3

    def test_amount_of(self):
        assert amount_of({"Amount": "4.20"}) == 4.2
        assert amount_of({"value": "1.00"}, "value") == 1.0
        assert amount_of(None) == 0.0
        assert amount_of("2.5") == 2.5


class TestStrings:

    def test_to_str_and_id(self):
        assert to_str(None) == ""
        assert to_str(5) == "5"
        assert to_id(None) is None
        assert to_id("") is None
        assert to_id(123) == "123"

    def test_split_tags(self):
        assert split_tags("a, b,,c ") == ["a", "b", "c"]
        assert split_tags([{"name": "x"}, {"name": ""}, "y"]) == ["x", "y"]
        assert split_tags(None) == []


class TestDates:

    def test_iso_with_z(self):
        assert to_iso8601("2024-03-01T10:00:00Z") == "2024-03-01T10:00:00+00:00"

    def test_rfc2822(self):
        assert to_iso8601("Tue, 05 Mar 2024 10:00:00 +0000") == "2024-03-05T10:00:00+00:00"

    def test_epoch(self):
        assert to_iso8601(0) == "1970-01-01T00:00:00+00:00"

    def test_empty_and_unparseable(self):
        assert to_iso8601(None) is None
        assert to_iso8601("") is None
        assert to_iso8601("not a date") == "not a date"

    def test_out_of_range_epoch_kept_as_text(self):
        assert to_iso8601(10 ** 20) == str(10 ** 20)
        assert to_iso8601(float("nan")) == "nan"
