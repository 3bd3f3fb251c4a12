"""Unit tests for validation.py and quantity.py."""

from decimal import Decimal

import pytest

from models import RuntimeConfigRequest
from quantity import is_zero, parse_quantity, quantity_to_bytes
from validation import (
    RUNTIME_CONFIG_SCHEMA,
    validate_runtime_config_request,
    validate_spec_against_schema,
)


def make_request(ctrcfg, name="r"):
    return RuntimeConfigRequest(name, spec={"containerRuntimeConfig": ctrcfg})


class TestParseQuantity:
    """Tests for quantity parsing."""

    @pytest.mark.parametrize(
        "value,expected",
        [
            ("10", Decimal(10)),
            ("10G", Decimal(10**10)),
            ("512Mi", Decimal(512 * 2**20)),
            ("1e3", Decimal(1000)),
            ("1.5k", Decimal(1500)),
            ("-1", Decimal(-1)),
        ],
    )
    def test_valid(self, value, expected):
        assert parse_quantity(value) == expected

    @pytest.mark.parametrize("value", ["", "abc", "10 G", "8K", "1Gb"])
    def test_invalid(self, value):
        with pytest.raises(ValueError):
            parse_quantity(value)

    def test_to_bytes_rounds_up(self):
        assert quantity_to_bytes("1500m") == 2

    def test_is_zero(self):
        assert is_zero(None)
        assert is_zero("")
        assert is_zero("0G")
        assert not is_zero("1G")
        assert not is_zero("garbage")


class TestValidateSpecAgainstSchema:
    """Tests for the JSON Schema check."""

    def test_valid(self):
        assert validate_spec_against_schema({"logLevel": "debug"}, RUNTIME_CONFIG_SCHEMA) == (True, None)

    def test_unknown_field(self):
        valid, error = validate_spec_against_schema({"logLevl": "debug"}, RUNTIME_CONFIG_SCHEMA)
        assert not valid
        assert "logLevl" in error

    def test_error_carries_path(self):
        valid, error = validate_spec_against_schema({"pidsLimit": "many"}, RUNTIME_CONFIG_SCHEMA)
        assert not valid
        assert error.startswith("pidsLimit:")


class TestValidateRuntimeConfigRequest:
    """Tests for validate_runtime_config_request."""

    def test_valid(self):
        request = make_request(
            {"logLevel": "debug", "pidsLimit": 2048, "logSizeMax": "10Mi", "overlaySize": "10G"}
        )
        assert validate_runtime_config_request(request) == (True, None)

    def test_reserved_name(self):
        valid, error = validate_runtime_config_request(make_request({"logLevel": "debug"}, name="image"))
        assert not valid
        assert "reserved" in error

    def test_empty_overrides(self):
        valid, error = validate_runtime_config_request(make_request({}))
        assert not valid
        assert "should not be empty" in error

    def test_malformed_quantity(self):
        valid, error = validate_runtime_config_request(make_request({"overlaySize": "lots"}))
        assert not valid
        assert "overlaySize" in error

    @pytest.mark.parametrize("pids", [-1, 1, 19])
    def test_pids_limit_too_small(self, pids):
        valid, error = validate_runtime_config_request(make_request({"pidsLimit": pids}))
        assert not valid
        assert "PidsLimit" in error

    def test_pids_limit_minimum_accepted(self):
        assert validate_runtime_config_request(make_request({"pidsLimit": 20}))[0]

    def test_log_size_at_minimum_rejected(self):
        valid, error = validate_runtime_config_request(make_request({"logSizeMax": "8Ki"}))
        assert not valid
        assert "8K" in error

    def test_log_size_negative(self):
        valid, error = validate_runtime_config_request(make_request({"logSizeMax": "-1"}))
        assert not valid
        assert "negative" in error

    def test_overlay_size_negative(self):
        valid, error = validate_runtime_config_request(make_request({"overlaySize": "-1G"}))
        assert not valid
        assert "negative" in error

    def test_unknown_log_level(self):
        valid, error = validate_runtime_config_request(make_request({"logLevel": "trace"}))
        assert not valid
        assert "LogLevel" in error
