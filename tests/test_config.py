"""Tests for configuration defaults, environment overrides and validation."""

import pytest

from udp_redirect.config import DEFAULTS, ConfigError, apply_env_overrides, build_config


def _base(**extra):
    cfg = {"LISTEN_PORT": 9000, "CONNECT_ADDRESS": "127.0.0.1", "CONNECT_PORT": 9001}
    cfg.update(extra)
    return cfg


class TestBuildConfig:
    def test_minimal_config_uses_defaults(self):
        cfg = build_config(_base(), environ={})
        assert cfg["LISTEN_PORT"] == 9000
        assert cfg["LISTEN_ADDRESS"] is None
        assert cfg["SEND_PORT"] == 0
        assert cfg["IGNORE_ERRORS"] is True
        assert cfg["LISTEN_STRICT"] is False
        assert cfg["CONNECT_STRICT"] is False
        assert cfg["STATS"] is False
        assert cfg["STATS_INTERVAL_S"] == 60.0
        assert set(cfg) == set(DEFAULTS)

    def test_none_overrides_keep_defaults(self):
        cfg = build_config(_base(IGNORE_ERRORS=None, SEND_PORT=None), environ={})
        assert cfg["IGNORE_ERRORS"] is True
        assert cfg["SEND_PORT"] == 0

    def test_fixed_sender_implies_listen_strict(self):
        cfg = build_config(
            _base(LISTEN_SENDER_ADDRESS="10.0.0.5", LISTEN_SENDER_PORT=5000, LISTEN_STRICT=False),
            environ={},
        )
        assert cfg["LISTEN_STRICT"] is True

    def test_connect_host_without_address(self):
        cfg = build_config(
            {"LISTEN_PORT": 9000, "CONNECT_HOST": "localhost", "CONNECT_PORT": 9001},
            environ={},
        )
        assert cfg["CONNECT_HOST"] == "localhost"
        assert cfg["CONNECT_ADDRESS"] is None

    def test_numeric_fields_become_floats(self):
        cfg = build_config(_base(STATS_INTERVAL_S=5, POLL_TIMEOUT_S=1), environ={})
        assert isinstance(cfg["STATS_INTERVAL_S"], float)
        assert isinstance(cfg["POLL_TIMEOUT_S"], float)

    def test_unknown_key_rejected(self):
        with pytest.raises(ConfigError, match="Unknown configuration key"):
            build_config(_base(BOGUS=1), environ={})


class TestValidation:
    def test_listen_port_required(self):
        with pytest.raises(ConfigError, match="Listen port not specified"):
            build_config({"CONNECT_ADDRESS": "127.0.0.1", "CONNECT_PORT": 9001}, environ={})

    def test_connect_target_required(self):
        with pytest.raises(ConfigError, match="Connect host or address not specified"):
            build_config({"LISTEN_PORT": 9000, "CONNECT_PORT": 9001}, environ={})

    def test_connect_port_required(self):
        with pytest.raises(ConfigError, match="Connect port not specified"):
            build_config({"LISTEN_PORT": 9000, "CONNECT_ADDRESS": "127.0.0.1"}, environ={})

    @pytest.mark.parametrize("key, value", [("LISTEN_PORT", 0), ("LISTEN_PORT", 70000), ("CONNECT_PORT", -1), ("SEND_PORT", 65536)])
    def test_port_ranges(self, key, value):
        with pytest.raises(ConfigError, match=key):
            build_config(_base(**{key: value}), environ={})

    @pytest.mark.parametrize("key", ["LISTEN_ADDRESS", "CONNECT_ADDRESS", "SEND_ADDRESS"])
    def test_invalid_addresses(self, key):
        with pytest.raises(ConfigError, match=key):
            build_config(_base(**{key: "example.invalid"}), environ={})

    def test_sender_pair_must_be_complete(self):
        with pytest.raises(ConfigError, match="both be specified"):
            build_config(_base(LISTEN_SENDER_ADDRESS="10.0.0.5"), environ={})
        with pytest.raises(ConfigError, match="both be specified"):
            build_config(_base(LISTEN_SENDER_PORT=5000), environ={})

    def test_connect_address_must_not_be_wildcard(self):
        with pytest.raises(ConfigError, match="CONNECT_ADDRESS.*wildcard"):
            build_config(_base(CONNECT_ADDRESS="0.0.0.0"), environ={})

    def test_sender_must_not_be_wildcard(self):
        with pytest.raises(ConfigError, match="wildcard"):
            build_config(_base(LISTEN_SENDER_ADDRESS="0.0.0.0", LISTEN_SENDER_PORT=5000), environ={})
        with pytest.raises(ConfigError, match="LISTEN_SENDER_PORT"):
            build_config(_base(LISTEN_SENDER_ADDRESS="10.0.0.5", LISTEN_SENDER_PORT=0), environ={})

    def test_wrong_types(self):
        with pytest.raises(ConfigError, match="LISTEN_STRICT"):
            build_config(_base(LISTEN_STRICT="yes"), environ={})
        with pytest.raises(ConfigError, match="LISTEN_PORT"):
            build_config(_base(LISTEN_PORT="9000"), environ={})

    @pytest.mark.parametrize("key", ["STATS_INTERVAL_S", "POLL_TIMEOUT_S"])
    def test_intervals_must_be_positive(self, key):
        with pytest.raises(ConfigError, match=key):
            build_config(_base(**{key: 0}), environ={})


class TestEnvOverrides:
    def test_env_overrides_types(self):
        env = {
            "UDP_REDIRECT_LISTEN_PORT": "9100",
            "UDP_REDIRECT_CONNECT_ADDRESS": "127.0.0.1",
            "UDP_REDIRECT_CONNECT_PORT": "9001",
            "UDP_REDIRECT_IGNORE_ERRORS": "off",
            "UDP_REDIRECT_STATS": "yes",
            "UDP_REDIRECT_STATS_INTERVAL_S": "5",
        }
        cfg = build_config(environ=env)
        assert cfg["LISTEN_PORT"] == 9100
        assert cfg["CONNECT_PORT"] == 9001
        assert cfg["IGNORE_ERRORS"] is False
        assert cfg["STATS"] is True
        assert cfg["STATS_INTERVAL_S"] == 5.0

    def test_explicit_overrides_win_over_env(self):
        cfg = build_config(_base(CONNECT_PORT=9001), environ={"UDP_REDIRECT_CONNECT_PORT": "9555"})
        assert cfg["CONNECT_PORT"] == 9001

    def test_env_cannot_disable_requested_strict_mode(self):
        cfg = build_config(_base(LISTEN_STRICT=True), environ={"UDP_REDIRECT_LISTEN_STRICT": "0"})
        assert cfg["LISTEN_STRICT"] is True

    def test_env_fills_unset_overrides(self):
        cfg = build_config(_base(LISTEN_STRICT=None), environ={"UDP_REDIRECT_LISTEN_STRICT": "on"})
        assert cfg["LISTEN_STRICT"] is True

    def test_empty_env_clears_optional_value(self):
        result = apply_env_overrides({"SEND_ADDRESS": "127.0.0.1"}, {"UDP_REDIRECT_SEND_ADDRESS": ""})
        assert result["SEND_ADDRESS"] is None

    @pytest.mark.parametrize(
        "var, value",
        [("UDP_REDIRECT_STATS", "maybe"), ("UDP_REDIRECT_LISTEN_PORT", "ninety"), ("UDP_REDIRECT_POLL_TIMEOUT_S", "x")],
    )
    def test_invalid_env_values(self, var, value):
        with pytest.raises(ConfigError, match=var):
            build_config(_base(), environ={var: value})

    def test_apply_env_does_not_mutate_input(self):
        original = dict(_base())
        apply_env_overrides(original, {"UDP_REDIRECT_LISTEN_PORT": "1"})
        assert original["LISTEN_PORT"] == 9000
