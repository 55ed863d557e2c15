"""
Configuration for the UDP redirector.

Defaults live in `DEFAULTS`; `build_config` layers `UDP_REDIRECT_<KEY>`
environment variables and then explicit overrides (usually the command line)
on top, then validates the result. The forwarding core only ever sees validated configs.
"""

import os
from ipaddress import IPv4Address
from typing import Any, Dict, Mapping, Optional


class ConfigError(ValueError):
    """Raised when a configuration value is missing or invalid."""


ENV_PREFIX = "UDP_REDIRECT_"


DEFAULTS: Dict[str, Any] = {
    # Listen endpoint (receives from the initiating peer)
    "LISTEN_ADDRESS": None,      # None -> any address
    "LISTEN_PORT": None,         # required
    "LISTEN_INTERFACE": None,

    # Connect peer; CONNECT_HOST wins over CONNECT_ADDRESS when both are given
    "CONNECT_ADDRESS": None,
    "CONNECT_HOST": None,
    "CONNECT_PORT": None,        # required

    # Send endpoint (local socket used to reach the connect peer)
    "SEND_ADDRESS": None,
    "SEND_PORT": 0,              # 0 -> OS chooses
    "SEND_INTERFACE": None,

    # Acceptance policy
    "LISTEN_STRICT": False,
    "CONNECT_STRICT": False,

    # Fixed sender; setting both implies LISTEN_STRICT
    "LISTEN_SENDER_ADDRESS": None,
    "LISTEN_SENDER_PORT": None,

    # Ignore harmless recvfrom/sendto errors instead of exiting
    "IGNORE_ERRORS": True,

    # Periodic statistics display
    "STATS": False,
    "STATS_INTERVAL_S": 60.0,

    # Bounded readiness wait; also bounds statistics display latency
    "POLL_TIMEOUT_S": 1.0,
}


# Expected type for each key; "opt" variants also accept None.
_KEY_TYPES = {
    "LISTEN_ADDRESS": "opt_str",
    "LISTEN_PORT": "int",
    "LISTEN_INTERFACE": "opt_str",
    "CONNECT_ADDRESS": "opt_str",
    "CONNECT_HOST": "opt_str",
    "CONNECT_PORT": "int",
    "SEND_ADDRESS": "opt_str",
    "SEND_PORT": "int",
    "SEND_INTERFACE": "opt_str",
    "LISTEN_STRICT": "bool",
    "CONNECT_STRICT": "bool",
    "LISTEN_SENDER_ADDRESS": "opt_str",
    "LISTEN_SENDER_PORT": "opt_int",
    "IGNORE_ERRORS": "bool",
    "STATS": "bool",
    "STATS_INTERVAL_S": "float",
    "POLL_TIMEOUT_S": "float",
}

_ADDRESS_KEYS = ("LISTEN_ADDRESS", "CONNECT_ADDRESS", "SEND_ADDRESS", "LISTEN_SENDER_ADDRESS")

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off"}


def _parse_env_value(key: str, raw: str) -> Any:
    kind = _KEY_TYPES[key]
    text = raw.strip()
    if kind.startswith("opt_") and text == "":
        return None
    try:
        if kind in ("int", "opt_int"):
            return int(text)
        if kind == "float":
            return float(text)
        if kind == "bool":
            lowered = text.lower()
            if lowered in _TRUE:
                return True
            if lowered in _FALSE:
                return False
            raise ValueError(f"invalid boolean literal: {raw}")
        return text
    except ValueError:
        raise ConfigError(f"Invalid value for {ENV_PREFIX}{key}: {raw}")


def apply_env_overrides(cfg: Dict[str, Any], environ: Optional[Mapping[str, str]] = None) -> Dict[str, Any]:
    """Apply UDP_REDIRECT_<KEY> environment overrides to a copy of `cfg`."""
    env = os.environ if environ is None else environ
    result = dict(cfg)
    for key in _KEY_TYPES:
        env_var = ENV_PREFIX + key
        if env_var in env:
            result[key] = _parse_env_value(key, env[env_var])
    return result


def _check_port(cfg: Dict[str, Any], key: str, *, allow_zero: bool) -> None:
    port = cfg[key]
    low = 0 if allow_zero else 1
    if not (low <= port <= 65535):
        raise ConfigError(f"CONFIG[{key}] must be a valid port ({low}-65535), got {port}")


def validate_config(cfg: Dict[str, Any]) -> None:
    """
    Ensure all keys exist with correct types and ranges.
    Raise ConfigError("<reason>") on any violation.
    """
    missing = set(_KEY_TYPES) - set(cfg)
    if missing:
        raise ConfigError(f"CONFIG missing keys: {', '.join(sorted(missing))}")

    if cfg["LISTEN_PORT"] is None:
        raise ConfigError("Listen port not specified")
    if cfg["CONNECT_ADDRESS"] is None and cfg["CONNECT_HOST"] is None:
        raise ConfigError("Connect host or address not specified")
    if cfg["CONNECT_PORT"] is None:
        raise ConfigError("Connect port not specified")

    for key, kind in _KEY_TYPES.items():
        value = cfg[key]
        if kind.startswith("opt_") and value is None:
            continue
        base = kind.replace("opt_", "")
        if base == "bool":
            ok = isinstance(value, bool)
        elif base == "int":
            ok = isinstance(value, int) and not isinstance(value, bool)
        elif base == "float":
            ok = isinstance(value, (int, float)) and not isinstance(value, bool)
        else:
            ok = isinstance(value, str) and value != ""
        if not ok:
            raise ConfigError(f"CONFIG[{key}] must be {base}, got {value!r}")

    _check_port(cfg, "LISTEN_PORT", allow_zero=False)
    _check_port(cfg, "CONNECT_PORT", allow_zero=False)
    _check_port(cfg, "SEND_PORT", allow_zero=True)

    for key in _ADDRESS_KEYS:
        if cfg[key] is None:
            continue
        try:
            IPv4Address(cfg[key])
        except ValueError as exc:
            raise ConfigError(f"CONFIG[{key}] must be a valid IPv4 address: {exc}")

    if cfg["CONNECT_ADDRESS"] is not None and IPv4Address(cfg["CONNECT_ADDRESS"]).is_unspecified:
        raise ConfigError("CONFIG[CONNECT_ADDRESS] must be a concrete address, not a wildcard")

    has_addr = cfg["LISTEN_SENDER_ADDRESS"] is not None
    has_port = cfg["LISTEN_SENDER_PORT"] is not None
    if has_addr != has_port:
        raise ConfigError("Listen sender address and port must either both be specified or none")
    if has_addr:
        if IPv4Address(cfg["LISTEN_SENDER_ADDRESS"]).is_unspecified:
            raise ConfigError("CONFIG[LISTEN_SENDER_ADDRESS] must be a concrete address, not a wildcard")
        _check_port(cfg, "LISTEN_SENDER_PORT", allow_zero=False)

    for key in ("STATS_INTERVAL_S", "POLL_TIMEOUT_S"):
        if cfg[key] <= 0:
            raise ConfigError(f"CONFIG[{key}] must be > 0, got {cfg[key]}")


def _normalize(cfg: Dict[str, Any]) -> Dict[str, Any]:
    result = dict(cfg)
    if result["LISTEN_SENDER_ADDRESS"] is not None:
        result["LISTEN_STRICT"] = True
    result["STATS_INTERVAL_S"] = float(result["STATS_INTERVAL_S"])
    result["POLL_TIMEOUT_S"] = float(result["POLL_TIMEOUT_S"])
    return result


def build_config(
    overrides: Optional[Mapping[str, Any]] = None,
    *,
    environ: Optional[Mapping[str, str]] = None,
) -> Dict[str, Any]:
    """Layer environment then explicit overrides on the defaults, then validate.

    Explicit overrides win over the environment. Entries whose value is None
    are ignored so argparse namespaces can be passed through without
    clobbering defaults or environment values.
    """
    cfg = apply_env_overrides(dict(DEFAULTS), environ)
    for key, value in (overrides or {}).items():
        if key not in DEFAULTS:
            raise ConfigError(f"Unknown configuration key: {key}")
        if value is not None:
            cfg[key] = value
    validate_config(cfg)
    return _normalize(cfg)
