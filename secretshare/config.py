import os
import socket

import yaml

from secretshare.protocol.errors import ConfigError

DEFAULT_CONFIG_PATH = "config.yaml"


def _defaults():
    return {
        "peer_name": socket.gethostname().split(".")[0] or "secretshare",
        "listen_port": 0,
        "download_dir": ".",
        "broadcast": True,
        "discovery_timeout": 3,
        "gpg_binary": "gpg",
        "gnupg_home": None,
        "max_key_block_bytes": 64 * 1024,
        "max_transfer_bytes": 1024 * 1024 * 1024,
        "read_timeout": None,
    }


# key -> (accepted types, may be None, validator)
_SCHEMA = {
    "peer_name": ((str,), False, lambda v: bool(v.strip())),
    "listen_port": ((int,), False, lambda v: 0 <= v <= 65535),
    "download_dir": ((str,), False, lambda v: bool(v)),
    "broadcast": ((bool,), False, None),
    "discovery_timeout": ((int, float), False, lambda v: v > 0),
    "gpg_binary": ((str,), False, lambda v: bool(v)),
    "gnupg_home": ((str,), True, None),
    "max_key_block_bytes": ((int,), False, lambda v: v > 0),
    "max_transfer_bytes": ((int,), False, lambda v: v > 0),
    "read_timeout": ((int, float), True, lambda v: v > 0),
}


def validate_config(config):
    for key, value in config.items():
        if key not in _SCHEMA:
            raise ConfigError(f"Unknown configuration key: {key}")
        types, nullable, check = _SCHEMA[key]
        if value is None:
            if nullable:
                continue
            raise ConfigError(f"'{key}' must not be empty")
        # bool is an int subclass; only accept it where a bool is expected
        if isinstance(value, bool) and bool not in types:
            raise ConfigError(f"'{key}' has invalid type bool")
        if not isinstance(value, types):
            raise ConfigError(f"'{key}' has invalid type {type(value).__name__}")
        if check is not None and not check(value):
            raise ConfigError(f"'{key}' has invalid value {value!r}")
    return config


def load_config(path=None):
    """
    Load the YAML configuration and overlay it on the defaults.

    With no path, ``config.yaml`` in the working directory is used when present.
    An explicitly named file must exist.
    """
    config = _defaults()
    explicit = path is not None
    path = path or DEFAULT_CONFIG_PATH

    if not os.path.exists(path):
        if explicit:
            raise ConfigError(f"Configuration file not found: {path}")
        return config

    try:
        with open(path, "r") as f:
            data = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as e:
        raise ConfigError(f"Could not read configuration {path}: {e}") from e

    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ConfigError(f"Configuration {path} must be a mapping")

    config.update(validate_config(data))
    return config
