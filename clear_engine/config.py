# clear_engine/config.py

"""
Helpers for the string-pair configuration every component accepts.

Components are configured through `set_param(name, value)` with untyped
string values. This module converts those strings and reads YAML
configuration of the form:

    # comment
    batch_size: 100
    path_img: data/train-images-idx3-ubyte
    "lr:schedule": expdecay
"""

import logging
from typing import Iterable, List, Tuple

import yaml

from .errors import ConfigError

_TRUE_STRINGS = ("1", "true", "yes", "on")
_FALSE_STRINGS = ("0", "false", "no", "off")


def parse_int(name: str, value) -> int:
    """Converts a config value to int, raising ConfigError on junk."""
    try:
        return int(str(value).strip())
    except ValueError:
        raise ConfigError(f"'{name}' expects an integer, got '{value}'") from None


def parse_float(name: str, value) -> float:
    """Converts a config value to float, raising ConfigError on junk."""
    try:
        return float(str(value).strip())
    except ValueError:
        raise ConfigError(f"'{name}' expects a number, got '{value}'") from None


def parse_bool(name: str, value) -> bool:
    """Accepts 0/1 as well as true/false style strings."""
    text = str(value).strip().lower()
    if text in _TRUE_STRINGS:
        return True
    if text in _FALSE_STRINGS:
        return False
    raise ConfigError(f"'{name}' expects a boolean, got '{value}'")


def _to_param_value(name: str, value) -> str:
    if isinstance(value, bool):
        return "1" if value else "0"
    if value is None or isinstance(value, (dict, list)):
        raise ConfigError(f"'{name}' expects a scalar value, got {value!r}")
    return str(value)


def parse_config(text: str) -> List[Tuple[str, str]]:
    """
    Parses YAML configuration into an ordered list of (name, value) pairs.

    The document is either a mapping (`batch_size: 100`) or, when a name has
    to appear more than once, a list of one-entry mappings. Order is kept,
    since later settings override earlier ones when applied in sequence.
    Values are handed back as strings; booleans become '1'/'0'.

    Args:
        text: YAML text.

    Returns:
        List of (name, value) string pairs.

    Raises:
        ConfigError: If the text is not valid YAML or not one of the two layouts.
    """
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise ConfigError(f"invalid YAML config: {e}") from e
    if data is None:
        return []
    if isinstance(data, dict):
        entries = [data]
    elif isinstance(data, list) and all(isinstance(item, dict) for item in data):
        entries = data
    else:
        raise ConfigError(f"config must be a mapping or a list of mappings, got {type(data).__name__}")
    pairs = []
    for entry in entries:
        for name, value in entry.items():
            name = str(name)
            pairs.append((name, _to_param_value(name, value)))
    return pairs


def load_config(path: str) -> List[Tuple[str, str]]:
    """Reads and parses a YAML configuration file."""
    with open(path, 'r') as f:
        pairs = parse_config(f.read())
    logging.info(f"Loaded {len(pairs)} config entries from {path}")
    return pairs


def apply_params(target, pairs: Iterable[Tuple[str, str]]):
    """Feeds every pair to `target.set_param` in order and returns target."""
    for name, value in pairs:
        target.set_param(name, value)
    return target
