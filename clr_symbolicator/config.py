"""Symbolication options.

Options can be built directly or read from the environment. ``from_env``
loads a ``.env`` file first so local overrides work without exporting
variables.
"""
from __future__ import annotations

import os
import tempfile
from dataclasses import dataclass, field
from typing import Optional

from dotenv import load_dotenv

ENV_SYMBOLS_PATH = "SYMBOLICATOR_SYMBOLS_PATH"
ENV_ATTEMPT_ORIGINAL_PATH = "SYMBOLICATOR_ATTEMPT_ORIGINAL_PATH"
ENV_SYMBOL_SERVER = "SYMBOLICATOR_SYMBOL_SERVER"
ENV_CACHE_DIR = "SYMBOLICATOR_CACHE_DIR"
ENV_TIMEOUT = "SYMBOLICATOR_TIMEOUT"
ENV_VERBOSE = "SYMBOLICATOR_VERBOSE"

DEFAULT_PROBE_TIMEOUT = 30.0

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}


def _parse_bool(value: Optional[str], default: bool) -> bool:
    if value is None or not value.strip():
        return default
    value = value.strip().lower()
    if value in _TRUE_VALUES:
        return True
    if value in _FALSE_VALUES:
        return False
    raise ValueError(f"Invalid boolean value: {value!r}")


@dataclass
class SymbolicateOptions:
    """Where and how symbol files are looked up."""
    # Root folder of the symbol store; None disables rooted probing
    symbols_path: Optional[str] = None
    # Try the PDB path recorded in the module. Turn off on servers.
    attempt_original_symbol_path: bool = True
    # Base URL of an HTTP symbol server (SSQP layout)
    symbol_server: Optional[str] = None
    download_cache_dir: str = field(
        default_factory=lambda: os.path.join(tempfile.gettempdir(), "clr_symbols"))
    probe_timeout: float = DEFAULT_PROBE_TIMEOUT
    verbose: bool = False

    @classmethod
    def from_env(cls, dotenv_path: Optional[str] = None, **overrides) -> "SymbolicateOptions":
        """
        Build options from SYMBOLICATOR_* environment variables.

        Args:
            dotenv_path: Explicit .env file; defaults to searching from the cwd.
            **overrides: Values that win over the environment (None is ignored).

        Returns:
            The resulting options.
        """
        load_dotenv(dotenv_path)

        options = cls(
            symbols_path=os.environ.get(ENV_SYMBOLS_PATH) or None,
            attempt_original_symbol_path=_parse_bool(os.environ.get(ENV_ATTEMPT_ORIGINAL_PATH), True),
            symbol_server=os.environ.get(ENV_SYMBOL_SERVER) or None,
            verbose=_parse_bool(os.environ.get(ENV_VERBOSE), False),
        )
        if os.environ.get(ENV_CACHE_DIR):
            options.download_cache_dir = os.environ[ENV_CACHE_DIR]
        if os.environ.get(ENV_TIMEOUT):
            options.probe_timeout = float(os.environ[ENV_TIMEOUT])

        for name, value in overrides.items():
            if not hasattr(options, name):
                raise TypeError(f"Unknown option: {name}")
            if value is not None:
                setattr(options, name, value)
        return options
