"""Tuning knobs for disassembly rendering and module lookup."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field, replace
from typing import List, Mapping, Optional

_log = logging.getLogger(__name__)

ENV_SEARCH_PATH = "BEAM_SPY_PATH"
ENV_TRUNCATE = "BEAM_SPY_TRUNCATE"


@dataclass(frozen=True)
class DisasmConfig:
    """Rendering and resolution settings.

    ``home_range`` is the distance (in source lines) from a function's
    first line beyond which a line group is shown as a reference instead
    of inline source.  ``small_gap`` bounds how many unmarked source lines
    are filled in between two consecutive markers.
    """

    home_range: int = 100
    small_gap: int = 10
    truncate_limit: int = 80
    string_limit: int = 30
    binary_preview: int = 16
    binary_inline_max: int = 20
    extra_paths: List[str] = field(default_factory=list)

    def validate(self) -> List[str]:
        """Return a list of validation warnings (empty if valid)."""
        warnings: List[str] = []
        if self.home_range < 0:
            warnings.append("home_range must be non-negative")
        if self.small_gap < 0:
            warnings.append("small_gap must be non-negative")
        if self.truncate_limit <= 0:
            warnings.append("truncate_limit must be positive")
        if self.string_limit <= 3:
            warnings.append("string_limit must be greater than 3")
        if self.binary_preview > self.binary_inline_max:
            warnings.append("binary_preview must not exceed binary_inline_max")
        return warnings

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "DisasmConfig":
        """Build a config from ``BEAM_SPY_*`` environment variables."""
        env = os.environ if environ is None else environ
        config = cls()
        raw_paths = env.get(ENV_SEARCH_PATH, "")
        if raw_paths:
            paths = [p for p in raw_paths.split(os.pathsep) if p]
            config = replace(config, extra_paths=paths)
        raw_limit = env.get(ENV_TRUNCATE)
        if raw_limit:
            try:
                config = replace(config, truncate_limit=int(raw_limit))
            except ValueError:
                _log.warning("ignoring non-integer %s=%r", ENV_TRUNCATE, raw_limit)
        for warning in config.validate():
            _log.warning("config: %s", warning)
        return config


DEFAULT_CONFIG = DisasmConfig()
