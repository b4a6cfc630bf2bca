"""Engine configuration from the environment."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass

from trellis.expressions.evaluator import DEFAULT_MAX_DEPTH
from trellis.expressions.staleness import DEFAULT_MAX_PROPAGATION_DEPTH


def _int_from_env(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from None
    if value < 1:
        raise ValueError(f"{name} must be at least 1, got {value}")
    return value


@dataclass
class EngineConfig:
    """Limits and logging for the expression engine.

    Environment variables:
        TRELLIS_MAX_EVAL_DEPTH: Deepest AST evaluated (default 50)
        TRELLIS_MAX_PROPAGATION_DEPTH: Longest staleness chain (default 100)
        TRELLIS_LOG_LEVEL: Logging level name (default WARNING)
    """

    max_eval_depth: int = DEFAULT_MAX_DEPTH
    max_propagation_depth: int = DEFAULT_MAX_PROPAGATION_DEPTH
    log_level: str = "WARNING"

    @classmethod
    def from_env(cls) -> EngineConfig:
        """Create config from environment variables, falling back to defaults."""
        log_level = os.environ.get("TRELLIS_LOG_LEVEL", "WARNING").strip().upper()
        if log_level not in logging.getLevelNamesMapping():
            raise ValueError(f"TRELLIS_LOG_LEVEL is not a logging level: {log_level!r}")

        return cls(
            max_eval_depth=_int_from_env("TRELLIS_MAX_EVAL_DEPTH", DEFAULT_MAX_DEPTH),
            max_propagation_depth=_int_from_env(
                "TRELLIS_MAX_PROPAGATION_DEPTH", DEFAULT_MAX_PROPAGATION_DEPTH
            ),
            log_level=log_level,
        )


def configure_logging(level: str = "WARNING") -> None:
    """Send trellis log records to stderr at the given level."""
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    logging.getLogger("trellis").setLevel(level)
