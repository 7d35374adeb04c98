"""Numeric constants and runtime switches shared by all criterion nodes.

Nodes take an optional :class:`CriterionConfig`; without one they read the
module-level default returned by :func:`get_default_config`, which honours
the ``TORCH_CRITERION_*`` environment overrides listed below.

Environment variables:
    TORCH_CRITERION_NANCHECK: ``"1"`` enables the post-forward NaN diagnostic.
    TORCH_CRITERION_EPS: overrides the L2 regularizer division guard.
"""

import os
from dataclasses import dataclass, replace
from typing import Optional

__all__ = [
    "CriterionConfig",
    "get_default_config",
    "set_default_config",
    "LOG_ZERO",
    "EPS_IN_INVERSE",
]

# Log-domain stand-in for log(0). Finite so that LOG_ZERO + x never yields NaN.
LOG_ZERO = -1e10

EPS_IN_INVERSE = 1e-30


@dataclass(frozen=True)
class CriterionConfig:
    """Runtime configuration for criterion nodes.

    Attributes:
        nan_check: Warn when a forward pass produces NaN. Diagnostic only.
        eps_in_inverse: Added to the L2 norm before dividing by it.
        log_zero: Sentinel used for log(0) in forward-backward trellises.
        infer_nce_mode_from_labels: Let single-row NCE labels pick the
            evaluation mode from their sign when the persisted mode is NONE.
    """

    nan_check: bool = False
    eps_in_inverse: float = EPS_IN_INVERSE
    log_zero: float = LOG_ZERO
    infer_nce_mode_from_labels: bool = True

    @classmethod
    def from_env(cls, environ: Optional[dict] = None) -> "CriterionConfig":
        environ = os.environ if environ is None else environ
        config = cls()
        if environ.get("TORCH_CRITERION_NANCHECK", "0") == "1":
            config = replace(config, nan_check=True)
        eps = environ.get("TORCH_CRITERION_EPS")
        if eps:
            try:
                value = float(eps)
            except ValueError:
                raise ValueError(f"TORCH_CRITERION_EPS must be a float, got {eps!r}") from None
            if value <= 0:
                raise ValueError(f"TORCH_CRITERION_EPS must be positive, got {value}")
            config = replace(config, eps_in_inverse=value)
        return config


_default_config: Optional[CriterionConfig] = None


def get_default_config() -> CriterionConfig:
    """Return the process-wide default, built from the environment on first use."""
    global _default_config
    if _default_config is None:
        _default_config = CriterionConfig.from_env()
    return _default_config


def set_default_config(config: Optional[CriterionConfig]) -> None:
    """Replace the process-wide default. ``None`` re-reads the environment lazily."""
    global _default_config
    _default_config = config
