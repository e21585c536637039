"""Prometheus metrics for flag evaluation and exposure tracking.

All metric objects are defined at import time on the default registry.
"""

from __future__ import annotations

from prometheus_client import Counter

flag_evaluations_total = Counter(
    "flagkit_evaluations_total",
    "Flag evaluations by decision reason",
    ["reason"],
)

flag_configuration_errors_total = Counter(
    "flagkit_configuration_errors_total",
    "Configuration errors hit during evaluation",
    ["kind"],
)

flag_exposures_total = Counter(
    "flagkit_exposures_total",
    "Exposure records by outcome (recorded|deduplicated|dropped)",
    ["outcome"],
)
