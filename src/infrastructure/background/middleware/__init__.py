# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Background processing middleware for the tuition worker.

This module provides custom Dramatiq middleware for:
- Logging context per message
- Retry routing with exponential backoff and dead-lettering
- Prometheus metrics
"""

from src.infrastructure.background.middleware.logging_context import (
    LogContextMiddleware,
)
from src.infrastructure.background.middleware.metrics import (
    MetricsMiddleware,
    get_metrics_middleware,
    set_metrics_middleware,
)
from src.infrastructure.background.middleware.retry import (
    RetryPolicy,
    RetryPolicyMiddleware,
)

__all__ = [
    # Logging
    "LogContextMiddleware",
    # Retries
    "RetryPolicy",
    "RetryPolicyMiddleware",
    # Metrics
    "MetricsMiddleware",
    "get_metrics_middleware",
    "set_metrics_middleware",
]
