"""PayIskoul Tuition Worker.

Asynchronous consumer that reconciles tuition payments: it matches
transaction events to enrollments, applies them to tuition ledgers exactly
once and reports the outcome to the rest of the platform.

Copyright (C) 2025 Global Digital Labs (gdlabs.io)
SPDX-License-Identifier: LGPL-3.0-or-later
"""

__version__ = "1.0.0"
