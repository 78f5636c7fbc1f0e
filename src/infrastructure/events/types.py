# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Event type names exchanged with the rest of the platform.

Event types are the ``eventType`` values carried inside message bodies. They
are independent of routing keys, which are deployment settings (see
``MessagingSettings``).
"""


class EventTypes:
    """Event types produced by the tuition worker."""

    class Tuition:
        """Events published by the tuition worker."""

        PAYMENT_CONFIRMED = "TuitionPaymentConfirmed"
        PAYMENT_FAILED = "TuitionPaymentFailed"
