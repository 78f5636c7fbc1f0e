# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Domain services layer for the tuition worker.

Domains:
    tuition: Payment resolution, tuition ledgers and the payment pipeline.
"""
