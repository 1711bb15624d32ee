# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Domain services layer.

Domains:
    lifecycle: Student provisioning and retirement across the identity
        provider and the document store.
"""
