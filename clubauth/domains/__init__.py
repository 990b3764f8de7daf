# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Domain services layer for the club management client.

Each domain module encapsulates the logic around one concern and works on
connections handed to it by the infrastructure layer.

Domains:
    auth: Password hashing, login and password reset.
    session: The signed-in user's tenant-pinned session.
    coordinator: Single-active-coordinator activation.
"""
