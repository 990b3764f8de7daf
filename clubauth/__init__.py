# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Tenant-isolated authentication and session layer for the club management client."""

__version__ = "0.1.0"
