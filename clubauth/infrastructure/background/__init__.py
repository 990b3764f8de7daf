# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Background work on worker threads."""

from clubauth.infrastructure.background.runner import BackgroundRunner

__all__ = ["BackgroundRunner"]
