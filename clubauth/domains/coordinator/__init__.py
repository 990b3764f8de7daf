# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Coordinator domain.

Exports:
    CoordinatorActivationService: Keeps at most one active coordinator per school.
"""

from clubauth.domains.coordinator.repository import CoordinatorRepository
from clubauth.domains.coordinator.service import (
    ActivationTimeoutError,
    CoordinatorActivationService,
    CoordinatorNotFoundError,
    CoordinatorServiceError,
    CoordinatorTenantError,
)

__all__ = [
    "ActivationTimeoutError",
    "CoordinatorActivationService",
    "CoordinatorNotFoundError",
    "CoordinatorRepository",
    "CoordinatorServiceError",
    "CoordinatorTenantError",
]
