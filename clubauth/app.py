# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Client factory.

Builds the object graph the desktop client needs: one Database and one
SessionRegistry shared by every service, the domain services built on them,
and the worker pool the UI hands blocking calls to.

Example:
    client = create_client(notifier=mailer, dispatch=ui.call_soon)
    client.login_in_background("alice", "secret", on_done=show_result)
    ...
    client.shutdown()
"""

import logging
from concurrent.futures import Future
from dataclasses import dataclass
from typing import Any, Callable

from sqlalchemy.exc import SQLAlchemyError

from clubauth.core.config import Settings, get_settings
from clubauth.domains.auth.account import AccountService
from clubauth.domains.auth.password import PasswordHasher
from clubauth.domains.auth.password_reset import PasswordResetService, ResetNotifier
from clubauth.domains.auth.service import AuthenticationTransaction, LoginResult
from clubauth.domains.coordinator.service import CoordinatorActivationService
from clubauth.domains.session.registry import SessionRegistry
from clubauth.infrastructure.background import BackgroundRunner
from clubauth.infrastructure.database.connection import Database
from clubauth.utils.logging import setup_logging

logger = logging.getLogger(__name__)


@dataclass
class ClubAuthClient:
    """Services of one running client, all sharing one registry."""

    settings: Settings
    database: Database
    registry: SessionRegistry
    auth: AuthenticationTransaction
    accounts: AccountService
    coordinators: CoordinatorActivationService
    runner: BackgroundRunner
    password_reset: PasswordResetService | None = None

    def login_in_background(
        self,
        username: str,
        password: str,
        on_done: Callable[[LoginResult], None],
        on_error: Callable[[BaseException], None] | None = None,
    ) -> Future:
        """Run login() on a worker thread and hand the result to ``on_done``."""
        return self.runner.submit(
            self.auth.login, username, password, on_success=on_done, on_error=on_error
        )

    def logout_in_background(self, on_done: Callable[[Any], None] | None = None) -> Future:
        return self.runner.submit(self.auth.logout, on_success=on_done)

    def shutdown(self) -> None:
        """Close the session, stop the workers and dispose the engines.

        Each step runs even if an earlier one failed.
        """
        logger.info("Shutting down club management client")

        try:
            self.registry.destroy()
            logger.info("Session closed")
        except SQLAlchemyError as e:
            logger.warning("Error closing session: %s", str(e))

        self.runner.shutdown(wait=True)
        logger.info("Background workers stopped")

        try:
            self.database.dispose()
        except SQLAlchemyError as e:
            logger.warning("Error disposing database engines: %s", str(e))


def create_client(
    settings: Settings | None = None,
    notifier: ResetNotifier | None = None,
    dispatch: Callable[[Callable[[], None]], None] | None = None,
    database: Database | None = None,
    configure_logging: bool = True,
) -> ClubAuthClient:
    """Create and wire the client services.

    Args:
        settings: Application settings, defaults to get_settings().
        notifier: Delivery of password reset tokens. Without it password
            reset is unavailable.
        dispatch: Schedules callbacks on the UI thread.
        database: Pre-built Database (tests).
        configure_logging: Whether to call setup_logging().

    Returns:
        The wired ClubAuthClient.
    """
    settings = settings or get_settings()
    if configure_logging:
        setup_logging(settings)

    logger.info(
        "Starting club management client",
        extra={"environment": settings.environment, "debug": settings.debug},
    )

    database = database or Database(settings.database)
    registry = SessionRegistry()
    hasher = PasswordHasher(rounds=settings.auth.bcrypt_rounds)

    password_reset = None
    if notifier is not None:
        password_reset = PasswordResetService(
            database, notifier, hasher=hasher, settings=settings.auth
        )
    else:
        logger.warning("No reset notifier configured, password reset is disabled")

    auth = AuthenticationTransaction(
        database,
        registry,
        hasher=hasher,
        settings=settings.auth,
        reset_service=password_reset,
    )

    return ClubAuthClient(
        settings=settings,
        database=database,
        registry=registry,
        auth=auth,
        accounts=AccountService(registry, hasher=hasher, settings=settings.auth),
        coordinators=CoordinatorActivationService(registry, settings=settings.auth),
        runner=BackgroundRunner(dispatch=dispatch, max_workers=settings.worker.threads),
        password_reset=password_reset,
    )
