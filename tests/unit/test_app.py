# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Unit tests for the client factory."""

import threading
import uuid
from unittest.mock import MagicMock, patch

import pytest

from clubauth.app import create_client
from clubauth.core.config.settings import AuthSettings, Settings
from clubauth.domains.auth.service import PasswordResetUnavailableError
from clubauth.infrastructure.database.schema import Role


@pytest.fixture
def settings() -> Settings:
    return Settings(auth=AuthSettings(bcrypt_rounds=4))


@pytest.fixture
def mock_database() -> MagicMock:
    return MagicMock()


class TestCreateClient:
    """Tests for create_client wiring."""

    def test_services_share_registry(self, settings, mock_database) -> None:
        client = create_client(settings, database=mock_database, configure_logging=False)
        try:
            assert client.database is mock_database
            assert client.coordinators._registry is client.registry
            assert client.auth._registry is client.registry
            assert client.accounts._registry is client.registry
        finally:
            client.runner.shutdown()

    def test_without_notifier_reset_is_disabled(self, settings, mock_database) -> None:
        client = create_client(settings, database=mock_database, configure_logging=False)
        try:
            assert client.password_reset is None
            with pytest.raises(PasswordResetUnavailableError):
                client.auth.request_password_reset("alice@school.example")
        finally:
            client.runner.shutdown()

    def test_with_notifier_reset_is_wired(self, settings, mock_database) -> None:
        client = create_client(
            settings, notifier=MagicMock(), database=mock_database, configure_logging=False
        )
        try:
            assert client.password_reset is not None
            assert client.auth.request_password_reset("").ok is True
        finally:
            client.runner.shutdown()

    def test_configures_logging(self, settings, mock_database) -> None:
        with patch("clubauth.app.setup_logging") as setup_logging:
            client = create_client(settings, database=mock_database)
        client.runner.shutdown()

        setup_logging.assert_called_once_with(settings)


class TestBackgroundLogin:
    """Tests for login through the worker pool."""

    def test_result_delivered_through_dispatch(self, settings, database, insert_user, sample_tenant_id) -> None:
        """Test the login result reaches the UI callback via dispatch."""
        insert_user(username="alice", password="Club#2024pass", school_id=sample_tenant_id)
        dispatched = []
        done = threading.Event()
        results = []

        def dispatch(callback):
            dispatched.append(callback)
            callback()

        def on_done(result):
            results.append(result)
            done.set()

        client = create_client(
            settings, dispatch=dispatch, database=database, configure_logging=False
        )
        try:
            client.login_in_background("alice", "Club#2024pass", on_done=on_done)
            assert done.wait(timeout=10)

            assert results[0].ok is True
            assert len(dispatched) == 1
            assert client.registry.require().tenant_id == sample_tenant_id
        finally:
            client.registry.destroy()
            client.runner.shutdown()


class TestShutdown:
    """Tests for ClubAuthClient.shutdown."""

    def test_closes_session_and_engines(self, settings, mock_database, connection_factory, sample_tenant_id) -> None:
        client = create_client(settings, database=mock_database, configure_logging=False)
        conn = connection_factory(sample_tenant_id)
        session = client.registry.create(
            user_id=uuid.uuid4(),
            username="alice",
            tenant_id=sample_tenant_id,
            connection=conn,
            role=Role.TEACHER,
        )

        client.shutdown()

        assert session.is_closed is True
        assert client.registry.current() is None
        mock_database.dispose.assert_called_once()
        with pytest.raises(RuntimeError):
            client.runner.submit(lambda: None)
