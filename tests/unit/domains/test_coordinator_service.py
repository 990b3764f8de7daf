# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Unit tests for CoordinatorActivationService."""

import uuid
from unittest.mock import MagicMock

import pytest
import sqlalchemy as sa
from sqlalchemy.exc import IntegrityError, OperationalError

from clubauth.domains.auth.service import AuthenticationTransaction
from clubauth.domains.coordinator.service import (
    ActivationTimeoutError,
    CoordinatorActivationService,
    CoordinatorNotFoundError,
    CoordinatorTenantError,
)
from clubauth.domains.session.registry import SessionRegistry
from clubauth.domains.session.tenant_session import NoActiveSessionError
from clubauth.infrastructure.database.schema import Role, users

PASSWORD = "Club#2024pass"


class FakeDriverError(Exception):
    def __init__(self, pgcode: str | None) -> None:
        super().__init__(f"driver error {pgcode}")
        self.pgcode = pgcode


@pytest.fixture
def registry():
    registry = SessionRegistry()
    yield registry
    registry.destroy()


def _active_flags(engine, tenant_id) -> dict:
    with engine.connect() as conn:
        rows = conn.execute(
            sa.select(users.c.username, users.c.is_active_coordinator).where(
                users.c.school_id == tenant_id
            )
        )
        return {row.username: bool(row.is_active_coordinator) for row in rows}


# =============================================================================
# Against the SQLite database
# =============================================================================


@pytest.fixture
def school(database, registry, auth_settings, insert_user, sample_tenant_id, other_tenant_id) -> dict:
    """Two coordinators and a teacher in one school, one coordinator next door.

    The first coordinator is signed in.
    """
    rows = {
        "anna": insert_user(
            username="anna",
            password=PASSWORD,
            school_id=sample_tenant_id,
            role=Role.CLUB_COORDINATOR,
            is_active_coordinator=True,
        ),
        "ben": insert_user(
            username="ben", school_id=sample_tenant_id, role=Role.CLUB_COORDINATOR
        ),
        "tess": insert_user(username="tess", school_id=sample_tenant_id, role=Role.TEACHER),
        "otto": insert_user(
            username="otto",
            school_id=other_tenant_id,
            role=Role.CLUB_COORDINATOR,
            is_active_coordinator=True,
        ),
    }
    auth = AuthenticationTransaction(database, registry, settings=auth_settings)
    assert auth.login("anna", PASSWORD).ok
    return rows


@pytest.fixture
def service(registry, auth_settings) -> CoordinatorActivationService:
    return CoordinatorActivationService(registry, settings=auth_settings)


class TestActivate:
    """Tests for activate() on SQLite."""

    def test_activates_target_and_clears_others(self, service, school, registry, lookup_engine, sample_tenant_id) -> None:
        """Test exactly one active coordinator remains in the school."""
        service.activate(sample_tenant_id, school["ben"]["user_id"])

        assert _active_flags(lookup_engine, sample_tenant_id) == {
            "anna": False,
            "ben": True,
            "tess": False,
        }
        assert service.active_coordinator_id(sample_tenant_id) == school["ben"]["user_id"]
        assert registry.is_active_coordinator() is False

    def test_other_school_untouched(self, service, school, lookup_engine, sample_tenant_id, other_tenant_id) -> None:
        """Test activation never reaches another school's coordinators."""
        service.activate(sample_tenant_id, school["ben"]["user_id"])

        assert _active_flags(lookup_engine, other_tenant_id) == {"otto": True}

    def test_activating_self_refreshes_session(self, service, school, registry, sample_tenant_id) -> None:
        """Test the signed-in coordinator's cached flag follows the commit."""
        service.activate(sample_tenant_id, school["ben"]["user_id"])
        assert registry.is_active_coordinator() is False

        service.activate(str(sample_tenant_id), str(school["anna"]["user_id"]))

        assert registry.is_active_coordinator() is True

    @pytest.mark.parametrize("target", ["tess", "otto"])
    def test_non_coordinator_target_rejected(self, service, school, lookup_engine, sample_tenant_id, target) -> None:
        """Test a teacher or another school's coordinator cannot be activated."""
        before = _active_flags(lookup_engine, sample_tenant_id)

        with pytest.raises(CoordinatorNotFoundError):
            service.activate(sample_tenant_id, school[target]["user_id"])

        assert _active_flags(lookup_engine, sample_tenant_id) == before

    def test_unknown_target_rejected(self, service, school, sample_tenant_id) -> None:
        with pytest.raises(CoordinatorNotFoundError):
            service.activate(sample_tenant_id, uuid.uuid4())

    def test_other_school_rejected(self, service, school, other_tenant_id) -> None:
        """Test a school other than the session's is refused before any query."""
        with pytest.raises(CoordinatorTenantError):
            service.activate(other_tenant_id, school["otto"]["user_id"])

    def test_requires_session(self, auth_settings, sample_tenant_id) -> None:
        service = CoordinatorActivationService(SessionRegistry(), settings=auth_settings)

        with pytest.raises(NoActiveSessionError):
            service.activate(sample_tenant_id, uuid.uuid4())


class TestDeactivateAndQueries:
    """Tests for deactivate() and the read helpers on SQLite."""

    def test_deactivate_self(self, service, school, registry, lookup_engine, sample_tenant_id) -> None:
        service.deactivate(school["anna"]["user_id"])

        assert _active_flags(lookup_engine, sample_tenant_id)["anna"] is False
        assert registry.is_active_coordinator() is False
        assert registry.is_coordinator() is True

    def test_can_create_active_coordinator(self, service, school, sample_tenant_id) -> None:
        """Test creation is allowed only while no coordinator is active."""
        assert service.can_create_active_coordinator(sample_tenant_id) is False

        service.deactivate(school["anna"]["user_id"])

        assert service.can_create_active_coordinator(sample_tenant_id) is True
        assert service.active_coordinator_id(sample_tenant_id) is None

    def test_query_for_other_school_rejected(self, service, school, other_tenant_id) -> None:
        with pytest.raises(CoordinatorTenantError):
            service.active_coordinator_id(other_tenant_id)


# =============================================================================
# With mocked connections
# =============================================================================


@pytest.fixture
def mock_session(registry, connection_factory, sample_tenant_id, sample_user_id):
    conn = connection_factory(sample_tenant_id)
    session = registry.create(
        user_id=sample_user_id,
        username="anna",
        tenant_id=sample_tenant_id,
        connection=conn,
        role=Role.CLUB_COORDINATOR,
        is_active_coordinator=True,
    )
    return session


@pytest.fixture
def mock_repository(sample_user_id) -> MagicMock:
    repository = MagicMock()
    repository.lock_coordinators.return_value = [sample_user_id]
    return repository


@pytest.fixture
def mock_service(registry, mock_repository, auth_settings) -> CoordinatorActivationService:
    return CoordinatorActivationService(registry, repository=mock_repository, settings=auth_settings)


class TestActivationProtocol:
    """Tests for ordering, timeouts and connection loss."""

    def test_steps_run_in_one_transaction(self, mock_service, mock_session, mock_repository, sample_tenant_id, sample_user_id) -> None:
        """Test lock, clear and set share one committed transaction."""
        conn = mock_session.connection
        calls = []
        mock_repository.lock_coordinators.side_effect = lambda c, t: calls.append("lock") or [sample_user_id]
        mock_repository.clear_active.side_effect = lambda c, t: calls.append("clear")
        mock_repository.set_active.side_effect = lambda c, t, u: calls.append("set")
        conn.begin.return_value.commit.side_effect = lambda: calls.append("commit")

        mock_service.activate(sample_tenant_id, sample_user_id)

        assert calls == ["lock", "clear", "set", "commit"]
        conn.begin.assert_called_once()

    def test_timeout_applied(self, mock_service, mock_session, sample_tenant_id, sample_user_id) -> None:
        """Test the activation transaction is bounded."""
        mock_service.activate(sample_tenant_id, sample_user_id)

        executed = [str(call.args[0]) for call in mock_session.connection.execute.call_args_list]
        assert "SET LOCAL lock_timeout = 5000" in executed

    def test_not_found_rolls_back(self, mock_service, mock_session, mock_repository, sample_tenant_id) -> None:
        with pytest.raises(CoordinatorNotFoundError):
            mock_service.activate(sample_tenant_id, uuid.uuid4())

        trans = mock_session.connection.begin.return_value
        trans.rollback.assert_called_once()
        trans.commit.assert_not_called()
        mock_repository.clear_active.assert_not_called()

    @pytest.mark.parametrize("pgcode", ["55P03", "57014"])
    def test_lock_timeout(self, mock_service, mock_session, mock_repository, registry, sample_tenant_id, sample_user_id, pgcode) -> None:
        """Test a lock or statement timeout is reported and keeps the session."""
        mock_repository.lock_coordinators.side_effect = OperationalError(
            "SELECT ... FOR UPDATE", {}, FakeDriverError(pgcode)
        )

        with pytest.raises(ActivationTimeoutError):
            mock_service.activate(sample_tenant_id, sample_user_id)

        mock_session.connection.begin.return_value.rollback.assert_called_once()
        assert registry.current() is mock_session

    def test_connection_loss_destroys_session(self, mock_service, mock_session, mock_repository, registry, sample_tenant_id, sample_user_id) -> None:
        """Test a dropped connection ends the session and propagates."""
        conn = mock_session.connection
        mock_repository.set_active.side_effect = OperationalError(
            "UPDATE users", {}, FakeDriverError("08006")
        )

        with pytest.raises(OperationalError):
            mock_service.activate(sample_tenant_id, sample_user_id)

        assert registry.current() is None
        conn.close.assert_called_once()

    def test_deadlock_keeps_session(self, mock_service, mock_session, mock_repository, registry, sample_tenant_id, sample_user_id) -> None:
        """Test a deadlock rolls back and propagates without signing the user out."""
        conn = mock_session.connection
        mock_repository.clear_active.side_effect = OperationalError(
            "UPDATE users", {}, FakeDriverError("40P01")
        )

        with pytest.raises(OperationalError):
            mock_service.activate(sample_tenant_id, sample_user_id)

        conn.begin.return_value.rollback.assert_called_once()
        assert registry.current() is mock_session
        conn.close.assert_not_called()

    def test_data_error_keeps_session(self, mock_service, mock_session, mock_repository, registry, sample_tenant_id, sample_user_id) -> None:
        mock_repository.set_active.side_effect = IntegrityError("UPDATE users", {}, Exception("check"))

        with pytest.raises(IntegrityError):
            mock_service.activate(sample_tenant_id, sample_user_id)

        assert registry.current() is mock_session
        assert mock_session.is_active_coordinator is True

    def test_flag_refreshed_only_after_commit(self, mock_service, mock_session, mock_repository, sample_tenant_id, sample_user_id) -> None:
        """Test a failed commit leaves the cached flag alone."""
        other = uuid.uuid4()
        mock_repository.lock_coordinators.return_value = [sample_user_id, other]
        mock_session.connection.begin.return_value.commit.side_effect = OperationalError(
            "COMMIT", {}, FakeDriverError("40001")
        )

        with pytest.raises(OperationalError):
            mock_service.activate(sample_tenant_id, other)

        assert mock_session.is_active_coordinator is True
