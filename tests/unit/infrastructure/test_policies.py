# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Unit tests for the row-level-security policy DDL."""

from clubauth.infrastructure.database.policies import (
    TENANT_TABLES,
    install_row_security,
    lookup_policy_statements,
    row_security_statements,
    tenant_policy_statements,
)


class TestPolicyStatements:
    """Tests for the generated statements."""

    def test_tenant_policy_forces_rls(self) -> None:
        """Test the table owner is subject to the policy too."""
        statements = tenant_policy_statements("users")

        assert "ALTER TABLE users ENABLE ROW LEVEL SECURITY" in statements
        assert "ALTER TABLE users FORCE ROW LEVEL SECURITY" in statements

    def test_tenant_policy_checks_reads_and_writes(self) -> None:
        """Test both USING and WITH CHECK compare school_id to the setting."""
        create = tenant_policy_statements("password_history")[-1]

        assert create.startswith("CREATE POLICY password_history_tenant_isolation")
        assert "USING (school_id = NULLIF(current_setting('app.current_school_id', true), '')::uuid)" in create
        assert "WITH CHECK (school_id = " in create

    def test_lookup_policies_are_read_only(self) -> None:
        """Test the bypass policies only admit SELECT."""
        creates = [s for s in lookup_policy_statements() if s.startswith("CREATE")]

        assert len(creates) == 2
        assert all(" FOR SELECT " in s for s in creates)
        assert "lower(username) = NULLIF(current_setting('app.login_username', true), '')" in creates[0]
        assert "current_setting('app.password_reset_lookup', true) = 'on'" in creates[1]

    def test_statements_are_rerunnable(self) -> None:
        """Test every CREATE POLICY is preceded by its DROP POLICY IF EXISTS."""
        statements = row_security_statements()

        for index, statement in enumerate(statements):
            if statement.startswith("CREATE POLICY"):
                name = statement.split()[2]
                assert statements[index - 1].startswith(f"DROP POLICY IF EXISTS {name} ")

    def test_covers_every_tenant_table(self) -> None:
        """Test each scoped table gets a tenant policy."""
        statements = row_security_statements()

        for table in TENANT_TABLES:
            assert f"CREATE POLICY {table}_tenant_isolation ON {table} " in " ".join(statements)


class TestInstallRowSecurity:
    """Tests for install_row_security."""

    def test_runs_all_statements_in_one_transaction(self, mock_connection) -> None:
        """Test statements are executed in order and committed once."""
        mock_connection.dialect.name = "postgresql"

        install_row_security(mock_connection)

        executed = [str(call.args[0]) for call in mock_connection.execute.call_args_list]
        assert executed == row_security_statements()
        mock_connection.begin.assert_called_once()
        mock_connection.begin.return_value.commit.assert_called_once()
