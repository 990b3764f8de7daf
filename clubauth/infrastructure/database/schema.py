# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Table definitions used by the authentication layer.

Only the tables this package reads or writes are declared here. The rest of
the club management schema (clubs, learners, attendance) belongs to the
business screens and is scoped by the same tenant setting.
"""

import enum

import sqlalchemy as sa

metadata = sa.MetaData()


class Role(str, enum.Enum):
    """User roles stored in users.role."""

    CLUB_COORDINATOR = "club_coordinator"
    TEACHER = "teacher"
    SYSTEM_ADMINISTRATOR = "system_administrator"


users = sa.Table(
    "users",
    metadata,
    sa.Column("user_id", sa.Uuid(), primary_key=True),
    sa.Column("username", sa.String(100), nullable=False),
    sa.Column("email", sa.String(255), nullable=True),
    sa.Column("password_hash", sa.String(100), nullable=True),
    sa.Column("full_name", sa.String(200), nullable=True),
    sa.Column("school_id", sa.Uuid(), nullable=True, index=True),
    sa.Column(
        "role",
        sa.Enum(
            Role,
            name="user_role",
            values_callable=lambda roles: [role.value for role in roles],
        ),
        nullable=False,
    ),
    sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
    sa.Column(
        "is_active_coordinator",
        sa.Boolean(),
        nullable=False,
        server_default=sa.false(),
    ),
    sa.Column("first_login", sa.Boolean(), nullable=False, server_default=sa.true()),
    sa.Column("reset_token_hash", sa.String(64), nullable=True),
    sa.Column("reset_token_expiry", sa.DateTime(timezone=True), nullable=True),
    sa.Column("password_changed_at", sa.DateTime(timezone=True), nullable=True),
    sa.Column(
        "created_at",
        sa.DateTime(timezone=True),
        nullable=False,
        server_default=sa.func.now(),
    ),
)

# Usernames and emails are matched case-insensitively across all schools
sa.Index("uq_users_username_lower", sa.func.lower(users.c.username), unique=True)
sa.Index("uq_users_email_lower", sa.func.lower(users.c.email), unique=True)

password_history = sa.Table(
    "password_history",
    metadata,
    sa.Column("history_id", sa.Integer(), primary_key=True, autoincrement=True),
    sa.Column(
        "user_id",
        sa.Uuid(),
        sa.ForeignKey("users.user_id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    ),
    sa.Column("school_id", sa.Uuid(), nullable=True),
    sa.Column("password_hash", sa.String(100), nullable=False),
    sa.Column(
        "created_at",
        sa.DateTime(timezone=True),
        nullable=False,
        server_default=sa.func.now(),
    ),
)
