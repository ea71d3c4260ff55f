"""Add security_profiles, backup_codes and two_factor_audit_log tables.

Revision ID: a7c3e9f1d2b4
Revises:
Create Date: 2026-10-19
"""

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "a7c3e9f1d2b4"
down_revision: str | None = None
branch_labels: str | None = None
depends_on: str | None = None


def upgrade() -> None:
    # Create the enum type (idempotent)
    op.execute("""
        DO $$ BEGIN
            IF NOT EXISTS (SELECT 1 FROM pg_type WHERE typname = 'twofactorstate') THEN
                CREATE TYPE twofactorstate AS ENUM ('DISABLED', 'PENDING_SETUP', 'ENABLED');
            END IF;
        END $$;
    """)

    # Create the tables (idempotent)
    op.execute("""
        CREATE TABLE IF NOT EXISTS security_profiles (
            user_id VARCHAR(255) NOT NULL PRIMARY KEY,
            state twofactorstate NOT NULL DEFAULT 'DISABLED',
            secret_ciphertext TEXT,
            secret_created_at TIMESTAMPTZ,
            enabled_at TIMESTAMPTZ,
            version INTEGER NOT NULL DEFAULT 1,
            updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            CONSTRAINT ck_security_profiles_secret_state CHECK (
                (state = 'DISABLED' AND secret_ciphertext IS NULL AND enabled_at IS NULL)
                OR (state = 'PENDING_SETUP' AND secret_ciphertext IS NOT NULL
                    AND secret_created_at IS NOT NULL AND enabled_at IS NULL)
                OR (state = 'ENABLED' AND secret_ciphertext IS NOT NULL
                    AND enabled_at IS NOT NULL)
            )
        );
    """)
    op.execute("""
        CREATE TABLE IF NOT EXISTS backup_codes (
            id SERIAL PRIMARY KEY,
            user_id VARCHAR(255) NOT NULL
                REFERENCES security_profiles(user_id) ON DELETE CASCADE,
            slot INTEGER NOT NULL,
            code_hash VARCHAR(64) NOT NULL,
            used_at TIMESTAMPTZ,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            CONSTRAINT uq_backup_codes_user_slot UNIQUE (user_id, slot),
            CONSTRAINT uq_backup_codes_user_hash UNIQUE (user_id, code_hash)
        );
    """)
    op.execute("""
        CREATE TABLE IF NOT EXISTS two_factor_audit_log (
            id SERIAL PRIMARY KEY,
            user_id VARCHAR(255) NOT NULL,
            action VARCHAR(50) NOT NULL,
            success BOOLEAN NOT NULL,
            detail VARCHAR(50),
            ip_address VARCHAR(64),
            user_agent VARCHAR(500),
            created_at TIMESTAMPTZ NOT NULL DEFAULT now()
        );
    """)

    # Create indexes (idempotent)
    op.execute("""
        CREATE INDEX IF NOT EXISTS ix_security_profiles_state
            ON security_profiles (state);
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS ix_backup_codes_user_id
            ON backup_codes (user_id);
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS ix_two_factor_audit_log_user_id
            ON two_factor_audit_log (user_id);
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS ix_two_factor_audit_log_created_at
            ON two_factor_audit_log (created_at);
    """)


def downgrade() -> None:
    op.execute("DROP TABLE IF EXISTS two_factor_audit_log;")
    op.execute("DROP TABLE IF EXISTS backup_codes;")
    op.execute("DROP TABLE IF EXISTS security_profiles;")
    op.execute("DROP TYPE IF EXISTS twofactorstate;")
