"""Track used TOTP steps, keep re-setups pending, switch backup codes to bcrypt.

Revision ID: b4e8d2a6c1f9
Revises: a7c3e9f1d2b4
Create Date: 2026-10-19
"""

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "b4e8d2a6c1f9"
down_revision: str | None = "a7c3e9f1d2b4"
branch_labels: str | None = None
depends_on: str | None = None


def upgrade() -> None:
    # Add columns (idempotent)
    op.execute("""
        ALTER TABLE security_profiles
            ADD COLUMN IF NOT EXISTS last_totp_step BIGINT,
            ADD COLUMN IF NOT EXISTS pending_secret_ciphertext TEXT,
            ADD COLUMN IF NOT EXISTS pending_secret_created_at TIMESTAMPTZ,
            ADD COLUMN IF NOT EXISTS pending_backup_code_hashes JSON;
    """)

    op.execute("""
        ALTER TABLE security_profiles
            DROP CONSTRAINT IF EXISTS ck_security_profiles_secret_state;
    """)

    # HMAC digests cannot be checked with bcrypt; affected users regenerate
    op.execute("DELETE FROM backup_codes WHERE code_hash NOT LIKE '$2%';")
    op.execute("""
        ALTER TABLE backup_codes
            DROP CONSTRAINT IF EXISTS uq_backup_codes_user_hash;
    """)

    # Unconfirmed setups lost their backup codes above; start them over
    op.execute("""
        UPDATE security_profiles
        SET state = 'DISABLED',
            secret_ciphertext = NULL,
            secret_created_at = NULL,
            version = version + 1
        WHERE state = 'PENDING_SETUP';
    """)

    op.execute("""
        ALTER TABLE security_profiles
            ADD CONSTRAINT ck_security_profiles_secret_state CHECK (
                (state = 'DISABLED' AND secret_ciphertext IS NULL
                    AND pending_secret_ciphertext IS NULL AND enabled_at IS NULL)
                OR (state = 'PENDING_SETUP' AND secret_ciphertext IS NULL
                    AND pending_secret_ciphertext IS NOT NULL
                    AND pending_secret_created_at IS NOT NULL AND enabled_at IS NULL)
                OR (state = 'ENABLED' AND secret_ciphertext IS NOT NULL
                    AND enabled_at IS NOT NULL)
            );
    """)

    op.execute("""
        CREATE INDEX IF NOT EXISTS ix_security_profiles_pending_secret_created_at
            ON security_profiles (pending_secret_created_at);
    """)


def downgrade() -> None:
    op.execute("""
        DROP INDEX IF EXISTS ix_security_profiles_pending_secret_created_at;
    """)
    op.execute("""
        ALTER TABLE security_profiles
            DROP CONSTRAINT IF EXISTS ck_security_profiles_secret_state;
    """)

    # Pending re-setups on enabled profiles are dropped; first setups start over
    op.execute("""
        UPDATE security_profiles
        SET state = 'DISABLED', version = version + 1
        WHERE state = 'PENDING_SETUP';
    """)

    # bcrypt hashes do not fit the old HMAC scheme
    op.execute("DELETE FROM backup_codes;")
    op.execute("""
        ALTER TABLE backup_codes
            ADD CONSTRAINT uq_backup_codes_user_hash UNIQUE (user_id, code_hash);
    """)

    op.execute("""
        ALTER TABLE security_profiles
            ADD CONSTRAINT ck_security_profiles_secret_state CHECK (
                (state = 'DISABLED' AND secret_ciphertext IS NULL AND enabled_at IS NULL)
                OR (state = 'PENDING_SETUP' AND secret_ciphertext IS NOT NULL
                    AND secret_created_at IS NOT NULL AND enabled_at IS NULL)
                OR (state = 'ENABLED' AND secret_ciphertext IS NOT NULL
                    AND enabled_at IS NOT NULL)
            );
    """)

    op.execute("""
        ALTER TABLE security_profiles
            DROP COLUMN IF EXISTS pending_backup_code_hashes,
            DROP COLUMN IF EXISTS pending_secret_created_at,
            DROP COLUMN IF EXISTS pending_secret_ciphertext,
            DROP COLUMN IF EXISTS last_totp_step;
    """)
