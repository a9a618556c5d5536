"""Claims foundation: organizations, claims, patient_histories, claims_audit.

Revision ID: 0001
Revises:
Create Date: 2026-10-18

Every tenant-owned table has Row-Level Security enabled and forced.
Tenant isolation is enforced via current_setting('app.organization_id', true);
an unset or empty setting matches no rows and blocks every write.
"""

from alembic import op

revision = "0001"
down_revision = None
branch_labels = None
depends_on = None

_TENANT_TABLES = ("claims", "patient_histories", "claims_audit")


def upgrade() -> None:
    """Create tables, indexes and RLS policies."""

    op.execute(
        """
        CREATE TABLE IF NOT EXISTS organizations (
            id VARCHAR(64) PRIMARY KEY,
            name VARCHAR(255) NOT NULL,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now()
        )
        """
    )

    op.execute(
        """
        CREATE TABLE IF NOT EXISTS claims (
            id VARCHAR(64) PRIMARY KEY,
            organization_id VARCHAR(64) NOT NULL REFERENCES organizations (id),
            patient_id VARCHAR(64) NOT NULL,
            provider_id VARCHAR(64) NOT NULL,
            diagnosis_code VARCHAR(50) NOT NULL,
            amount NUMERIC(10, 2) NOT NULL CHECK (amount > 0),
            status VARCHAR(50) NOT NULL,
            assigned_processor_id VARCHAR(64),
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
        )
        """
    )

    op.execute("CREATE INDEX IF NOT EXISTS claims_org_idx ON claims (organization_id)")
    op.execute(
        "CREATE INDEX IF NOT EXISTS claims_org_patient_idx ON claims (organization_id, patient_id)"
    )
    op.execute(
        "CREATE INDEX IF NOT EXISTS claims_org_status_idx ON claims (organization_id, status)"
    )
    op.execute(
        """
        CREATE INDEX IF NOT EXISTS claims_org_processor_idx
        ON claims (organization_id, assigned_processor_id)
        """
    )
    op.execute(
        "CREATE INDEX IF NOT EXISTS claims_org_created_idx ON claims (organization_id, created_at)"
    )

    op.execute(
        """
        CREATE TABLE IF NOT EXISTS patient_histories (
            id VARCHAR(64) PRIMARY KEY,
            organization_id VARCHAR(64) NOT NULL REFERENCES organizations (id),
            patient_id VARCHAR(64) NOT NULL,
            event_type VARCHAR(50) NOT NULL,
            occurred_at TIMESTAMPTZ NOT NULL,
            details TEXT,
            processed_at TIMESTAMPTZ,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now()
        )
        """
    )

    op.execute(
        """
        CREATE INDEX IF NOT EXISTS patient_histories_org_patient_idx
        ON patient_histories (organization_id, patient_id)
        """
    )
    op.execute(
        """
        CREATE INDEX IF NOT EXISTS patient_histories_occurred_idx
        ON patient_histories (occurred_at)
        """
    )

    op.execute(
        """
        CREATE TABLE IF NOT EXISTS claims_audit (
            id VARCHAR(64) PRIMARY KEY,
            claim_id VARCHAR(64) NOT NULL REFERENCES claims (id),
            organization_id VARCHAR(64) NOT NULL,
            action VARCHAR(20) NOT NULL,
            changed_by VARCHAR(100) NOT NULL,
            changed_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            old_values JSONB,
            new_values JSONB
        )
        """
    )

    op.execute("CREATE INDEX IF NOT EXISTS claims_audit_claim_idx ON claims_audit (claim_id)")
    op.execute(
        "CREATE INDEX IF NOT EXISTS claims_audit_changed_by_idx ON claims_audit (changed_by)"
    )
    op.execute(
        """
        CREATE INDEX IF NOT EXISTS claims_audit_org_changed_idx
        ON claims_audit (organization_id, changed_at)
        """
    )

    for table in _TENANT_TABLES:
        op.execute(f"ALTER TABLE {table} ENABLE ROW LEVEL SECURITY")
        op.execute(f"ALTER TABLE {table} FORCE ROW LEVEL SECURITY")
        op.execute(
            f"""
            CREATE POLICY {table}_tenant_isolation ON {table}
            USING (organization_id = NULLIF(current_setting('app.organization_id', true), ''))
            WITH CHECK (
                organization_id = NULLIF(current_setting('app.organization_id', true), '')
            )
            """
        )


def downgrade() -> None:
    """Drop policies and tables in dependency order."""

    for table in _TENANT_TABLES:
        op.execute(f"DROP POLICY IF EXISTS {table}_tenant_isolation ON {table}")

    op.execute("DROP TABLE IF EXISTS claims_audit")
    op.execute("DROP TABLE IF EXISTS patient_histories")
    op.execute("DROP TABLE IF EXISTS claims")
    op.execute("DROP TABLE IF EXISTS organizations")
