"""Integrations schema (oauth_states, integrations, ticket_cache)

Revision ID: 20261019_1200
Revises:
Create Date: 2026-10-19

"""

from __future__ import annotations

from alembic import op

revision = "20261019_1200"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.execute("CREATE EXTENSION IF NOT EXISTS pgcrypto;")

    op.execute(
        """
CREATE TABLE IF NOT EXISTS oauth_states (
  id uuid PRIMARY KEY DEFAULT gen_random_uuid(),
  state text NOT NULL,
  provider text NOT NULL,
  user_id text NOT NULL,
  pkce_verifier text,
  created_at timestamptz NOT NULL DEFAULT now(),
  expires_at timestamptz NOT NULL,
  CONSTRAINT oauth_states_state_provider_key UNIQUE (state, provider)
);
"""
    )
    op.execute("CREATE INDEX IF NOT EXISTS oauth_states_expires_idx ON oauth_states (expires_at);")

    op.execute(
        """
CREATE TABLE IF NOT EXISTS integrations (
  id uuid PRIMARY KEY DEFAULT gen_random_uuid(),
  organization_id text NOT NULL,
  type text NOT NULL,
  external_id text,
  encrypted_credentials jsonb,
  config jsonb NOT NULL DEFAULT '{}'::jsonb,
  is_active boolean NOT NULL DEFAULT true,
  last_sync timestamptz,
  created_at timestamptz NOT NULL DEFAULT now(),
  updated_at timestamptz,
  CONSTRAINT integrations_org_type_key UNIQUE (organization_id, type),
  CONSTRAINT integrations_type_check CHECK (type IN ('github','jira','linear'))
);
"""
    )

    op.execute(
        """
CREATE TABLE IF NOT EXISTS ticket_cache (
  id uuid PRIMARY KEY DEFAULT gen_random_uuid(),
  organization_id text NOT NULL,
  integration_type text NOT NULL,
  ticket_id text NOT NULL,
  title text,
  description text,
  status text,
  assignee text,
  url text,
  metadata jsonb NOT NULL DEFAULT '{}'::jsonb,
  cached_at timestamptz NOT NULL DEFAULT now(),
  created_at timestamptz NOT NULL DEFAULT now(),
  updated_at timestamptz,
  CONSTRAINT ticket_cache_org_type_ticket_key UNIQUE (organization_id, integration_type, ticket_id)
);
"""
    )
    op.execute(
        "CREATE INDEX IF NOT EXISTS ticket_cache_org_cached_idx ON ticket_cache (organization_id, cached_at DESC);"
    )


def downgrade() -> None:
    op.execute("DROP TABLE IF EXISTS ticket_cache;")
    op.execute("DROP TABLE IF EXISTS integrations;")
    op.execute("DROP TABLE IF EXISTS oauth_states;")
