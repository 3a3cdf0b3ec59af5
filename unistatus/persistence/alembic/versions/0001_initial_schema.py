"""initial schema

Revision ID: 0001_initial_schema
Revises:
Create Date: 2026-10-18 09:00:00.000000
"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision = "0001_initial_schema"
down_revision = None
branch_labels = None
depends_on = None


def _timestamps(*, updated: bool = True) -> list[sa.Column]:
    columns = [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    ]
    if updated:
        columns.append(
            sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False)
        )
    return columns


def _rollup_columns() -> list[sa.Column]:
    # Hourly and daily rollups share the same aggregate layout.
    return [
        sa.Column("avg_response_time_ms", sa.Float(), nullable=True),
        sa.Column("min_response_time_ms", sa.Integer(), nullable=True),
        sa.Column("max_response_time_ms", sa.Integer(), nullable=True),
        sa.Column("p50_response_time_ms", sa.Integer(), nullable=True),
        sa.Column("p75_response_time_ms", sa.Integer(), nullable=True),
        sa.Column("p90_response_time_ms", sa.Integer(), nullable=True),
        sa.Column("p95_response_time_ms", sa.Integer(), nullable=True),
        sa.Column("p99_response_time_ms", sa.Integer(), nullable=True),
        sa.Column("success_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("degraded_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("failure_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("uptime_percentage", sa.Float(), nullable=True),
    ]


def upgrade() -> None:
    op.create_table(
        "organizations",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("slug", sa.String(), nullable=False, unique=True),
        sa.Column("settings_json", postgresql.JSONB(), nullable=True),
        *_timestamps(),
    )

    op.create_table(
        "organization_members",
        sa.Column("id", sa.String(), primary_key=True),
        # Avoid index=True here because we create explicit indexes below.
        sa.Column(
            "organization_id",
            sa.String(),
            sa.ForeignKey("organizations.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("email", sa.String(), nullable=False),
        sa.Column("display_name", sa.String(), nullable=True),
        sa.Column("external_subject", sa.String(), nullable=True),
        sa.Column("role", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False, server_default="active"),
        sa.Column("last_login_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("organization_id", "email", name="uq_organization_members_email"),
    )
    op.create_index("ix_organization_members_organization_id", "organization_members", ["organization_id"])
    op.create_index("ix_organization_members_external_subject", "organization_members", ["external_subject"])
    op.create_index("ix_organization_members_org_role", "organization_members", ["organization_id", "role"])

    op.create_table(
        "api_keys",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column(
            "member_id",
            sa.String(),
            sa.ForeignKey("organization_members.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "organization_id",
            sa.String(),
            sa.ForeignKey("organizations.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("key_prefix", sa.String(), nullable=False),
        sa.Column("key_hash", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_used_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("revoked_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(updated=False),
    )
    op.create_index("ix_api_keys_member_id", "api_keys", ["member_id"])
    op.create_index("ix_api_keys_organization_id", "api_keys", ["organization_id"])
    op.create_index("ix_api_keys_key_hash", "api_keys", ["key_hash"], unique=True)
    op.create_index("ix_api_keys_expires_at", "api_keys", ["expires_at"])

    op.create_table(
        "sso_providers",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column(
            "organization_id",
            sa.String(),
            sa.ForeignKey("organizations.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("type", sa.String(), nullable=False, server_default="oidc"),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("issuer", sa.String(), nullable=False),
        sa.Column("client_id", sa.String(), nullable=False),
        sa.Column("client_secret_ref", sa.String(), nullable=False),
        sa.Column("auth_url", sa.String(), nullable=False),
        sa.Column("token_url", sa.String(), nullable=False),
        sa.Column("jwks_url", sa.String(), nullable=False),
        sa.Column("scopes_json", postgresql.JSONB(), nullable=True),
        sa.Column("enabled", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("group_role_mapping", postgresql.JSONB(), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_sso_providers_organization_id", "sso_providers", ["organization_id"])
    op.create_index("ix_sso_providers_org_enabled", "sso_providers", ["organization_id", "enabled"])

    op.create_table(
        "sso_sessions",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column(
            "organization_id",
            sa.String(),
            sa.ForeignKey("organizations.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "member_id",
            sa.String(),
            sa.ForeignKey("organization_members.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "provider_id",
            sa.String(),
            sa.ForeignKey("sso_providers.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("token_prefix", sa.String(), nullable=False),
        sa.Column("token_hash", sa.String(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("last_seen_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("revoked_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_sso_sessions_organization_id", "sso_sessions", ["organization_id"])
    op.create_index("ix_sso_sessions_member_id", "sso_sessions", ["member_id"])
    op.create_index("ix_sso_sessions_token_hash", "sso_sessions", ["token_hash"], unique=True)

    op.create_table(
        "organization_domains",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column(
            "organization_id",
            sa.String(),
            sa.ForeignKey("organizations.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("domain", sa.String(), nullable=False, unique=True),
        sa.Column("verified", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("verification_token", sa.String(), nullable=False),
        sa.Column("verified_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("auto_join_enabled", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("auto_join_role", sa.String(), nullable=False, server_default="member"),
        sa.Column(
            "sso_provider_id",
            sa.String(),
            sa.ForeignKey("sso_providers.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("sso_required", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        *_timestamps(),
    )
    op.create_index("ix_organization_domains_organization_id", "organization_domains", ["organization_id"])

    op.create_table(
        "audit_events",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("organization_id", sa.String(), nullable=True),
        sa.Column("actor_type", sa.String(), nullable=False),
        sa.Column("actor_id", sa.String(), nullable=True),
        sa.Column("actor_role", sa.String(), nullable=True),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("outcome", sa.String(), nullable=False),
        sa.Column("resource_type", sa.String(), nullable=True),
        sa.Column("resource_id", sa.String(), nullable=True),
        sa.Column("request_id", sa.String(), nullable=True),
        sa.Column("ip_address", sa.String(), nullable=True),
        sa.Column("user_agent", sa.String(), nullable=True),
        sa.Column("metadata_json", postgresql.JSONB(), nullable=True),
        sa.Column("error_code", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_audit_events_occurred_at", "audit_events", ["occurred_at"])
    op.create_index("ix_audit_events_organization_id", "audit_events", ["organization_id"])
    op.create_index("ix_audit_events_event_type", "audit_events", ["event_type"])
    op.create_index("ix_audit_events_request_id", "audit_events", ["request_id"])
    op.create_index(
        "ix_audit_events_org_occurred_at",
        "audit_events",
        ["organization_id", sa.text("occurred_at DESC")],
    )
    op.create_index(
        "ix_audit_events_event_type_occurred_at",
        "audit_events",
        ["event_type", sa.text("occurred_at DESC")],
    )

    op.create_table(
        "licenses",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column(
            "organization_id",
            sa.String(),
            sa.ForeignKey("organizations.id", ondelete="CASCADE"),
            nullable=False,
            unique=True,
        ),
        sa.Column("license_id", sa.String(), nullable=False),
        sa.Column("plan", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False, server_default="active"),
        sa.Column("key_hash", sa.String(), nullable=False),
        sa.Column("valid_from", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("entitlements_json", postgresql.JSONB(), nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column("licensee_email", sa.String(), nullable=True),
        sa.Column("licensee_name", sa.String(), nullable=True),
        sa.Column("last_validated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_validation_result", sa.String(), nullable=True),
        sa.Column("validation_failure_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("grace_period_status", sa.String(), nullable=False, server_default="none"),
        sa.Column("grace_period_started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("grace_period_ends_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_licenses_license_id", "licenses", ["license_id"])

    op.create_table(
        "license_validations",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("license_id", sa.String(), sa.ForeignKey("licenses.id", ondelete="CASCADE"), nullable=False),
        sa.Column("validation_type", sa.String(), nullable=False),
        sa.Column("success", sa.Boolean(), nullable=False),
        sa.Column("error_code", sa.String(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("validated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_license_validations_license_id", "license_validations", ["license_id"])

    op.create_table(
        "organization_feature_overrides",
        sa.Column(
            "organization_id",
            sa.String(),
            sa.ForeignKey("organizations.id", ondelete="CASCADE"),
            primary_key=True,
        ),
        sa.Column("feature_key", sa.String(), primary_key=True),
        sa.Column("enabled", sa.Boolean(), nullable=True),
        sa.Column("config_json", postgresql.JSONB(), nullable=True),
        *_timestamps(updated=False),
    )

    op.create_table(
        "monitors",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column(
            "organization_id",
            sa.String(),
            sa.ForeignKey("organizations.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("type", sa.String(), nullable=False),
        sa.Column("url", sa.String(), nullable=True),
        sa.Column("method", sa.String(), nullable=False, server_default="GET"),
        sa.Column("headers_json", postgresql.JSONB(), nullable=True),
        sa.Column("body", sa.Text(), nullable=True),
        sa.Column("interval_seconds", sa.Integer(), nullable=False, server_default="60"),
        sa.Column("timeout_ms", sa.Integer(), nullable=False, server_default="30000"),
        sa.Column("regions_json", postgresql.JSONB(), nullable=False, server_default=sa.text("'[\"uk\"]'::jsonb")),
        sa.Column("assertions_json", postgresql.JSONB(), nullable=True),
        sa.Column("config_json", postgresql.JSONB(), nullable=True),
        sa.Column("degraded_threshold_ms", sa.Integer(), nullable=True),
        sa.Column("degraded_after_count", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("down_after_count", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("consecutive_degraded_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("consecutive_failure_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("heartbeat_token", sa.String(), nullable=True, unique=True),
        sa.Column("paused", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("status", sa.String(), nullable=False, server_default="pending"),
        sa.Column("last_checked_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("next_check_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_by", sa.String(), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_monitors_organization_id", "monitors", ["organization_id"])
    # Scheduler scans unpaused monitors by next_check_at.
    op.create_index("ix_monitors_due", "monitors", ["paused", "next_check_at"])

    op.create_table(
        "heartbeat_pings",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("monitor_id", sa.String(), sa.ForeignKey("monitors.id", ondelete="CASCADE"), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("duration_ms", sa.Integer(), nullable=True),
        sa.Column("exit_code", sa.Integer(), nullable=True),
        sa.Column("metadata_json", postgresql.JSONB(), nullable=True),
        *_timestamps(updated=False),
    )
    op.create_index("ix_heartbeat_pings_monitor_id", "heartbeat_pings", ["monitor_id"])
    op.create_index(
        "ix_heartbeat_pings_monitor_created",
        "heartbeat_pings",
        ["monitor_id", sa.text("created_at DESC")],
    )

    op.create_table(
        "check_results",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("monitor_id", sa.String(), sa.ForeignKey("monitors.id", ondelete="CASCADE"), nullable=False),
        sa.Column("region", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("response_time_ms", sa.Integer(), nullable=True),
        sa.Column("status_code", sa.Integer(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("error_code", sa.String(), nullable=True),
        sa.Column("headers_json", postgresql.JSONB(), nullable=True),
        sa.Column("certificate_info", postgresql.JSONB(), nullable=True),
        sa.Column("metadata_json", postgresql.JSONB(), nullable=True),
        sa.Column("probe_id", sa.String(), nullable=True),
        *_timestamps(updated=False),
    )
    op.create_index(
        "ix_check_results_monitor_created",
        "check_results",
        ["monitor_id", sa.text("created_at DESC")],
    )
    # Retention pruning deletes by created_at alone.
    op.create_index("ix_check_results_created_at", "check_results", ["created_at"])

    op.create_table(
        "check_results_hourly",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("monitor_id", sa.String(), sa.ForeignKey("monitors.id", ondelete="CASCADE"), nullable=False),
        sa.Column("region", sa.String(), nullable=False),
        sa.Column("hour", sa.DateTime(timezone=True), nullable=False),
        *_rollup_columns(),
        *_timestamps(updated=False),
        sa.UniqueConstraint("monitor_id", "region", "hour", name="uq_check_results_hourly_bucket"),
    )
    op.create_index("ix_check_results_hourly_monitor_hour", "check_results_hourly", ["monitor_id", "hour"])

    op.create_table(
        "check_results_daily",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("monitor_id", sa.String(), sa.ForeignKey("monitors.id", ondelete="CASCADE"), nullable=False),
        sa.Column("region", sa.String(), nullable=False),
        sa.Column("date", sa.DateTime(timezone=True), nullable=False),
        *_rollup_columns(),
        *_timestamps(updated=False),
        sa.UniqueConstraint("monitor_id", "region", "date", name="uq_check_results_daily_bucket"),
    )
    op.create_index("ix_check_results_daily_monitor_date", "check_results_daily", ["monitor_id", "date"])

    op.create_table(
        "alert_channels",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column(
            "organization_id",
            sa.String(),
            sa.ForeignKey("organizations.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("type", sa.String(), nullable=False),
        sa.Column("config_json", postgresql.JSONB(), nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column("enabled", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        *_timestamps(),
    )
    op.create_index("ix_alert_channels_organization_id", "alert_channels", ["organization_id"])

    # Rotations precede policies because policies may page a rotation.
    op.create_table(
        "oncall_rotations",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column(
            "organization_id",
            sa.String(),
            sa.ForeignKey("organizations.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("timezone", sa.String(), nullable=False, server_default="UTC"),
        sa.Column("rotation_start", sa.DateTime(timezone=True), nullable=False),
        sa.Column("shift_duration_minutes", sa.Integer(), nullable=False, server_default="720"),
        sa.Column("participants_json", postgresql.JSONB(), nullable=False, server_default=sa.text("'[]'::jsonb")),
        sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        *_timestamps(),
    )
    op.create_index("ix_oncall_rotations_organization_id", "oncall_rotations", ["organization_id"])

    op.create_table(
        "oncall_overrides",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column(
            "rotation_id",
            sa.String(),
            sa.ForeignKey("oncall_rotations.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("member_id", sa.String(), nullable=False),
        sa.Column("start_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("end_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("reason", sa.Text(), nullable=True),
        *_timestamps(updated=False),
    )
    op.create_index("ix_oncall_overrides_rotation_id", "oncall_overrides", ["rotation_id"])

    op.create_table(
        "alert_policies",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column(
            "organization_id",
            sa.String(),
            sa.ForeignKey("organizations.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("enabled", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column(
            "conditions_json",
            postgresql.JSONB(),
            nullable=False,
            server_default=sa.text("'{\"consecutiveFailures\": 2}'::jsonb"),
        ),
        sa.Column("channels_json", postgresql.JSONB(), nullable=False, server_default=sa.text("'[]'::jsonb")),
        sa.Column("cooldown_minutes", sa.Integer(), nullable=False, server_default="15"),
        sa.Column(
            "oncall_rotation_id",
            sa.String(),
            sa.ForeignKey("oncall_rotations.id", ondelete="SET NULL"),
            nullable=True,
        ),
        *_timestamps(),
    )
    op.create_index("ix_alert_policies_organization_id", "alert_policies", ["organization_id"])

    op.create_table(
        "monitor_alert_policies",
        sa.Column("monitor_id", sa.String(), sa.ForeignKey("monitors.id", ondelete="CASCADE"), primary_key=True),
        sa.Column(
            "policy_id",
            sa.String(),
            sa.ForeignKey("alert_policies.id", ondelete="CASCADE"),
            primary_key=True,
        ),
        *_timestamps(updated=False),
    )
    op.create_index("ix_monitor_alert_policies_policy", "monitor_alert_policies", ["policy_id"])

    op.create_table(
        "alert_history",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column(
            "organization_id",
            sa.String(),
            sa.ForeignKey("organizations.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("monitor_id", sa.String(), sa.ForeignKey("monitors.id", ondelete="CASCADE"), nullable=False),
        sa.Column(
            "policy_id",
            sa.String(),
            sa.ForeignKey("alert_policies.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("status", sa.String(), nullable=False, server_default="triggered"),
        sa.Column("triggered_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("acknowledged_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("acknowledged_by", sa.String(), nullable=True),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("resolved_by", sa.String(), nullable=True),
        sa.Column("metadata_json", postgresql.JSONB(), nullable=True),
        *_timestamps(updated=False),
    )
    op.create_index("ix_alert_history_organization_id", "alert_history", ["organization_id"])
    op.create_index(
        "ix_alert_history_policy_monitor_triggered",
        "alert_history",
        ["policy_id", "monitor_id", sa.text("triggered_at DESC")],
    )
    op.create_index("ix_alert_history_org_status", "alert_history", ["organization_id", "status"])

    op.create_table(
        "notification_logs",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column(
            "alert_history_id",
            sa.String(),
            sa.ForeignKey("alert_history.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "channel_id",
            sa.String(),
            sa.ForeignKey("alert_channels.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("success", sa.Boolean(), nullable=False),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("response_code", sa.Integer(), nullable=True),
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("sent_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_notification_logs_alert_history_id", "notification_logs", ["alert_history_id"])

    op.create_table(
        "status_pages",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column(
            "organization_id",
            sa.String(),
            sa.ForeignKey("organizations.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("slug", sa.String(), nullable=False, unique=True),
        sa.Column("custom_domain", sa.String(), nullable=True, unique=True),
        sa.Column("published", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("password_hash", sa.String(), nullable=True),
        sa.Column("logo", sa.String(), nullable=True),
        sa.Column("favicon", sa.String(), nullable=True),
        sa.Column("theme_json", postgresql.JSONB(), nullable=True),
        sa.Column("settings_json", postgresql.JSONB(), nullable=False, server_default=sa.text("'{}'::jsonb")),
        *_timestamps(),
    )
    op.create_index("ix_status_pages_organization_id", "status_pages", ["organization_id"])

    op.create_table(
        "status_page_groups",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column(
            "status_page_id",
            sa.String(),
            sa.ForeignKey("status_pages.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("display_order", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("collapsed", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        *_timestamps(updated=False),
    )
    op.create_index("ix_status_page_groups_status_page_id", "status_page_groups", ["status_page_id"])

    op.create_table(
        "status_page_monitors",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column(
            "status_page_id",
            sa.String(),
            sa.ForeignKey("status_pages.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("monitor_id", sa.String(), sa.ForeignKey("monitors.id", ondelete="CASCADE"), nullable=False),
        sa.Column("display_name", sa.String(), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("display_order", sa.Integer(), nullable=False, server_default="0"),
        sa.Column(
            "group_id",
            sa.String(),
            sa.ForeignKey("status_page_groups.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("show_response_time", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        *_timestamps(updated=False),
        sa.UniqueConstraint("status_page_id", "monitor_id", name="uq_status_page_monitors_page_monitor"),
    )
    op.create_index("ix_status_page_monitors_status_page_id", "status_page_monitors", ["status_page_id"])

    op.create_table(
        "subscribers",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column(
            "status_page_id",
            sa.String(),
            sa.ForeignKey("status_pages.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("email", sa.String(), nullable=False),
        sa.Column("verified", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("verification_token", sa.String(), nullable=True, unique=True),
        sa.Column("unsubscribe_token", sa.String(), nullable=False, unique=True),
        *_timestamps(updated=False),
        sa.UniqueConstraint("status_page_id", "email", name="uq_subscribers_page_email"),
    )
    op.create_index("ix_subscribers_status_page_id", "subscribers", ["status_page_id"])

    op.create_table(
        "incidents",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column(
            "organization_id",
            sa.String(),
            sa.ForeignKey("organizations.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("title", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False, server_default="investigating"),
        sa.Column("severity", sa.String(), nullable=False, server_default="minor"),
        sa.Column("message", sa.Text(), nullable=True),
        sa.Column(
            "affected_monitors_json",
            postgresql.JSONB(),
            nullable=False,
            server_default=sa.text("'[]'::jsonb"),
        ),
        sa.Column("started_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_by", sa.String(), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_incidents_organization_id", "incidents", ["organization_id"])
    op.create_index("ix_incidents_org_status", "incidents", ["organization_id", "status"])

    op.create_table(
        "incident_updates",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("incident_id", sa.String(), sa.ForeignKey("incidents.id", ondelete="CASCADE"), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("created_by", sa.String(), nullable=True),
        *_timestamps(updated=False),
    )
    op.create_index("ix_incident_updates_incident_id", "incident_updates", ["incident_id"])

    op.create_table(
        "maintenance_windows",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column(
            "organization_id",
            sa.String(),
            sa.ForeignKey("organizations.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column(
            "affected_monitors_json",
            postgresql.JSONB(),
            nullable=False,
            server_default=sa.text("'[]'::jsonb"),
        ),
        sa.Column("starts_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("ends_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("timezone", sa.String(), nullable=False, server_default="UTC"),
        sa.Column(
            "recurrence_json",
            postgresql.JSONB(),
            nullable=False,
            server_default=sa.text("'{\"type\": \"none\"}'::jsonb"),
        ),
        sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("created_by", sa.String(), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_maintenance_windows_organization_id", "maintenance_windows", ["organization_id"])
    op.create_index("ix_maintenance_windows_active_range", "maintenance_windows", ["active", "starts_at"])

    op.create_table(
        "probes",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column(
            "organization_id",
            sa.String(),
            sa.ForeignKey("organizations.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("region", sa.String(), nullable=True),
        sa.Column("status", sa.String(), nullable=False, server_default="pending"),
        sa.Column("auth_token_hash", sa.String(), nullable=False),
        sa.Column("auth_token_prefix", sa.String(), nullable=False),
        sa.Column("version", sa.String(), nullable=True),
        sa.Column("hostname", sa.String(), nullable=True),
        sa.Column("last_heartbeat_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("metadata_json", postgresql.JSONB(), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_probes_organization_id", "probes", ["organization_id"])
    op.create_index("ix_probes_auth_token_hash", "probes", ["auth_token_hash"], unique=True)

    op.create_table(
        "probe_assignments",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("probe_id", sa.String(), sa.ForeignKey("probes.id", ondelete="CASCADE"), nullable=False),
        sa.Column("monitor_id", sa.String(), sa.ForeignKey("monitors.id", ondelete="CASCADE"), nullable=False),
        sa.Column("priority", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("exclusive", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        *_timestamps(updated=False),
        sa.UniqueConstraint("probe_id", "monitor_id", name="uq_probe_assignments_probe_monitor"),
    )
    op.create_index("ix_probe_assignments_probe_id", "probe_assignments", ["probe_id"])
    op.create_index("ix_probe_assignments_monitor_id", "probe_assignments", ["monitor_id"])

    op.create_table(
        "probe_pending_jobs",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("probe_id", sa.String(), sa.ForeignKey("probes.id", ondelete="CASCADE"), nullable=False),
        sa.Column("monitor_id", sa.String(), sa.ForeignKey("monitors.id", ondelete="CASCADE"), nullable=False),
        sa.Column("job_data", postgresql.JSONB(), nullable=False),
        sa.Column("status", sa.String(), nullable=False, server_default="pending"),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("claimed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(updated=False),
    )
    op.create_index(
        "ix_probe_pending_jobs_probe_status",
        "probe_pending_jobs",
        ["probe_id", "status", "created_at"],
    )

    op.create_table(
        "probe_heartbeats",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("probe_id", sa.String(), sa.ForeignKey("probes.id", ondelete="CASCADE"), nullable=False),
        sa.Column("metrics_json", postgresql.JSONB(), nullable=True),
        *_timestamps(updated=False),
    )
    op.create_index("ix_probe_heartbeats_probe_id", "probe_heartbeats", ["probe_id"])
    op.create_index("ix_probe_heartbeats_created_at", "probe_heartbeats", ["created_at"])


def downgrade() -> None:
    # Drop in reverse dependency order; indexes go with their tables.
    for table in (
        "probe_heartbeats",
        "probe_pending_jobs",
        "probe_assignments",
        "probes",
        "maintenance_windows",
        "incident_updates",
        "incidents",
        "subscribers",
        "status_page_monitors",
        "status_page_groups",
        "status_pages",
        "notification_logs",
        "alert_history",
        "monitor_alert_policies",
        "alert_policies",
        "oncall_overrides",
        "oncall_rotations",
        "alert_channels",
        "check_results_daily",
        "check_results_hourly",
        "check_results",
        "heartbeat_pings",
        "monitors",
        "organization_feature_overrides",
        "license_validations",
        "licenses",
        "audit_events",
        "organization_domains",
        "sso_sessions",
        "sso_providers",
        "api_keys",
        "organization_members",
        "organizations",
    ):
        op.drop_table(table)
