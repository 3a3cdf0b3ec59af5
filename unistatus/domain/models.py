from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import (
    BigInteger,
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    func,
    Index,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    pass


class Organization(Base):
    __tablename__ = "organizations"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    name: Mapped[str] = mapped_column(String)
    slug: Mapped[str] = mapped_column(String, unique=True)
    settings_json: Mapped[dict[str, Any] | None] = mapped_column(JSONB, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class OrganizationMember(Base):
    __tablename__ = "organization_members"
    __table_args__ = (
        UniqueConstraint("organization_id", "email", name="uq_organization_members_email"),
        Index("ix_organization_members_org_role", "organization_id", "role"),
    )

    # Organization-bound human identities used by API keys, SSO sessions and on-call.
    id: Mapped[str] = mapped_column(String, primary_key=True)
    organization_id: Mapped[str] = mapped_column(
        String, ForeignKey("organizations.id", ondelete="CASCADE"), index=True
    )
    email: Mapped[str] = mapped_column(String)
    display_name: Mapped[str | None] = mapped_column(String, nullable=True)
    # IdP subject for SSO logins; null for key-only members.
    external_subject: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    # Persist RBAC role as a simple string for fast lookup and migration safety.
    role: Mapped[str] = mapped_column(String)
    # Track lifecycle state to avoid hard deletes of members referenced by history.
    status: Mapped[str] = mapped_column(String, default="active")
    last_login_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class ApiKey(Base):
    __tablename__ = "api_keys"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    member_id: Mapped[str] = mapped_column(
        String, ForeignKey("organization_members.id", ondelete="CASCADE"), index=True
    )
    organization_id: Mapped[str] = mapped_column(
        String, ForeignKey("organizations.id", ondelete="CASCADE"), index=True
    )
    # Keep a short prefix for operator display without exposing the secret.
    key_prefix: Mapped[str] = mapped_column(String)
    # Store only the hashed key to avoid plaintext credentials at rest.
    key_hash: Mapped[str] = mapped_column(String, unique=True, index=True)
    name: Mapped[str | None] = mapped_column(String, nullable=True)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_used_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    revoked_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class SsoProvider(Base):
    __tablename__ = "sso_providers"
    __table_args__ = (
        Index("ix_sso_providers_org_enabled", "organization_id", "enabled"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    organization_id: Mapped[str] = mapped_column(
        String, ForeignKey("organizations.id", ondelete="CASCADE"), index=True
    )
    type: Mapped[str] = mapped_column(String, default="oidc")
    name: Mapped[str] = mapped_column(String)
    issuer: Mapped[str] = mapped_column(String)
    client_id: Mapped[str] = mapped_column(String)
    # Store only a secret reference for external resolution (no plaintext).
    client_secret_ref: Mapped[str] = mapped_column(String)
    auth_url: Mapped[str] = mapped_column(String)
    token_url: Mapped[str] = mapped_column(String)
    jwks_url: Mapped[str] = mapped_column(String)
    scopes_json: Mapped[list[str] | None] = mapped_column(JSONB, nullable=True)
    enabled: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    # {enabled, groupsClaim, mappings: [{group, role}], defaultRole, syncOnLogin}
    group_role_mapping: Mapped[dict[str, Any] | None] = mapped_column(JSONB, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class SsoSession(Base):
    __tablename__ = "sso_sessions"

    # Persist hashed SSO session tokens for revocation and auditing.
    id: Mapped[str] = mapped_column(String, primary_key=True)
    organization_id: Mapped[str] = mapped_column(
        String, ForeignKey("organizations.id", ondelete="CASCADE"), index=True
    )
    member_id: Mapped[str] = mapped_column(
        String, ForeignKey("organization_members.id", ondelete="CASCADE"), index=True
    )
    provider_id: Mapped[str | None] = mapped_column(
        String, ForeignKey("sso_providers.id", ondelete="SET NULL"), nullable=True
    )
    token_prefix: Mapped[str] = mapped_column(String)
    token_hash: Mapped[str] = mapped_column(String, unique=True, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    last_seen_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    revoked_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class OrganizationDomain(Base):
    __tablename__ = "organization_domains"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    organization_id: Mapped[str] = mapped_column(
        String, ForeignKey("organizations.id", ondelete="CASCADE"), index=True
    )
    # Domains are claimed globally so one verified domain maps to one organization.
    domain: Mapped[str] = mapped_column(String, unique=True)
    verified: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    verification_token: Mapped[str] = mapped_column(String)
    verified_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    auto_join_enabled: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    auto_join_role: Mapped[str] = mapped_column(String, default="member")
    sso_provider_id: Mapped[str | None] = mapped_column(
        String, ForeignKey("sso_providers.id", ondelete="SET NULL"), nullable=True
    )
    sso_required: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class AuditEvent(Base):
    __tablename__ = "audit_events"

    # Use a monotonic numeric id for efficient pagination and ordering.
    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    # Null organization_id marks pre-auth or system events.
    organization_id: Mapped[str | None] = mapped_column(String, index=True, nullable=True)
    actor_type: Mapped[str] = mapped_column(String)
    actor_id: Mapped[str | None] = mapped_column(String, nullable=True)
    actor_role: Mapped[str | None] = mapped_column(String, nullable=True)
    event_type: Mapped[str] = mapped_column(String, index=True)
    outcome: Mapped[str] = mapped_column(String)
    resource_type: Mapped[str | None] = mapped_column(String, nullable=True)
    resource_id: Mapped[str | None] = mapped_column(String, nullable=True)
    request_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    ip_address: Mapped[str | None] = mapped_column(String, nullable=True)
    user_agent: Mapped[str | None] = mapped_column(String, nullable=True)
    # Keep metadata sanitized and JSONB for flexible investigation.
    metadata_json: Mapped[dict[str, Any] | None] = mapped_column(JSONB, default=dict)
    error_code: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class License(Base):
    __tablename__ = "licenses"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    # One license row per organization; reactivation replaces it in place.
    organization_id: Mapped[str] = mapped_column(
        String, ForeignKey("organizations.id", ondelete="CASCADE"), unique=True
    )
    license_id: Mapped[str] = mapped_column(String, index=True)
    plan: Mapped[str] = mapped_column(String)
    status: Mapped[str] = mapped_column(String, default="active")
    # Hash of the raw key so the signed payload is never re-exposed.
    key_hash: Mapped[str] = mapped_column(String)
    valid_from: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    entitlements_json: Mapped[dict[str, Any]] = mapped_column(JSONB, default=dict)
    licensee_email: Mapped[str | None] = mapped_column(String, nullable=True)
    licensee_name: Mapped[str | None] = mapped_column(String, nullable=True)
    last_validated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_validation_result: Mapped[str | None] = mapped_column(String, nullable=True)
    validation_failure_count: Mapped[int] = mapped_column(Integer, default=0)
    grace_period_status: Mapped[str] = mapped_column(String, default="none")
    grace_period_started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    grace_period_ends_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class LicenseValidation(Base):
    __tablename__ = "license_validations"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    license_id: Mapped[str] = mapped_column(String, ForeignKey("licenses.id", ondelete="CASCADE"), index=True)
    validation_type: Mapped[str] = mapped_column(String)
    success: Mapped[bool] = mapped_column(Boolean)
    error_code: Mapped[str | None] = mapped_column(String, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    validated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class OrganizationFeatureOverride(Base):
    __tablename__ = "organization_feature_overrides"

    # Allow organization-specific overrides to supersede license entitlements.
    organization_id: Mapped[str] = mapped_column(
        String, ForeignKey("organizations.id", ondelete="CASCADE"), primary_key=True
    )
    feature_key: Mapped[str] = mapped_column(String, primary_key=True)
    enabled: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    config_json: Mapped[dict[str, Any] | None] = mapped_column(JSONB, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class Monitor(Base):
    __tablename__ = "monitors"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    organization_id: Mapped[str] = mapped_column(
        String, ForeignKey("organizations.id", ondelete="CASCADE"), index=True
    )
    name: Mapped[str] = mapped_column(String)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    type: Mapped[str] = mapped_column(String)
    url: Mapped[str | None] = mapped_column(String, nullable=True)
    method: Mapped[str] = mapped_column(String, default="GET")
    headers_json: Mapped[dict[str, str] | None] = mapped_column(JSONB, nullable=True)
    body: Mapped[str | None] = mapped_column(Text, nullable=True)
    interval_seconds: Mapped[int] = mapped_column(Integer, default=60)
    timeout_ms: Mapped[int] = mapped_column(Integer, default=30000)
    regions_json: Mapped[list[str]] = mapped_column(JSONB, default=lambda: ["uk"])
    # {statusCode: [...], responseTime, headers: {...}, body: {contains, notContains, regex}}
    assertions_json: Mapped[dict[str, Any] | None] = mapped_column(JSONB, nullable=True)
    # Type-specific settings keyed by monitor type (dns/ssl/tcp/heartbeat).
    config_json: Mapped[dict[str, Any] | None] = mapped_column(JSONB, nullable=True)
    degraded_threshold_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    degraded_after_count: Mapped[int] = mapped_column(Integer, default=1)
    down_after_count: Mapped[int] = mapped_column(Integer, default=1)
    consecutive_degraded_count: Mapped[int] = mapped_column(Integer, default=0)
    consecutive_failure_count: Mapped[int] = mapped_column(Integer, default=0)
    heartbeat_token: Mapped[str | None] = mapped_column(String, nullable=True, unique=True)
    paused: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    status: Mapped[str] = mapped_column(String, default="pending")
    last_checked_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    next_check_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_by: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class HeartbeatPing(Base):
    __tablename__ = "heartbeat_pings"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    monitor_id: Mapped[str] = mapped_column(String, ForeignKey("monitors.id", ondelete="CASCADE"), index=True)
    # start | complete | fail as reported by the pinging job.
    status: Mapped[str] = mapped_column(String)
    duration_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    exit_code: Mapped[int | None] = mapped_column(Integer, nullable=True)
    metadata_json: Mapped[dict[str, Any] | None] = mapped_column(JSONB, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class CheckResult(Base):
    __tablename__ = "check_results"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    monitor_id: Mapped[str] = mapped_column(String, ForeignKey("monitors.id", ondelete="CASCADE"))
    region: Mapped[str] = mapped_column(String)
    status: Mapped[str] = mapped_column(String)
    response_time_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    status_code: Mapped[int | None] = mapped_column(Integer, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    error_code: Mapped[str | None] = mapped_column(String, nullable=True)
    headers_json: Mapped[dict[str, str] | None] = mapped_column(JSONB, nullable=True)
    certificate_info: Mapped[dict[str, Any] | None] = mapped_column(JSONB, nullable=True)
    metadata_json: Mapped[dict[str, Any] | None] = mapped_column(JSONB, nullable=True)
    # Set when a private probe produced the result.
    probe_id: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class CheckResultHourly(Base):
    __tablename__ = "check_results_hourly"
    __table_args__ = (
        UniqueConstraint("monitor_id", "region", "hour", name="uq_check_results_hourly_bucket"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    monitor_id: Mapped[str] = mapped_column(String, ForeignKey("monitors.id", ondelete="CASCADE"))
    region: Mapped[str] = mapped_column(String)
    hour: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    avg_response_time_ms: Mapped[float | None] = mapped_column(Float, nullable=True)
    min_response_time_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    max_response_time_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    p50_response_time_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    p75_response_time_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    p90_response_time_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    p95_response_time_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    p99_response_time_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    success_count: Mapped[int] = mapped_column(Integer, default=0)
    degraded_count: Mapped[int] = mapped_column(Integer, default=0)
    failure_count: Mapped[int] = mapped_column(Integer, default=0)
    total_count: Mapped[int] = mapped_column(Integer, default=0)
    uptime_percentage: Mapped[float | None] = mapped_column(Float, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class CheckResultDaily(Base):
    __tablename__ = "check_results_daily"
    __table_args__ = (
        UniqueConstraint("monitor_id", "region", "date", name="uq_check_results_daily_bucket"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    monitor_id: Mapped[str] = mapped_column(String, ForeignKey("monitors.id", ondelete="CASCADE"))
    region: Mapped[str] = mapped_column(String)
    date: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    avg_response_time_ms: Mapped[float | None] = mapped_column(Float, nullable=True)
    min_response_time_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    max_response_time_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    p50_response_time_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    p75_response_time_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    p90_response_time_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    p95_response_time_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    p99_response_time_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    success_count: Mapped[int] = mapped_column(Integer, default=0)
    degraded_count: Mapped[int] = mapped_column(Integer, default=0)
    failure_count: Mapped[int] = mapped_column(Integer, default=0)
    total_count: Mapped[int] = mapped_column(Integer, default=0)
    uptime_percentage: Mapped[float | None] = mapped_column(Float, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class AlertChannel(Base):
    __tablename__ = "alert_channels"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    organization_id: Mapped[str] = mapped_column(
        String, ForeignKey("organizations.id", ondelete="CASCADE"), index=True
    )
    name: Mapped[str] = mapped_column(String)
    type: Mapped[str] = mapped_column(String)
    # Channel-specific destination settings (webhookUrl, email, routingKey, ...).
    config_json: Mapped[dict[str, Any]] = mapped_column(JSONB, default=dict)
    enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class AlertPolicy(Base):
    __tablename__ = "alert_policies"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    organization_id: Mapped[str] = mapped_column(
        String, ForeignKey("organizations.id", ondelete="CASCADE"), index=True
    )
    name: Mapped[str] = mapped_column(String)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    # {consecutiveFailures, failuresInWindow: {count, windowMinutes}, degradedDuration, consecutiveSuccesses}
    conditions_json: Mapped[dict[str, Any]] = mapped_column(JSONB, default=lambda: {"consecutiveFailures": 2})
    channels_json: Mapped[list[str]] = mapped_column(JSONB, default=list)
    cooldown_minutes: Mapped[int] = mapped_column(Integer, default=15)
    oncall_rotation_id: Mapped[str | None] = mapped_column(
        String, ForeignKey("oncall_rotations.id", ondelete="SET NULL"), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class MonitorAlertPolicy(Base):
    __tablename__ = "monitor_alert_policies"

    monitor_id: Mapped[str] = mapped_column(
        String, ForeignKey("monitors.id", ondelete="CASCADE"), primary_key=True
    )
    policy_id: Mapped[str] = mapped_column(
        String, ForeignKey("alert_policies.id", ondelete="CASCADE"), primary_key=True
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class AlertHistory(Base):
    __tablename__ = "alert_history"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    organization_id: Mapped[str] = mapped_column(
        String, ForeignKey("organizations.id", ondelete="CASCADE"), index=True
    )
    monitor_id: Mapped[str] = mapped_column(String, ForeignKey("monitors.id", ondelete="CASCADE"))
    policy_id: Mapped[str] = mapped_column(String, ForeignKey("alert_policies.id", ondelete="CASCADE"))
    # triggered | acknowledged | resolved
    status: Mapped[str] = mapped_column(String, default="triggered")
    triggered_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    acknowledged_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    acknowledged_by: Mapped[str | None] = mapped_column(String, nullable=True)
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    resolved_by: Mapped[str | None] = mapped_column(String, nullable=True)
    metadata_json: Mapped[dict[str, Any] | None] = mapped_column(JSONB, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class NotificationLog(Base):
    __tablename__ = "notification_logs"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    alert_history_id: Mapped[str] = mapped_column(
        String, ForeignKey("alert_history.id", ondelete="CASCADE"), index=True
    )
    # Null channel marks direct on-call pages that bypass configured channels.
    channel_id: Mapped[str | None] = mapped_column(
        String, ForeignKey("alert_channels.id", ondelete="SET NULL"), nullable=True
    )
    success: Mapped[bool] = mapped_column(Boolean)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    response_code: Mapped[int | None] = mapped_column(Integer, nullable=True)
    retry_count: Mapped[int] = mapped_column(Integer, default=0)
    sent_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class OncallRotation(Base):
    __tablename__ = "oncall_rotations"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    organization_id: Mapped[str] = mapped_column(
        String, ForeignKey("organizations.id", ondelete="CASCADE"), index=True
    )
    name: Mapped[str] = mapped_column(String)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    timezone: Mapped[str] = mapped_column(String, default="UTC")
    rotation_start: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    shift_duration_minutes: Mapped[int] = mapped_column(Integer, default=720)
    # Ordered member ids; position determines shift order.
    participants_json: Mapped[list[str]] = mapped_column(JSONB, default=list)
    active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class OncallOverride(Base):
    __tablename__ = "oncall_overrides"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    rotation_id: Mapped[str] = mapped_column(
        String, ForeignKey("oncall_rotations.id", ondelete="CASCADE"), index=True
    )
    member_id: Mapped[str] = mapped_column(String)
    start_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    end_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class StatusPage(Base):
    __tablename__ = "status_pages"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    organization_id: Mapped[str] = mapped_column(
        String, ForeignKey("organizations.id", ondelete="CASCADE"), index=True
    )
    name: Mapped[str] = mapped_column(String)
    slug: Mapped[str] = mapped_column(String, unique=True)
    custom_domain: Mapped[str | None] = mapped_column(String, unique=True, nullable=True)
    published: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    # PBKDF2 hash; null means the page is public.
    password_hash: Mapped[str | None] = mapped_column(String, nullable=True)
    logo: Mapped[str | None] = mapped_column(String, nullable=True)
    favicon: Mapped[str | None] = mapped_column(String, nullable=True)
    theme_json: Mapped[dict[str, Any] | None] = mapped_column(JSONB, nullable=True)
    settings_json: Mapped[dict[str, Any]] = mapped_column(JSONB, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class StatusPageGroup(Base):
    __tablename__ = "status_page_groups"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    status_page_id: Mapped[str] = mapped_column(
        String, ForeignKey("status_pages.id", ondelete="CASCADE"), index=True
    )
    name: Mapped[str] = mapped_column(String)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    display_order: Mapped[int] = mapped_column(Integer, default=0)
    collapsed: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class StatusPageMonitor(Base):
    __tablename__ = "status_page_monitors"
    __table_args__ = (
        UniqueConstraint("status_page_id", "monitor_id", name="uq_status_page_monitors_page_monitor"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    status_page_id: Mapped[str] = mapped_column(
        String, ForeignKey("status_pages.id", ondelete="CASCADE"), index=True
    )
    monitor_id: Mapped[str] = mapped_column(String, ForeignKey("monitors.id", ondelete="CASCADE"))
    display_name: Mapped[str | None] = mapped_column(String, nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    display_order: Mapped[int] = mapped_column(Integer, default=0)
    group_id: Mapped[str | None] = mapped_column(
        String, ForeignKey("status_page_groups.id", ondelete="SET NULL"), nullable=True
    )
    show_response_time: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class Subscriber(Base):
    __tablename__ = "subscribers"
    __table_args__ = (
        UniqueConstraint("status_page_id", "email", name="uq_subscribers_page_email"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    status_page_id: Mapped[str] = mapped_column(
        String, ForeignKey("status_pages.id", ondelete="CASCADE"), index=True
    )
    email: Mapped[str] = mapped_column(String)
    verified: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    verification_token: Mapped[str | None] = mapped_column(String, nullable=True, unique=True)
    unsubscribe_token: Mapped[str] = mapped_column(String, unique=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class Incident(Base):
    __tablename__ = "incidents"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    organization_id: Mapped[str] = mapped_column(
        String, ForeignKey("organizations.id", ondelete="CASCADE"), index=True
    )
    title: Mapped[str] = mapped_column(String)
    # investigating | identified | monitoring | resolved
    status: Mapped[str] = mapped_column(String, default="investigating")
    # minor | major | critical
    severity: Mapped[str] = mapped_column(String, default="minor")
    message: Mapped[str | None] = mapped_column(Text, nullable=True)
    affected_monitors_json: Mapped[list[str]] = mapped_column(JSONB, default=list)
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_by: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class IncidentUpdate(Base):
    __tablename__ = "incident_updates"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    incident_id: Mapped[str] = mapped_column(
        String, ForeignKey("incidents.id", ondelete="CASCADE"), index=True
    )
    status: Mapped[str] = mapped_column(String)
    message: Mapped[str] = mapped_column(Text)
    created_by: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class MaintenanceWindow(Base):
    __tablename__ = "maintenance_windows"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    organization_id: Mapped[str] = mapped_column(
        String, ForeignKey("organizations.id", ondelete="CASCADE"), index=True
    )
    name: Mapped[str] = mapped_column(String)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    affected_monitors_json: Mapped[list[str]] = mapped_column(JSONB, default=list)
    starts_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    ends_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    timezone: Mapped[str] = mapped_column(String, default="UTC")
    # {type: none|daily|weekly|monthly, interval, daysOfWeek, dayOfMonth, endDate}
    recurrence_json: Mapped[dict[str, Any]] = mapped_column(JSONB, default=lambda: {"type": "none"})
    active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_by: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class Probe(Base):
    __tablename__ = "probes"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    organization_id: Mapped[str] = mapped_column(
        String, ForeignKey("organizations.id", ondelete="CASCADE"), index=True
    )
    name: Mapped[str] = mapped_column(String)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    region: Mapped[str | None] = mapped_column(String, nullable=True)
    # pending | active | offline | disabled
    status: Mapped[str] = mapped_column(String, default="pending")
    auth_token_hash: Mapped[str] = mapped_column(String, unique=True, index=True)
    auth_token_prefix: Mapped[str] = mapped_column(String)
    version: Mapped[str | None] = mapped_column(String, nullable=True)
    hostname: Mapped[str | None] = mapped_column(String, nullable=True)
    last_heartbeat_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    metadata_json: Mapped[dict[str, Any] | None] = mapped_column(JSONB, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class ProbeAssignment(Base):
    __tablename__ = "probe_assignments"
    __table_args__ = (
        UniqueConstraint("probe_id", "monitor_id", name="uq_probe_assignments_probe_monitor"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    probe_id: Mapped[str] = mapped_column(String, ForeignKey("probes.id", ondelete="CASCADE"), index=True)
    monitor_id: Mapped[str] = mapped_column(String, ForeignKey("monitors.id", ondelete="CASCADE"), index=True)
    priority: Mapped[int] = mapped_column(Integer, default=1)
    # Exclusive assignments replace the shared check fleet for the monitor.
    exclusive: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class ProbePendingJob(Base):
    __tablename__ = "probe_pending_jobs"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    probe_id: Mapped[str] = mapped_column(String, ForeignKey("probes.id", ondelete="CASCADE"))
    monitor_id: Mapped[str] = mapped_column(String, ForeignKey("monitors.id", ondelete="CASCADE"))
    job_data: Mapped[dict[str, Any]] = mapped_column(JSONB)
    # pending | claimed | completed | expired
    status: Mapped[str] = mapped_column(String, default="pending")
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    claimed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class ProbeHeartbeat(Base):
    __tablename__ = "probe_heartbeats"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    probe_id: Mapped[str] = mapped_column(String, ForeignKey("probes.id", ondelete="CASCADE"), index=True)
    metrics_json: Mapped[dict[str, Any] | None] = mapped_column(JSONB, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


Index("ix_api_keys_expires_at", ApiKey.expires_at)
Index(
    "ix_audit_events_org_occurred_at",
    AuditEvent.organization_id,
    AuditEvent.occurred_at.desc(),
)
Index(
    "ix_audit_events_event_type_occurred_at",
    AuditEvent.event_type,
    AuditEvent.occurred_at.desc(),
)
Index("ix_monitors_due", Monitor.paused, Monitor.next_check_at)
Index("ix_heartbeat_pings_monitor_created", HeartbeatPing.monitor_id, HeartbeatPing.created_at.desc())
Index("ix_check_results_monitor_created", CheckResult.monitor_id, CheckResult.created_at.desc())
Index("ix_check_results_created_at", CheckResult.created_at)
Index("ix_check_results_hourly_monitor_hour", CheckResultHourly.monitor_id, CheckResultHourly.hour)
Index("ix_check_results_daily_monitor_date", CheckResultDaily.monitor_id, CheckResultDaily.date)
Index("ix_monitor_alert_policies_policy", MonitorAlertPolicy.policy_id)
Index(
    "ix_alert_history_policy_monitor_triggered",
    AlertHistory.policy_id,
    AlertHistory.monitor_id,
    AlertHistory.triggered_at.desc(),
)
Index("ix_alert_history_org_status", AlertHistory.organization_id, AlertHistory.status)
Index("ix_incidents_org_status", Incident.organization_id, Incident.status)
Index("ix_maintenance_windows_active_range", MaintenanceWindow.active, MaintenanceWindow.starts_at)
Index(
    "ix_probe_pending_jobs_probe_status",
    ProbePendingJob.probe_id,
    ProbePendingJob.status,
    ProbePendingJob.created_at,
)
Index("ix_probe_heartbeats_created_at", ProbeHeartbeat.created_at)
