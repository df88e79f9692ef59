from __future__ import annotations

from datetime import datetime
from enum import Enum

from sqlalchemy import JSON, Boolean, DateTime, Float, ForeignKey, Index, Integer, String, Text, UniqueConstraint, func
from sqlalchemy import Enum as SqlEnum
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    pass


class AccountStatus(str, Enum):
    ACTIVE = "active"
    RATE_LIMITED = "rate_limited"
    PAUSED = "paused"
    DEACTIVATED = "deactivated"


class HealthStatus(str, Enum):
    UNKNOWN = "unknown"
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"


class SelectionStrategy(str, Enum):
    PRIORITY = "priority"
    ROUND_ROBIN = "round_robin"
    RANDOM = "random"
    PERFORMANCE = "performance"
    LEAST_USED = "least_used"
    WEIGHTED = "weighted"
    CONSISTENT_HASH = "consistent_hash"


class LoadBalanceStrategy(str, Enum):
    ROUND_ROBIN = "round_robin"
    WEIGHTED = "weighted"
    LEAST_CONNECTIONS = "least_connections"


class FailoverStrategy(str, Enum):
    FAILOVER = "failover"
    FAILFAST = "failfast"


class GroupType(str, Enum):
    DEFAULT = "default"
    CUSTOM = "custom"
    SYSTEM = "system"
    TEMPORARY = "temporary"
    BACKUP = "backup"


class Account(Base):
    __tablename__ = "accounts"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    name: Mapped[str] = mapped_column(String, nullable=False)
    platform: Mapped[str] = mapped_column(String, nullable=False)
    pool_group: Mapped[str | None] = mapped_column(String, nullable=True)
    priority: Mapped[int] = mapped_column(Integer, default=50, nullable=False)
    weight: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    is_enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    status: Mapped[AccountStatus] = mapped_column(
        SqlEnum(AccountStatus, name="account_status", validate_strings=True),
        default=AccountStatus.ACTIVE,
        nullable=False,
    )
    rate_limited_until: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    usage_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_used_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now(), nullable=False)


class ApiKey(Base):
    __tablename__ = "api_keys"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    name: Mapped[str] = mapped_column(String, nullable=False)
    is_enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now(), nullable=False)


class PermissionRule(Base):
    __tablename__ = "permission_rules"
    __table_args__ = (UniqueConstraint("api_key_id", "pool_group", name="uq_permission_rules_key_pool"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    api_key_id: Mapped[str] = mapped_column(String, ForeignKey("api_keys.id", ondelete="CASCADE"), nullable=False)
    pool_group: Mapped[str] = mapped_column(String, nullable=False)
    allowed_platforms: Mapped[list[str]] = mapped_column(JSON, default=list, nullable=False)
    allowed_account_ids: Mapped[list[str] | None] = mapped_column(JSON, nullable=True)
    selection_strategy: Mapped[SelectionStrategy] = mapped_column(
        SqlEnum(SelectionStrategy, name="selection_strategy", validate_strings=True),
        default=SelectionStrategy.PRIORITY,
        nullable=False,
    )
    priority: Mapped[int] = mapped_column(Integer, default=50, nullable=False)
    is_enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    effective_from: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    effective_to: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now(), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime,
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )


class HealthTrackedMixin:
    weight: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    order: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    is_primary: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    current_connections: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    total_usage_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    successful_requests: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    failed_requests: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    consecutive_failures: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    average_response_time_ms: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    health_status: Mapped[HealthStatus] = mapped_column(
        SqlEnum(HealthStatus, name="health_status", validate_strings=True),
        default=HealthStatus.UNKNOWN,
        nullable=False,
    )
    last_used_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    last_health_check_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    disabled_until: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now(), nullable=False)


class KeyAccountMapping(HealthTrackedMixin, Base):
    __tablename__ = "key_account_mappings"
    __table_args__ = (UniqueConstraint("api_key_id", "account_id", name="uq_key_account_mappings_pair"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    api_key_id: Mapped[str] = mapped_column(String, ForeignKey("api_keys.id", ondelete="CASCADE"), nullable=False)
    account_id: Mapped[str] = mapped_column(String, ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False)


class AccountGroup(Base):
    __tablename__ = "account_groups"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String, unique=True, nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    group_type: Mapped[GroupType] = mapped_column(
        SqlEnum(GroupType, name="group_type", validate_strings=True),
        default=GroupType.CUSTOM,
        nullable=False,
    )
    priority: Mapped[int] = mapped_column(Integer, default=50, nullable=False)
    is_enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    cost_limit: Mapped[float | None] = mapped_column(Float, nullable=True)
    request_limit: Mapped[int | None] = mapped_column(Integer, nullable=True)
    load_balance_strategy: Mapped[LoadBalanceStrategy] = mapped_column(
        SqlEnum(LoadBalanceStrategy, name="load_balance_strategy", validate_strings=True),
        default=LoadBalanceStrategy.ROUND_ROBIN,
        nullable=False,
    )
    failover_strategy: Mapped[FailoverStrategy] = mapped_column(
        SqlEnum(FailoverStrategy, name="failover_strategy", validate_strings=True),
        default=FailoverStrategy.FAILOVER,
        nullable=False,
    )
    health_check_interval_seconds: Mapped[int] = mapped_column(Integer, default=30, nullable=False)
    account_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    health_status: Mapped[HealthStatus] = mapped_column(
        SqlEnum(HealthStatus, name="health_status", validate_strings=True),
        default=HealthStatus.UNKNOWN,
        nullable=False,
    )
    last_health_check_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    round_robin_index: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now(), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime,
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )


class GroupAccountMapping(HealthTrackedMixin, Base):
    __tablename__ = "group_account_mappings"
    __table_args__ = (UniqueConstraint("group_id", "account_id", name="uq_group_account_mappings_pair"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    group_id: Mapped[int] = mapped_column(Integer, ForeignKey("account_groups.id", ondelete="CASCADE"), nullable=False)
    account_id: Mapped[str] = mapped_column(String, ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False)


class GroupStatistics(Base):
    __tablename__ = "group_statistics"

    group_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("account_groups.id", ondelete="CASCADE"),
        primary_key=True,
        autoincrement=False,
    )
    total_requests: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    successful_requests: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    failed_requests: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    total_cost: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    average_response_time_ms: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    current_connections: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    peak_connections: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_used_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    started_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now(), nullable=False)


Index("idx_accounts_pool_platform", Account.pool_group, Account.platform)
Index("idx_permission_rules_key", PermissionRule.api_key_id)
Index("idx_key_mappings_key", KeyAccountMapping.api_key_id)
Index("idx_group_mappings_group", GroupAccountMapping.group_id)
