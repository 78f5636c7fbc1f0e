# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Application configuration settings using Pydantic Settings.

This module provides centralized configuration management for the tuition
payment worker. Settings are loaded from environment variables with sensible
defaults.

The Settings class is the main entry point and aggregates all subsettings.
A singleton instance is provided via get_settings() for dependency injection.

Example:
    >>> from src.core.config.settings import get_settings
    >>> settings = get_settings()
    >>> print(settings.messaging.transaction_queue)
    'payiskoul.transaction.queue'
"""

from functools import lru_cache
from typing import Literal, Self
from urllib.parse import quote, urlencode

from pydantic import Field, SecretStr, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class DatabaseSettings(BaseSettings):
    """Database configuration for ledger and reference data.

    The database stores:
    - Tuition ledgers and processed payment references
    - The outbound event outbox
    - Read-only student, institution and enrollment snapshots

    Attributes:
        user: PostgreSQL username.
        password: PostgreSQL password.
        host: Database host address.
        port: Database port number.
        database: Database name.
        pool_size: Connection pool size.
        max_overflow: Maximum overflow connections.
        connect_timeout: Seconds to wait for a connection before failing.
    """

    model_config = SettingsConfigDict(
        env_prefix="DB_",
        extra="ignore",
    )

    user: str = "payiskoul"
    password: SecretStr = SecretStr("payiskoul_password")
    host: str = "localhost"
    port: int = 5432
    database: str = "payiskoul_institution"
    pool_size: int = 10
    max_overflow: int = 20
    connect_timeout: float = 10.0

    @property
    def url(self) -> str:
        """Build the async database URL from components."""
        pwd = self.password.get_secret_value()
        return f"postgresql+asyncpg://{self.user}:{pwd}@{self.host}:{self.port}/{self.database}"


class RabbitMQSettings(BaseSettings):
    """RabbitMQ connection configuration.

    Attributes:
        host: Broker host.
        port: AMQP port.
        user: Broker username.
        password: Broker password.
        virtual_host: Virtual host to connect to.
        heartbeat: Heartbeat interval in seconds.
        blocked_connection_timeout: Seconds a blocked connection may wait
            before the publish is aborted.
        socket_timeout: Socket connect timeout in seconds.
    """

    model_config = SettingsConfigDict(
        env_prefix="RABBITMQ_",
        extra="ignore",
    )

    host: str = "localhost"
    port: int = 5672
    user: str = "guest"
    password: SecretStr = SecretStr("guest")
    virtual_host: str = "/"
    heartbeat: int = 60
    blocked_connection_timeout: float = 10.0
    socket_timeout: float = 10.0

    @property
    def url(self) -> str:
        """Build the AMQP connection URL, timeouts included."""
        pwd = quote(self.password.get_secret_value(), safe="")
        vhost = quote(self.virtual_host, safe="")
        query = urlencode(
            {
                "heartbeat": self.heartbeat,
                "blocked_connection_timeout": self.blocked_connection_timeout,
                "socket_timeout": self.socket_timeout,
            }
        )
        return f"amqp://{self.user}:{pwd}@{self.host}:{self.port}/{vhost}?{query}"


class MessagingSettings(BaseSettings):
    """Exchange, queue and routing key names for the tuition pipeline.

    Attributes:
        transaction_exchange: Direct exchange carrying upstream transaction events.
        transaction_routing_key: Routing key binding the transaction queue.
        transaction_queue: Durable queue consumed for transaction events.
        events_exchange: Topic exchange carrying direct payment notifications.
        payment_notification_binding: Binding pattern for payment notifications.
        payment_notification_queue: Durable queue consumed for notifications.
        tuition_exchange: Exchange receiving confirmation and failure events.
        confirmed_routing_key: Routing key for TuitionPaymentConfirmed.
        failed_routing_key: Routing key for TuitionPaymentFailed.
        tuition_category: Transaction category handled by this worker.
        declare_topology: Declare exchanges and bindings at broker setup.
    """

    model_config = SettingsConfigDict(
        env_prefix="TUITION_MESSAGING_",
        extra="ignore",
    )

    transaction_exchange: str = "payiskoul.transaction.exchange"
    transaction_routing_key: str = "transaction.event"
    transaction_queue: str = "payiskoul.transaction.queue"
    events_exchange: str = "payiskoul.events"
    payment_notification_binding: str = "tuition.payment.#"
    payment_notification_queue: str = "payiskoul.tuitions.queue"
    tuition_exchange: str = "payiskoul.tuition.exchange"
    confirmed_routing_key: str = "tuition.payment.confirmed"
    failed_routing_key: str = "tuition.payment.failed"
    tuition_category: str = "TUITION_PAYMENT"
    declare_topology: bool = True


class RetrySettings(BaseSettings):
    """Redelivery policy for transient failures.

    Attributes:
        max_attempts: Total processing attempts before dead-lettering.
        base_delay_ms: Delay before the first redelivery.
        multiplier: Backoff multiplier between redeliveries.
        max_delay_ms: Upper bound for a single redelivery delay.
    """

    model_config = SettingsConfigDict(
        env_prefix="TUITION_RETRY_",
        extra="ignore",
    )

    max_attempts: int = Field(default=3, ge=1)
    base_delay_ms: int = Field(default=1000, ge=0)
    multiplier: float = Field(default=2.0, ge=1.0)
    max_delay_ms: int = Field(default=60000, ge=0)


class LedgerSettings(BaseSettings):
    """Ledger update configuration.

    Attributes:
        conflict_retries: Optimistic concurrency attempts per payment.
        datastore_timeout: Seconds allowed for one ledger unit of work.
        outbox_batch_size: Rows relayed per outbox sweep.
    """

    model_config = SettingsConfigDict(
        env_prefix="TUITION_LEDGER_",
        extra="ignore",
    )

    conflict_retries: int = Field(default=5, ge=1)
    datastore_timeout: float = 10.0
    outbox_batch_size: int = 100


class WorkerSettings(BaseSettings):
    """Background worker configuration.

    Attributes:
        processes: Number of worker processes.
        threads: Number of threads per process.
    """

    model_config = SettingsConfigDict(
        env_prefix="WORKER_",
        extra="ignore",
    )

    processes: int = 2
    threads: int = 4


class Settings(BaseSettings):
    """Main application settings aggregating all subsettings.

    Use get_settings() to obtain a cached singleton instance.

    Attributes:
        environment: Current environment (development, staging, production).
        debug: Enable debug mode.
        log_level: Logging level.
        database: Database settings.
        rabbitmq: RabbitMQ connection settings.
        messaging: Exchange, queue and routing key names.
        retry: Redelivery policy settings.
        ledger: Ledger update settings.
        worker: Background worker settings.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        case_sensitive=False,
    )

    # Environment
    environment: Literal["development", "staging", "production"] = "development"
    debug: bool = True
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "DEBUG"

    # Subsettings - loaded with their own env prefixes
    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    rabbitmq: RabbitMQSettings = Field(default_factory=RabbitMQSettings)
    messaging: MessagingSettings = Field(default_factory=MessagingSettings)
    retry: RetrySettings = Field(default_factory=RetrySettings)
    ledger: LedgerSettings = Field(default_factory=LedgerSettings)
    worker: WorkerSettings = Field(default_factory=WorkerSettings)

    @model_validator(mode="after")
    def validate_production_settings(self) -> Self:
        """Validate that production settings are properly configured.

        Raises:
            ValueError: If running in production with insecure defaults.
        """
        if self.environment == "production":
            if self.rabbitmq.password.get_secret_value() == "guest":
                raise ValueError(
                    "RabbitMQ password must be changed from default in production. "
                    "Set RABBITMQ_PASSWORD environment variable."
                )
        return self

    @property
    def is_development(self) -> bool:
        """Check if running in development environment."""
        return self.environment == "development"

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.environment == "production"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Get cached settings instance.

    Uses lru_cache to ensure settings are only loaded once.
    Call clear_settings_cache() if you need to reload settings.

    Returns:
        Cached Settings instance.
    """
    return Settings()


def clear_settings_cache() -> None:
    """Clear the settings cache.

    Call this if you need to reload settings from environment.
    Useful for testing or dynamic configuration updates.
    """
    get_settings.cache_clear()
