"""
Configuration management module for the escrow settlement engine.

This module handles loading and validating environment variables,
providing a centralized Config class for all application settings and
an immutable EscrowSettings snapshot consumed by the escrow services.
"""

import os
from dataclasses import dataclass, fields, replace
from decimal import Decimal, InvalidOperation
from typing import Optional, Dict, Any
from dotenv import load_dotenv


class ConfigError(Exception):
    """Raised when configuration is invalid or missing."""
    pass


@dataclass(frozen=True)
class EscrowSettings:
    """
    Snapshot of the business settings used by a single escrow operation.

    Values come from the environment and may be overridden at runtime by
    rows in the ``system_settings`` table. A snapshot is resolved once per
    operation and never mutated afterwards.
    """
    platform_fee_percent: Decimal = Decimal('2.5')
    processor_fee_percent: Decimal = Decimal('2.9')
    processor_fee_fixed: Decimal = Decimal('0.30')
    min_transaction_amount: Decimal = Decimal('10')
    max_transaction_amount: Decimal = Decimal('100000')
    default_inspection_days: int = 14
    min_inspection_days: int = 1
    max_inspection_days: int = 30
    high_value_threshold: Decimal = Decimal('100000')
    currency: str = 'npr'
    reservation_ttl_minutes: int = 15

    # system_settings keys as stored by the admin dashboard
    OVERRIDE_KEYS = {
        'platformFeePercent': 'platform_fee_percent',
        'minTransactionAmount': 'min_transaction_amount',
        'maxTransactionAmount': 'max_transaction_amount',
        'escrowPeriodDays': 'default_inspection_days',
        'highValueThreshold': 'high_value_threshold',
    }

    def with_overrides(self, overrides: Optional[Dict[str, Any]]) -> 'EscrowSettings':
        """
        Return a copy with runtime overrides applied.

        Unknown keys are ignored. Keys may be given either in the stored
        camelCase form or as the attribute name.

        Raises:
            ConfigError: If an override value cannot be coerced
        """
        if not overrides:
            return self

        types = {f.name: f.type for f in fields(self)}
        changes: Dict[str, Any] = {}

        for key, value in overrides.items():
            name = self.OVERRIDE_KEYS.get(key, key)
            if name not in types or value is None:
                continue
            current = getattr(self, name)
            try:
                if isinstance(current, Decimal):
                    changes[name] = Decimal(str(value))
                elif isinstance(current, int):
                    changes[name] = int(value)
                else:
                    changes[name] = str(value)
            except (InvalidOperation, ValueError, TypeError) as e:
                raise ConfigError(f"Invalid value for setting '{key}': {value!r}") from e

        return replace(self, **changes)


class Config:
    """
    Configuration class that loads and validates all application settings.

    All required configuration values are validated on initialization.

    Attributes:
        database_url: PostgreSQL connection URL
        processor_api_key: Secret key for the payment processor REST API
        processor_webhook_secret: Signing secret for processor webhooks
        processor_api_base: Base URL of the payment processor API
        telegram_bot_token: Telegram bot token for push notifications (optional)
        admin_chat_id: Telegram chat receiving admin alerts (optional)
        auto_release_interval_hours: How often the auto-release job runs
        audit_retention_days: Audit records older than this are purged
    """

    def __init__(self, env_file: Optional[str] = None):
        """
        Initialize configuration by loading environment variables.

        Args:
            env_file: Optional path to .env file. If not provided, uses default .env

        Raises:
            ConfigError: If required configuration is missing or invalid
        """
        if env_file:
            load_dotenv(env_file)
        else:
            load_dotenv()

        # Database
        self.database_url: str = self._get_required_env('DATABASE_URL')
        self.db_pool_min_size: int = self._get_int('DB_POOL_MIN_SIZE', 5)
        self.db_pool_max_size: int = self._get_int('DB_POOL_MAX_SIZE', 20)

        # Payment processor
        self.processor_api_key: str = self._get_required_env('PROCESSOR_API_KEY')
        self.processor_webhook_secret: str = self._get_required_env('PROCESSOR_WEBHOOK_SECRET')
        self.processor_api_base: str = os.getenv('PROCESSOR_API_BASE', 'https://api.stripe.com/v1')
        self.webhook_tolerance_seconds: int = self._get_int('WEBHOOK_TOLERANCE_SECONDS', 300)

        # Telegram notifications (optional)
        self.telegram_bot_token: Optional[str] = os.getenv('TELEGRAM_BOT_TOKEN') or None
        self.admin_chat_id: Optional[str] = os.getenv('ADMIN_CHAT_ID') or None
        self.notification_max_attempts: int = self._get_int('NOTIFICATION_MAX_ATTEMPTS', 3)

        # Escrow business defaults
        self.platform_fee_percent: Decimal = self._get_decimal('PLATFORM_FEE_PERCENT', '2.5')
        self.processor_fee_percent: Decimal = self._get_decimal('PROCESSOR_FEE_PERCENT', '2.9')
        self.processor_fee_fixed: Decimal = self._get_decimal('PROCESSOR_FEE_FIXED', '0.30')
        self.min_transaction_amount: Decimal = self._get_decimal('MIN_TRANSACTION_AMOUNT', '10')
        self.max_transaction_amount: Decimal = self._get_decimal('MAX_TRANSACTION_AMOUNT', '100000')
        self.high_value_threshold: Decimal = self._get_decimal('HIGH_VALUE_THRESHOLD', '100000')
        self.inspection_period_days: int = self._get_int('INSPECTION_PERIOD_DAYS', 14)
        self.default_currency: str = os.getenv('DEFAULT_CURRENCY', 'npr').lower()
        self.reservation_ttl_minutes: int = self._get_int('SETTLEMENT_RESERVATION_TTL_MINUTES', 15)

        # Automation
        self.auto_release_interval_hours: int = self._get_int('AUTO_RELEASE_INTERVAL_HOURS', 1)
        self.audit_retention_days: int = self._get_int('AUDIT_RETENTION_DAYS', 90)

        # Application Settings
        self.app_env: str = os.getenv('APP_ENV', 'development')
        self.app_name: str = os.getenv('APP_NAME', 'ESCROW_ENGINE')
        self.app_version: str = os.getenv('APP_VERSION', '1.0.0')

        # Logging Configuration
        self.log_level: str = os.getenv('LOG_LEVEL', 'INFO')
        self.log_format: str = os.getenv('LOG_FORMAT', 'text')
        self.log_file: Optional[str] = os.getenv('LOG_FILE', 'logs/escrow.log') or None
        self.log_max_size: int = self._get_int('LOG_MAX_SIZE', 10485760)  # 10MB
        self.log_backup_count: int = self._get_int('LOG_BACKUP_COUNT', 5)

        # API Configuration
        self.api_host: str = os.getenv('API_HOST', '0.0.0.0')
        self.api_port: int = self._get_int('API_PORT', 8000)
        self.api_timeout: int = self._get_int('TIMEOUT', 30)

        self._validate_config()

    def _get_required_env(self, key: str) -> str:
        """
        Get a required environment variable.

        Raises:
            ConfigError: If the environment variable is not set
        """
        value = os.getenv(key)
        if not value:
            raise ConfigError(f"Required environment variable '{key}' is not set")
        return value

    def _get_int(self, key: str, default: int) -> int:
        value = os.getenv(key)
        if value is None or value == '':
            return default
        try:
            return int(value)
        except ValueError as e:
            raise ConfigError(f"{key} must be an integer, got '{value}'") from e

    def _get_decimal(self, key: str, default: str) -> Decimal:
        value = os.getenv(key, default) or default
        try:
            return Decimal(value)
        except InvalidOperation as e:
            raise ConfigError(f"{key} must be a number, got '{value}'") from e

    def _validate_config(self) -> None:
        """
        Validate configuration values.

        Raises:
            ConfigError: If any configuration value is invalid
        """
        for key, value in (
            ('PLATFORM_FEE_PERCENT', self.platform_fee_percent),
            ('PROCESSOR_FEE_PERCENT', self.processor_fee_percent),
        ):
            if not Decimal('0') <= value < Decimal('100'):
                raise ConfigError(f"{key} must be between 0 and 100, got {value}")

        if self.min_transaction_amount <= 0:
            raise ConfigError(
                f"MIN_TRANSACTION_AMOUNT must be positive, got {self.min_transaction_amount}"
            )

        if self.max_transaction_amount < self.min_transaction_amount:
            raise ConfigError(
                f"MAX_TRANSACTION_AMOUNT ({self.max_transaction_amount}) must be greater than "
                f"MIN_TRANSACTION_AMOUNT ({self.min_transaction_amount})"
            )

        if not 1 <= self.inspection_period_days <= 30:
            raise ConfigError(
                f"INSPECTION_PERIOD_DAYS must be between 1 and 30, got {self.inspection_period_days}"
            )

        if self.auto_release_interval_hours < 1:
            raise ConfigError("AUTO_RELEASE_INTERVAL_HOURS must be at least 1")

        if self.audit_retention_days < 1:
            raise ConfigError("AUDIT_RETENTION_DAYS must be at least 1")

        if self.reservation_ttl_minutes < 1:
            raise ConfigError("SETTLEMENT_RESERVATION_TTL_MINUTES must be at least 1")

        valid_log_levels = ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']
        if self.log_level.upper() not in valid_log_levels:
            raise ConfigError(
                f"LOG_LEVEL must be one of {valid_log_levels}, got '{self.log_level}'"
            )

        if self.admin_chat_id and not self.admin_chat_id.lstrip('-').isdigit():
            raise ConfigError(
                f"ADMIN_CHAT_ID must be numeric (can start with -), "
                f"got '{self.admin_chat_id}'"
            )

        if not 1 <= self.api_port <= 65535:
            raise ConfigError(f"API_PORT must be between 1 and 65535, got {self.api_port}")

    @property
    def escrow_settings(self) -> EscrowSettings:
        """Environment defaults for the escrow business settings."""
        return EscrowSettings(
            platform_fee_percent=self.platform_fee_percent,
            processor_fee_percent=self.processor_fee_percent,
            processor_fee_fixed=self.processor_fee_fixed,
            min_transaction_amount=self.min_transaction_amount,
            max_transaction_amount=self.max_transaction_amount,
            default_inspection_days=self.inspection_period_days,
            high_value_threshold=self.high_value_threshold,
            currency=self.default_currency,
            reservation_ttl_minutes=self.reservation_ttl_minutes,
        )

    @property
    def has_telegram_config(self) -> bool:
        """Check if push notifications can be delivered."""
        return bool(self.telegram_bot_token)

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.app_env.lower() == 'production'

    def __repr__(self) -> str:
        """String representation of Config (hiding sensitive data)."""
        return (
            f"Config(app_env={self.app_env}, "
            f"processor_api_base={self.processor_api_base}, "
            f"platform_fee_percent={self.platform_fee_percent}, "
            f"has_telegram={self.has_telegram_config})"
        )


# Singleton instance for easy access
_config_instance: Optional[Config] = None


def get_config(env_file: Optional[str] = None, reload: bool = False) -> Config:
    """
    Get or create the global Config instance.

    Args:
        env_file: Optional path to .env file
        reload: If True, force reload configuration

    Raises:
        ConfigError: If configuration is invalid

    Example:
        >>> config = get_config()
        >>> print(config.escrow_settings.platform_fee_percent)
        2.5
    """
    global _config_instance

    if _config_instance is None or reload:
        _config_instance = Config(env_file)

    return _config_instance
