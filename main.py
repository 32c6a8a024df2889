"""
Escrow Settlement Engine - Main Application Entry Point

This module orchestrates the entire application by:
- Loading configuration
- Initializing logging and the database
- Wiring the payment processor, notifications and escrow services
- Running the auto-release scheduler
- Serving the payment webhook endpoint
- Managing graceful shutdown
"""

import asyncio
import logging
import sys
from typing import Optional

import uvicorn
from telegram import Bot

from config import Config, ConfigError, get_config
from escrow_database import EscrowDatabase, create_escrow_db
from notifications import NotificationDispatcher
from escrow_service import EscrowService, get_escrow_service, reset_escrow_service
from escrow_automation import EscrowAutomation, start_automation, stop_automation
from webhook_reconciler import WebhookReconciler
from callback_server import app as fastapi_app, configure_app
from utils import setup_logger, mask_sensitive_data

logger = logging.getLogger(__name__)


def create_notifier(config: Config, database: EscrowDatabase) -> NotificationDispatcher:
    """Build the notification dispatcher, with Telegram push when configured."""
    bot: Optional[Bot] = None
    if config.has_telegram_config:
        bot = Bot(token=config.telegram_bot_token)
        logger.info(f"Telegram push enabled (token {mask_sensitive_data(config.telegram_bot_token)})")
    else:
        logger.info("Telegram push disabled; notifications are stored in-app only")

    return NotificationDispatcher(
        database,
        bot=bot,
        admin_chat_id=config.admin_chat_id,
        max_attempts=config.notification_max_attempts,
    )


def display_startup_banner(config: Config) -> None:
    """Log a startup banner with configuration information."""
    logger.info("=" * 60)
    logger.info(f"{config.app_name} v{config.app_version} ({config.app_env})")
    logger.info(f"Processor API: {config.processor_api_base}")
    logger.info(
        f"Platform fee: {config.platform_fee_percent}% | "
        f"Inspection period: {config.inspection_period_days} days | "
        f"Currency: {config.default_currency.upper()}"
    )
    logger.info(f"Auto-release every {config.auto_release_interval_hours}h")
    logger.info(f"Webhook endpoint: http://{config.api_host}:{config.api_port}/payments/webhook")
    logger.info("=" * 60)


async def async_main(config: Config) -> None:
    """
    Main asynchronous function that orchestrates the entire application.
    """
    database: Optional[EscrowDatabase] = None
    notifier: Optional[NotificationDispatcher] = None
    automation: Optional[EscrowAutomation] = None

    try:
        logger.info("Initializing database connection...")
        database = await create_escrow_db(
            config.database_url, config.db_pool_min_size, config.db_pool_max_size
        )
        logger.info("✓ Database initialized successfully")

        notifier = create_notifier(config, database)
        await notifier.start()

        service: EscrowService = await get_escrow_service(database, config, notifier)
        reconciler = WebhookReconciler(service, database)

        configure_app(
            reconciler,
            config.processor_webhook_secret,
            store=database,
            webhook_tolerance=config.webhook_tolerance_seconds,
        )

        automation = await start_automation(
            service,
            interval_hours=config.auto_release_interval_hours,
            audit_retention_days=config.audit_retention_days,
        )

        display_startup_banner(config)

        # uvicorn installs its own SIGINT/SIGTERM handlers and returns on shutdown
        server = uvicorn.Server(uvicorn.Config(
            app=fastapi_app,
            host=config.api_host,
            port=config.api_port,
            log_level=config.log_level.lower(),
            access_log=True,
        ))
        logger.info(f"✓ Webhook server starting on {config.api_host}:{config.api_port}")
        await server.serve()

    finally:
        logger.info("Performing cleanup...")

        if automation is not None:
            await stop_automation()
            logger.info("✓ Escrow automation stopped")

        if notifier is not None:
            await notifier.stop()
            logger.info("✓ Pending notifications flushed")

        reset_escrow_service()

        if database is not None:
            await database.disconnect()
            logger.info("✓ Database connections closed")

        logger.info("✓ Cleanup complete")


def main() -> None:
    """
    Main entry point for the application.
    Sets up logging and runs the async main function.
    """
    try:
        config = get_config()
    except ConfigError as e:
        print(f"CRITICAL ERROR: Invalid configuration: {e}")
        sys.exit(1)

    setup_logger(
        None,
        log_level=config.log_level,
        log_file=config.log_file,
        log_format=config.log_format,
        max_bytes=config.log_max_size,
        backup_count=config.log_backup_count,
    )
    logger.info("Logger initialized successfully")

    try:
        asyncio.run(async_main(config))
    except KeyboardInterrupt:
        logger.info("Received keyboard interrupt")
    except Exception as e:
        logger.critical(f"Application failed: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
