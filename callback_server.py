"""
FastAPI server for payment processor webhooks.

This server receives signed event notifications from the payment
processor, verifies them, and hands them to the webhook reconciler which
updates escrow state.
"""

import logging
from datetime import datetime, timezone
from typing import Optional, Dict, Any

from fastapi import FastAPI, Request, HTTPException, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, ValidationError as PydanticValidationError, field_validator

from payment_processor import verify_webhook_signature, WebhookSignatureError

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = 'stripe-signature'

# Initialize FastAPI app
app = FastAPI(
    title="Escrow Webhook Server",
    description="Receive payment processor webhooks for escrow settlement",
    version="1.0.0"
)

app.state.reconciler = None
app.state.store = None
app.state.webhook_secret = None
app.state.webhook_tolerance = 300


def configure_app(
    reconciler,
    webhook_secret: str,
    store=None,
    webhook_tolerance: int = 300
) -> FastAPI:
    """
    Attach runtime dependencies to the app.

    Args:
        reconciler: WebhookReconciler processing verified events
        webhook_secret: Shared secret for signature verification
        store: Database used by the health check (optional)
        webhook_tolerance: Maximum signature age in seconds
    """
    app.state.reconciler = reconciler
    app.state.webhook_secret = webhook_secret
    app.state.store = store
    app.state.webhook_tolerance = webhook_tolerance
    return app


# ==================== Pydantic Models ====================

class WebhookEvent(BaseModel):
    """Processor event envelope."""
    id: str
    type: str
    data: Dict[str, Any] = Field(default_factory=dict)
    created: Optional[int] = None

    @field_validator('data')
    @classmethod
    def validate_data(cls, v):
        """Events carry their payload under ``data.object``."""
        if 'object' not in v:
            raise ValueError("Missing data.object in event")
        return v


# ==================== Endpoints ====================

@app.get("/", tags=["Info"])
async def root():
    """Root endpoint with service information."""
    return {
        "service": "Escrow Webhook Server",
        "version": app.version,
        "status": "running",
        "endpoints": {
            "webhook": "/payments/webhook",
            "health": "/health"
        }
    }


@app.get("/health", tags=["Health"])
async def health_check():
    """
    Health check endpoint.

    Returns:
        JSON response with service health status
    """
    health_status = {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "service": "escrow-webhook-server"
    }

    store = app.state.store
    if store is not None:
        try:
            connected = await store.ping()
        except Exception as e:
            connected = False
            logger.warning(f"Health check database ping failed: {e}")
        health_status["database"] = "connected" if connected else "unreachable"
        if not connected:
            health_status["status"] = "degraded"

    if app.state.reconciler is None:
        health_status["webhooks"] = "not configured"
        health_status["status"] = "degraded"

    status_code = status.HTTP_200_OK if health_status["status"] == "healthy" else status.HTTP_503_SERVICE_UNAVAILABLE

    return JSONResponse(content=health_status, status_code=status_code)


@app.post("/payments/webhook", tags=["Payments"])
async def payment_webhook(request: Request):
    """
    Handle payment processor webhooks.

    Returns 400 when the signature or payload is invalid, and 500 when
    processing fails so the processor retries the delivery.
    """
    reconciler = app.state.reconciler
    if reconciler is None or not app.state.webhook_secret:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Webhook processing is not configured"
        )

    raw_body = await request.body()

    try:
        payload = verify_webhook_signature(
            raw_body,
            request.headers.get(SIGNATURE_HEADER),
            app.state.webhook_secret,
            tolerance=app.state.webhook_tolerance,
        )
    except WebhookSignatureError as e:
        logger.warning(f"Rejected webhook: {e}")
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Webhook signature verification failed: {e}"
        )

    try:
        event = WebhookEvent(**payload)
    except (PydanticValidationError, TypeError) as e:
        logger.error(f"Invalid webhook event structure: {e}")
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid webhook event structure"
        )

    try:
        result = await reconciler.handle_event(event.model_dump())
    except Exception as e:
        logger.error(f"Error processing webhook {event.id} ({event.type}): {e}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Webhook processing failed"
        )

    return {"received": True, "event_id": event.id, "handled": result.get('handled', False)}


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """
    Global exception handler for unhandled errors.

    Args:
        request: The request that caused the error
        exc: The exception that was raised

    Returns:
        JSON response with error details
    """
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "error": "Internal server error",
            "path": str(request.url.path)
        }
    )


# ==================== Startup/Shutdown Events ====================

@app.on_event("startup")
async def startup_event():
    """Log the webhook configuration on application startup."""
    logger.info("Escrow Webhook Server starting up...")
    logger.info(f"Webhook processing: {'enabled' if app.state.reconciler else 'disabled'}")


@app.on_event("shutdown")
async def shutdown_event():
    """Clean up resources on application shutdown."""
    logger.info("Escrow Webhook Server shutting down...")
