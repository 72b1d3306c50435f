"""
Main FastAPI application for the checkout payments API.
Serves health, mobile money payments (initiate / webhook / status), admin and metrics.
"""
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from checkout.api.routes import admin, health, payments
from checkout.core.config import settings
from checkout.core.logging import configure_logging
from checkout.utils.metrics import router as metrics_router


configure_logging()

app = FastAPI(
    title="Checkout Payments API",
    description="Mobile money payment orchestration for the storefront",
    version="1.0.0",
)

# CORS
origins = [o.strip() for o in settings.cors_origins.split(",") if o.strip()]
if not origins:
    origins = ["http://localhost:3000", "http://127.0.0.1:3000"]
app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Routers
app.include_router(health.router, tags=["health"])
app.include_router(payments.router)
app.include_router(admin.router)
app.include_router(metrics_router)
