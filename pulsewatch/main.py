"""Main FastAPI application for the BPM ingestion and failover engine."""

import logging

from fastapi import FastAPI

from pulsewatch.api import lifespan, router
from pulsewatch.config import LOG_LEVEL

logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

app = FastAPI(
    title="BPM Monitoring API",
    description="Ingests heart rate samples from a primary sensor and a cloud relay, "
    "fails over between them and streams live updates",
    version="1.0.0",
    lifespan=lifespan,
)

app.include_router(router)
