"""
Data Bus - Diagnostics FastAPI Application
Read-only view of the process-wide key registry
"""
from typing import Any, Dict

from fastapi import FastAPI

from databus.bus import get_registry
from databus.logr import configure_logging

# Version tracking
APP_VERSION = "v0.3.0"
APP_NAME = "Callback Data Bus"

configure_logging()

app = FastAPI(
    title=APP_NAME,
    description="Request coalescing and result retention diagnostics",
    version=APP_VERSION
)


@app.get("/health")
def health_check():
    """Health check endpoint."""
    return {"status": "ok", "closed": get_registry().closed}


@app.get("/version")
def version_info():
    """Version information endpoint."""
    return {
        "name": APP_NAME,
        "version": APP_VERSION,
        "full": f"{APP_NAME} {APP_VERSION}"
    }


@app.get("/bus/stats")
def bus_stats() -> Dict[str, Any]:
    """Get registry statistics."""
    return get_registry().get_stats()


@app.get("/bus/keys/{key:path}")
def key_status(key: str) -> Dict[str, Any]:
    """Waiters, cache and schedule state for one key (payload not included)."""
    return {"key": key, **get_registry().describe(key)}
