from __future__ import annotations

from typing import Any, Dict
import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from multisite import __version__
from multisite.config import CoordinationSettings
from multisite.coordination import coordination_router

logger = logging.getLogger(__name__)


app = FastAPI(title="Multi-Site Coordination", version=__version__)
app.include_router(coordination_router)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# -------------------------------
# Endpoints
# -------------------------------

@app.get("/health")
def health() -> Dict[str, str]:
    return {"status": "ok"}


@app.get("/config")
def get_config() -> Dict[str, Any]:
    """Active coordination thresholds."""
    config = CoordinationSettings.get_config()
    return {
        "log_capacity": config.log_capacity,
        "registry_capacity": config.registry_capacity,
        "partition_transfers": config.partition_transfers,
        "insight": vars(config.insight),
        "contention": vars(config.contention),
        "optimizer": vars(config.optimizer),
        "audit": {**vars(config.audit), "autoclave_classes": list(config.audit.autoclave_classes)},
    }
