"""
LabOps API server entry point.
"""

import os

import uvicorn

import core.config as config
from app.main import app


if __name__ == "__main__":
    config.logger.info("LabOps starting...")
    uvicorn.run(
        app,
        host=os.environ.get("LABOPS_HOST", "0.0.0.0"),
        port=int(os.environ.get("PORT", "8080")),
    )
