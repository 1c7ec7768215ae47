"""
Health check for the database dependency.
"""
import logging
import os

from fastapi import APIRouter, Request
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

logger = logging.getLogger(__name__)
router = APIRouter()


@router.get("")
async def health_check(request: Request):
    status = {"status": "ok", "components": {}, "version": os.getenv("APP_VERSION", "unknown")}

    try:
        with request.app.state.engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        status["components"]["db"] = "ok"
    except SQLAlchemyError as e:
        logger.error(f"Database health check failed: {e}")
        status["components"]["db"] = f"error: {str(e)}"
        status["status"] = "degraded"

    return status
