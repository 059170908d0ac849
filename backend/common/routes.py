from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import  AsyncSession
from backend.common import logger
from backend.common.utils import success_response
from backend.db.dependencies import get_session

home_router = APIRouter()


@home_router.get("/health")
async def health_check(session:AsyncSession=Depends(get_session)):
    try:
        await session.execute(text("SELECT 1"))
    except SQLAlchemyError:
        logger.exception("health.db_unreachable")
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Database connection error")

    return success_response({"status": "healthy"})
