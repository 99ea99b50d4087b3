from fastapi import APIRouter, Depends

from tripledger.core.config import Settings, get_settings
from tripledger.db.migrate import get_schema_version

router = APIRouter(tags=["health"])

ATOMIC_PROCEDURES = (
    "add_expense_with_total",
    "update_expense_with_total",
    "delete_expense_with_total",
    "batch_add_expenses",
)


@router.get("/health", summary="Liveness probe")
async def health(settings: Settings = Depends(get_settings)):
    return {
        "status": "ok",
        "version": settings.version,
        "schema_version": get_schema_version(settings.db_path),
    }


@router.get("/capabilities", summary="Atomic procedures enabled on this server")
async def capabilities(settings: Settings = Depends(get_settings)):
    procedures = list(ATOMIC_PROCEDURES) if settings.enable_atomic_procedures else []
    return {"procedures": procedures}
