from typing import Any, Dict

from fastapi import APIRouter

from tele_mcp.utils.time import utc_now

router = APIRouter()


@router.get("/health")
async def health() -> Dict[str, Any]:
    return {"status": "ok", "time": utc_now()}
