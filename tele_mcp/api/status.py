from typing import Any, Dict

from fastapi import APIRouter, Depends

from tele_mcp.api.deps import get_context
from tele_mcp.core.context import BridgeContext

router = APIRouter()


@router.get("/status")
async def status(ctx: BridgeContext = Depends(get_context)) -> Dict[str, Any]:
    return ctx.status()
