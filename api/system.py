"""
System routes for the REViewer relay.

Health and diagnostics, plus the extension-facing endpoints that drive
the pull path when the extension lives outside this process.
"""

from fastapi import APIRouter, Depends, Request

from .context import RelayContext, get_relay
from .data_provider import DataFrameService

router = APIRouter(tags=["system"])


def get_frames(request: Request) -> DataFrameService:
    return request.app.state.frames


@router.get("/health")
async def health_check(relay: RelayContext = Depends(get_relay)):
    """Liveness probe used by R's reviewer_status()."""
    return {
        "status": "ok",
        "port": relay.port,
        "rSessionConnected": relay.session.is_attached(),
    }


@router.get("/status")
async def status(relay: RelayContext = Depends(get_relay)):
    """Session and pending-request diagnostics."""
    return relay.status()


@router.get("/dataframes")
async def list_data_frames(frames: DataFrameService = Depends(get_frames)):
    """List data frames in the attached R session."""
    items = await frames.list_data_frames()
    return {"dataframes": [item.model_dump() for item in items], "total": len(items)}


@router.get("/dataframes/{name}")
async def get_data_frame(
    name: str,
    refresh: bool = False,
    frames: DataFrameService = Depends(get_frames),
):
    """Fetch one data frame from R and show it."""
    if refresh:
        snapshot = await frames.refresh(name)
    else:
        snapshot = await frames.get_data_frame(name)
    return snapshot.to_dict()
