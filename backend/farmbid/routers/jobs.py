"""Jobs router: run a scheduled sweep on demand.

Endpoints:
    GET  /api/jobs            List sweep names
    POST /api/jobs/{sweep}    Run one sweep now and return its summary

Guarded by the `X-Admin-Token` header, compared against ADMIN_API_TOKEN.
With no token configured the endpoints are disabled.
"""

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import async_sessionmaker

from farmbid.auth.deps import require_admin_token
from farmbid.database import get_session_factory
from farmbid.services.scheduler import SWEEP_NAMES, build_sweeps, run_sweep

router = APIRouter()


def get_sweeps(session_factory: async_sessionmaker = Depends(get_session_factory)) -> dict:
    return build_sweeps(session_factory)


@router.get("", dependencies=[Depends(require_admin_token)])
async def list_sweeps():
    return {"sweeps": list(SWEEP_NAMES)}


@router.post("/{sweep}", dependencies=[Depends(require_admin_token)])
async def trigger_sweep(sweep: str, sweeps: dict = Depends(get_sweeps)):
    """Run `sweep` now.  409 if it is already running elsewhere."""
    summary = await run_sweep(sweep, sweeps)
    if summary is None:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Sweep {sweep} is already running",
        )
    return {"sweep": sweep, "summary": summary}
