"""FastAPI dependencies shared by the decision routers."""

from fastapi import HTTPException, Request, status

from decision.runtime import DecisionRuntime
from decision.store import RecordStore


def get_runtime(request: Request) -> DecisionRuntime:
    """
    FastAPI dependency returning the session runtime created at startup.

    Usage:
        @router.get("/things")
        async def list_things(runtime: DecisionRuntime = Depends(get_runtime)):
            ...

    Raises:
        HTTPException 503: If the application has not finished starting
    """
    runtime = getattr(request.app.state, "runtime", None)
    if runtime is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Decision runtime is not initialised",
        )
    return runtime


def get_store(request: Request) -> RecordStore:
    return get_runtime(request).store
