from fastapi import APIRouter, Depends, HTTPException, status

from catalog_sync.services.repository import RepositoryUnavailableError, SyncRepository, get_repository

router = APIRouter()


@router.get("/")
async def root() -> dict[str, str]:
    return {"status": "ok"}


@router.get("/healthz")
async def healthz() -> dict[str, str]:
    return {"status": "ok"}


@router.get("/readyz")
async def readyz(repository: SyncRepository = Depends(get_repository)) -> dict[str, str]:
    try:
        await repository.latest_progress("__readiness__")
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return {"status": "ready"}
