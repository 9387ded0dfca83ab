"""Scheduler entry points for the lifecycle sweeps."""

from __future__ import annotations

from fastapi import APIRouter, Depends, status

from pinmeet.domain.events import container, schemas
from pinmeet.infra.auth import verify_internal_secret

router = APIRouter(prefix="/internal", tags=["internal"])


@router.post("/sweeps/expire", status_code=status.HTTP_200_OK, response_model=schemas.SweepResponse)
async def expire_sweep_internal(_auth: None = Depends(verify_internal_secret)) -> schemas.SweepResponse:
	result = await container.get_expire_job().run_once()
	return schemas.SweepResponse(**result.to_payload())


@router.post("/sweeps/retention", status_code=status.HTTP_200_OK, response_model=schemas.SweepResponse)
async def retention_sweep_internal(_auth: None = Depends(verify_internal_secret)) -> schemas.SweepResponse:
	result = await container.get_retention_job().run_once()
	return schemas.SweepResponse(**result.to_payload())
