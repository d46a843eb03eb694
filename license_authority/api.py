from __future__ import annotations

from fastapi import APIRouter, Depends, Response, status

from license_authority.clock import to_rfc3339
from license_authority.models import (
    ActivateResponse,
    GenerateLicenseRequest,
    LicenseEnvelope,
    LicenseKeyRequest,
    LicenseOut,
    LicenseStatus,
    StatsResponse,
    SweepResponse,
    UpdateLicenseRequest,
    VerifyResponse,
)
from license_authority.services import Services, get_services
from license_authority.web_admin import require_admin

router = APIRouter(tags=["licenses"])


@router.get("/health")
def health(services: Services = Depends(get_services)) -> dict[str, object]:
    return {"ok": True, "serverTime": to_rfc3339(services.clock.now())}


@router.post("/licenses/verify", response_model=VerifyResponse, response_model_exclude_none=True)
def verify_license(
    request: LicenseKeyRequest,
    services: Services = Depends(get_services),
) -> VerifyResponse:
    return services.authority.verify(request.license_key, request.hwid)


@router.post("/licenses/activate", response_model=ActivateResponse)
def activate_license(
    request: LicenseKeyRequest,
    services: Services = Depends(get_services),
) -> ActivateResponse:
    record = services.authority.activate(request.license_key, request.hwid)
    return ActivateResponse(success=True, license=LicenseOut.from_record(record))


@router.post(
    "/licenses/generate",
    response_model=LicenseEnvelope,
    status_code=status.HTTP_201_CREATED,
)
def generate_license(
    request: GenerateLicenseRequest,
    _: str = Depends(require_admin),
    services: Services = Depends(get_services),
) -> LicenseEnvelope:
    record = services.authority.issue(
        license_type=request.license_type,
        duration=request.duration,
        duration_type=request.duration_type,
        hwid_lock=request.hwid_lock,
        features=request.features,
        discord_username=request.discord_username,
        user_id=request.user_id,
    )
    return LicenseEnvelope(license=LicenseOut.from_record(record))


@router.get("/licenses", response_model=list[LicenseOut])
def list_licenses_view(
    status: LicenseStatus | None = None,
    search: str | None = None,
    _: str = Depends(require_admin),
    services: Services = Depends(get_services),
) -> list[LicenseOut]:
    records = services.authority.list(status=status, search=search)
    return [LicenseOut.from_record(record) for record in records]


@router.get("/licenses/stats", response_model=StatsResponse)
def license_stats(
    _: str = Depends(require_admin),
    services: Services = Depends(get_services),
) -> StatsResponse:
    counts = services.authority.stats()
    return StatsResponse(
        total_count=counts["total"],
        active_count=counts["active"],
        pending_count=counts["pending"],
        expired_count=counts["expired"],
        revoked_count=counts["revoked"],
    )


@router.post("/licenses/sweep", response_model=SweepResponse)
def run_sweep(
    _: str = Depends(require_admin),
    services: Services = Depends(get_services),
) -> SweepResponse:
    result = services.sweeper.run_once()
    if result is None:
        return SweepResponse(expired=0, expiring_soon=0)
    return SweepResponse(expired=result.expired, expiring_soon=result.expiring_soon)


@router.get("/licenses/{license_id}", response_model=LicenseEnvelope)
def get_license_view(
    license_id: int,
    _: str = Depends(require_admin),
    services: Services = Depends(get_services),
) -> LicenseEnvelope:
    record = services.authority.get(license_id)
    return LicenseEnvelope(license=LicenseOut.from_record(record))


@router.put("/licenses/{license_id}", response_model=LicenseEnvelope)
def update_license_view(
    license_id: int,
    patch: UpdateLicenseRequest,
    _: str = Depends(require_admin),
    services: Services = Depends(get_services),
) -> LicenseEnvelope:
    changes = patch.model_dump(exclude_unset=True)
    record = services.authority.update(license_id, changes)
    return LicenseEnvelope(license=LicenseOut.from_record(record))


@router.delete("/licenses/{license_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_license_view(
    license_id: int,
    _: str = Depends(require_admin),
    services: Services = Depends(get_services),
) -> Response:
    services.authority.delete(license_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
