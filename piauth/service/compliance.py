from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Protocol

from piauth.config import KycPolicy
from piauth.logging import get_logger
from piauth.storage.models import Principal

logger = get_logger(__name__)

KYC_VERIFIED = "verified"

REASON_LOCATION_REQUIRED = "location_required"
REASON_OUTSIDE_REGION = "outside_service_region"
REASON_KYC_REQUIRED = "kyc_required"


@dataclass(frozen=True)
class GeoLocation:
    latitude: float
    longitude: float


@dataclass(frozen=True)
class BoundingBox:
    min_latitude: float
    max_latitude: float
    min_longitude: float
    max_longitude: float

    def contains(self, location: GeoLocation) -> bool:
        return (
            self.min_latitude <= location.latitude <= self.max_latitude
            and self.min_longitude <= location.longitude <= self.max_longitude
        )


# Egypt, the marketplace's service region
EGYPT_BOUNDS = BoundingBox(
    min_latitude=22.0, max_latitude=31.7, min_longitude=24.7, max_longitude=36.9
)


@dataclass(frozen=True)
class ComplianceDecision:
    allowed: bool
    reason: Optional[str] = None

    @classmethod
    def allow(cls) -> "ComplianceDecision":
        return cls(allowed=True)

    @classmethod
    def deny(cls, reason: str) -> "ComplianceDecision":
        return cls(allowed=False, reason=reason)


class ComplianceGate(Protocol):
    async def check(
        self, principal: Principal, location: Optional[GeoLocation], kyc_status: str
    ) -> ComplianceDecision: ...


class RegionalComplianceGate:
    """Jurisdiction and KYC policy for token issuance.

    The location must fall inside the service region. KYC must be verified
    for every principal, only for merchants, or for nobody, depending on
    ``kyc_required_for``.
    """

    def __init__(
        self,
        *,
        region: BoundingBox = EGYPT_BOUNDS,
        kyc_required_for: KycPolicy = KycPolicy.MERCHANT,
    ) -> None:
        self.region = region
        self.kyc_required_for = KycPolicy(kyc_required_for)

    def _kyc_required(self, principal: Principal) -> bool:
        if self.kyc_required_for is KycPolicy.ALL:
            return True
        if self.kyc_required_for is KycPolicy.MERCHANT:
            return principal.is_merchant
        return False

    async def check(
        self, principal: Principal, location: Optional[GeoLocation], kyc_status: str
    ) -> ComplianceDecision:
        if location is None:
            decision = ComplianceDecision.deny(REASON_LOCATION_REQUIRED)
        elif not self.region.contains(location):
            decision = ComplianceDecision.deny(REASON_OUTSIDE_REGION)
        elif self._kyc_required(principal) and (kyc_status or "").lower() != KYC_VERIFIED:
            decision = ComplianceDecision.deny(REASON_KYC_REQUIRED)
        else:
            decision = ComplianceDecision.allow()
        if not decision.allowed:
            logger.info(
                "compliance_denied", user_id=principal.user_id, reason=decision.reason
            )
        return decision


__all__ = [
    "GeoLocation",
    "BoundingBox",
    "EGYPT_BOUNDS",
    "ComplianceDecision",
    "ComplianceGate",
    "RegionalComplianceGate",
    "REASON_LOCATION_REQUIRED",
    "REASON_OUTSIDE_REGION",
    "REASON_KYC_REQUIRED",
]
