from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Iterable

from ..core.clock import as_utc

RAPID_WINDOW = timedelta(seconds=10)
FREQUENT_WINDOW = timedelta(seconds=30)
SPREAD_WINDOW = timedelta(minutes=5)

_WEIGHTS = {
    "RAPID_SCANS": 30,
    "FREQUENT_SCANS": 15,
    "MULTIPLE_LOCATIONS": 25,
    "MULTIPLE_DEVICES": 20,
    "UNUSUAL_HOURS": 10,
}

@dataclass(frozen=True)
class FraudFlag:
    type: str
    severity: str
    detail: dict[str, Any] = field(default_factory=dict)

@dataclass(frozen=True)
class FraudAnalysis:
    flags: list[FraudFlag]
    risk_score: int
    risk_level: str
    recommendation: str

    @property
    def detected(self) -> bool:
        return bool(self.flags)

    def as_dict(self) -> dict[str, Any]:
        return {
            "detected": self.detected,
            "flags": [{"type": f.type, "severity": f.severity, **f.detail} for f in self.flags],
            "risk_score": self.risk_score,
            "risk_level": self.risk_level,
            "recommendation": self.recommendation,
        }

def risk_level(score: int) -> str:
    if score >= 50:
        return "critical"
    if score >= 30:
        return "high"
    if score >= 15:
        return "medium"
    if score >= 5:
        return "low"
    return "minimal"

def recommendation(score: int, detected: bool) -> str:
    if not detected:
        return "allow"
    if score >= 50:
        return "block"
    if score >= 30:
        return "review"
    return "monitor"

def analyze(previous: Iterable[Any], *, location: str, device_id: str, now: datetime) -> FraudAnalysis:
    """
    Advisory only. `previous` are earlier scan-log rows of the same ticket (any order);
    the current attempt is described by location/device_id/now.
    """
    now = as_utc(now)
    prior = sorted(previous, key=lambda s: as_utc(s.scanned_at))
    flags: list[FraudFlag] = []

    if prior:
        gap = now - as_utc(prior[-1].scanned_at)
        gap_ms = int(gap.total_seconds() * 1000)
        if gap < RAPID_WINDOW:
            flags.append(FraudFlag("RAPID_SCANS", "high", {"time_diff_ms": gap_ms}))
        elif gap < FREQUENT_WINDOW:
            flags.append(FraudFlag("FREQUENT_SCANS", "medium", {"time_diff_ms": gap_ms}))

    recent = [s for s in prior if now - as_utc(s.scanned_at) <= SPREAD_WINDOW]
    locations = sorted({s.location for s in recent} | {location})
    if len(locations) > 1:
        flags.append(FraudFlag("MULTIPLE_LOCATIONS", "high", {"locations": locations}))
    devices = sorted({s.device_id for s in recent} | {device_id})
    if len(devices) > 1:
        flags.append(FraudFlag("MULTIPLE_DEVICES", "medium", {"devices": devices}))

    if now.hour < 6 or now.hour > 22:
        flags.append(FraudFlag("UNUSUAL_HOURS", "low", {"hour": now.hour}))

    score = sum(_WEIGHTS[f.type] for f in flags)
    return FraudAnalysis(
        flags=flags,
        risk_score=score,
        risk_level=risk_level(score),
        recommendation=recommendation(score, bool(flags)),
    )
