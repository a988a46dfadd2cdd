# =============================================================================
# 🔐 utils/qr_protection.py
# -----------------------------------------------------------------------------
# Zugriffsschutz für QR-Codes: Passwort, Zeitfenster, Nutzungslimits, Geofence.
# Reihenfolge ist fest, die erste Ablehnung gewinnt.
#
# Nutzungslimits sind fail-open (DB-Fehler → Zugriff erlaubt),
# Passwort/Zeit/Geofence sind fail-closed.
# =============================================================================

from __future__ import annotations

import hashlib
import hmac
import logging
import math
from dataclasses import dataclass
from datetime import date, datetime, time, timezone
from typing import Any, Dict, Mapping, Optional, Protocol, Sequence, Tuple

from utils.scan_context import local_timezone_name, resolve_zone

logger = logging.getLogger(__name__)

EARTH_RADIUS_KM = 6371.0


# =============================================================================
# 🧩 Einstellungen
# =============================================================================
@dataclass(frozen=True)
class PasswordProtection:
    enabled: bool
    password_hash: str
    hint: Optional[str] = None


@dataclass(frozen=True)
class GeofenceProtection:
    enabled: bool
    allowed_countries: Tuple[str, ...] = ()
    allowed_regions: Tuple[str, ...] = ()
    allowed_cities: Tuple[str, ...] = ()
    blocked_countries: Tuple[str, ...] = ()
    blocked_regions: Tuple[str, ...] = ()
    blocked_cities: Tuple[str, ...] = ()
    radius_km: Optional[float] = None
    center_lat: Optional[float] = None
    center_lng: Optional[float] = None


@dataclass(frozen=True)
class HourWindow:
    start: int
    end: int


@dataclass(frozen=True)
class TimeBasedProtection:
    enabled: bool
    start_date: Optional[str] = None
    end_date: Optional[str] = None
    allowed_days: Tuple[int, ...] = ()  # 0 = Sonntag … 6 = Samstag
    allowed_hours: Optional[HourWindow] = None
    timezone: Optional[str] = None


@dataclass(frozen=True)
class UsageLimits:
    enabled: bool
    max_scans: Optional[int] = None
    max_scans_per_day: Optional[int] = None
    max_scans_per_user: Optional[int] = None


@dataclass(frozen=True)
class QRProtectionSettings:
    password: Optional[PasswordProtection] = None
    geofence: Optional[GeofenceProtection] = None
    time_based: Optional[TimeBasedProtection] = None
    usage_limits: Optional[UsageLimits] = None


@dataclass(frozen=True)
class UserLocation:
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    country: Optional[str] = None
    region: Optional[str] = None
    city: Optional[str] = None

    @property
    def has_coordinates(self) -> bool:
        return self.latitude is not None and self.longitude is not None


@dataclass(frozen=True)
class AccessInputs:
    password: Optional[str] = None
    user_identifier: Optional[str] = None
    location: Optional[UserLocation] = None
    now: Optional[datetime] = None


@dataclass(frozen=True)
class AccessDecision:
    allowed: bool
    reason: Optional[str] = None
    requires_password: bool = False
    requires_location: bool = False

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"allowed": self.allowed}
        if self.reason:
            out["reason"] = self.reason
        if self.requires_password:
            out["requiresPassword"] = True
        if self.requires_location:
            out["requiresLocation"] = True
        return out


ALLOWED = AccessDecision(allowed=True)


class ScanCounter(Protocol):
    def count_total(self, qr_id: Any) -> int: ...

    def count_since(self, qr_id: Any, since: datetime) -> int: ...

    def count_for_identifier(self, qr_id: Any, identifier: str) -> int: ...


# =============================================================================
# 🔑 Passwort
# =============================================================================
def hash_password(password: str) -> str:
    """SHA-256 (hex) über die UTF-8-Bytes des Passworts."""
    return hashlib.sha256(password.encode("utf-8")).hexdigest()


def verify_password(password: str, password_hash: str) -> bool:
    return hmac.compare_digest(hash_password(password), (password_hash or "").lower())


def build_password_protection(password: str, hint: Optional[str] = None) -> PasswordProtection:
    return PasswordProtection(enabled=True, password_hash=hash_password(password), hint=hint)


# =============================================================================
# 🕒 Zeitfenster
# =============================================================================
def _js_weekday(moment: datetime) -> int:
    # Python: Montag = 0; gespeichert wird Sonntag = 0
    return (moment.weekday() + 1) % 7


def _parse_bound(raw: str, tz, end_of_day: bool) -> datetime:
    value = raw.strip()
    if len(value) == 10:
        day = date.fromisoformat(value)
        moment = datetime.combine(day, time.max if end_of_day else time.min)
        return moment.replace(tzinfo=tz)
    moment = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=tz)
    return moment


def check_time_restrictions(
    time_based: TimeBasedProtection,
    now: Optional[datetime] = None,
) -> AccessDecision:
    if not time_based.enabled:
        return ALLOWED

    tz = resolve_zone(time_based.timezone or local_timezone_name())
    current = (now or datetime.now(timezone.utc))
    if current.tzinfo is None:
        current = current.replace(tzinfo=timezone.utc)
    local = current.astimezone(tz)

    if time_based.start_date and time_based.end_date:
        start = _parse_bound(time_based.start_date, tz, end_of_day=False)
        end = _parse_bound(time_based.end_date, tz, end_of_day=True)
        if local < start or local > end:
            return AccessDecision(False, "QR code is not active during this time period")

    if time_based.allowed_days:
        if _js_weekday(local) not in time_based.allowed_days:
            return AccessDecision(False, "QR code is not accessible on this day of the week")

    window = time_based.allowed_hours
    if window is not None:
        hour = local.hour
        if window.start <= window.end:
            denied = hour < window.start or hour >= window.end
        else:
            # Nachtfenster, z. B. 22 → 6
            denied = window.end <= hour < window.start
        if denied:
            return AccessDecision(
                False,
                f"QR code is only accessible between {window.start}:00 and {window.end}:00",
            )

    return ALLOWED


# =============================================================================
# 📈 Nutzungslimits
# =============================================================================
def _start_of_day(now: datetime) -> datetime:
    local = now.astimezone(resolve_zone(local_timezone_name()))
    return local.replace(hour=0, minute=0, second=0, microsecond=0).astimezone(timezone.utc)


def check_usage_limits(
    qr_id: Any,
    user_identifier: str,
    limits: UsageLimits,
    scan_log: Optional[ScanCounter],
    now: Optional[datetime] = None,
) -> AccessDecision:
    if not limits.enabled:
        return ALLOWED
    if scan_log is None:
        logger.warning(f"⚠️ Kein Scan-Log für QR {qr_id} – Nutzungslimits übersprungen.")
        return ALLOWED

    try:
        if limits.max_scans:
            if scan_log.count_total(qr_id) >= limits.max_scans:
                return AccessDecision(False, "Maximum scan limit reached")

        if limits.max_scans_per_day:
            since = _start_of_day(now or datetime.now(timezone.utc))
            if scan_log.count_since(qr_id, since) >= limits.max_scans_per_day:
                return AccessDecision(False, "Daily scan limit reached")

        if limits.max_scans_per_user:
            if scan_log.count_for_identifier(qr_id, user_identifier) >= limits.max_scans_per_user:
                return AccessDecision(False, "Maximum scans per user reached")
    except Exception as exc:
        # fail-open
        logger.warning(f"⚠️ Nutzungslimits für QR {qr_id} nicht prüfbar, Zugriff erlaubt: {exc}")
        return ALLOWED

    return ALLOWED


# =============================================================================
# 🌍 Geofence
# =============================================================================
def calculate_distance(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """Haversine-Distanz in km."""
    d_lat = math.radians(lat2 - lat1)
    d_lng = math.radians(lng2 - lng1)
    a = (
        math.sin(d_lat / 2) ** 2
        + math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)) * math.sin(d_lng / 2) ** 2
    )
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return EARTH_RADIUS_KM * c


def _check_list(
    value: Optional[str],
    allowed: Sequence[str],
    blocked: Sequence[str],
    label: str,
) -> Optional[AccessDecision]:
    if allowed and (not value or value not in allowed):
        return AccessDecision(False, f"Location not in allowed {label}")
    if blocked and value and value in blocked:
        return AccessDecision(False, f"Location is in blocked {label}")
    return None


def check_geofence(location: UserLocation, geofence: GeofenceProtection) -> AccessDecision:
    if not geofence.enabled:
        return ALLOWED

    checks = (
        (location.country, geofence.allowed_countries, geofence.blocked_countries, "countries"),
        (location.region, geofence.allowed_regions, geofence.blocked_regions, "regions"),
        (location.city, geofence.allowed_cities, geofence.blocked_cities, "cities"),
    )
    for value, allowed, blocked, label in checks:
        denial = _check_list(value, allowed, blocked, label)
        if denial is not None:
            return denial

    if (
        geofence.radius_km is not None
        and geofence.center_lat is not None
        and geofence.center_lng is not None
    ):
        if not location.has_coordinates:
            return AccessDecision(False, "Location access required", requires_location=True)
        distance = calculate_distance(
            location.latitude,
            location.longitude,
            geofence.center_lat,
            geofence.center_lng,
        )
        if distance > geofence.radius_km:
            return AccessDecision(
                False,
                f"Location is {distance:.1f}km away, maximum allowed is {geofence.radius_km:g}km",
            )

    return ALLOWED


# =============================================================================
# ✅ Gesamtprüfung
# =============================================================================
def validate_qr_access(
    qr_id: Any,
    protection: QRProtectionSettings,
    inputs: Optional[AccessInputs] = None,
    scan_log: Optional[ScanCounter] = None,
) -> AccessDecision:
    inputs = inputs or AccessInputs()
    try:
        pw = protection.password
        if pw is not None and pw.enabled:
            if not inputs.password:
                return AccessDecision(False, "Password required", requires_password=True)
            if not verify_password(inputs.password, pw.password_hash):
                return AccessDecision(False, "Invalid password")

        if protection.time_based is not None:
            decision = check_time_restrictions(protection.time_based, inputs.now)
            if not decision.allowed:
                return decision

        if protection.usage_limits is not None and inputs.user_identifier:
            decision = check_usage_limits(
                qr_id,
                inputs.user_identifier,
                protection.usage_limits,
                scan_log,
                inputs.now,
            )
            if not decision.allowed:
                return decision

        geo = protection.geofence
        if geo is not None and geo.enabled:
            if inputs.location is None:
                return AccessDecision(False, "Location access required", requires_location=True)
            decision = check_geofence(inputs.location, geo)
            if not decision.allowed:
                return decision

        return ALLOWED
    except Exception as exc:
        logger.exception(f"❌ Fehler bei der Zugriffsprüfung für QR {qr_id}: {exc}")
        return AccessDecision(False, "Validation error occurred")


# =============================================================================
# 📥 JSON → Einstellungen (camelCase wie gespeichert)
# =============================================================================
def _str_tuple(raw: Any) -> Tuple[str, ...]:
    if not isinstance(raw, (list, tuple)):
        return ()
    return tuple(str(v) for v in raw)


def _opt_float(raw: Any) -> Optional[float]:
    if raw is None or isinstance(raw, bool):
        return None
    return float(raw)


def _opt_int(raw: Any) -> Optional[int]:
    if raw is None or isinstance(raw, bool):
        return None
    return int(raw)


def protection_from_dict(data: Optional[Mapping[str, Any]]) -> QRProtectionSettings:
    data = data or {}

    password = None
    raw = data.get("password")
    if isinstance(raw, Mapping):
        password = PasswordProtection(
            enabled=bool(raw.get("enabled")),
            password_hash=str(raw.get("passwordHash") or raw.get("password") or ""),
            hint=raw.get("hint"),
        )

    geofence = None
    raw = data.get("geofence")
    if isinstance(raw, Mapping):
        geofence = GeofenceProtection(
            enabled=bool(raw.get("enabled")),
            allowed_countries=_str_tuple(raw.get("allowedCountries")),
            allowed_regions=_str_tuple(raw.get("allowedRegions")),
            allowed_cities=_str_tuple(raw.get("allowedCities")),
            blocked_countries=_str_tuple(raw.get("blockedCountries")),
            blocked_regions=_str_tuple(raw.get("blockedRegions")),
            blocked_cities=_str_tuple(raw.get("blockedCities")),
            radius_km=_opt_float(raw.get("radius")),
            center_lat=_opt_float(raw.get("centerLat")),
            center_lng=_opt_float(raw.get("centerLng")),
        )

    time_based = None
    raw = data.get("timeBased")
    if isinstance(raw, Mapping):
        hours = raw.get("allowedHours")
        time_based = TimeBasedProtection(
            enabled=bool(raw.get("enabled")),
            start_date=raw.get("startDate"),
            end_date=raw.get("endDate"),
            allowed_days=tuple(int(d) for d in (raw.get("allowedDays") or [])),
            allowed_hours=(
                HourWindow(start=int(hours["start"]), end=int(hours["end"]))
                if isinstance(hours, Mapping)
                else None
            ),
            timezone=raw.get("timezone"),
        )

    usage = None
    raw = data.get("usageLimits")
    if isinstance(raw, Mapping):
        usage = UsageLimits(
            enabled=bool(raw.get("enabled")),
            max_scans=_opt_int(raw.get("maxScans")),
            max_scans_per_day=_opt_int(raw.get("maxScansPerDay")),
            max_scans_per_user=_opt_int(raw.get("maxScansPerUser")),
        )

    return QRProtectionSettings(
        password=password,
        geofence=geofence,
        time_based=time_based,
        usage_limits=usage,
    )


def protection_to_dict(settings: QRProtectionSettings) -> Dict[str, Any]:
    out: Dict[str, Any] = {}
    if settings.password is not None:
        out["password"] = {
            "enabled": settings.password.enabled,
            "passwordHash": settings.password.password_hash,
            "hint": settings.password.hint,
        }
    if settings.geofence is not None:
        g = settings.geofence
        out["geofence"] = {
            "enabled": g.enabled,
            "allowedCountries": list(g.allowed_countries),
            "allowedRegions": list(g.allowed_regions),
            "allowedCities": list(g.allowed_cities),
            "blockedCountries": list(g.blocked_countries),
            "blockedRegions": list(g.blocked_regions),
            "blockedCities": list(g.blocked_cities),
            "radius": g.radius_km,
            "centerLat": g.center_lat,
            "centerLng": g.center_lng,
        }
    if settings.time_based is not None:
        t = settings.time_based
        out["timeBased"] = {
            "enabled": t.enabled,
            "startDate": t.start_date,
            "endDate": t.end_date,
            "allowedDays": list(t.allowed_days),
            "allowedHours": (
                {"start": t.allowed_hours.start, "end": t.allowed_hours.end}
                if t.allowed_hours
                else None
            ),
            "timezone": t.timezone,
        }
    if settings.usage_limits is not None:
        u = settings.usage_limits
        out["usageLimits"] = {
            "enabled": u.enabled,
            "maxScans": u.max_scans,
            "maxScansPerDay": u.max_scans_per_day,
            "maxScansPerUser": u.max_scans_per_user,
        }
    return out
