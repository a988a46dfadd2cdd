# =============================================================================
# 📡 utils/scan_context.py
# -----------------------------------------------------------------------------
# Baut aus den Rohsignalen eines Scans (User-Agent, IP, Referer, Sprache)
# einen normalisierten ScanContext für die Smart-QR-Regeln.
# =============================================================================

from __future__ import annotations

import ipaddress
import logging
import os
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import httpx

from utils.result import Err, Ok, Result

logger = logging.getLogger(__name__)

GEOIP_URL = os.getenv(
    "GEOIP_URL",
    "http://ip-api.com/json/{ip}?fields=status,country,regionName,city,lat,lon,timezone",
)
# Lookup darf nie länger als 10 Sekunden blockieren
GEOIP_TIMEOUT = min(float(os.getenv("GEOIP_TIMEOUT", "5.0")), 10.0)
DEFAULT_TIMEZONE = os.getenv("DEFAULT_TIMEZONE", "UTC")
DEFAULT_LANGUAGE = os.getenv("DEFAULT_LANGUAGE", "en")

UNKNOWN = "Unknown"

DEVICE_MOBILE = "mobile"
DEVICE_TABLET = "tablet"
DEVICE_DESKTOP = "desktop"

_TABLET_RE = re.compile(r"tablet|ipad|playbook|silk", re.IGNORECASE)
_MOBILE_RE = re.compile(
    r"mobile|iphone|ipod|android|blackberry|opera mini|windows ce|palm|smartphone|iemobile",
    re.IGNORECASE,
)


# =============================================================================
# 🧩 Datentypen
# =============================================================================
@dataclass(frozen=True)
class DeviceInfo:
    type: str
    os: str
    browser: str
    user_agent: str


@dataclass(frozen=True)
class LocationInfo:
    country: str
    region: str
    city: str
    timezone: str
    language: str


@dataclass(frozen=True)
class GeoLookup:
    country: str
    region: str
    city: str
    timezone: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None


@dataclass(frozen=True)
class ScanSignals:
    """Rohsignale einer eingehenden Scan-Anfrage."""

    user_agent: str = ""
    ip_address: Optional[str] = None
    referrer: Optional[str] = None
    accept_language: Optional[str] = None
    custom_params: Dict[str, str] = field(default_factory=dict)
    timestamp: Optional[datetime] = None
    # bereits durchgeführter Lookup (vermeidet doppelte Provider-Anfragen)
    geo: Optional[Result[GeoLookup]] = None


@dataclass(frozen=True)
class ScanContext:
    device: DeviceInfo
    location: LocationInfo
    time: datetime
    referrer: Optional[str] = None
    custom_params: Dict[str, str] = field(default_factory=dict)

    def local_time(self) -> datetime:
        return self.time.astimezone(resolve_zone(self.location.timezone))

    @property
    def hour(self) -> int:
        return self.local_time().hour

    def to_payload(self) -> Dict[str, Any]:
        return {
            "device": {
                "type": self.device.type,
                "os": self.device.os,
                "browser": self.device.browser,
                "userAgent": self.device.user_agent,
            },
            "location": {
                "country": self.location.country,
                "region": self.location.region,
                "city": self.location.city,
                "timezone": self.location.timezone,
                "language": self.location.language,
            },
            "time": self.time.isoformat(),
            "referrer": self.referrer,
            "customParams": dict(self.custom_params),
        }


# =============================================================================
# 🕒 Zeitzonen & Sprache
# =============================================================================
def resolve_zone(name: Optional[str]) -> ZoneInfo:
    """IANA-Zone laden; ungültige Namen fallen auf UTC zurück."""
    try:
        return ZoneInfo(name or DEFAULT_TIMEZONE)
    except (ZoneInfoNotFoundError, ValueError):
        return ZoneInfo("UTC")


def local_timezone_name() -> str:
    return DEFAULT_TIMEZONE


def declared_language(accept_language: Optional[str]) -> str:
    """Erstes Tag aus einem Accept-Language-Header, z. B. 'de-DE'."""
    raw = (accept_language or "").strip()
    if not raw:
        return DEFAULT_LANGUAGE
    first = raw.split(",", 1)[0].split(";", 1)[0].strip()
    return first or DEFAULT_LANGUAGE


# =============================================================================
# 📱 Geräteerkennung
# =============================================================================
def _detect_os(ua: str) -> str:
    if "windows" in ua:
        return "Windows"
    if "android" in ua:
        return "Android"
    if "iphone" in ua or "ipad" in ua or "ipod" in ua:
        return "iOS"
    if "macintosh" in ua or "mac os x" in ua:
        return "macOS"
    if "linux" in ua:
        return "Linux"
    return UNKNOWN


def _detect_browser(ua: str) -> str:
    if "firefox" in ua:
        return "Firefox"
    # Edge und Opera enthalten ebenfalls "chrome" und "safari"
    if "edg" in ua:
        return "Edge"
    if "opr/" in ua or "opera" in ua:
        return "Opera"
    if "chrome" in ua and "edg" not in ua:
        return "Chrome"
    if "safari" in ua and "chrome" not in ua:
        return "Safari"
    return UNKNOWN


def detect_device(user_agent: Optional[str]) -> DeviceInfo:
    raw = user_agent or ""
    ua = raw.lower()

    if _TABLET_RE.search(ua):
        device_type = DEVICE_TABLET
    elif _MOBILE_RE.search(ua):
        device_type = DEVICE_MOBILE
    else:
        device_type = DEVICE_DESKTOP

    return DeviceInfo(
        type=device_type,
        os=_detect_os(ua),
        browser=_detect_browser(ua),
        user_agent=raw,
    )


# =============================================================================
# 🌍 IP-Geolokalisierung
# =============================================================================
def _is_private_or_local(ip_address: str) -> bool:
    try:
        ip = ipaddress.ip_address(ip_address)
    except ValueError:
        return True
    return (
        ip.is_private
        or ip.is_loopback
        or ip.is_link_local
        or ip.is_reserved
        or ip.is_multicast
    )


def _float_or_none(value: Any) -> Optional[float]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return float(value)


class GeoLocator:
    """
    IP → Standort über einen externen Provider.
    Jeder Fehler wird als Err zurückgegeben, nie als Exception.
    """

    def __init__(
        self,
        client: Optional[httpx.Client] = None,
        url_template: str = GEOIP_URL,
        timeout: float = GEOIP_TIMEOUT,
    ):
        self._client = client
        self._url_template = url_template
        self._timeout = min(timeout, 10.0)

    def _fetch(self, url: str) -> httpx.Response:
        if self._client is not None:
            return self._client.get(url, timeout=self._timeout)
        with httpx.Client(timeout=self._timeout) as client:
            return client.get(url)

    def lookup(self, ip_address: Optional[str]) -> Result[GeoLookup]:
        ip = (ip_address or "").strip()
        if not ip or ip == "unknown":
            return Err("no client address")
        if _is_private_or_local(ip):
            return Err(f"address {ip} is not routable")

        try:
            resp = self._fetch(self._url_template.format(ip=ip))
            if resp.status_code != 200:
                return Err(f"provider answered HTTP {resp.status_code}")
            payload = resp.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning(f"⚠️ GeoIP-Lookup fehlgeschlagen für {ip}: {exc}")
            return Err(str(exc) or exc.__class__.__name__)

        if not isinstance(payload, dict):
            return Err("malformed provider payload")
        if payload.get("status", "success") != "success":
            return Err(str(payload.get("message") or "lookup rejected"))

        return Ok(
            GeoLookup(
                country=str(payload.get("country") or payload.get("country_name") or UNKNOWN),
                region=str(payload.get("regionName") or payload.get("region") or UNKNOWN),
                city=str(payload.get("city") or UNKNOWN),
                timezone=payload.get("timezone") or None,
                latitude=_float_or_none(payload.get("lat", payload.get("latitude"))),
                longitude=_float_or_none(payload.get("lon", payload.get("longitude"))),
            )
        )


def location_from_lookup(geo: Optional[Result[GeoLookup]], language: str) -> LocationInfo:
    if isinstance(geo, Ok):
        return LocationInfo(
            country=geo.value.country or UNKNOWN,
            region=geo.value.region or UNKNOWN,
            city=geo.value.city or UNKNOWN,
            timezone=geo.value.timezone or local_timezone_name(),
            language=language,
        )
    return LocationInfo(
        country=UNKNOWN,
        region=UNKNOWN,
        city=UNKNOWN,
        timezone=local_timezone_name(),
        language=language,
    )


def detect_location(
    ip_address: Optional[str],
    language: Optional[str] = None,
    locator: Optional[GeoLocator] = None,
) -> LocationInfo:
    """Standort per IP. Wirft nie – im Fehlerfall 'Unknown'-Felder."""
    lang = language or DEFAULT_LANGUAGE
    try:
        geo = (locator or GeoLocator()).lookup(ip_address)
    except Exception as exc:
        logger.warning(f"⚠️ Standorterkennung abgebrochen: {exc}")
        geo = Err(str(exc))
    return location_from_lookup(geo, lang)


# =============================================================================
# ✅ ScanContext aus Rohsignalen
# =============================================================================
def extract_context(
    signals: ScanSignals,
    locator: Optional[GeoLocator] = None,
) -> Result[ScanContext]:
    try:
        device = detect_device(signals.user_agent)
        language = declared_language(signals.accept_language)
        if signals.geo is not None:
            location = location_from_lookup(signals.geo, language)
        else:
            location = detect_location(signals.ip_address, language, locator)

        moment = signals.timestamp or datetime.now(timezone.utc)
        if moment.tzinfo is None:
            moment = moment.replace(tzinfo=timezone.utc)

        return Ok(
            ScanContext(
                device=device,
                location=location,
                time=moment,
                referrer=signals.referrer or None,
                custom_params=dict(signals.custom_params or {}),
            )
        )
    except Exception as exc:
        logger.error(f"❌ ScanContext konnte nicht erstellt werden: {exc}")
        return Err(f"context extraction failed: {exc}")
