# =============================================================================
# 🔄 Smart-QR-Resolver
# -----------------------------------------------------------------------------
#       GET /d/{slug}                          → 302 / 403 / 404
#       GET /d/{slug}/convert                  → Conversion-Tracking
#       GET /smart-content/{config}/{rule}     → Inhalt einer 'content'-Regel
#
# Ablauf: QR laden → Zugriffsschutz prüfen → Smart-Regeln auswerten →
#         Scan speichern → Weiterleitung.
# =============================================================================

from __future__ import annotations

import logging
from typing import Dict, Optional, Union

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import HTMLResponse, JSONResponse, PlainTextResponse, RedirectResponse
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from database import get_db
from models.qr_conversion import QRConversion
from models.qrcode import QRCode
from utils.errors import SmartQRConfigError
from utils.qr_protection import (
    AccessDecision,
    AccessInputs,
    UserLocation,
    protection_from_dict,
    validate_qr_access,
)
from utils.result import Ok, Result
from utils.scan_context import (
    GeoLocator,
    GeoLookup,
    ScanContext,
    ScanSignals,
    detect_device,
    extract_context,
)
from utils.scan_log import SqlScanLog, record_scan
from utils.smart_qr import Resolution, SmartQRResolver, track_scan
from utils.smart_rules import MultiURLConfig, config_from_dict

logger = logging.getLogger(__name__)

router = APIRouter(tags=["QR-Resolver"])

ResponseType = Union[RedirectResponse, JSONResponse, HTMLResponse, PlainTextResponse]

TEST_IPS = {"127.0.0.1", "::1", "localhost"}
RESERVED_PARAMS = {"password", "lat", "lng", "track"}


# -----------------------------------------------------------------------------
# 🔌 Abhängigkeiten (in Tests überschreibbar)
# -----------------------------------------------------------------------------
def get_geolocator() -> GeoLocator:
    return GeoLocator()


def get_resolver(locator: GeoLocator = Depends(get_geolocator)) -> SmartQRResolver:
    return SmartQRResolver(locator=locator)


# -----------------------------------------------------------------------------
# 🧰 Hilfsfunktionen
# -----------------------------------------------------------------------------
def _client_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",", 1)[0].strip()
        if first:
            return first
    real_ip = (request.headers.get("x-real-ip") or "").strip()
    if real_ip:
        return real_ip
    return request.client.host if request.client else "unknown"


def _is_test_user_agent(user_agent: str) -> bool:
    ua = (user_agent or "").lower()
    return (
        ua.startswith("curl/")
        or "postmanruntime" in ua
        or "insomnia" in ua
        or "httpie/" in ua
    )


def _should_track_scan(request: Request, client_ip: str) -> bool:
    flag = (request.query_params.get("track") or "").lower()
    if flag in {"1", "true", "yes"}:
        return True
    if flag in {"0", "false", "no"}:
        return False
    if client_ip in TEST_IPS:
        return False
    return not _is_test_user_agent(request.headers.get("user-agent", ""))


def _load_qr(db: Session, slug: str) -> QRCode:
    qr: Optional[QRCode] = (
        db.query(QRCode)
        .filter(QRCode.slug == slug, QRCode.active == True)  # noqa: E712
        .first()
    )
    if not qr:
        raise HTTPException(404, "QR code not found or inactive")
    return qr


def _load_config(qr: QRCode) -> Optional[MultiURLConfig]:
    smart = qr.get_smart_config()
    if not smart:
        return None
    try:
        return config_from_dict(smart, strict=False)
    except (SmartQRConfigError, TypeError, ValueError, AttributeError) as exc:
        logger.warning(f"⚠️ Smart-Konfiguration von QR {qr.slug} unbrauchbar: {exc}")
        return None


def _user_location(
    geo: Result[GeoLookup],
    lat: Optional[float],
    lng: Optional[float],
) -> Optional[UserLocation]:
    found = geo.value if isinstance(geo, Ok) else None
    if found is None and (lat is None or lng is None):
        return None
    return UserLocation(
        latitude=lat if lat is not None else (found.latitude if found else None),
        longitude=lng if lng is not None else (found.longitude if found else None),
        country=found.country if found else None,
        region=found.region if found else None,
        city=found.city if found else None,
    )


def _check_access(
    db: Session,
    qr: QRCode,
    request: Request,
    client_ip: str,
    geo: Result[GeoLookup],
    password: Optional[str],
    lat: Optional[float],
    lng: Optional[float],
) -> AccessDecision:
    raw = qr.get_protection()
    if not raw:
        return AccessDecision(allowed=True)
    try:
        protection = protection_from_dict(raw)
    except (TypeError, ValueError, KeyError) as exc:
        logger.error(f"❌ Schutz-Einstellungen von QR {qr.slug} ungültig: {exc}")
        return AccessDecision(False, "Validation error occurred")

    inputs = AccessInputs(
        password=password or request.headers.get("x-qr-password"),
        user_identifier=client_ip if client_ip != "unknown" else None,
        location=_user_location(geo, lat, lng),
    )
    return validate_qr_access(qr.id, protection, inputs, SqlScanLog(db))


def _signals(request: Request, client_ip: str, geo: Result[GeoLookup]) -> ScanSignals:
    custom: Dict[str, str] = {
        k: v for k, v in request.query_params.items() if k not in RESERVED_PARAMS
    }
    return ScanSignals(
        user_agent=request.headers.get("user-agent", ""),
        ip_address=client_ip,
        referrer=request.headers.get("referer") or request.headers.get("referrer"),
        accept_language=request.headers.get("accept-language"),
        custom_params=custom,
        geo=geo,
    )


# =============================================================================
# ✅ Resolver
# =============================================================================
@router.get("/d/{slug}", response_model=None)
def resolve(
    slug: str,
    request: Request,
    password: Optional[str] = None,
    lat: Optional[float] = None,
    lng: Optional[float] = None,
    db: Session = Depends(get_db),
    locator: GeoLocator = Depends(get_geolocator),
    resolver: SmartQRResolver = Depends(get_resolver),
) -> ResponseType:
    qr = _load_qr(db, slug)
    client_ip = _client_ip(request)
    geo = locator.lookup(client_ip)

    # --- Zugriffsschutz ---------------------------------------------------
    decision = _check_access(db, qr, request, client_ip, geo, password, lat, lng)
    if not decision.allowed:
        logger.info(f"🚫 Zugriff auf {slug} verweigert: {decision.reason}")
        return JSONResponse(decision.to_dict(), status_code=403)

    # --- Ziel bestimmen ---------------------------------------------------
    signals = _signals(request, client_ip, geo)
    context: Optional[ScanContext] = None
    config = _load_config(qr)

    if config is not None:
        extracted = extract_context(signals, locator)
        if isinstance(extracted, Ok):
            context = extracted.value
            resolution = resolver.resolve_with_context(config, context)
            track_scan(config, resolution.rule_id, context)
        else:
            resolution = Resolution(url=config.default_url, error=extracted.error)
        if resolution.error:
            logger.warning(f"⚠️ {slug}: Fallback auf defaultUrl ({resolution.error})")
    elif qr.target_url:
        resolution = Resolution(url=qr.target_url)
    else:
        return HTMLResponse("Target URL missing", status_code=410)

    # --- Scan speichern ---------------------------------------------------
    if _should_track_scan(request, client_ip):
        record_scan(
            db,
            qr.id,
            client_ip,
            context,
            user_agent=signals.user_agent,
            referrer=signals.referrer,
            rule_id=resolution.rule_id,
            destination=resolution.url,
        )

    return RedirectResponse(resolution.url, status_code=302)


# =============================================================================
# 📈 Conversion-Tracking
# =============================================================================
@router.get("/d/{slug}/convert")
def track_conversion(
    slug: str,
    request: Request,
    event: str = "conversion",
    value: Optional[float] = None,
    currency: Optional[str] = None,
    rule: Optional[str] = None,
    db: Session = Depends(get_db),
):
    qr = _load_qr(db, slug)
    config = _load_config(qr)

    goals = config.analytics.conversion_goals if config else ()
    if goals and event not in goals:
        raise HTTPException(400, f"Unknown conversion goal '{event}'")

    if rule and config and not any(r.id == rule for r in config.rules):
        rule = None

    user_agent = request.headers.get("user-agent") or ""
    conv = QRConversion(
        qr_id=qr.id,
        slug=qr.slug,
        config_id=config.id if config else None,
        rule_id=rule,
        event_type=event[:40],
        value=value,
        currency=currency,
        device=detect_device(user_agent).type,
        ip_address=_client_ip(request)[:64],
        user_agent=user_agent[:255],
    )
    try:
        db.add(conv)
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        logger.error(f"❌ Conversion für {slug} nicht gespeichert: {exc}")
        raise HTTPException(503, "Conversion could not be recorded")
    return {"ok": True, "event": event, "slug": slug}


# =============================================================================
# 📄 Inhalte von 'content'-Regeln
# =============================================================================
@router.get("/smart-content/{config_id}/{rule_id}", response_model=None)
def smart_content(
    config_id: str,
    rule_id: str,
    request: Request,
    password: Optional[str] = None,
    lat: Optional[float] = None,
    lng: Optional[float] = None,
    db: Session = Depends(get_db),
    locator: GeoLocator = Depends(get_geolocator),
) -> ResponseType:
    qr: Optional[QRCode] = (
        db.query(QRCode)
        .filter(QRCode.smart_config_id == config_id, QRCode.active == True)  # noqa: E712
        .first()
    )
    config = _load_config(qr) if qr else None
    if qr is None or config is None:
        raise HTTPException(404, "Content not found")

    rule = next(
        (r for r in config.rules if r.id == rule_id and r.action.type == "content"),
        None,
    )
    if rule is None:
        raise HTTPException(404, "Content not found")

    client_ip = _client_ip(request)
    if qr.get_protection():
        geo = locator.lookup(client_ip)
        decision = _check_access(db, qr, request, client_ip, geo, password, lat, lng)
        if not decision.allowed:
            return JSONResponse(decision.to_dict(), status_code=403)

    content = rule.action.value
    if content.lstrip().startswith("<"):
        return HTMLResponse(content)
    return PlainTextResponse(content)
