from __future__ import annotations

import random
from datetime import datetime, timezone

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from database import get_db
from main import app
from models.qr_conversion import QRConversion
from models.qr_scan import QRScan
from models.qrcode import QRCode
from routes.qr_resolve import get_geolocator, get_resolver
from utils.qr_protection import hash_password
from utils.result import Err, Ok
from utils.scan_context import GeoLookup
from utils.smart_qr import SmartQRResolver

IPHONE = "Mozilla/5.0 (iPhone; CPU iPhone OS 17_0 like Mac OS X) Mobile/15E148 Safari/604.1"
DESKTOP = "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 Chrome/120.0 Safari/537.36"


class StubLocator:
    """Geo-Lookup ohne Netzwerk; liefert immer dasselbe Ergebnis."""

    def __init__(self, geo=None):
        self.geo = geo or Err("offline")
        self.calls = []

    def lookup(self, ip_address):
        self.calls.append(ip_address)
        return self.geo


@pytest.fixture
def resolver_env():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    testing_session_local = sessionmaker(autocommit=False, autoflush=False, bind=engine)

    QRCode.__table__.create(bind=engine, checkfirst=True)
    QRScan.__table__.create(bind=engine, checkfirst=True)
    QRConversion.__table__.create(bind=engine, checkfirst=True)

    locator = StubLocator()

    def override_get_db():
        db = testing_session_local()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_geolocator] = lambda: locator
    app.dependency_overrides[get_resolver] = lambda: SmartQRResolver(locator=locator, rng=random.Random(3))

    with TestClient(app) as client:
        yield client, testing_session_local, locator

    app.dependency_overrides.pop(get_db, None)
    app.dependency_overrides.pop(get_geolocator, None)
    app.dependency_overrides.pop(get_resolver, None)
    engine.dispose()


def _seed_qr(session_local, slug, smart=None, protection=None, target_url=None, active=True):
    with session_local() as db:
        qr = QRCode(slug=slug, title=f"{slug} test", target_url=target_url, active=active)
        if smart is not None or protection is not None:
            qr.set_smart_config(smart, protection)
        db.add(qr)
        db.commit()
        return qr.id


def _seed_scans(session_local, qr_id, count, ip_address="203.0.113.7"):
    with session_local() as db:
        for _ in range(count):
            db.add(QRScan(qr_id=qr_id, ip_address=ip_address, timestamp=datetime.now(timezone.utc)))
        db.commit()


MOBILE_CONFIG = {
    "id": "cfg-mobile",
    "name": "App campaign",
    "defaultUrl": "https://example.com",
    "rules": [
        {
            "id": "mobile",
            "name": "Mobile",
            "priority": 10,
            "conditions": [{"type": "device", "operator": "equals", "value": "mobile"}],
            "action": {"type": "redirect", "value": "https://m.example.com"},
            "enabled": True,
        }
    ],
    "analytics": {"trackingEnabled": True, "conversionGoals": ["signup"]},
}


# ---------------------------------------------------------------------------
# Weiterleitung
# ---------------------------------------------------------------------------
def test_mobile_and_desktop_redirects(resolver_env):
    client, session_local, _ = resolver_env
    _seed_qr(session_local, "mobile1", smart=MOBILE_CONFIG)

    mobile = client.get("/d/mobile1", headers={"User-Agent": IPHONE}, follow_redirects=False)
    assert mobile.status_code == 302
    assert mobile.headers["location"] == "https://m.example.com"

    desktop = client.get("/d/mobile1", headers={"User-Agent": DESKTOP}, follow_redirects=False)
    assert desktop.status_code == 302
    assert desktop.headers["location"] == "https://example.com"


def test_scan_is_recorded_with_rule(resolver_env):
    client, session_local, _ = resolver_env
    qr_id = _seed_qr(session_local, "rec1", smart=MOBILE_CONFIG)

    client.get(
        "/d/rec1",
        headers={"User-Agent": IPHONE, "X-Forwarded-For": "198.51.100.4, 10.0.0.1"},
        follow_redirects=False,
    )

    with session_local() as db:
        scans = db.query(QRScan).filter(QRScan.qr_id == qr_id).all()
    assert len(scans) == 1
    assert scans[0].ip_address == "198.51.100.4"
    assert scans[0].device == "mobile"
    assert scans[0].rule_id == "mobile"
    assert scans[0].destination == "https://m.example.com"


def test_track_param_disables_recording(resolver_env):
    client, session_local, _ = resolver_env
    qr_id = _seed_qr(session_local, "notrack", smart=MOBILE_CONFIG)

    response = client.get("/d/notrack?track=0", follow_redirects=False)
    assert response.status_code == 302

    with session_local() as db:
        assert db.query(QRScan).filter(QRScan.qr_id == qr_id).count() == 0


def test_plain_qr_uses_target_url(resolver_env):
    client, session_local, _ = resolver_env
    _seed_qr(session_local, "plain1", target_url="https://plain.example")

    response = client.get("/d/plain1", follow_redirects=False)
    assert response.status_code == 302
    assert response.headers["location"] == "https://plain.example"


def test_unusable_config_falls_back_to_target_url(resolver_env):
    client, session_local, _ = resolver_env
    _seed_qr(session_local, "broken1", smart={"id": "cfg-x", "rules": []}, target_url="https://fallback.example")

    response = client.get("/d/broken1", follow_redirects=False)
    assert response.headers["location"] == "https://fallback.example"


def test_corrupt_stored_rules_resolve_to_default(resolver_env):
    client, session_local, _ = resolver_env
    config = {
        **MOBILE_CONFIG,
        "id": "cfg-corrupt",
        "rules": [
            {"id": "bad", "priority": 99, "conditions": ["device"],
             "action": {"type": "redirect", "value": "https://bad.example"}},
            {"id": "nan", "priority": float("nan"), "conditions": [],
             "action": {"type": "redirect", "value": "https://nan.example"}},
            {"id": "off", "priority": 50, "conditions": [], "enabled": "false",
             "action": {"type": "redirect", "value": "https://off.example"}},
            *MOBILE_CONFIG["rules"],
        ],
    }
    _seed_qr(session_local, "bad1", smart=config)

    desktop = client.get("/d/bad1", headers={"User-Agent": DESKTOP}, follow_redirects=False)
    assert desktop.status_code == 302
    assert desktop.headers["location"] == "https://example.com"

    mobile = client.get("/d/bad1", headers={"User-Agent": IPHONE}, follow_redirects=False)
    assert mobile.headers["location"] == "https://m.example.com"


def test_missing_target_returns_410(resolver_env):
    client, session_local, _ = resolver_env
    _seed_qr(session_local, "empty1")

    response = client.get("/d/empty1", follow_redirects=False)
    assert response.status_code == 410
    assert "Target URL missing" in response.text


def test_unknown_or_inactive_slug_returns_404(resolver_env):
    client, session_local, _ = resolver_env
    _seed_qr(session_local, "off1", target_url="https://off.example", active=False)

    assert client.get("/d/does-not-exist", follow_redirects=False).status_code == 404
    assert client.get("/d/off1", follow_redirects=False).status_code == 404


def test_referrer_rule_matches_header(resolver_env):
    client, session_local, _ = resolver_env
    config = {
        "id": "cfg-ref",
        "defaultUrl": "https://example.com",
        "rules": [
            {
                "id": "insta",
                "priority": 1,
                "conditions": [{"type": "referrer", "operator": "contains", "value": "instagram"}],
                "action": {"type": "redirect", "value": "https://insta.example"},
            }
        ],
    }
    _seed_qr(session_local, "ref1", smart=config)

    response = client.get(
        "/d/ref1",
        headers={"Referer": "https://www.instagram.com/p/abc"},
        follow_redirects=False,
    )
    assert response.headers["location"] == "https://insta.example"


# ---------------------------------------------------------------------------
# Zugriffsschutz
# ---------------------------------------------------------------------------
def test_password_protection(resolver_env):
    client, session_local, _ = resolver_env
    protection = {"password": {"enabled": True, "passwordHash": hash_password("letmein"), "hint": "classic"}}
    _seed_qr(session_local, "pw1", smart=MOBILE_CONFIG, protection=protection)

    denied = client.get("/d/pw1", follow_redirects=False)
    assert denied.status_code == 403
    assert denied.json() == {"allowed": False, "reason": "Password required", "requiresPassword": True}

    wrong = client.get("/d/pw1?password=nope", follow_redirects=False)
    assert wrong.status_code == 403
    assert wrong.json()["reason"] == "Invalid password"

    ok = client.get("/d/pw1?password=letmein", follow_redirects=False)
    assert ok.status_code == 302

    via_header = client.get("/d/pw1", headers={"X-QR-Password": "letmein"}, follow_redirects=False)
    assert via_header.status_code == 302


def test_total_scan_limit(resolver_env):
    client, session_local, _ = resolver_env
    protection = {"usageLimits": {"enabled": True, "maxScans": 2}}
    qr_id = _seed_qr(session_local, "limit1", smart=MOBILE_CONFIG, protection=protection)
    _seed_scans(session_local, qr_id, 2)

    response = client.get("/d/limit1", follow_redirects=False)
    assert response.status_code == 403
    assert response.json()["reason"] == "Maximum scan limit reached"


def test_per_user_limit_counts_by_client_ip(resolver_env):
    client, session_local, _ = resolver_env
    protection = {"usageLimits": {"enabled": True, "maxScansPerUser": 1}}
    qr_id = _seed_qr(session_local, "limit2", smart=MOBILE_CONFIG, protection=protection)
    _seed_scans(session_local, qr_id, 1, ip_address="203.0.113.7")

    blocked = client.get("/d/limit2", headers={"X-Forwarded-For": "203.0.113.7"}, follow_redirects=False)
    assert blocked.status_code == 403
    assert blocked.json()["reason"] == "Maximum scans per user reached"

    other = client.get("/d/limit2", headers={"X-Forwarded-For": "203.0.113.8"}, follow_redirects=False)
    assert other.status_code == 302


def test_geofence_uses_lookup_and_coordinates(resolver_env):
    client, session_local, locator = resolver_env
    protection = {"geofence": {"enabled": True, "allowedCountries": ["Germany"]}}
    _seed_qr(session_local, "geo1", smart=MOBILE_CONFIG, protection=protection)

    unknown = client.get("/d/geo1", follow_redirects=False)
    assert unknown.status_code == 403
    assert unknown.json() == {"allowed": False, "reason": "Location access required", "requiresLocation": True}

    locator.geo = Ok(GeoLookup(country="Germany", region="Berlin", city="Berlin", timezone="Europe/Berlin"))
    assert client.get("/d/geo1", follow_redirects=False).status_code == 302

    locator.geo = Ok(GeoLookup(country="France", region="IDF", city="Paris", timezone="Europe/Paris"))
    blocked = client.get("/d/geo1", follow_redirects=False)
    assert blocked.json()["reason"] == "Location not in allowed countries"


def test_geofence_radius_with_query_coordinates(resolver_env):
    client, session_local, _ = resolver_env
    protection = {"geofence": {"enabled": True, "radius": 1, "centerLat": 52.52, "centerLng": 13.405}}
    _seed_qr(session_local, "geo2", smart=MOBILE_CONFIG, protection=protection)

    near = client.get("/d/geo2?lat=52.521&lng=13.404", follow_redirects=False)
    assert near.status_code == 302

    far = client.get("/d/geo2?lat=53.551&lng=9.994", follow_redirects=False)
    assert far.status_code == 403
    assert far.json()["reason"].startswith("Location is ")


# ---------------------------------------------------------------------------
# Inhalte & Conversions
# ---------------------------------------------------------------------------
CONTENT_CONFIG = {
    "id": "cfg-content",
    "defaultUrl": "https://example.com",
    "rules": [
        {
            "id": "promo",
            "priority": 10,
            "conditions": [],
            "action": {"type": "content", "value": "<h1>Herbstaktion</h1>"},
        },
        {
            "id": "note",
            "priority": 1,
            "conditions": [{"type": "device", "operator": "equals", "value": "tablet"}],
            "action": {"type": "content", "value": "Nur Text"},
        },
    ],
}


def test_content_rule_redirects_to_internal_page(resolver_env):
    client, session_local, _ = resolver_env
    _seed_qr(session_local, "content1", smart=CONTENT_CONFIG)

    response = client.get("/d/content1", follow_redirects=False)
    assert response.status_code == 302
    assert response.headers["location"] == "/smart-content/cfg-content/promo"

    page = client.get("/smart-content/cfg-content/promo")
    assert page.status_code == 200
    assert page.headers["content-type"].startswith("text/html")
    assert page.text == "<h1>Herbstaktion</h1>"

    text = client.get("/smart-content/cfg-content/note")
    assert text.headers["content-type"].startswith("text/plain")
    assert text.text == "Nur Text"


def test_smart_content_not_found(resolver_env):
    client, session_local, _ = resolver_env
    _seed_qr(session_local, "content2", smart=CONTENT_CONFIG)

    assert client.get("/smart-content/cfg-content/missing").status_code == 404
    assert client.get("/smart-content/unknown/promo").status_code == 404


def test_smart_content_respects_password(resolver_env):
    client, session_local, _ = resolver_env
    protection = {"password": {"enabled": True, "passwordHash": hash_password("pw")}}
    _seed_qr(session_local, "content3", smart={**CONTENT_CONFIG, "id": "cfg-locked"}, protection=protection)

    assert client.get("/smart-content/cfg-locked/promo").status_code == 403
    assert client.get("/smart-content/cfg-locked/promo?password=pw").status_code == 200


def test_conversion_goals(resolver_env):
    client, session_local, _ = resolver_env
    qr_id = _seed_qr(session_local, "conv1", smart=MOBILE_CONFIG)

    ok = client.get("/d/conv1/convert?event=signup&value=9.5&currency=EUR&rule=mobile")
    assert ok.status_code == 200
    assert ok.json() == {"ok": True, "event": "signup", "slug": "conv1"}

    unknown = client.get("/d/conv1/convert?event=purchase")
    assert unknown.status_code == 400

    with session_local() as db:
        rows = db.query(QRConversion).filter(QRConversion.qr_id == qr_id).all()
    assert len(rows) == 1
    assert rows[0].config_id == "cfg-mobile"
    assert rows[0].value == 9.5
    assert rows[0].rule_id == "mobile"
    assert rows[0].device == "desktop"
