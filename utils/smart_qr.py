# =============================================================================
# 🔀 utils/smart_qr.py
# -----------------------------------------------------------------------------
# Regel-Engine für Smart-QR-Codes:
#   Rohsignale → ScanContext → erste passende Regel (nach Priorität) → Ziel.
# Jeder Fehlerpfad endet bei config.default_url – ein Scan schlägt nie fehl.
# =============================================================================

from __future__ import annotations

import logging
import os
import random
import uuid
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

import httpx

from utils.ab_testing import select_variant, validate_traffic_split
from utils.result import Err, Ok, Result
from utils.scan_context import GeoLocator, ScanContext, ScanSignals, extract_context
from utils.smart_rules import (
    MultiURLConfig,
    SmartQRAction,
    SmartQRRule,
    evaluate_rule,
)

logger = logging.getLogger(__name__)

SMART_QR_API_TIMEOUT = min(float(os.getenv("SMART_QR_API_TIMEOUT", "5.0")), 10.0)
AB_TEST_PRIORITY = 50


@dataclass(frozen=True)
class Resolution:
    url: str
    rule_id: Optional[str] = None
    error: Optional[str] = None


def content_path(config_id: str, rule_id: str) -> str:
    return f"/smart-content/{config_id}/{rule_id}"


class SmartQRResolver:
    """
    Zustandslose Auflösung von Smart-QR-Konfigurationen.
    Abhängigkeiten (Geo-Lookup, HTTP-Client, Zufall) sind injizierbar.
    """

    def __init__(
        self,
        locator: Optional[GeoLocator] = None,
        http_client: Optional[httpx.Client] = None,
        rng: Optional[random.Random] = None,
        api_timeout: float = SMART_QR_API_TIMEOUT,
    ):
        self.locator = locator
        self.http_client = http_client
        self.rng = rng
        self.api_timeout = api_timeout

    # ---------------------------------------------------------------------
    # 🌐 api_call-Aktion
    # ---------------------------------------------------------------------
    def _post(self, url: str, payload: Dict[str, Any]) -> httpx.Response:
        if self.http_client is not None:
            return self.http_client.post(url, json=payload, timeout=self.api_timeout)
        with httpx.Client(timeout=self.api_timeout) as client:
            return client.post(url, json=payload)

    def call_action_api(self, action: SmartQRAction, context: ScanContext) -> Result[str]:
        try:
            resp = self._post(
                action.value,
                {"context": context.to_payload(), "metadata": action.metadata or None},
            )
            resp.raise_for_status()
            body = resp.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.error(f"❌ Smart-QR API-Aufruf fehlgeschlagen ({action.value}): {exc}")
            return Err(f"api call failed: {exc}")

        target = body.get("redirectUrl") if isinstance(body, dict) else None
        if not isinstance(target, str) or not target:
            return Err("api response without redirectUrl")
        return Ok(target)

    # ---------------------------------------------------------------------
    # 🎯 Aktion ausführen
    # ---------------------------------------------------------------------
    def _dispatch(self, config: MultiURLConfig, rule: SmartQRRule, context: ScanContext) -> Resolution:
        action = rule.action

        if action.type == "redirect":
            if action.ab_test is not None:
                split = action.ab_test
                target = select_variant(split.variants, split.traffic, self.rng)
                return Resolution(url=target, rule_id=rule.id)
            return Resolution(url=action.value, rule_id=rule.id)

        if action.type == "content":
            return Resolution(url=content_path(config.id, rule.id), rule_id=rule.id)

        if action.type == "api_call":
            result = self.call_action_api(action, context)
            if isinstance(result, Ok):
                return Resolution(url=result.value, rule_id=rule.id)
            return Resolution(url=config.default_url, rule_id=rule.id, error=result.error)

        return Resolution(
            url=config.default_url,
            rule_id=rule.id,
            error=f"unknown action type {action.type!r}",
        )

    # ---------------------------------------------------------------------
    # ✅ Auflösen
    # ---------------------------------------------------------------------
    def match_rule(self, config: MultiURLConfig, context: ScanContext) -> Optional[SmartQRRule]:
        # sorted() ist stabil: gleiche Priorität behält die Listenreihenfolge
        for rule in sorted(config.rules, key=lambda r: -r.priority):
            if evaluate_rule(rule, context):
                return rule
        return None

    def resolve_with_context(self, config: MultiURLConfig, context: ScanContext) -> Resolution:
        try:
            rule = self.match_rule(config, context)
            if rule is None:
                return Resolution(url=config.default_url)
            logger.info(f"🎯 Smart-QR-Regel getroffen: {rule.name or rule.id}")
            return self._dispatch(config, rule, context)
        except Exception as exc:
            logger.exception(f"❌ Fehler bei der Smart-QR-Auflösung: {exc}")
            return Resolution(url=config.default_url, error=str(exc))

    def resolve_destination(self, config: MultiURLConfig, signals: ScanSignals) -> Resolution:
        context = extract_context(signals, self.locator)
        if isinstance(context, Err):
            return Resolution(url=config.default_url, error=context.error)
        return self.resolve_with_context(config, context.value)

    def resolve(self, config: MultiURLConfig, signals: ScanSignals) -> str:
        return self.resolve_destination(config, signals).url


def resolve_smart_qr(
    config: MultiURLConfig,
    signals: ScanSignals,
    locator: Optional[GeoLocator] = None,
    http_client: Optional[httpx.Client] = None,
) -> str:
    return SmartQRResolver(locator=locator, http_client=http_client).resolve(config, signals)


# =============================================================================
# 📊 Analytics
# =============================================================================
def track_scan(config: MultiURLConfig, rule_id: Optional[str], context: ScanContext) -> None:
    if not config.analytics.tracking_enabled:
        return
    logger.info(
        "📊 Smart-QR-Scan config=%s rule=%s device=%s country=%s time=%s",
        config.id,
        rule_id,
        context.device.type,
        context.location.country,
        context.time.isoformat(),
    )


# =============================================================================
# 🧪 A/B-Test-Regeln & Vorlagen
# =============================================================================
def create_ab_test_rule(
    name: str,
    variant_urls: Sequence[str],
    traffic: Sequence[float],
    priority: int = AB_TEST_PRIORITY,
) -> SmartQRRule:
    """
    Bedingungslose Redirect-Regel mit A/B-Split.
    Ungültige Gewichte werfen SmartQRConfigError schon hier.
    """
    split = validate_traffic_split(variant_urls, traffic)
    return SmartQRRule(
        id=str(uuid.uuid4()),
        name=name,
        priority=priority,
        conditions=(),
        action=SmartQRAction(
            type="redirect",
            value=split.variants[0],
            metadata=split.to_metadata(),
            ab_test=split,
        ),
        enabled=True,
    )


def common_rule_templates() -> List[Dict[str, Any]]:
    return [
        {
            "name": "Mobile Users to App Store",
            "conditions": [{"type": "device", "operator": "equals", "value": "mobile"}],
            "action": {"type": "redirect", "value": "https://apps.apple.com/app/your-app"},
        },
        {
            "name": "Desktop Users to Website",
            "conditions": [{"type": "device", "operator": "equals", "value": "desktop"}],
            "action": {"type": "redirect", "value": "https://yourwebsite.com"},
        },
        {
            "name": "US Users to US Site",
            "conditions": [{"type": "location", "operator": "equals", "value": "United States"}],
            "action": {"type": "redirect", "value": "https://us.yoursite.com"},
        },
        {
            "name": "Business Hours Only",
            "conditions": [{"type": "time", "operator": "between", "value": [9, 17]}],
            "action": {"type": "redirect", "value": "https://yoursite.com/contact"},
        },
        {
            "name": "iOS Users to App Store",
            "conditions": [{"type": "user_agent", "operator": "contains", "value": "iPhone"}],
            "action": {"type": "redirect", "value": "https://apps.apple.com/app/your-app"},
        },
    ]
