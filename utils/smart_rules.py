# =============================================================================
# 🧠 utils/smart_rules.py
# -----------------------------------------------------------------------------
# Datentypen für Smart-QR-Regeln (Bedingung, Aktion, Regel, Konfiguration),
# Auswertung einzelner Bedingungen und (De-)Serialisierung aus JSON.
# =============================================================================

from __future__ import annotations

import logging
import math
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

from utils.ab_testing import ABTestSplit, split_from_metadata
from utils.errors import SmartQRConfigError
from utils.scan_context import ScanContext

logger = logging.getLogger(__name__)

CONDITION_TYPES = {"device", "location", "time", "language", "referrer", "user_agent"}
OPERATORS = {"equals", "contains", "starts_with", "ends_with", "in", "between"}
ACTION_TYPES = {"redirect", "content", "api_call"}


# =============================================================================
# 🧩 Bedingungswerte (tagged union)
# =============================================================================
@dataclass(frozen=True)
class TextValue:
    value: str


@dataclass(frozen=True)
class TextListValue:
    values: Tuple[str, ...]


@dataclass(frozen=True)
class NumberListValue:
    values: Tuple[Union[int, float], ...]


ConditionValue = Union[TextValue, TextListValue, NumberListValue]


def _is_number(v: Any) -> bool:
    return isinstance(v, (int, float)) and not isinstance(v, bool)


def value_from_json(raw: Any) -> ConditionValue:
    if isinstance(raw, str):
        return TextValue(raw)
    if isinstance(raw, (list, tuple)):
        if all(isinstance(v, str) for v in raw):
            return TextListValue(tuple(raw))
        if all(_is_number(v) for v in raw):
            return NumberListValue(tuple(raw))
        raise SmartQRConfigError("Condition lists must contain only strings or only numbers")
    raise SmartQRConfigError(f"Unsupported condition value: {raw!r}")


def value_to_json(value: ConditionValue) -> Union[str, List[Any]]:
    if isinstance(value, TextValue):
        return value.value
    return list(value.values)


def _value_as_text(value: ConditionValue) -> str:
    if isinstance(value, TextValue):
        return value.value
    return ",".join(str(v) for v in value.values)


# =============================================================================
# 🧩 Regeln & Konfiguration
# =============================================================================
@dataclass(frozen=True)
class SmartQRCondition:
    type: str
    operator: str
    value: ConditionValue


@dataclass(frozen=True)
class SmartQRAction:
    type: str
    value: str
    metadata: Dict[str, Any] = field(default_factory=dict)
    ab_test: Optional[ABTestSplit] = None


@dataclass(frozen=True)
class SmartQRRule:
    id: str
    name: str
    priority: int
    conditions: Tuple[SmartQRCondition, ...]
    action: SmartQRAction
    enabled: bool = True


@dataclass(frozen=True)
class AnalyticsSettings:
    tracking_enabled: bool = False
    conversion_goals: Tuple[str, ...] = ()


@dataclass(frozen=True)
class MultiURLConfig:
    id: str
    name: str
    default_url: str
    rules: Tuple[SmartQRRule, ...] = ()
    description: Optional[str] = None
    analytics: AnalyticsSettings = field(default_factory=AnalyticsSettings)


# =============================================================================
# ✅ Bedingung auswerten
# =============================================================================
def context_value(condition_type: str, context: ScanContext) -> Union[str, int, None]:
    if condition_type == "device":
        return context.device.type
    if condition_type == "location":
        return context.location.country
    if condition_type == "time":
        return context.hour
    if condition_type == "language":
        return context.location.language
    if condition_type == "referrer":
        return context.referrer or ""
    if condition_type == "user_agent":
        return context.device.user_agent
    return None


def _as_text(v: Union[str, int]) -> str:
    return v if isinstance(v, str) else str(v)


def evaluate_condition(condition: SmartQRCondition, context: ScanContext) -> bool:
    """
    Prüft eine einzelne Bedingung gegen den ScanContext.
    Unbekannte Typen/Operatoren ergeben False (Regel greift dann nie).
    """
    actual = context_value(condition.type, context)
    if actual is None:
        return False

    op = condition.operator
    value = condition.value

    if op == "equals":
        return isinstance(value, TextValue) and isinstance(actual, str) and actual == value.value

    if op in ("contains", "starts_with", "ends_with"):
        haystack = _as_text(actual).lower()
        needle = _value_as_text(value).lower()
        if op == "contains":
            return needle in haystack
        if op == "starts_with":
            return haystack.startswith(needle)
        return haystack.endswith(needle)

    if op == "in":
        if isinstance(value, TextListValue) and isinstance(actual, str):
            return actual in value.values
        if isinstance(value, NumberListValue) and _is_number(actual):
            return actual in value.values
        return False

    if op == "between":
        if not isinstance(value, NumberListValue) or len(value.values) != 2:
            return False
        try:
            number = float(actual)
        except (TypeError, ValueError):
            return False
        low, high = value.values
        return low <= number <= high

    return False


def evaluate_rule(rule: SmartQRRule, context: ScanContext) -> bool:
    if not rule.enabled:
        return False
    return all(evaluate_condition(c, context) for c in rule.conditions)


# =============================================================================
# 📥 JSON → Dataclasses
# =============================================================================
def condition_from_dict(data: Mapping[str, Any], strict: bool = True) -> SmartQRCondition:
    ctype = str(data.get("type", ""))
    op = str(data.get("operator", ""))
    if strict and ctype not in CONDITION_TYPES:
        raise SmartQRConfigError(f"Unknown condition type: {ctype!r}")
    if strict and op not in OPERATORS:
        raise SmartQRConfigError(f"Unknown condition operator: {op!r}")

    value = value_from_json(data.get("value"))

    if strict and op == "between":
        if not isinstance(value, NumberListValue) or len(value.values) != 2:
            raise SmartQRConfigError("'between' needs a numeric [min, max] range")
    if strict and op == "in" and isinstance(value, TextValue):
        raise SmartQRConfigError("'in' needs a list value")

    return SmartQRCondition(type=ctype, operator=op, value=value)


def action_from_dict(data: Mapping[str, Any], strict: bool = True) -> SmartQRAction:
    atype = str(data.get("type", ""))
    if strict and atype not in ACTION_TYPES:
        raise SmartQRConfigError(f"Unknown action type: {atype!r}")

    metadata = data.get("metadata") or {}
    if not isinstance(metadata, Mapping):
        raise SmartQRConfigError("Action metadata must be an object")

    ab_test = split_from_metadata(metadata)
    value = data.get("value")
    if value is None and ab_test is not None:
        value = ab_test.variants[0]
    if not isinstance(value, str) or not value:
        raise SmartQRConfigError("Action value must be a non-empty string")

    return SmartQRAction(type=atype, value=value, metadata=dict(metadata), ab_test=ab_test)


def rule_from_dict(data: Mapping[str, Any], strict: bool = True) -> SmartQRRule:
    raw_conditions = data.get("conditions") or []
    if not isinstance(raw_conditions, (list, tuple)):
        raise SmartQRConfigError("Rule conditions must be a list")
    action = data.get("action")
    if not isinstance(action, Mapping):
        raise SmartQRConfigError("Rule needs an action")

    priority = data.get("priority", 0)
    if not _is_number(priority) or not math.isfinite(priority):
        raise SmartQRConfigError("Rule priority must be a finite number")

    for raw in raw_conditions:
        if not isinstance(raw, Mapping):
            raise SmartQRConfigError("Rule condition must be an object")

    enabled = data.get("enabled", True)
    if not isinstance(enabled, bool):
        if strict:
            raise SmartQRConfigError("Rule 'enabled' must be true or false")
        # Scanzeit: nur ein echtes true aktiviert die Regel
        enabled = False

    return SmartQRRule(
        id=str(data.get("id") or uuid.uuid4()),
        name=str(data.get("name") or ""),
        priority=int(priority),
        conditions=tuple(condition_from_dict(c, strict=strict) for c in raw_conditions),
        action=action_from_dict(action, strict=strict),
        enabled=enabled,
    )


def config_from_dict(data: Mapping[str, Any], strict: bool = True) -> MultiURLConfig:
    """
    Baut eine MultiURLConfig aus JSON.

    strict=True  → jede Unstimmigkeit wirft SmartQRConfigError (Konfigurationszeit).
    strict=False → fehlerhafte Regeln werden verworfen (Scanzeit); eine
                   Regel mit unlesbarer Bedingung könnte ohnehin nie greifen.
    """
    default_url = data.get("defaultUrl") or data.get("default_url")
    if not isinstance(default_url, str) or not default_url.strip():
        raise SmartQRConfigError("defaultUrl is required")

    raw_rules = data.get("rules") or []
    if not isinstance(raw_rules, (list, tuple)):
        if strict:
            raise SmartQRConfigError("rules must be a list")
        raw_rules = []

    rules: List[SmartQRRule] = []
    for raw in raw_rules:
        try:
            if not isinstance(raw, Mapping):
                raise SmartQRConfigError("Rule must be an object")
            rules.append(rule_from_dict(raw, strict=strict))
        except SmartQRConfigError as exc:
            if strict:
                raise
            logger.warning(f"⚠️ Smart-QR-Regel verworfen: {exc}")
        except (TypeError, ValueError, AttributeError) as exc:
            if strict:
                raise SmartQRConfigError(f"Invalid rule: {exc}") from exc
            logger.warning(f"⚠️ Smart-QR-Regel verworfen: {exc}")

    analytics = data.get("analytics") or {}
    if not isinstance(analytics, Mapping):
        analytics = {}
    goals = analytics.get("conversionGoals") or analytics.get("conversion_goals") or []
    if not isinstance(goals, (list, tuple)):
        goals = []

    return MultiURLConfig(
        id=str(data.get("id") or uuid.uuid4()),
        name=str(data.get("name") or ""),
        description=data.get("description"),
        default_url=default_url.strip(),
        rules=tuple(rules),
        analytics=AnalyticsSettings(
            tracking_enabled=bool(analytics.get("trackingEnabled", analytics.get("tracking_enabled", False))),
            conversion_goals=tuple(str(g) for g in goals),
        ),
    )


# =============================================================================
# 📤 Dataclasses → JSON
# =============================================================================
def condition_to_dict(condition: SmartQRCondition) -> Dict[str, Any]:
    return {
        "type": condition.type,
        "operator": condition.operator,
        "value": value_to_json(condition.value),
    }


def action_to_dict(action: SmartQRAction) -> Dict[str, Any]:
    out: Dict[str, Any] = {"type": action.type, "value": action.value}
    metadata = dict(action.metadata)
    if action.ab_test is not None:
        metadata.update(action.ab_test.to_metadata())
    if metadata:
        out["metadata"] = metadata
    return out


def rule_to_dict(rule: SmartQRRule) -> Dict[str, Any]:
    return {
        "id": rule.id,
        "name": rule.name,
        "priority": rule.priority,
        "conditions": [condition_to_dict(c) for c in rule.conditions],
        "action": action_to_dict(rule.action),
        "enabled": rule.enabled,
    }


def config_to_dict(config: MultiURLConfig) -> Dict[str, Any]:
    return {
        "id": config.id,
        "name": config.name,
        "description": config.description,
        "defaultUrl": config.default_url,
        "rules": [rule_to_dict(r) for r in config.rules],
        "analytics": {
            "trackingEnabled": config.analytics.tracking_enabled,
            "conversionGoals": list(config.analytics.conversion_goals),
        },
    }
