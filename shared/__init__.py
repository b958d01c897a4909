"""Shared modules for the PowerTrack disaster-report pipeline."""

from .models import (
    ClassificationVerdict,
    GeoPoint,
    ProvisionedRule,
    ReconnectState,
    ReportCategory,
    RuleFamily,
    RuleSet,
    StreamEvent,
)

__all__ = [
    "ClassificationVerdict",
    "GeoPoint",
    "ProvisionedRule",
    "ReconnectState",
    "ReportCategory",
    "RuleFamily",
    "RuleSet",
    "StreamEvent",
]
