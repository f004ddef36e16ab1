"""
CallTriage - Services Package

Contains service interfaces and implementations for:
- Lexicon store and language detection
- Urgency classification
- Tenant resolution
- SMS delivery and alert fan-out
- Tool invocation handlers

Design Pattern:
    Each pluggable service defines a Protocol (interface) and one or more
    implementations. The dispatcher is configured with concrete
    implementations at startup, enabling dependency injection and easy
    testing/swapping of components.
"""

from .lexicon import LexiconStore, create_lexicon_store
from .classifier import UrgencyClassifier, create_classifier
from .resolver import TenantResolver, create_resolver
from .sms import SMSGateway, DummySMSGateway, TwilioSMSGateway, create_sms_gateway
from .alerts import AlertFanout
from .tools import ToolRegistry, create_tool_registry

__all__ = [
    # Triage
    "LexiconStore",
    "create_lexicon_store",
    "UrgencyClassifier",
    "create_classifier",
    # Resolution
    "TenantResolver",
    "create_resolver",
    # Alerts
    "SMSGateway",
    "DummySMSGateway",
    "TwilioSMSGateway",
    "create_sms_gateway",
    "AlertFanout",
    # Tools
    "ToolRegistry",
    "create_tool_registry",
]
