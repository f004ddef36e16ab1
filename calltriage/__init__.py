"""
CallTriage - Backend Application Package

This package contains the call-event ingestion and emergency-triage pipeline:
- Webhook verification, parsing and dispatch
- Multi-tenant resolution
- Multilingual urgency classification
- SMS alert fan-out and the event log
"""

__version__ = "0.1.0"
