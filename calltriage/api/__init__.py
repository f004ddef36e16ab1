"""
CallTriage - HTTP API Package

- routes: Analytics and call record endpoints
- health: System health, readiness and configuration
- schemas: Response models
"""
