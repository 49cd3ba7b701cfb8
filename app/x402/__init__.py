# app/x402/__init__.py
"""
x402 Payment Protocol Integration Module.

This module implements the x402 payment gate for the merchant server,
enabling pay-per-request access to resources settled by several independent
facilitators at once.

Key components:
- registry: paid routes and the facilitator bound to each
- nonces: replay protection for payment authorizations
- facilitator: HTTP client for facilitator verify/settle
- challenge: 402 Payment Required bodies
- receipts: X-PAYMENT / X-PAYMENT-RESPONSE codecs
- gate: per-request payment state machine
- middleware: FastAPI middleware mapping gate outcomes onto HTTP
- audit: transaction audit logging

Configuration is loaded from environment variables via app.core.config.
"""

__version__ = "0.1.0"
