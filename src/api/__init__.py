"""
Stager Ledger - API Module

Production FastAPI server implementing:
- Stripe webhook ingestion
- Download and refinement charges
- Subscription changes and checkout
- Admin ledger operations
"""

from .server import app, create_app

__all__ = ["app", "create_app"]
