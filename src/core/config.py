"""
Service configuration.

Values come from the environment with constructor overrides, so tests and the
CLI can build a config without touching ``os.environ``.
"""

import os
from dataclasses import dataclass
from typing import Optional


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    return int(raw)


@dataclass
class BillingConfig:
    """Credit costs, bonuses and processor settings."""
    signup_bonus_credits: int = 3
    download_cost_credits: int = 1
    refinement_cost_credits: int = 1
    max_edits_per_workflow: int = 15
    stripe_api_key: Optional[str] = None
    stripe_webhook_secret: Optional[str] = None
    webhook_tolerance_seconds: int = 300
    checkout_success_url: str = "http://localhost:3000/billing?success=true"
    checkout_cancel_url: str = "http://localhost:3000/billing?canceled=true"

    @classmethod
    def from_env(cls) -> "BillingConfig":
        return cls(
            signup_bonus_credits=_env_int("SIGNUP_BONUS_CREDITS", 3),
            download_cost_credits=_env_int("DOWNLOAD_COST_CREDITS", 1),
            refinement_cost_credits=_env_int("REFINEMENT_COST_CREDITS", 1),
            max_edits_per_workflow=_env_int("MAX_EDITS_PER_WORKFLOW", 15),
            stripe_api_key=os.environ.get("STRIPE_API_KEY"),
            stripe_webhook_secret=os.environ.get("STRIPE_WEBHOOK_SECRET"),
            webhook_tolerance_seconds=_env_int("STRIPE_WEBHOOK_TOLERANCE", 300),
            checkout_success_url=os.environ.get(
                "CHECKOUT_SUCCESS_URL", "http://localhost:3000/billing?success=true"
            ),
            checkout_cancel_url=os.environ.get(
                "CHECKOUT_CANCEL_URL", "http://localhost:3000/billing?canceled=true"
            ),
        )
