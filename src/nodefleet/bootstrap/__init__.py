"""Helpers for provisioning the OS users that own uploader instances."""
from __future__ import annotations

from .service_accounts import (
    ProvisioningError,
    ServiceAccountAction,
    ServiceAccountPlan,
    ServiceAccountSpec,
    ServiceAccountStatus,
    apply_service_account_plan,
    ensure_principal,
    inspect_service_account,
    plan_service_account,
)

__all__ = [
    "ProvisioningError",
    "ServiceAccountAction",
    "ServiceAccountPlan",
    "ServiceAccountSpec",
    "ServiceAccountStatus",
    "apply_service_account_plan",
    "ensure_principal",
    "inspect_service_account",
    "plan_service_account",
]
