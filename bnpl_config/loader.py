"""
Configuration Loader (``bnpl_config.loader``).

Responsibility
--------------
Loads a policy YAML file and parses it into the frozen dataclasses of
``bnpl_config.schema``.  Runtime callers go through
``bnpl_config.get_active_policy()``; this module is its tooling.

Invariants enforced
-------------------
* Decimal settings must be YAML strings or ints; floats raise ValueError.
* Missing required keys raise KeyError; there are no silent defaults.
* ``compute_checksum`` is a deterministic SHA-256 of the canonical JSON of
  the raw document.

Failure modes
-------------
* Missing YAML file  -> ``FileNotFoundError`` propagates.
* Malformed YAML  -> ``yaml.YAMLError`` propagates.
"""

from __future__ import annotations

import hashlib
import json
from decimal import Decimal
from pathlib import Path
from typing import Any

import yaml

from bnpl_config.schema import (
    AllocationPolicy,
    BnplPolicy,
    CheckoutPolicy,
    CrbBand,
    CreditPolicy,
    OutboxPolicy,
    PortfolioPolicy,
    ReconciliationPolicy,
    SettlementPolicy,
    TierPolicy,
    ToleranceDef,
)


def load_yaml_file(path: Path) -> dict[str, Any]:
    """Load a single YAML file; an empty file yields an empty dict."""
    with open(path) as f:
        return yaml.safe_load(f) or {}


def parse_decimal(value: Any, key: str = "") -> Decimal:
    if isinstance(value, float):
        raise ValueError(f"{key or 'value'} must be quoted, got float {value!r}")
    if isinstance(value, (int, str, Decimal)) and not isinstance(value, bool):
        return Decimal(str(value))
    raise ValueError(f"Cannot parse decimal {key} from {value!r}")


def parse_credit(data: dict[str, Any]) -> CreditPolicy:
    return CreditPolicy(
        monthly_rate=parse_decimal(data["monthly_rate"], "monthly_rate"),
        annual_interest_rate=parse_decimal(data["annual_interest_rate"], "annual_interest_rate"),
        processing_fee_rate=parse_decimal(data["processing_fee_rate"], "processing_fee_rate"),
        min_affordability_score=parse_decimal(
            data["min_affordability_score"], "min_affordability_score"
        ),
        min_tenor_days=int(data["min_tenor_days"]),
        max_tenor_days=int(data["max_tenor_days"]),
        days_per_month=int(data["days_per_month"]),
        score_multiplier=parse_decimal(data["score_multiplier"], "score_multiplier"),
        crb_max_score=int(data["crb_max_score"]),
        crb_bands=tuple(
            CrbBand(
                min_score=int(b["min_score"]),
                adjustment=parse_decimal(b["adjustment"], "crb_bands.adjustment"),
            )
            for b in sorted(data["crb_bands"], key=lambda b: int(b["min_score"]), reverse=True)
        ),
        crb_floor_adjustment=parse_decimal(data["crb_floor_adjustment"], "crb_floor_adjustment"),
        history_base=parse_decimal(data["history_base"], "history_base"),
        history_weight=parse_decimal(data["history_weight"], "history_weight"),
        default_deduction_limit_ratio=parse_decimal(
            data["default_deduction_limit_ratio"], "default_deduction_limit_ratio"
        ),
        tiers=tuple(
            TierPolicy(
                tier=t["tier"],
                deduction_ratio=parse_decimal(t["deduction_ratio"], "tiers.deduction_ratio"),
                max_tenor_days=int(t["max_tenor_days"]),
                min_net_salary=parse_decimal(t["min_net_salary"], "tiers.min_net_salary"),
            )
            for t in data["tiers"]
        ),
    )


def parse_allocation(data: dict[str, Any]) -> AllocationPolicy:
    return AllocationPolicy(
        default_strategy=data["default_strategy"],
        large_lender_threshold=parse_decimal(
            data["large_lender_threshold"], "large_lender_threshold"
        ),
        conservative_excluded_tiers=frozenset(data.get("conservative_excluded_tiers", [])),
    )


def parse_checkout(data: dict[str, Any]) -> CheckoutPolicy:
    return CheckoutPolicy(
        max_order_amount=parse_decimal(data["max_order_amount"], "max_order_amount"),
        min_tenor_days=int(data["min_tenor_days"]),
        max_tenor_days=int(data["max_tenor_days"]),
        installment_period_days=int(data["installment_period_days"]),
        auth_token_ttl_seconds=int(data["auth_token_ttl_seconds"]),
        idempotency_ttl_hours=int(data["idempotency_ttl_hours"]),
    )


def parse_settlement(data: dict[str, Any]) -> SettlementPolicy:
    return SettlementPolicy(
        platform_fee_share=parse_decimal(data["platform_fee_share"], "platform_fee_share"),
        idempotency_ttl_hours=int(data["idempotency_ttl_hours"]),
    )


def parse_reconciliation(data: dict[str, Any]) -> ReconciliationPolicy:
    return ReconciliationPolicy(
        tolerances=tuple(
            ToleranceDef(
                channel=t["channel"],
                absolute=parse_decimal(t["absolute"], "tolerances.absolute"),
                relative=parse_decimal(t["relative"], "tolerances.relative"),
            )
            for t in data["tolerances"]
        ),
    )


def parse_outbox(data: dict[str, Any]) -> OutboxPolicy:
    return OutboxPolicy(
        max_attempts=int(data["max_attempts"]),
        backoff_base_seconds=int(data["backoff_base_seconds"]),
        max_backoff_seconds=int(data["max_backoff_seconds"]),
        batch_size=int(data["batch_size"]),
    )


def parse_policy(data: dict[str, Any], checksum: str = "") -> BnplPolicy:
    """Parse a whole policy document."""
    return BnplPolicy(
        policy_id=data["policy_id"],
        version=int(data["version"]),
        currency=data["currency"],
        credit=parse_credit(data["credit"]),
        allocation=parse_allocation(data["allocation"]),
        checkout=parse_checkout(data["checkout"]),
        settlement=parse_settlement(data["settlement"]),
        reconciliation=parse_reconciliation(data["reconciliation"]),
        outbox=parse_outbox(data["outbox"]),
        portfolio=PortfolioPolicy(par_days=int(data["portfolio"]["par_days"])),
        checksum=checksum,
    )


def compute_checksum(data: dict[str, Any]) -> str:
    """SHA-256 of the canonical JSON serialization of ``data``."""
    canonical = json.dumps(data, sort_keys=True, default=str)
    return hashlib.sha256(canonical.encode()).hexdigest()


def load_policy(path: Path) -> BnplPolicy:
    data = load_yaml_file(path)
    return parse_policy(data, checksum=compute_checksum(data))
