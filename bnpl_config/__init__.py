"""
bnpl_config -- single public entrypoint for BNPL policy configuration.

Responsibility:
    ``get_active_policy()`` is the only way runtime code obtains business
    constants (rates, tier ratios, tolerances, retry limits).  It returns a
    frozen ``BnplPolicy`` carrying the SHA-256 checksum of its source.

Architecture position:
    Configuration.  Sits above ``bnpl_kernel`` and ``bnpl_engines`` and
    below ``bnpl_services``.  The kernel and the engines never import
    ``bnpl_config``; ``bnpl_config.bridges`` translates the policy into
    engine parameters.

Failure modes:
    - ``FileNotFoundError`` -- the policy file does not exist.
    - ``KeyError`` / ``ValueError`` -- missing keys or float amounts.

Audit relevance:
    Every call emits a ``BNPL_CONFIG_TRACE`` log record with the policy id,
    version and checksum, tying each decision to the policy that governed
    it.
"""

from __future__ import annotations

import logging
from pathlib import Path

from bnpl_config.loader import load_policy
from bnpl_config.schema import BnplPolicy, OutboxPolicy

_logger = logging.getLogger("bnpl.config")

_DEFAULT_POLICY_PATH = Path(__file__).parent / "sets" / "default.yaml"


def get_active_policy(path: Path | None = None) -> BnplPolicy:
    """
    Load, parse and checksum the active policy.

    Args:
        path: Override path to a policy YAML file.  Defaults to
            bnpl_config/sets/default.yaml.
    """
    policy = load_policy(path or _DEFAULT_POLICY_PATH)
    _logger.info(
        "BNPL_CONFIG_TRACE",
        extra={
            "trace_type": "BNPL_CONFIG_TRACE",
            "policy_id": policy.policy_id,
            "policy_version": policy.version,
            "checksum": policy.checksum,
            "currency": policy.currency,
        },
    )
    return policy


__all__ = ["BnplPolicy", "OutboxPolicy", "get_active_policy"]
