"""Read-only selectors returning frozen DTOs."""

from bnpl_kernel.selectors.base import BaseSelector
from bnpl_kernel.selectors.contract_selector import (
    ContractSelector,
    ContractView,
    InstallmentView,
    TransitionView,
)
from bnpl_kernel.selectors.lender_selector import LenderSelector, LenderView, ProductView

__all__ = [
    "BaseSelector",
    "ContractSelector",
    "ContractView",
    "InstallmentView",
    "LenderSelector",
    "LenderView",
    "ProductView",
    "TransitionView",
]
