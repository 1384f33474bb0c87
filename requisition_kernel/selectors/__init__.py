"""Read-only query selectors for the requisition kernel."""

from requisition_kernel.selectors.base import BaseSelector
from requisition_kernel.selectors.production_selector import ProductionSelector
from requisition_kernel.selectors.request_selector import RequestSelector

__all__ = [
    "BaseSelector",
    "ProductionSelector",
    "RequestSelector",
]
