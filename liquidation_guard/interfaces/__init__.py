"""Protocol interfaces for the pipeline's external edges."""
from .executor import Executor
from .price_source import PriceSource

__all__ = ["Executor", "PriceSource"]
