"""Price source implementations."""
from .pyth import PythOracle
from .static import StaticPriceSource

__all__ = ["PythOracle", "StaticPriceSource"]
