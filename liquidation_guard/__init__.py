"""Liquidation risk assessment and protection planning for DeFi lending positions."""

__version__ = "0.1.0"
