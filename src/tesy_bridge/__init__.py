"""Tesy Bridge: mirrors Tesy cloud heaters into a smart-home accessory layer."""

__version__ = "0.1.0"
