"""
VPS Provisioning Plane
======================

Creates servers at upstream VPS providers for paid orders and records
their credentials back on the order.
"""

__version__ = "1.0.0"
