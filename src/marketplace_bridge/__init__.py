"""
Marketplace Bridge

Multi-tenant credential and token lifecycle management for a marketplace
integration, plus a hybrid client that merges catalog, offer and legacy
statistics APIs into one listing record per item.
"""

__version__ = "1.0.0"
__author__ = "Marketplace Bridge Team"
