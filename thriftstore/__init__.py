"""
Thrift Store - storefront and back office.

Catalog, cart, checkout and order tracking for customers, plus product,
order, user and activity-log management for admins.
"""

__version__ = '1.0.0'
