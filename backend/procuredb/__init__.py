# backend/procuredb/__init__.py
"""
procuredb: order-fulfillment core for multi-tenant procurement and inventory.

Model classes live in procuredb/apps/*/models.py; importing
``procuredb.models`` registers every table on ``Base.metadata``.
"""
