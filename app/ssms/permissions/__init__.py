"""
Permission catalog, effective-permission resolution and override management.
"""
