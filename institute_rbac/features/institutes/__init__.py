"""
Institutes are the tenant scopes roles and assignments live in.
"""
