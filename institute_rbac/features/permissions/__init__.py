"""
Permission management feature module.

Implements institute-scoped Role-Based Access Control: a permission catalog,
roles, role assignments, permission evaluation and the access query facade.
"""
