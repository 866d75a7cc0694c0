"""
Permission management feature module.

Implements Role-Based Access Control (RBAC) over a hierarchical role tree:
a permission catalog, per-role grants with inheritance down the tree, and
the resolver that merges them into a user's effective permission set.
"""
