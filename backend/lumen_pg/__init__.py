"""
Lumen-PG - per-user, role-authenticated PostgreSQL data access core
"""
__version__ = "1.0.0"
