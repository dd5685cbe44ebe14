"""
Storage layer: SQLite connections, models and repositories.
"""
