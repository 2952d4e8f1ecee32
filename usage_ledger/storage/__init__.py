"""
Storage layer: models, SQLite connections and the usage repository.
"""
