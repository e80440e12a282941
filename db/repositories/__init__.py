"""Repository layer for the Close.io sync cache.

- cache_entries: get_value, upsert, delete_key
"""
