"""Close.io sync pipeline.

- filter_util: deduplication and insert/update/skip classification
- mapping_util: attribute mapping between platform records and Close.io objects
- sync_agent: batch orchestration, dispatch and identity caching
- errors, messages: error taxonomy and operator-facing message catalog
"""
