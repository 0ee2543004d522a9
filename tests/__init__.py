"""
Tests Module: Unit and Integration Tests

Test Coverage:
    - Key sanitizer and name helpers
    - Retry executor, rate limiter, in-flight window, progress channel
    - Listing, upload, download, delete, rename/move and stats engines
      against the in-memory store
    - Configuration, error mapping, metrics and the client facade
"""
