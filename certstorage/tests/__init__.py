"""
Tests Module: Unit and Integration Tests

Test Coverage:
    - Core types, errors and configuration
    - Key-space mapping
    - In-memory and S3 object store clients
    - Distributed mutex and lock-handle cache
    - CertStorage facade (persistence and locking contract)
"""
