# SecureChat Test Suite
"""
Unit and integration tests:
- DH group math and key exchange
- AES-256 cipher transform
- Session state machine and registry
- Wire protocol, storage, relay and client wiring

Run with: pytest
"""
