"""
Core modules for Journal Guard.

This package contains the encrypted record store, key management, schema
migrations, metrics sanitization and the privacy budget manager.
"""
