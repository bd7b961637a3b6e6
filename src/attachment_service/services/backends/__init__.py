"""Storage backend implementations.

This package contains implementations of the StorageBackend protocol for the
content-addressed (IPFS) and bucket (S3, MinIO, Azure) storage families.
Modules are imported on demand by ``get_storage_backend``.
"""
