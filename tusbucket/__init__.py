"""Storage backend keeping tus resumable uploads in S3-compatible buckets."""

__version__ = "0.1.0"
__all__ = ["models", "part_producer", "upload", "store"]