"""Utility modules for the cluster control plane."""
from src.utils.credentials import format_bytes, generate_password, slugify
from src.utils.crypto import EncryptionService

__all__ = ["EncryptionService", "generate_password", "slugify", "format_bytes"]
