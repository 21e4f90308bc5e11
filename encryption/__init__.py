"""Decryption of encrypted location reports."""

from encryption.decoder import PayloadDecoder, derive_key, is_encrypted

__all__ = ["PayloadDecoder", "derive_key", "is_encrypted"]
