"""
Payload decoder for encrypted OwnTracks reports.

Encrypted reports carry a base64 blob whose first 24 bytes are the nonce,
followed by an XSalsa20-Poly1305 (libsodium ``crypto_secretbox``)
ciphertext. The blob arrives either wrapped as
``{"_type": "encrypted", "data": "<base64>"}`` or as a bare string body.

Bare string detection is a heuristic: a body that does not start with ``{``
and consists only of base64 characters is treated as ciphertext. A plaintext
string that happens to look like base64 is therefore decoded (and rejected)
as ciphertext.
"""

import base64
import binascii
import hashlib
import json
import logging
import re
from typing import Any, Union

import nacl.exceptions
import nacl.secret

from config.settings import ConfigurationError, KeyDerivation
from errors.exceptions import DecodeError

logger = logging.getLogger(__name__)

ENCRYPTED_TYPE = "encrypted"
BASE64_PATTERN = re.compile(r"^[A-Za-z0-9+/]+=*$")

NONCE_SIZE = nacl.secret.SecretBox.NONCE_SIZE
KEY_SIZE = nacl.secret.SecretBox.KEY_SIZE
MAC_SIZE = nacl.secret.SecretBox.MACBYTES


def derive_key(passphrase: str, method: Union[KeyDerivation, str] = KeyDerivation.SHA256) -> bytes:
    """
    Turn a configured passphrase into a 32-byte secretbox key.

    ``sha256`` hashes the passphrase. ``padded`` zero-pads or truncates the
    raw passphrase bytes, matching the OwnTracks mobile apps.
    """
    secret = passphrase.encode("utf-8")
    if KeyDerivation(method) == KeyDerivation.PADDED:
        return secret[:KEY_SIZE].ljust(KEY_SIZE, b"\0")
    return hashlib.sha256(secret).digest()


def is_encrypted(body: Any) -> bool:
    """Check whether an inbound body has the encrypted shape."""
    if isinstance(body, dict):
        return body.get("_type") == ENCRYPTED_TYPE
    if isinstance(body, str):
        text = body.strip()
        return bool(text) and not text.startswith("{") and BASE64_PATTERN.match(text) is not None
    return False


class PayloadDecoder:
    """
    Decrypts encrypted reports into plaintext JSON objects.

    Stateless apart from the derived key; instances can be shared between
    concurrent requests.

    Args:
        key: Shared secret passphrase
        key_derivation: ``sha256`` (default) or ``padded``
    """

    def __init__(self, key: str, key_derivation: Union[KeyDerivation, str] = KeyDerivation.SHA256):
        if not key:
            raise ConfigurationError(
                "Encryption key is required to decode payloads",
                missing_fields=["encryption_key"],
            )
        self.key_derivation = KeyDerivation(key_derivation)
        self._box = nacl.secret.SecretBox(derive_key(key, self.key_derivation))

    def is_encrypted(self, body: Any) -> bool:
        return is_encrypted(body)

    def decode(self, body: Union[dict, str]) -> dict[str, Any]:
        """
        Decrypt an encrypted wrapper or bare ciphertext string.

        Returns:
            The decrypted JSON object.

        Raises:
            DecodeError: If the ciphertext is malformed, fails authentication,
                or does not decrypt to a UTF-8 JSON object.
        """
        if isinstance(body, dict):
            ciphertext = body.get("data")
            if not isinstance(ciphertext, str) or not ciphertext:
                raise DecodeError("Encrypted payload is missing its data field")
        elif isinstance(body, str):
            ciphertext = body
        else:
            raise DecodeError("Encrypted payload must be a string or an encrypted wrapper object")

        try:
            blob = base64.b64decode(ciphertext.strip(), validate=True)
        except (binascii.Error, ValueError):
            raise DecodeError("Encrypted payload is not valid base64")

        if len(blob) < NONCE_SIZE + MAC_SIZE:
            raise DecodeError(
                "Encrypted payload is too short",
                details={"length": len(blob), "minimum": NONCE_SIZE + MAC_SIZE},
            )

        try:
            plaintext = self._box.decrypt(blob)
        except (nacl.exceptions.CryptoError, ValueError):
            raise DecodeError("Decryption failed: wrong key or corrupted payload")

        try:
            decoded = json.loads(plaintext.decode("utf-8"))
        except (UnicodeDecodeError, ValueError):
            raise DecodeError("Decrypted payload is not valid JSON")

        if not isinstance(decoded, dict):
            raise DecodeError(
                "Decrypted payload is not a JSON object",
                details={"type": type(decoded).__name__},
            )

        logger.debug(
            "Payload decrypted",
            extra={"extra_data": {"message_type": decoded.get("_type")}}
        )
        return decoded

    def encrypt(self, payload: Union[dict, str]) -> str:
        """
        Encrypt a payload into the base64 form ``decode`` accepts.

        A random nonce is generated for every call.
        """
        if isinstance(payload, dict):
            payload = json.dumps(payload, separators=(",", ":"))
        sealed = self._box.encrypt(payload.encode("utf-8"))
        return base64.b64encode(bytes(sealed)).decode("ascii")

    def wrap(self, payload: Union[dict, str]) -> dict[str, str]:
        """Encrypt a payload and wrap it as an ``encrypted`` message."""
        return {"_type": ENCRYPTED_TYPE, "data": self.encrypt(payload)}
