"""
Field Encryption at Rest Module

Provides AES-256-GCM field-level encryption for sensitive account data.
Each encrypted value is a self-contained `iv:authTag:ciphertext` token
(standard base64 parts) produced with a fresh random IV per call.
"""

import base64
import binascii
import json
import logging
import os
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Tuple

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from .errors import DecryptionError
from .sensitive import DEFAULT_POLICY, SensitiveFieldPolicy

logger = logging.getLogger(__name__)

KEY_LENGTH = 32  # AES-256
IV_LENGTH = 16
AUTH_TAG_LENGTH = 16

# Key under which the opaque custom-field blob is stored
ENCRYPTED_BLOB_KEY = "_encrypted"


@dataclass
class FieldResult:
    """Outcome of decrypting one field"""
    field: str
    value: Any
    decrypted: bool
    error: Optional[str] = None

    @property
    def failed(self) -> bool:
        return not self.decrypted


@dataclass
class DecryptionReport:
    """
    Result of decrypting several fields of one object.

    `value` always holds a usable object: fields that failed keep the raw
    stored value, and `results` says which is which.
    """
    value: Dict[str, Any]
    results: Dict[str, FieldResult] = field(default_factory=dict)

    @property
    def failures(self) -> List[str]:
        return [name for name, result in self.results.items() if result.failed]

    @property
    def ok(self) -> bool:
        return not self.failures

    def merge(self, other: 'DecryptionReport', prefix: str = "") -> None:
        """Fold another report's per-field results into this one"""
        for name, result in other.results.items():
            qualified = f"{prefix}{name}"
            self.results[qualified] = FieldResult(qualified, result.value, result.decrypted, result.error)


class EncryptionEngine:
    """Symmetric per-field encryption with AES-256-GCM"""

    def __init__(self, encryption_key: Optional[str] = None, salt: Optional[str] = None,
                 iterations: Optional[int] = None):
        """
        Args:
            encryption_key: Secret passphrase; falls back to the configured
                ACCOUNT_COMPLIANCE_ENCRYPTION_KEY
            salt: PBKDF2 salt (configured value when omitted)
            iterations: PBKDF2 iteration count (configured value when omitted)

        Raises:
            ValueError: if no key is supplied or configured
        """
        if encryption_key is None or salt is None or iterations is None:
            from .config import get_config
            config = get_config()
            encryption_key = encryption_key if encryption_key is not None else config.encryption_key
            salt = salt if salt is not None else config.encryption_salt
            iterations = iterations if iterations is not None else config.kdf_iterations

        if not encryption_key:
            raise ValueError(
                "Encryption key is required. Set ACCOUNT_COMPLIANCE_ENCRYPTION_KEY "
                "or pass it to EncryptionEngine."
            )

        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=KEY_LENGTH,
            salt=salt.encode('utf-8'),
            iterations=iterations,
        )
        self._aesgcm = AESGCM(kdf.derive(encryption_key.encode('utf-8')))

        self._encrypt_count = 0
        self._decrypt_count = 0
        logger.info("EncryptionEngine initialized successfully")

    def encrypt(self, plaintext: str) -> str:
        """
        Encrypt one value.

        Returns:
            `iv:authTag:ciphertext` token; the empty string is returned unchanged
        """
        if plaintext == "":
            return plaintext
        if not isinstance(plaintext, str):
            plaintext = str(plaintext)

        iv = os.urandom(IV_LENGTH)
        sealed = self._aesgcm.encrypt(iv, plaintext.encode('utf-8'), None)
        ciphertext, auth_tag = sealed[:-AUTH_TAG_LENGTH], sealed[-AUTH_TAG_LENGTH:]
        self._encrypt_count += 1

        return ":".join(_b64(part) for part in (iv, auth_tag, ciphertext))

    def decrypt(self, token: str) -> str:
        """
        Decrypt one `iv:authTag:ciphertext` token.

        Raises:
            DecryptionError: wrong part count, bad encoding or failed integrity check
        """
        if token == "":
            return token
        if not isinstance(token, str):
            raise DecryptionError("Encrypted value must be a string")

        parts = token.split(":")
        if len(parts) != 3:
            raise DecryptionError("Invalid encrypted data format")

        try:
            iv, auth_tag, ciphertext = (base64.b64decode(p, validate=True) for p in parts)
        except (binascii.Error, ValueError) as e:
            raise DecryptionError(f"Invalid encrypted data encoding: {e}") from e

        if len(iv) != IV_LENGTH or len(auth_tag) != AUTH_TAG_LENGTH:
            raise DecryptionError("Invalid encrypted data format")

        try:
            plaintext = self._aesgcm.decrypt(iv, ciphertext + auth_tag, None)
        except InvalidTag as e:
            raise DecryptionError("Integrity check failed for encrypted data") from e

        try:
            result = plaintext.decode('utf-8')
        except UnicodeDecodeError as e:
            raise DecryptionError("Decrypted data is not valid UTF-8") from e

        self._decrypt_count += 1
        return result

    def encrypt_object(self, obj: Optional[Dict[str, Any]], field_names: Iterable[str]) -> Optional[Dict[str, Any]]:
        """Return a copy of obj with the listed non-empty string fields encrypted"""
        if obj is None:
            return obj

        result = dict(obj)
        for name in field_names:
            value = obj.get(name)
            if isinstance(value, str) and value:
                result[name] = self.encrypt(value)
        return result

    def decrypt_object(self, obj: Optional[Dict[str, Any]], field_names: Iterable[str]) -> DecryptionReport:
        """
        Decrypt the listed fields independently.

        A field that fails keeps its raw stored value and is reported in the
        returned DecryptionReport; remaining fields are still decrypted.
        """
        if obj is None:
            return DecryptionReport(value=obj)

        report = DecryptionReport(value=dict(obj))
        for name in field_names:
            value = obj.get(name)
            if not isinstance(value, str) or not value:
                continue
            try:
                report.value[name] = self.decrypt(value)
                report.results[name] = FieldResult(name, report.value[name], True)
            except DecryptionError as e:
                logger.error(f"Failed to decrypt field {name}: {e.message}")
                report.results[name] = FieldResult(name, value, False, e.message)
        return report

    @staticmethod
    def is_encrypted(value: Any) -> bool:
        """True when value has the shape of an `iv:authTag:ciphertext` token"""
        if not isinstance(value, str):
            return False
        parts = value.split(":")
        if len(parts) != 3:
            return False
        try:
            iv = base64.b64decode(parts[0], validate=True)
            tag = base64.b64decode(parts[1], validate=True)
            base64.b64decode(parts[2], validate=True)
        except (binascii.Error, ValueError):
            return False
        return len(iv) == IV_LENGTH and len(tag) == AUTH_TAG_LENGTH

    def get_encryption_stats(self) -> Dict[str, int]:
        """Get encryption/decryption statistics"""
        return {
            "encrypt_count": self._encrypt_count,
            "decrypt_count": self._decrypt_count
        }


class AccountCipher:
    """
    Applies an EncryptionEngine to account records in their stored dict form,
    selecting fields from a SensitiveFieldPolicy. Works on copies; the input
    record is never mutated.
    """

    def __init__(self, engine: EncryptionEngine, policy: SensitiveFieldPolicy = DEFAULT_POLICY):
        self.engine = engine
        self.policy = policy

    def encrypt_record(self, record: Dict[str, Any]) -> Dict[str, Any]:
        """Encrypt every sensitive field present in record (full record or delta)"""
        result = self.engine.encrypt_object(record, self.policy.account_fields)

        for name in self.policy.address_fields:
            address = result.get(name)
            if isinstance(address, dict):
                result[name] = self.engine.encrypt_object(address, self.policy.address_subfields)

        for name in self.policy.blob_fields:
            blob = result.get(name)
            if blob:
                serialized = json.dumps(blob, sort_keys=True, default=str)
                result[name] = {ENCRYPTED_BLOB_KEY: self.engine.encrypt(serialized)}

        return result

    def decrypt_record(self, record: Dict[str, Any]) -> DecryptionReport:
        """Decrypt a stored record, tolerating per-field failures"""
        report = self.engine.decrypt_object(record, self.policy.account_fields)

        for name in self.policy.address_fields:
            address = report.value.get(name)
            if isinstance(address, dict):
                address_report = self.engine.decrypt_object(address, self.policy.address_subfields)
                report.value[name] = address_report.value
                report.merge(address_report, prefix=f"{name}.")

        for name in self.policy.blob_fields:
            blob = report.value.get(name)
            if isinstance(blob, dict) and ENCRYPTED_BLOB_KEY in blob:
                report.value[name], report.results[name] = self._decrypt_blob(name, blob)

        return report

    def _decrypt_blob(self, name: str, blob: Dict[str, Any]) -> Tuple[Any, FieldResult]:
        try:
            value = json.loads(self.engine.decrypt(blob[ENCRYPTED_BLOB_KEY]))
        except DecryptionError as e:
            logger.error(f"Failed to decrypt field {name}: {e.message}")
            return blob, FieldResult(name, blob, False, e.message)
        except json.JSONDecodeError as e:
            logger.error(f"Decrypted field {name} is not valid JSON: {e}")
            return blob, FieldResult(name, blob, False, str(e))
        return value, FieldResult(name, value, True)


def _b64(data: bytes) -> str:
    return base64.b64encode(data).decode('ascii')
