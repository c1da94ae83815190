"""
Ed25519 signing of anchoring transactions.

The relay only broadcasts transactions carrying a signature from a key it
trusts. Keys are held in a local JSON key file for development, or in AWS KMS
for deployed environments; either way the signer returns ``(kid, sig_b64)``
so the envelope can name the key that produced it.
"""

import json
import threading
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional, Tuple

from nacl.exceptions import BadSignatureError
from nacl.signing import SigningKey, VerifyKey

from .util import b64d, b64e

KMS_SIGNING_ALGORITHM = "ED25519_SHA_512"


class TransactionSigner(ABC):
    """Produces Ed25519 signatures over canonical transaction bytes."""

    @abstractmethod
    def sign(self, payload: bytes) -> Tuple[str, str]:
        """Return ``(kid, base64 signature)`` for the payload."""
        pass

    @abstractmethod
    def get_kid(self) -> str:
        pass


class FileTransactionSigner(TransactionSigner):
    """
    Signer whose private key sits in a JSON file:

        {"kid": "lotseal-signer-01", "private_key_b64": "<32-byte seed>"}

    Generate one with ``tools/gen_signer_key.py``.
    """

    def __init__(self, signing_key_path: str):
        with open(signing_key_path, "r", encoding="utf-8") as f:
            key_file = json.load(f)
        self._kid = key_file["kid"]
        self._signing_key = SigningKey(b64d(key_file["private_key_b64"]))

    @classmethod
    def from_key(cls, kid: str, signing_key: SigningKey) -> "FileTransactionSigner":
        """Wrap an in-memory key, bypassing the key file."""
        signer = cls.__new__(cls)
        signer._kid = kid
        signer._signing_key = signing_key
        return signer

    def sign(self, payload: bytes) -> Tuple[str, str]:
        signed = self._signing_key.sign(payload)
        return self._kid, b64e(signed.signature)

    def get_kid(self) -> str:
        return self._kid

    def public_key_b64(self) -> str:
        return b64e(bytes(self._signing_key.verify_key))


class AwsKmsTransactionSigner(TransactionSigner):
    """
    Signer backed by an asymmetric ED25519 KMS key (key usage SIGN_VERIFY).

    The private key never leaves KMS; each signature is one ``kms:Sign`` call
    with MessageType RAW. The boto3 client is created on first use unless one
    is passed in.
    """

    def __init__(self, kms_key_id: str, region: Optional[str] = None, kid: Optional[str] = None, client: Any = None):
        self._key_id = kms_key_id
        self._region = region
        self._kid = kid or "aws-kms-ed25519"
        self._client = client
        self._client_lock = threading.Lock()

    def _kms(self):
        with self._client_lock:
            if self._client is None:
                import boto3
                self._client = boto3.client("kms", region_name=self._region)
        return self._client

    def sign(self, payload: bytes) -> Tuple[str, str]:
        response = self._kms().sign(
            KeyId=self._key_id,
            Message=payload,
            MessageType="RAW",
            SigningAlgorithm=KMS_SIGNING_ALGORITHM,
        )
        return self._kid, b64e(response["Signature"])

    def get_kid(self) -> str:
        return self._kid


def verify_ed25519(signature_b64: str, payload: bytes, public_key_b64: str) -> bool:
    """True when ``signature_b64`` is a valid signature of ``payload`` by the key."""
    try:
        VerifyKey(b64d(public_key_b64)).verify(payload, b64d(signature_b64))
    except (BadSignatureError, ValueError, TypeError):
        return False
    return True


def generate_key_file(kid: str) -> Tuple[Dict[str, str], str]:
    """Create a new key; returns the key file contents and the base64 public key."""
    signing_key = SigningKey.generate()
    key_file = {"kid": kid, "private_key_b64": b64e(bytes(signing_key))}
    return key_file, b64e(bytes(signing_key.verify_key))
