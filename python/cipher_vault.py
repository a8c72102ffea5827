"""
Enrollment payload encryption
=============================
Two backends, kept separate on purpose:

  AesGcmVault         AES-256-GCM with a fresh 96-bit nonce per call.
                      Wire form: {"iv": base64, "ciphertext": base64}
  PassphraseCbcVault  CryptoJS.AES.encrypt(text, passphrase) compatible:
                      "Salted__" + salt, EVP_BytesToKey(MD5), AES-256-CBC,
                      PKCS7. Wire form: {"ciphertext": base64}

Decryption failures (wrong key, corruption, tampering) raise DecryptionFailed.
A payload that decrypts and authenticates but is not a JSON object raises
PayloadSchemaError instead, so callers can tell the two apart.

Dependencies: cryptography
"""

import base64
import binascii
import hashlib
import json
import os
from dataclasses import dataclass
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from errors import DecryptionFailed, PayloadSchemaError

GCM_NONCE_SIZE = 12
OPENSSL_MAGIC = b"Salted__"
OPENSSL_SALT_SIZE = 8


@dataclass(frozen=True)
class EncryptedPayload:
    ciphertext: str
    iv: Optional[str] = None

    def to_dict(self):
        if self.iv is None:
            return {"ciphertext": self.ciphertext}
        return {"iv": self.iv, "ciphertext": self.ciphertext}

    def to_json(self):
        return json.dumps(self.to_dict())

    @classmethod
    def from_dict(cls, data):
        if not isinstance(data, dict) or not isinstance(data.get("ciphertext"), str):
            raise DecryptionFailed("Encrypted payload has no ciphertext")
        iv = data.get("iv")
        if iv is not None and not isinstance(iv, str):
            raise DecryptionFailed("Encrypted payload has a malformed iv")
        return cls(ciphertext=data["ciphertext"], iv=iv)

    @classmethod
    def from_json(cls, raw):
        try:
            data = json.loads(raw)
        except (TypeError, ValueError, UnicodeDecodeError) as exc:
            raise DecryptionFailed("Encrypted payload is not valid JSON") from exc
        return cls.from_dict(data)


def _b64encode(data):
    return base64.b64encode(data).decode("ascii")


def _b64decode(text):
    try:
        return base64.b64decode(text, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise DecryptionFailed("Payload is not valid base64") from exc


def _serialize(plaintext):
    return json.dumps(plaintext, separators=(",", ":")).encode("utf-8")


def _parse_object(raw):
    """JSON object from authenticated plaintext bytes."""
    try:
        value = json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, ValueError) as exc:
        raise PayloadSchemaError("Decrypted payload is not JSON") from exc
    if not isinstance(value, dict):
        raise PayloadSchemaError("Decrypted payload is not a JSON object")
    return value


# =============================================================================
# AES-GCM
# =============================================================================

class AesGcmVault:
    name = "aes-gcm"

    def encrypt(self, key, plaintext):
        nonce = os.urandom(GCM_NONCE_SIZE)
        ciphertext = AESGCM(key.material).encrypt(nonce, _serialize(plaintext), None)
        return EncryptedPayload(ciphertext=_b64encode(ciphertext), iv=_b64encode(nonce))

    def decrypt(self, key, payload):
        if payload.iv is None:
            raise DecryptionFailed("AES-GCM payload has no iv")
        nonce = _b64decode(payload.iv)
        ciphertext = _b64decode(payload.ciphertext)
        if len(nonce) != GCM_NONCE_SIZE:
            raise DecryptionFailed("AES-GCM iv has the wrong length")
        try:
            raw = AESGCM(key.material).decrypt(nonce, ciphertext, None)
        except InvalidTag as exc:
            raise DecryptionFailed("Authentication failed: wrong key or tampered data") from exc
        return _parse_object(raw)


# =============================================================================
# AES-CBC, CryptoJS passphrase mode
# =============================================================================

def evp_bytes_to_key(passphrase, salt, key_len=32, iv_len=16):
    """OpenSSL EVP_BytesToKey with MD5 and one iteration, as CryptoJS does."""
    derived = b""
    block = b""
    while len(derived) < key_len + iv_len:
        block = hashlib.md5(block + passphrase + salt).digest()
        derived += block
    return derived[:key_len], derived[key_len:key_len + iv_len]


class PassphraseCbcVault:
    name = "aes-cbc"

    def encrypt(self, key, plaintext):
        salt = os.urandom(OPENSSL_SALT_SIZE)
        aes_key, iv = evp_bytes_to_key(key.passphrase.encode("utf-8"), salt)

        padder = padding.PKCS7(algorithms.AES.block_size).padder()
        padded = padder.update(_serialize(plaintext)) + padder.finalize()
        encryptor = Cipher(algorithms.AES(aes_key), modes.CBC(iv)).encryptor()
        ciphertext = encryptor.update(padded) + encryptor.finalize()
        return EncryptedPayload(ciphertext=_b64encode(OPENSSL_MAGIC + salt + ciphertext))

    def decrypt(self, key, payload):
        blob = _b64decode(payload.ciphertext)
        header = len(OPENSSL_MAGIC) + OPENSSL_SALT_SIZE
        body = blob[header:]
        if not blob.startswith(OPENSSL_MAGIC) or not body or len(body) % 16:
            raise DecryptionFailed("Not an OpenSSL salted AES-CBC payload")
        salt = blob[len(OPENSSL_MAGIC):header]
        aes_key, iv = evp_bytes_to_key(key.passphrase.encode("utf-8"), salt)

        decryptor = Cipher(algorithms.AES(aes_key), modes.CBC(iv)).decryptor()
        padded = decryptor.update(body) + decryptor.finalize()
        unpadder = padding.PKCS7(algorithms.AES.block_size).unpadder()
        try:
            raw = unpadder.update(padded) + unpadder.finalize()
        except ValueError as exc:
            raise DecryptionFailed("Bad padding: wrong key or corrupted data") from exc

        # CBC carries no tag: garbage text after unpadding also means a wrong key
        try:
            return _parse_object(raw)
        except PayloadSchemaError as exc:
            raise DecryptionFailed("Wrong key or corrupted data") from exc


VAULTS = {
    AesGcmVault.name: AesGcmVault,
    PassphraseCbcVault.name: PassphraseCbcVault,
}


def vault_for(name="aes-gcm"):
    try:
        return VAULTS[name]()
    except KeyError:
        raise ValueError(f"Unknown cipher backend: {name}") from None
