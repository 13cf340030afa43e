# -*- coding: utf-8 -*-
"""Hashing, signing and encryption used for agent messages and persisted credentials.

Usage:
    crypto = DefaultCryptographicImplementation(private_key_pem,
                                                other_public_keys={"agent-1": agent_pem})

    digest = crypto.hash(b"payload")
    signature = crypto.sign(digest)
    crypto.verify(digest, signature)                      # with our own public key
    ciphertext = crypto.encrypt(b"payload", "agent-1")    # only agent-1 can decrypt
    plaintext = crypto.decrypt(ciphertext)                # with our own private key

Encryption is hybrid. A fresh AES-256-GCM key encrypts the payload and is itself wrapped with
RSA-OAEP(SHA-512) for the recipient

    wrapped key (modulus size) || nonce (12 bytes) || ciphertext || tag (16 bytes)
"""

import hashlib
import secrets
import string
from abc import ABC, abstractmethod

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

NONCE_SIZE = 12
KEY_SIZE = 32
CHARS_ALPHANUMERIC_ONLY = string.ascii_letters + string.digits


class CryptographicImplementation(ABC):

    @abstractmethod
    def generate_random_string(self, length):
        pass

    @abstractmethod
    def hash(self, data):
        pass

    @abstractmethod
    def sign(self, digest):
        pass

    @abstractmethod
    def verify(self, digest, signature, key_name=None):
        pass

    @abstractmethod
    def encrypt(self, plaintext, key_name=None):
        pass

    @abstractmethod
    def decrypt(self, ciphertext):
        pass


def generate_private_key_pem(key_size=2048):
    """Creates a new unencrypted PKCS8 PEM RSA private key."""
    key = rsa.generate_private_key(public_exponent=65537, key_size=key_size)
    return key.private_bytes(encoding=serialization.Encoding.PEM,
                             format=serialization.PrivateFormat.PKCS8,
                             encryption_algorithm=serialization.NoEncryption())


def public_key_pem(private_key_pem, password=None):
    key = serialization.load_pem_private_key(_as_bytes(private_key_pem), password=password)
    return key.public_key().public_bytes(encoding=serialization.Encoding.PEM,
                                         format=serialization.PublicFormat.SubjectPublicKeyInfo)


def _as_bytes(value):
    return value.encode("utf-8") if isinstance(value, str) else value


class DefaultCryptographicImplementation(CryptographicImplementation):
    """RSA key pair of this instance plus the public keys of its peers, by name.

    Attributes:
        other_public_keys (dict): peer name to PEM public key.
    """

    def __init__(self, private_key_pem, other_public_keys=None, password=None):
        self._private_key = serialization.load_pem_private_key(_as_bytes(private_key_pem),
                                                               password=password)
        self._public_key = self._private_key.public_key()
        self._other_public_keys = {name: serialization.load_pem_public_key(_as_bytes(pem))
                                   for name, pem in (other_public_keys or {}).items()}

    @property
    def other_public_keys(self):
        return dict(self._other_public_keys)

    def add_public_key(self, name, pem):
        self._other_public_keys[name] = serialization.load_pem_public_key(_as_bytes(pem))

    def _public(self, key_name):
        if key_name is None:
            return self._public_key
        if key_name not in self._other_public_keys:
            raise KeyError(f"No public key registered for {key_name}")
        return self._other_public_keys[key_name]

    def generate_random_string(self, length):
        return "".join(secrets.choice(CHARS_ALPHANUMERIC_ONLY) for _ in range(length))

    def hash(self, data):
        return hashlib.sha256(_as_bytes(data)).digest()

    def sign(self, digest):
        return self._private_key.sign(digest, padding.PKCS1v15(), hashes.SHA512())

    def verify(self, digest, signature, key_name=None):
        try:
            self._public(key_name).verify(signature, digest, padding.PKCS1v15(), hashes.SHA512())
        except InvalidSignature:
            return False
        return True

    @staticmethod
    def _oaep():
        return padding.OAEP(mgf=padding.MGF1(algorithm=hashes.SHA512()),
                            algorithm=hashes.SHA512(),
                            label=None)

    def encrypt(self, plaintext, key_name=None):
        key = AESGCM.generate_key(bit_length=KEY_SIZE * 8)
        nonce = secrets.token_bytes(NONCE_SIZE)
        wrapped = self._public(key_name).encrypt(key, self._oaep())
        return wrapped + nonce + AESGCM(key).encrypt(nonce, _as_bytes(plaintext), None)

    def decrypt(self, ciphertext):
        wrapped_size = self._private_key.key_size // 8
        if len(ciphertext) < wrapped_size + NONCE_SIZE + 16:
            raise ValueError("Ciphertext too short")
        key = self._private_key.decrypt(ciphertext[:wrapped_size], self._oaep())
        nonce = ciphertext[wrapped_size:wrapped_size + NONCE_SIZE]
        return AESGCM(key).decrypt(nonce, ciphertext[wrapped_size + NONCE_SIZE:], None)
