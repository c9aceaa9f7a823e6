#!/usr/bin/env python
# -*- coding: utf-8 -*-
# SPDX-License-Identifier: Apache-2.0
#
# OttrBox CLI - End-to-end encrypted file sharing
# Copyright (C) 2025-2026 OttrBox contributors
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

import base64
import binascii
import hmac
import re
import threading

from typing import Optional

from ottrbox.crypto import CryptoInterface, CryptoBackend, InvalidTagError, KEY_SIZE, NONCE_SIZE, TAG_SIZE
from ottrbox.Kernel import getLogger

logger = getLogger(__name__)

FINGERPRINT_PATTERN = re.compile(r'^[a-f0-9]{64}$')
KEY_FRAGMENT_PATTERN = re.compile(r'[#&]key=([A-Za-z0-9_-]+)')
ENCODED_KEY_PATTERN = re.compile(r'^[A-Za-z0-9_-]+={0,2}$')

# ============================================================================
# Errors
# ============================================================================


class E2EEError(Exception):
    """Base class for end-to-end encryption errors"""
    pass


class InvalidKeyFormat(E2EEError):
    """Encoded key is not base64url or does not decode to 32 bytes"""
    pass


class DecryptionFailed(E2EEError):
    """Authentication failed: wrong key, tampered data or truncated blob"""
    pass


class FingerprintMismatch(E2EEError):
    """Imported key does not match the fingerprint registered on the server"""
    pass


class MissingKeyError(E2EEError):
    """An encrypted share or reverse share was opened without its key"""
    pass


# ============================================================================
# Encoding helpers
# ============================================================================


def b64urlEncode(data: bytes) -> str:
    """URL-safe base64 without padding"""
    return base64.urlsafe_b64encode(bytes(data)).decode('ascii').rstrip('=')


def b64urlDecode(text: str) -> bytes:
    """Decode URL-safe base64, padded or not.

    Raises:
        ValueError: text contains characters outside the base64url alphabet
    """
    if not isinstance(text, str) or not ENCODED_KEY_PATTERN.match(text):
        raise ValueError('Not a base64url string')

    stripped = text.rstrip('=')
    return base64.urlsafe_b64decode(stripped + '=' * (-len(stripped) % 4))


# ============================================================================
# Key material
# ============================================================================


class SymmetricKey:
    """A 256-bit AES key.

    Only lives in memory and local storage. repr() never exposes the bytes.
    """

    __slots__ = ('_raw',)

    def __init__(self, raw: bytes):
        raw = bytes(raw)
        if len(raw) != KEY_SIZE:
            raise InvalidKeyFormat(f'Key must be {KEY_SIZE} bytes, got {len(raw)}')
        self._raw = raw

    @property
    def rawBytes(self) -> bytes:
        return self._raw

    def __eq__(self, other):
        if not isinstance(other, SymmetricKey):
            return NotImplemented
        return hmac.compare_digest(self._raw, other._raw)

    def __hash__(self):
        return hash(self._raw)

    def __repr__(self):
        return '<SymmetricKey AES-256>'


class WrappedKey:
    """An EncryptedBlob whose plaintext is another key's raw bytes.

    Travels as base64url in the reverse share's encryptedReverseShareKey.
    """

    __slots__ = ('blob',)

    def __init__(self, blob: bytes):
        self.blob = bytes(blob)

    def encode(self) -> str:
        return b64urlEncode(self.blob)

    @classmethod
    def decode(cls, text: str) -> 'WrappedKey':
        try:
            return cls(b64urlDecode(text))
        except (ValueError, binascii.Error) as e:
            raise DecryptionFailed(f'Wrapped key is not valid base64url: {e}') from e

    def __eq__(self, other):
        return isinstance(other, WrappedKey) and self.blob == other.blob

    def __repr__(self):
        return f'<WrappedKey {len(self.blob)} bytes>'


# ============================================================================
# Cipher engine
# ============================================================================


class E2EECipher:
    """Key primitives, buffer encryption and key wrapping over a pluggable
    CryptoBackend.

    Blob layout: IV (12 bytes) || ciphertext || GCM tag (16 bytes). A fresh IV
    is drawn on every encrypt call. Instances hold no per-call state and are
    safe to share between threads.
    """

    def __init__(self, crypto=None):
        if isinstance(crypto, CryptoInterface):
            self.crypto = crypto
        else:
            self.crypto = CryptoInterface(crypto)

    def getBackendName(self):
        return self.crypto.getBackendName()

    # Key primitive layer

    def generateKey(self) -> SymmetricKey:
        return SymmetricKey(self.crypto.generateKey(KEY_SIZE))

    def exportKey(self, key: SymmetricKey) -> str:
        return b64urlEncode(key.rawBytes)

    def importKey(self, encoded: str) -> SymmetricKey:
        """Decode an EncodedKey.

        Raises:
            InvalidKeyFormat: not canonical base64url, or not exactly 32 bytes once decoded
        """
        try:
            raw = b64urlDecode(encoded)
        except (ValueError, binascii.Error) as e:
            raise InvalidKeyFormat(f'Invalid key encoding: {e}') from e

        if len(raw) != KEY_SIZE:
            raise InvalidKeyFormat(f'Key must decode to {KEY_SIZE} bytes, got {len(raw)}')
        if b64urlEncode(raw) != encoded.rstrip('='):
            raise InvalidKeyFormat('Key has non-canonical trailing bits')

        return SymmetricKey(raw)

    def fingerprint(self, key: SymmetricKey) -> str:
        """Lowercase hex SHA-256 of the raw key bytes"""
        return self.crypto.sha256(key.rawBytes).hex()

    def fingerprintFromEncoded(self, encoded: str) -> str:
        return self.fingerprint(self.importKey(encoded))

    # Buffer cipher engine

    def encrypt(self, plaintext: bytes, key: SymmetricKey) -> bytes:
        nonce, ciphertextWithTag = self.crypto.encryptAESGCM(key.rawBytes, bytes(plaintext))
        return nonce + ciphertextWithTag

    def decrypt(self, blob: bytes, key: SymmetricKey) -> bytes:
        """Reverse encrypt().

        Raises:
            DecryptionFailed: wrong key, tampering, or a blob shorter than IV + tag
        """
        blob = bytes(blob)
        if len(blob) < NONCE_SIZE + TAG_SIZE:
            raise DecryptionFailed(f'Encrypted blob too short ({len(blob)} bytes)')

        try:
            return self.crypto.decryptAESGCM(key.rawBytes, blob[:NONCE_SIZE], blob[NONCE_SIZE:])
        except InvalidTagError as e:
            raise DecryptionFailed('Decryption failed: wrong key or corrupted data') from e

    # Key delegation

    def wrap(self, subjectKey: SymmetricKey, wrappingKey: SymmetricKey) -> WrappedKey:
        return WrappedKey(self.encrypt(subjectKey.rawBytes, wrappingKey))

    def unwrap(self, wrapped: WrappedKey, wrappingKey: SymmetricKey) -> SymmetricKey:
        if isinstance(wrapped, str):
            wrapped = WrappedKey.decode(wrapped)

        raw = self.decrypt(wrapped.blob, wrappingKey)
        if len(raw) != KEY_SIZE:
            raise DecryptionFailed(f'Unwrapped payload is {len(raw)} bytes, not a key')
        return SymmetricKey(raw)


_defaultCipher = None
_defaultCipherLock = threading.Lock()


def getDefaultCipher() -> E2EECipher:
    global _defaultCipher
    if _defaultCipher is None:
        with _defaultCipherLock:
            if _defaultCipher is None:
                _defaultCipher = E2EECipher()
                logger.debug(f"[E2EE] Using crypto backend: {_defaultCipher.getBackendName()}")
    return _defaultCipher


def setDefaultBackend(backend: Optional[CryptoBackend]):
    """Swap the process-wide cipher provider, e.g. to force python-mbedtls."""
    global _defaultCipher
    with _defaultCipherLock:
        _defaultCipher = E2EECipher(backend)


def generateKey() -> SymmetricKey:
    return getDefaultCipher().generateKey()


def exportKey(key: SymmetricKey) -> str:
    return getDefaultCipher().exportKey(key)


def importKey(encoded: str) -> SymmetricKey:
    return getDefaultCipher().importKey(encoded)


def fingerprint(key: SymmetricKey) -> str:
    return getDefaultCipher().fingerprint(key)


def encrypt(plaintext: bytes, key: SymmetricKey) -> bytes:
    return getDefaultCipher().encrypt(plaintext, key)


def decrypt(blob: bytes, key: SymmetricKey) -> bytes:
    return getDefaultCipher().decrypt(blob, key)


def wrap(subjectKey: SymmetricKey, wrappingKey: SymmetricKey) -> WrappedKey:
    return getDefaultCipher().wrap(subjectKey, wrappingKey)


def unwrap(wrapped: WrappedKey, wrappingKey: SymmetricKey) -> SymmetricKey:
    return getDefaultCipher().unwrap(wrapped, wrappingKey)


# ============================================================================
# Fingerprints and link fragments
# ============================================================================


def isValidFingerprint(value) -> bool:
    return isinstance(value, str) and FINGERPRINT_PATTERN.match(value) is not None


def fingerprintsMatch(expected: str, actual: str) -> bool:
    """Constant-time fingerprint comparison"""
    if not isinstance(expected, str) or not isinstance(actual, str):
        return False
    return hmac.compare_digest(expected.encode('ascii', 'replace'), actual.encode('ascii', 'replace'))


def buildKeyFragment(encoded: str) -> str:
    return f'#key={encoded}'


def appendKeyFragment(url: str, encoded: Optional[str]) -> str:
    """Attach the key to a link. The key only ever travels in the fragment,
    which browsers and HTTP clients never send to the server."""
    if not encoded:
        return url
    return f"{url.split('#', 1)[0]}{buildKeyFragment(encoded)}"


def extractKeyFromFragment(urlOrFragment: str) -> Optional[str]:
    """Return the EncodedKey carried in '#key=...' (or '&key=...'), if any"""
    if not urlOrFragment:
        return None

    # Only the fragment counts, a key in the query string is ignored.
    if '#' in urlOrFragment:
        fragment = '#' + urlOrFragment.split('#', 1)[1]
    elif urlOrFragment.startswith('&'):
        fragment = urlOrFragment
    else:
        return None

    match = KEY_FRAGMENT_PATTERN.search(fragment)
    return match.group(1) if match else None


def stripFragment(url: str) -> str:
    return url.split('#', 1)[0]
