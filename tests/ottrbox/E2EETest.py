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
"""
Unit tests for the end-to-end encryption layer: key primitives, the buffer
cipher, key wrapping and key transport in link fragments.
"""

import importlib.util
import os
import unittest

from ottrbox.crypto import CryptoBackend, CryptoInterface, NONCE_SIZE, TAG_SIZE
from ottrbox.crypto.Cryptography import CryptographyBackend
from ottrbox import E2EE
from ottrbox.E2EE import (
    DecryptionFailed, E2EECipher, InvalidKeyFormat, SymmetricKey, WrappedKey, appendKeyFragment, b64urlEncode,
    extractKeyFromFragment, fingerprintsMatch, getDefaultCipher, isValidFingerprint, setDefaultBackend, stripFragment
)

HAS_MBEDTLS = importlib.util.find_spec('mbedtls') is not None


class CountingBackend(CryptoBackend):
    """Delegates to the cryptography backend and counts calls"""

    def __init__(self):
        self.inner = CryptographyBackend()
        self.encryptCalls = 0

    def getName(self):
        return 'counting'

    def randomBytes(self, length):
        return self.inner.randomBytes(length)

    def encryptAESGCM(self, key, plaintext, nonce=None, aad=None):
        self.encryptCalls += 1
        return self.inner.encryptAESGCM(key, plaintext, nonce, aad)

    def decryptAESGCM(self, key, nonce, ciphertextWithTag, aad=None):
        return self.inner.decryptAESGCM(key, nonce, ciphertextWithTag, aad)

    def sha256(self, data):
        return self.inner.sha256(data)


class CipherTest(unittest.TestCase):

    def setUp(self):
        self.cipher = E2EECipher()
        self.key = self.cipher.generateKey()

    def testRoundTrip(self):
        for plaintext in (b'', b'x', b'hello world', os.urandom(1024 * 1024 + 7)):
            blob = self.cipher.encrypt(plaintext, self.key)
            self.assertEqual(len(blob), NONCE_SIZE + len(plaintext) + TAG_SIZE)
            self.assertEqual(self.cipher.decrypt(blob, self.key), plaintext)

    def testTamperedBlobFails(self):
        blob = bytearray(self.cipher.encrypt(b'attack at dawn', self.key))

        # IV, ciphertext and tag are all covered
        for position in (0, NONCE_SIZE + 1, len(blob) - 1):
            tampered = bytearray(blob)
            tampered[position] ^= 0x01
            with self.assertRaises(DecryptionFailed):
                self.cipher.decrypt(bytes(tampered), self.key)

    def testWrongKeyFails(self):
        blob = self.cipher.encrypt(b'secret', self.key)
        with self.assertRaises(DecryptionFailed):
            self.cipher.decrypt(blob, self.cipher.generateKey())

    def testShortBlobFails(self):
        with self.assertRaises(DecryptionFailed):
            self.cipher.decrypt(b'\x00' * (NONCE_SIZE + TAG_SIZE - 1), self.key)

    def testFreshIVPerCall(self):
        ivs = {self.cipher.encrypt(b'same plaintext', self.key)[:NONCE_SIZE] for _ in range(10000)}
        self.assertEqual(len(ivs), 10000)

    def testGeneratedKeysDiffer(self):
        self.assertNotEqual(self.cipher.generateKey(), self.cipher.generateKey())


class KeyEncodingTest(unittest.TestCase):

    def setUp(self):
        self.cipher = E2EECipher()

    def testExportImportRoundTrip(self):
        key = self.cipher.generateKey()
        encoded = self.cipher.exportKey(key)

        self.assertEqual(len(encoded), 43)
        self.assertNotIn('=', encoded)
        self.assertRegex(encoded, r'^[A-Za-z0-9_-]+$')
        self.assertEqual(self.cipher.importKey(encoded), key)

    def testImportAcceptsPadding(self):
        key = self.cipher.generateKey()
        self.assertEqual(self.cipher.importKey(self.cipher.exportKey(key) + '='), key)

    def testImportRejectsInvalidKeys(self):
        for encoded in ('', 'not base64!', 'abc+/def', b64urlEncode(b'\x01' * 16), b64urlEncode(b'\x01' * 33), None):
            with self.subTest(encoded=encoded):
                with self.assertRaises(InvalidKeyFormat):
                    self.cipher.importKey(encoded)

    def testImportRejectsNonCanonicalTrailingBits(self):
        self.assertEqual(self.cipher.importKey('A' * 43).rawBytes, b'\x00' * 32)

        # Same 32 bytes as above once the two unused low bits are dropped
        for encoded in ('A' * 42 + 'B', 'A' * 42 + 'D', 'A' * 42 + 'B='):
            with self.subTest(encoded=encoded):
                with self.assertRaises(InvalidKeyFormat):
                    self.cipher.importKey(encoded)

    def testSymmetricKeyRejectsWrongLength(self):
        with self.assertRaises(InvalidKeyFormat):
            SymmetricKey(b'\x00' * 31)

    def testReprHidesKeyMaterial(self):
        key = self.cipher.generateKey()
        self.assertNotIn(self.cipher.exportKey(key), repr(key))
        self.assertNotIn(key.rawBytes.hex(), repr(key))


class FingerprintTest(unittest.TestCase):

    def setUp(self):
        self.cipher = E2EECipher()

    def testDeterministic(self):
        key = self.cipher.generateKey()
        self.assertEqual(self.cipher.fingerprint(key), self.cipher.fingerprint(key))
        self.assertEqual(self.cipher.fingerprint(key), self.cipher.fingerprintFromEncoded(self.cipher.exportKey(key)))

    def testFormat(self):
        fingerprint = self.cipher.fingerprint(self.cipher.generateKey())
        self.assertTrue(isValidFingerprint(fingerprint))
        self.assertRegex(fingerprint, r'^[a-f0-9]{64}$')

    def testKnownValue(self):
        key = SymmetricKey(bytes(range(32)))
        self.assertEqual(
            self.cipher.fingerprint(key), '630dcd2966c4336691125448bbb25b4ff412a49c732db2c8abc1b8581bd710dd'
        )

    def testDifferentKeysDiffer(self):
        self.assertNotEqual(
            self.cipher.fingerprint(self.cipher.generateKey()), self.cipher.fingerprint(self.cipher.generateKey())
        )

    def testValidation(self):
        self.assertFalse(isValidFingerprint('A' * 64))
        self.assertFalse(isValidFingerprint('a' * 63))
        self.assertFalse(isValidFingerprint(None))
        self.assertTrue(fingerprintsMatch('a' * 64, 'a' * 64))
        self.assertFalse(fingerprintsMatch('a' * 64, 'b' * 64))
        self.assertFalse(fingerprintsMatch('a' * 64, None))


class KeyWrapTest(unittest.TestCase):

    def setUp(self):
        self.cipher = E2EECipher()
        self.masterKey = self.cipher.generateKey()
        self.reverseShareKey = self.cipher.generateKey()

    def testWrapRoundTrip(self):
        wrapped = self.cipher.wrap(self.reverseShareKey, self.masterKey)
        self.assertEqual(len(wrapped.blob), NONCE_SIZE + 32 + TAG_SIZE)
        self.assertEqual(self.cipher.unwrap(wrapped, self.masterKey), self.reverseShareKey)

    def testWrappedKeyTransportEncoding(self):
        encoded = self.cipher.wrap(self.reverseShareKey, self.masterKey).encode()
        self.assertRegex(encoded, r'^[A-Za-z0-9_-]+$')
        self.assertEqual(self.cipher.unwrap(WrappedKey.decode(encoded), self.masterKey), self.reverseShareKey)
        self.assertEqual(self.cipher.unwrap(encoded, self.masterKey), self.reverseShareKey)

    def testUnwrapWithWrongKeyFails(self):
        wrapped = self.cipher.wrap(self.reverseShareKey, self.masterKey)
        with self.assertRaises(DecryptionFailed):
            self.cipher.unwrap(wrapped, self.cipher.generateKey())

    def testUnwrapRejectsNonKeyPayload(self):
        wrapped = WrappedKey(self.cipher.encrypt(b'\x00' * 16, self.masterKey))
        with self.assertRaises(DecryptionFailed):
            self.cipher.unwrap(wrapped, self.masterKey)

    def testDecodeRejectsGarbage(self):
        with self.assertRaises(DecryptionFailed):
            WrappedKey.decode('not*base64')


class KeyFragmentTest(unittest.TestCase):

    def testExtractFromLink(self):
        self.assertEqual(extractKeyFromFragment('https://box.example/s/abc#key=AbC_-1'), 'AbC_-1')
        self.assertEqual(extractKeyFromFragment('#key=xyz'), 'xyz')
        self.assertEqual(extractKeyFromFragment('#lang=en&key=xyz'), 'xyz')
        self.assertEqual(extractKeyFromFragment('&key=xyz'), 'xyz')

    def testQueryStringIsIgnored(self):
        self.assertIsNone(extractKeyFromFragment('https://box.example/s/abc?key=leaked'))
        self.assertEqual(extractKeyFromFragment('https://box.example/s/abc?key=leaked#key=real'), 'real')

    def testMissingKey(self):
        self.assertIsNone(extractKeyFromFragment('https://box.example/s/abc'))
        self.assertIsNone(extractKeyFromFragment('https://box.example/s/abc#other=1'))
        self.assertIsNone(extractKeyFromFragment(''))
        self.assertIsNone(extractKeyFromFragment(None))

    def testAppendKeyFragment(self):
        self.assertEqual(appendKeyFragment('https://box.example/s/abc', 'k1'), 'https://box.example/s/abc#key=k1')
        self.assertEqual(appendKeyFragment('https://box.example/s/abc#old', 'k2'), 'https://box.example/s/abc#key=k2')
        self.assertEqual(appendKeyFragment('https://box.example/s/abc', None), 'https://box.example/s/abc')
        self.assertEqual(stripFragment('https://box.example/s/abc#key=k1'), 'https://box.example/s/abc')


class CryptoBackendTest(unittest.TestCase):

    def testDefaultBackendIsCryptography(self):
        self.assertEqual(CryptoInterface().getBackendName(), 'cryptography')
        self.assertEqual(E2EECipher().getBackendName(), 'cryptography')

    def testCustomBackendIsUsed(self):
        backend = CountingBackend()
        cipher = E2EECipher(backend)
        key = cipher.generateKey()

        blob = cipher.encrypt(b'payload', key)
        self.assertEqual(backend.encryptCalls, 1)
        self.assertEqual(cipher.getBackendName(), 'counting')
        self.assertEqual(E2EECipher().decrypt(blob, key), b'payload')

    def testSwapDefaultBackend(self):
        backend = CountingBackend()
        setDefaultBackend(backend)
        try:
            key = E2EE.generateKey()
            blob = E2EE.encrypt(b'module level', key)
            self.assertEqual(backend.encryptCalls, 1)
            self.assertEqual(getDefaultCipher().getBackendName(), 'counting')
        finally:
            setDefaultBackend(None)

        self.assertEqual(getDefaultCipher().getBackendName(), 'cryptography')
        self.assertEqual(E2EE.decrypt(blob, key), b'module level')

    @unittest.skipUnless(HAS_MBEDTLS, 'python-mbedtls is not installed')
    def testBackendsInteroperate(self):
        cryptographyCipher = E2EECipher('cryptography')
        mbedtlsCipher = E2EECipher('mbedTLS')
        self.assertEqual(mbedtlsCipher.getBackendName(), 'python-mbedtls')

        key = cryptographyCipher.generateKey()
        self.assertEqual(mbedtlsCipher.decrypt(cryptographyCipher.encrypt(b'one way', key), key), b'one way')
        self.assertEqual(cryptographyCipher.decrypt(mbedtlsCipher.encrypt(b'other way', key), key), b'other way')
        self.assertEqual(mbedtlsCipher.fingerprint(key), cryptographyCipher.fingerprint(key))

        with self.assertRaises(DecryptionFailed):
            mbedtlsCipher.decrypt(cryptographyCipher.encrypt(b'x', key), cryptographyCipher.generateKey())


if __name__ == '__main__':
    unittest.main()
