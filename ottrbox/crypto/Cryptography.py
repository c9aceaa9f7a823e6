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

import os

from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.exceptions import InvalidTag

from ottrbox.Kernel import getLogger
from ottrbox.crypto import CryptoBackend, InvalidTagError, NONCE_SIZE

logger = getLogger(__name__)


class CryptographyBackend(CryptoBackend):
    """Cryptography library backend implementation"""

    def __init__(self):
        self.hashes = hashes
        self.AESGCM = AESGCM

    def getName(self):
        return "cryptography"

    def randomBytes(self, length):
        return os.urandom(length)

    def encryptAESGCM(self, key, plaintext, nonce=None, aad=None):
        """Encrypt with AES-GCM, returns (nonce, ciphertext+tag) tuple"""
        if isinstance(plaintext, str):
            plaintext = plaintext.encode('utf-8')

        if nonce is None:
            nonce = os.urandom(NONCE_SIZE)

        ciphertext = self.AESGCM(bytes(key)).encrypt(nonce, bytes(plaintext), aad)
        return (nonce, ciphertext)

    def decryptAESGCM(self, key, nonce, ciphertextWithTag, aad=None):
        """Decrypt with AES-GCM, returns plaintext"""
        try:
            return self.AESGCM(bytes(key)).decrypt(nonce, bytes(ciphertextWithTag), aad)
        except InvalidTag as e:
            raise InvalidTagError('AES-GCM authentication failed') from e

    def sha256(self, data):
        digest = self.hashes.Hash(self.hashes.SHA256())
        digest.update(bytes(data))
        return digest.finalize()
