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

from mbedtls import hashlib as mbedtls_hashlib
from mbedtls import cipher
from mbedtls.exceptions import TLSError

from ottrbox.Kernel import getLogger
from ottrbox.crypto import CryptoBackend, InvalidTagError, NONCE_SIZE, TAG_SIZE

logger = getLogger(__name__)


class MbedTLSBackend(CryptoBackend):
    """Python-mbedtls backend implementation"""

    def __init__(self):
        self.mbedtls_hashlib = mbedtls_hashlib
        self.cipher = cipher

    def getName(self):
        return "python-mbedtls"

    def randomBytes(self, length):
        return os.urandom(length)

    def encryptAESGCM(self, key, plaintext, nonce=None, aad=None):
        """Encrypt with AES-GCM, returns (nonce, ciphertext+tag) tuple"""
        if isinstance(plaintext, str):
            plaintext = plaintext.encode('utf-8')

        if nonce is None:
            nonce = os.urandom(NONCE_SIZE)

        adata = aad if aad is not None else b''
        aesCipher = self.cipher.AES.new(bytes(key), self.cipher.MODE_GCM, nonce, adata)

        # mbedtls returns (ciphertext, tag) separately
        ciphertext, tag = aesCipher.encrypt(bytes(plaintext))
        return (nonce, ciphertext + tag)

    def decryptAESGCM(self, key, nonce, ciphertextWithTag, aad=None):
        """Decrypt with AES-GCM, returns plaintext"""
        if len(ciphertextWithTag) < TAG_SIZE:
            raise InvalidTagError("Ciphertext too short for GCM tag")

        tag = bytes(ciphertextWithTag[-TAG_SIZE:])
        actualCiphertext = bytes(ciphertextWithTag[:-TAG_SIZE])

        adata = aad if aad is not None else b''
        aesCipher = self.cipher.AES.new(bytes(key), self.cipher.MODE_GCM, nonce, adata)

        try:
            return aesCipher.decrypt(actualCiphertext, tag)
        except TLSError as e:
            raise InvalidTagError('AES-GCM authentication failed') from e

    def sha256(self, data):
        return self.mbedtls_hashlib.sha256(bytes(data)).digest()
