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

from abc import ABC, abstractmethod

from ottrbox.Kernel import classForName, getLogger

logger = getLogger(__name__)

NONCE_SIZE = 12
TAG_SIZE = 16
KEY_SIZE = 32


class InvalidTagError(ValueError):
    """Raised by a backend when AES-GCM authentication fails"""
    pass


class CryptoBackend(ABC):
    """Abstract base class for cryptographic backends"""

    @abstractmethod
    def getName(self):
        """Get backend name"""
        pass

    @abstractmethod
    def randomBytes(self, length):
        """Return length bytes from a CSPRNG"""
        pass

    @abstractmethod
    def encryptAESGCM(self, key, plaintext, nonce=None, aad=None):
        """Encrypt with AES-GCM, returns (nonce, ciphertext+tag) tuple"""
        pass

    @abstractmethod
    def decryptAESGCM(self, key, nonce, ciphertextWithTag, aad=None):
        """Decrypt with AES-GCM, returns plaintext or raises InvalidTagError"""
        pass

    @abstractmethod
    def sha256(self, data):
        """SHA-256 digest of data, returns bytes"""
        pass

    def generateKey(self, length=KEY_SIZE):
        return self.randomBytes(length)


class CryptoInterface:
    """Main crypto interface with automatic backend selection"""

    BACKENDS = ['cryptography', 'mbedTLS']

    def __init__(self, preferredBackend=None):
        self.backend = self._initializeBackend(preferredBackend)

    def _initializeBackend(self, preferredBackend=None):
        """Initialize crypto backend with fallback priority"""
        if isinstance(preferredBackend, CryptoBackend):
            return preferredBackend

        backendList = list(self.BACKENDS)
        if preferredBackend in backendList:
            backendList.remove(preferredBackend)
            backendList.insert(0, preferredBackend)

        for backendName in backendList:
            try:
                backendModule = f'{backendName[0].upper()}{backendName[1:]}'
                backendClass = classForName(f'ottrbox.crypto.{backendModule}.{backendModule}Backend')
                return backendClass()
            except ImportError as e:
                logger.debug(f"Failed to load crypto backend {backendName}: {e}")
                continue

        raise RuntimeError("No crypto backend available - please install 'cryptography' or 'python-mbedtls'")

    def getBackendName(self):
        return self.backend.getName()

    def __getattr__(self, name):
        # Delegate any undefined method to backend
        return getattr(self.backend, name)
