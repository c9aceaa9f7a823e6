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

import json
import os
import tempfile

from dataclasses import dataclass
from typing import Optional

from ottrbox.E2EE import (
    E2EEError, FingerprintMismatch, MissingKeyError, SymmetricKey, getDefaultCipher, isValidFingerprint
)
from ottrbox.Kernel import StorageLocator, OttrEvent, getLogger
from ottrbox.Settings import APIError
from ottrbox.Utils import maskKey

logger = getLogger(__name__)


class KeyStoreError(E2EEError):
    """The local key file exists but cannot be parsed"""
    pass


class KeyRevocationError(E2EEError):
    """Revocation stopped half way. The flags tell which side is already gone."""

    def __init__(self, message, serverRemoved, localRemoved, cause=None):
        super().__init__(message)
        self.serverRemoved = serverRemoved
        self.localRemoved = localRemoved
        self.cause = cause


class LocalKeyStore:
    """JSON file holding the user's master key and legacy per-share keys.

    Every key sits in its own slot: 'ottrbox_e2e_user_key' for the master key
    and 'ottrbox_e2e_key_<shareId>' for per-share keys. A missing file or
    slot is a normal state. Write failures raise OSError.
    """

    FILE_NAME = 'keys.json'
    USER_KEY_SLOT = 'ottrbox_e2e_user_key'
    SHARE_KEY_PREFIX = 'ottrbox_e2e_key_'

    def __init__(self, path=None):
        self._path = path

    def getPath(self):
        if self._path:
            return self._path

        storageLocator = StorageLocator.getInstance()
        path = storageLocator.findStorage(self.FILE_NAME)
        if not os.path.exists(path):
            path = os.path.join(storageLocator.ensureStorageDir(), self.FILE_NAME)

        self._path = path
        return path

    def _read(self):
        path = self.getPath()
        if not os.path.exists(path):
            return {}

        try:
            with open(path, 'r', encoding='utf-8') as f:
                data = json.load(f)
        except json.JSONDecodeError as e:
            raise KeyStoreError(f'Key store {path} is corrupted: {e}') from e

        if not isinstance(data, dict):
            raise KeyStoreError(f'Key store {path} is not a JSON object')
        return data

    def _write(self, data):
        path = self.getPath()
        directory = os.path.dirname(path) or '.'
        os.makedirs(directory, exist_ok=True)

        fd, tmpPath = tempfile.mkstemp(prefix='.keys-', dir=directory)
        try:
            with os.fdopen(fd, 'w', encoding='utf-8') as f:
                json.dump(data, f, indent=2)
            os.chmod(tmpPath, 0o600)
            os.replace(tmpPath, path)
        except OSError:
            if os.path.exists(tmpPath):
                os.remove(tmpPath)
            raise

    def _set(self, slot, value):
        data = self._read()
        if value is None:
            if slot not in data:
                return
            del data[slot]
        else:
            data[slot] = value
        self._write(data)

    # Master key

    def storeLocal(self, encoded: str):
        self._set(self.USER_KEY_SLOT, encoded)

    def loadLocal(self) -> Optional[str]:
        return self._read().get(self.USER_KEY_SLOT) or None

    def clearLocal(self):
        self._set(self.USER_KEY_SLOT, None)

    # Per-share keys, kept for shares created before master keys existed

    def storeShareKey(self, shareId: str, encoded: str):
        self._set(f'{self.SHARE_KEY_PREFIX}{shareId}', encoded)

    def getShareKey(self, shareId: str) -> Optional[str]:
        return self._read().get(f'{self.SHARE_KEY_PREFIX}{shareId}') or None

    def removeShareKey(self, shareId: str):
        self._set(f'{self.SHARE_KEY_PREFIX}{shareId}', None)


@dataclass
class KeyStatus:
    hasServerKey: Optional[bool]
    hasLocalKey: bool
    maskedKey: Optional[str] = None

    @property
    def needsImport(self):
        """Server knows a key this device does not have"""
        return bool(self.hasServerKey) and not self.hasLocalKey


class KeyManager:
    """Ties the local key slot to the fingerprint registered on the server.

    The server only ever receives fingerprints. Mutations are not locked:
    callers run one generate/import/revoke at a time.
    """

    def __init__(self, apiHandler, keyStore: LocalKeyStore = None, cipher=None):
        self.apiHandler = apiHandler
        self.keyStore = keyStore or LocalKeyStore()
        self.cipher = cipher or getDefaultCipher()

    # Server side

    def registerFingerprint(self, keyFingerprint: str):
        if not isValidFingerprint(keyFingerprint):
            raise ValueError(f'Invalid key fingerprint: {keyFingerprint!r}')
        self.apiHandler.setEncryptionKeyHash(keyFingerprint)

    def verifyFingerprint(self, keyFingerprint: str) -> bool:
        if not isValidFingerprint(keyFingerprint):
            return False
        return self.apiHandler.verifyEncryptionKeyHash(keyFingerprint)

    # Local side

    def getLocalKey(self) -> Optional[SymmetricKey]:
        encoded = self.keyStore.loadLocal()
        if not encoded:
            return None
        return self.cipher.importKey(encoded)

    def exportKey(self) -> Optional[str]:
        return self.keyStore.loadLocal()

    def maskedKey(self) -> Optional[str]:
        encoded = self.keyStore.loadLocal()
        return maskKey(encoded) if encoded else None

    def status(self) -> KeyStatus:
        hasServerKey = None
        if self.apiHandler.isAuthenticated():
            user = self.apiHandler.getCurrentUser() or {}
            hasServerKey = bool(user.get('hasEncryptionKey'))

        return KeyStatus(hasServerKey=hasServerKey, hasLocalKey=self.keyStore.loadLocal() is not None,
                         maskedKey=self.maskedKey())

    # Lifecycle

    def generate(self) -> str:
        """Create a master key, register its fingerprint, then keep it locally.

        Replacing an existing key orphans every share encrypted under it.
        """
        key = self.cipher.generateKey()
        encoded = self.cipher.exportKey(key)
        keyFingerprint = self.cipher.fingerprint(key)

        self.registerFingerprint(keyFingerprint)
        self.keyStore.storeLocal(encoded)

        logger.info(f"[E2EE] Generated master key {keyFingerprint[:8]}")
        OttrEvent.userKeyCreate.trigger(fingerprint=keyFingerprint)
        return encoded

    def importKey(self, encoded: str) -> SymmetricKey:
        """Onboard a device with an existing master key.

        Raises:
            InvalidKeyFormat: encoded is not a valid key
            FingerprintMismatch: the server holds a different fingerprint
        """
        encoded = (encoded or '').strip()
        key = self.cipher.importKey(encoded)
        keyFingerprint = self.cipher.fingerprint(key)

        if not self.verifyFingerprint(keyFingerprint):
            raise FingerprintMismatch('This key does not match the one registered on the server')

        self.keyStore.storeLocal(self.cipher.exportKey(key))
        logger.info(f"[E2EE] Imported master key {keyFingerprint[:8]}")
        return key

    def ensureUserKey(self) -> SymmetricKey:
        """Local master key, generating and registering one on first use.

        Raises:
            MissingKeyError: the account already has a key that is not on this device
        """
        key = self.getLocalKey()
        if key is not None:
            return key

        if self.status().needsImport:
            raise MissingKeyError(
                "Your account already has a master key. Run 'ottrbox key import' on this device first"
            )

        return self.cipher.importKey(self.generate())

    def revoke(self):
        """Delete the server fingerprint, then the local key.

        Raises:
            KeyRevocationError: either step failed
        """
        try:
            self.apiHandler.removeEncryptionKeyHash()
        except APIError as e:
            raise KeyRevocationError(
                f'Could not remove the key from the server: {e}', serverRemoved=False, localRemoved=False, cause=e
            ) from e

        try:
            self.keyStore.clearLocal()
        except (OSError, KeyStoreError) as e:
            raise KeyRevocationError(
                f'Key removed from the server but not from this device: {e}',
                serverRemoved=True,
                localRemoved=False,
                cause=e
            ) from e

        logger.info("[E2EE] Master key revoked")
        OttrEvent.userKeyDelete.trigger()
