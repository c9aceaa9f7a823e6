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

import asyncio
import os

from enum import Enum
from typing import Callable, List, Optional
from urllib.parse import urlsplit

from ottrbox.E2EE import (
    MissingKeyError, SymmetricKey, WrappedKey, appendKeyFragment, extractKeyFromFragment, getDefaultCipher
)
from ottrbox.Kernel import OttrEvent, UIDGenerator, getLogger
from ottrbox.KeyStore import KeyManager, LocalKeyStore
from ottrbox.Settings import SettingsGetter
from ottrbox.Transfer import ChunkedUploader, FileUpload

logger = getLogger(__name__)

SHARE_PATH_PREFIXES = ('s', 'share')
REVERSE_SHARE_PATH_PREFIX = 'upload'


def _splitLink(link, prefixes):
    """Return (appURL, identifier, encodedKey) for '{appURL}/{prefix}/{identifier}#key=...'"""
    parts = urlsplit(link.strip())
    segments = [segment for segment in parts.path.split('/') if segment]

    for position in range(len(segments) - 1, 0, -1):
        if segments[position - 1] in prefixes:
            basePath = '/'.join(segments[:position - 1])
            appURL = f'{parts.scheme}://{parts.netloc}' + (f'/{basePath}' if basePath else '')
            encodedKey = extractKeyFromFragment(f'#{parts.fragment}') if parts.fragment else None
            return appURL, segments[position], encodedKey

    raise ValueError(f'Not a recognised link: {link}')


def parseShareLink(link):
    """'{appURL}/s/{shareId}#key=...' -> (appURL, shareId, encodedKey or None)"""
    return _splitLink(link, SHARE_PATH_PREFIXES)


def parseReverseShareLink(link):
    """'{appURL}/upload/{token}#key=...' -> (appURL, token, encodedKey or None)"""
    return _splitLink(link, (REVERSE_SHARE_PATH_PREFIX, ))


def buildShareLink(appURL, shareId, encodedKey=None):
    return appendKeyFragment(f"{appURL.rstrip('/')}/s/{shareId}", encodedKey)


def buildReverseShareLink(appURL, token, encodedKey=None):
    return appendKeyFragment(f"{appURL.rstrip('/')}/{REVERSE_SHARE_PATH_PREFIX}/{token}", encodedKey)


class SessionState(Enum):
    IDLE = 'idle'
    UPLOADING = 'uploading'
    COMPLETED = 'completed'
    FAILED = 'failed'
    CANCELLED = 'cancelled'


class ShareSession:
    """One share upload, from key resolution to the final link.

    Holds everything a single upload needs (key, share id, file states), so
    several sessions can run in the same process. onProgress is called as
    onProgress(session, fileUpload, progress).
    """

    def __init__(
        self,
        apiHandler,
        keyManager: KeyManager = None,
        uploader: ChunkedUploader = None,
        appURL: str = None,
        onProgress: Callable = None,
        uidGenerator: UIDGenerator = None,
    ):
        self.apiHandler = apiHandler
        self.keyManager = keyManager or KeyManager(apiHandler)
        self.uploader = uploader or ChunkedUploader(apiHandler)
        self.appURL = (appURL or SettingsGetter.getInstance().getAppURL()).rstrip('/')
        self.onProgress = onProgress
        self.uidGenerator = uidGenerator or UIDGenerator()
        self.cipher = self.uploader.cipher

        self.state = SessionState.IDLE
        self.shareId = None
        self.share = None
        self.reverseShare = None
        self.uploads: List[FileUpload] = []
        self.link = None

        self._key: Optional[SymmetricKey] = None
        self._encodedKey: Optional[str] = None

    @property
    def isE2EEncrypted(self):
        return self._key is not None

    def resolveEncryption(self, reverseShareToken=None, fragmentKey=None) -> Optional[SymmetricKey]:
        """Pick the key for this share.

        1. Submitting to an encrypted reverse share: the key from the link
           fragment, never one from the server.
        2. Authenticated owner: the local master key, created on first use.
        3. Anonymous, or a reverse share without encryption: no key.

        Raises:
            MissingKeyError: the reverse share is encrypted but the link has no key
            InvalidKeyFormat: the fragment key is malformed
        """
        if reverseShareToken:
            self.reverseShare = self.apiHandler.getReverseShare(reverseShareToken)

            if self.reverseShare.get('isE2EEncrypted'):
                if not fragmentKey:
                    raise MissingKeyError(
                        'This reverse share is end-to-end encrypted, use the full link including #key=...'
                    )
                self._key = self.cipher.importKey(fragmentKey)
                self._encodedKey = self.cipher.exportKey(self._key)
            else:
                self._key, self._encodedKey = None, None

        elif self.apiHandler.isAuthenticated():
            self._key = self.keyManager.ensureUserKey()
            self._encodedKey = self.cipher.exportKey(self._key)

        else:
            self._key, self._encodedKey = None, None

        logger.debug(f"[Session] Encryption {'enabled' if self._key else 'disabled'}")
        return self._key

    def _forwardProgress(self, upload, progress):
        if self.onProgress:
            self.onProgress(self, upload, progress)

    async def upload(
        self,
        files,
        name=None,
        description=None,
        expiration='never',
        recipients=(),
        reverseShareLink=None,
        shareId=None,
    ):
        """Create a share, upload files into it and return its link.

        files may mix paths and FileUpload objects. The link carries the key
        in its fragment only when the share is encrypted.
        """
        reverseShareToken = fragmentKey = None
        if reverseShareLink:
            _, reverseShareToken, fragmentKey = parseReverseShareLink(reverseShareLink)

        self.uploads = [f if isinstance(f, FileUpload) else FileUpload.fromPath(f) for f in files]
        if not self.uploads:
            raise ValueError('Nothing to upload')

        self.resolveEncryption(reverseShareToken=reverseShareToken, fragmentKey=fragmentKey)

        self.shareId = shareId or self.uidGenerator.generate()
        shareData = {
            'id': self.shareId,
            'name': name,
            'description': description,
            'expiration': expiration,
            'recipients': list(recipients),
            'security': {},
            'isE2EEncrypted': self.isE2EEncrypted,
        }

        self.state = SessionState.UPLOADING
        try:
            self.share = self.apiHandler.createShare(shareData, isReverseShare=bool(reverseShareToken))
            self.shareId = (self.share or {}).get('id', self.shareId)

            await self.uploader.uploadAll(self.shareId, self.uploads, key=self._key, onProgress=self._forwardProgress)

            self.share = self.apiHandler.completeShare(self.shareId) or self.share
        except asyncio.CancelledError:
            self.state = SessionState.CANCELLED
            raise
        except Exception:
            self.state = SessionState.FAILED
            raise

        self.state = SessionState.COMPLETED
        self.link = buildShareLink(self.appURL, self.shareId, self._encodedKey)

        logger.info(f"[Session] Share {self.shareId} completed with {len(self.uploads)} file(s)")
        OttrEvent.shareLinkCreate.trigger(session=self, link=self.link)
        return self.link

    def cancel(self):
        self.uploader.cancel()


class ReverseShareManager:
    """Owner side of reverse shares.

    Each encrypted reverse share gets its own key K_rs, stored on the server
    only wrapped under the owner's master key. Unwrapped keys are cached per
    reverse share id for the lifetime of this manager.
    """

    def __init__(self, apiHandler, keyManager: KeyManager = None, appURL: str = None):
        self.apiHandler = apiHandler
        self.keyManager = keyManager or KeyManager(apiHandler)
        self.cipher = self.keyManager.cipher
        self.appURL = (appURL or SettingsGetter.getInstance().getAppURL()).rstrip('/')
        self._keyCache = {}

    def create(
        self,
        shareExpiration='never',
        maxShareSize=None,
        maxUseCount=1,
        name=None,
        sendEmailNotification=False,
        simplified=False,
        publicAccess=True,
        encrypt=True,
    ):
        """Create a reverse share and return the server record plus 'link'.

        Encryption needs a local master key; without one the reverse share is
        created unencrypted.
        """
        if not 1 <= int(maxUseCount) <= 1000:
            raise ValueError('maxUseCount must be between 1 and 1000')

        payload = {
            'name': name,
            'shareExpiration': shareExpiration,
            'maxShareSize': str(maxShareSize) if maxShareSize is not None else None,
            'maxUseCount': int(maxUseCount),
            'sendEmailNotification': sendEmailNotification,
            'simplified': simplified,
            'publicAccess': publicAccess,
        }

        reverseShareKey = None
        masterKey = self.keyManager.getLocalKey() if encrypt else None
        if masterKey is not None:
            reverseShareKey = self.cipher.generateKey()
            payload['encryptedReverseShareKey'] = self.cipher.wrap(reverseShareKey, masterKey).encode()
        elif encrypt:
            logger.warning("[E2EE] No local master key, creating the reverse share without encryption")

        result = dict(self.apiHandler.createReverseShare(payload) or {})

        encodedKey = self.cipher.exportKey(reverseShareKey) if reverseShareKey else None
        if reverseShareKey is not None and result.get('id'):
            self._keyCache[result['id']] = reverseShareKey

        baseLink = result.get('link') or buildReverseShareLink(self.appURL, result['token'])
        result['link'] = appendKeyFragment(baseLink, encodedKey)
        result['isE2EEncrypted'] = reverseShareKey is not None

        OttrEvent.reverseShareCreate.trigger(reverseShare=result)
        return result

    def list(self):
        return self.apiHandler.listReverseShares()

    def unwrapKey(self, reverseShare) -> Optional[SymmetricKey]:
        """K_rs for a reverse share, or None when it is not encrypted.

        Raises:
            MissingKeyError: no local master key
            DecryptionFailed: the master key did not wrap this K_rs
        """
        wrapped = reverseShare.get('encryptedReverseShareKey')
        if not wrapped:
            return None

        reverseShareId = reverseShare.get('id')
        if reverseShareId in self._keyCache:
            return self._keyCache[reverseShareId]

        masterKey = self.keyManager.getLocalKey()
        if masterKey is None:
            raise MissingKeyError('Import your master key to open encrypted reverse shares')

        key = self.cipher.unwrap(WrappedKey.decode(wrapped), masterKey)
        if reverseShareId:
            self._keyCache[reverseShareId] = key
        return key

    def _encodedKeyFor(self, reverseShare):
        key = self.unwrapKey(reverseShare)
        return self.cipher.exportKey(key) if key else None

    def getLink(self, reverseShare):
        return buildReverseShareLink(self.appURL, reverseShare['token'], self._encodedKeyFor(reverseShare))

    def getShareLink(self, shareId, reverseShare):
        """Link to a share that was submitted through reverseShare"""
        return buildShareLink(self.appURL, shareId, self._encodedKeyFor(reverseShare))

    def remove(self, reverseShareId):
        self.apiHandler.removeReverseShare(reverseShareId)
        self._keyCache.pop(reverseShareId, None)


class ShareDownloader:
    """Fetches share files and decrypts them locally.

    Encrypted shares are never assembled server side, so every file is fetched
    and decrypted on its own. Nothing is written to disk unless decryption
    succeeded.
    """

    def __init__(self, apiHandler, keyStore: LocalKeyStore = None, cipher=None):
        self.apiHandler = apiHandler
        self.keyStore = keyStore or LocalKeyStore()
        self.cipher = cipher or getDefaultCipher()

    def getShare(self, shareId):
        return self.apiHandler.getShare(shareId)

    def resolveKey(self, share, fragmentKey=None) -> Optional[SymmetricKey]:
        """Fragment key first, then a stored per-share key, then the master key."""
        if not share.get('isE2EEncrypted'):
            return None

        encoded = fragmentKey or self.keyStore.getShareKey(share['id']) or self.keyStore.loadLocal()
        if not encoded:
            raise MissingKeyError('This share is end-to-end encrypted, use the full link including #key=...')
        return self.cipher.importKey(encoded)

    def fetchFile(self, shareId, fileId, key: Optional[SymmetricKey] = None) -> bytes:
        data = self.apiHandler.downloadFile(shareId, fileId)
        if key is None:
            return data
        return self.cipher.decrypt(data, key)

    def downloadFile(self, shareId, fileInfo, outputDir, key: Optional[SymmetricKey] = None):
        data = self.fetchFile(shareId, fileInfo['id'], key)

        fileName = os.path.basename(fileInfo.get('name') or fileInfo['id']) or fileInfo['id']
        outputPath = os.path.join(outputDir, fileName)
        os.makedirs(outputDir, exist_ok=True)

        with open(outputPath, 'wb') as f:
            f.write(data)

        logger.debug(f"[Download] {fileName}: {len(data)} bytes written")
        return outputPath

    def downloadAll(self, link, outputDir='.'):
        """Download every file of the share behind link; returns written paths."""
        _, shareId, fragmentKey = parseShareLink(link)
        share = self.getShare(shareId)
        key = self.resolveKey(share, fragmentKey)

        return [self.downloadFile(shareId, fileInfo, outputDir, key) for fileInfo in share.get('files') or []]
