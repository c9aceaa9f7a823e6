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

import requests

from ottrbox.Kernel import getLogger
from ottrbox.Settings import (
    APIError, UnauthenticatedError, UnauthorizedError, NotFoundError, SettingsGetter, REQUEST_TIMEOUT
)
from ottrbox.Utils import StallResilientAdapter

logger = getLogger(__name__)

REVERSE_SHARE_COOKIE = 'reverse_share_token'
UNEXPECTED_CHUNK_INDEX = 'unexpected_chunk_index'

# Statuses worth retrying at the chunk level
TRANSIENT_STATUS_CODES = (408, 425, 429)


class ChunkIndexMismatch(APIError):
    """Server expected a different chunk; carries the index it wants next"""

    def __init__(self, expectedChunkIndex, message=None, statusCode=400, response=None):
        super().__init__(
            message or f'Server expected chunk {expectedChunkIndex}', statusCode=statusCode, response=response
        )
        self.expectedChunkIndex = expectedChunkIndex


class TransientTransferFailure(APIError):
    """Network error, timeout or server-side failure; the request can be retried"""
    pass


class APIHandler:
    """Thin client over the OttrBox REST API (every path lives under /api).

    Bodies are JSON except chunk uploads and file downloads, which are raw
    bytes. Errors map onto the APIError hierarchy so the transfer engine can
    tell a resync (ChunkIndexMismatch) from a retry (TransientTransferFailure).
    """

    def __init__(self, serverURL=None, token=None, timeout=REQUEST_TIMEOUT, chunkSize=None):
        settingsGetter = SettingsGetter.getInstance()

        self.serverURL = (serverURL or settingsGetter.getServerURL()).rstrip('/')
        self.timeout = timeout

        self.session = requests.Session()
        adapter = StallResilientAdapter(chunkSize=chunkSize or settingsGetter.getChunkSize())
        self.session.mount('http://', adapter)
        self.session.mount('https://', adapter)

        self.setToken(token if token is not None else settingsGetter.getToken())

    def getServerURL(self):
        return self.serverURL

    def setToken(self, token):
        self.token = token
        if token:
            self.session.headers['Authorization'] = f'Bearer {token}'
        else:
            self.session.headers.pop('Authorization', None)

    def isAuthenticated(self):
        return bool(self.token)

    def setReverseShareToken(self, reverseShareToken):
        if reverseShareToken:
            self.session.cookies.set(REVERSE_SHARE_COOKIE, reverseShareToken)
        else:
            self.session.cookies.pop(REVERSE_SHARE_COOKIE, None)

    def getReverseShareToken(self):
        return self.session.cookies.get(REVERSE_SHARE_COOKIE)

    def close(self):
        self.session.close()

    def __enter__(self):
        return self

    def __exit__(self, excType, excValue, traceback):
        self.close()

    # ------------------------------------------------------------------
    # Generic verbs
    # ------------------------------------------------------------------

    def buildURL(self, endpoint):
        return f"{self.serverURL}/api/{endpoint.lstrip('/')}"

    def _request(self, method, endpoint, raw=False, **kwargs):
        url = self.buildURL(endpoint)
        kwargs.setdefault('timeout', self.timeout)

        try:
            response = self.session.request(method, url, **kwargs)
        except requests.exceptions.RequestException as e:
            logger.debug(f"[API] {method} {endpoint} failed: {e}")
            raise TransientTransferFailure(f'{method} {endpoint} failed: {e}') from e

        self._raiseForStatus(method, endpoint, response)

        if raw:
            return response.content

        if not response.content:
            return None

        try:
            return response.json()
        except ValueError as e:
            raise APIError(
                f'{method} {endpoint} returned invalid JSON', statusCode=response.status_code, response=response
            ) from e

    def _raiseForStatus(self, method, endpoint, response):
        status = response.status_code
        if status < 400:
            return

        try:
            payload = response.json()
        except ValueError:
            payload = {}

        if not isinstance(payload, dict):
            payload = {}

        message = payload.get('message') or payload.get('error') or response.reason or f'HTTP {status}'
        if isinstance(message, list):
            message = '; '.join(str(m) for m in message)

        logger.debug(f"[API] {method} {endpoint} -> {status}: {message}")

        if status == 400 and payload.get('error') == UNEXPECTED_CHUNK_INDEX:
            raise ChunkIndexMismatch(
                int(payload.get('expectedChunkIndex', 0)), message=str(message), response=response
            )
        if status == 401:
            raise UnauthenticatedError(str(message), statusCode=status, response=response)
        if status == 403:
            raise UnauthorizedError(str(message), statusCode=status, response=response)
        if status == 404:
            raise NotFoundError(str(message), statusCode=status, response=response)
        if status >= 500 or status in TRANSIENT_STATUS_CODES:
            raise TransientTransferFailure(str(message), statusCode=status, response=response)

        raise APIError(str(message), statusCode=status, response=response)

    def get(self, endpoint, params=None, **kwargs):
        return self._request('GET', endpoint, params=params, **kwargs)

    def post(self, endpoint, data=None, json=None, **kwargs):
        return self._request('POST', endpoint, data=data, json=json, **kwargs)

    def put(self, endpoint, data=None, json=None, **kwargs):
        return self._request('PUT', endpoint, data=data, json=json, **kwargs)

    def delete(self, endpoint, **kwargs):
        return self._request('DELETE', endpoint, **kwargs)

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    def getCurrentUser(self):
        return self.get('users/me')

    def setEncryptionKeyHash(self, keyHash):
        return self.put('users/me/encryption-key', json={'keyHash': keyHash})

    def verifyEncryptionKeyHash(self, keyHash):
        result = self.post('users/me/encryption-key/verify', json={'keyHash': keyHash}) or {}
        return bool(result.get('valid'))

    def removeEncryptionKeyHash(self):
        return self.delete('users/me/encryption-key')

    # ------------------------------------------------------------------
    # Shares
    # ------------------------------------------------------------------

    def createShare(self, share, isReverseShare=False):
        if not isReverseShare:
            self.setReverseShareToken(None)
        return self.post('shares', json=share)

    def isShareIdAvailable(self, shareId):
        return bool((self.get(f'shares/isShareIdAvailable/{shareId}') or {}).get('isAvailable'))

    def uploadChunk(self, shareId, chunk, fileId, name, chunkIndex, totalChunks):
        """Send one chunk. fileId is chosen by the caller before chunk 0 and names the file on the relay."""
        params = {'name': name, 'chunkIndex': chunkIndex, 'totalChunks': totalChunks}
        if fileId:
            params['id'] = fileId

        return self.post(
            f'shares/{shareId}/files',
            data=bytes(chunk),
            params=params,
            headers={'Content-Type': 'application/octet-stream'},
        )

    def completeShare(self, shareId):
        result = self.post(f'shares/{shareId}/complete')
        self.setReverseShareToken(None)
        return result

    def getShare(self, shareId):
        return self.get(f'shares/{shareId}')

    def getShareMetaData(self, shareId):
        return self.get(f'shares/{shareId}/metaData')

    def removeShare(self, shareId):
        return self.delete(f'shares/{shareId}')

    def downloadFile(self, shareId, fileId):
        return self._request('GET', f'shares/{shareId}/files/{fileId}', raw=True)

    # ------------------------------------------------------------------
    # Reverse shares
    # ------------------------------------------------------------------

    def createReverseShare(self, reverseShare):
        return self.post('reverseShares', json=reverseShare)

    def listReverseShares(self):
        return self.get('reverseShares') or []

    def getReverseShare(self, reverseShareToken):
        """Look up a reverse share by token and remember the token for the
        share submission that follows"""
        data = self.get(f'reverseShares/{reverseShareToken}')
        self.setReverseShareToken(reverseShareToken)
        return data

    def removeReverseShare(self, reverseShareId):
        return self.delete(f'reverseShares/{reverseShareId}')
