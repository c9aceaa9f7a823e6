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
import re
import threading
import uuid

from http import HTTPStatus
from http.cookies import SimpleCookie, CookieError
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from urllib.parse import parse_qs, urlparse

from ottrbox.API import REVERSE_SHARE_COOKIE, UNEXPECTED_CHUNK_INDEX
from ottrbox.E2EE import ENCODED_KEY_PATTERN, fingerprintsMatch, isValidFingerprint
from ottrbox.Kernel import UIDGenerator, getLogger
from ottrbox.Utils import flushPrint

logger = getLogger(__name__)

SHARE_ID_PATTERN = re.compile(r'^[a-zA-Z0-9_-]{3,50}$')
FILE_ID_PATTERN = re.compile(r'^[a-zA-Z0-9_-]{1,64}$')
MAX_USE_COUNT = 1000


class RelayError(Exception):
    """Request failure carrying the HTTP status and the JSON body to send"""

    def __init__(self, status, message, **extra):
        super().__init__(message)
        self.status = status
        self.body = {'statusCode': int(status), 'message': message, **extra}


class ShareStore:
    """In-memory state of the relay: users, shares, upload sessions and
    reverse shares. Stored file bytes are ciphertext whenever the share is
    end-to-end encrypted; the store never sees a key.
    """

    def __init__(self, users=None, appURL='http://127.0.0.1', allowAnonymousShares=True):
        self.lock = threading.Lock()
        self.appURL = appURL.rstrip('/')
        self.allowAnonymousShares = allowAnonymousShares

        # token -> user
        self.users = {
            token: {'id': username, 'username': username, 'encryptionKeyHash': None}
            for token, username in (users or {}).items()
        }
        self.shares = {}
        self.reverseShares = {}

    # Users

    def authenticate(self, token):
        if token is None:
            return None
        user = self.users.get(token)
        if user is None:
            raise RelayError(HTTPStatus.UNAUTHORIZED, 'Invalid token')
        return user

    def _requireUser(self, user):
        if user is None:
            raise RelayError(HTTPStatus.UNAUTHORIZED, 'Unauthorized')
        return user

    def describeUser(self, user):
        user = self._requireUser(user)
        return {'id': user['id'], 'username': user['username'], 'hasEncryptionKey': bool(user['encryptionKeyHash'])}

    def _checkKeyHash(self, keyHash):
        if not isValidFingerprint(keyHash):
            raise RelayError(HTTPStatus.BAD_REQUEST, 'keyHash must be a 64 character lowercase hex SHA-256')

    def setEncryptionKeyHash(self, user, keyHash):
        user = self._requireUser(user)
        self._checkKeyHash(keyHash)
        with self.lock:
            user['encryptionKeyHash'] = keyHash
        return self.describeUser(user)

    def verifyEncryptionKeyHash(self, user, keyHash):
        user = self._requireUser(user)
        self._checkKeyHash(keyHash)
        stored = user['encryptionKeyHash']
        return {'valid': bool(stored) and fingerprintsMatch(stored, keyHash)}

    def removeEncryptionKeyHash(self, user):
        user = self._requireUser(user)
        with self.lock:
            user['encryptionKeyHash'] = None

    # Shares

    def _getShare(self, shareId, completed=None):
        share = self.shares.get(shareId)
        if share is None or (completed is not None and share['completed'] != completed):
            raise RelayError(HTTPStatus.NOT_FOUND, 'Share not found')
        return share

    def _checkOwner(self, share, user, reverseShareToken=None):
        if share['creatorId'] is not None:
            if user is None or user['id'] != share['creatorId']:
                raise RelayError(HTTPStatus.FORBIDDEN, 'You are not allowed to access this share')
        elif share['reverseShareToken'] is not None and share['reverseShareToken'] != reverseShareToken:
            raise RelayError(HTTPStatus.FORBIDDEN, 'You are not allowed to access this share')

    def describeShare(self, share):
        files = [
            {'id': f['id'], 'name': f['name'], 'size': len(f['data'])} for f in share['files'].values()
            if f['nextChunkIndex'] >= f['totalChunks']
        ]
        return {
            'id': share['id'],
            'name': share['name'],
            'description': share['description'],
            'expiration': share['expiration'],
            'files': files,
            'size': sum(f['size'] for f in files),
            'hasPassword': False,
            'isE2EEncrypted': share['isE2EEncrypted'],
        }

    def isShareIdAvailable(self, shareId):
        return {'isAvailable': shareId not in self.shares}

    def createShare(self, user, body, reverseShareToken=None):
        shareId = body.get('id')
        if not isinstance(shareId, str) or not SHARE_ID_PATTERN.match(shareId):
            raise RelayError(HTTPStatus.BAD_REQUEST, 'Invalid share id')

        isE2EEncrypted = bool(body.get('isE2EEncrypted'))

        with self.lock:
            reverseShare = None
            if reverseShareToken:
                reverseShare = self._findReverseShareByToken(reverseShareToken)
                if reverseShare['remainingUses'] <= 0:
                    raise RelayError(HTTPStatus.FORBIDDEN, 'Reverse share has no remaining uses')
                if reverseShare['encryptedReverseShareKey'] and not isE2EEncrypted:
                    raise RelayError(HTTPStatus.BAD_REQUEST, 'This reverse share only accepts encrypted shares')
            elif user is None and not self.allowAnonymousShares:
                raise RelayError(HTTPStatus.UNAUTHORIZED, 'Unauthorized')

            if shareId in self.shares:
                raise RelayError(HTTPStatus.BAD_REQUEST, 'Share id already in use')

            share = {
                'id': shareId,
                'name': body.get('name'),
                'description': body.get('description'),
                'expiration': body.get('expiration') or 'never',
                'isE2EEncrypted': isE2EEncrypted,
                'creatorId': None if reverseShare else (user['id'] if user else None),
                'reverseShareToken': reverseShareToken if reverseShare else None,
                'reverseShareId': reverseShare['id'] if reverseShare else None,
                'files': {},
                'completed': False,
            }
            self.shares[shareId] = share

            if reverseShare:
                reverseShare['remainingUses'] -= 1

        logger.debug(f"[Relay] Share {shareId} created (E2E={isE2EEncrypted})")
        return self.describeShare(share)

    def uploadChunk(self, user, shareId, query, data, reverseShareToken=None):
        try:
            chunkIndex = int(query['chunkIndex'])
            totalChunks = int(query['totalChunks'])
            name = query['name']
        except (KeyError, ValueError):
            raise RelayError(HTTPStatus.BAD_REQUEST, 'name, chunkIndex and totalChunks are required')

        if totalChunks < 1 or chunkIndex < 0:
            raise RelayError(HTTPStatus.BAD_REQUEST, 'Invalid chunk parameters')

        with self.lock:
            share = self._getShare(shareId)
            self._checkOwner(share, user, reverseShareToken)
            if share['completed']:
                raise RelayError(HTTPStatus.BAD_REQUEST, 'Share is already completed')

            fileId = query.get('id')
            if fileId and not FILE_ID_PATTERN.match(fileId):
                raise RelayError(HTTPStatus.BAD_REQUEST, 'Invalid file id')
            upload = share['files'].get(fileId) if fileId else None
            expected = upload['nextChunkIndex'] if upload is not None else 0

            if chunkIndex != expected:
                raise RelayError(
                    HTTPStatus.BAD_REQUEST,
                    'Unexpected chunk received',
                    error=UNEXPECTED_CHUNK_INDEX,
                    expectedChunkIndex=expected
                )

            if upload is not None and upload['totalChunks'] != totalChunks:
                raise RelayError(HTTPStatus.BAD_REQUEST, 'totalChunks changed during upload')

            self._checkShareSize(share, len(data))

            if upload is None:
                fileId = fileId or str(uuid.uuid4())
                upload = {'id': fileId, 'name': name, 'data': bytearray(), 'nextChunkIndex': 0,
                          'totalChunks': totalChunks}
                share['files'][fileId] = upload

            upload['data'].extend(data)
            upload['nextChunkIndex'] += 1

        return {'id': upload['id'], 'name': upload['name']}

    def _checkShareSize(self, share, incoming):
        if not share['reverseShareId']:
            return

        reverseShare = self.reverseShares[share['reverseShareId']]
        maxShareSize = reverseShare['maxShareSize']
        if maxShareSize is None:
            return

        stored = sum(len(f['data']) for f in share['files'].values())
        if stored + incoming > int(maxShareSize):
            raise RelayError(HTTPStatus.BAD_REQUEST, 'Max share size exceeded')

    def completeShare(self, user, shareId, reverseShareToken=None):
        with self.lock:
            share = self._getShare(shareId, completed=False)
            self._checkOwner(share, user, reverseShareToken)

            if not share['files']:
                raise RelayError(HTTPStatus.BAD_REQUEST, 'You need at least one file')
            unfinished = [f['name'] for f in share['files'].values() if f['nextChunkIndex'] < f['totalChunks']]
            if unfinished:
                raise RelayError(HTTPStatus.BAD_REQUEST, f"Files still uploading: {', '.join(unfinished)}")

            share['completed'] = True
            if share['reverseShareId']:
                self.reverseShares[share['reverseShareId']]['shareIds'].append(shareId)

        logger.debug(f"[Relay] Share {shareId} completed")
        return self.describeShare(share)

    def revertComplete(self, user, shareId):
        with self.lock:
            share = self._getShare(shareId, completed=True)
            self._checkOwner(share, self._requireUser(user))
            share['completed'] = False
        return self.describeShare(share)

    def getShare(self, shareId):
        return self.describeShare(self._getShare(shareId, completed=True))

    def getShareMetaData(self, shareId):
        share = self._getShare(shareId, completed=True)
        # Ciphertext cannot be zipped usefully, clients fetch files one by one.
        return {'id': share['id'], 'isZipReady': False, 'isE2EEncrypted': share['isE2EEncrypted']}

    def listShares(self, user):
        user = self._requireUser(user)
        return [self.describeShare(s) for s in self.shares.values() if s['creatorId'] == user['id']]

    def getFile(self, shareId, fileId):
        share = self._getShare(shareId, completed=True)
        upload = share['files'].get(fileId)
        if upload is None:
            raise RelayError(HTTPStatus.NOT_FOUND, 'File not found')
        return bytes(upload['data'])

    def removeFile(self, user, shareId, fileId):
        with self.lock:
            share = self._getShare(shareId)
            self._checkOwner(share, self._requireUser(user))
            if share['files'].pop(fileId, None) is None:
                raise RelayError(HTTPStatus.NOT_FOUND, 'File not found')

    def removeShare(self, user, shareId):
        with self.lock:
            share = self._getShare(shareId)
            self._checkOwner(share, self._requireUser(user))
            del self.shares[shareId]

    # Reverse shares

    def _findReverseShareByToken(self, token):
        for reverseShare in self.reverseShares.values():
            if reverseShare['token'] == token:
                return reverseShare
        raise RelayError(HTTPStatus.NOT_FOUND, 'Reverse share not found')

    def createReverseShare(self, user, body):
        user = self._requireUser(user)

        try:
            maxUseCount = int(body.get('maxUseCount', 1))
        except (TypeError, ValueError):
            raise RelayError(HTTPStatus.BAD_REQUEST, 'maxUseCount must be a number')
        if not 1 <= maxUseCount <= MAX_USE_COUNT:
            raise RelayError(HTTPStatus.BAD_REQUEST, f'maxUseCount must be between 1 and {MAX_USE_COUNT}')

        maxShareSize = body.get('maxShareSize')
        if maxShareSize is not None and not str(maxShareSize).isdigit():
            raise RelayError(HTTPStatus.BAD_REQUEST, 'maxShareSize must be a number of bytes')

        wrappedKey = body.get('encryptedReverseShareKey') or None
        if wrappedKey is not None and (not isinstance(wrappedKey, str) or not ENCODED_KEY_PATTERN.match(wrappedKey)):
            raise RelayError(HTTPStatus.BAD_REQUEST, 'encryptedReverseShareKey must be base64url')

        reverseShare = {
            'id': str(uuid.uuid4()),
            'token': UIDGenerator(length=16).generate(),
            'name': body.get('name'),
            'shareExpiration': body.get('shareExpiration') or 'never',
            'maxShareSize': str(maxShareSize) if maxShareSize is not None else None,
            'remainingUses': maxUseCount,
            'simplified': bool(body.get('simplified')),
            'publicAccess': bool(body.get('publicAccess', True)),
            'encryptedReverseShareKey': wrappedKey,
            'creatorId': user['id'],
            'shareIds': [],
        }

        with self.lock:
            self.reverseShares[reverseShare['id']] = reverseShare

        return {
            'id': reverseShare['id'],
            'token': reverseShare['token'],
            'link': f"{self.appURL}/upload/{reverseShare['token']}",
        }

    def listReverseShares(self, user):
        user = self._requireUser(user)
        result = []
        for reverseShare in self.reverseShares.values():
            if reverseShare['creatorId'] != user['id']:
                continue
            result.append({
                'id': reverseShare['id'],
                'name': reverseShare['name'],
                'token': reverseShare['token'],
                'maxShareSize': reverseShare['maxShareSize'],
                'shareExpiration': reverseShare['shareExpiration'],
                'remainingUses': reverseShare['remainingUses'],
                'publicAccess': reverseShare['publicAccess'],
                'encryptedReverseShareKey': reverseShare['encryptedReverseShareKey'],
                'shares': [self.describeShare(self.shares[i]) for i in reverseShare['shareIds'] if i in self.shares],
            })
        return result

    def getReverseShare(self, token):
        reverseShare = self._findReverseShareByToken(token)
        if reverseShare['remainingUses'] <= 0:
            raise RelayError(HTTPStatus.NOT_FOUND, 'Reverse share not found')

        return {
            'id': reverseShare['id'],
            'name': reverseShare['name'],
            'token': reverseShare['token'],
            'maxShareSize': reverseShare['maxShareSize'],
            'shareExpiration': reverseShare['shareExpiration'],
            'simplified': reverseShare['simplified'],
            'isE2EEncrypted': bool(reverseShare['encryptedReverseShareKey']),
        }

    def removeReverseShare(self, user, reverseShareId):
        user = self._requireUser(user)
        with self.lock:
            reverseShare = self.reverseShares.get(reverseShareId)
            if reverseShare is None:
                raise RelayError(HTTPStatus.NOT_FOUND, 'Reverse share not found')
            if reverseShare['creatorId'] != user['id']:
                raise RelayError(HTTPStatus.FORBIDDEN, 'You are not allowed to delete this reverse share')
            del self.reverseShares[reverseShareId]


class RelayHandler(BaseHTTPRequestHandler):

    protocol_version = 'HTTP/1.1'

    def __init__(self, *args, **kwargs):
        # (method, pattern) -> handler(match, query, body)
        self.routes = [
            ('GET', r'/api/users/me', self._handleGetCurrentUser),
            ('PUT', r'/api/users/me/encryption-key', self._handleSetEncryptionKey),
            ('POST', r'/api/users/me/encryption-key/verify', self._handleVerifyEncryptionKey),
            ('DELETE', r'/api/users/me/encryption-key', self._handleRemoveEncryptionKey),
            ('GET', r'/api/shares', self._handleListShares),
            ('POST', r'/api/shares', self._handleCreateShare),
            ('GET', r'/api/shares/isShareIdAvailable/(?P<shareId>[^/]+)', self._handleIsShareIdAvailable),
            ('POST', r'/api/shares/(?P<shareId>[^/]+)/files', self._handleUploadChunk),
            ('POST', r'/api/shares/(?P<shareId>[^/]+)/complete', self._handleCompleteShare),
            ('DELETE', r'/api/shares/(?P<shareId>[^/]+)/complete', self._handleRevertComplete),
            ('GET', r'/api/shares/(?P<shareId>[^/]+)/metaData', self._handleGetShareMetaData),
            ('GET', r'/api/shares/(?P<shareId>[^/]+)/files/(?P<fileId>[^/]+)', self._handleGetFile),
            ('DELETE', r'/api/shares/(?P<shareId>[^/]+)/files/(?P<fileId>[^/]+)', self._handleRemoveFile),
            ('GET', r'/api/shares/(?P<shareId>[^/]+)', self._handleGetShare),
            ('DELETE', r'/api/shares/(?P<shareId>[^/]+)', self._handleRemoveShare),
            ('GET', r'/api/reverseShares', self._handleListReverseShares),
            ('POST', r'/api/reverseShares', self._handleCreateReverseShare),
            ('GET', r'/api/reverseShares/(?P<token>[^/]+)', self._handleGetReverseShare),
            ('DELETE', r'/api/reverseShares/(?P<reverseShareId>[^/]+)', self._handleRemoveReverseShare),
        ]
        super().__init__(*args, **kwargs)

    @property
    def store(self) -> ShareStore:
        return self.server.store

    def _getToken(self):
        authHeader = self.headers.get('Authorization')
        if authHeader and authHeader.startswith('Bearer '):
            return authHeader[len('Bearer '):].strip()
        return None

    def _getReverseShareToken(self):
        cookieHeader = self.headers.get('Cookie')
        if not cookieHeader:
            return None
        try:
            cookie = SimpleCookie(cookieHeader)
        except CookieError:
            return None
        morsel = cookie.get(REVERSE_SHARE_COOKIE)
        return morsel.value if morsel else None

    def _readBody(self):
        length = int(self.headers.get('Content-Length', '0') or 0)
        return self.rfile.read(length) if length else b''

    def _sendBytes(self, payload: bytes, ctype: str = "application/octet-stream", status=HTTPStatus.OK):
        self.send_response(status)
        self.send_header("Content-Type", ctype)
        self.send_header("Content-Length", str(len(payload)))
        self.end_headers()
        self.wfile.write(payload)

    def _sendJSON(self, data, status=HTTPStatus.OK):
        payload = b'' if data is None else json.dumps(data).encode()
        self._sendBytes(payload, "application/json; charset=utf-8", status)

    def _dispatch(self, method):
        parsedURL = urlparse(self.path)
        path = parsedURL.path.rstrip('/') or '/'
        query = {k: v[-1] for k, v in parse_qs(parsedURL.query).items()}
        rawBody = self._readBody()

        try:
            for routeMethod, pattern, handler in self.routes:
                if routeMethod != method:
                    continue
                match = re.fullmatch(pattern, path)
                if match:
                    self.user = self.store.authenticate(self._getToken())
                    handler(match, query, rawBody)
                    return
            raise RelayError(HTTPStatus.NOT_FOUND, f'Cannot {method} {path}')
        except RelayError as e:
            self._sendJSON(e.body, e.status)
        except Exception as e:
            logger.exception(e)
            self._sendJSON({'statusCode': 500, 'message': str(e)}, HTTPStatus.INTERNAL_SERVER_ERROR)

    def _json(self, rawBody):
        if not rawBody:
            return {}
        try:
            data = json.loads(rawBody)
        except ValueError:
            raise RelayError(HTTPStatus.BAD_REQUEST, 'Body must be JSON')
        if not isinstance(data, dict):
            raise RelayError(HTTPStatus.BAD_REQUEST, 'Body must be a JSON object')
        return data

    def do_GET(self):
        self._dispatch('GET')

    def do_POST(self):
        self._dispatch('POST')

    def do_PUT(self):
        self._dispatch('PUT')

    def do_DELETE(self):
        self._dispatch('DELETE')

    def log_message(self, format, *args):
        logger.debug(f"[Relay] {self.address_string()} {format % args}")

    # Users

    def _handleGetCurrentUser(self, match, query, rawBody):
        self._sendJSON(self.store.describeUser(self.user))

    def _handleSetEncryptionKey(self, match, query, rawBody):
        self._sendJSON(self.store.setEncryptionKeyHash(self.user, self._json(rawBody).get('keyHash')))

    def _handleVerifyEncryptionKey(self, match, query, rawBody):
        self._sendJSON(self.store.verifyEncryptionKeyHash(self.user, self._json(rawBody).get('keyHash')))

    def _handleRemoveEncryptionKey(self, match, query, rawBody):
        self.store.removeEncryptionKeyHash(self.user)
        self._sendJSON(None, HTTPStatus.NO_CONTENT)

    # Shares

    def _handleListShares(self, match, query, rawBody):
        self._sendJSON(self.store.listShares(self.user))

    def _handleCreateShare(self, match, query, rawBody):
        share = self.store.createShare(self.user, self._json(rawBody), self._getReverseShareToken())
        self._sendJSON(share, HTTPStatus.CREATED)

    def _handleIsShareIdAvailable(self, match, query, rawBody):
        self._sendJSON(self.store.isShareIdAvailable(match['shareId']))

    def _handleUploadChunk(self, match, query, rawBody):
        result = self.store.uploadChunk(
            self.user, match['shareId'], query, rawBody, self._getReverseShareToken()
        )
        self._sendJSON(result, HTTPStatus.CREATED)

    def _handleCompleteShare(self, match, query, rawBody):
        share = self.store.completeShare(self.user, match['shareId'], self._getReverseShareToken())
        self._sendJSON(share, HTTPStatus.ACCEPTED)

    def _handleRevertComplete(self, match, query, rawBody):
        self._sendJSON(self.store.revertComplete(self.user, match['shareId']))

    def _handleGetShare(self, match, query, rawBody):
        self._sendJSON(self.store.getShare(match['shareId']))

    def _handleGetShareMetaData(self, match, query, rawBody):
        self._sendJSON(self.store.getShareMetaData(match['shareId']))

    def _handleGetFile(self, match, query, rawBody):
        self._sendBytes(self.store.getFile(match['shareId'], match['fileId']))

    def _handleRemoveFile(self, match, query, rawBody):
        self.store.removeFile(self.user, match['shareId'], match['fileId'])
        self._sendJSON(None, HTTPStatus.NO_CONTENT)

    def _handleRemoveShare(self, match, query, rawBody):
        self.store.removeShare(self.user, match['shareId'])
        self._sendJSON(None, HTTPStatus.NO_CONTENT)

    # Reverse shares

    def _handleListReverseShares(self, match, query, rawBody):
        self._sendJSON(self.store.listReverseShares(self.user))

    def _handleCreateReverseShare(self, match, query, rawBody):
        self._sendJSON(self.store.createReverseShare(self.user, self._json(rawBody)), HTTPStatus.CREATED)

    def _handleGetReverseShare(self, match, query, rawBody):
        self._sendJSON(self.store.getReverseShare(match['token']))

    def _handleRemoveReverseShare(self, match, query, rawBody):
        self.store.removeReverseShare(self.user, match['reverseShareId'])
        self._sendJSON(None, HTTPStatus.NO_CONTENT)


class RelayServer(ThreadingHTTPServer):

    allow_reuse_address = True
    daemon_threads = True

    def __init__(self, serverAddress, store=None, requestHandlerClass=None):
        self.store = store or ShareStore()

        if requestHandlerClass is None:
            requestHandlerClass = RelayHandler

        super().__init__(serverAddress, requestHandlerClass)

    @property
    def port(self):
        return self.server_address[1]

    @property
    def url(self):
        host = self.server_address[0]
        return f'http://{host}:{self.port}'

    def start(self):
        flushPrint(f'OttrBox relay listening on {self.url}')
        self.serve_forever()

    def startInBackground(self):
        thread = threading.Thread(target=self.serve_forever, name='ottrbox-relay', daemon=True)
        thread.start()
        return thread

    def shutdown(self):
        super().shutdown()
        self.server_close()


def createServer(port=0, host='127.0.0.1', users=None, appURL=None, allowAnonymousShares=True, handlerClass=None):
    """Factory for a relay server. port=0 picks a free port; with no appURL,
    share links point at the relay itself."""
    server = RelayServer((host, port), ShareStore(users=users, allowAnonymousShares=allowAnonymousShares),
                         handlerClass)
    server.store.appURL = (appURL or server.url).rstrip('/')
    return server
