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

from datetime import timedelta
from enum import Enum

from ottrbox.Kernel import SecretGetter, Singleton, getLogger

DEFAULT_SERVER = os.getenv('OTTRBOX_SERVER', 'http://127.0.0.1:3000')
# Frontend base used in share links, falls back to the API server.
DEFAULT_APP_URL = os.getenv('OTTRBOX_APP_URL', DEFAULT_SERVER)

# Upload chunk size (10 MB), the server's share.chunkSize default
CHUNK_SIZE = int(os.getenv('OTTRBOX_CHUNK_SIZE', 10 * 1000 * 1000))

# Files transferred at the same time within one share
UPLOAD_CONCURRENCY = int(os.getenv('OTTRBOX_UPLOAD_CONCURRENCY', 3))

RETRY_DELAY_SECONDS = float(os.getenv('OTTRBOX_RETRY_DELAY', 5))

# None means retry forever
RETRY_MAX_ATTEMPTS = int(os.getenv('OTTRBOX_RETRY_MAX_ATTEMPTS')) if os.getenv('OTTRBOX_RETRY_MAX_ATTEMPTS') else None

REQUEST_TIMEOUT = (10, 120)

SUPPORT_URL = 'https://github.com/ottrbox/ottrbox/discussions'

EXPIRATIONS = {
    'never': None,
    '1 hour': timedelta(hours=1),
    '1 day': timedelta(days=1),
    '1 week': timedelta(days=7),
    '1 month': timedelta(days=30),
}

logger = getLogger(__name__)


class ExecutionMode(Enum):
    PURE_PYTHON = 1
    EXECUTABLE = 2


# =============================================================================
# API Exception Classes
# =============================================================================


class APIError(Exception):
    """Base exception for API-related errors"""

    def __init__(self, message, statusCode=None, response=None):
        super().__init__(message)
        self.statusCode = statusCode
        self.response = response


class UnauthenticatedError(APIError):
    """Raised when authentication credentials are missing or invalid (401)"""
    pass


class UnauthorizedError(APIError):
    """Raised when authenticated user lacks permission for the requested resource (403)"""
    pass


class NotFoundError(APIError):
    """Raised when the share, file or reverse share does not exist (404)"""
    pass


# Singleton
class SettingsGetter(Singleton):

    @classmethod
    def getInstance(cls):
        if cls not in cls._instances:
            raise RuntimeError('Get SettingsGetter before initialized it.')
        return cls._instances[cls]

    def initialize(
        self,
        exeMode: ExecutionMode = ExecutionMode.PURE_PYTHON,
        baseDir=None,
        platform=None,
        serverURL=DEFAULT_SERVER,
        appURL=None,
    ):
        """Initialize the SettingsGetter with execution mode and server endpoints."""
        self._exeMode = exeMode
        self._baseDir = baseDir
        self._platform = platform
        self._serverURL = serverURL.rstrip('/')
        self._appURL = (appURL or DEFAULT_APP_URL or serverURL).rstrip('/')

    @property
    def exeMode(self) -> ExecutionMode:
        return self._exeMode

    @property
    def baseDir(self):
        return self._baseDir

    def isRunOnExecutable(self) -> bool:
        return self._exeMode == ExecutionMode.EXECUTABLE

    def isWindows(self):
        return self._platform == "Windows"

    def isLinux(self):
        return self._platform == "Linux"

    def isDarwin(self):
        return self._platform == "Darwin"

    def getServerURL(self):
        return self._serverURL

    def setServerURL(self, serverURL):
        self._serverURL = serverURL.rstrip('/')

    def getAppURL(self):
        return self._appURL

    def setAppURL(self, appURL):
        self._appURL = appURL.rstrip('/')

    # Read at call time, .env is loaded after this module is imported

    def getChunkSize(self):
        return int(os.getenv('OTTRBOX_CHUNK_SIZE', CHUNK_SIZE))

    def getUploadConcurrency(self):
        return int(os.getenv('OTTRBOX_UPLOAD_CONCURRENCY', UPLOAD_CONCURRENCY))

    def getRetryDelay(self):
        return float(os.getenv('OTTRBOX_RETRY_DELAY', RETRY_DELAY_SECONDS))

    def getRetryMaxAttempts(self):
        value = os.getenv('OTTRBOX_RETRY_MAX_ATTEMPTS')
        return int(value) if value else RETRY_MAX_ATTEMPTS

    def getToken(self):
        # Environment first, then the .secret file
        return SecretGetter.getInstance().get('OTTRBOX_TOKEN') or None

    def getSupportURL(self):
        return SUPPORT_URL
