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
import functools
import math
import os
import uuid

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, List, Optional

from ottrbox.API import ChunkIndexMismatch, TransientTransferFailure
from ottrbox.E2EE import SymmetricKey, getDefaultCipher
from ottrbox.Kernel import OttrEvent, getLogger
from ottrbox.Settings import APIError, SettingsGetter

logger = getLogger(__name__)

# Progress value reported while a file waits out its retry delay
RETRYING = -1


class RetryPolicy:
    """How long to wait between attempts on a failing chunk, and how many
    consecutive failures to accept. maxAttempts=None retries forever."""

    def __init__(self, delay: float = 5.0, maxAttempts: Optional[int] = None):
        if delay < 0:
            raise ValueError('Retry delay must not be negative')
        if maxAttempts is not None and maxAttempts < 1:
            raise ValueError('maxAttempts must be at least 1')

        self.delay = delay
        self.maxAttempts = maxAttempts

    @classmethod
    def fromSettings(cls):
        settingsGetter = SettingsGetter.getInstance()
        return cls(delay=settingsGetter.getRetryDelay(), maxAttempts=settingsGetter.getRetryMaxAttempts())

    def shouldRetry(self, failures: int) -> bool:
        return self.maxAttempts is None or failures < self.maxAttempts

    def __repr__(self):
        limit = 'forever' if self.maxAttempts is None else self.maxAttempts
        return f'RetryPolicy(delay={self.delay}, maxAttempts={limit})'


class UploadState(Enum):
    NOT_STARTED = 'not_started'
    UPLOADING = 'uploading'
    FAILED = 'failed'
    COMPLETED = 'completed'
    CANCELLED = 'cancelled'


@dataclass
class FileUpload:
    """Client-side mirror of the server's upload session for one file.

    fileId is generated before the first chunk and sent with every chunk, so
    a retried chunk 0 lands on the same server entry. chunkIndex is the next
    chunk to send and follows the server after a resync.
    """

    name: str
    size: int
    path: Optional[str] = None
    data: Optional[bytes] = field(default=None, repr=False)

    fileId: Optional[str] = None
    chunkIndex: int = 0
    totalChunks: int = 0
    state: UploadState = UploadState.NOT_STARTED
    progress: float = 0
    failures: int = 0
    error: Optional[BaseException] = field(default=None, repr=False)

    @classmethod
    def fromPath(cls, path, name=None):
        return cls(name=name or os.path.basename(path), size=os.path.getsize(path), path=path)

    @classmethod
    def fromBytes(cls, name, data):
        return cls(name=name, size=len(data), data=bytes(data))

    def readPlaintext(self) -> bytes:
        if self.data is not None:
            return self.data

        with open(self.path, 'rb') as f:
            return f.read()

    @property
    def isDone(self):
        return self.state == UploadState.COMPLETED


def countChunks(payloadSize: int, chunkSize: int) -> int:
    """Number of chunks for a payload. An empty payload still takes one."""
    return max(1, math.ceil(payloadSize / chunkSize))


class ChunkedUploader:
    """Uploads files to a share in sequential chunks.

    At most poolSize files are in flight at once, each one chunk at a time.
    A ChunkIndexMismatch moves the cursor to the index the server expects.
    Any other APIError reports RETRYING, sleeps RetryPolicy.delay and resends
    the same chunk. Blocking HTTP and encryption run on a thread pool so the
    event loop only coordinates.

    onProgress(upload, progress) receives a percentage in (0, 100] that never
    goes down, or RETRYING while a file is backing off.
    """

    def __init__(
        self,
        apiHandler,
        chunkSize: int = None,
        poolSize: int = None,
        retryPolicy: RetryPolicy = None,
        cipher=None,
        executor: ThreadPoolExecutor = None,
    ):
        settingsGetter = SettingsGetter.getInstance()

        self.apiHandler = apiHandler
        self.chunkSize = chunkSize or settingsGetter.getChunkSize()
        self.poolSize = poolSize or settingsGetter.getUploadConcurrency()
        self.retryPolicy = retryPolicy or RetryPolicy.fromSettings()
        self.cipher = cipher or getDefaultCipher()

        if self.chunkSize <= 0:
            raise ValueError('chunkSize must be positive')
        if self.poolSize <= 0:
            raise ValueError('poolSize must be positive')

        self._ownsExecutor = executor is None
        self.executor = executor or ThreadPoolExecutor(max_workers=self.poolSize, thread_name_prefix='ottrbox-upload')

        self._cancelled = False
        self._tasks = set()

    def close(self):
        if self._ownsExecutor:
            self.executor.shutdown(wait=False)

    @property
    def cancelled(self):
        return self._cancelled

    def cancel(self):
        """Abandon every file still in flight. Backoff sleeps end immediately."""
        self._cancelled = True
        for task in list(self._tasks):
            task.cancel()

    async def _runBlocking(self, func, *args):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self.executor, functools.partial(func, *args))

    def _report(self, onProgress, upload, progress):
        if progress != RETRYING:
            progress = max(upload.progress, progress)
            upload.progress = progress

        if onProgress:
            onProgress(upload, progress)

    async def uploadAll(
        self,
        shareId: str,
        uploads: List[FileUpload],
        key: Optional[SymmetricKey] = None,
        onProgress: Callable = None
    ) -> List[FileUpload]:
        """Upload every file, poolSize at a time.

        Raises the first fatal error (retry budget exhausted) after cancelling
        the remaining files. Cancellation propagates as CancelledError.
        """
        semaphore = asyncio.Semaphore(self.poolSize)

        async def runInSlot(upload):
            try:
                async with semaphore:
                    return await self.uploadFile(shareId, upload, key=key, onProgress=onProgress)
            except asyncio.CancelledError:
                upload.state = UploadState.CANCELLED
                raise

        tasks = [asyncio.ensure_future(runInSlot(upload)) for upload in uploads]
        self._tasks.update(tasks)

        try:
            await asyncio.gather(*tasks)
        except BaseException:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise
        finally:
            self._tasks.difference_update(tasks)

        return uploads

    async def uploadFile(
        self,
        shareId: str,
        upload: FileUpload,
        key: Optional[SymmetricKey] = None,
        onProgress: Callable = None
    ) -> FileUpload:
        """Drive one file through NOT_STARTED -> UPLOADING -> COMPLETED."""
        try:
            if self._cancelled:
                raise asyncio.CancelledError()

            payload = await self._preparePayload(upload, key)
            upload.totalChunks = countChunks(len(payload), self.chunkSize)
            if upload.fileId is None:
                upload.fileId = str(uuid.uuid4())
            upload.state = UploadState.UPLOADING

            logger.debug(
                f"[Upload] {upload.name}: {len(payload)} bytes in {upload.totalChunks} chunk(s)"
                f"{' (encrypted)' if key else ''}"
            )

            while upload.chunkIndex < upload.totalChunks:
                await self._sendChunk(shareId, upload, payload, onProgress)

            upload.state = UploadState.COMPLETED
            logger.debug(f"[Upload] {upload.name} completed as {upload.fileId}")
            OttrEvent.shareFileUploaded.trigger(shareId=shareId, upload=upload)
            return upload

        except asyncio.CancelledError:
            upload.state = UploadState.CANCELLED
            logger.debug(f"[Upload] {upload.name} cancelled at chunk {upload.chunkIndex}")
            raise

    async def _preparePayload(self, upload, key):
        plaintext = await self._runBlocking(upload.readPlaintext)
        if key is None:
            return plaintext

        # The whole file is encrypted once, then sliced.
        return await self._runBlocking(self.cipher.encrypt, plaintext, key)

    async def _sendChunk(self, shareId, upload, payload, onProgress):
        index = upload.chunkIndex
        chunk = payload[index * self.chunkSize:(index + 1) * self.chunkSize]

        try:
            response = await self._runBlocking(
                self.apiHandler.uploadChunk, shareId, chunk, upload.fileId, upload.name, index, upload.totalChunks
            )
        except ChunkIndexMismatch as e:
            if self._cancelled:
                raise asyncio.CancelledError()

            if e.expectedChunkIndex != index and 0 <= e.expectedChunkIndex <= upload.totalChunks:
                logger.debug(f"[Upload] {upload.name}: server expects chunk {e.expectedChunkIndex}, not {index}")
                upload.failures = 0
                upload.chunkIndex = e.expectedChunkIndex
                if upload.chunkIndex == upload.totalChunks:
                    self._report(onProgress, upload, 100.0)
                return
            await self._backoff(upload, e, onProgress)
            return
        except APIError as e:
            if self._cancelled:
                raise asyncio.CancelledError()
            await self._backoff(upload, e, onProgress)
            return

        if self._cancelled:
            raise asyncio.CancelledError()

        if response and response.get('id'):
            upload.fileId = response['id']

        upload.failures = 0
        upload.error = None
        upload.state = UploadState.UPLOADING
        upload.chunkIndex = index + 1

        self._report(onProgress, upload, upload.chunkIndex * 100.0 / upload.totalChunks)

    async def _backoff(self, upload, error, onProgress):
        upload.failures += 1
        upload.error = error
        upload.state = UploadState.FAILED

        if not self.retryPolicy.shouldRetry(upload.failures):
            logger.warning(
                f"[Upload] Giving up on {upload.name} chunk {upload.chunkIndex} after {upload.failures} attempt(s): "
                f"{error}"
            )
            raise TransientTransferFailure(
                f'Upload of {upload.name} failed after {upload.failures} attempt(s): {error}'
            ) from error

        logger.debug(
            f"[Upload] {upload.name} chunk {upload.chunkIndex} failed ({error}), "
            f"retrying in {self.retryPolicy.delay}s"
        )
        self._report(onProgress, upload, RETRYING)
        await asyncio.sleep(self.retryPolicy.delay)
        upload.state = UploadState.UPLOADING
