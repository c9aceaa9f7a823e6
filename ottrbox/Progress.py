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

import time
import logging

from tqdm import tqdm

from ottrbox.Transfer import RETRYING
from ottrbox.Utils import formatSize, flushPrint


class BitmathTqdm(tqdm):
    """Custom tqdm class with consistent size formatting."""

    def __init__(self, *args, sizeFormatter=None, unit='B', unitScale=False, **kwargs):
        self.sizeFormatter = sizeFormatter or formatSize

        if 'bar_format' not in kwargs:
            kwargs['bar_format'] = (
                '{desc}: {percentage:3.0f}%|{bar}| '
                '{n_fmt}/{total_fmt} [{elapsed}<{remaining}, {rate_fmt}]{postfix}'
            )

        super().__init__(*args, unit=unit, unit_scale=unitScale, **kwargs)

    def _formatSpeed(self, rateBytesPerSec):
        if rateBytesPerSec <= 0:
            return "0/sec"
        return f"{self.sizeFormatter(int(rateBytesPerSec))}/sec"

    @property
    def format_dict(self):
        d = super().format_dict

        d['rate_fmt'] = self._formatSpeed(d.get('rate', 0) or 0)
        d['n_fmt'] = self.sizeFormatter(d.get('n', 0))

        total = d.get('total')
        d['total_fmt'] = self.sizeFormatter(total) if total is not None else '?'

        return d


class Progress:
    """Progress of one file, drawn as a tqdm bar or logged at intervals."""

    def __init__(self, totalSize, description='Progress', sizeFormatter=None, loggerCallback=flushPrint,
                 logInterval=2.0, useBar=False, position=None):
        self.totalSize = totalSize
        self.description = description
        self.sizeFormatter = sizeFormatter or formatSize
        self.loggerCallback = loggerCallback
        self.logInterval = logInterval
        self.useBar = useBar

        self.transferred = 0
        self.startTime = time.monotonic()
        self.lastProgressTime = self.startTime
        self.lastProgressBytes = 0

        self.pbar = None
        if self.useBar:
            self.pbar = BitmathTqdm(
                total=totalSize or None,
                desc=description,
                sizeFormatter=self.sizeFormatter,
                leave=True,
                ncols=100,
                position=position,
            )

    def update(self, bytesTransferred, forceLog=False, extraText=""):
        previousTransferred = self.transferred
        self.transferred = max(previousTransferred, bytesTransferred)
        currentTime = time.monotonic()

        if self.pbar is not None:
            increment = self.transferred - previousTransferred
            if increment > 0:
                self.pbar.update(increment)
            self.pbar.set_postfix_str(f" {extraText}" if extraText else "")
        elif forceLog or (currentTime - self.lastProgressTime) >= self.logInterval:
            self._logProgress(currentTime, extraText)

    def _logProgress(self, currentTime, extraText):
        timeDelta = currentTime - self.lastProgressTime
        bytesDelta = self.transferred - self.lastProgressBytes
        speed = bytesDelta / timeDelta if timeDelta > 0 else 0

        message = (
            f'{self.description}: {self.sizeFormatter(self.transferred)}/{self.sizeFormatter(self.totalSize)} '
            f'({self.getPercentage():.2f}%), {self.sizeFormatter(int(speed))}/sec'
        )
        if extraText:
            message += f', {extraText}'

        self.loggerCallback(message)

        self.lastProgressTime = currentTime
        self.lastProgressBytes = self.transferred

    def getPercentage(self):
        return (self.transferred * 100.0 / self.totalSize) if self.totalSize > 0 else 0

    def finishBar(self, complete=True):
        if self.pbar is None:
            return

        try:
            if complete and self.pbar.total:
                remaining = self.pbar.total - self.pbar.n
                if remaining > 0:
                    self.pbar.update(remaining)
            self.pbar.refresh()
            self.pbar.close()
        except (ValueError, AttributeError) as e:
            logging.getLogger(__name__).debug(f"Exception during progress bar cleanup: {e}")
        finally:
            self.pbar = None

    def __enter__(self):
        return self

    def __exit__(self, excType, excVal, excTb):
        self.finishBar()


class UploadProgress:
    """Callable for ShareSession.onProgress that keeps one Progress per file."""

    def __init__(self, useBar=True, loggerCallback=flushPrint):
        self.useBar = useBar
        self.loggerCallback = loggerCallback
        self.progresses = {}

    def __call__(self, session, upload, progress):
        fileProgress = self.progresses.get(id(upload))
        if fileProgress is None:
            fileProgress = Progress(
                upload.size,
                description=upload.name,
                loggerCallback=self.loggerCallback,
                useBar=self.useBar,
                position=len(self.progresses) if self.useBar else None,
            )
            self.progresses[id(upload)] = fileProgress

        if progress == RETRYING:
            fileProgress.update(fileProgress.transferred, forceLog=True, extraText='retrying')
            return

        fileProgress.update(int(upload.size * progress / 100), forceLog=progress >= 100)
        if progress >= 100:
            fileProgress.finishBar()

    def close(self):
        for fileProgress in self.progresses.values():
            fileProgress.finishBar(complete=False)
