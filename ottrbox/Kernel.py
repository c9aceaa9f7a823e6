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

import importlib
import os
import logging
import platform
import threading
import json
import secrets
import string

# Error reporting stays off unless SENTRY_DSN is provided through the
# environment or the .secret file.
import sentry_sdk

from pathlib import Path
from enum import Enum

from signalslot import Signal

from sentry_sdk.integrations.logging import SentryHandler, LoggingIntegration
from sentry_sdk.integrations import atexit as sentryAtexit

PUBLIC_VERSION = '1.2.0'

LOG_LEVEL_MAPPING = {'DEBUG': logging.DEBUG, 'INFO': logging.INFO, 'WARNING': logging.WARNING, 'ERROR': logging.ERROR}


def configureGlobalLogLevel(logLevel):
    """
    Configure the global logging level for the application.
    This affects all loggers created via getLogger().

    Args:
        logLevel: Logging level (logging.DEBUG, logging.INFO, etc.)
    """
    rootLogger = logging.getLogger()
    rootLogger.setLevel(logLevel)

    formatter = logging.Formatter('%(asctime)s [%(levelname)s] %(name)s: %(message)s')

    if not rootLogger.handlers:
        consoleHandler = logging.StreamHandler()
        consoleHandler.setLevel(logLevel)
        consoleHandler.setFormatter(formatter)
        rootLogger.addHandler(consoleHandler)
    else:
        for handler in rootLogger.handlers:
            if isinstance(handler, logging.StreamHandler) and not isinstance(handler, SentryHandler):
                handler.setLevel(logLevel)
                handler.setFormatter(formatter)


if os.getenv('OTTRBOX_LOGGING_LEVEL'):
    configureGlobalLogLevel(LOG_LEVEL_MAPPING.get(os.getenv('OTTRBOX_LOGGING_LEVEL').upper(), logging.INFO))


def getLogger(name, version=PUBLIC_VERSION):
    """
    Get a logger with Sentry integration. Sentry is initialised at most once,
    and only when SENTRY_DSN can be resolved through SecretGetter.

    Args:
        name: Logger name
        version: Version string attached to every record
    """
    try:
        if not sentry_sdk.get_client().is_active():
            sentryDsn = SecretGetter.getInstance().get('SENTRY_DSN')
            if sentryDsn:
                # Silence "sentry is attempting to send pending events..."
                sentryAtexit.default_callback = lambda pending, timeout: None

                sentry_sdk.init(
                    dsn=sentryDsn,
                    default_integrations=False,
                    integrations=[
                        LoggingIntegration(),
                        sentryAtexit.AtexitIntegration(),
                    ],
                )

        logger = logging.getLogger(name)

        if not any(isinstance(h, SentryHandler) for h in logger.handlers):
            formatter = logging.Formatter('%(asctime)s version[%(version)s] : %(message)s')
            syslog = SentryHandler()
            syslog.setFormatter(formatter)
            logger.addHandler(syslog)

        return logging.LoggerAdapter(logger, {'version': version or 'unknown'})

    except Exception as e:
        fallbackLogger = logging.getLogger(name)
        fallbackLogger.warning(f"Failed to initialize Sentry: {e}")
        return fallbackLogger


def classForName(qualifiedName):
    """Resolve 'package.module.Name' to the object it names."""
    moduleName, _, attribute = str(qualifiedName).rpartition('.')
    module = importlib.import_module(moduleName)

    try:
        return getattr(module, attribute)
    except AttributeError:
        raise ImportError(f"Unable to import '{qualifiedName}'.")


class Singleton:
    """
    Thread-safe singleton base class. Subclasses override initialize(), which
    runs once for the lifetime of the instance.
    """

    _instances = {}
    _lock = threading.Lock()

    def __new__(cls, *args, **kwargs):
        if cls not in cls._instances:
            with cls._lock:
                if cls not in cls._instances:
                    cls._instances[cls] = super().__new__(cls)
        return cls._instances[cls]

    def __init__(self, *args, **kwargs):
        if not hasattr(self, '_initialized'):
            self.initialize(*args, **kwargs)
            self._initialized = True

    def initialize(self, *args, **kwargs):
        pass

    @classmethod
    def getInstance(cls):
        if cls not in cls._instances:
            cls()
        return cls._instances[cls]


class EventTiming(Enum):
    BEFORE = "BEFORE"
    AFTER = "AFTER"


class EventService(Singleton):
    """
    Dispatches named events to subscribed observers. Each event owns a pair of
    'signalslot' Signals, one per EventTiming phase.
    """

    def initialize(self):
        self.signals = {}

    def _normalizeTiming(self, timing):
        if timing is None or isinstance(timing, EventTiming):
            return timing

        if isinstance(timing, str):
            try:
                return EventTiming(timing.upper())
            except ValueError:
                raise ValueError(f"Invalid timing value: '{timing}'. Must be 'BEFORE' or 'AFTER'.")

        raise ValueError(f"Timing must be EventTiming enum, string, or None. Got: {type(timing)}")

    def trigger(self, event, **kwargs):
        """
        Trigger an event, calling all connected observers (slots) with keyword
        arguments.
        """
        timing = self._normalizeTiming(kwargs.pop('timing', None))

        signalObjects = self.signals.get(event)
        if not signalObjects:
            return

        beforeSignal, afterSignal = signalObjects

        if timing in (EventTiming.BEFORE, None):
            beforeSignal.emit(**kwargs)

        if timing in (EventTiming.AFTER, None):
            afterSignal.emit(**kwargs)

    def isRegistered(self, event):
        return event in self.signals

    def register(self, event):
        if self.isRegistered(event):
            return False
        self.signals[event] = (Signal(), Signal())
        return True

    def unregister(self, event):
        if not self.isRegistered(event):
            return False

        for signalObject in self.signals[event]:
            for slot in list(signalObject.slots):
                signalObject.disconnect(slot)
        del self.signals[event]
        return True

    def subscribe(self, event, observer, timing=EventTiming.AFTER):
        """
        Subscribe an observer to an event. Observers receive keyword arguments
        only, so they should accept **kwargs.
        """
        if not self.isRegistered(event):
            raise KeyError(f"You must register event '{event}' first.")

        normalizedTiming = self._normalizeTiming(timing)
        if normalizedTiming not in (EventTiming.BEFORE, EventTiming.AFTER):
            raise ValueError("Timing must be EventTiming.BEFORE or EventTiming.AFTER.")

        signalObject = self.signals[event][0 if normalizedTiming == EventTiming.BEFORE else 1]
        if not signalObject.is_connected(observer):
            signalObject.connect(observer)

    def unsubscribe(self, event, observer, timing=None):
        if not self.isRegistered(event):
            return

        timingsToCheck = [self._normalizeTiming(timing)] if timing else [EventTiming.BEFORE, EventTiming.AFTER]

        for t in timingsToCheck:
            signalObject = self.signals[event][0 if t == EventTiming.BEFORE else 1]
            if signalObject.is_connected(observer):
                signalObject.disconnect(observer)


class Event:
    """ Simple Event wrapper"""

    def __init__(self, key):
        self.key = key

        self.eventService = EventService.getInstance()

    def subscribe(self, observer, timing=EventTiming.AFTER):
        return self.eventService.subscribe(self.key, observer, timing=timing)

    def unsubscribe(self, observer, timing=None):
        return self.eventService.unsubscribe(self.key, observer, timing=timing)

    def trigger(self, **kwargs):
        return self.eventService.trigger(self.key, **kwargs)


class StorageLocator(Singleton):
    """
    Resolves where keys.json, .secret and .env live.

    Lookup order is the current directory, ~/.ottrbox, then the platform
    config directory. New files go to the first writable directory of
    ~/.ottrbox, the platform directory and the current directory.

    Environment Variables:
        OTTRBOX_STORAGE_LOCATION: Existing directory that replaces every
                                  other location for reads and writes.
    """

    def initialize(self, appName='ottrbox'):
        self.appName = appName
        self.homeDir = os.path.expanduser(f'~{os.path.sep}.{appName}')
        self.platformDir = self._getPlatformDir()

        self.logger = logging.getLogger(__name__)

    def _getPlatformDir(self):
        system = platform.system()
        if system == 'Windows':
            return os.path.join(os.getenv('APPDATA', os.path.expanduser('~')), self.appName)
        if system == 'Darwin':
            return os.path.expanduser(f'~/Library/Application Support/{self.appName}')
        return os.path.join(os.getenv('XDG_CONFIG_HOME', os.path.expanduser('~/.config')), self.appName)

    def getOverride(self):
        override = os.getenv('OTTRBOX_STORAGE_LOCATION')
        return override if override and os.path.isdir(override) else None

    def _isWritable(self, directory):
        testFile = os.path.join(directory, '.write_test')
        try:
            os.makedirs(directory, exist_ok=True)
            Path(testFile).write_text('ok')
            return True
        except OSError as e:
            self.logger.warning(f'Unable to use {directory} as storage directory => {e}.')
            return False
        finally:
            if os.path.exists(testFile):
                os.remove(testFile)

    def ensureStorageDir(self):
        """Return a writable storage directory, creating it when needed."""
        override = self.getOverride()
        if override:
            return override

        for directory in (self.homeDir, self.platformDir):
            if self._isWritable(directory):
                return directory
        return os.path.abspath('.')

    def findStorage(self, filename):
        """Path of an existing file, or where it would be created in ~/.ottrbox"""
        override = self.getOverride()
        if override:
            return os.path.join(override, filename)

        for directory in (os.path.abspath('.'), self.homeDir, self.platformDir):
            path = os.path.join(directory, filename)
            if os.path.exists(path):
                return path

        return os.path.join(self.homeDir, filename)

    def findConfig(self, filename):
        return self.findStorage(filename)


class SecretGetter(Singleton):
    """
    Resolves secrets from environment variables first, then from the JSON
    .secret file found by StorageLocator. Values are cached.
    """

    DEFAULT_SECRET_FILE = '.secret'

    def initialize(self, secretFileName=DEFAULT_SECRET_FILE):
        self.secretFileName = secretFileName
        self._cache = {}
        self._secretData = None

    def getPath(self):
        return StorageLocator.getInstance().findStorage(self.secretFileName)

    def _loadSecretFile(self):
        if self._secretData is not None:
            return

        secretPath = self.getPath()

        if not os.path.exists(secretPath):
            self._secretData = {}
            return

        try:
            self._secretData = json.loads(Path(secretPath).read_text())
        except (json.JSONDecodeError, OSError) as e:
            logging.getLogger(__name__).warning(f"Failed to load secret file {secretPath}: {e}")
            self._secretData = {}

    def get(self, key: str):
        if self._cache.get(key):
            return self._cache[key]

        value = os.getenv(key)
        if value:
            self._cache[key] = value
            return value

        self._loadSecretFile()

        value = self._secretData.get(key)
        if value:
            self._cache[key] = value

        return value

    def clearCache(self):
        self._cache.clear()
        self._secretData = None


class UIDGenerator:
    """Generate random identifiers for shares and reverse share tokens"""

    UID_LEN = 8

    def __init__(self, length=UID_LEN):
        self.length = length

    def generate(self):
        alphabet = string.ascii_letters + string.digits
        return ''.join(secrets.choice(alphabet) for _ in range(self.length))


# Event pattern: RESTful + /[action] (create, update, get, delete, others...)
class OttrEvent:
    shareLinkCreate = Event('/share/link/create')
    shareFileUploaded = Event('/share/file/create')
    userKeyCreate = Event('/user/key/create')
    userKeyDelete = Event('/user/key/delete')
    reverseShareCreate = Event('/reverse-share/create')


eventService = EventService.getInstance()

eventService.register(OttrEvent.shareLinkCreate.key)
eventService.register(OttrEvent.shareFileUploaded.key)
eventService.register(OttrEvent.userKeyCreate.key)
eventService.register(OttrEvent.userKeyDelete.key)
eventService.register(OttrEvent.reverseShareCreate.key)
