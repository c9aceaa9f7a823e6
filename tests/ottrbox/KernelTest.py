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
import shutil
import tempfile
import unittest
from unittest.mock import patch

from ottrbox.Kernel import Event, EventService, EventTiming, SecretGetter, StorageLocator, UIDGenerator
from ottrbox.Progress import UploadProgress
from ottrbox.Transfer import RETRYING, FileUpload
from ottrbox.Utils import formatSize, getEnv, maskKey


class EventServiceTest(unittest.TestCase):
    """
    Test case for the singleton, signalslot-based EventService. Application
    events stay registered, so every test uses its own keys.
    """

    def setUp(self):
        self.e = EventService.getInstance()
        self.keys = []

    def tearDown(self):
        for key in self.keys:
            self.e.unregister(key)

    def register(self, key):
        self.keys.append(key)
        return self.e.register(key)

    def testIsSingleton(self):
        self.assertIs(EventService.getInstance(), self.e)

    def testRegisterTwice(self):
        self.assertTrue(self.register('/test/register'))
        self.assertFalse(self.register('/test/register'))
        self.assertTrue(self.e.isRegistered('/test/register'))

    def testSubscribeRequiresRegistration(self):
        with self.assertRaises(KeyError):
            self.e.subscribe('/test/unknown', lambda **kwargs: None)

    def testTriggerAndUnsubscribe(self):
        """
        Observers receive keyword arguments, once per subscription.
        """
        log = []

        def observer(**kwargs):
            log.append(kwargs['value'])

        self.register('/test/trigger')
        self.e.subscribe('/test/trigger', observer)
        self.e.subscribe('/test/trigger', observer)
        self.e.trigger('/test/trigger', value=1)

        self.e.unsubscribe('/test/trigger', observer)
        self.e.trigger('/test/trigger', value=2)

        self.assertEqual(log, [1])

    def testTiming(self):
        """
        BEFORE observers run first; a timed trigger only reaches its own phase.
        """
        log = []

        def before(**kwargs):
            log.append('before')

        def after(**kwargs):
            log.append('after')

        self.register('/test/timing')
        self.e.subscribe('/test/timing', after, EventTiming.AFTER)
        self.e.subscribe('/test/timing', before, 'BEFORE')

        self.e.trigger('/test/timing')
        self.assertEqual(log, ['before', 'after'])

        log.clear()
        self.e.trigger('/test/timing', timing='AFTER')
        self.assertEqual(log, ['after'])

    def testInvalidTiming(self):
        self.register('/test/invalid')
        with self.assertRaises(ValueError):
            self.e.subscribe('/test/invalid', lambda **kwargs: None, 'DURING')

    def testUnregisterDisconnects(self):
        log = []
        self.register('/test/unregister')
        self.e.subscribe('/test/unregister', lambda **kwargs: log.append(1))

        self.assertTrue(self.e.unregister('/test/unregister'))
        self.e.trigger('/test/unregister')

        self.assertEqual(log, [])
        self.assertFalse(self.e.unregister('/test/unregister'))

    def testEventWrapper(self):
        received = []

        def observer(**kwargs):
            received.append(kwargs)

        self.register('/test/wrapper')
        event = Event('/test/wrapper')
        event.subscribe(observer)
        event.trigger(link='http://example.com/s/abc')
        event.unsubscribe(observer)
        event.trigger(link='ignored')

        self.assertEqual(received, [{'link': 'http://example.com/s/abc'}])


class StorageLocatorTest(unittest.TestCase):

    def setUp(self):
        self.tempDir = tempfile.mkdtemp(prefix='ottrbox-storage-')

    def tearDown(self):
        shutil.rmtree(self.tempDir, ignore_errors=True)

    def testEnvOverride(self):
        """
        An existing OTTRBOX_STORAGE_LOCATION wins for reads and writes.
        """
        storageLocator = StorageLocator.getInstance()
        with patch.dict(os.environ, {'OTTRBOX_STORAGE_LOCATION': self.tempDir}):
            self.assertEqual(storageLocator.findStorage('keys.json'), os.path.join(self.tempDir, 'keys.json'))
            self.assertEqual(storageLocator.ensureStorageDir(), self.tempDir)
            self.assertFalse(os.path.exists(os.path.join(self.tempDir, '.write_test')))

    def testMissingEnvDirectoryIsIgnored(self):
        storageLocator = StorageLocator.getInstance()
        missing = os.path.join(self.tempDir, 'missing')
        with patch.dict(os.environ, {'OTTRBOX_STORAGE_LOCATION': missing}):
            self.assertFalse(storageLocator.findStorage('keys.json').startswith(missing))


class SecretGetterTest(unittest.TestCase):

    def setUp(self):
        self.tempDir = tempfile.mkdtemp(prefix='ottrbox-secret-')
        self.secretGetter = SecretGetter.getInstance()
        self.secretGetter.clearCache()

    def tearDown(self):
        self.secretGetter.clearCache()
        shutil.rmtree(self.tempDir, ignore_errors=True)

    def testEnvironmentFirst(self):
        with open(os.path.join(self.tempDir, '.secret'), 'w') as f:
            json.dump({'OTTRBOX_TEST_SECRET': 'from-file'}, f)

        with patch.dict(os.environ, {'OTTRBOX_STORAGE_LOCATION': self.tempDir, 'OTTRBOX_TEST_SECRET': 'from-env'}):
            self.assertEqual(self.secretGetter.get('OTTRBOX_TEST_SECRET'), 'from-env')

    def testSecretFile(self):
        with open(os.path.join(self.tempDir, '.secret'), 'w') as f:
            json.dump({'OTTRBOX_TEST_SECRET': 'from-file'}, f)

        with patch.dict(os.environ, {'OTTRBOX_STORAGE_LOCATION': self.tempDir}):
            os.environ.pop('OTTRBOX_TEST_SECRET', None)
            self.assertEqual(self.secretGetter.get('OTTRBOX_TEST_SECRET'), 'from-file')
            self.assertIsNone(self.secretGetter.get('OTTRBOX_NOT_THERE'))

    def testCorruptedSecretFile(self):
        with open(os.path.join(self.tempDir, '.secret'), 'w') as f:
            f.write('{not json')

        with patch.dict(os.environ, {'OTTRBOX_STORAGE_LOCATION': self.tempDir}):
            os.environ.pop('OTTRBOX_TEST_SECRET', None)
            self.assertIsNone(self.secretGetter.get('OTTRBOX_TEST_SECRET'))


class UIDGeneratorTest(unittest.TestCase):

    def testGenerate(self):
        uids = {UIDGenerator().generate() for _ in range(200)}
        self.assertEqual(len(uids), 200)
        for uid in uids:
            self.assertRegex(uid, r'^[A-Za-z0-9]{8}$')

        self.assertEqual(len(UIDGenerator(16).generate()), 16)


class UtilsTest(unittest.TestCase):

    def testMaskKey(self):
        encoded = 'abcdefgh' + 'x' * 27 + 'stuvwxyz'
        masked = maskKey(encoded)
        self.assertTrue(masked.startswith('abcdefgh'))
        self.assertTrue(masked.endswith('stuvwxyz'))
        self.assertNotIn('x', masked)
        self.assertEqual(maskKey(''), '')
        self.assertNotIn('short', maskKey('short'))

    def testGetEnv(self):
        with patch.dict(os.environ, {'OTTRBOX_TEST_INT': '7', 'OTTRBOX_TEST_BAD': 'seven'}):
            self.assertEqual(getEnv('OTTRBOX_TEST_INT', 1), 7)
            self.assertEqual(getEnv('OTTRBOX_TEST_BAD', 1), 1)
            self.assertEqual(getEnv('OTTRBOX_TEST_MISSING', 2.5), 2.5)

    def testFormatSize(self):
        self.assertEqual(formatSize(5 * 1000 * 1000), '5M')
        self.assertEqual(formatSize(3 * 1000 * 1000 * 1000), '3.0G')


class UploadProgressTest(unittest.TestCase):

    def testLogsRetryAndCompletion(self):
        """
        Without a bar every RETRYING and the final 100% are logged immediately.
        """
        lines = []
        progress = UploadProgress(useBar=False, loggerCallback=lines.append)
        upload = FileUpload.fromBytes('data.bin', b'x' * 4000)

        progress(None, upload, 25)
        progress(None, upload, RETRYING)
        progress(None, upload, 100)
        progress.close()

        self.assertTrue(any('retrying' in line for line in lines))
        self.assertIn('100.00%', lines[-1])
        self.assertTrue(all(line.startswith('data.bin') for line in lines))


if __name__ == '__main__':
    unittest.main()
