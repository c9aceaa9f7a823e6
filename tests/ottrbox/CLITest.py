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
import contextlib
import io
import json
import os
import shutil
import tempfile
import unittest
from unittest.mock import patch

import Core

from ottrbox.CLI import configureCLIParser, preprocessArguments
from ottrbox.E2EE import E2EECipher
from ottrbox.KeyStore import LocalKeyStore
from ottrbox.Server import createServer
from ottrbox.Settings import SettingsGetter
from ottrbox.Session import parseShareLink, parseReverseShareLink

from . import settingsGetter as testSettings


class PreprocessArgumentsTest(unittest.TestCase):

    def setUp(self):
        _, self.globalsParent = configureCLIParser()

    def testBarePathBecomesUpload(self):
        self.assertEqual(preprocessArguments(['a.txt', 'b.txt'], self.globalsParent), ['upload', 'a.txt', 'b.txt'])

    def testBareURLBecomesDownload(self):
        link = 'https://box.example.com/s/abc#key=xyz'
        self.assertEqual(preprocessArguments([link], self.globalsParent), ['download', link])

    def testGlobalOptionsAreSkipped(self):
        argv = ['--server', 'http://localhost:3000', '--log-level=DEBUG', 'report.pdf']
        self.assertEqual(
            preprocessArguments(argv, self.globalsParent),
            ['--server', 'http://localhost:3000', '--log-level=DEBUG', 'upload', 'report.pdf']
        )

    def testExplicitCommandIsKept(self):
        for argv in (['key', 'status'], ['--token', 't', 'reverse-share', 'list'], ['serve', '--port', '0']):
            with self.subTest(argv=argv):
                self.assertEqual(preprocessArguments(argv, self.globalsParent), argv)


class CLITest(unittest.TestCase):
    """Runs the CLI in-process against a relay server on a free port."""

    def setUp(self):
        self.tempDir = tempfile.mkdtemp(prefix='ottrbox-cli-')
        storageDir = os.path.join(self.tempDir, 'storage')
        os.makedirs(storageDir)

        self.envPatch = patch.dict(os.environ, {'OTTRBOX_STORAGE_LOCATION': storageDir})
        self.envPatch.start()
        os.environ.pop('OTTRBOX_APP_URL', None)

        self.server = createServer(0, users={'alice-token': 'alice'})
        self.serverThread = self.server.startInBackground()

    def tearDown(self):
        self.server.shutdown()
        self.serverThread.join(timeout=5)
        self.envPatch.stop()
        shutil.rmtree(self.tempDir, ignore_errors=True)

        testSettings.setServerURL('http://127.0.0.1:9')
        testSettings.setAppURL('http://127.0.0.1:9')

    def runCLI(self, *argv, token=None):
        """Run the CLI and return (exitCode, output)"""
        args = ['--server', self.server.url]
        if token:
            args += ['--token', token]
        args += list(argv)

        output = io.StringIO()
        with contextlib.redirect_stdout(output):
            exitCode = Core.runCLIMain(args)
        print(f'[Test] ottrbox {" ".join(argv)} -> {exitCode}')
        return exitCode, output.getvalue()

    def _writeFile(self, name, data):
        path = os.path.join(self.tempDir, name)
        with open(path, 'wb') as f:
            f.write(data)
        return path

    def testUploadAndDownload(self):
        """An authenticated upload is encrypted and the link alone is enough to download it."""
        data = os.urandom(300 * 1024)
        path = self._writeFile('payload.bin', data)
        jsonPath = os.path.join(self.tempDir, 'share.json')

        exitCode, output = self.runCLI(path, '--no-progress', '--chunk-size', '65536', '--json', jsonPath,
                                       token='alice-token')
        self.assertEqual(exitCode, 0, output)
        self.assertIn('Share link:', output)

        with open(jsonPath, 'r', encoding='utf-8') as f:
            result = json.load(f)
        self.assertTrue(result['isE2EEncrypted'])
        appURL, shareId, encodedKey = parseShareLink(result['link'])
        self.assertEqual(appURL, self.server.url)
        self.assertEqual(shareId, result['shareId'])
        self.assertIsNotNone(encodedKey)

        outputDir = os.path.join(self.tempDir, 'downloads')
        exitCode, output = self.runCLI(result['link'], '-o', outputDir)
        self.assertEqual(exitCode, 0, output)

        with open(os.path.join(outputDir, 'payload.bin'), 'rb') as f:
            self.assertEqual(f.read(), data)

    def testDownloadWithoutKeyFails(self):
        path = self._writeFile('secret.txt', b'secret')
        jsonPath = os.path.join(self.tempDir, 'share.json')
        self.runCLI('upload', path, '--no-progress', '--json', jsonPath, token='alice-token')

        with open(jsonPath, 'r', encoding='utf-8') as f:
            link = json.load(f)['link'].split('#', 1)[0]

        # A fresh device has no master key to fall back on
        otherDevice = os.path.join(self.tempDir, 'other-device')
        os.makedirs(otherDevice)
        with patch.dict(os.environ, {'OTTRBOX_STORAGE_LOCATION': otherDevice}):
            exitCode, output = self.runCLI('download', link, '-o', os.path.join(self.tempDir, 'out'))
        self.assertEqual(exitCode, 1)
        self.assertIn('#', output)
        self.assertFalse(os.path.exists(os.path.join(self.tempDir, 'out', 'secret.txt')))

    def testUploadMissingFile(self):
        exitCode, output = self.runCLI('upload', os.path.join(self.tempDir, 'nope.txt'))
        self.assertEqual(exitCode, 1)
        self.assertIn('does not exist', output)

    def testKeyLifecycle(self):
        exitCode, output = self.runCLI('key', 'generate', token='alice-token')
        self.assertEqual(exitCode, 0, output)

        exitCode, output = self.runCLI('key', 'export')
        self.assertEqual(exitCode, 0)
        encodedKey = output.strip().splitlines()[-1]
        self.assertEqual(len(encodedKey), 43)

        # Refuses to overwrite without --force
        exitCode, _ = self.runCLI('key', 'generate', token='alice-token')
        self.assertEqual(exitCode, 1)

        exitCode, output = self.runCLI('key', 'status', token='alice-token')
        self.assertEqual(exitCode, 0)
        self.assertIn('Registered on server: yes', output)

        exitCode, output = self.runCLI('key', 'import', 'A' * 43, token='alice-token')
        self.assertEqual(exitCode, 1)
        self.assertIn('Wrong key', output)

        exitCode, output = self.runCLI('key', 'revoke', '--yes', token='alice-token')
        self.assertEqual(exitCode, 0, output)
        exitCode, _ = self.runCLI('key', 'export')
        self.assertEqual(exitCode, 1)

    def testKeyCommandsNeedToken(self):
        exitCode, output = self.runCLI('key', 'status')
        self.assertEqual(exitCode, 1)
        self.assertIn('requires an access token', output)

        exitCode, _ = self.runCLI('key', 'export')
        self.assertEqual(exitCode, 1)

    def testReverseShareCreateAndList(self):
        self.runCLI('key', 'generate', token='alice-token')

        exitCode, output = self.runCLI('reverse-share', 'create', '--max-uses', '2', token='alice-token')
        self.assertEqual(exitCode, 0, output)
        link = output.strip().splitlines()[-1].split('Reverse share link: ', 1)[1]
        _, token, encodedKey = parseReverseShareLink(link)
        self.assertIsNotNone(encodedKey)

        exitCode, output = self.runCLI('reverse-share', 'list', token='alice-token')
        self.assertEqual(exitCode, 0)
        self.assertIn(token, output)
        self.assertIn('uses left: 2', output)

    def testReverseShareListSurvivesForeignMasterKey(self):
        self.runCLI('key', 'generate', token='alice-token')
        exitCode, output = self.runCLI('reverse-share', 'create', token='alice-token')
        self.assertEqual(exitCode, 0, output)

        cipher = E2EECipher()
        LocalKeyStore().storeLocal(cipher.exportKey(cipher.generateKey()))
        self.runCLI('reverse-share', 'create', token='alice-token')

        exitCode, output = self.runCLI('reverse-share', 'list', token='alice-token')
        self.assertEqual(exitCode, 0, output)
        self.assertEqual(output.count('uses left:'), 2)
        self.assertEqual(output.count('(key unavailable)'), 1)

    def testGenerateOnSecondDeviceAsksForImport(self):
        exitCode, output = self.runCLI('key', 'generate', token='alice-token')
        self.assertEqual(exitCode, 0, output)
        LocalKeyStore().clearLocal()

        exitCode, output = self.runCLI('key', 'generate', token='alice-token')
        self.assertEqual(exitCode, 1)
        self.assertIn('ottrbox key import', output)
        self.assertIsNone(LocalKeyStore().loadLocal())

        exitCode, output = self.runCLI('upload', self._writeFile('a.txt', b'a'), '--no-progress', token='alice-token')
        self.assertEqual(exitCode, 1)
        self.assertIn('ottrbox key import', output)

        exitCode, output = self.runCLI('key', 'generate', '--force', token='alice-token')
        self.assertEqual(exitCode, 0, output)

    def testServeRejectsMalformedUser(self):
        exitCode, output = self.runCLI('serve', '--port', '0', '--user', 'missing-separator')
        self.assertEqual(exitCode, 1)
        self.assertIn('TOKEN=NAME', output)

    def testVersion(self):
        exitCode, output = self.runCLI('--version')
        self.assertEqual(exitCode, 0)
        self.assertIn('Crypto backend:', output)

    def testServerOptionSetsLinkBase(self):
        self.runCLI('--version')
        settings = SettingsGetter.getInstance()
        self.assertEqual(settings.getServerURL(), self.server.url)
        self.assertEqual(settings.getAppURL(), self.server.url)

    def testInvalidLogLevel(self):
        with contextlib.redirect_stderr(io.StringIO()):
            with self.assertRaises(SystemExit):
                Core.runCLIMain(['--log-level', 'CHATTY', 'key', 'status'])


if __name__ == '__main__':
    unittest.main()
