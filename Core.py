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

import argparse
import asyncio
import getpass
import json
import os
import platform
import signal
import sys

import requests

from ottrbox.API import APIHandler
from ottrbox.CLI import configureCLIParser, loadEnvFile, preprocessArguments, processGlobalArguments
from ottrbox.E2EE import E2EEError, FingerprintMismatch, InvalidKeyFormat, MissingKeyError
from ottrbox.Kernel import getLogger
from ottrbox.KeyStore import KeyManager, KeyRevocationError
from ottrbox.Progress import UploadProgress
from ottrbox.Server import createServer
from ottrbox.Session import ReverseShareManager, ShareDownloader, ShareSession
from ottrbox.Settings import (
    DEFAULT_SERVER, APIError, ExecutionMode, NotFoundError, UnauthenticatedError, SettingsGetter
)
from ottrbox.Transfer import ChunkedUploader
from ottrbox.Utils import flushPrint, formatSize, sendException

logger = getLogger(__name__)


def setupGracefulShutdown():
    """Setup signal handlers for graceful shutdown on multiple Ctrl+C"""
    context = {'shutdownInProgress': False}

    def signalHandler(signum, frame):
        if context['shutdownInProgress']:
            # Second Ctrl+C - force immediate exit without cleanup messages
            os._exit(0)
        else:
            context['shutdownInProgress'] = True
            raise KeyboardInterrupt()

    signal.signal(signal.SIGINT, signalHandler)


def setupSettings():
    # Load .env file early, before anything reads the environment
    loadEnvFile()

    exeMode = ExecutionMode.PURE_PYTHON
    baseDir = os.path.dirname(os.path.abspath(__file__))

    if getattr(sys, 'frozen', False) and hasattr(sys, '_MEIPASS'):
        exeMode = ExecutionMode.EXECUTABLE
        baseDir = sys._MEIPASS

    serverURL = os.getenv('OTTRBOX_SERVER', DEFAULT_SERVER)
    return SettingsGetter(
        exeMode=exeMode,
        baseDir=baseDir,
        platform=platform.system(),
        serverURL=serverURL,
        appURL=os.getenv('OTTRBOX_APP_URL') or serverURL,
    )


def createAPIHandler(args):
    return APIHandler(token=getattr(args, 'token', None))


def requireLogin(apiHandler, action):
    if apiHandler.isAuthenticated():
        return True

    flushPrint(f'Error: {action} requires an access token.')
    flushPrint('Use --token, set OTTRBOX_TOKEN or add it to your .secret file.')
    return False


def writeJSON(path, data):
    with open(path, 'w', encoding='utf-8') as f:
        json.dump(data, f, indent=2)


# ==============================================================================
# Commands
# ==============================================================================


def processUpload(args):
    """
    Upload files into a new share and print its link

    Returns:
        int: Exit code (0 for success, 1 for error)
    """
    for path in args.files:
        if not os.path.isfile(path):
            flushPrint(f'"{path}" does not exist or is not a file!')
            return 1

    apiHandler = createAPIHandler(args)
    uploader = ChunkedUploader(apiHandler, chunkSize=args.chunkSize)
    progress = UploadProgress(useBar=not args.noProgress)
    session = ShareSession(apiHandler, uploader=uploader, onProgress=progress)

    try:
        link = asyncio.run(
            session.upload(
                args.files,
                name=args.name,
                description=args.description,
                expiration=args.expiration,
                recipients=args.recipients,
                reverseShareLink=args.reverseShare,
            )
        )
    except MissingKeyError as e:
        if args.reverseShare:
            sendException(logger, e, action='Ask the owner for the complete link, including the part after #.',
                          errorPrefix='Cannot encrypt for this reverse share')
        else:
            sendException(logger, e, action="Run 'ottrbox key import' with the key from your other device.",
                          errorPrefix='Master key not on this device')
        return 1
    except InvalidKeyFormat as e:
        sendException(logger, e, action='Check that the link was copied completely.', errorPrefix='Invalid key')
        return 1
    except UnauthenticatedError as e:
        sendException(logger, e, action='Check your access token.', errorPrefix='Authentication failed')
        return 1
    except APIError as e:
        sendException(logger, e, errorPrefix='Upload failed')
        return 1
    finally:
        progress.close()
        uploader.close()
        apiHandler.close()

    totalSize = sum(upload.size for upload in session.uploads)
    flushPrint(f'Uploaded {len(session.uploads)} file(s), {formatSize(totalSize)}')
    if session.isE2EEncrypted:
        flushPrint('End-to-end encrypted. The key is part of the link, share it with care.')
    flushPrint(f'Share link: {link}')

    if args.json:
        writeJSON(args.json, {'link': link, 'shareId': session.shareId, 'isE2EEncrypted': session.isE2EEncrypted})

    return 0


def processDownload(args):
    """
    Download every file of a share, decrypting locally when needed

    Returns:
        int: Exit code (0 for success, 1 for error)
    """
    apiHandler = createAPIHandler(args)
    try:
        downloader = ShareDownloader(apiHandler)
        paths = downloader.downloadAll(args.url, args.output)
    except ValueError as e:
        sendException(logger, e, errorPrefix='Invalid link')
        return 1
    except MissingKeyError as e:
        sendException(logger, e, action='Ask the sender for the complete link, including the part after #.')
        return 1
    except E2EEError as e:
        sendException(logger, e, action='The key does not match this share or the file was modified.',
                      errorPrefix='Decryption failed')
        return 1
    except NotFoundError as e:
        sendException(logger, e, action='The share may have expired or been removed.', errorPrefix='Not found')
        return 1
    except APIError as e:
        sendException(logger, e, errorPrefix='Download failed')
        return 1
    finally:
        apiHandler.close()

    for path in paths:
        flushPrint(f"Downloaded: {path}")
    return 0


def processKey(args):
    """
    Master key lifecycle: generate, import, export, status, revoke

    Returns:
        int: Exit code (0 for success, 1 for error)
    """
    apiHandler = createAPIHandler(args)
    keyManager = KeyManager(apiHandler)

    try:
        if args.keyCommand == 'export':
            encoded = keyManager.exportKey()
            if not encoded:
                flushPrint('No master key on this device.')
                return 1
            flushPrint(encoded)
            return 0

        if not requireLogin(apiHandler, 'Key management'):
            return 1

        if args.keyCommand == 'status':
            status = keyManager.status()
            flushPrint(f"Registered on server: {'yes' if status.hasServerKey else 'no'}")
            flushPrint(f"Present on this device: {'yes' if status.hasLocalKey else 'no'}")
            if status.maskedKey:
                flushPrint(f"Key: {status.maskedKey}")
            if status.needsImport:
                flushPrint("Import your key with 'ottrbox key import' to open your encrypted shares here.")
            return 0

        if args.keyCommand == 'generate':
            if keyManager.exportKey() and not args.force:
                flushPrint('A master key already exists on this device.')
                flushPrint('Replacing it makes every share encrypted with it unreadable. Use --force to continue.')
                return 1
            if keyManager.status().needsImport and not args.force:
                flushPrint('Your account already has a master key registered on the server.')
                flushPrint("Run 'ottrbox key import' to use it here, or --force to replace it everywhere.")
                return 1
            encoded = keyManager.generate()
            flushPrint('Master key created. Store it somewhere safe, it cannot be recovered:')
            flushPrint(encoded)
            return 0

        if args.keyCommand == 'import':
            encoded = args.key or getpass.getpass('Master key: ')
            keyManager.importKey(encoded)
            flushPrint(f'Master key imported: {keyManager.maskedKey()}')
            return 0

        if args.keyCommand == 'revoke':
            if not args.yes:
                answer = input('Revoking makes every share encrypted with this key unreadable. Continue? [y/N] ')
                if answer.strip().lower() not in ('y', 'yes'):
                    flushPrint('Aborted.')
                    return 1
            keyManager.revoke()
            flushPrint('Master key revoked.')
            return 0

        flushPrint('Choose one of: generate, import, export, status, revoke')
        return 1

    except FingerprintMismatch as e:
        sendException(logger, e, action='Copy the key again from a device where it works.', errorPrefix='Wrong key')
        return 1
    except InvalidKeyFormat as e:
        sendException(logger, e, action='A master key is 43 characters of letters, digits, - and _.',
                      errorPrefix='Invalid key')
        return 1
    except KeyRevocationError as e:
        action = 'Run the command again.' if not e.serverRemoved else 'Delete the local key file manually.'
        sendException(logger, e, action=action, errorPrefix='Revocation incomplete')
        return 1
    except APIError as e:
        sendException(logger, e, errorPrefix='Key operation failed')
        return 1
    finally:
        apiHandler.close()


def processReverseShare(args):
    """
    Create, list and delete reverse shares

    Returns:
        int: Exit code (0 for success, 1 for error)
    """
    apiHandler = createAPIHandler(args)
    if not requireLogin(apiHandler, 'Reverse shares'):
        apiHandler.close()
        return 1

    manager = ReverseShareManager(apiHandler)

    try:
        if args.reverseShareCommand == 'create':
            result = manager.create(
                shareExpiration=args.shareExpiration,
                maxShareSize=args.maxShareSize,
                maxUseCount=args.maxUseCount,
                name=args.name,
                sendEmailNotification=args.sendEmailNotification,
                simplified=args.simplified,
                publicAccess=args.publicAccess,
                encrypt=args.encrypt,
            )
            if args.encrypt and not result['isE2EEncrypted']:
                flushPrint("No master key on this device, run 'ottrbox key generate' to encrypt reverse shares.")
            flushPrint(f"Reverse share link: {result['link']}")
            return 0

        if args.reverseShareCommand == 'list':
            reverseShares = manager.list()
            if not reverseShares:
                flushPrint('No reverse shares.')
            for reverseShare in reverseShares:
                try:
                    link = manager.getLink(reverseShare)
                except MissingKeyError:
                    link = manager.getLink({**reverseShare, 'encryptedReverseShareKey': None}) + ' (key missing)'
                except E2EEError:
                    link = manager.getLink({**reverseShare, 'encryptedReverseShareKey': None}) + ' (key unavailable)'
                flushPrint(f"{reverseShare['id']}  uses left: {reverseShare.get('remainingUses')}  {link}")
                for share in reverseShare.get('shares') or []:
                    try:
                        flushPrint(f"    {manager.getShareLink(share['id'], reverseShare)}")
                    except MissingKeyError:
                        flushPrint(f"    {share['id']} (import your master key to open it)")
                    except E2EEError:
                        flushPrint(f"    {share['id']} (key unavailable)")
            return 0

        if args.reverseShareCommand == 'delete':
            manager.remove(args.reverseShareId)
            flushPrint(f'Reverse share {args.reverseShareId} deleted.')
            return 0

        flushPrint('Choose one of: create, list, delete')
        return 1

    except ValueError as e:
        sendException(logger, e, errorPrefix='Invalid argument')
        return 1
    except E2EEError as e:
        sendException(logger, e, errorPrefix='Encryption error')
        return 1
    except APIError as e:
        sendException(logger, e, errorPrefix='Reverse share operation failed')
        return 1
    finally:
        apiHandler.close()


def processServe(args):
    """Run the reference relay server until Ctrl+C"""
    users = {}
    for entry in args.users:
        token, sep, name = entry.partition('=')
        if not sep or not token or not name:
            flushPrint(f'Error: --user expects TOKEN=NAME, got {entry!r}')
            return 1
        users[token] = name

    appURL = args.appURL or os.getenv('OTTRBOX_APP_URL')
    server = createServer(
        args.port, host=args.host, users=users, appURL=appURL, allowAnonymousShares=args.allowAnonymousShares
    )
    try:
        server.start()
    except KeyboardInterrupt:
        flushPrint('\nStopping relay server...')
    finally:
        server.server_close()
    return 0


COMMANDS = {
    'upload': processUpload,
    'download': processDownload,
    'key': processKey,
    'reverse-share': processReverseShare,
    'serve': processServe,
}


def runCLIMain(argv=None):
    """Run the program in CLI mode using two-phase parsing"""
    parser, globalsParent = configureCLIParser()

    argv = sys.argv[1:] if argv is None else list(argv)
    if not argv:
        parser.print_help()
        return 0

    # Phase 1: global options, wherever they appear
    try:
        globalArgs, rest = globalsParent.parse_known_args(argv)
    except argparse.ArgumentError as e:
        parser.error(str(e))

    exitCode = processGlobalArguments(globalArgs)
    if exitCode is not None:
        return exitCode

    if not rest:
        parser.print_help()
        return 0

    # Phase 2: 'download' before URLs, 'upload' before paths
    argv = preprocessArguments(argv, globalsParent)

    # Phase 3: final parsing with the command determined
    try:
        args = parser.parse_args(argv)
    except argparse.ArgumentError as e:
        parser.error(str(e))

    if args.command is None:
        parser.print_help()
        return 0

    # Subparser defaults would otherwise mask global options given before the command
    for name, value in vars(globalArgs).items():
        if value is not None:
            setattr(args, name, value)

    return COMMANDS[args.command](args)


def main():
    setupSettings()
    setupGracefulShutdown()

    try:
        return runCLIMain()
    except KeyboardInterrupt:
        flushPrint('\nExiting on user request (Ctrl+C)...')
        return 0


def run():
    """Console script entry point"""
    try:
        exitCode = main()
        sys.exit(exitCode or 0)
    except KeyboardInterrupt:
        flushPrint('\nExiting on user request (Ctrl+C)...')
        sys.exit(0)
    except (requests.exceptions.ConnectionError, ConnectionError):
        sendException(logger, 'Failed to connect server')
        sys.exit(1)
    except PermissionError:
        sys.exit(1)
    except Exception as e:
        sendException(logger, e)
        sys.exit(1)


if __name__ == '__main__':
    run()
