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
import json
import os
import logging
import logging.config
import platform

from ottrbox.E2EE import getDefaultCipher
from ottrbox.Kernel import LOG_LEVEL_MAPPING, PUBLIC_VERSION, getLogger, configureGlobalLogLevel, StorageLocator
from ottrbox.Settings import EXPIRATIONS, SettingsGetter
from ottrbox.Utils import flushPrint, getEnv

logger = getLogger(__name__)

COMMAND_NAMES = {'upload', 'download', 'key', 'reverse-share', 'serve'}


def loadEnvFile():
    """
    Load environment variables from .env file using StorageLocator.
    Searches for .env file in standard locations and sets variables in os.environ.
    Only sets variables that are not already defined in os.environ.
    """
    storageLocator = StorageLocator.getInstance()
    envFilePath = storageLocator.findConfig('.env')

    if not os.path.exists(envFilePath):
        return 0

    loadedCount = 0
    try:
        with open(envFilePath, 'r', encoding='utf-8') as f:
            for lineNum, line in enumerate(f, 1):
                line = line.strip()

                if not line or line.startswith('#'):
                    continue

                if '=' not in line:
                    flushPrint(f'Warning: .env line {lineNum}: Invalid format (missing =): {line}')
                    continue

                key, _, value = line.partition('=')
                key = key.strip()
                value = value.strip()

                if not key:
                    flushPrint(f'Warning: .env line {lineNum}: Empty key')
                    continue

                if (value.startswith('"') and value.endswith('"')) or \
                   (value.startswith("'") and value.endswith("'")):
                    value = value[1:-1]

                # Environment takes precedence
                if key not in os.environ:
                    os.environ[key] = value
                    loadedCount += 1
                else:
                    logger.debug(f'.env: Skipped {key} (already set in environment)')

    except (OSError, UnicodeDecodeError) as e:
        flushPrint(f'Error: Unable to load .env file {envFilePath}: {e}')
        logger.error(f'Unable to load .env file: {e}', exc_info=True)
        return 0

    logger.debug(f'Loaded {loadedCount} environment variables from {envFilePath}')
    return loadedCount


def configureLogging(logLevel):
    """Configure logging level from --log-level or OTTRBOX_LOGGING_LEVEL.

    Both can be a level name (DEBUG, INFO, WARNING, ERROR) or a path to a
    logging configuration JSON file.
    """

    def suppressNoisyLogger():
        logging.getLogger('urllib3').setLevel(logging.INFO)
        logging.getLogger('urllib3.connectionpool').setLevel(logging.INFO)
        logging.getLogger('sentry_sdk').setLevel(logging.INFO)

    if logLevel is None:
        logLevel = getEnv('OTTRBOX_LOGGING_LEVEL', None)

    if logLevel is None:
        suppressNoisyLogger()
        return None

    if os.path.isfile(logLevel):
        try:
            with open(logLevel, 'r') as configFile:
                configDict = json.load(configFile)

            logging.config.dictConfig(configDict)
            logger.info(f"Logging configured from file: {logLevel}")
            suppressNoisyLogger()
            return logLevel

        except (json.JSONDecodeError, FileNotFoundError, KeyError, ValueError) as e:
            flushPrint(f"Failed to load logging config from {logLevel}: {e}")
            flushPrint("Falling back to default logging level configuration")

    if logLevel.upper() in LOG_LEVEL_MAPPING:
        configureGlobalLogLevel(LOG_LEVEL_MAPPING[logLevel.upper()])
        logger.info(f"Logging level set to {logLevel}")
    else:
        logger.warning(f"Invalid logging level '{logLevel}', using WARNING as default")
        configureGlobalLogLevel(logging.WARNING)

    suppressNoisyLogger()
    return logLevel


def showVersion():
    flushPrint(f"OttrBox v{PUBLIC_VERSION}")
    flushPrint("")

    cipher = getDefaultCipher()
    flushPrint(f"Crypto backend: {cipher.getBackendName()}")

    settingsGetter = SettingsGetter.getInstance()
    flushPrint(f"Server: {settingsGetter.getServerURL()}")

    uname = platform.uname()
    flushPrint(f"Architecture: {uname.system} {uname.release} {uname.machine}")
    flushPrint(f"Support: {settingsGetter.getSupportURL()}")


def configureCLIParser():
    """Build the parser. Global options live in a parent parser shared by every
    command so they can appear before or after the command name.

    Returns:
        tuple: (parser, globalsParent)
    """

    def validatePositive(valueStr, fieldName):
        try:
            value = int(valueStr)
        except ValueError:
            raise argparse.ArgumentTypeError(f"Invalid {fieldName.lower()} value: {valueStr}")
        if value <= 0:
            raise argparse.ArgumentTypeError(f"{fieldName} must be positive, got {value}")
        return value

    def validatePort(portStr):
        try:
            port = int(portStr)
        except ValueError:
            raise argparse.ArgumentTypeError(f"Invalid port number: {portStr}")
        if not (0 <= port <= 65535):
            raise argparse.ArgumentTypeError(f"Port {port} is out of valid range (0-65535)")
        return port

    def validateMaxUses(valueStr):
        value = validatePositive(valueStr, "Max uses")
        if value > 1000:
            raise argparse.ArgumentTypeError("Max uses must be between 1 and 1000")
        return value

    def validateLogLevel(logLevel):
        if os.path.exists(logLevel):
            return logLevel

        validLevels = ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']
        if logLevel.upper() not in validLevels:
            raise argparse.ArgumentTypeError(
                f"Invalid log level '{logLevel}'. Valid levels are: {', '.join(validLevels)}"
            )
        return logLevel.upper()

    # === 1) Global parameters in a parent parser ===
    globalsParent = argparse.ArgumentParser(add_help=False, exit_on_error=False)
    globalsParent.add_argument("--version", action="store_true", help="Show version information")
    globalsParent.add_argument(
        "--log-level",
        type=validateLogLevel,
        help="Set logging level (DEBUG, INFO, WARNING, ERROR) or path to logging config JSON file (default: WARNING)",
        metavar="LEVEL_OR_FILE",
        dest="logLevel"
    )
    globalsParent.add_argument(
        "--server", metavar="URL", help="OttrBox API server (default: $OTTRBOX_SERVER)", dest="server"
    )
    globalsParent.add_argument(
        "--app-url", metavar="URL", help="Base URL used in generated links (default: the server)", dest="appURL"
    )
    globalsParent.add_argument(
        "--token", metavar="TOKEN", help="Access token (default: $OTTRBOX_TOKEN or the .secret file)", dest="token"
    )

    # === 2) Main parser + subparsers; all inherit from globalsParent ===
    parser = argparse.ArgumentParser(
        prog="ottrbox",
        description="OttrBox shares files through a server that only ever sees ciphertext.",
        parents=[globalsParent],
        exit_on_error=False,
    )
    subparsers = parser.add_subparsers(dest='command', help='Available commands')

    uploadParser = subparsers.add_parser(
        'upload', help='Upload files into a new share', parents=[globalsParent], exit_on_error=False
    )
    uploadParser.add_argument("files", metavar="FILE", nargs='+', help="Files to share")
    uploadParser.add_argument("--name", help="Share name")
    uploadParser.add_argument("--description", help="Share description")
    uploadParser.add_argument(
        "--expiration", choices=list(EXPIRATIONS.keys()), default='never', help="Share expiration (default: never)"
    )
    uploadParser.add_argument(
        "--recipient", action="append", default=[], metavar="EMAIL", dest="recipients",
        help="Notify this address (repeatable)"
    )
    uploadParser.add_argument(
        "--reverse-share", metavar="LINK", dest="reverseShare",
        help="Submit into a reverse share. Encrypted reverse shares need the full link including #key=..."
    )
    uploadParser.add_argument(
        "--chunk-size", type=lambda v: validatePositive(v, "Chunk size"), metavar="BYTES", dest="chunkSize",
        help="Upload chunk size in bytes"
    )
    uploadParser.add_argument(
        "--no-progress", action="store_true", default=False, dest="noProgress",
        help="Log progress lines instead of bars"
    )
    uploadParser.add_argument("--json", metavar="JSON_FILE", help="Write the share link and id to a JSON file")

    downloadParser = subparsers.add_parser(
        'download', help='Download and decrypt a share', parents=[globalsParent], exit_on_error=False
    )
    downloadParser.add_argument("url", metavar="LINK", help="Share link, including #key=... for encrypted shares")
    downloadParser.add_argument("--output", "-o", metavar="DIR", default='.', help="Output directory (default: .)")

    def addAction(actionSubparsers, name, helpText):
        return actionSubparsers.add_parser(name, help=helpText, parents=[globalsParent], exit_on_error=False)

    keyParser = subparsers.add_parser(
        'key', help='Manage your master encryption key', parents=[globalsParent], exit_on_error=False
    )
    keySubparsers = keyParser.add_subparsers(dest='keyCommand', help='Key actions')
    generateParser = addAction(keySubparsers, 'generate', 'Create a master key and register its fingerprint')
    generateParser.add_argument("--force", action="store_true", default=False, help="Replace an existing local key")
    importParser = addAction(keySubparsers, 'import', 'Import a master key from another device')
    importParser.add_argument("key", metavar="KEY", nargs='?', help="Encoded key (prompted when omitted)")
    addAction(keySubparsers, 'export', 'Print the local master key')
    addAction(keySubparsers, 'status', 'Show whether a key is registered and present locally')
    revokeParser = addAction(keySubparsers, 'revoke', 'Delete the key from the server and this device')
    revokeParser.add_argument("--yes", action="store_true", default=False, help="Do not ask for confirmation")

    reverseShareParser = subparsers.add_parser(
        'reverse-share', help='Manage reverse shares', parents=[globalsParent], exit_on_error=False
    )
    reverseShareSubparsers = reverseShareParser.add_subparsers(dest='reverseShareCommand', help='Reverse share actions')
    createParser = addAction(reverseShareSubparsers, 'create', 'Create a reverse share link')
    createParser.add_argument("--name", help="Reverse share name")
    createParser.add_argument(
        "--expiration", choices=list(EXPIRATIONS.keys()), default='never', dest="shareExpiration",
        help="Expiration of shares submitted through it (default: never)"
    )
    createParser.add_argument(
        "--max-size", type=lambda v: validatePositive(v, "Max size"), metavar="BYTES", dest="maxShareSize",
        help="Maximum size of a submitted share"
    )
    createParser.add_argument(
        "--max-uses", type=validateMaxUses, default=1, metavar="N", dest="maxUseCount",
        help="How many shares can be submitted (1-1000, default: 1)"
    )
    createParser.add_argument("--simplified", action="store_true", default=False, help="Simplified upload page")
    createParser.add_argument(
        "--private", action="store_false", default=True, dest="publicAccess", help="Only you can see submitted shares"
    )
    createParser.add_argument(
        "--notify", action="store_true", default=False, dest="sendEmailNotification",
        help="Email me when a share is submitted"
    )
    createParser.add_argument(
        "--no-encrypt", action="store_false", default=True, dest="encrypt", help="Do not encrypt submitted shares"
    )
    addAction(reverseShareSubparsers, 'list', 'List your reverse shares and their submitted shares')
    deleteParser = addAction(reverseShareSubparsers, 'delete', 'Delete a reverse share')
    deleteParser.add_argument("reverseShareId", metavar="ID", help="Reverse share id")

    serveParser = subparsers.add_parser(
        'serve', help='Run the in-memory reference relay server', parents=[globalsParent], exit_on_error=False
    )
    serveParser.add_argument("--port", type=validatePort, default=3000, help="Port to listen on (default: 3000)")
    serveParser.add_argument("--host", default='127.0.0.1', help="Address to bind (default: 127.0.0.1)")
    serveParser.add_argument(
        "--user", action="append", default=[], metavar="TOKEN=NAME", dest="users",
        help="Accept TOKEN as a bearer token for user NAME (repeatable)"
    )
    serveParser.add_argument(
        "--no-anonymous", action="store_false", default=True, dest="allowAnonymousShares",
        help="Reject shares from unauthenticated clients"
    )

    return parser, globalsParent


def preprocessArguments(argv, globalsParent):
    """Insert 'download' before a bare URL and 'upload' before bare file paths."""
    argv = list(argv)

    globalOptionsWithValues = set()
    globalOptions = set()
    for action in globalsParent._actions:
        for opt in action.option_strings:
            globalOptions.add(opt)
            if action.nargs != 0:
                globalOptionsWithValues.add(opt)

    i = 0
    while i < len(argv):
        arg = argv[i]
        optName = arg.split('=', 1)[0]
        if optName not in globalOptions:
            break
        i += 2 if (arg in globalOptionsWithValues and '=' not in arg) else 1

    if i < len(argv) and argv[i] not in COMMAND_NAMES and not argv[i].startswith('-'):
        firstArg = argv[i]
        if firstArg.startswith('https://') or firstArg.startswith('http://'):
            argv.insert(i, 'download')
            logger.debug("Auto-inserted 'download' command before URL")
        else:
            argv.insert(i, 'upload')
            logger.debug("Auto-inserted 'upload' command before file path")

    return argv


def processGlobalArguments(globalArgs):
    """Apply global options. Returns an exit code when the program should stop."""
    configureLogging(globalArgs.logLevel)

    settingsGetter = SettingsGetter.getInstance()
    if globalArgs.server:
        settingsGetter.setServerURL(globalArgs.server)
        if not globalArgs.appURL and not os.getenv('OTTRBOX_APP_URL'):
            settingsGetter.setAppURL(globalArgs.server)
    if globalArgs.appURL:
        settingsGetter.setAppURL(globalArgs.appURL)

    if globalArgs.version:
        showVersion()
        return 0

    return None
