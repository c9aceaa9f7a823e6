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
import platform
import tempfile

# Keys written by tests must never land in the user's real storage directory.
STORAGE_DIR = tempfile.mkdtemp(prefix='ottrbox-test-')
os.environ['OTTRBOX_STORAGE_LOCATION'] = STORAGE_DIR
os.environ.pop('OTTRBOX_TOKEN', None)
os.environ.pop('RAISE_EXCEPTION', None)

# Initialize SettingsGetter
from ottrbox.Settings import SettingsGetter

settingsGetter = SettingsGetter(platform=platform.system(), serverURL='http://127.0.0.1:9', appURL='http://127.0.0.1:9')
