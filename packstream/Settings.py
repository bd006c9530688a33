#!/usr/bin/env python
# -*- coding: utf-8 -*-
# SPDX-License-Identifier: Apache-2.0
#
# PackStream - Lazy ZIP streams from declarative manifests
# Copyright (C) 2025-2026 PackStream contributors
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

from packstream.Kernel import PUBLIC_VERSION, getLogger
from packstream.Utils import getEnv, formatSize

# Read size used by sources (256 KiB) - one produce step emits at most this much entry data
CHUNK_SIZE = getEnv('PACKSTREAM_CHUNK_SIZE', 256 * 1024)
if CHUNK_SIZE <= 0:
    CHUNK_SIZE = 256 * 1024

STORE = 'store'
DEFLATE = 'deflate'
METHODS = (STORE, DEFLATE)

DEFAULT_METHOD = getEnv('PACKSTREAM_DEFAULT_METHOD', STORE)
if DEFAULT_METHOD not in METHODS:
    DEFAULT_METHOD = STORE

# zlib level for deflate entries (0-9)
DEFLATE_LEVEL = getEnv('PACKSTREAM_DEFLATE_LEVEL', 6)
if not 0 <= DEFLATE_LEVEL <= 9:
    DEFLATE_LEVEL = 6

# What the encoder does when an entry's source cannot be acquired
ON_ERROR_HALT = 'halt'
ON_ERROR_SKIP = 'skip'
ON_ERROR_POLICIES = (ON_ERROR_HALT, ON_ERROR_SKIP)

# HTTP sources
URL_TIMEOUT = getEnv('PACKSTREAM_URL_TIMEOUT', 30.0)
URL_RETRIES = getEnv('PACKSTREAM_URL_RETRIES', 2)
USER_AGENT = f'packstream/{PUBLIC_VERSION}'

logger = getLogger(__name__)

logger.debug(
    f"Settings loaded: chunkSize={formatSize(CHUNK_SIZE)}, method={DEFAULT_METHOD}, "
    f"deflateLevel={DEFLATE_LEVEL}, urlTimeout={URL_TIMEOUT}, urlRetries={URL_RETRIES}"
)
