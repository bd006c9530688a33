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

from packstream.Kernel import PUBLIC_VERSION, PackEvent
from packstream.Manifest import Entry, InvalidEntryError, Manifest, normalize
from packstream.Encoder import Encoder, EncoderOptions, InvalidOptionError, SourceFailure, StreamEvent
from packstream.Sources import Source, SourceError
from packstream.Stream import ChunkStream, StreamError, buildStream
from packstream.Sinks import sendChunked, writeToFile

__version__ = PUBLIC_VERSION

__all__ = [
    'buildStream', 'ChunkStream', 'StreamError',
    'Manifest', 'Entry', 'normalize', 'InvalidEntryError',
    'Encoder', 'EncoderOptions', 'InvalidOptionError', 'SourceFailure', 'StreamEvent',
    'Source', 'SourceError', 'PackEvent',
    'writeToFile', 'sendChunked',
]
