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

"""
Manifest: the ordered, immutable list of entries an archive is built from

Three input shapes are accepted by normalize():
- a Manifest (returned unchanged)
- a list/tuple of Entry values
- a list/tuple of descriptor mappings, e.g.
  {'source': ('file', '/tmp/a.txt'), 'path': 'docs/a.txt', 'method': 'deflate'}

Mixed lists are fine. Descriptors are validated and converted here, before
any stream exists, so a bad entry fails fast with InvalidEntryError.
"""

import datetime

from collections.abc import Iterator, Mapping
from dataclasses import dataclass, replace

from packstream.Kernel import getLogger
from packstream.Records import MAX_COMMENT_LENGTH
from packstream.Settings import DEFAULT_METHOD, METHODS
from packstream.Sources import IterableSource, Source
from packstream.Utils import describe

logger = getLogger(__name__)

DESCRIPTOR_KEYS = ('source', 'path', 'timestamp', 'method')


class InvalidEntryError(ValueError):
    """Raised when a manifest entry or descriptor has an unrecognized shape"""

    NOT_A_DESCRIPTOR = 'not_a_descriptor'
    UNKNOWN_KEYS = 'unknown_keys'
    MISSING_SOURCE = 'missing_source'
    INVALID_SOURCE = 'invalid_source'
    MISSING_PATH = 'missing_path'
    INVALID_PATH = 'invalid_path'
    INVALID_TIMESTAMP = 'invalid_timestamp'
    INVALID_METHOD = 'invalid_method'

    def __init__(self, message: str, reason: str, index: int = None, entry=None):
        if index is not None:
            message = f"Entry #{index}: {message}"
        super().__init__(message)
        self.reason = reason
        self.index = index
        self.entry = entry


@dataclass(frozen=True)
class Entry:
    """
    One archive member

    Attributes:
        source: Source spec, a (kind, argument) tuple or a Source instance
        path: Member name inside the archive ('/' separated)
        timestamp: datetime, POSIX timestamp, or None for "when it is encoded"
        method: 'store' or 'deflate'
    """
    source: object
    path: str
    timestamp: object = None
    method: str = DEFAULT_METHOD

    def __post_init__(self):
        try:
            Source.check(self.source)
        except ValueError as e:
            raise InvalidEntryError(str(e), InvalidEntryError.INVALID_SOURCE) from e

        # Iterators are single-use: every stream on this entry clones one shared source
        if isinstance(self.source, tuple):
            kind, argument = self.source
            if kind == IterableSource.kind and isinstance(argument, Iterator):
                object.__setattr__(self, 'source', IterableSource(argument))

        if not isinstance(self.path, str) or not self.path:
            raise InvalidEntryError(
                f"Path must be a non-empty string, got {describe(self.path)}", InvalidEntryError.INVALID_PATH
            )

        if '\x00' in self.path:
            raise InvalidEntryError(f"Path contains a NUL character: {self.path!r}", InvalidEntryError.INVALID_PATH)

        try:
            nameLength = len(self.path.encode('utf-8'))
        except UnicodeEncodeError as e:
            raise InvalidEntryError(f"Path is not encodable as UTF-8: {e}", InvalidEntryError.INVALID_PATH) from e

        if nameLength > 0xFFFF:
            raise InvalidEntryError(f"Path too long: {nameLength} bytes", InvalidEntryError.INVALID_PATH)

        timestamp = self.timestamp
        if timestamp is not None and (
            isinstance(timestamp, bool) or not isinstance(timestamp, (datetime.datetime, int, float))
        ):
            raise InvalidEntryError(
                f"Timestamp must be a datetime or POSIX timestamp, got {describe(timestamp)}",
                InvalidEntryError.INVALID_TIMESTAMP
            )

        if self.method not in METHODS:
            raise InvalidEntryError(
                f"Method must be one of {', '.join(METHODS)}, got {describe(self.method)}",
                InvalidEntryError.INVALID_METHOD
            )


def normalizeEntry(item, index: int = None) -> Entry:
    """
    Convert one manifest item into an Entry

    Args:
        item: Entry (passed through) or descriptor mapping
        index: Position in the input, used in error messages

    Raises:
        InvalidEntryError: If the item cannot be classified or converted
    """
    if isinstance(item, Entry):
        return item

    if not isinstance(item, Mapping):
        raise InvalidEntryError(
            f"Expected an Entry or a descriptor mapping, got {describe(item)}",
            InvalidEntryError.NOT_A_DESCRIPTOR, index=index, entry=item
        )

    unknownKeys = [key for key in item if key not in DESCRIPTOR_KEYS]
    if unknownKeys:
        raise InvalidEntryError(
            f"Unknown descriptor keys {', '.join(map(repr, unknownKeys))} "
            f"(recognized: {', '.join(DESCRIPTOR_KEYS)})",
            InvalidEntryError.UNKNOWN_KEYS, index=index, entry=item
        )

    if 'source' not in item:
        raise InvalidEntryError(
            "Descriptor has no 'source'", InvalidEntryError.MISSING_SOURCE, index=index, entry=item
        )

    source = item['source']
    try:
        Source.check(source)
    except ValueError as e:
        raise InvalidEntryError(str(e), InvalidEntryError.INVALID_SOURCE, index=index, entry=item) from e

    path = item.get('path')
    if path is None:
        path = Source.pathFor(source)
        if path is None:
            raise InvalidEntryError(
                f"Descriptor has no 'path' and {describe(source)} cannot name itself",
                InvalidEntryError.MISSING_PATH, index=index, entry=item
            )

    try:
        return Entry(
            source=source,
            path=path,
            timestamp=item.get('timestamp'),
            method=item.get('method', DEFAULT_METHOD),
        )
    except InvalidEntryError as e:
        raise InvalidEntryError(str(e), e.reason, index=index, entry=item) from e


@dataclass(frozen=True)
class Manifest:
    """
    Ordered entries plus archive-level metadata, immutable once created

    Build one with Manifest.create(); append()/prepend() return new manifests.
    """
    entries: tuple = ()
    comment: str = ''

    def __post_init__(self):
        entries = tuple(self.entries)
        for entry in entries:
            if not isinstance(entry, Entry):
                raise TypeError(
                    f"Manifest entries must be Entry values, got {describe(entry)}; "
                    "use Manifest.create() for descriptors"
                )
        object.__setattr__(self, 'entries', entries)

        if not isinstance(self.comment, str):
            raise TypeError(f"Manifest comment must be a string, got {describe(self.comment)}")

        if len(self.comment.encode('utf-8')) > MAX_COMMENT_LENGTH:
            raise ValueError(f"Manifest comment exceeds {MAX_COMMENT_LENGTH} bytes")

    @classmethod
    def create(cls, entries=(), comment: str = '') -> 'Manifest':
        normalized = tuple(normalizeEntry(item, index) for index, item in enumerate(entries))
        logger.debug(f"Manifest created with {len(normalized)} entries")
        return cls(entries=normalized, comment=comment)

    def append(self, item) -> 'Manifest':
        return replace(self, entries=self.entries + (normalizeEntry(item, len(self.entries)),))

    def prepend(self, item) -> 'Manifest':
        return replace(self, entries=(normalizeEntry(item, 0),) + self.entries)

    def __len__(self):
        return len(self.entries)

    def __iter__(self):
        return iter(self.entries)


def normalize(target) -> Manifest:
    """
    Turn any accepted input shape into a Manifest

    Normalizing a Manifest returns the very same object, so
    normalize(normalize(x)) is normalize(x).

    Raises:
        InvalidEntryError: If an item cannot be converted
        TypeError: If target is neither a Manifest nor a list/tuple
    """
    if isinstance(target, Manifest):
        return target

    if isinstance(target, (list, tuple)):
        return Manifest.create(target)

    raise TypeError(f"Expected a Manifest or a list of entries, got {type(target).__name__}")
