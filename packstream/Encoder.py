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
Streaming ZIP encoder

The encoder is the collaborator behind ChunkStream. It implements three
phases and never raises for expected failures; it returns results instead:

    acquire(manifest, options) -> Ok((status, state)) | Err(reason)
    produce(status, state)     -> Ok(Halt(status, state))
                                | Ok(Continue(chunks, status, state))
                                | Err(reason)
    release(status, state)     -> None, never fails observably

Status flow of the ZIP encoder:

    AWAITING_ENTRY -> ENCODING -> ... -> AWAITING_ENTRY -> JOURNALING -> DONE

Every produce() call does one bounded step (open one source, read one chunk,
write the central directory), so a consumer that stops pulling stops all I/O.
"""

import time
import zlib

from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, List, Optional

from packstream import Records
from packstream.Kernel import PackEvent, getLogger
from packstream.Manifest import Entry, Manifest
from packstream.Settings import (
    CHUNK_SIZE, DEFLATE, DEFLATE_LEVEL, ON_ERROR_HALT, ON_ERROR_POLICIES, ON_ERROR_SKIP
)
from packstream.Sources import Source, SourceError
from packstream.Utils import describe, formatSize

logger = getLogger(__name__)

INVALID_MANIFEST = 'invalid_manifest'
INVALID_OPTIONS = 'invalid_options'


@dataclass(frozen=True)
class Ok:
    value: Any


@dataclass(frozen=True)
class Err:
    reason: Any


@dataclass(frozen=True)
class Halt:
    status: Any
    state: Any


@dataclass(frozen=True)
class Continue:
    chunks: List[bytes]
    status: Any
    state: Any


class InvalidOptionError(ValueError):
    """Raised for unknown option keys or invalid option values"""

    def __init__(self, message: str, option: str = None):
        super().__init__(message)
        self.option = option


@dataclass(frozen=True)
class StreamEvent:
    """
    Progress notification passed to onEvent callbacks and PackEvent subscribers

    name is one of streamStarted, entryStarted, entryUpdated, entryCompleted,
    entryFailed, streamEnded. bytes is the entry's uncompressed byte count for
    entry events and the archive size so far for stream events.
    """
    name: str
    path: Optional[str] = None
    bytes: int = 0
    reason: Any = None


@dataclass(frozen=True)
class SourceFailure:
    """Reason reported when an entry's source cannot be opened or read"""
    path: str
    source: str
    error: BaseException

    def __str__(self):
        return f"{self.path} ({self.source}): {self.error}"


@dataclass(frozen=True)
class EncoderOptions:
    """
    Options of one stream

    Attributes:
        onError: 'halt' aborts the stream when a source cannot be acquired,
                 'skip' leaves the entry out and carries on
        onEvent: Optional callable receiving StreamEvent values
        chunkSize: Bytes read from a source per produce step
    """
    onError: str = ON_ERROR_HALT
    onEvent: Optional[Callable[[StreamEvent], None]] = None
    chunkSize: int = CHUNK_SIZE

    KEYS = ('onError', 'onEvent', 'chunkSize')

    def __post_init__(self):
        if self.onError not in ON_ERROR_POLICIES:
            raise InvalidOptionError(
                f"onError must be one of {', '.join(ON_ERROR_POLICIES)}, got {describe(self.onError)}", 'onError'
            )

        if self.onEvent is not None and not callable(self.onEvent):
            raise InvalidOptionError(f"onEvent must be callable, got {describe(self.onEvent)}", 'onEvent')

        if isinstance(self.chunkSize, bool) or not isinstance(self.chunkSize, int) or self.chunkSize <= 0:
            raise InvalidOptionError(
                f"chunkSize must be a positive integer, got {describe(self.chunkSize)}", 'chunkSize'
            )

    @classmethod
    def build(cls, options=None) -> 'EncoderOptions':
        """
        Build options from None, a mapping or an EncoderOptions

        Raises:
            InvalidOptionError: On unknown keys or invalid values
        """
        if options is None:
            return cls()

        if isinstance(options, cls):
            return options

        if not isinstance(options, Mapping):
            raise InvalidOptionError(f"Options must be a mapping, got {type(options).__name__}")

        unknownKeys = [key for key in options if key not in cls.KEYS]
        if unknownKeys:
            raise InvalidOptionError(
                f"Unknown options {', '.join(map(repr, unknownKeys))} (recognized: {', '.join(cls.KEYS)})",
                unknownKeys[0]
            )

        return cls(**options)


class EncoderStatus(Enum):
    AWAITING_ENTRY = 'awaiting_entry'
    ENCODING = 'encoding'
    JOURNALING = 'journaling'
    DONE = 'done'


@dataclass
class JournalEntry:
    """What the central directory needs to know about a written entry"""
    nameBytes: bytes
    method: int
    dosTime: int
    dosDate: int
    offset: int
    crc: int = 0
    compressedSize: int = 0
    uncompressedSize: int = 0


@dataclass
class CurrentEntry:
    entry: Entry
    source: Source
    journal: JournalEntry
    compressor: Any = None


@dataclass
class EncoderState:
    manifest: Manifest
    options: EncoderOptions
    position: int = 0
    offset: int = 0
    current: Optional[CurrentEntry] = None
    journal: List[JournalEntry] = field(default_factory=list)
    skipped: int = 0


class Encoder:
    """ZIP implementation of the acquire / produce / release phases"""

    def acquire(self, manifest, options):
        if not isinstance(manifest, Manifest):
            logger.error(f"Cannot encode {describe(manifest)}: not a Manifest")
            return Err(INVALID_MANIFEST)

        try:
            options = EncoderOptions.build(options)
        except InvalidOptionError as e:
            logger.error(f"Cannot encode with invalid options: {e}")
            return Err(INVALID_OPTIONS)

        state = EncoderState(manifest=manifest, options=options)

        # Nothing to archive: the stream ends without emitting a batch
        status = EncoderStatus.AWAITING_ENTRY if manifest.entries else EncoderStatus.DONE

        logger.debug(f"Encoder acquired: entries={len(manifest.entries)}, onError={options.onError}")
        self._emit(state, 'streamStarted')

        return Ok((status, state))

    def produce(self, status, state):
        if status == EncoderStatus.AWAITING_ENTRY:
            return self._startEntry(state)
        elif status == EncoderStatus.ENCODING:
            return self._encodeEntry(state)
        elif status == EncoderStatus.JOURNALING:
            return self._writeJournal(state)
        elif status == EncoderStatus.DONE:
            return Ok(Halt(status, state))

        raise ValueError(f"Unknown encoder status: {status}")

    def release(self, status, state):
        try:
            self._closeCurrent(state)
        except Exception as e:
            logger.error(f"Error closing source during release: {e}", exc_info=True)

        completed = status == EncoderStatus.DONE
        logger.debug(
            f"Encoder released: status={status.value}, written={formatSize(state.offset)}, "
            f"entries={len(state.journal)}, skipped={state.skipped}"
        )
        self._emit(state, 'streamEnded', bytes=state.offset, reason=None if completed else 'aborted')

    def _emit(self, state: EncoderState, name: str, **fields):
        event = StreamEvent(name=name, **fields)

        try:
            getattr(PackEvent, name).trigger(sender=self, event=event)
        except Exception as e:
            logger.error(f"Event subscriber failed for {name}: {e}", exc_info=True)

        if state.options.onEvent is None:
            return

        try:
            state.options.onEvent(event)
        except Exception as e:
            logger.error(f"onEvent callback failed for {name}: {e}", exc_info=True)

    def _closeCurrent(self, state: EncoderState):
        current = state.current
        if current is None:
            return

        state.current = None
        current.source.close()

    def _fail(self, state: EncoderState, entry: Entry, source: Source, error: SourceError):
        failure = SourceFailure(path=entry.path, source=source.describe(), error=error)
        self._emit(state, 'entryFailed', path=entry.path, reason=failure)
        return failure

    def _startEntry(self, state: EncoderState):
        entries = state.manifest.entries
        if state.position >= len(entries):
            return Ok(Continue([], EncoderStatus.JOURNALING, state))

        entry = entries[state.position]
        state.position += 1

        source = Source.build(entry.source)
        method = Records.DEFLATE if entry.method == DEFLATE else Records.STORE
        timestamp = time.time() if entry.timestamp is None else entry.timestamp
        dosTime, dosDate = Records.unixToDosTime(timestamp)

        journal = JournalEntry(
            nameBytes=entry.path.encode('utf-8'),
            method=method,
            dosTime=dosTime,
            dosDate=dosDate,
            offset=state.offset,
        )
        compressor = None
        if method == Records.DEFLATE:
            compressor = zlib.compressobj(DEFLATE_LEVEL, zlib.DEFLATED, -zlib.MAX_WBITS)

        # Held in the state before open() so release() closes it whatever happens next
        state.current = CurrentEntry(entry=entry, source=source, journal=journal, compressor=compressor)

        try:
            source.open()
        except SourceError as e:
            self._closeCurrent(state)
            failure = self._fail(state, entry, source, e)

            if state.options.onError == ON_ERROR_SKIP:
                state.skipped += 1
                logger.warning(f"Skipping entry {failure}")
                return Ok(Continue([], EncoderStatus.AWAITING_ENTRY, state))

            logger.error(f"Cannot acquire entry {failure}")
            return Err(failure)

        header = Records.makeLocalFileHeader(journal.nameBytes, method, dosTime, dosDate, journal.offset)
        state.offset += len(header)

        logger.debug(f"Entry started: {entry.path} from {source.describe()} at offset {journal.offset}")
        self._emit(state, 'entryStarted', path=entry.path)

        return Ok(Continue([header], EncoderStatus.ENCODING, state))

    def _encodeEntry(self, state: EncoderState):
        current = state.current
        journal = current.journal

        try:
            data = current.source.read(state.options.chunkSize)
        except SourceError as e:
            # Bytes of this entry are already out, it cannot be skipped any more
            failure = self._fail(state, current.entry, current.source, e)
            logger.error(f"Entry failed while encoding {failure}")
            return Err(failure)

        if data:
            journal.crc = zlib.crc32(data, journal.crc)
            journal.uncompressedSize += len(data)

            if current.compressor is not None:
                data = current.compressor.compress(data)

            journal.compressedSize += len(data)
            state.offset += len(data)

            self._emit(state, 'entryUpdated', path=current.entry.path, bytes=journal.uncompressedSize)
            return Ok(Continue([data] if data else [], EncoderStatus.ENCODING, state))

        chunks = []
        if current.compressor is not None:
            tail = current.compressor.flush()
            if tail:
                journal.compressedSize += len(tail)
                chunks.append(tail)

        chunks.append(Records.makeDataDescriptor(journal.crc, journal.compressedSize, journal.uncompressedSize))
        state.offset += sum(len(chunk) for chunk in chunks)
        state.journal.append(journal)

        self._closeCurrent(state)

        logger.debug(
            f"Entry completed: {current.entry.path}, {formatSize(journal.uncompressedSize)} -> "
            f"{formatSize(journal.compressedSize)}"
        )
        self._emit(state, 'entryCompleted', path=current.entry.path, bytes=journal.uncompressedSize)

        return Ok(Continue(chunks, EncoderStatus.AWAITING_ENTRY, state))

    def _writeJournal(self, state: EncoderState):
        centralDirStart = state.offset
        chunks = [
            Records.makeCentralDirHeader(
                journal.nameBytes, journal.method, journal.dosTime, journal.dosDate,
                journal.crc, journal.compressedSize, journal.uncompressedSize, journal.offset
            )
            for journal in state.journal
        ]
        centralDirSize = sum(len(chunk) for chunk in chunks)

        chunks.append(
            Records.makeEndRecords(
                len(state.journal), centralDirSize, centralDirStart, state.manifest.comment.encode('utf-8')
            )
        )
        state.offset = centralDirStart + sum(len(chunk) for chunk in chunks)

        logger.debug(f"Central directory written: entries={len(state.journal)}, size={centralDirSize}")

        return Ok(Continue(chunks, EncoderStatus.DONE, state))
