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
Lazy chunk stream driven by an encoder

A ChunkStream does nothing until the first pull. It then walks through

    Uninitialized --acquire--> Active --produce*--> Terminal

and releases the encoder's resources exactly once, whether the stream ran
to the end, failed, or was abandoned through close(), a with block or
garbage collection.
"""

from collections.abc import Sequence
from dataclasses import dataclass
from enum import Enum
from typing import Any, Iterator, List

from packstream.Encoder import Continue, Encoder, EncoderOptions, Err, Halt, Ok
from packstream.Kernel import getLogger
from packstream.Manifest import normalize

logger = getLogger(__name__)


class StreamError(RuntimeError):
    """Raised while iterating when the encoder reports a failure; reason is kept untouched"""

    def __init__(self, reason):
        super().__init__(f"Stream failed: {reason}")
        self.reason = reason


class StreamPhase(Enum):
    UNINITIALIZED = 'uninitialized'
    ACTIVE = 'active'
    TERMINAL = 'terminal'


@dataclass(frozen=True)
class Continuation:
    status: Any
    state: Any


class ChunkStream:
    """
    Iterator of chunk batches (lists of bytes)

    The encoder is any object with acquire / produce / release, see Encoder.
    """

    def __init__(self, manifest, options, encoder):
        self.manifest = manifest
        self.options = options
        self.encoder = encoder

        self._phase = StreamPhase.UNINITIALIZED
        self._continuation = None
        self._released = False

    @property
    def phase(self) -> StreamPhase:
        return self._phase

    @property
    def released(self) -> bool:
        return self._released

    def __iter__(self):
        return self

    def __next__(self) -> List[bytes]:
        if self._phase == StreamPhase.TERMINAL:
            raise StopIteration

        if self._phase == StreamPhase.UNINITIALIZED:
            self._acquire()

        return self._produce()

    def _acquire(self):
        try:
            result = self.encoder.acquire(self.manifest, self.options)
        except BaseException:
            self._phase = StreamPhase.TERMINAL
            raise

        if isinstance(result, Err):
            self._phase = StreamPhase.TERMINAL
            logger.debug(f"Stream acquire failed: {result.reason}")
            raise StreamError(result.reason)

        if not isinstance(result, Ok) or not isinstance(result.value, tuple) or len(result.value) != 2:
            # A pair in the wrong container still holds acquired resources
            value = result.value if isinstance(result, Ok) else None
            if isinstance(value, Sequence) and not isinstance(value, (str, bytes)) and len(value) == 2:
                self._continuation = Continuation(value[0], value[1])

            self._release()
            raise TypeError(f"acquire() must return Ok((status, state)) or Err(reason), got {result!r}")

        status, state = result.value
        self._continuation = Continuation(status, state)
        self._phase = StreamPhase.ACTIVE

        logger.debug('Stream acquired')

    def _produce(self) -> List[bytes]:
        continuation = self._continuation

        try:
            result = self.encoder.produce(continuation.status, continuation.state)
        except BaseException:
            self._release()
            raise

        if isinstance(result, Err):
            self._release()
            raise StreamError(result.reason)

        value = result.value if isinstance(result, Ok) else None

        if isinstance(value, Halt):
            self._continuation = Continuation(value.status, value.state)
            self._release()
            raise StopIteration

        if isinstance(value, Continue):
            self._continuation = Continuation(value.status, value.state)
            return list(value.chunks)

        self._release()
        raise TypeError(f"produce() must return Ok(Halt(...)), Ok(Continue(...)) or Err(reason), got {result!r}")

    def _release(self):
        self._phase = StreamPhase.TERMINAL

        continuation = self._continuation
        if self._released or continuation is None:
            return

        self._released = True
        self._continuation = None

        try:
            self.encoder.release(continuation.status, continuation.state)
        except Exception as e:
            logger.error(f"Stream release failed: {e}", exc_info=True)

        logger.debug('Stream released')

    def close(self):
        """Stop the stream early. Releases the encoder when it was acquired; safe to call repeatedly."""
        if self._phase == StreamPhase.ACTIVE:
            self._release()
        else:
            self._phase = StreamPhase.TERMINAL

    def __enter__(self):
        return self

    def __exit__(self, excType, excValue, traceback):
        self.close()
        return False

    def __del__(self):
        # __init__ may not have completed
        if getattr(self, '_phase', None) == StreamPhase.ACTIVE:
            logger.debug('Stream abandoned without close(), releasing')
            self.close()

    def iterChunks(self) -> Iterator[bytes]:
        """Flatten the batches into non-empty byte chunks; closing the generator closes the stream."""
        try:
            for batch in self:
                for chunk in batch:
                    if chunk:
                        yield chunk
        finally:
            self.close()

    def __repr__(self):
        return f"<ChunkStream {self._phase.value} entries={len(self.manifest)}>"


def buildStream(target, options=None, encoder=None) -> ChunkStream:
    """
    Build a lazy ZIP stream

    Args:
        target: Manifest, sequence of Entry values or sequence of descriptor mappings
        options: None, a mapping or EncoderOptions (onError, onEvent, chunkSize)
        encoder: Object with acquire / produce / release, defaults to a new Encoder

    Returns:
        ChunkStream: Nothing is opened or read until the first batch is pulled

    Raises:
        InvalidEntryError: A descriptor is malformed
        InvalidOptionError: An option key is unknown or a value is invalid
    """
    manifest = normalize(target)
    options = EncoderOptions.build(options)

    return ChunkStream(manifest, options, Encoder() if encoder is None else encoder)
