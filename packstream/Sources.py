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

import os
import threading

from collections.abc import Iterator
from typing import Optional
from urllib.parse import urlparse, unquote

import requests

from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from packstream.Kernel import getLogger
from packstream.Settings import URL_TIMEOUT, URL_RETRIES, USER_AGENT
from packstream.Utils import describe

logger = getLogger(__name__)

# Guards the test-and-set of single-use iterable claims
_claimLock = threading.Lock()


class SourceError(RuntimeError):
    """Raised when a source cannot be opened or read"""

    def __init__(self, message: str, source: 'Source' = None, cause: BaseException = None):
        super().__init__(message)
        self.source = source
        self.cause = cause


class Source:
    """
    Where the content of one archive entry comes from

    A source is described in a manifest by a (kind, argument) tuple, e.g.
    ('file', '/tmp/report.pdf'), or by a Source instance. The encoder builds
    the source when the entry is reached, then calls open(), read(size)
    until it returns b'', and close().
    """
    kind = None

    def __init__(self, argument):
        self.argument = argument

    @classmethod
    def validateArgument(cls, argument):
        """
        Shape check of the source argument, no I/O

        Raises:
            ValueError: If the argument cannot describe this kind of source
        """
        raise NotImplementedError

    @classmethod
    def defaultPath(cls, argument) -> Optional[str]:
        """Archive path to use when the entry does not name one (None if it must)"""
        return None

    @staticmethod
    def check(spec):
        """
        Validate a source spec without touching the source

        Raises:
            ValueError: If the spec is not a Source or a known (kind, argument) tuple
        """
        if isinstance(spec, Source):
            return

        if not isinstance(spec, tuple) or len(spec) != 2:
            raise ValueError(f"Source must be a (kind, argument) tuple or a Source, got {describe(spec)}")

        kind, argument = spec
        sourceClass = SOURCE_TYPES.get(kind)
        if sourceClass is None:
            raise ValueError(f"Unknown source kind {kind!r}, expected one of {', '.join(SOURCE_TYPES)}")

        sourceClass.validateArgument(argument)

    @staticmethod
    def pathFor(spec) -> Optional[str]:
        """Default archive path for a validated spec"""
        if isinstance(spec, Source):
            return spec.defaultPath(spec.argument)

        kind, argument = spec
        return SOURCE_TYPES[kind].defaultPath(argument)

    @staticmethod
    def build(spec) -> 'Source':
        """
        Factory method to create the Source for a spec

        Every call gives a fresh instance: tuple specs are instantiated and
        Source instances are cloned, so streams sharing a manifest never share
        open handles or read positions.
        """
        if isinstance(spec, Source):
            return spec.clone()

        Source.check(spec)

        kind, argument = spec
        return SOURCE_TYPES[kind](argument)

    def clone(self) -> 'Source':
        """Unopened copy of this source; subclasses with extra constructor arguments override it"""
        return type(self)(self.argument)

    @property
    def consumed(self) -> bool:
        """Whether the source has been read and cannot be read again"""
        return False

    def open(self):
        raise NotImplementedError

    def read(self, size: int) -> bytes:
        """
        Read up to size bytes (a hint for iterable and URL sources)

        Returns:
            bytes: Next piece of content, b'' at the end
        """
        raise NotImplementedError

    def close(self):
        pass

    def describe(self) -> str:
        return f"{self.kind}:{describe(self.argument)}"

    def __repr__(self):
        return f"<{type(self).__name__} {self.describe()}>"


class FileSource(Source):
    """Local file, read sequentially"""
    kind = 'file'

    def __init__(self, argument):
        super().__init__(argument)
        self.path = os.fspath(argument)
        self._file = None

    @classmethod
    def validateArgument(cls, argument):
        if not isinstance(argument, (str, os.PathLike)):
            raise ValueError(f"File source needs a path, got {describe(argument)}")

        if not os.fspath(argument):
            raise ValueError("File source path is empty")

    @classmethod
    def defaultPath(cls, argument) -> Optional[str]:
        return os.path.basename(os.fspath(argument)) or None

    def open(self):
        try:
            self._file = open(self.path, 'rb')
        except OSError as e:
            raise SourceError(f"Cannot open file {self.path}: {e}", source=self, cause=e) from e

    def read(self, size: int) -> bytes:
        try:
            return self._file.read(size)
        except OSError as e:
            raise SourceError(f"Error reading file {self.path}: {e}", source=self, cause=e) from e

    def close(self):
        if self._file is not None:
            self._file.close()
            self._file = None


class URLSource(Source):
    """
    Remote object fetched with a streaming HTTP GET

    Connection failures, timeouts and non-2xx responses are source failures.
    Transient 5xx responses and connection errors are retried by urllib3
    (PACKSTREAM_URL_RETRIES) before the failure is reported.
    """
    kind = 'url'

    RETRY_STATUSES = (429, 502, 503, 504)

    def __init__(self, argument, timeout: float = None, retries: int = None):
        super().__init__(argument)
        self.url = argument
        self.timeout = URL_TIMEOUT if timeout is None else timeout
        self.retries = URL_RETRIES if retries is None else retries
        self._session = None
        self._response = None
        self._chunks = None

    @classmethod
    def validateArgument(cls, argument):
        if not isinstance(argument, str):
            raise ValueError(f"URL source needs a string URL, got {describe(argument)}")

        parsed = urlparse(argument)
        if parsed.scheme not in ('http', 'https'):
            raise ValueError(f"Invalid scheme '{parsed.scheme}' (expected http or https): {argument}")

        if not parsed.netloc:
            raise ValueError(f"Missing host in URL: {argument}")

    @classmethod
    def defaultPath(cls, argument) -> Optional[str]:
        return os.path.basename(unquote(urlparse(argument).path)) or None

    def clone(self) -> 'URLSource':
        return URLSource(self.argument, timeout=self.timeout, retries=self.retries)

    def _makeSession(self) -> requests.Session:
        retry = Retry(
            total=self.retries,
            connect=self.retries,
            read=self.retries,
            status=self.retries,
            backoff_factor=0.5,
            status_forcelist=self.RETRY_STATUSES,
            allowed_methods={'GET'},
            raise_on_status=False,  # Final status is checked by raise_for_status()
        )
        adapter = HTTPAdapter(max_retries=retry)

        session = requests.Session()
        session.mount('http://', adapter)
        session.mount('https://', adapter)
        session.headers['User-Agent'] = USER_AGENT
        return session

    def open(self):
        self._session = self._makeSession()

        try:
            self._response = self._session.get(self.url, stream=True, timeout=self.timeout)
            self._response.raise_for_status()
        except requests.exceptions.RequestException as e:
            self.close()
            raise SourceError(f"Cannot fetch {self.url}: {e}", source=self, cause=e) from e

        logger.debug(
            f"Fetching {self.url}: status={self._response.status_code}, "
            f"length={self._response.headers.get('Content-Length', 'unknown')}"
        )

    def read(self, size: int) -> bytes:
        try:
            if self._chunks is None:
                self._chunks = self._response.iter_content(chunk_size=size)

            for chunk in self._chunks:
                if chunk:
                    return chunk
        except requests.exceptions.RequestException as e:
            raise SourceError(f"Error reading {self.url}: {e}", source=self, cause=e) from e

        return b''

    def close(self):
        if self._response is not None:
            self._response.close()
            self._response = None

        if self._session is not None:
            self._session.close()
            self._session = None

        self._chunks = None


class BytesSource(Source):
    """In-memory buffer, served without copying it up front"""
    kind = 'bytes'

    def __init__(self, argument):
        super().__init__(argument)
        self._view = None
        self._position = 0

    @classmethod
    def validateArgument(cls, argument):
        if not isinstance(argument, (bytes, bytearray, memoryview)):
            raise ValueError(f"Bytes source needs bytes, bytearray or memoryview, got {type(argument).__name__}")

    def open(self):
        self._view = memoryview(self.argument).cast('B')
        self._position = 0

    def read(self, size: int) -> bytes:
        chunk = bytes(self._view[self._position:self._position + size])
        self._position += len(chunk)
        return chunk

    def close(self):
        if self._view is not None:
            self._view.release()
            self._view = None

    def describe(self) -> str:
        return f"{self.kind}:<{len(self.argument)} bytes>"


class RandomSource(Source):
    """Given number of random bytes (os.urandom), handy for load tests"""
    kind = 'random'

    def __init__(self, argument):
        super().__init__(argument)
        self._remaining = 0

    @classmethod
    def validateArgument(cls, argument):
        if isinstance(argument, bool) or not isinstance(argument, int) or argument < 0:
            raise ValueError(f"Random source needs a non-negative byte count, got {describe(argument)}")

    def open(self):
        self._remaining = self.argument

    def read(self, size: int) -> bytes:
        size = min(size, self._remaining)
        self._remaining -= size
        return os.urandom(size) if size else b''


class IterableSource(Source):
    """
    Any iterable of bytes-like chunks

    Chunks are passed through as they come; empty chunks are skipped. An
    iterator (e.g. a generator) can only be read once, by any stream: clones
    share one claim, and a manifest entry built from an iterator holds a
    single IterableSource that every stream clones. A re-iterable container
    like a list can back several streams.
    """
    kind = 'iterable'

    def __init__(self, argument, claim: threading.Event = None):
        super().__init__(argument)
        self._iterator = None
        self._claim = threading.Event() if claim is None else claim

    @classmethod
    def validateArgument(cls, argument):
        if isinstance(argument, (str, bytes, bytearray, memoryview)):
            raise ValueError(f"Iterable source needs an iterable of chunks, got {type(argument).__name__}")

        if not hasattr(argument, '__iter__'):
            raise ValueError(f"Iterable source needs an iterable of chunks, got {describe(argument)}")

    @property
    def singleUse(self) -> bool:
        return isinstance(self.argument, Iterator)

    @property
    def consumed(self) -> bool:
        return self._claim.is_set()

    def clone(self) -> 'IterableSource':
        return IterableSource(self.argument, claim=self._claim)

    def open(self):
        if self.singleUse:
            with _claimLock:
                if self._claim.is_set():
                    raise SourceError(
                        f"Iterable already consumed (single-use only): {self.describe()}", source=self
                    )
                self._claim.set()

        try:
            self._iterator = iter(self.argument)
        except TypeError as e:
            raise SourceError(f"Cannot iterate {self.describe()}: {e}", source=self, cause=e) from e

    def read(self, size: int) -> bytes:
        while True:
            try:
                chunk = next(self._iterator)
            except StopIteration:
                return b''
            except Exception as e:
                raise SourceError(f"Error iterating {self.describe()}: {e}", source=self, cause=e) from e

            if not isinstance(chunk, (bytes, bytearray, memoryview)):
                raise SourceError(
                    f"Iterable produced {type(chunk).__name__} instead of bytes: {self.describe()}", source=self
                )

            if chunk:
                return bytes(chunk)

    def close(self):
        closeIterator = getattr(self._iterator, 'close', None)
        if closeIterator is not None:
            closeIterator()
        self._iterator = None


class DynamicSource(Source):
    """
    Source resolved only when its entry is reached

    The argument is a zero-argument callable returning another source spec,
    so expensive lookups (signed URLs, temporary files) happen lazily.
    """
    kind = 'dynamic'

    def __init__(self, argument):
        super().__init__(argument)
        self._inner = None

    @classmethod
    def validateArgument(cls, argument):
        if not callable(argument):
            raise ValueError(f"Dynamic source needs a callable, got {describe(argument)}")

    def open(self):
        try:
            spec = self.argument()
        except Exception as e:
            raise SourceError(f"Dynamic source resolver failed: {e}", source=self, cause=e) from e

        try:
            self._inner = Source.build(spec)
        except ValueError as e:
            raise SourceError(f"Dynamic source resolved to an invalid spec: {e}", source=self, cause=e) from e

        logger.debug(f"Dynamic source resolved to {self._inner.describe()}")
        self._inner.open()

    def read(self, size: int) -> bytes:
        return self._inner.read(size)

    def close(self):
        if self._inner is not None:
            self._inner.close()
            self._inner = None

    def describe(self) -> str:
        name = getattr(self.argument, '__qualname__', None) or describe(self.argument)
        return f"{self.kind}:{name}"


SOURCE_TYPES = {
    sourceClass.kind: sourceClass
    for sourceClass in (FileSource, URLSource, BytesSource, RandomSource, IterableSource, DynamicSource)
}
