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
import uuid

from http import HTTPStatus
from urllib.parse import quote

from packstream.Kernel import getLogger
from packstream.Utils import formatSize

logger = getLogger(__name__)

DISCONNECT_ERRORS = (ConnectionResetError, ConnectionAbortedError, ConnectionError, BrokenPipeError)


def writeToFile(stream, path) -> int:
    """
    Write a stream to path through a temporary file, renamed into place on success

    Returns:
        int: Bytes written

    Raises:
        StreamError / OSError: The stream or the file failed; no file is left behind
    """
    path = os.fspath(path)

    # Unique per concurrent writer
    tmpPath = f"{path}.tmp.{os.getpid()}.{threading.get_ident()}.{uuid.uuid4().hex}"
    written = 0

    try:
        os.makedirs(os.path.dirname(path) or '.', exist_ok=True)
        with stream, open(tmpPath, 'wb') as f:
            for chunk in stream.iterChunks():
                f.write(chunk)
                written += len(chunk)
        os.replace(tmpPath, path)
    except BaseException:
        try:
            if os.path.exists(tmpPath):
                os.unlink(tmpPath)
        except OSError as e:
            logger.debug(f"Failed to cleanup temp file {tmpPath}: {e}")
        raise

    logger.debug(f"Wrote {formatSize(written)} to {path}")
    return written


def sendChunked(handler, stream, fileName: str) -> int:
    """
    Send a stream as a chunked application/zip download through a BaseHTTPRequestHandler

    The handler must speak HTTP/1.1 (protocol_version = 'HTTP/1.1'). The first
    batch is pulled before the status line, so a stream that fails to start is
    answered with 500. A client disconnect closes the stream and is logged; any
    later failure closes the stream and propagates after the connection is
    marked for closing.

    Returns:
        int: Archive bytes sent, framing excluded
    """
    sent = 0

    with stream:
        chunks = stream.iterChunks()
        try:
            pending = next(chunks, None)
        except Exception as e:
            logger.error(f"Failed to start {fileName}: {e}")
            handler.send_response(HTTPStatus.INTERNAL_SERVER_ERROR)
            handler.send_header('Content-Length', '0')
            handler.end_headers()
            raise

        handler.send_response(HTTPStatus.OK)
        handler.send_header('Content-Type', 'application/zip')
        handler.send_header('Content-Disposition', f"attachment; filename*=UTF-8''{quote(fileName)}")
        handler.send_header('Transfer-Encoding', 'chunked')
        handler.end_headers()

        try:
            while pending is not None:
                handler.wfile.write(b'%x\r\n' % len(pending))
                handler.wfile.write(pending)
                handler.wfile.write(b'\r\n')
                sent += len(pending)
                pending = next(chunks, None)

            handler.wfile.write(b'0\r\n\r\n')
            handler.wfile.flush()
        except DISCONNECT_ERRORS as e:
            handler.close_connection = True
            logger.warning(f"Client disconnected after {formatSize(sent)} of {fileName}: {e}")
            return sent
        except BaseException:
            # Headers are already sent, only a dropped connection signals failure
            handler.close_connection = True
            raise

    logger.debug(f"Sent {formatSize(sent)} as {fileName}")
    return sent
