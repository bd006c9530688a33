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
ZIP record builders for the streaming encoder

Every record is built as bytes on demand; nothing here does I/O. Entries are
always written with a data descriptor (general purpose bit 3), so local file
headers carry zero CRC/sizes and the real values follow the entry data.

ZIP64 records are only emitted when a value no longer fits the classic
32-bit / 16-bit fields (PKZIP APPNOTE.TXT 4.3.9, 4.3.14 - 4.3.16, 4.5.3).
"""

import datetime
import struct
import zipfile

# Signature constants - not all exposed by the zipfile module
LOCAL_FILE_HEADER_SIGNATURE = struct.unpack('<I', zipfile.stringFileHeader)[0]  # 0x04034b50
CENTRAL_DIR_SIGNATURE = struct.unpack('<I', zipfile.stringCentralDir)[0]  # 0x02014b50
END_OF_CENTRAL_DIR_SIGNATURE = struct.unpack('<I', zipfile.stringEndArchive)[0]  # 0x06054b50
DATA_DESCRIPTOR_SIGNATURE = 0x08074b50
ZIP64_END_OF_CENTRAL_DIR_SIGNATURE = 0x06064b50
ZIP64_END_OF_CENTRAL_DIR_LOCATOR_SIGNATURE = 0x07064b50
ZIP64_EXTRA_TAG = 0x0001

# Compression methods (from zipfile module)
STORE = zipfile.ZIP_STORED  # 0
DEFLATE = zipfile.ZIP_DEFLATED  # 8

# General purpose bit flags
DATA_DESCRIPTOR_FLAG = 0x0008
UTF8_FLAG = 0x0800

VERSION_DEFAULT = 20
VERSION_ZIP64 = 45

ZIP64_LIMIT = 0xFFFFFFFF
ZIP64_COUNT_LIMIT = 0xFFFF
MAX_COMMENT_LENGTH = 0xFFFF

LOCAL_FILE_HEADER_LENGTH = 30
CENTRAL_DIR_HEADER_LENGTH = 46
END_OF_CENTRAL_DIR_LENGTH = 22
ZIP64_END_OF_CENTRAL_DIR_LENGTH = 56
ZIP64_LOCATOR_LENGTH = 20

# 1980-01-01 00:00:00
DOS_EPOCH = (0, (1 << 5) | 1)


def unixToDosTime(timestamp):
    """
    Convert a POSIX timestamp or datetime to DOS (time, date)

    DOS time: bits 0-4 seconds / 2, bits 5-10 minutes, bits 11-15 hours.
    DOS date: bits 0-4 day, bits 5-8 month, bits 9-15 year - 1980.
    Values outside 1980-2107 are clamped; None or invalid input maps to the DOS epoch.
    """
    if timestamp is None:
        return DOS_EPOCH

    try:
        if isinstance(timestamp, datetime.datetime):
            dt = timestamp
        else:
            if timestamp <= 0:
                return DOS_EPOCH
            dt = datetime.datetime.fromtimestamp(timestamp)
    except (ValueError, OSError, OverflowError, TypeError):
        return DOS_EPOCH

    if dt.year < 1980:
        return DOS_EPOCH

    year = min(2107, dt.year)

    dosTime = ((dt.hour & 0x1F) << 11) | ((dt.minute & 0x3F) << 5) | ((dt.second // 2) & 0x1F)
    dosDate = (((year - 1980) & 0x7F) << 9) | ((dt.month & 0x0F) << 5) | (dt.day & 0x1F)

    return dosTime, dosDate


def exceedsZip64Limit(value: int) -> bool:
    return value >= ZIP64_LIMIT


def needsZip64Descriptor(compressedSize: int, uncompressedSize: int) -> bool:
    return exceedsZip64Limit(compressedSize) or exceedsZip64Limit(uncompressedSize)


def needsZip64Archive(entryCount: int, centralDirSize: int, centralDirStart: int) -> bool:
    return (
        entryCount >= ZIP64_COUNT_LIMIT or
        exceedsZip64Limit(centralDirSize) or
        exceedsZip64Limit(centralDirStart)
    )


def makeLocalFileHeader(nameBytes: bytes, method: int, dosTime: int, dosDate: int, offset: int = 0) -> bytes:
    """Local file header with CRC and sizes deferred to the data descriptor"""
    versionNeeded = VERSION_ZIP64 if exceedsZip64Limit(offset) else VERSION_DEFAULT

    return struct.pack(
        '<IHHHHHIIIHH',
        LOCAL_FILE_HEADER_SIGNATURE,
        versionNeeded,
        DATA_DESCRIPTOR_FLAG | UTF8_FLAG,
        method,
        dosTime,
        dosDate,
        0,  # CRC-32 (in data descriptor)
        0,  # Compressed size (in data descriptor)
        0,  # Uncompressed size (in data descriptor)
        len(nameBytes),
        0,  # Extra field length
    ) + nameBytes


def makeDataDescriptor(crc: int, compressedSize: int, uncompressedSize: int) -> bytes:
    """Data descriptor, 8-byte sizes when either size needs ZIP64"""
    if needsZip64Descriptor(compressedSize, uncompressedSize):
        return struct.pack('<IIQQ', DATA_DESCRIPTOR_SIGNATURE, crc & 0xFFFFFFFF, compressedSize, uncompressedSize)

    return struct.pack('<IIII', DATA_DESCRIPTOR_SIGNATURE, crc & 0xFFFFFFFF, compressedSize, uncompressedSize)


def makeCentralDirHeader(
    nameBytes: bytes, method: int, dosTime: int, dosDate: int,
    crc: int, compressedSize: int, uncompressedSize: int, offset: int
) -> bytes:
    """Central directory file header with a ZIP64 extra field when needed"""
    # Fields go in APPNOTE order: uncompressed size, compressed size, local header offset
    extraData = b''
    if exceedsZip64Limit(uncompressedSize):
        extraData += struct.pack('<Q', uncompressedSize)
    if exceedsZip64Limit(compressedSize):
        extraData += struct.pack('<Q', compressedSize)
    if exceedsZip64Limit(offset):
        extraData += struct.pack('<Q', offset)

    extraField = b''
    if extraData:
        extraField = struct.pack('<HH', ZIP64_EXTRA_TAG, len(extraData)) + extraData

    version = VERSION_ZIP64 if extraField else VERSION_DEFAULT

    header = struct.pack(
        '<IHHHHHHIIIHHHHHII',
        CENTRAL_DIR_SIGNATURE,
        version,  # Version made by
        version,  # Version needed to extract
        DATA_DESCRIPTOR_FLAG | UTF8_FLAG,
        method,
        dosTime,
        dosDate,
        crc & 0xFFFFFFFF,
        min(compressedSize, ZIP64_LIMIT),
        min(uncompressedSize, ZIP64_LIMIT),
        len(nameBytes),
        len(extraField),
        0,  # File comment length
        0,  # Disk number start
        0,  # Internal file attributes
        0x20,  # External file attributes (MS-DOS archive)
        min(offset, ZIP64_LIMIT),
    )

    return header + nameBytes + extraField


def makeZip64EndOfCentralDir(entryCount: int, centralDirSize: int, centralDirStart: int) -> bytes:
    return struct.pack(
        '<IQHHIIQQQQ',
        ZIP64_END_OF_CENTRAL_DIR_SIGNATURE,
        ZIP64_END_OF_CENTRAL_DIR_LENGTH - 12,  # Size of the remaining record
        VERSION_ZIP64,  # Version made by
        VERSION_ZIP64,  # Version needed to extract
        0,  # Number of this disk
        0,  # Disk where central directory starts
        entryCount,  # Entries on this disk
        entryCount,  # Total entries
        centralDirSize,
        centralDirStart,
    )


def makeZip64Locator(zip64EocdOffset: int) -> bytes:
    return struct.pack(
        '<IIQI',
        ZIP64_END_OF_CENTRAL_DIR_LOCATOR_SIGNATURE,
        0,  # Disk with the zip64 EOCD
        zip64EocdOffset,
        1,  # Total number of disks
    )


def makeEndOfCentralDir(entryCount: int, centralDirSize: int, centralDirStart: int, comment: bytes = b'') -> bytes:
    """End of central directory; saturated fields point readers at the ZIP64 record"""
    if len(comment) > MAX_COMMENT_LENGTH:
        raise ValueError(f"Archive comment too long: {len(comment)} bytes (max {MAX_COMMENT_LENGTH})")

    entries = min(entryCount, ZIP64_COUNT_LIMIT)

    return struct.pack(
        '<IHHHHIIH',
        END_OF_CENTRAL_DIR_SIGNATURE,
        0,  # Number of this disk
        0,  # Disk where central directory starts
        entries,
        entries,
        min(centralDirSize, ZIP64_LIMIT),
        min(centralDirStart, ZIP64_LIMIT),
        len(comment),
    ) + comment


def makeEndRecords(entryCount: int, centralDirSize: int, centralDirStart: int, comment: bytes = b'') -> bytes:
    """ZIP64 EOCD + locator (when needed) followed by the classic EOCD"""
    records = b''

    if needsZip64Archive(entryCount, centralDirSize, centralDirStart):
        zip64EocdOffset = centralDirStart + centralDirSize
        records += makeZip64EndOfCentralDir(entryCount, centralDirSize, centralDirStart)
        records += makeZip64Locator(zip64EocdOffset)

    return records + makeEndOfCentralDir(entryCount, centralDirSize, centralDirStart, comment)
