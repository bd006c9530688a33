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

import gc
import unittest

from packstream import buildStream, InvalidEntryError, InvalidOptionError
from packstream.Encoder import Continue, EncoderOptions, Err, Halt, Ok
from packstream.Manifest import Manifest
from packstream.Stream import ChunkStream, StreamError, StreamPhase


class FakeEncoder:
    """
    Scripted encoder recording every phase call

    Status is the index of the next batch; state is a fresh dict per step so
    tests can check that the driver hands back exactly what it was given.
    """

    def __init__(self, batches=(), acquireReason=None, failAt=None, failReason='boom', raiseAt=None,
                 releaseError=None, result=None, acquireShape=None):
        self.batches = list(batches)
        self.acquireReason = acquireReason
        self.failAt = failAt
        self.failReason = failReason
        self.raiseAt = raiseAt
        self.releaseError = releaseError
        self.result = result
        self.acquireShape = acquireShape

        self.calls = []
        self.manifests = []
        self.producedStates = []
        self.receivedStates = []
        self.releases = []

    def acquire(self, manifest, options):
        self.calls.append('acquire')
        self.manifests.append(manifest)

        if self.acquireReason is not None:
            return Err(self.acquireReason)

        state = {'step': 0}
        self.producedStates.append(state)
        if self.acquireShape is not None:
            return self.acquireShape(0, state)

        return Ok((0, state))

    def produce(self, status, state):
        self.calls.append(('produce', status))
        self.receivedStates.append(state)

        if self.result is not None:
            return self.result

        if status == self.failAt:
            return Err(self.failReason)

        if status == self.raiseAt:
            raise RuntimeError('produce exploded')

        if status >= len(self.batches):
            return Ok(Halt('halted', state))

        nextState = {'step': status + 1}
        self.producedStates.append(nextState)
        return Ok(Continue(list(self.batches[status]), status + 1, nextState))

    def release(self, status, state):
        self.calls.append('release')
        self.releases.append((status, state))

        if self.releaseError is not None:
            raise self.releaseError


DESCRIPTOR = {'source': ('bytes', b'payload'), 'path': 'payload.bin'}


class ChunkStreamTest(unittest.TestCase):
    """Lifecycle of the lazy stream against a scripted encoder"""

    def testConstructionIsLazy(self):
        """Building a stream calls no encoder phase"""
        encoder = FakeEncoder(batches=[[b'a']])
        stream = buildStream([DESCRIPTOR], encoder=encoder)

        self.assertEqual(encoder.calls, [])
        self.assertEqual(stream.phase, StreamPhase.UNINITIALIZED)
        self.assertFalse(stream.released)

    def testEmptyInputDrains(self):
        """An empty list gives zero batches and one release"""
        encoder = FakeEncoder()
        stream = buildStream([], encoder=encoder)

        self.assertEqual(list(stream), [])
        self.assertEqual(encoder.releases, [('halted', {'step': 0})])
        self.assertEqual(stream.phase, StreamPhase.TERMINAL)

    def testEmptyInputWithDefaultEncoder(self):
        """The ZIP encoder also ends an empty manifest without a batch"""
        stream = buildStream([])

        self.assertEqual(list(stream), [])
        self.assertTrue(stream.released)

    def testOneBatchThenHalt(self):
        """One batch, end of stream, release with the final state"""
        encoder = FakeEncoder(batches=[[b'PK', b'data']])
        stream = buildStream([DESCRIPTOR], encoder=encoder)

        self.assertEqual(list(stream), [[b'PK', b'data']])
        self.assertEqual(encoder.releases, [('halted', {'step': 1})])
        self.assertEqual(encoder.calls, ['acquire', ('produce', 0), ('produce', 1), 'release'])

    def testEmptyBatchesAreEmitted(self):
        """A Continue without chunks is still a batch"""
        encoder = FakeEncoder(batches=[[], [b'a'], []])
        self.assertEqual(list(buildStream([DESCRIPTOR], encoder=encoder)), [[], [b'a'], []])

    def testAcquireFailure(self):
        """A failed acquire surfaces as StreamError on the first pull, without release"""
        encoder = FakeEncoder(batches=[[b'a']], acquireReason='unreachable_source')
        stream = buildStream([DESCRIPTOR], encoder=encoder)

        with self.assertRaises(StreamError) as cm:
            next(stream)

        self.assertEqual(cm.exception.reason, 'unreachable_source')
        self.assertEqual(encoder.calls, ['acquire'])
        self.assertEqual(encoder.releases, [])
        self.assertEqual(stream.phase, StreamPhase.TERMINAL)

        with self.assertRaises(StopIteration):
            next(stream)

        stream.close()
        self.assertEqual(encoder.releases, [])

    def testProduceFailure(self):
        """A failed produce releases once with the last state before the failure"""
        encoder = FakeEncoder(batches=[[b'a'], [b'b'], [b'c']], failAt=2, failReason={'code': 'disk'})
        stream = buildStream([DESCRIPTOR], encoder=encoder)

        self.assertEqual(next(stream), [b'a'])
        self.assertEqual(next(stream), [b'b'])

        with self.assertRaises(StreamError) as cm:
            next(stream)

        self.assertEqual(cm.exception.reason, {'code': 'disk'})
        self.assertEqual(encoder.releases, [(2, {'step': 2})])

        with self.assertRaises(StopIteration):
            next(stream)

        stream.close()
        self.assertEqual(len(encoder.releases), 1)

    def testProduceExceptionPropagates(self):
        """An exception escaping produce releases first, then propagates untouched"""
        encoder = FakeEncoder(batches=[[b'a'], [b'b']], raiseAt=1)
        stream = buildStream([DESCRIPTOR], encoder=encoder)

        next(stream)
        with self.assertRaises(RuntimeError) as cm:
            next(stream)

        self.assertNotIsInstance(cm.exception, StreamError)
        self.assertEqual(encoder.releases, [(1, {'step': 1})])
        self.assertEqual(stream.phase, StreamPhase.TERMINAL)

    def testMalformedResult(self):
        """A produce result that is neither Ok nor Err is a TypeError, after release"""
        encoder = FakeEncoder(result='garbage')
        stream = buildStream([DESCRIPTOR], encoder=encoder)

        with self.assertRaises(TypeError):
            next(stream)

        self.assertEqual(len(encoder.releases), 1)

    def testMalformedAcquireReleasesPair(self):
        """An acquire pair in the wrong container is released before the TypeError"""
        encoder = FakeEncoder(batches=[[b'a']], acquireShape=lambda status, state: Ok([status, state]))
        stream = buildStream([DESCRIPTOR], encoder=encoder)

        with self.assertRaises(TypeError):
            next(stream)

        self.assertEqual(encoder.calls, ['acquire', 'release'])
        self.assertEqual(len(encoder.releases), 1)
        self.assertEqual(encoder.releases[0][0], 0)
        self.assertIs(encoder.releases[0][1], encoder.producedStates[0])
        self.assertEqual(stream.phase, StreamPhase.TERMINAL)

    def testMalformedAcquireWithoutPair(self):
        """An acquire value that holds no pair has nothing to release"""
        encoder = FakeEncoder(batches=[[b'a']], acquireShape=lambda status, state: Ok('garbage'))
        stream = buildStream([DESCRIPTOR], encoder=encoder)

        with self.assertRaises(TypeError):
            next(stream)

        self.assertEqual(encoder.releases, [])
        self.assertEqual(stream.phase, StreamPhase.TERMINAL)

    def testStatePassedThrough(self):
        """The driver hands back the exact state objects the encoder returned"""
        encoder = FakeEncoder(batches=[[b'a'], [b'b'], [b'c']])
        list(buildStream([DESCRIPTOR], encoder=encoder))

        self.assertEqual(len(encoder.receivedStates), 4)
        for produced, received in zip(encoder.producedStates, encoder.receivedStates):
            self.assertIs(produced, received)

        self.assertIs(encoder.releases[0][1], encoder.producedStates[-1])

    def testCloseAfterFirstBatch(self):
        """Stopping after the first batch releases exactly once"""
        encoder = FakeEncoder(batches=[[b'a'], [b'b'], [b'c']])
        stream = buildStream([DESCRIPTOR], encoder=encoder)

        next(stream)
        stream.close()
        stream.close()

        self.assertEqual(encoder.releases, [(1, {'step': 1})])
        self.assertEqual(list(stream), [])

    def testCloseBeforeFirstPull(self):
        """Closing an unstarted stream never touches the encoder"""
        encoder = FakeEncoder(batches=[[b'a']])
        stream = buildStream([DESCRIPTOR], encoder=encoder)

        stream.close()

        self.assertEqual(encoder.calls, [])
        self.assertEqual(list(stream), [])

    def testContextManager(self):
        """Leaving a with block releases an abandoned stream"""
        encoder = FakeEncoder(batches=[[b'a'], [b'b']])

        with buildStream([DESCRIPTOR], encoder=encoder) as stream:
            next(stream)

        self.assertEqual(len(encoder.releases), 1)
        self.assertTrue(stream.released)

    def testContextManagerOnError(self):
        """An exception inside the with block still releases and propagates"""
        encoder = FakeEncoder(batches=[[b'a'], [b'b']])

        with self.assertRaises(KeyError):
            with buildStream([DESCRIPTOR], encoder=encoder) as stream:
                next(stream)
                raise KeyError('consumer failed')

        self.assertEqual(len(encoder.releases), 1)

    def testGarbageCollectedStreamReleases(self):
        """Dropping the last reference to an active stream releases it"""
        encoder = FakeEncoder(batches=[[b'a'], [b'b']])
        stream = buildStream([DESCRIPTOR], encoder=encoder)
        next(stream)

        del stream
        gc.collect()

        self.assertEqual(encoder.releases, [(1, {'step': 1})])

    def testReleaseErrorIsLogged(self):
        """Release failures never surface to the consumer"""
        encoder = FakeEncoder(batches=[[b'a']], releaseError=OSError('close failed'))
        stream = buildStream([DESCRIPTOR], encoder=encoder)

        with self.assertLogs('packstream.Stream', level='ERROR') as logs:
            self.assertEqual(list(stream), [[b'a']])

        self.assertTrue(any('close failed' in line for line in logs.output))
        self.assertEqual(len(encoder.releases), 1)

    def testIterChunks(self):
        """iterChunks flattens batches and drops empty chunks"""
        encoder = FakeEncoder(batches=[[b'a', b''], [], [b'b', b'c']])
        stream = buildStream([DESCRIPTOR], encoder=encoder)

        self.assertEqual(list(stream.iterChunks()), [b'a', b'b', b'c'])
        self.assertEqual(len(encoder.releases), 1)

    def testClosingIterChunksClosesStream(self):
        """Closing the chunk generator early releases the stream"""
        encoder = FakeEncoder(batches=[[b'a'], [b'b'], [b'c']])
        stream = buildStream([DESCRIPTOR], encoder=encoder)

        chunks = stream.iterChunks()
        self.assertEqual(next(chunks), b'a')
        chunks.close()

        self.assertEqual(encoder.releases, [(1, {'step': 1})])
        self.assertEqual(stream.phase, StreamPhase.TERMINAL)


class BuildStreamTest(unittest.TestCase):
    """Input handling of buildStream"""

    def testInvalidDescriptorFailsBeforeEncoder(self):
        """Unknown descriptor keys raise synchronously, no phase runs"""
        encoder = FakeEncoder(batches=[[b'a']])

        with self.assertRaises(InvalidEntryError):
            buildStream([DESCRIPTOR, {'source': ('bytes', b'x'), 'path': 'x', 'mode': 0o644}], encoder=encoder)

        self.assertEqual(encoder.calls, [])

    def testMissingSourceFailsBeforeEncoder(self):
        """A descriptor without source raises synchronously"""
        encoder = FakeEncoder()

        with self.assertRaises(InvalidEntryError) as cm:
            buildStream([{'path': 'x'}], encoder=encoder)

        self.assertEqual(cm.exception.reason, InvalidEntryError.MISSING_SOURCE)
        self.assertEqual(encoder.calls, [])

    def testUnknownOptionFailsFast(self):
        """Unrecognized options are rejected before the stream exists"""
        with self.assertRaises(InvalidOptionError) as cm:
            buildStream([DESCRIPTOR], {'onError': 'halt', 'retries': 3}, encoder=FakeEncoder())

        self.assertEqual(cm.exception.option, 'retries')

        with self.assertRaises(InvalidOptionError):
            buildStream([DESCRIPTOR], {'onError': 'ignore'})

        with self.assertRaises(InvalidOptionError):
            buildStream([DESCRIPTOR], {'chunkSize': 0})

        with self.assertRaises(InvalidOptionError):
            buildStream([DESCRIPTOR], ['onError', 'skip'])

    def testOptionsReachEncoder(self):
        """Options are validated into EncoderOptions and handed to acquire"""
        received = []

        class RecordingEncoder(FakeEncoder):

            def acquire(self, manifest, options):
                received.append(options)
                return super().acquire(manifest, options)

        list(buildStream([DESCRIPTOR], {'onError': 'skip', 'chunkSize': 1024}, encoder=RecordingEncoder()))

        self.assertEqual(received, [EncoderOptions(onError='skip', chunkSize=1024)])

    def testEquivalentInputsGiveEqualManifests(self):
        """The encoder sees the same manifest whatever shape the input had"""
        manifest = Manifest.create([DESCRIPTOR])
        encoders = [FakeEncoder(), FakeEncoder(), FakeEncoder()]

        for target, encoder in zip(([DESCRIPTOR], list(manifest.entries), manifest), encoders):
            list(buildStream(target, encoder=encoder))

        self.assertEqual(encoders[0].manifests[0], manifest)
        self.assertEqual(encoders[1].manifests[0], manifest)
        self.assertIs(encoders[2].manifests[0], manifest)

    def testDirectChunkStream(self):
        """ChunkStream works with any encoder object, including on a raw manifest"""
        encoder = FakeEncoder(batches=[[b'x']])
        stream = ChunkStream(Manifest(), EncoderOptions(), encoder)

        self.assertEqual(list(stream), [[b'x']])
        self.assertEqual(repr(stream), '<ChunkStream terminal entries=0>')


if __name__ == '__main__':
    unittest.main()
