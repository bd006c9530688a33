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
import json
import logging
import threading

# Error reporting stays off unless a SENTRY_DSN is configured through the
# environment or the .secret file.
import sentry_sdk

from pathlib import Path

from signalslot import Signal

from sentry_sdk.integrations.logging import SentryHandler, LoggingIntegration
from sentry_sdk.integrations import atexit as sentryAtexit

PUBLIC_VERSION = '1.0.0'

# Map string levels to logging constants for standard level names
LOG_LEVEL_MAPPING = {'DEBUG': logging.DEBUG, 'INFO': logging.INFO, 'WARNING': logging.WARNING, 'ERROR': logging.ERROR}


def configureGlobalLogLevel(logLevel):
    """
    Configure the global logging level for the library.
    This affects all loggers created via getLogger().

    Args:
        logLevel: Logging level (logging.DEBUG, logging.INFO, etc.)
    """
    rootLogger = logging.getLogger()
    rootLogger.setLevel(logLevel)

    formatter = logging.Formatter('%(asctime)s [%(levelname)s] %(name)s: %(message)s')

    if not rootLogger.handlers:
        consoleHandler = logging.StreamHandler()
        consoleHandler.setLevel(logLevel)
        consoleHandler.setFormatter(formatter)
        rootLogger.addHandler(consoleHandler)
    else:
        for handler in rootLogger.handlers:
            if isinstance(handler, logging.StreamHandler) and not isinstance(handler, SentryHandler):
                handler.setLevel(logLevel)
                handler.setFormatter(formatter)


if os.getenv('PACKSTREAM_LOGGING_LEVEL'):
    logLevel = LOG_LEVEL_MAPPING.get(os.getenv('PACKSTREAM_LOGGING_LEVEL').upper())
    if logLevel is not None:
        configureGlobalLogLevel(logLevel)


def getLogger(name, version=PUBLIC_VERSION, reinitialize=False):
    """
    Get a logger with Sentry integration. Uses Sentry's own client state to avoid duplicate setup.
    SENTRY_DSN is loaded through SecretGetter and cached.

    Args:
        name: Logger name
        version: Version string for logging context
        reinitialize: If True, initialize Sentry again even if a client is already active
    """
    try:
        sentryInitialized = False

        if not sentry_sdk.get_client().is_active() or reinitialize:
            sentryDsn = SecretGetter.getInstance().get('SENTRY_DSN')

            if sentryDsn:
                # Suppress "sentry is attempting to send pending events..." on exit
                sentryAtexit.default_callback = lambda pending, timeout: None

                sentry_sdk.init(
                    dsn=sentryDsn,
                    default_integrations=False,
                    integrations=[
                        LoggingIntegration(),
                        sentryAtexit.AtexitIntegration(),
                    ],
                    release=f'packstream@{version}',
                )
                sentryInitialized = True

        logger = logging.getLogger(name)

        if not any(isinstance(h, SentryHandler) for h in logger.handlers):
            formatter = logging.Formatter('%(asctime)s version[%(version)s] : %(message)s')

            syslog = SentryHandler()
            syslog.setFormatter(formatter)
            logger.addHandler(syslog)

        logger = logging.LoggerAdapter(logger, {'version': version or 'unknown'})

        if sentryInitialized:
            logger.debug('Sentry initialized for packstream')

        return logger

    except Exception as e:
        fallbackLogger = logging.getLogger(name)

        # If Sentry setup fails, continue with standard logging
        fallbackLogger.warning(f"Failed to initialize Sentry: {e}")

        return fallbackLogger


class Singleton:
    """
    Thread-safe singleton base class.
    Subclasses override initialize() instead of __init__.
    """

    _instances = {}
    _lock = threading.Lock()

    def __new__(cls, *args, **kwargs):
        if cls not in cls._instances:
            with cls._lock:
                if cls not in cls._instances:
                    cls._instances[cls] = super().__new__(cls)
        return cls._instances[cls]

    def __init__(self, *args, **kwargs):
        if not hasattr(self, '_initialized'):
            self.initialize(*args, **kwargs)
            self._initialized = True

    def initialize(self, *args, **kwargs):
        pass

    @classmethod
    def getInstance(cls):
        if cls not in cls._instances:
            cls()
        return cls._instances[cls]


class EventService(Singleton):
    """
    Dispatches named events to subscribed observers.

    Backed by one 'signalslot' Signal per event, so observers must accept
    keyword arguments.
    """

    def initialize(self):
        self.signals = {}
        self._signalsLock = threading.Lock()

    def reset(self):
        """Disconnect every observer but keep the registered events. Meant for test isolation."""
        for signal in self.signals.values():
            for slot in list(signal._slots):
                signal.disconnect(slot)

    def isRegistered(self, event):
        return event in self.signals

    def register(self, event):
        with self._signalsLock:
            if self.isRegistered(event):
                return False
            self.signals[event] = Signal()
            return True

    def unregister(self, event):
        with self._signalsLock:
            if not self.isRegistered(event):
                return False

            signal = self.signals.pop(event)
            for slot in list(signal._slots):
                signal.disconnect(slot)
            return True

    def trigger(self, event, **kwargs):
        signal = self.signals.get(event)
        if signal is None:
            return

        signal.emit(**kwargs)

    def subscribe(self, event, observer):
        if not self.isRegistered(event):
            raise KeyError(f"You must register event '{event}' first.")

        signal = self.signals[event]
        if observer in signal._slots:
            return

        signal.connect(observer)

    def unsubscribe(self, event, observer):
        signal = self.signals.get(event)
        if signal is not None and observer in signal._slots:
            signal.disconnect(observer)


class Event:
    """ Simple Event wrapper"""

    def __init__(self, key):
        self.key = key

        self.eventService = EventService.getInstance()

    def subscribe(self, observer):
        return self.eventService.subscribe(self.key, observer)

    def unsubscribe(self, observer):
        return self.eventService.unsubscribe(self.key, observer)

    def trigger(self, **kwargs):
        return self.eventService.trigger(self.key, **kwargs)


class SecretGetter(Singleton):
    """
    Manages secrets with caching.
    Looks in environment variables first, then in a JSON .secret file.

    Environment Variables:
        PACKSTREAM_SECRET_FILE: Explicit path of the secret file.
    """

    DEFAULT_SECRET_FILE = '.secret'

    def initialize(self, secretFileName=DEFAULT_SECRET_FILE):
        self.secretFileName = secretFileName
        self._cache = {}
        self._secretData = None

    def getPath(self):
        envPath = os.getenv('PACKSTREAM_SECRET_FILE')
        if envPath:
            return envPath

        candidates = [
            os.path.abspath(self.secretFileName),
            os.path.join(os.path.expanduser('~'), '.packstream', self.secretFileName),
        ]
        for path in candidates:
            if os.path.exists(path):
                return path

        return candidates[-1]

    def _loadSecretFile(self):
        logger = logging.getLogger(__name__)

        if self._secretData is not None:
            return

        secretPath = self.getPath()

        if not os.path.exists(secretPath):
            self._secretData = {}
            return

        try:
            self._secretData = json.loads(Path(secretPath).read_text())
        except (json.JSONDecodeError, OSError) as e:
            logger.warning(f"Failed to load secret file {secretPath}: {e}")
            self._secretData = {}
            return

        if not isinstance(self._secretData, dict):
            logger.warning(f"Ignoring secret file {secretPath}: top level must be an object")
            self._secretData = {}
            return

        logger.info(f"Loaded secret file {secretPath}")

    def get(self, key: str):
        """
        Get secret value by key with caching.

        Returns:
            str or None: Secret value if found, None otherwise
        """
        if self._cache.get(key):
            return self._cache[key]

        value = os.getenv(key)
        if value:
            self._cache[key] = value
            return value

        self._loadSecretFile()

        value = self._secretData.get(key)
        if value:
            self._cache[key] = value

        return value

    def clear(self):
        """Forget cached values so the next get() reads the environment and file again."""
        self._cache.clear()
        self._secretData = None


# Event pattern: RESTful + /[action]
class PackEvent:
    streamStarted = Event('/stream/create')
    streamEnded = Event('/stream/delete')

    entryStarted = Event('/stream/entry/create')
    entryUpdated = Event('/stream/entry/update')
    entryCompleted = Event('/stream/entry/complete')
    entryFailed = Event('/stream/entry/fail')

    ALL = (streamStarted, streamEnded, entryStarted, entryUpdated, entryCompleted, entryFailed)


eventService = EventService.getInstance()

for _event in PackEvent.ALL:
    eventService.register(_event.key)
