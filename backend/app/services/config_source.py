from __future__ import annotations

import asyncio
import json
import logging
import os
from enum import StrEnum
from pathlib import Path
from typing import Callable

from pydantic import ValidationError
from watchdog.events import (
    EVENT_TYPE_CLOSED,
    EVENT_TYPE_CREATED,
    EVENT_TYPE_DELETED,
    EVENT_TYPE_MODIFIED,
    EVENT_TYPE_MOVED,
    FileSystemEvent,
    FileSystemEventHandler,
)
from watchdog.observers import Observer
from watchdog.observers.api import BaseObserver

from backend.app.core.config import Settings
from backend.app.models.stunner_config import STUNNER_CONFIG_VERSION, StunnerConfigArtifact

logger = logging.getLogger(__name__)

DEFAULT_RETRY_INTERVAL_SECONDS = 0.5
OBSERVER_JOIN_TIMEOUT_SECONDS = 1.0

# Opening and reading the file ourselves raises "opened"/"closed_no_write"
# events; reacting to those would reload forever.
RELOAD_EVENT_TYPES = frozenset(
    {EVENT_TYPE_CREATED, EVENT_TYPE_DELETED, EVENT_TYPE_MODIFIED, EVENT_TYPE_MOVED, EVENT_TYPE_CLOSED}
)
WATCH_LOST_EVENT_TYPES = frozenset({EVENT_TYPE_DELETED, EVENT_TYPE_MOVED})


class ConfigSourceError(Exception):
    pass


class ConfigParseError(ConfigSourceError):
    pass


class ConfigValidationError(ConfigSourceError):
    pass


class WatchSetupError(ConfigSourceError):
    pass


class ConfigSourceState(StrEnum):
    UNINITIALIZED = "uninitialized"
    WATCHING_VALID = "watching_valid"
    WATCHING_ABSENT = "watching_absent"
    RETRYING = "retrying"
    STOPPED = "stopped"


def parse_config_artifact(data: bytes | str, source: str = "<config>") -> StunnerConfigArtifact:
    try:
        document = json.loads(data)
    except ValueError as exc:
        raise ConfigParseError(f"{source}: not a valid JSON document: {exc}") from exc

    if not isinstance(document, dict):
        raise ConfigValidationError(f"{source}: top-level value must be an object")

    version = document.get("version")
    if version != STUNNER_CONFIG_VERSION:
        raise ConfigValidationError(
            f"{source}: unsupported config version {version!r}, expected {STUNNER_CONFIG_VERSION!r}"
        )
    if not document.get("auth"):
        raise ConfigValidationError(f"{source}: missing auth block")

    try:
        return StunnerConfigArtifact.model_validate(document)
    except ValidationError as exc:
        raise ConfigValidationError(f"{source}: {exc}") from exc


def read_config_artifact(path: Path) -> StunnerConfigArtifact:
    return parse_config_artifact(path.read_bytes(), str(path))


class _ConfigFileEventHandler(FileSystemEventHandler):
    def __init__(self, path: Path, notify: Callable[[], None], notify_watch_lost: Callable[[], None]) -> None:
        super().__init__()
        self._filename = path.name
        self._directory = os.path.abspath(path.parent)
        self._notify = notify
        self._notify_watch_lost = notify_watch_lost

    def on_any_event(self, event: FileSystemEvent) -> None:
        if event.event_type not in RELOAD_EVENT_TYPES:
            return
        src_path = os.fsdecode(event.src_path)
        # The emitter shuts down once the watched directory itself goes away.
        if event.event_type in WATCH_LOST_EVENT_TYPES and os.path.abspath(src_path) == self._directory:
            self._notify_watch_lost()
            return

        names = {Path(src_path).name}
        dest_path = getattr(event, "dest_path", "")
        if dest_path:
            names.add(Path(os.fsdecode(dest_path)).name)
        # ConfigMap volumes update the file by swapping a `..data` symlink.
        if self._filename in names or any(name.startswith("..") for name in names):
            self._notify()


class ConfigSource:
    """Keeps a validated snapshot of the STUNner config file in sync with disk.

    The snapshot is only ever replaced wholesale, so readers calling
    `snapshot()` observe either the previous or the next artifact. Every
    watch, retry and reload belongs to a generation; `start()` and `stop()`
    bump the generation so that work scheduled earlier turns into a no-op.
    """

    def __init__(
        self,
        *,
        retry_interval_seconds: float = DEFAULT_RETRY_INTERVAL_SECONDS,
        observer_factory: Callable[[], BaseObserver] = Observer,
    ) -> None:
        self._retry_interval_seconds = retry_interval_seconds
        self._observer_factory = observer_factory
        self._state = ConfigSourceState.UNINITIALIZED
        self._snapshot: StunnerConfigArtifact | None = None
        self._path: Path | None = None
        self._generation = 0
        self._observer: BaseObserver | None = None
        self._retry_task: asyncio.Task[None] | None = None
        self._reload_task: asyncio.Task[None] | None = None
        self._reload_pending = False
        self._loop: asyncio.AbstractEventLoop | None = None

    @property
    def state(self) -> ConfigSourceState:
        return self._state

    @property
    def path(self) -> Path | None:
        return self._path

    @property
    def watching(self) -> bool:
        return self._observer is not None

    def snapshot(self) -> StunnerConfigArtifact | None:
        return self._snapshot

    async def start(self, path: str | os.PathLike[str] | None = None) -> None:
        """(Re)start watching `path`, or the configured default location.

        Returns once the watch is set up and the initial read has finished,
        or once a retry has been scheduled.
        """
        self._loop = asyncio.get_running_loop()
        previous_observer = self._cancel_watch()
        self._generation += 1
        generation = self._generation

        config_path = Path(path) if path else Path(Settings().resolved_config_filename)
        self._path = config_path

        if previous_observer is not None and previous_observer.is_alive():
            await asyncio.to_thread(previous_observer.join, OBSERVER_JOIN_TIMEOUT_SECONDS)
            if generation != self._generation:
                return

        try:
            self._observer = self._start_observer(config_path, generation)
        except WatchSetupError as exc:
            self._schedule_retry(config_path, generation, exc)
            return

        reload_task = self._request_reload(generation)
        if reload_task is not None:
            # wait() does not propagate the cancellation of a superseded reload.
            await asyncio.wait({reload_task})

    def stop(self) -> None:
        self._generation += 1
        self._release_observer(self._cancel_watch())
        self._snapshot = None
        if self._state is not ConfigSourceState.STOPPED:
            logger.info("Stopped watching STUNner config file '%s'", self._path)
        self._state = ConfigSourceState.STOPPED

    def _start_observer(self, path: Path, generation: int) -> BaseObserver:
        directory = path.parent
        if not directory.is_dir():
            raise WatchSetupError(f"directory '{directory}' does not exist")

        loop = self._loop
        assert loop is not None

        def call_on_loop(callback: Callable[[int], None]) -> Callable[[], None]:
            def schedule() -> None:
                try:
                    loop.call_soon_threadsafe(callback, generation)
                except RuntimeError:
                    logger.debug("Event loop closed, dropping watch notification for '%s'", path)

            return schedule

        handler = _ConfigFileEventHandler(path, call_on_loop(self._on_change), call_on_loop(self._on_watch_lost))
        observer = self._observer_factory()
        try:
            observer.schedule(handler, str(directory), recursive=False)
            observer.start()
        except OSError as exc:
            raise WatchSetupError(f"cannot watch directory '{directory}': {exc}") from exc
        return observer

    def _schedule_retry(self, path: Path, generation: int, reason: Exception | str) -> None:
        already_retrying = self._state is ConfigSourceState.RETRYING
        self._snapshot = None
        self._state = ConfigSourceState.RETRYING
        logger.log(
            logging.DEBUG if already_retrying else logging.WARNING,
            "Could not watch STUNner config file '%s': %s; retrying in %.2fs",
            path,
            reason,
            self._retry_interval_seconds,
        )
        self._retry_task = asyncio.create_task(
            self._retry_after_delay(path, generation),
            name=f"stunner-config-retry:{generation}",
        )

    def _cancel_watch(self) -> BaseObserver | None:
        """Cancel pending work and stop the observer; the caller joins it."""
        try:
            current_task = asyncio.current_task()
        except RuntimeError:
            current_task = None

        for task in (self._retry_task, self._reload_task):
            if task is not None and task is not current_task:
                task.cancel()
        self._retry_task = None
        self._reload_task = None
        self._reload_pending = False

        observer, self._observer = self._observer, None
        if observer is not None:
            observer.stop()
        return observer

    @staticmethod
    def _release_observer(observer: BaseObserver | None) -> None:
        if observer is None or not observer.is_alive():
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            observer.join(timeout=OBSERVER_JOIN_TIMEOUT_SECONDS)
            return
        loop.run_in_executor(None, observer.join, OBSERVER_JOIN_TIMEOUT_SECONDS)

    def _on_change(self, generation: int) -> None:
        if generation != self._generation:
            return
        self._request_reload(generation)

    def _on_watch_lost(self, generation: int) -> None:
        if generation != self._generation:
            return
        path = self._path
        assert path is not None
        self._release_observer(self._cancel_watch())
        self._generation += 1
        self._schedule_retry(path, self._generation, f"directory '{path.parent}' was removed")

    def _request_reload(self, generation: int) -> asyncio.Task[None] | None:
        if generation != self._generation:
            return None
        self._reload_pending = True
        if self._reload_task is None or self._reload_task.done():
            self._reload_task = asyncio.create_task(
                self._drain_reloads(generation),
                name=f"stunner-config-reload:{generation}",
            )
        return self._reload_task

    async def _drain_reloads(self, generation: int) -> None:
        # Notifications arriving mid-read set the pending flag again and are
        # folded into one more pass instead of a concurrent read.
        while self._reload_pending and generation == self._generation:
            self._reload_pending = False
            await self._reload_once(generation)

    async def _reload_once(self, generation: int) -> None:
        path = self._path
        assert path is not None

        try:
            artifact = await asyncio.to_thread(read_config_artifact, path)
        except FileNotFoundError:
            if generation != self._generation:
                return
            if not path.parent.is_dir():
                self._on_watch_lost(generation)
                return
            if self._snapshot is not None or self._state is not ConfigSourceState.WATCHING_ABSENT:
                logger.info("STUNner config file '%s' not present, using fallback configuration", path)
            self._publish(None)
            return
        except (OSError, ConfigSourceError) as exc:
            if generation != self._generation:
                return
            logger.warning("Invalid STUNner config file '%s': %s", path, exc)
            self._publish(None)
            return

        if generation != self._generation:
            return
        self._publish(artifact)
        logger.info(
            "Successfully read STUNner config file '%s', version: %s, listeners: %d",
            path,
            artifact.version,
            len(artifact.listeners),
        )

    def _publish(self, artifact: StunnerConfigArtifact | None) -> None:
        self._snapshot = artifact
        self._state = ConfigSourceState.WATCHING_VALID if artifact is not None else ConfigSourceState.WATCHING_ABSENT

    async def _retry_after_delay(self, path: Path, generation: int) -> None:
        try:
            await asyncio.sleep(self._retry_interval_seconds)
        except asyncio.CancelledError:
            return
        if generation != self._generation:
            return
        await self.start(path)
