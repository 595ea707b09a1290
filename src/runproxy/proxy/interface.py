"""
Defines the protocols of the collaborators the coordinator drives: the worker handle, the request
channel, the capability cache and the event sink
"""

import threading
from concurrent.futures import Future
from typing import Callable, Protocol, runtime_checkable

from runproxy.low.core import (
    ConnectionInfo,
    ExecutionContext,
    ExtensionPath,
    LaunchDescriptor,
    MessageLevel,
    RunCompleteReport,
    RunStatistics,
    Source,
    TestUnit,
    UnitResult,
)


@runtime_checkable
class EventSink(Protocol):
    def on_raw_message(self, text: str) -> None:
        """Every message of the run, serialized -- for consumers who relay it further verbatim"""
        raise NotImplementedError

    def on_log_message(self, level: MessageLevel, text: str) -> None:
        raise NotImplementedError

    def on_stats_change(self, statistics: RunStatistics, new_results: list[UnitResult]) -> None:
        raise NotImplementedError

    def on_run_complete(
        self,
        report: RunCompleteReport,
        last_chunk: list[UnitResult] | None,
        attachments: list[str] | None,
        executor_uris: list[str] | None,
    ) -> None:
        """Terminal event of a run, delivered exactly once per dispatched or aborted run"""
        raise NotImplementedError


@runtime_checkable
class WorkerHandle(Protocol):
    def is_shared(self) -> bool:
        """A shared worker serves multiple runs and retains its initialization. An isolated one
        is single-use"""
        raise NotImplementedError

    def resolve_sources(self, requested: list[Source]) -> list[Source]:
        """The sources the worker will actually load -- eg a package expanded to its binaries"""
        raise NotImplementedError

    def build_launch_descriptor(
        self, sources: list[Source], environment: dict[str, str], connection_info: ConnectionInfo
    ) -> LaunchDescriptor:
        raise NotImplementedError

    def launch_async(self, descriptor: LaunchDescriptor, cancel: threading.Event) -> Future[bool]:
        """Resolves to True once the process has started"""
        raise NotImplementedError

    def on_launched(self, callback: Callable[[], None]) -> None:
        """Callback fires (possibly on another thread) once a worker process exists"""
        raise NotImplementedError

    def required_extensions(
        self, adapter_extensions: list[ExtensionPath], all_extensions: list[ExtensionPath]
    ) -> list[ExtensionPath]:
        raise NotImplementedError


@runtime_checkable
class RequestChannel(Protocol):
    def initialize(self) -> str:
        """Prepares the endpoint the worker connects to, returns its address"""
        raise NotImplementedError

    def wait_for_handshake(self, timeout_ms: int) -> bool:
        raise NotImplementedError

    def send_initialize_capabilities(self, extensions: list[ExtensionPath], is_source_run: bool) -> None:
        raise NotImplementedError

    def send_run_by_sources(
        self,
        adapter_source_map: dict[str, list[Source]],
        context: ExecutionContext,
        run_settings: str,
        sink: EventSink | None,
    ) -> None:
        raise NotImplementedError

    def send_run_by_units(
        self,
        units: list[TestUnit],
        context: ExecutionContext,
        run_settings: str,
        sink: EventSink | None,
    ) -> None:
        raise NotImplementedError

    def send_cancel(self) -> None:
        raise NotImplementedError

    def send_end_session(self) -> None:
        raise NotImplementedError


@runtime_checkable
class CapabilityCache(Protocol):
    def adapter_extension_paths(self) -> list[ExtensionPath]:
        raise NotImplementedError

    def all_default_extension_paths(self) -> list[ExtensionPath]:
        raise NotImplementedError
