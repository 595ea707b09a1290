"""
This module defines all messages exchanged between the client and a worker process over the
request channel
"""

# NOTE about representation -- the payloads themselves (units, contexts, reports) are pydantic
# models from `low.core`, but the envelopes are plain frozen dataclasses. They are pickled on the
# wire, the json rendition exists only for raw message echo to the event sink

from dataclasses import dataclass
from enum import Enum

from runproxy.low.core import (
    ExecutionContext,
    ExtensionPath,
    MessageLevel,
    RunCompleteReport,
    RunStatistics,
    Source,
    TestUnit,
    UnitResult,
)

VERSION = 1  # for serde compatibility

BackboneAddress = str  # eg zmq address


class MessageType(str, Enum):
    worker_ready = "session.connected"
    end_session = "session.end"
    initialize = "execution.initialize"
    start_with_sources = "execution.start_with_sources"
    start_with_units = "execution.start_with_units"
    cancel = "execution.cancel"
    stats_change = "execution.stats_change"
    completed = "execution.completed"
    log = "log.message"


## client -> worker


@dataclass(frozen=True)
class InitializeExtensions:
    extensions: list[ExtensionPath]
    is_source_run: bool


@dataclass(frozen=True)
class StartRunBySources:
    adapter_source_map: dict[str, list[Source]]
    context: ExecutionContext
    run_settings: str


@dataclass(frozen=True)
class StartRunByUnits:
    units: list[TestUnit]
    context: ExecutionContext
    run_settings: str


@dataclass(frozen=True)
class CancelRun:
    pass


@dataclass(frozen=True)
class EndSession:
    pass


## worker -> client


@dataclass(frozen=True)
class WorkerReady:
    address: BackboneAddress  # where the worker listens for requests
    pid: int
    version: int = VERSION


@dataclass(frozen=True)
class LogMessage:
    level: MessageLevel
    text: str


@dataclass(frozen=True)
class RunStatsChange:
    statistics: RunStatistics
    new_results: list[UnitResult]


@dataclass(frozen=True)
class RunComplete:
    report: RunCompleteReport
    last_chunk: list[UnitResult] | None = None
    attachments: list[str] | None = None
    executor_uris: list[str] | None = None


Request = InitializeExtensions | StartRunBySources | StartRunByUnits | CancelRun | EndSession
Response = WorkerReady | LogMessage | RunStatsChange | RunComplete
Message = Request | Response

message_types: dict[type, MessageType] = {
    InitializeExtensions: MessageType.initialize,
    StartRunBySources: MessageType.start_with_sources,
    StartRunByUnits: MessageType.start_with_units,
    CancelRun: MessageType.cancel,
    EndSession: MessageType.end_session,
    WorkerReady: MessageType.worker_ready,
    LogMessage: MessageType.log,
    RunStatsChange: MessageType.stats_change,
    RunComplete: MessageType.completed,
}
