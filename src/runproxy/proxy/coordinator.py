"""
The execution coordinator -- owns the worker's lifecycle and drives a single session against it:
    - launches the worker and awaits the handshake under the connection timeout,
    - negotiates the extensions the worker needs to load,
    - dispatches the run request, either by sources or by units,
    - converts any failure on the way into an aborted run report for the event sink,
    - forwards cancellation and signals the end of the session.

The streamed results themselves do not pass through here -- the request channel relays them to the
sink given with the run request.
"""

import concurrent.futures
import logging
import os
import threading
import time
from typing import Callable

import randomname

from runproxy import config
from runproxy.extensions import ExtensionCache
from runproxy.low.core import (
    ConnectionInfo,
    ExecutionContext,
    ExtensionPath,
    MessageLevel,
    RunCompleteReport,
    Source,
    SourceCriteria,
    TestUnit,
    UnitCriteria,
)
from runproxy.low.func import Either, assert_never, attempt, maybe_head
from runproxy.low.tracing import Metric, MetricsCollection, SessionLifecycle, label, mark
from runproxy.proxy.interface import CapabilityCache, EventSink, RequestChannel, WorkerHandle
from runproxy.proxy.state import SessionPhase, SessionState
from runproxy.transport.comms import Deadline
from runproxy.transport.msg import MessageType, RunComplete
from runproxy.transport.serde import ser_payload

logger = logging.getLogger(__name__)


class CoordinatorError(Exception):
    pass


class SetupFailure(CoordinatorError):
    """Worker failed to launch, or did not complete the handshake in time"""


class NegotiationFault(CoordinatorError):
    pass


class DispatchFault(CoordinatorError):
    pass


def _as(fault: type[CoordinatorError]) -> Callable[[Exception], CoordinatorError]:
    def wrap(e: Exception) -> CoordinatorError:
        if isinstance(e, CoordinatorError):
            return e
        wrapped = fault(str(e) or repr(e))
        wrapped.__cause__ = e
        return wrapped

    return wrap


class ExecutionCoordinator:
    def __init__(
        self,
        worker: WorkerHandle,
        channel: RequestChannel,
        cache: CapabilityCache | None = None,
        metrics: MetricsCollection | None = None,
        connection_timeout_ms: int | None = None,
        environment: dict[str, str] | None = None,
    ) -> None:
        self.worker = worker
        self.channel = channel
        self.cache = cache if cache is not None else ExtensionCache.from_environment()
        self.metrics = metrics if metrics is not None else MetricsCollection()
        self.connection_timeout_ms = (
            connection_timeout_ms if connection_timeout_ms is not None else config.connection_timeout_ms()
        )
        self.environment = environment or {}
        self.state = SessionState()
        self.session = randomname.get_name()
        # one per session, a cancel applies to every later launch too
        self._cancel = threading.Event()
        self._subscribed = False
        label("session", self.session)

    def _on_launched(self) -> None:
        logger.debug(f"worker launched for session {self.session}")
        mark({"action": SessionLifecycle.launched})
        self.state.mark_launched()

    def _rewrite_adapter_sources(self, adapter_source_map: dict[str, list[Source]], effective: list[Source]) -> None:
        if len(adapter_source_map) == 1:
            (adapter,) = adapter_source_map
            resolved = {adapter: list(effective)}
        else:
            # resolved per adapter, so that every binary stays with the adapter it was given for
            resolved = {
                adapter: list(self.worker.resolve_sources(list(entry)))
                for adapter, entry in adapter_source_map.items()
            }
        logger.debug(f"rewriting adapter sources to {resolved}")
        adapter_source_map.clear()
        adapter_source_map.update(resolved)

    def setup_channel(
        self,
        sources: list[Source],
        cancel: threading.Event | None = None,
        units: list[TestUnit] | None = None,
        adapter_source_map: dict[str, list[Source]] | None = None,
    ) -> list[Source]:
        """Launches the worker and awaits its handshake. Returns the sources as resolved by the
        worker, rewriting `units` or `adapter_source_map` in place if those differ from `sources`"""
        mark({"action": SessionLifecycle.setup})
        self.state.phase = SessionPhase.connecting
        requested = list(sources)
        effective = list(self.worker.resolve_sources(requested))
        if effective != requested and units:
            # NOTE single source substitution only: a package resolves to one binary we know of
            replacement = maybe_head(effective)
            if replacement is None:
                raise SetupFailure(f"worker resolved {requested} to no sources")
            logger.debug(f"rewriting source of {len(units)} units to {replacement}")
            for unit in units:
                unit.source = replacement
        if effective != requested and adapter_source_map:
            self._rewrite_adapter_sources(adapter_source_map, effective)

        if self.worker.is_shared() and self.state.connected:
            logger.debug(f"reusing connected shared worker of session {self.session}")
            self.state.phase = SessionPhase.connected
            return effective

        address = self.channel.initialize()
        if not self._subscribed:
            self.worker.on_launched(self._on_launched)
            self._subscribed = True
        connection_info = ConnectionInfo(address=address, runner_pid=os.getpid(), session=self.session)
        descriptor = self.worker.build_launch_descriptor(effective, dict(self.environment), connection_info)
        cancel = cancel or self._cancel
        deadline = Deadline(self.connection_timeout_ms)
        try:
            launched = self.worker.launch_async(descriptor, cancel).result(timeout=deadline.remaining_ms() / 1_000)
        except concurrent.futures.TimeoutError as e:
            self.state.connected = False
            # the pending launch must not spawn a worker nobody waits for anymore
            cancel.set()
            raise SetupFailure(f"worker did not launch within {self.connection_timeout_ms} ms") from e
        except Exception as e:
            self.state.connected = False
            raise SetupFailure(f"failed to launch worker: {repr(e)}") from e
        if not launched:
            self.state.connected = False
            raise SetupFailure(f"failed to launch worker with {descriptor.command}")
        # the notification may come from the handle's own thread, after the launch reported back
        if not self.state.wait_launched(deadline.remaining_ms() / 1_000):
            logger.warning(f"no launch notification within {self.connection_timeout_ms} ms, awaiting handshake anyway")

        connected = self.channel.wait_for_handshake(self.connection_timeout_ms)
        self.state.connected = connected
        if not connected:
            raise SetupFailure(
                f"worker did not connect to {address} within {self.connection_timeout_ms} ms"
            )
        mark({"action": SessionLifecycle.connected})
        self.state.phase = SessionPhase.connected
        return effective

    def _read_cache(self, getter: Callable[[], list[ExtensionPath]]) -> list[ExtensionPath]:
        try:
            return list(getter())
        except Exception:
            logger.warning("failed to read extension cache, assuming no extensions", exc_info=True)
            return []

    def negotiate_capabilities(self, criteria: SourceCriteria | UnitCriteria) -> None:
        if not self.state.connected:
            raise NegotiationFault("cannot negotiate extensions, worker is not connected")
        adapters = self._read_cache(self.cache.adapter_extension_paths)
        everything = adapters + self._read_cache(self.cache.all_default_extension_paths)
        required = list(self.worker.required_extensions(adapters, everything))
        shared = self.worker.is_shared()
        if shared:
            required = self.state.unknown_extensions(required)

        # an isolated worker starts from scratch every time, so it is always initialized
        if required or not shared:
            logger.debug(f"initializing worker with {len(required)} extensions")
            self.channel.send_initialize_capabilities(required, isinstance(criteria, SourceCriteria))
            self.state.add_initialized_extensions(required)
        else:
            logger.debug("shared worker already has all extensions, skipping initialization")
        mark({"action": SessionLifecycle.negotiated})

    def _dispatch(self, criteria: SourceCriteria | UnitCriteria, sink: EventSink | None, started: int) -> None:
        context = ExecutionContext.of(criteria)
        elapsed_sec = (time.perf_counter_ns() - started) / 1e9
        self.state.phase = SessionPhase.running
        if isinstance(criteria, UnitCriteria):
            self.channel.send_run_by_units(criteria.units, context, criteria.run_settings, sink)
        elif isinstance(criteria, SourceCriteria):
            self.channel.send_run_by_sources(criteria.adapter_source_map, context, criteria.run_settings, sink)
        else:
            assert_never(criteria)
        self.metrics.record(Metric.time_to_start_engine, elapsed_sec)
        mark({"action": SessionLifecycle.dispatched})

    def _abort(self, error: CoordinatorError, sink: EventSink | None) -> None:
        logger.error(f"failed to start run in session {self.session}: {repr(error)}", exc_info=error)
        mark({"action": SessionLifecycle.aborted})
        self.state.phase = SessionPhase.aborted
        if sink is None:
            return
        description = str(error)
        report = RunCompleteReport.aborted(description)
        try:
            # raw message goes first, consumers relaying the raw stream may be blocked on it
            sink.on_raw_message(ser_payload(MessageType.completed, RunComplete(report=report)))
            sink.on_log_message(MessageLevel.error, description)
            sink.on_run_complete(report, None, None, None)
        except Exception:
            logger.exception("event sink failed while reporting the aborted run")

    def start_run(self, criteria: SourceCriteria | UnitCriteria, sink: EventSink | None = None) -> None:
        """Sets up the worker, negotiates extensions and dispatches the run. Never raises -- any
        failure is reported to `sink` as an aborted run"""
        started = time.perf_counter_ns()
        units = criteria.units if isinstance(criteria, UnitCriteria) else None
        adapter_source_map = criteria.adapter_source_map if isinstance(criteria, SourceCriteria) else None
        outcome: Either[None, CoordinatorError] = (
            attempt(lambda: self.setup_channel(criteria.sources, self._cancel, units, adapter_source_map), _as(SetupFailure))
            .chain(lambda _: attempt(lambda: self.negotiate_capabilities(criteria), _as(NegotiationFault)))
            .chain(lambda _: attempt(lambda: self._dispatch(criteria, sink, started), _as(DispatchFault)))
        )
        if not outcome.is_ok():
            self._abort(outcome.e, sink)  # type: ignore[arg-type]

    def cancel(self) -> None:
        """Requests cancellation of the run. A pending launch is stopped, a connected worker is
        asked to cancel. No-op otherwise. Cancelling is final for the session: no later run of this
        coordinator launches a worker"""
        mark({"action": SessionLifecycle.cancelled})
        self._cancel.set()
        if self.state.connected:
            self.channel.send_cancel()
        else:
            logger.debug("not connected, nothing to cancel at the worker")

    def close(self) -> None:
        """Signals the end of the session to a launched worker. Every call sends the signal again"""
        if self.state.is_launched():
            try:
                self.channel.send_end_session()
            except Exception:
                logger.exception(f"failed to signal end of session {self.session}")
        # an ended worker must not be reused, a later run launches a fresh one
        self.state.connected = False
        self.state.phase = SessionPhase.closed
        mark({"action": SessionLifecycle.closed})
