"""
Handles communication between the coordinator and a worker process over zmq.

The client binds a pull socket and hands its address to the worker at launch. The worker connects,
announces itself with `WorkerReady` carrying the address of its own pull socket, to which we then
push requests. Whatever the worker sends during a run is relayed to the run's event sink on a
background thread
"""

import logging
import threading

import zmq

from runproxy.low.core import ExecutionContext, ExtensionPath, Source, TestUnit
from runproxy.low.func import assert_never
from runproxy.proxy.interface import EventSink
from runproxy.transport.comms import Deadline, Listener, get_socket
from runproxy.transport.msg import (
    CancelRun,
    EndSession,
    InitializeExtensions,
    LogMessage,
    Message,
    Request,
    RunComplete,
    RunStatsChange,
    StartRunBySources,
    StartRunByUnits,
    WorkerReady,
)
import runproxy.transport.serde as serde

logger = logging.getLogger(__name__)

relay_poll_ms = 200


class ZmqRequestChannel:
    def __init__(self, host: str = "127.0.0.1") -> None:
        self.host = host
        self.listener: Listener | None = None
        self.worker: zmq.Socket | None = None
        self.worker_address: str | None = None
        # sends may come from the session thread as well as from a cancelling one
        self.send_lock = threading.Lock()
        self.backlog: list[Message] = []
        self.sink: EventSink | None = None
        self.relay: threading.Thread | None = None
        self.closing = threading.Event()

    def initialize(self) -> str:
        if self.listener is None:
            self.listener = Listener(f"tcp://{self.host}:*")
            logger.debug(f"listening on {self.listener.address}")
        return self.listener.address

    def wait_for_handshake(self, timeout_ms: int) -> bool:
        if self.listener is None:
            raise ValueError("channel not initialized")
        self._join_relay()
        deadline = Deadline(timeout_ms)
        ready = False
        while not ready and not deadline.expired():
            for message in self.listener.recv_messages(timeout_ms=deadline.remaining_ms()):
                if isinstance(message, WorkerReady):
                    # a relaunched worker replaces whatever we were connected to, along with
                    # anything its predecessor left unrelayed
                    self._disconnect()
                    self.backlog = []
                    self._connect(message)
                    ready = True
                else:
                    self.backlog.append(message)
        if ready:
            return True
        logger.warning(f"no handshake within {timeout_ms} ms on {self.listener.address}")
        return False

    def _connect(self, message: WorkerReady) -> None:
        logger.debug(f"worker {message.pid} ready at {message.address}")
        with self.send_lock:
            self.worker = get_socket(message.address)
            self.worker_address = message.address

    def _disconnect(self) -> None:
        with self.send_lock:
            if self.worker is not None:
                self.worker.close()
            self.worker = None
            self.worker_address = None

    def _send(self, m: Request) -> None:
        with self.send_lock:
            if self.worker is None:
                raise ValueError(f"cannot send {type(m).__name__}, no worker connected")
            try:
                self.worker.send(serde.ser_message(m))
            except Exception as e:
                logger.exception(f"failed to send {type(m).__name__} to {self.worker_address}")
                raise ValueError(f"failed to communicate with {self.worker_address} => {repr(e)[:32]}")

    def send_initialize_capabilities(self, extensions: list[ExtensionPath], is_source_run: bool) -> None:
        self._send(InitializeExtensions(extensions=list(extensions), is_source_run=is_source_run))

    def _start_relay(self, sink: EventSink | None) -> None:
        self._join_relay()
        self.sink = sink
        self.closing.clear()
        self.relay = threading.Thread(target=self._relay_loop, name="channel-relay", daemon=True)
        self.relay.start()

    def send_run_by_sources(
        self,
        adapter_source_map: dict[str, list[Source]],
        context: ExecutionContext,
        run_settings: str,
        sink: EventSink | None,
    ) -> None:
        self._send(StartRunBySources(adapter_source_map=adapter_source_map, context=context, run_settings=run_settings))
        self._start_relay(sink)

    def send_run_by_units(
        self,
        units: list[TestUnit],
        context: ExecutionContext,
        run_settings: str,
        sink: EventSink | None,
    ) -> None:
        self._send(StartRunByUnits(units=list(units), context=context, run_settings=run_settings))
        self._start_relay(sink)

    def send_cancel(self) -> None:
        self._send(CancelRun())

    def send_end_session(self) -> None:
        self._send(EndSession())

    def _relay_one(self, message: Message) -> bool:
        """Hands the message to the sink, returns whether the run completed"""
        sink = self.sink
        if isinstance(message, WorkerReady):
            logger.warning(f"ignoring unexpected handshake from {message.address} during a run")
            return False
        if sink is not None:
            sink.on_raw_message(serde.ser_raw(message))
        if isinstance(message, LogMessage):
            if sink is not None:
                sink.on_log_message(message.level, message.text)
            return False
        elif isinstance(message, RunStatsChange):
            if sink is not None:
                sink.on_stats_change(message.statistics, message.new_results)
            return False
        elif isinstance(message, RunComplete):
            if sink is not None:
                sink.on_run_complete(message.report, message.last_chunk, message.attachments, message.executor_uris)
            return True
        elif isinstance(message, (InitializeExtensions, StartRunBySources, StartRunByUnits, CancelRun, EndSession)):
            raise TypeError(f"worker sent a request message {type(message).__name__}")
        else:
            assert_never(message)

    def _relay_loop(self) -> None:
        logger.debug("entering relay loop")
        while not self.closing.is_set():
            messages: list[Message] = self.backlog
            self.backlog = []
            if self.listener is not None:
                messages += self.listener.recv_messages(timeout_ms=relay_poll_ms)
            for i, message in enumerate(messages):
                try:
                    if self._relay_one(message):
                        logger.debug("run complete, leaving relay loop")
                        # whatever arrived past the completion belongs to the next run
                        self.backlog = messages[i + 1 :] + self.backlog
                        return
                except Exception:
                    logger.exception(f"failed to relay {type(message).__name__}")
        logger.debug("relay loop stopped")

    def _join_relay(self) -> None:
        if self.relay is not None and self.relay is not threading.current_thread():
            self.closing.set()
            self.relay.join()
            self.relay = None

    def wait_for_completion(self, timeout_sec: float | None = None) -> bool:
        """Blocks until the relay of the current run finished, ie, the run completed"""
        relay = self.relay
        if relay is None:
            return True
        relay.join(timeout_sec)
        return not relay.is_alive()

    def close(self) -> None:
        self._join_relay()
        self._disconnect()
        if self.listener is not None:
            self.listener.close()
            self.listener = None
