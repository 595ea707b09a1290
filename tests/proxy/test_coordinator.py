"""
Drives the coordinator against fake collaborators, checking what gets sent to the worker, in which
order, and what the event sink observes
"""

import threading

import orjson
import pytest

from proxy_fakes import Calls, FakeCache, FakeChannel, FakeMetrics, FakeSink, FakeWorker
from runproxy.low.core import MessageLevel, SourceCriteria, TestUnit, UnitCriteria, UNSPECIFIED_ADAPTER
from runproxy.low.tracing import Metric
from runproxy.proxy.coordinator import ExecutionCoordinator, NegotiationFault, SetupFailure
from runproxy.proxy.state import SessionPhase

timeout_ms = 400


def build(calls: Calls, worker: FakeWorker | None = None, channel: FakeChannel | None = None, cache: FakeCache | None = None):
    worker = worker if worker is not None else FakeWorker(calls)
    channel = channel if channel is not None else FakeChannel(calls)
    coordinator = ExecutionCoordinator(
        worker,
        channel,
        cache if cache is not None else FakeCache(),
        FakeMetrics(calls),
        connection_timeout_ms=timeout_ms,
    )
    return coordinator, worker, channel


def source_criteria() -> SourceCriteria:
    return SourceCriteria.from_sources(["source.dll"], run_settings="<settings/>", stats_change_frequency=10)


def unit_criteria(source: str = "source.dll") -> UnitCriteria:
    return UnitCriteria(
        units=[TestUnit(name="A.C.M", executor_uri="executor://dummy", source=source)],
        run_settings="<settings/>",
        stats_change_frequency=10,
        stats_change_timeout_ms=2000,
    )


def test_shared_worker_without_extensions_is_not_initialized():
    calls = Calls()
    coordinator, _, _ = build(calls)

    coordinator.start_run(source_criteria(), None)

    assert calls.named("send_initialize_capabilities") == []
    assert len(calls.named("send_run_by_sources")) == 1


def test_isolated_worker_is_always_initialized():
    calls = Calls()
    coordinator, _, _ = build(calls, worker=FakeWorker(calls, shared=False))

    coordinator.start_run(source_criteria(), None)

    assert calls.named("send_initialize_capabilities") == [("send_initialize_capabilities", [], True)]


def test_isolated_worker_gets_required_extensions():
    calls = Calls()
    coordinator, _, _ = build(calls, worker=FakeWorker(calls, shared=False, required=["x.dll"]))

    coordinator.start_run(unit_criteria(), None)

    assert calls.named("send_initialize_capabilities") == [("send_initialize_capabilities", ["x.dll"], False)]


def test_required_extensions_are_sent():
    calls = Calls()
    coordinator, _, _ = build(calls, worker=FakeWorker(calls, required=["he1.dll", "c:\\e1.dll"]))

    coordinator.start_run(source_criteria(), None)

    assert calls.named("send_initialize_capabilities") == [
        ("send_initialize_capabilities", ["he1.dll", "c:\\e1.dll"], True)
    ]


def test_worker_is_asked_with_adapters_and_all_defaults():
    calls = Calls()
    cache = FakeCache(adapters=["abc.TestAdapter.dll", "xyz.TestAdapter.dll"], defaults=["default.dll"])
    coordinator, _, _ = build(calls, cache=cache)

    coordinator.start_run(source_criteria(), None)

    assert calls.named("required_extensions") == [
        (
            "required_extensions",
            ["abc.TestAdapter.dll", "xyz.TestAdapter.dll"],
            ["abc.TestAdapter.dll", "xyz.TestAdapter.dll", "default.dll"],
        )
    ]


def test_broken_cache_degrades_to_no_extensions():
    calls = Calls()
    coordinator, _, _ = build(calls, cache=FakeCache(defaults=["d.dll"], broken=True))

    coordinator.start_run(source_criteria(), None)

    assert calls.named("required_extensions") == [("required_extensions", [], ["d.dll"])]
    assert len(calls.named("send_run_by_sources")) == 1


def test_shared_worker_is_not_sent_known_extensions_again():
    calls = Calls()
    coordinator, _, _ = build(calls, worker=FakeWorker(calls, required=["a.dll"]))

    coordinator.start_run(source_criteria(), None)
    coordinator.start_run(source_criteria(), None)

    assert calls.named("send_initialize_capabilities") == [("send_initialize_capabilities", ["a.dll"], True)]
    assert len(calls.named("send_run_by_sources")) == 2


def test_connected_shared_worker_is_reused():
    calls = Calls()
    coordinator, _, _ = build(calls)

    coordinator.start_run(source_criteria(), None)
    coordinator.start_run(source_criteria(), None)

    assert len(calls.named("launch_async")) == 1
    assert len(calls.named("resolve_sources")) == 2


def test_isolated_worker_is_relaunched_and_reinitialized():
    calls = Calls()
    coordinator, _, _ = build(calls, worker=FakeWorker(calls, shared=False, required=["a.dll"]))

    coordinator.start_run(source_criteria(), None)
    coordinator.start_run(source_criteria(), None)

    assert len(calls.named("launch_async")) == 2
    assert len(calls.named("send_initialize_capabilities")) == 2


def test_unit_sources_rewritten_when_worker_resolves_differently():
    calls = Calls()
    criteria = unit_criteria("inputPackage.sources")
    worker = FakeWorker(calls, resolved=["actualSource.dll"])
    coordinator, _, _ = build(calls, worker=worker)

    coordinator.start_run(criteria, FakeSink())

    assert calls.named("resolve_sources") == [("resolve_sources", ["inputPackage.sources"])]
    assert criteria.units[0].source == "actualSource.dll"
    assert calls.named("build_launch_descriptor")[0][1] == ["actualSource.dll"]


def test_unit_sources_kept_when_worker_resolves_the_same():
    calls = Calls()
    criteria = unit_criteria("actualSource.dll")
    unit = criteria.units[0]
    coordinator, _, _ = build(calls, worker=FakeWorker(calls, resolved=["actualSource.dll"]))

    coordinator.start_run(criteria, FakeSink())

    assert criteria.units[0] is unit
    assert unit.source == "actualSource.dll"


def test_setup_initializes_channel_before_launch():
    calls = Calls()
    coordinator, _, _ = build(calls)

    coordinator.start_run(source_criteria(), None)

    names = calls.names()
    assert names.index("initialize") < names.index("launch_async") < names.index("wait_for_handshake")
    assert calls.named("wait_for_handshake") == [("wait_for_handshake", timeout_ms)]


def test_setup_raises_on_handshake_timeout():
    calls = Calls()
    coordinator, _, _ = build(calls, channel=FakeChannel(calls, handshake=False))

    with pytest.raises(SetupFailure):
        coordinator.setup_channel(["source.dll"])

    assert not coordinator.state.connected
    # a process was spawned, so it still needs a teardown
    assert coordinator.state.is_launched()


def test_setup_raises_on_failed_launch_without_awaiting_handshake():
    calls = Calls()
    coordinator, _, _ = build(calls, worker=FakeWorker(calls, launch_result=False))

    with pytest.raises(SetupFailure):
        coordinator.setup_channel(["source.dll"])

    assert calls.named("wait_for_handshake") == []


def test_setup_raises_when_launch_itself_raises():
    calls = Calls()
    coordinator, _, _ = build(calls, worker=FakeWorker(calls, launch_error=OSError("no such file")))

    with pytest.raises(SetupFailure, match="no such file"):
        coordinator.setup_channel(["source.dll"])


def test_failed_handshake_never_initializes_nor_dispatches():
    calls = Calls()
    coordinator, _, _ = build(calls, worker=FakeWorker(calls, required=["a.dll"]), channel=FakeChannel(calls, handshake=False))

    coordinator.start_run(source_criteria(), FakeSink())

    assert calls.named("send_initialize_capabilities") == []
    assert calls.named("required_extensions") == []
    assert calls.named("send_run_by_sources") == []
    assert calls.named("send_run_by_units") == []


def test_failed_launch_never_dispatches():
    calls = Calls()
    coordinator, _, _ = build(calls, worker=FakeWorker(calls, launch_result=False))

    coordinator.start_run(source_criteria(), FakeSink())

    assert calls.named("send_run_by_sources") == []


def assert_aborted(sink: FakeSink) -> None:
    assert sink.calls.names() == ["on_raw_message", "on_log_message", "on_run_complete"]
    raw = orjson.loads(sink.calls[0][1])
    assert raw["message_type"] == "execution.completed"
    assert raw["payload"]["report"]["is_aborted"] is True
    assert sink.calls[1][1] == MessageLevel.error
    _, report, last_chunk, attachments, executor_uris = sink.calls[2]
    assert report.is_aborted
    assert not report.is_canceled
    assert report.statistics is None
    assert report.error == sink.calls[1][2]
    assert last_chunk is None and attachments is None and executor_uris is None


def test_handshake_failure_is_reported_as_aborted_run():
    calls = Calls()
    coordinator, _, _ = build(calls, channel=FakeChannel(calls, handshake=False))
    sink = FakeSink()

    coordinator.start_run(source_criteria(), sink)

    assert_aborted(sink)
    assert "did not connect" in sink.calls[1][2]
    assert coordinator.state.phase == SessionPhase.aborted


def test_negotiation_failure_is_reported_as_aborted_run():
    calls = Calls()
    coordinator, _, _ = build(calls, worker=FakeWorker(calls, required=["a.dll"]), channel=FakeChannel(calls, fail_on="send_initialize_capabilities"))
    sink = FakeSink()

    coordinator.start_run(source_criteria(), sink)

    assert_aborted(sink)
    assert calls.named("send_run_by_sources") == []
    # the worker was launched and connected, teardown still works
    coordinator.close()
    assert len(calls.named("send_end_session")) == 1


def test_dispatch_failure_is_reported_as_aborted_run():
    calls = Calls()
    coordinator, _, _ = build(calls, channel=FakeChannel(calls, fail_on="send_run_by_units"))
    sink = FakeSink()

    coordinator.start_run(unit_criteria(), sink)

    assert_aborted(sink)
    assert "send_run_by_units failed" in sink.calls[1][2]
    assert calls.named("record") == []


def test_failure_without_sink_does_not_raise():
    calls = Calls()
    coordinator, _, _ = build(calls, channel=FakeChannel(calls, handshake=False))

    coordinator.start_run(source_criteria(), None)

    assert coordinator.state.phase == SessionPhase.aborted


def test_negotiation_requires_connection():
    calls = Calls()
    coordinator, _, _ = build(calls)

    with pytest.raises(NegotiationFault):
        coordinator.negotiate_capabilities(source_criteria())


def test_source_run_is_dispatched_with_adapter_map_and_context():
    calls = Calls()
    coordinator, _, channel = build(calls)
    criteria = source_criteria()
    sink = FakeSink()

    coordinator.start_run(criteria, sink)

    [(_, adapter_source_map, context, run_settings)] = calls.named("send_run_by_sources")
    assert adapter_source_map == {UNSPECIFIED_ADAPTER: ["source.dll"]}
    assert context.stats_change_frequency == criteria.stats_change_frequency
    assert context.stats_change_timeout_ms == criteria.stats_change_timeout_ms
    assert run_settings == "<settings/>"
    assert channel.sinks == [sink]
    assert sink.calls == []
    assert coordinator.state.phase == SessionPhase.running


def test_unit_run_is_dispatched_with_units():
    calls = Calls()
    coordinator, _, _ = build(calls)
    criteria = unit_criteria()

    coordinator.start_run(criteria, None)

    assert calls.named("send_run_by_sources") == []
    [(_, units, context, run_settings)] = calls.named("send_run_by_units")
    assert units == criteria.units
    assert context.stats_change_frequency == 10
    assert context.stats_change_timeout_ms == 2000
    assert run_settings == "<settings/>"


def test_initialization_precedes_dispatch_precedes_metric():
    calls = Calls()
    coordinator, _, _ = build(calls, worker=FakeWorker(calls, required=["a.dll"]))

    coordinator.start_run(unit_criteria(), None)

    names = calls.names()
    assert names.index("send_initialize_capabilities") < names.index("send_run_by_units") < names.index("record")
    [(_, key, value)] = calls.named("record")
    assert key == Metric.time_to_start_engine
    assert value >= 0


def test_close_before_launch_sends_nothing():
    calls = Calls()
    coordinator, _, _ = build(calls)

    coordinator.close()

    assert calls.named("send_end_session") == []
    assert coordinator.state.phase == SessionPhase.closed


def test_close_signals_end_of_session_on_each_call():
    calls = Calls()
    coordinator, _, _ = build(calls)
    coordinator.setup_channel(["source.dll"])

    coordinator.close()
    assert len(calls.named("send_end_session")) == 1
    coordinator.close()
    assert len(calls.named("send_end_session")) == 2


def test_close_after_failed_handshake_still_signals():
    calls = Calls()
    coordinator, _, _ = build(calls, channel=FakeChannel(calls, handshake=False))
    coordinator.start_run(source_criteria(), FakeSink())

    coordinator.close()

    assert len(calls.named("send_end_session")) == 1


def test_close_without_launch_notification_sends_nothing():
    calls = Calls()
    coordinator, _, _ = build(calls, worker=FakeWorker(calls, fire_launched=False))
    coordinator.start_run(source_criteria(), None)

    coordinator.close()

    assert calls.named("send_end_session") == []


def test_cancel_when_not_connected_is_noop():
    calls = Calls()
    coordinator, _, _ = build(calls, channel=FakeChannel(calls, handshake=False))
    coordinator.start_run(source_criteria(), FakeSink())

    coordinator.cancel()

    assert calls.named("send_cancel") == []


def test_cancel_when_connected_sends_once():
    calls = Calls()
    coordinator, _, _ = build(calls)
    coordinator.start_run(source_criteria(), None)

    coordinator.cancel()

    assert len(calls.named("send_cancel")) == 1


def test_cancel_stops_pending_launch():
    calls = Calls()
    worker = FakeWorker(calls)
    coordinator, _, _ = build(calls, worker=worker)
    cancel = threading.Event()
    cancel.set()

    with pytest.raises(SetupFailure):
        coordinator.setup_channel(["source.dll"], cancel)

    assert worker.cancel_seen == [True]
    assert calls.named("wait_for_handshake") == []


def test_scenario_happy_source_run():
    calls = Calls()
    coordinator, _, _ = build(calls)
    sink = FakeSink()

    coordinator.start_run(source_criteria(), sink)

    assert calls.named("send_initialize_capabilities") == []
    [(_, adapter_source_map, _, _)] = calls.named("send_run_by_sources")
    assert "source.dll" in adapter_source_map[UNSPECIFIED_ADAPTER]
    assert sink.calls.named("on_run_complete") == []


def test_scenario_handshake_failure():
    calls = Calls()
    coordinator, _, _ = build(calls, channel=FakeChannel(calls, handshake=False))
    sink = FakeSink()

    coordinator.start_run(source_criteria(), sink)

    assert len(sink.calls.named("on_raw_message")) == 1
    assert [c[1] for c in sink.calls.named("on_log_message")] == [MessageLevel.error]
    assert len(sink.calls.named("on_run_complete")) == 1
    assert calls.named("send_run_by_sources") == [] and calls.named("send_run_by_units") == []


def test_launch_that_never_reports_is_aborted():
    calls = Calls()
    worker = FakeWorker(calls, hang=True)
    coordinator, _, _ = build(calls, worker=worker)
    sink = FakeSink()

    t = threading.Thread(target=coordinator.start_run, args=(source_criteria(), sink), daemon=True)
    t.start()
    t.join(5.0)

    assert not t.is_alive()
    assert_aborted(sink)
    assert "did not launch" in sink.calls[1][2]
    # the pending launch is told to give up
    assert worker.cancel_events[0].is_set()
    assert calls.named("wait_for_handshake") == []


def test_adapter_sources_rewritten_when_worker_resolves_differently():
    calls = Calls()
    criteria = SourceCriteria.from_sources(["pkg.sources"])
    coordinator, _, _ = build(calls, worker=FakeWorker(calls, resolved=["a.dll", "b.dll"]))

    coordinator.start_run(criteria, FakeSink())

    assert calls.named("build_launch_descriptor")[0][1] == ["a.dll", "b.dll"]
    [(_, adapter_source_map, _, _)] = calls.named("send_run_by_sources")
    assert adapter_source_map == {UNSPECIFIED_ADAPTER: ["a.dll", "b.dll"]}


def test_adapter_sources_rewritten_per_adapter():
    calls = Calls()
    criteria = SourceCriteria(adapter_source_map={"x-adapter": ["pkg.sources"], "y-adapter": ["c.dll"]})
    worker = FakeWorker(calls, expand={"pkg.sources": ["a.dll", "b.dll"]})
    coordinator, _, _ = build(calls, worker=worker)

    coordinator.start_run(criteria, FakeSink())

    assert calls.named("build_launch_descriptor")[0][1] == ["a.dll", "b.dll", "c.dll"]
    [(_, adapter_source_map, _, _)] = calls.named("send_run_by_sources")
    assert adapter_source_map == {"x-adapter": ["a.dll", "b.dll"], "y-adapter": ["c.dll"]}


def test_adapter_sources_kept_when_worker_resolves_the_same():
    calls = Calls()
    criteria = SourceCriteria(adapter_source_map={"x-adapter": ["a.dll"]})
    coordinator, _, _ = build(calls)

    coordinator.start_run(criteria, FakeSink())

    [(_, adapter_source_map, _, _)] = calls.named("send_run_by_sources")
    assert adapter_source_map == {"x-adapter": ["a.dll"]}


def test_ended_shared_worker_is_not_reused():
    calls = Calls()
    coordinator, _, _ = build(calls)
    coordinator.start_run(source_criteria(), None)
    coordinator.close()

    sink = FakeSink()
    coordinator.start_run(source_criteria(), sink)

    assert len(calls.named("launch_async")) == 2
    assert len(calls.named("wait_for_handshake")) == 2
    assert len(calls.named("send_run_by_sources")) == 2
    assert sink.calls == []
    names = calls.names()
    first, second = [i for i, name in enumerate(names) if name == "launch_async"]
    assert first < names.index("send_end_session") < second


def test_close_after_ending_still_signals_each_call():
    calls = Calls()
    coordinator, _, _ = build(calls)
    coordinator.start_run(source_criteria(), None)

    coordinator.close()
    coordinator.close()

    assert len(calls.named("send_end_session")) == 2
    assert not coordinator.state.connected
    # nothing left to cancel at the ended worker
    coordinator.cancel()
    assert calls.named("send_cancel") == []


def test_cancel_before_run_is_not_lost():
    calls = Calls()
    worker = FakeWorker(calls)
    coordinator, _, _ = build(calls, worker=worker)
    sink = FakeSink()

    coordinator.cancel()
    coordinator.start_run(source_criteria(), sink)

    assert worker.cancel_seen == [True]
    assert_aborted(sink)
    assert calls.named("send_run_by_sources") == []


def test_setup_awaits_trailing_launch_notification():
    calls = Calls()
    coordinator, _, _ = build(calls, worker=FakeWorker(calls, notify_delay_sec=0.1))

    coordinator.setup_channel(["source.dll"])

    assert coordinator.state.is_launched()
    coordinator.close()
    assert len(calls.named("send_end_session")) == 1
