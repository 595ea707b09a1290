"""
Entrypoint for running a session from the command line

Example:
```
python -m runproxy run --worker "myworker --verbose" --sources a.dll,b.dll
python -m runproxy run --worker myworker --units units.json --shared False
python -m runproxy extensions
```

Units are given as a json file with a list of objects with `name`, `executor_uri`, `source` keys.
Extensions are discovered in the directories listed in RUNPROXY_EXTENSIONS_PATH
"""

import logging
import logging.config
import shlex
from pathlib import Path

import fire
import orjson

from runproxy.config import logging_config
from runproxy.extensions import ExtensionCache
from runproxy.low.core import SourceCriteria, TestUnit, UnitCriteria
from runproxy.low.tracing import MetricsCollection
from runproxy.proxy.coordinator import ExecutionCoordinator
from runproxy.proxy.sinks import RecordingSink
from runproxy.transport.channel import ZmqRequestChannel
from runproxy.worker import ProcessWorkerHandle

logger = logging.getLogger("runproxy.main")


def _as_list(v: str | list | tuple | None) -> list[str]:
    # fire gives us a tuple for `a,b` and a str for `a`
    if v is None:
        return []
    if isinstance(v, str):
        return [e for e in v.split(",") if e]
    return [str(e) for e in v]


def main_run(
    worker: str,
    sources: str | list | None = None,
    units: str | None = None,
    shared: bool = True,
    run_settings: str | None = None,
    stats_frequency: int = 10,
    timeout_sec: float | None = None,
) -> None:
    logging.config.dictConfig(logging_config)
    settings = Path(run_settings).read_text() if run_settings else ""
    criteria: SourceCriteria | UnitCriteria
    if units is not None:
        raw = orjson.loads(Path(units).read_bytes())
        criteria = UnitCriteria(
            units=[TestUnit(**e) for e in raw], run_settings=settings, stats_change_frequency=stats_frequency
        )
    else:
        criteria = SourceCriteria.from_sources(
            _as_list(sources), run_settings=settings, stats_change_frequency=stats_frequency
        )

    handle = ProcessWorkerHandle(shlex.split(worker), shared=shared)
    channel = ZmqRequestChannel()
    metrics = MetricsCollection()
    coordinator = ExecutionCoordinator(
        handle,
        channel,
        ExtensionCache.from_environment(),
        metrics,
        connection_timeout_ms=int(timeout_sec * 1_000) if timeout_sec is not None else None,
    )
    sink = RecordingSink(keep_raw=False)
    try:
        coordinator.start_run(criteria, sink)
        report = sink.wait()
    except KeyboardInterrupt:
        logger.warning("interrupted, cancelling the run")
        coordinator.cancel()
        report = sink.wait(timeout_sec=10)
    finally:
        coordinator.close()
        channel.close()
        handle.terminate()

    if report is None:
        print("run did not complete")
    elif report.is_aborted:
        print(f"run aborted: {report.error}")
    else:
        outcomes = ", ".join(f"{k.value}={v}" for k, v in (report.statistics.outcomes if report.statistics else {}).items())
        print(f"run {'canceled' if report.is_canceled else 'completed'} in {report.elapsed_ms/1e3:.3f}s: {outcomes}")
    for k, v in metrics.snapshot().items():
        print(f"{k}: {v}")


def main_extensions() -> None:
    logging.config.dictConfig(logging_config)
    cache = ExtensionCache.from_environment()
    for path in cache.adapter_extension_paths():
        print(f"adapter {path}")
    for path in cache.all_default_extension_paths():
        print(f"default {path}")


if __name__ == "__main__":
    fire.Fire({"run": main_run, "extensions": main_extensions})
