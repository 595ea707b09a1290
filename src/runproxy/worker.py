"""
Worker handle spawning the worker as a local subprocess.

The worker is any program which, given `--address`, connects to the request channel there and
speaks the messages of `runproxy.transport.msg`
"""

import logging
import os
import subprocess
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from pathlib import Path
from typing import Callable, Iterable

from runproxy import config
from runproxy.low.core import ConnectionInfo, ExtensionPath, LaunchDescriptor, Source
from runproxy.low.func import distinct

logger = logging.getLogger(__name__)

# a source with this suffix lists the binaries it stands for, one per line
manifest_suffix = ".sources"


def read_manifest(path: Path) -> list[Source]:
    rv: list[Source] = []
    for line in path.read_text().splitlines():
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        entry = Path(line)
        rv.append(str(entry if entry.is_absolute() else path.parent / entry))
    return rv


class ProcessWorkerHandle:
    def __init__(
        self,
        command: list[str],
        shared: bool = True,
        bundled_extensions: Iterable[ExtensionPath] = (),
        working_directory: str | None = None,
    ) -> None:
        self.command = list(command)
        self.shared = shared
        self.bundled_extensions = set(bundled_extensions)
        self.working_directory = working_directory
        self.process: subprocess.Popen | None = None
        self.callbacks: list[Callable[[], None]] = []
        self.lock = threading.Lock()
        self.pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix="worker-launch")

    def is_shared(self) -> bool:
        return self.shared

    def resolve_sources(self, requested: list[Source]) -> list[Source]:
        rv: list[Source] = []
        for source in requested:
            if source.endswith(manifest_suffix):
                expanded = read_manifest(Path(source))
                logger.debug(f"expanded {source} into {len(expanded)} sources")
                rv.extend(expanded)
            else:
                rv.append(source)
        return rv

    def build_launch_descriptor(
        self, sources: list[Source], environment: dict[str, str], connection_info: ConnectionInfo
    ) -> LaunchDescriptor:
        arguments = ["--address", connection_info.address, "--parent-pid", str(connection_info.runner_pid)]
        extra = {
            config.worker_address_envvar: connection_info.address,
            config.session_envvar: connection_info.session,
        }
        return LaunchDescriptor(
            command=self.command + arguments + list(sources),
            environment={**os.environ, **environment, **extra},
            working_directory=self.working_directory,
            sources=list(sources),
        )

    def on_launched(self, callback: Callable[[], None]) -> None:
        with self.lock:
            self.callbacks.append(callback)

    def _launch(self, descriptor: LaunchDescriptor, cancel: threading.Event) -> bool:
        if cancel.is_set():
            logger.debug("launch cancelled before spawning the worker")
            return False
        try:
            process = subprocess.Popen(
                descriptor.command,
                env=descriptor.environment,
                cwd=descriptor.working_directory,
            )
        except OSError:
            logger.exception(f"failed to spawn worker {descriptor.command}")
            return False
        with self.lock:
            self.process = process
            callbacks = list(self.callbacks)
        logger.debug(f"started worker process {process.pid}")
        for callback in callbacks:
            callback()
        return True

    def launch_async(self, descriptor: LaunchDescriptor, cancel: threading.Event) -> Future[bool]:
        return self.pool.submit(self._launch, descriptor, cancel)

    def required_extensions(
        self, adapter_extensions: list[ExtensionPath], all_extensions: list[ExtensionPath]
    ) -> list[ExtensionPath]:
        return [e for e in distinct([*adapter_extensions, *all_extensions]) if e not in self.bundled_extensions]

    def terminate(self, grace_sec: float = 3.0) -> None:
        with self.lock:
            process = self.process
        if process is not None and process.poll() is None:
            logger.debug(f"terminating worker process {process.pid}")
            process.terminate()
            try:
                process.wait(grace_sec)
            except subprocess.TimeoutExpired:
                logger.warning(f"worker {process.pid} did not exit in {grace_sec}s, killing")
                process.kill()
