"""
Cache of locally available extensions, ie, files the worker may need to load before running.

Adapter extensions -- those which know how to discover and run units of a particular kind -- are
recognized by file name. Everything else found in the default locations is passed along as is
"""

import fnmatch
import logging
import os
import threading
from pathlib import Path
from typing import Iterable

from runproxy import config
from runproxy.low.core import ExtensionPath
from runproxy.low.func import distinct

logger = logging.getLogger(__name__)

default_adapter_pattern = "*adapter*"


class ExtensionCache:
    def __init__(
        self,
        default_extension_paths: Iterable[ExtensionPath] = (),
        adapter_pattern: str = default_adapter_pattern,
    ) -> None:
        self.lock = threading.Lock()
        self.adapter_pattern = adapter_pattern.lower()
        self.default_extension_paths = distinct(default_extension_paths)
        self._extensions: list[ExtensionPath] = []

    @classmethod
    def from_environment(cls) -> "ExtensionCache":
        cache = cls()
        cache.discover(config.extension_directories())
        return cache

    def is_adapter(self, path: ExtensionPath) -> bool:
        return fnmatch.fnmatch(os.path.basename(path).lower(), self.adapter_pattern)

    @property
    def path_to_extensions(self) -> list[ExtensionPath]:
        with self.lock:
            return list(self._extensions)

    def update_extensions(self, paths: Iterable[ExtensionPath]) -> None:
        with self.lock:
            self._extensions = distinct([*self._extensions, *paths])

    def discover(self, directories: Iterable[str]) -> None:
        """Registers every file in the given directories -- adapters as extensions, the rest as
        defaults. Missing directories are skipped"""
        found: list[ExtensionPath] = []
        for directory in directories:
            root = Path(directory)
            if not root.is_dir():
                logger.warning(f"extension directory {directory} does not exist, skipping")
                continue
            found.extend(str(p.resolve()) for p in sorted(root.iterdir()) if p.is_file())
        logger.debug(f"discovered {len(found)} extensions")
        self.update_extensions(p for p in found if self.is_adapter(p))
        with self.lock:
            self.default_extension_paths = distinct(
                [*self.default_extension_paths, *(p for p in found if not self.is_adapter(p))]
            )

    def adapter_extension_paths(self) -> list[ExtensionPath]:
        return [p for p in self.path_to_extensions if self.is_adapter(p)]

    def all_default_extension_paths(self) -> list[ExtensionPath]:
        with self.lock:
            return list(self.default_extension_paths)
