"""
Core data structures of an execution session -- prescribes most of the API
"""

import uuid
from enum import Enum
from typing import Annotated, Literal, Union

from pydantic import BaseModel, Field, field_validator

from runproxy.low.func import distinct

# NOTE sources are paths to binaries (or packages thereof) understood by the worker. We keep them
# as plain strings, the worker is the only party interpreting them
Source = str
ExtensionPath = str

# the adapter key used when the caller did not pin the sources to any particular adapter
UNSPECIFIED_ADAPTER = "_none_"


class TestUnit(BaseModel):
    # NOTE not frozen -- the coordinator rewrites `source` when the worker resolves a package into
    # the binaries it actually contains
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    name: str = Field(description="fully qualified name of the unit, eg Namespace.Class.Method")
    executor_uri: str = Field(description="identifier of the executor able to run this unit")
    source: Source = Field(description="binary containing the unit")

    __test__ = False  # not a pytest class


class _CriteriaBase(BaseModel):
    run_settings: str = Field("", description="opaque configuration blob, forwarded verbatim")
    stats_change_frequency: int = Field(
        10, description="how many results the worker accumulates before emitting a stats change"
    )
    stats_change_timeout_ms: int = Field(
        1500, description="max time the worker waits before emitting a stats change"
    )
    keep_alive: bool = False


class SourceCriteria(_CriteriaBase):
    """Run everything found in these binaries"""

    kind: Literal["sources"] = "sources"
    adapter_source_map: dict[str, list[Source]]

    @field_validator("adapter_source_map")
    @classmethod
    def _non_empty(cls, v: dict[str, list[Source]]) -> dict[str, list[Source]]:
        if not any(v.values()):
            raise ValueError("no sources given")
        return v

    @classmethod
    def from_sources(cls, sources: list[Source], **kwargs) -> "SourceCriteria":
        return cls(adapter_source_map={UNSPECIFIED_ADAPTER: list(sources)}, **kwargs)

    @property
    def sources(self) -> list[Source]:
        return distinct(s for v in self.adapter_source_map.values() for s in v)


class UnitCriteria(_CriteriaBase):
    """Run exactly these named units"""

    kind: Literal["units"] = "units"
    units: list[TestUnit]

    @field_validator("units")
    @classmethod
    def _non_empty(cls, v: list[TestUnit]) -> list[TestUnit]:
        if not v:
            raise ValueError("no units given")
        return v

    @property
    def sources(self) -> list[Source]:
        return distinct(unit.source for unit in self.units)


ExecutionCriteria = Annotated[Union[SourceCriteria, UnitCriteria], Field(discriminator="kind")]


class ExecutionContext(BaseModel):
    stats_change_frequency: int
    stats_change_timeout_ms: int
    keep_alive: bool = False

    @classmethod
    def of(cls, criteria: SourceCriteria | UnitCriteria) -> "ExecutionContext":
        return cls(
            stats_change_frequency=criteria.stats_change_frequency,
            stats_change_timeout_ms=criteria.stats_change_timeout_ms,
            keep_alive=criteria.keep_alive,
        )


# Launching
class ConnectionInfo(BaseModel):
    address: str = Field(description="endpoint the worker connects to for the handshake")
    runner_pid: int
    session: str


class LaunchDescriptor(BaseModel):
    command: list[str]
    environment: dict[str, str] = Field(default_factory=dict)
    working_directory: str | None = None
    sources: list[Source]


# Reporting
class MessageLevel(str, Enum):
    informational = "informational"
    warning = "warning"
    error = "error"


class UnitOutcome(str, Enum):
    passed = "passed"
    failed = "failed"
    skipped = "skipped"
    not_found = "not_found"
    none = "none"


class UnitResult(BaseModel):
    unit: TestUnit
    outcome: UnitOutcome
    duration_ms: float = 0.0
    message: str | None = None


class RunStatistics(BaseModel):
    executed: int = 0
    outcomes: dict[UnitOutcome, int] = Field(default_factory=dict)


class RunCompleteReport(BaseModel):
    statistics: RunStatistics | None
    is_canceled: bool
    is_aborted: bool
    error: str | None = None
    elapsed_ms: float = 0.0

    @classmethod
    def aborted(cls, error: str) -> "RunCompleteReport":
        return cls(statistics=None, is_canceled=False, is_aborted=True, error=error, elapsed_ms=0.0)
