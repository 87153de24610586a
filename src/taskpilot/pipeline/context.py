from collections.abc import Iterator, Mapping
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Generic, TypeVar, overload

from taskpilot.errors import ContextOverwriteError

T = TypeVar("T")


@dataclass(frozen=True)
class ContextKey(Generic[T]):
    """Typed name for a context field. ``ctx[key]`` is typed as ``T``."""

    name: str

    def __str__(self) -> str:
        return self.name


@dataclass(frozen=True)
class StepRecord:
    step: str
    status: str
    duration_ms: float = 0.0


@dataclass(frozen=True)
class PipelineContext(Mapping[str, Any]):
    """Append-only record threaded through a pipeline.

    ``extend`` returns a new context; existing keys can never be replaced or
    removed, so a later step always sees exactly what earlier steps wrote.
    """

    _data: Mapping[str, Any] = field(default_factory=dict)
    history: tuple[StepRecord, ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "_data", MappingProxyType(dict(self._data)))

    @classmethod
    def start(cls, **fields: Any) -> "PipelineContext":
        return cls(_data=fields)

    @overload
    def __getitem__(self, key: ContextKey[T]) -> T: ...

    @overload
    def __getitem__(self, key: str) -> Any: ...

    def __getitem__(self, key: "ContextKey[Any] | str") -> Any:
        return self._data[str(key)]

    def __iter__(self) -> Iterator[str]:
        return iter(self._data)

    def __len__(self) -> int:
        return len(self._data)

    def __contains__(self, key: object) -> bool:
        return str(key) in self._data

    def get(self, key: "ContextKey[T] | str", default: Any = None) -> Any:  # type: ignore[override]
        return self._data.get(str(key), default)

    def extend(self, step: str, **fields: Any) -> "PipelineContext":
        clashes = sorted(k for k in fields if k in self._data)
        if clashes:
            raise ContextOverwriteError(step, clashes)
        merged = {**self._data, **fields}
        return PipelineContext(_data=merged, history=self.history)

    def record(self, entry: StepRecord) -> "PipelineContext":
        return PipelineContext(_data=self._data, history=self.history + (entry,))

    def to_dict(self) -> dict[str, Any]:
        return dict(self._data)
