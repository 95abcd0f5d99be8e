"""Visitors that extract structured data from the fields of spans and events."""

from __future__ import annotations

import enum
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import Any

LOCATION_FILE = "loc.file"
LOCATION_LINE = "loc.line"
LOCATION_COLUMN = "loc.col"
INHERIT_FIELD_NAME = "inherits_child_attrs"

_U32_MASK = 0xFFFF_FFFF
_U64_MAX = (1 << 64) - 1
_I64_MIN = -(1 << 63)


class WakeKind(enum.Enum):
    """The operation a waker event describes."""

    WAKE = "waker.wake"
    WAKE_BY_REF = "waker.wake_by_ref"
    CLONE = "waker.clone"
    DROP = "waker.drop"


@dataclass(frozen=True)
class WakeOp:
    """A waker operation, with whether the task woke itself."""

    kind: WakeKind
    self_wake: bool = False


@dataclass(frozen=True)
class Location:
    """A source code location."""

    file: str | None = None
    line: int | None = None
    column: int | None = None


@dataclass(frozen=True)
class Field:
    """A named field value tagged with the metadata it came from."""

    name: str
    value: str | int | bool
    metadata_id: int


@dataclass(frozen=True)
class ResourceKind:
    """The kind of a resource: either a known kind or a free-form name."""

    name: str
    known: bool = False


class UpdateOp(enum.Enum):
    """How a state update changes a resource attribute."""

    ADD = "add"
    SUB = "sub"
    OVERRIDE = "override"


@dataclass(frozen=True)
class Update:
    """A state update for a resource attribute."""

    field: Field
    op: UpdateOp | None = None
    unit: str | None = None


@dataclass(frozen=True)
class ResourceVisitorResult:
    """What a resource span describes."""

    concrete_type: str
    kind: ResourceKind
    location: Location | None
    is_internal: bool
    inherit_child_attrs: bool


def _location(file: str | None, line: int | None, column: int | None) -> Location | None:
    if file is not None and line is not None and column is not None:
        return Location(file=file, line=line, column=column)
    return None


class Visitor:
    """Base visitor: typed values fall back to ``record_debug``, which ignores them."""

    def record_debug(self, name: str, value: Any) -> None:
        pass

    def record_i64(self, name: str, value: int) -> None:
        self.record_debug(name, value)

    def record_u64(self, name: str, value: int) -> None:
        self.record_debug(name, value)

    def record_bool(self, name: str, value: bool) -> None:
        self.record_debug(name, value)

    def record_str(self, name: str, value: str) -> None:
        self.record_debug(name, value)

    def visit(self, fields: Mapping[str, Any] | Iterable[tuple[str, Any]]):
        """Record each ``(name, value)`` pair by its type and return the visitor."""
        items = fields.items() if isinstance(fields, Mapping) else fields
        for name, value in items:
            if isinstance(value, bool):
                self.record_bool(name, value)
            elif isinstance(value, int) and 0 <= value <= _U64_MAX:
                self.record_u64(name, value)
            elif isinstance(value, int) and _I64_MIN <= value < 0:
                self.record_i64(name, value)
            elif isinstance(value, str):
                self.record_str(name, value)
            else:
                self.record_debug(name, value)
        return self


class FieldVisitor(Visitor):
    """Collects every field as a ``Field``."""

    def __init__(self, meta_id: int) -> None:
        self.meta_id = meta_id
        self._fields: list[Field] = []

    def _push(self, name: str, value: str | int | bool) -> None:
        self._fields.append(Field(name=name, value=value, metadata_id=self.meta_id))

    def record_debug(self, name: str, value: Any) -> None:
        self._push(name, repr(value))

    def record_i64(self, name: str, value: int) -> None:
        self._push(name, value)

    def record_u64(self, name: str, value: int) -> None:
        self._push(name, value)

    def record_bool(self, name: str, value: bool) -> None:
        self._push(name, value)

    def record_str(self, name: str, value: str) -> None:
        self._push(name, value)

    def result(self) -> list[Field]:
        return list(self._fields)


class TaskVisitor(Visitor):
    """Collects a spawned task's fields, treating ``loc.*`` as its spawn location."""

    def __init__(self, meta_id: int) -> None:
        self._fields = FieldVisitor(meta_id)
        self._line: int | None = None
        self._file: str | None = None
        self._column: int | None = None

    def record_debug(self, name: str, value: Any) -> None:
        self._fields.record_debug(name, value)

    def record_i64(self, name: str, value: int) -> None:
        self._fields.record_i64(name, value)

    def record_u64(self, name: str, value: int) -> None:
        if name == LOCATION_LINE:
            self._line = value & _U32_MASK
        elif name == LOCATION_COLUMN:
            self._column = value & _U32_MASK
        else:
            self._fields.record_u64(name, value)

    def record_bool(self, name: str, value: bool) -> None:
        self._fields.record_bool(name, value)

    def record_str(self, name: str, value: str) -> None:
        if name == LOCATION_FILE:
            self._file = value
        else:
            self._fields.record_str(name, value)

    def result(self) -> tuple[list[Field], Location | None]:
        return self._fields.result(), _location(self._file, self._line, self._column)


class ResourceVisitor(Visitor):
    """Extracts the description of a resource span."""

    RES_SPAN_NAME = "runtime.resource"
    RES_CONCRETE_TYPE_FIELD_NAME = "concrete_type"
    RES_VIZ_FIELD_NAME = "is_internal"
    RES_KIND_FIELD_NAME = "kind"
    RES_KIND_TIMER = "timer"

    def __init__(self) -> None:
        self._concrete_type: str | None = None
        self._kind: ResourceKind | None = None
        self._is_internal = False
        self._inherit_child_attrs = False
        self._line: int | None = None
        self._file: str | None = None
        self._column: int | None = None

    def record_str(self, name: str, value: str) -> None:
        if name == self.RES_CONCRETE_TYPE_FIELD_NAME:
            self._concrete_type = value
        elif name == self.RES_KIND_FIELD_NAME:
            self._kind = ResourceKind(value, known=value == self.RES_KIND_TIMER)
        elif name == LOCATION_FILE:
            self._file = value

    def record_bool(self, name: str, value: bool) -> None:
        if name == self.RES_VIZ_FIELD_NAME:
            self._is_internal = value
        elif name == INHERIT_FIELD_NAME:
            self._inherit_child_attrs = value

    def record_u64(self, name: str, value: int) -> None:
        if name == LOCATION_LINE:
            self._line = value & _U32_MASK
        elif name == LOCATION_COLUMN:
            self._column = value & _U32_MASK

    def result(self) -> ResourceVisitorResult | None:
        if self._concrete_type is None or self._kind is None:
            return None
        return ResourceVisitorResult(
            concrete_type=self._concrete_type,
            kind=self._kind,
            location=_location(self._file, self._line, self._column),
            is_internal=self._is_internal,
            inherit_child_attrs=self._inherit_child_attrs,
        )


class AsyncOpVisitor(Visitor):
    """Extracts the source method of an async operation span."""

    ASYNC_OP_SPAN_NAME = "runtime.resource.async_op"
    ASYNC_OP_SRC_FIELD_NAME = "source"

    def __init__(self) -> None:
        self._source: str | None = None
        self._inherit_child_attrs = False

    def record_str(self, name: str, value: str) -> None:
        if name == self.ASYNC_OP_SRC_FIELD_NAME:
            self._source = value

    def record_bool(self, name: str, value: bool) -> None:
        if name == INHERIT_FIELD_NAME:
            self._inherit_child_attrs = value

    def result(self) -> tuple[str, bool] | None:
        if self._source is None:
            return None
        return self._source, self._inherit_child_attrs


class WakerVisitor(Visitor):
    """Extracts the task id and operation of a waker event."""

    TASK_ID_FIELD_NAME = "task.id"
    OP_FIELD_NAME = "op"

    def __init__(self) -> None:
        self._id: int | None = None
        self._op: WakeOp | None = None

    def record_u64(self, name: str, value: int) -> None:
        if name == self.TASK_ID_FIELD_NAME:
            if value == 0:
                raise ValueError("span ids must be non-zero")
            self._id = value

    def record_str(self, name: str, value: str) -> None:
        if name != self.OP_FIELD_NAME:
            return
        try:
            kind = WakeKind(value)
        except ValueError:
            return
        self._op = WakeOp(kind)

    def result(self) -> tuple[int, WakeOp] | None:
        if self._id is None or self._op is None:
            return None
        return self._id, self._op


class PollOpVisitor(Visitor):
    """Extracts the name and readiness of a resource poll operation."""

    POLL_OP_EVENT_TARGET = "runtime::resource::poll_op"
    OP_NAME_FIELD_NAME = "op_name"
    OP_READINESS_FIELD_NAME = "is_ready"

    def __init__(self) -> None:
        self._op_name: str | None = None
        self._is_ready: bool | None = None

    def record_bool(self, name: str, value: bool) -> None:
        if name == self.OP_READINESS_FIELD_NAME:
            self._is_ready = value

    def record_str(self, name: str, value: str) -> None:
        if name == self.OP_NAME_FIELD_NAME:
            self._op_name = value

    def result(self) -> tuple[str, bool] | None:
        if self._op_name is None or self._is_ready is None:
            return None
        return self._op_name, self._is_ready


class StateUpdateVisitor(Visitor):
    """Extracts a resource attribute update with its unit and operation."""

    RE_STATE_UPDATE_EVENT_TARGET = "runtime::resource::state_update"
    AO_STATE_UPDATE_EVENT_TARGET = "runtime::resource::async_op::state_update"
    STATE_OP_SUFFIX = ".op"
    STATE_UNIT_SUFFIX = ".unit"

    def __init__(self, meta_id: int) -> None:
        self.meta_id = meta_id
        self._field: Field | None = None
        self._unit: str | None = None
        self._op: UpdateOp | None = None

    def _is_value_field(self, name: str) -> bool:
        return not (name.endswith(self.STATE_OP_SUFFIX) or name.endswith(self.STATE_UNIT_SUFFIX))

    def _set_field(self, name: str, value: str | int | bool) -> None:
        if self._is_value_field(name):
            self._field = Field(name=name, value=value, metadata_id=self.meta_id)

    def record_debug(self, name: str, value: Any) -> None:
        self._set_field(name, repr(value))

    def record_i64(self, name: str, value: int) -> None:
        self._set_field(name, value)

    def record_u64(self, name: str, value: int) -> None:
        self._set_field(name, value)

    def record_bool(self, name: str, value: bool) -> None:
        self._set_field(name, value)

    def record_str(self, name: str, value: str) -> None:
        if name.endswith(self.STATE_OP_SUFFIX):
            try:
                self._op = UpdateOp(value)
            except ValueError:
                pass
        elif name.endswith(self.STATE_UNIT_SUFFIX):
            self._unit = value
        else:
            self._set_field(name, value)

    def result(self) -> Update | None:
        if self._field is None:
            return None
        return Update(field=self._field, op=self._op, unit=self._unit)