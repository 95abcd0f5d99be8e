# taskscope

`taskscope` holds the pieces of an async task console. It pulls structured
data out of instrumentation spans and events, keeps statistics about tasks,
resources and async operations, classifies key presses, and resolves the
console's configuration from config files and command-line arguments.

## Modules

- `taskscope.visitors`: visitors that read the named fields of spans and
  events. Each visitor has `record_str`, `record_u64`, `record_i64`,
  `record_bool` and `record_debug` methods, and `visit(fields)` records a
  mapping or a sequence of `(name, value)` pairs by value type and returns the
  visitor.
  - `FieldVisitor` collects every field as a `Field`.
  - `TaskVisitor` collects a task's fields and turns `loc.file`, `loc.line`
    and `loc.col` into a `Location`.
  - `ResourceVisitor` reads `concrete_type`, `kind` (a `ResourceKind`; `timer`
    is a known kind), `is_internal` and `inherits_child_attrs`.
  - `AsyncOpVisitor` reads `source` and `inherits_child_attrs`.
  - `WakerVisitor` reads `task.id` and `op` (a `WakeOp` of a `WakeKind`).
  - `PollOpVisitor` reads `op_name` and `is_ready`.
  - `StateUpdateVisitor` reads an attribute value with its `.unit` and `.op`
    (`add`, `sub` or `override`) and returns an `Update`.
- `taskscope.stats`: live statistics. Instants and durations are integer
  nanoseconds, with instants taken from a monotonic clock.
  - `TaskStats` counts wakes, self-wakes, waker clones and drops and polls,
    and adds up busy and scheduled time. It keeps poll and scheduled duration
    `Histogram`s that clamp outliers to their maximum.
  - `ResourceStats` and `AsyncOpStats` record creation and drop times.
    `AsyncOpStats` also counts polls and remembers the last task to poll it.
  - Each keeps a dirty flag, read with `is_unsent()` and cleared by
    `take_unsent()`.
  - `to_proto(base_time)` returns an immutable snapshot. `TimeAnchor` turns
    monotonic instants into `(seconds, nanos)` timestamps and datetimes.
  - `Histogram.to_proto()` serialises the histogram in the HdrHistogram V2
    format.
- `taskscope.sync`: `Mutex` and `RwLock`. `lock()`, `read()` and `write()`
  return a `Guard` that is used as a context manager. `try_read()` and
  `try_write()` return `None` when the lock is busy.
- `taskscope.intern`: `Strings`, a string interner that hands out
  `InternedStr` values. `retain_referenced()` drops the strings that nothing
  else still holds.
- `taskscope.input`: `KeyEvent`, `KeyModifiers`, `KeyEventKind` and
  `SpecialKey`, with the predicates `should_quit`, `should_ignore_key_event`,
  `is_space`, `is_help_toggle` and `is_esc`.
- `taskscope.options`: `KnownWarnings`, `AllowedWarnings`, `RetainFor`,
  `LogFilter`, `Palette`, `ColorToggles` and `ViewOptions`, with parsers such
  as `parse_allowed_warnings`, `parse_retain_for`, `parse_duration` and
  `parse_log_filter`.
- `taskscope.config`: `Config`, `ConfigFile`, `ConfigPath`, `parse_args`,
  `load_config` and `default_config`.

## Examples

Reading a spawn span:

```python
from taskscope.visitors import Location, TaskVisitor

fields, location = TaskVisitor(1).visit(
    {"task.name": "worker", "loc.file": "main.py", "loc.line": 10, "loc.col": 5}
).result()
assert location == Location(file="main.py", line=10, column=5)
assert [f.name for f in fields] == ["task.name"]
```

Recording polls:

```python
from taskscope.stats import TaskStats, TimeAnchor

stats = TaskStats(1_000_000_000, 1_000_000_000, created_at=0)
stats.start_poll(100)
stats.end_poll(400)
snapshot = stats.to_proto(TimeAnchor(mono=0, sys=0))
assert snapshot.poll_stats.polls == 1
assert snapshot.poll_stats.busy_time == 300
```

Interning strings:

```python
from taskscope.intern import Strings

strings = Strings()
first = strings.string("runtime.spawn")
second = strings.string_ref("runtime.spawn")
assert first is second
assert len(strings) == 1
```

Parsing options:

```python
from taskscope.options import parse_allowed_warnings, parse_retain_for

allowed = parse_allowed_warnings("self-wakes,lost-waker")
retain = parse_retain_for("5days 2min 2s")
forever = parse_retain_for("none")
assert forever.nanos is None
```

Writing the effective configuration as TOML:

```python
from taskscope.config import load_config

config = load_config(["--retain-for", "10s"])
print(config.gen_config_file())
```

## Configuration

`load_config(argv, home_path, current_path)` resolves settings in this order.
Each later source overrides the ones before it:

1. The user config file, at `ConfigPath.HOME.into_path()` in the platform's
   user configuration directory, or at `home_path` if one is given.
2. `console.toml` in the current working directory, or `current_path` if one
   is given.
3. Command-line arguments, parsed by `parse_args`. `RUST_LOG`, `LANG` and
   `COLORTERM` fill in for `--log`, `--lang` and `--colorterm` when those are
   not given.

Warning lists are merged, not replaced. An allow-list of `all` allows every
warning. `Config.trace_init()` writes internal logs to a new file in the log
directory when a log filter is set.

## What this package does not do

- It has no terminal interface and no console command. Nothing here draws
  tasks or resources, or runs an input loop.
- It does not connect to an instrumented process and has no wire protocol.
  Statistics snapshots are plain dataclasses.
- `parse_args` recognises the `gen-config` and `gen-completion` subcommands
  and stores them in `Config.subcmd`, but nothing acts on them. Call
  `Config.gen_config_file()` yourself to get a config file. No completion
  scripts are generated.
- The warning names are parsed and merged, but no lints are run.

## Tests

The test suite uses pytest. Its dependencies are in the `test` extra.