# beemgmt

This library holds the core logic of a parallel file system's management service.

It needs Python 3.11 or later and has no third-party dependencies.

| Module | Contents |
| --- | --- |
| `beemgmt.cap_pool` | capacity pool calculation |
| `beemgmt.capacity` | capacity pool lists for targets, buddy groups and storage pools |
| `beemgmt.target_state` | target reachability states |
| `beemgmt.config` | service configuration from defaults, a TOML file and the command line |
| `beemgmt.dispatch` | dispatching of incoming requests to handlers |

## Capacity pools

`CapPoolCalculator` sorts targets and buddy groups into one of three pools. The pool
depends on the free space and free inodes:

- `CapacityPool.NORMAL`
- `CapacityPool.LOW`
- `CapacityPool.EMERGENCY`

```python
from beemgmt.cap_pool import CapacityPool, CapPoolCalculator, CapPoolLimits

limits = CapPoolLimits(inodes_low=70, inodes_emergency=30, space_low=70, space_emergency=30)

calc = CapPoolCalculator.new_static(limits)
assert calc.cap_pool(100, 100) is CapacityPool.NORMAL
assert calc.cap_pool(50, 100) is CapacityPool.LOW
assert calc.cap_pool(10, 100) is CapacityPool.EMERGENCY
```

### Dynamic limits

`CapPoolCalculator.new_dynamic(limits, dynamic_limits, values)` takes a
`CapPoolDynamicLimits` and the values to judge. Each value is any object with
`free_space` and `free_inodes` attributes (the `CapacityInfo` protocol).

The calculator first sorts the values by the static limits. It then measures the
spread (maximum minus minimum) of the space and inode values:

- in the normal pool, a spread above its threshold switches that low limit to the
  dynamic one;
- in the low pool, a spread above its threshold switches that emergency limit to the
  dynamic one.

### Choosing a calculator and checking limits

`CapPoolCalculator.create(limits, dynamic_limits, values)` builds a dynamic calculator
if `dynamic_limits` is given. If it is `None`, it builds a static one.

`CapacityPool.bee_msg_vec_index()` gives the pool's position in a list of pools:

| Pool | Index |
| --- | --- |
| normal | 0 |
| low | 1 |
| emergency | 2 |

`check()` on `CapPoolLimits` and `CapPoolDynamicLimits` raises `ValueError` if a low
limit is below its emergency limit. The calculator constructors run the same check.

## Capacity lists and storage pools

`beemgmt.capacity` works on `TargetOrBuddyGroup` records. Each record has:

- `id`
- `pool_id`
- `node_id`
- `free_space`
- `free_inodes`

A `free_space` or `free_inodes` of `None` counts as zero.

| Function | Returns |
| --- | --- |
| `cap_pool_lists(items, limits, dynamic_limits)` | three lists of IDs: normal, low, emergency |
| `per_pool_cap_pools(items, pool_ids, limits, dynamic_limits)` | the same lists for each storage pool ID, calculated from that pool's items only |
| `build_storage_pool(pool_id, alias, targets, buddy_groups, limits, dynamic_limits)` | a `StoragePoolCapacities` for one storage pool |

`build_storage_pool` uses only the targets and buddy groups of `pool_id`. The
`StoragePoolCapacities` it returns holds:

- the pool's target and buddy group IDs;
- the target-to-node map;
- the capacity pool lists of targets and of buddy groups;
- the targets of each capacity pool grouped by node.

A target of the pool without a `node_id` raises `ValueError`.

## Target states

`reachability_state(age, is_primary, is_secondary, pre_shutdown, node_offline_timeout)`
returns a `TargetReachabilityState`. `age` and the timeout are `timedelta`s or numbers
of seconds. Negative values raise `ValueError`. The result is:

1. `PROBABLY_OFFLINE` for any target other than a buddy group secondary, while
   `pre_shutdown` is true.
2. Otherwise, `OFFLINE` once the age exceeds the timeout. Buddy group primaries are
   never reported offline.
3. Otherwise, `PROBABLY_OFFLINE` once the age exceeds half the timeout.
4. Otherwise, `ONLINE`.

`split_target_states(targets)` turns `(target_id, consistency, reachability)` triples
into three parallel lists.

## Configuration

`Config` is a dataclass holding every setting with its default.

`load_and_parse(argv=None)` builds a `Config` in three layers, each overriding the
one before:

1. the defaults;
2. the TOML config file, if there is one;
3. the command-line options parsed by `build_parser()`.

### The config file

The config file is `/etc/beegfs/beegfs-mgmtd.toml`, or the file given with
`--config-file`. A missing file at the default location is ignored. A missing file
that was named explicitly raises `ValueError`.

Keys in the file are kebab-case, for example `db-file` or `quota-enable`. Unknown keys
are rejected. The capacity pool limits can only be set in the file, as tables:

- `cap-pool-meta-limits`
- `cap-pool-storage-limits`
- `cap-pool-dynamic-meta-limits`
- `cap-pool-dynamic-storage-limits`

The values in these tables are integers or strings with a unit suffix.

### Checks and port shift

After loading, `Config.check_validity()` runs, and a failure raises `ValueError`. It
rejects:

- a non-v4 `--fs-uuid`;
- quota enforcement without quota being enabled;
- inconsistent capacity pool limits.

A non-zero port shift is added to the BeeMsg and gRPC ports, wrapping at 65535. A
message is noted if a port overflows.

`load_and_parse` returns the config and a list of informational messages for logging.

### Value formats and other helpers

| Parser | Accepts |
| --- | --- |
| `parse_duration` | `180s`, `30m`, `1h30m` and the like; units `ms`, `s`, `m`, `h`, `d`; a bare number is seconds |
| `parse_integer_unit` | an integer with an optional `k`/`M`/`G`/`T`/`P`/`E` (powers of 1000) or `Ki`/`Mi`/`Gi`/`Ti`/`Pi`/`Ei` (powers of 1024) suffix |
| `parse_integer_range` | `start-end`, returned as an inclusive `range` |

- `Config.update(values)` sets the given settings and skips `None` values. It raises
  `ValueError` for unknown names.
- `LogLevel.to_logging_level()` maps a level to a `logging` level. `TRACE` is 5 and
  `OFF` is above `CRITICAL`.

## Message dispatch

Register each handler on a `Dispatcher` with its message ID and a name for log
messages:

```python
dispatcher.register(msg_id, handler, name, error_response=None)
```

The handler is called as `handler(msg, ctx, req)`. It may be a plain function or a
coroutine function.

- **With `error_response`:** the handler's return value is sent back. If the handler
  raises, `error_response()` is sent instead.
- **Without it:** nothing is sent, and failures are only logged.

Registering an ID twice raises `ValueError`.

`await dispatcher.dispatch(ctx, req)` takes a `Request`. A `Request` provides:

- `msg_id`
- `addr`
- `deserialize_msg()`
- `respond(msg)`
- `authenticate_connection()`

A message that cannot be decoded raises `ValueError`. An unregistered ID is answered
with `GenericResponse(code=TRY_AGAIN, description=b"Unhandled msg")`.

### Shutdown

`Context` holds:

- a `RunState`;
- a `Config`;
- an `asyncio.Queue` that receives `(node_type, node_id)` from
  `Context.notify_client_pulled_state` while shutting down.

Once `RunState.enter_pre_shutdown()` has been called, `fail_on_pre_shutdown(run_state)`
raises `PreShutdownError`. For a handler registered with a response, the dispatcher
answers with a `GenericResponse` whose code is `TRY_AGAIN`.

## What this package does not do

The package is a library of the service's logic. It has:

- no command that starts a service;
- no network listener or connection pool;
- no encoding or decoding of messages on the wire (requests decode their own messages);
- no database or other persistent storage of nodes, targets, buddy groups or pools;
- no message handlers beyond what the caller registers.