# metricgateway

Building blocks for a metrics gateway. The package receives datapoints,
events and spans in several wire formats, turns them into one common model,
filters them and passes them on to other sinks. It needs nothing outside the
standard library.

A *sink* here is any object with the methods the caller uses on it:
`add_datapoints(points)`, `add_events(events)` and/or `add_spans(spans)`.
Failures are raised as exceptions; where several sinks fail at once the
errors are raised together as an `ExceptionGroup`.

## Modules

- **`metricgateway.protocol`**: the common model (`Datapoint`, `Event`,
  `Span`, `MetricType`); `cumulative` and `gauge` to build stat datapoints;
  `listener_dims` and `forwarder_dims`; `raise_errors`; `UneventfulForwarder`,
  which passes datapoints to a wrapped forwarder and drops events and spans;
  and `CloseableHealthCheck`, which answers 200 `OK` until
  `close_health_check()` is called and 404 `graceful shutdown` after that.
- **`metricgateway.filtering`**: `FilterObj` (lists of `allow` and `deny`
  regular expressions) and `FilteredForwarder`. A name that matches an allow
  rule passes; if there are no allow rules, a name passes unless a deny rule
  matches. Dropped datapoints are counted in `filtered_datapoints`.
- **`metricgateway.demultiplexer`**: `Demultiplexer` sends everything to each
  of its `datapoint_sinks`, `event_sinks` and `trace_sinks`. With
  `late_duration` / `future_duration` (as `timedelta`) set it counts and logs
  items whose timestamps fall outside that window. Every trace sink except the
  last gets its own copy of the spans.
- **`metricgateway.spantags`**: `AdditionalSpanTags(tags, next_sink)` adds
  fixed tags to every span, replacing tags of the same name, and passes
  datapoints and events through unchanged.
- **Metric-name deconstructors**: these turn flat Graphite names into a
  metric name, a `MetricType` and dimensions. Each has `parse(name)`, which
  returns a `ParsedMetric(metric, metric_type, dimensions)`.
  - `metricgateway.deconstructors`: `IdentityMetricDeconstructor`,
    `NilDeconstructor` (always raises `DeconstructorError`) and
    `CommaKeysDeconstructor` for names like `name[key:value,key:value]rest`.
    `load(name, options)` knows `""`, `"identity"`, `"commakeys"`, `"datadog"`
    and `"nil"`. The comma-keys options are `coloninkey` (split each tag at
    the last colon) and `mtypedim:<dim>` (take the metric type from that
    dimension).
  - `metricgateway.regex_deconstructor`: `regex_json_loader(config)`. Named
    groups starting with `sf_metric` build the metric name (in sorted group
    order); the other groups become dimensions.
  - `metricgateway.delimiter_deconstructor`: `delimiter_json_loader(config)`.
    The name is split on a delimiter and each piece is mapped to a dimension,
    the metric (`%`) or ignored (`-`); `*`, `|` and `!` glob, alternate and
    negate in `MetricPath`. `TypeRules` choose a metric type by prefix or
    suffix.
  - `metricgateway.deconstructor_loader.load_json(name, config)` loads
    `"delimiter"` or `"regex"` from a JSON-style dict. Each loader takes a
    `FallbackDeconstructor` name and `FallbackDeconstructorConfig` string,
    used for names no rule matches.
- **`metricgateway.carbon`**: `new_carbon_datapoint(line, deconstructor)`
  parses `metric value timestamp` and keeps the original line, which
  `native_carbon_line(dp)` returns. Bad lines raise `InvalidCarbonLine`.
- **`metricgateway.carbon_listener`**: `CarbonListener(sink, listen_addr,
  protocol, ...)` accepts carbon lines over `"tcp"` or `"udp"` in a background
  thread. Idle TCP connections are closed after `connection_timeout` seconds.
- **`metricgateway.carbon_forwarder`**: `CarbonForwarder(host, port=2003, ...)`
  writes datapoints as carbon lines and keeps used connections in a
  `ConnPool`. Dimension values are put before the metric name, in
  `dimension_order` first and then sorted by key. It connects once when it is
  created, so the endpoint must be reachable then. `add_datapoints` takes an
  optional `deadline` as a `time.monotonic()` instant.
- **`metricgateway.csv_forwarder`**: `CsvForwarder(filename="datapoints.csv",
  ...)` truncates the file and writes the string form of each datapoint and
  event, and each span as JSON, one per line.
- **`metricgateway.collectd`**: `parse_write_body`, `new_datapoint` and
  `new_event` for collectd's `write_http` JSON. Dimensions written as
  `name[k=v,f=x]` inside `type_instance`, `plugin_instance` and `host` are
  pulled out with `get_dimensions_from_name`.
- **`metricgateway.collectd_listener`**: `JSONDecoder` and `CollectdListener`,
  an HTTP server that takes `POST` on `/post-collectd` with a JSON content
  type (gzip bodies are accepted) and serves a health check on `/healthz`.
  Query parameters named `sfxdim_<key>` become default dimensions.
- **`metricgateway.prometheus`**: `Decoder` and `PrometheusListener`, an HTTP
  server for remote-write requests: `POST` on `/write` with content type
  `application/x-protobuf`, snappy-compressed. It has its own snappy block
  decoder (`snappy_decode`) and protobuf reader (`parse_write_request`).
  Names ending in `_total`, `_bucket` or `_count` become counters; NaN samples
  and series without a `__name__` label are counted and dropped.

Listeners and forwarders report their own stats through `datapoints()`.
`CarbonListener`, `CollectdListener`, `PrometheusListener` and `CsvForwarder`
can be used as context managers, which close them on exit.

## Examples

Parse a carbon line with a comma-keys deconstructor:

```python
from metricgateway.carbon import new_carbon_datapoint
from metricgateway.deconstructors import load

deconstructor = load("commakeys", "")
dp = new_carbon_datapoint("cpu.idle[host:web1] 42 1519398226", deconstructor)
print(dp.metric, dp.dimensions, dp.value)   # cpu.idle {'host': 'web1'} 42
```

Filter datapoints before they are forwarded:

```python
from metricgateway.filtering import FilterObj, FilteredForwarder
from metricgateway.protocol import Datapoint

f = FilteredForwarder()
f.setup(FilterObj(allow=["^cpu.idle"], deny=["^cpu.*"]))
kept = f.filter_datapoints([Datapoint("cpu.idle"), Datapoint("cpu.user")])
print([dp.metric for dp in kept], f.filtered_datapoints)   # ['cpu.idle'] 1
```

Receive carbon lines over TCP and write them to a file:

```python
from metricgateway.carbon_listener import CarbonListener
from metricgateway.csv_forwarder import CsvForwarder

with CsvForwarder("points.csv") as out, CarbonListener(out, "127.0.0.1:0") as listener:
    print("listening on", listener.address())
    ...
```

## What the package does not do

There is no command and no configuration file: the package does not start a
gateway by itself. Listeners, filters and forwarders are put together in your
own code, as in the last example. The only places datapoints can be sent to
are a carbon endpoint, a file, or a sink object of your own.

## Running the tests

```
pip install -e .[test]
pytest
```