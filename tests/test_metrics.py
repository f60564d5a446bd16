from integration_engine.engine.metrics import BufferedMetricsSink, MetricsCollector, StorageMetricsSink
from integration_engine.models.enums import MetricType
from integration_engine.models.tables import ConnectorMetric


class ListSink:
    def __init__(self):
        self.written = []
        self.flushed = 0

    def write(self, samples):
        self.written.extend(samples)

    def flush(self):
        self.flushed += 1


class BrokenSink:
    def write(self, samples):
        raise RuntimeError("sink down")

    def flush(self):
        pass


class TestCollector:
    def test_sample_fields(self, clock):
        sink = ListSink()
        m = MetricsCollector(sink, clock=clock)
        sample = m.observe("c1", "sync_duration_ms", 120, unit="ms", dimensions={"status": "COMPLETED"})
        assert sample.metric_type == MetricType.HISTOGRAM
        assert sample.timestamp == clock.now
        assert sink.written == [sample]

    def test_increment_is_counter(self, clock):
        sink = ListSink()
        assert MetricsCollector(sink, clock=clock).increment("c1", "records_processed", 3).metric_type == MetricType.COUNTER

    def test_sink_errors_do_not_propagate(self, clock):
        sample = MetricsCollector(BrokenSink(), clock=clock).gauge("c1", "connector_health", 0)
        assert sample.value == 0


class TestSinks:
    def test_buffered_sink_batches(self, clock):
        inner = ListSink()
        buffered = BufferedMetricsSink(inner, batch_size=3)
        m = MetricsCollector(buffered, clock=clock)
        m.increment("c1", "a")
        m.increment("c1", "b")
        assert inner.written == []
        assert len(buffered) == 2
        m.increment("c1", "c")
        assert [s.metric_name for s in inner.written] == ["a", "b", "c"]
        m.increment("c1", "d")
        buffered.flush()
        assert len(inner.written) == 4
        assert inner.flushed == 1

    def test_storage_sink_persists_rows(self, storage, clock):
        m = MetricsCollector(StorageMetricsSink(storage), clock=clock)
        m.increment("c1", "changes_pushed", tags=["delivery"])
        rows = storage.repo(ConnectorMetric).list()
        assert len(rows) == 1
        assert rows[0].metric_name == "changes_pushed"
        assert rows[0].tags == ["delivery"]
        assert rows[0].timestamp == clock.now

    def test_engine_emits_sync_metrics(self, engine, make_connector, storage):
        c = make_connector()
        engine.orchestrator.run_job(engine.orchestrator.trigger(c.id).id)
        names = {r.metric_name for r in storage.repo(ConnectorMetric).list(ConnectorMetric.connector_id == c.id)}
        assert "sync_duration_ms" in names
