from typing import Any, Dict
from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, generate_latest


class MetricsManager:
    """
    Registry for relay metrics, backed by prometheus_client.
    A process-wide singleton so every component reports into the same registry.
    """
    _instance = None

    def __new__(cls):
        if cls._instance is None:
            instance = super(MetricsManager, cls).__new__(cls)
            instance._init_metrics()
            cls._instance = instance
        return cls._instance

    def _init_metrics(self) -> None:
        self.registry = CollectorRegistry()
        self.records_appended = Counter(
            "streamrelay_records_appended_total",
            "Records appended to the log",
            ["partition"],
            registry=self.registry,
        )
        self.producer_retries = Counter(
            "streamrelay_producer_retries_total",
            "Producer append attempts retried after throttling",
            registry=self.registry,
        )
        self.producer_failures = Counter(
            "streamrelay_producer_failures_total",
            "Records the producer failed to deliver",
            ["code"],
            registry=self.registry,
        )
        self.batches = Counter(
            "streamrelay_batches_total",
            "Batch outcomes reported by the consumer dispatcher",
            ["group", "partition", "outcome"],
            registry=self.registry,
        )
        self.handler_latency = Histogram(
            "streamrelay_handler_latency_seconds",
            "Time spent in the batch handler",
            ["group"],
            registry=self.registry,
        )
        self.lag = Gauge(
            "streamrelay_partition_lag",
            "Records appended but not yet committed",
            ["group", "partition"],
            registry=self.registry,
        )
        self.partition_halted = Gauge(
            "streamrelay_partition_halted",
            "1 when a partition worker is halted after dead-lettering",
            ["group", "partition"],
            registry=self.registry,
        )

    def set_lag(self, group: str, partition: int, lag: int) -> None:
        self.lag.labels(group=group, partition=str(partition)).set(float(lag))

    def exposition(self) -> bytes:
        """Prometheus text format for the /metrics endpoint."""
        return generate_latest(self.registry)

    def get_all(self) -> Dict[str, Any]:
        res: Dict[str, Any] = {}
        for metric in self.registry.collect():
            for sample in metric.samples:
                labels = ",".join(f"{k}={v}" for k, v in sorted(sample.labels.items()))
                key = f"{sample.name}{{{labels}}}" if labels else sample.name
                res[key] = sample.value
        return res
