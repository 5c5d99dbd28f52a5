"""
Observability hooks invoked by the consumer dispatcher on every batch outcome.

Hooks see delivered, failed, dead-lettered and expired batches. They are kept
out of the handler so business code never has to log or count for itself.
"""
from typing import Dict

from streamrelay.models import BatchOutcome, OutcomeKind
from streamrelay.utils.logging import get_logger
from streamrelay.utils.metrics import MetricsManager


class ObservabilityHook:
    """Base hook: override `on_outcome`."""

    def on_outcome(self, outcome: BatchOutcome) -> None:
        pass


class LoggingHook(ObservabilityHook):
    """
    Structured log line per outcome. With `log_records=True`, every delivered
    record is also logged with its partition key and sequence id.
    """

    def __init__(self, log_records: bool = False):
        self.logger = get_logger("BatchOutcome")
        self.log_records = log_records

    def on_outcome(self, outcome: BatchOutcome) -> None:
        fields: Dict[str, object] = {
            "outcome": outcome.kind.value,
            "consumer_group": outcome.consumer_group,
            "partition_id": outcome.partition_id,
            "first_sequence_id": outcome.first_sequence_id,
            "last_sequence_id": outcome.last_sequence_id,
            "record_count": outcome.record_count,
            "attempt": outcome.attempt,
        }
        span = f"partition {outcome.partition_id} [{outcome.first_sequence_id}..{outcome.last_sequence_id}]"

        if outcome.kind is OutcomeKind.DELIVERED:
            self.logger.info(
                f"Delivered {outcome.record_count} records from {span} in {outcome.duration_s:.3f}s",
                extra=fields,
            )
            if self.log_records and outcome.batch is not None:
                for record in outcome.batch.records:
                    self.logger.info(
                        f"[partitionKey={record.partition_key}]:[sequenceNumber={record.sequence_id}]",
                        extra={"partition_id": record.partition_id},
                    )
        elif outcome.kind is OutcomeKind.FAILED:
            self.logger.warning(f"Handler failed on {span} (attempt {outcome.attempt}): {outcome.error}",
                                extra=fields)
        elif outcome.kind is OutcomeKind.DEAD_LETTERED:
            self.logger.error(
                f"Dead-lettered {span} after {outcome.attempt} attempts, partition halted: {outcome.error}",
                extra=fields,
            )
        elif outcome.kind is OutcomeKind.EXPIRED:
            self.logger.warning(f"Records expired before delivery on {span}: {outcome.error}", extra=fields)


class MetricsHook(ObservabilityHook):
    """Feeds batch outcomes into the Prometheus registry."""

    def __init__(self) -> None:
        self.metrics = MetricsManager()

    def on_outcome(self, outcome: BatchOutcome) -> None:
        partition = str(outcome.partition_id)
        self.metrics.batches.labels(
            group=outcome.consumer_group, partition=partition, outcome=outcome.kind.value
        ).inc()
        if outcome.kind in (OutcomeKind.DELIVERED, OutcomeKind.FAILED):
            self.metrics.handler_latency.labels(group=outcome.consumer_group).observe(outcome.duration_s)
        if outcome.kind is OutcomeKind.DEAD_LETTERED:
            self.metrics.partition_halted.labels(group=outcome.consumer_group, partition=partition).set(1)
        elif outcome.kind is OutcomeKind.DELIVERED:
            self.metrics.partition_halted.labels(group=outcome.consumer_group, partition=partition).set(0)
