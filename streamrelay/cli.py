import asyncio
import json
from pathlib import Path
from typing import Optional

import httpx
import typer
import uvicorn

from streamrelay.errors import RelayError
from streamrelay.handlers import log_records
from streamrelay.hooks import LoggingHook, MetricsHook
from streamrelay.log.local_log import LocalLog
from streamrelay.relay import StreamRelay
from streamrelay.settings import settings
from streamrelay.utils.logging import setup_logging

app = typer.Typer(help="streamrelay control interface")
checkpoint_app = typer.Typer(help="Inspect or reset consumer checkpoints")
app.add_typer(checkpoint_app, name="checkpoint")


def _render_payload(payload: bytes) -> str:
    try:
        return payload.decode("utf-8")
    except UnicodeDecodeError:
        return f"0x{payload.hex()}"


@app.command()
def put(
    partition_key: str = typer.Argument(..., help="Partition key of the record"),
    data: str = typer.Argument(..., help="UTF-8 payload"),
):
    """
    Submits one record to the configured log.
    """
    async def _put():
        async with StreamRelay.from_settings(settings) as relay:
            return await relay.producer.send(partition_key, data.encode("utf-8"))

    try:
        result = asyncio.run(_put())
    except RelayError as e:
        typer.echo(f"Error ({e.code}): {e}", err=True)
        raise typer.Exit(code=1)
    typer.echo(json.dumps({"partitionId": result.partition_id, "sequenceId": result.sequence_id}))


@app.command()
def inspect(
    data_dir: Path = typer.Argument(..., help="Path to the LocalLog data directory"),
    partition: int = typer.Option(0, help="Partition to inspect"),
    limit: int = typer.Option(10, help="Number of records to show"),
    tail: bool = typer.Option(False, help="Show last N records instead of first N"),
    partitions: int = typer.Option(settings.NUM_PARTITIONS, help="Partition count of the log"),
):
    """
    Inspects the local log files directly.
    """
    if not data_dir.exists():
        typer.echo(f"Error: Directory {data_dir} does not exist.", err=True)
        raise typer.Exit(code=1)

    async def _inspect():
        log = LocalLog(str(data_dir), num_partitions=partitions)
        low = await log.get_low_watermark(partition)
        high = await log.get_high_watermark(partition)
        typer.echo(f"Partition {partition}: sequence ids {low}..{high - 1} (next: {high})")

        start = max(low, high - limit) if tail else low
        typer.echo(f"--- Records (Sequence {start} to {start + limit - 1}) ---")
        async for record in log.read(partition, start, limit):
            ts = record.enqueue_time.isoformat()
            typer.echo(f"[{record.sequence_id}] {ts} | {record.partition_key} | {_render_payload(record.payload)}")

    try:
        asyncio.run(_inspect())
    except RelayError as e:
        typer.echo(f"Error ({e.code}): {e}", err=True)
        raise typer.Exit(code=1)


@checkpoint_app.command("get")
def checkpoint_get(
    group: str = typer.Option(settings.CONSUMER_GROUP, help="Consumer group"),
    partition: Optional[int] = typer.Option(None, help="Partition (all when omitted)"),
):
    """Shows committed checkpoints."""
    async def _get():
        async with StreamRelay.from_settings(settings) as relay:
            if partition is None:
                return await relay.checkpoints.list(group)
            return {partition: await relay.checkpoints.get(group, partition)}

    for p, seq in sorted(asyncio.run(_get()).items()):
        typer.echo(f"Group: {group}, Partition: {p}, Sequence: {seq if seq is not None else 'none'}")


@checkpoint_app.command("reset")
def checkpoint_reset(
    partition: int = typer.Option(..., help="Partition"),
    group: str = typer.Option(settings.CONSUMER_GROUP, help="Consumer group"),
    sequence: Optional[int] = typer.Option(None, help="New sequence id (clears the checkpoint when omitted)"),
):
    """Operator reset of a checkpoint. May move it backward."""
    async def _reset():
        async with StreamRelay.from_settings(settings) as relay:
            await relay.checkpoints.reset(group, partition, sequence)

    asyncio.run(_reset())
    typer.echo(f"Reset Group: {group}, Partition: {partition} to Sequence: {sequence if sequence is not None else 'none'}")


@app.command("dead-letters")
def dead_letters(limit: Optional[int] = typer.Option(None, help="Max entries to show")):
    """Lists dead-lettered batches."""
    async def _list():
        async with StreamRelay.from_settings(settings) as relay:
            return await relay.dead_letter.list(limit)

    for entry in asyncio.run(_list()):
        typer.echo(
            f"{entry.failed_at.isoformat()} | {entry.consumer_group} | partition {entry.partition_id} "
            f"[{entry.first_sequence_id}..{entry.last_sequence_id}] | {entry.attempts} attempts | {entry.last_error}"
        )


@app.command()
def consume(group: str = typer.Option(settings.CONSUMER_GROUP, help="Consumer group")):
    """
    Runs the dispatcher with the record-logging handler until interrupted.
    """
    setup_logging(settings.LOG_LEVEL, settings.LOG_FORMAT)

    async def _consume():
        async with StreamRelay.from_settings(settings) as relay:
            await relay.run_consumer(log_records, group, hooks=[LoggingHook(), MetricsHook()])

    asyncio.run(_consume())


@app.command()
def serve(
    host: str = typer.Option(settings.ADMIN_HOST, help="Bind address"),
    port: int = typer.Option(settings.ADMIN_PORT, help="Bind port"),
    consume_group: Optional[str] = typer.Option(
        None, "--consume", help="Also run the record-logging consumer for this group"
    ),
):
    """
    Runs the ingest/admin HTTP API.
    """
    from streamrelay.api import create_app

    setup_logging(settings.LOG_LEVEL, settings.LOG_FORMAT)
    relay = StreamRelay.from_settings(settings)
    consumers = {consume_group: log_records} if consume_group else None
    uvicorn.run(create_app(relay, consumers), host=host, port=port, log_config=None, log_level="warning")


@app.command()
def status(url: str = typer.Option(f"http://localhost:{settings.ADMIN_PORT}", help="URL of the API")):
    """
    Checks the status of a running relay.
    """
    try:
        r = httpx.get(f"{url}/control/status")
        if r.status_code == 200:
            typer.echo(json.dumps(r.json(), indent=2))
        else:
            typer.echo(f"Relay returned {r.status_code}: {r.text}", err=True)
            raise typer.Exit(code=1)
    except httpx.RequestError as e:
        typer.echo(f"Failed to connect to {url}: {e}", err=True)
        raise typer.Exit(code=1)


@app.command()
def resume(
    partition: int = typer.Option(..., help="Halted partition to resume"),
    group: str = typer.Option(settings.CONSUMER_GROUP, help="Consumer group"),
    url: str = typer.Option(f"http://localhost:{settings.ADMIN_PORT}", help="URL of the API"),
):
    """
    Resumes a partition halted after dead-lettering.
    """
    try:
        r = httpx.post(f"{url}/control/{group}/partitions/{partition}/resume")
        if r.status_code == 200:
            typer.echo(f"Partition {partition} of {group} resumed.")
        else:
            typer.echo(f"Failed to resume: {r.status_code} {r.text}", err=True)
            raise typer.Exit(code=1)
    except httpx.RequestError as e:
        typer.echo(f"Connection error: {e}", err=True)
        raise typer.Exit(code=1)


if __name__ == "__main__":
    app()
