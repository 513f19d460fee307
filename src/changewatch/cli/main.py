"""Main CLI entry point."""

from __future__ import annotations

import json
from datetime import datetime
from typing import Any

import click
from bson import json_util
from rich.console import Console
from rich.table import Table

from changewatch import __version__
from changewatch.core.exceptions import ChangeWatchError

console = Console()


@click.group()
@click.version_option(version=__version__, prog_name="changewatch")
@click.option("--log-level", default=None, help="Override the configured log level")
@click.pass_context
def cli(ctx: click.Context, log_level: str | None) -> None:
    """
    changewatch - resumable MongoDB change streams.

    Use 'changewatch COMMAND --help' for more information on a command.
    """
    from changewatch.observability.logging import configure_logging

    ctx.ensure_object(dict)
    configure_logging(level=log_level)


def _parse_namespace(namespace: str | None) -> tuple[str | None, str | None]:
    if not namespace:
        return None, None
    database, _, collection = namespace.partition(".")
    return database, collection or None


@cli.command()
@click.argument("namespace", required=False)
@click.option("--full-document", type=click.Choice(["default", "updateLookup"]), default=None)
@click.option("--resume-after", help="Resume token as extended JSON")
@click.option(
    "--start-at",
    type=click.DateTime(formats=["%Y-%m-%dT%H:%M:%S", "%Y-%m-%d"]),
    help="Only show changes at or after this UTC time",
)
@click.option("--max-await-time-ms", type=click.IntRange(min=0), default=None)
@click.option("--batch-size", type=click.IntRange(min=0), default=None)
@click.option("--match", "match", help="$match filter as extended JSON")
@click.option("--limit", type=click.IntRange(min=1), default=None, help="Stop after N changes")
def watch(
    namespace: str | None,
    full_document: str | None,
    resume_after: str | None,
    start_at: datetime | None,
    max_await_time_ms: int | None,
    batch_size: int | None,
    match: str | None,
    limit: int | None,
) -> None:
    """
    Tail changes on NAMESPACE (db.collection, db, or the whole cluster).

    Each change is printed as relaxed extended JSON.
    """
    from pymongo import MongoClient

    from changewatch.backends.mongo import watch as open_stream
    from changewatch.core.config import get_settings

    settings = get_settings()
    database, collection = _parse_namespace(namespace or settings.mongodb.database)

    options: dict[str, Any] = {
        "full_document": full_document or settings.stream.full_document,
        "max_await_time_ms": (
            max_await_time_ms
            if max_await_time_ms is not None
            else settings.stream.max_await_time_ms
        ),
        "batch_size": batch_size if batch_size is not None else settings.stream.batch_size,
    }
    if resume_after:
        options["resume_after"] = json_util.loads(resume_after)
    if start_at:
        options["start_at_operation_time"] = start_at
    pipeline = [{"$match": json_util.loads(match)}] if match else []

    if settings.observability.metrics_enabled:
        from changewatch.observability.metrics import get_metrics_collector

        collector = get_metrics_collector()
        collector.initialize(__version__)
        collector.start_server(settings.observability.metrics_port)

    client: MongoClient[dict[str, Any]] = MongoClient(
        settings.mongodb.uri.get_secret_value(),
        serverSelectionTimeoutMS=settings.mongodb.server_selection_timeout_ms,
    )
    seen = 0
    try:
        with open_stream(
            client,
            database,
            collection,
            pipeline,
            read_preference=settings.mongodb.read_preference,
            **options,
        ) as stream:
            for change in stream:
                console.print_json(json_util.dumps(change, json_options=json_util.RELAXED_JSON_OPTIONS))
                seen += 1
                if limit and seen >= limit:
                    break
    except KeyboardInterrupt:
        pass
    except ChangeWatchError as e:
        console.print(f"[red]{e}[/red]")
        raise SystemExit(1)
    finally:
        client.close()


@cli.command()
@click.option("--events", default=3, type=click.IntRange(min=1), help="Changes to generate")
@click.option("--fail-after", default=1, type=click.IntRange(min=0), help="Inject a failure after N changes")
def demo(events: int, fail_after: int) -> None:
    """Show a stream resuming across an injected failure, without a server."""
    from changewatch.backends.memory import InMemoryChangeFeed
    from changewatch.stream.change_stream import ChangeStream

    feed = InMemoryChangeFeed()
    stream = ChangeStream(
        "collection",
        issuer=feed,
        capability_source=feed,
        classifier=feed,
        namespace="demo.events",
    )

    table = Table(title="Delivered changes")
    table.add_column("#", justify="right")
    table.add_column("Resume token")
    table.add_column("Document")

    with stream:
        for n in range(events):
            feed.append({"n": n})
        feed.invalidate()

        for index, change in enumerate(stream.each()):
            if change["operationType"] == "invalidate":
                break
            table.add_row(str(index + 1), change["_id"]["_data"], json.dumps(change["fullDocument"]))
            if index + 1 == fail_after:
                feed.fail_next_pulls(1)

    console.print(table)
    for number, issued in enumerate(feed.issued, start=1):
        console.print(f"aggregate #{number}: {json_util.dumps(issued.stage)}")


@cli.command()
@click.option("--format", "output_format", type=click.Choice(["json", "env"]), default="json")
def config(output_format: str) -> None:
    """Show current configuration."""
    from changewatch.core.config import get_settings

    settings = get_settings()
    config_dict = settings.model_dump(mode="json")
    config_dict["mongodb"]["uri"] = "***"

    if output_format == "json":
        console.print(json.dumps(config_dict, indent=2))
    else:
        def flatten(obj: dict[str, Any], prefix: str = "") -> list[str]:
            items = []
            for k, v in obj.items():
                key = f"{prefix}__{k}".upper() if prefix else k.upper()
                if isinstance(v, dict):
                    items.extend(flatten(v, key))
                else:
                    items.append(f"CHANGEWATCH_{key}={v}")
            return items

        for line in flatten(config_dict):
            console.print(line)


if __name__ == "__main__":
    cli()
