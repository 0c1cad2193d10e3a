"""StorySpine CLI."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path

import click
import orjson

from storyspine.config import Config
from storyspine.engine import MemoryEngine
from storyspine.exceptions import StorySpineError
from storyspine.host import TranscriptHost


def _get_engine(ctx: click.Context, chat_id: str) -> MemoryEngine:
    config = Config()
    if ctx.obj.get("data_dir"):
        config.data_dir = Path(ctx.obj["data_dir"])
    if ctx.obj.get("mode"):
        config.mode = ctx.obj["mode"]
    return MemoryEngine(config, chat_id)


def _echo_json(data) -> None:
    click.echo(orjson.dumps(data, option=orjson.OPT_INDENT_2).decode())


def _run(engine: MemoryEngine, coro):
    """Run ``coro`` and close the engine's clients on the same loop."""

    async def go():
        try:
            return await coro
        finally:
            await engine.close()

    try:
        return asyncio.run(go())
    except StorySpineError as e:
        raise click.ClickException(str(e)) from e


def _close(engine: MemoryEngine) -> None:
    asyncio.run(engine.close())


transcript_arg = click.argument("transcript", type=click.Path(exists=True, dir_okay=False))
chat_opt = click.option("--chat-id", "-c", default=None, help="Chat id (defaults to the transcript file stem)")


@click.group()
@click.option("--data-dir", envvar="STORYSPINE_DATA_DIR", default=None, help="Data directory")
@click.option("--mode", type=click.Choice(["vector", "plain"]), default=None, help="Injection mode")
@click.option("--log-level", default="WARNING", show_default=True,
              type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False))
@click.pass_context
def main(ctx: click.Context, data_dir: str | None, mode: str | None, log_level: str) -> None:
    """StorySpine: tiered narrative memory for long-running chats."""
    logging.basicConfig(level=log_level.upper(), format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    ctx.ensure_object(dict)
    ctx.obj["data_dir"] = data_dir
    ctx.obj["mode"] = mode


@main.command()
@click.argument("chat_id")
@click.pass_context
def status(ctx: click.Context, chat_id: str) -> None:
    """Show memory status for a chat."""
    engine = _get_engine(ctx, chat_id)
    st = engine.status()
    click.echo(f"StorySpine status: {chat_id}")
    click.echo(f"  Mode:              {st['mode']}")
    click.echo(f"  Last summarized:   {st['last_summarized']}")
    click.echo(f"  Checkpoints:       {st['checkpoints']}")
    click.echo(f"  Events:            {st['events']}")
    click.echo(f"  Facts:             {st['facts']}")
    click.echo(f"  Chunks:            {st['chunks']} (last floor {st['last_chunk_floor']})")
    click.echo(f"  Atoms:             {st['atoms']}")
    click.echo(f"  Vectors:           chunk {st['chunk_vectors']}, event {st['event_vectors']}, atom {st['atom_vectors']}")
    click.echo(f"  Fingerprint:       {st['fingerprint'] or '-'}")
    if st["fingerprint"] and st["fingerprint"] != st["engine_fingerprint"]:
        click.echo(f"  WARNING: engine fingerprint is {st['engine_fingerprint']}; regenerate vectors")
    _close(engine)


@main.command()
@transcript_arg
@chat_opt
@click.option("--to-floor", "-t", default=None, type=int, help="Summarize up to this floor")
@click.pass_context
def summarize(ctx: click.Context, transcript: str, chat_id: str | None, to_floor: int | None) -> None:
    """Run an incremental summary over a transcript."""
    host = TranscriptHost(transcript, chat_id)
    engine = _get_engine(ctx, host.chat_id)
    result = _run(engine, engine.summarize(host.messages(), target_floor=to_floor))
    if result.no_content:
        click.echo("Nothing new to summarize.")
        return
    click.echo(f"Summarized through floor {result.end_floor}: {len(result.new_event_ids)} new events")
    for e in result.events:
        click.echo(f"  [{e.id}] {e.title}")


@main.command(name="extract-atoms")
@transcript_arg
@chat_opt
@click.pass_context
def extract_atoms_cmd(ctx: click.Context, transcript: str, chat_id: str | None) -> None:
    """Extract scene atoms for AI floors that have none."""
    host = TranscriptHost(transcript, chat_id)
    engine = _get_engine(ctx, host.chat_id)
    _echo_json(_run(engine, engine.extract_atoms(host.messages())))


@main.command(name="generate-vectors")
@transcript_arg
@chat_opt
@click.pass_context
def generate_vectors_cmd(ctx: click.Context, transcript: str, chat_id: str | None) -> None:
    """Rebuild all chunk, atom and event vectors."""
    host = TranscriptHost(transcript, chat_id)
    engine = _get_engine(ctx, host.chat_id)

    def progress(phase: str, done: int, total: int) -> None:
        click.echo(f"  {phase}: {done}/{total}")

    _echo_json(_run(engine, engine.generate_vectors(host.messages(), on_progress=progress)))


@main.command(name="clear-vectors")
@click.argument("chat_id")
@click.pass_context
def clear_vectors_cmd(ctx: click.Context, chat_id: str) -> None:
    """Delete all vectors and chunks for a chat."""
    engine = _get_engine(ctx, chat_id)
    engine.clear_vectors()
    _close(engine)
    click.echo(f"Cleared vectors for {chat_id}")


@main.command()
@transcript_arg
@chat_opt
@click.option("--pending", "-p", default=None, help="User message about to be sent")
@click.pass_context
def inject(ctx: click.Context, transcript: str, chat_id: str | None, pending: str | None) -> None:
    """Print the memory injection for the transcript's next turn."""
    host = TranscriptHost(transcript, chat_id)
    engine = _get_engine(ctx, host.chat_id)
    inj = _run(engine, engine.build_injection(host.messages(), pending_user_message=pending))
    if inj is None:
        click.echo("No memory to inject.")
        return
    click.echo(f"# depth {inj.depth}")
    click.echo(inj.text)


@main.command(name="export")
@click.argument("chat_id")
@click.option("--output", "-o", default=None, help="Archive path")
@click.pass_context
def export_cmd(ctx: click.Context, chat_id: str, output: str | None) -> None:
    """Export a chat's vectors to a zip archive."""
    engine = _get_engine(ctx, chat_id)
    try:
        info = engine.export_vectors(output)
    except StorySpineError as e:
        raise click.ClickException(str(e)) from e
    finally:
        _close(engine)
    click.echo(f"Exported to {info['path']} ({info['size']:,} bytes)")


@main.command(name="import")
@click.argument("chat_id")
@click.argument("archive", type=click.Path(exists=True, dir_okay=False))
@click.pass_context
def import_cmd(ctx: click.Context, chat_id: str, archive: str) -> None:
    """Replace a chat's vectors with an archive's contents."""
    engine = _get_engine(ctx, chat_id)
    try:
        result = engine.import_vectors(archive)
    except StorySpineError as e:
        raise click.ClickException(str(e)) from e
    finally:
        _close(engine)
    click.echo(f"Imported {result.chunk_count} chunks, {result.event_count} events, {result.atom_count} atoms")
    for w in result.warnings:
        click.echo(f"  WARNING: {w}")


@main.command()
@click.argument("chat_id")
@click.argument("floor", type=int)
@click.pass_context
def rollback(ctx: click.Context, chat_id: str, floor: int) -> None:
    """Roll memory back as if floors >= FLOOR were deleted."""
    engine = _get_engine(ctx, chat_id)
    report = engine.rollback(floor)
    _close(engine)
    _echo_json(report)


@main.command()
@click.option("--host", "-h", default=None, help="Bind host")
@click.option("--port", "-p", default=None, type=int, help="Bind port")
@click.pass_context
def serve(ctx: click.Context, host: str | None, port: int | None) -> None:
    """Start the HTTP API server."""
    import uvicorn
    from storyspine.api.routes import create_app

    config = Config()
    if ctx.obj.get("data_dir"):
        config.data_dir = Path(ctx.obj["data_dir"])
    if ctx.obj.get("mode"):
        config.mode = ctx.obj["mode"]
    app = create_app(config=config)
    host = host or config.api.host
    port = port or config.api.port
    click.echo(f"Starting StorySpine API on {host}:{port}")
    uvicorn.run(app, host=host, port=port, log_level="info")


if __name__ == "__main__":
    main()
