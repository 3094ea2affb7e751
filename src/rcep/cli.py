import sys
import time
import typer
from pathlib import Path
from typing import Optional
from rcep.config import settings
from rcep.logging import logger, get_capture_id

app = typer.Typer(no_args_is_help=True)

@app.callback()
def main():
    """
    Chat capture and context-package CLI.
    """
    pass

@app.command(name="doctor")
def doctor():
    """
    Check system configuration and environment health.
    """
    logger.info("Running doctor check...")

    print("\n🩺 RCEP Doctor\n")

    print(f"Python: {sys.version.split()[0]}")
    print(f"Prefix: {sys.prefix}")
    print(f"Capture ID: {get_capture_id()}")

    print("\n[Configuration]")
    print(f"SNAPSHOT_DEADLINE_MS:     {settings.SNAPSHOT_DEADLINE_MS}")
    print(f"TRANSCRIPT_MAX_MESSAGES:  {settings.TRANSCRIPT_MAX_MESSAGES}")
    print(f"TRANSCRIPT_MAX_CHARS:     {settings.TRANSCRIPT_MAX_CHARS}")
    print(f"MAX_API_CACHE_MESSAGES:   {settings.MAX_API_CACHE_MESSAGES}")
    print(f"HYDRATE_MAX_MS:           {settings.HYDRATE_MAX_MS}")

    data_dir = Path(settings.DATA_DIR)
    if data_dir.exists() and data_dir.is_dir():
        print(f"\n[Data Directory]          ✅ Found: {data_dir.absolute()}")
    else:
        print(f"\n[Data Directory]          ❌ Missing: {data_dir.absolute()} (run `rcep db init`)")

    print("\nDoctor check complete.")


db_app = typer.Typer(help="Database management commands.")
app.add_typer(db_app, name="db")

@db_app.command("init")
def init():
    """Initialize the database tables."""
    from rcep.db import init_db
    try:
        init_db()
        logger.info("Database initialized successfully.")
        print("✅ Database initialized.")
    except Exception as e:
        logger.error(f"Failed to initialize database: {e}")
        print(f"❌ Failed: {e}")
        raise typer.Exit(code=1)


def _fail(message: str):
    print(f"❌ {message}")
    raise typer.Exit(code=1)


def _load_messages(path: Path):
    from rcep.messages import Message
    from rcep.storage import read_json_file
    data = read_json_file(path)
    session_id = ""
    if isinstance(data, dict):
        session_id = str(data.get("session_id") or "")
        data = data.get("messages")
    if not isinstance(data, list):
        _fail(f"{path} does not hold a message list")
    return [Message.from_dict(m, i, session_id) for i, m in enumerate(data) if isinstance(m, dict)]


@app.command("capture")
def capture(
    url: str = typer.Option(..., help="URL of the conversation page"),
    events: Optional[Path] = typer.Option(None, help="JSON file with observed network events"),
    html: Optional[Path] = typer.Option(None, help="Saved HTML of the rendered page"),
    out: Path = typer.Option(Path("messages.json"), help="Where to write the message list"),
):
    """Rebuild a conversation's message list from saved network events and/or a saved page."""
    import json
    from rcep.adapters import NetworkEvent, extract_embedded_state, extract_from_event, parse_page
    from rcep.models.capture import MessageSource
    from rcep.reconcile import Reconciler, SourceResult, merge_sources
    from rcep.session import conversation_id_from_url, detect_provider, make_session_id
    from rcep.storage import read_json_file

    if events is None and html is None:
        _fail("Nothing to capture from: pass --events and/or --html")

    provider = detect_provider(url).value
    session_id = make_session_id(conversation_id_from_url(url))
    network = Reconciler(
        session_id,
        MessageSource.NETWORK.value,
        max_messages=settings.MAX_API_CACHE_MESSAGES,
        max_total_chars=settings.MAX_API_CACHE_TOTAL_CHARS,
    )
    embedded = Reconciler(session_id, MessageSource.EMBEDDED.value)
    page = Reconciler(session_id, MessageSource.PAGE.value)

    try:
        if events is not None:
            payloads = read_json_file(events)
            if isinstance(payloads, dict):
                payloads = [payloads]
            for payload in payloads:
                if isinstance(payload, dict):
                    event = NetworkEvent.from_payload(payload)
                    network.extend(extract_from_event(event), source_url=event.url or None)
        if html is not None:
            text = html.read_text(encoding="utf-8")
            embedded.extend(extract_embedded_state(text))
            page.extend(parse_page(text, provider))
    except (OSError, ValueError) as e:
        logger.error(f"Capture failed: {e}")
        _fail(f"Failed: {e}")

    messages = merge_sources([
        SourceResult("network", network.messages),
        SourceResult("embedded", embedded.messages),
        SourceResult("page", page.messages),
    ])
    if not messages:
        _fail("No messages found.")

    out.parent.mkdir(parents=True, exist_ok=True)
    out.write_text(json.dumps({
        "session_id": session_id,
        "provider": provider,
        "budget_reached": network.budget_reached,
        "messages": [m.to_dict() for m in messages],
    }, ensure_ascii=False, indent=2), encoding="utf-8")
    print(f"✅ {len(messages)} messages "
          f"(network {len(network)}, embedded {len(embedded)}, page {len(page)}) -> {out}")


@app.command("snapshot")
def snapshot(
    messages_file: Path = typer.Argument(..., help="Message list JSON (as written by `capture`)"),
    mode: str = typer.Option("digest", help="digest, ultra or ultra_plus"),
    transcript: bool = typer.Option(True, help="Include the verbatim transcript when small enough"),
    seal: bool = typer.Option(False, help="Sign the checksum with this device's key"),
    deadline_ms: Optional[int] = typer.Option(None, help="Extraction deadline (defaults to SNAPSHOT_DEADLINE_MS)"),
    out_dir: Path = typer.Option(Path("snapshots"), help="Output directory"),
):
    """Compact a message list into a context package."""
    from rcep.compaction import SnapshotGenerator
    from rcep.models.capture import OutputMode
    from rcep.storage import write_snapshot_file

    if mode not in {m.value for m in OutputMode}:
        _fail(f"Unknown mode {mode!r}")
    messages = _load_messages(messages_file)
    if not messages:
        _fail("No messages to compact.")

    deadline = time.monotonic() + deadline_ms / 1000 if deadline_ms is not None else None
    artifact = SnapshotGenerator(messages, output_mode=mode, include_transcript=transcript, deadline=deadline).generate()
    if seal:
        from rcep.db import init_db
        from rcep.errors import SealError
        from rcep.seal import DeviceSigner
        try:
            init_db()
            DeviceSigner().seal_artifact(artifact)
        except SealError as e:
            logger.error(f"Seal failed: {e}")
            _fail(f"Seal failed: {e}")

    path, sha, size = write_snapshot_file(artifact, out_dir)
    if artifact.get("partial"):
        print(f"⚠️  Partial snapshot ({artifact.get('partial_reason')})")
    ratio = (artifact.get("metadata") or {}).get("compression_digest") or (artifact.get("metadata") or {}).get("compression_ratio")
    print(f"✅ {artifact.get('protocol', 'partial')} -> {path} ({size} bytes, compression {ratio})")
    print(f"   checksum: {artifact.get('checksum')}")


@app.command("verify")
def verify(
    artifact_file: Path = typer.Argument(..., help="Snapshot JSON"),
    transcript: Optional[Path] = typer.Option(None, help="Claimed canonical transcript to check against the fingerprint"),
):
    """Check an artifact's checksum, signature and transcript fingerprint."""
    from rcep.seal import verify_artifact
    from rcep.storage import read_json_file

    artifact = read_json_file(artifact_file)
    claimed = transcript.read_text(encoding="utf-8") if transcript is not None else None
    report = verify_artifact(artifact, claimed)

    def mark(value):
        return "—" if value is None else ("✅" if value else "❌")

    print(f"Checksum:    {mark(report.checksum_ok)}")
    print(f"Signature:   {mark(report.signature_ok)}" + (f" (key {report.key_id[:16]}...)" if report.key_id else ""))
    print(f"Fingerprint: {mark(report.fingerprint_ok)}")
    print("Note: a valid seal only shows the artifact is unchanged since it was sealed on that device.")
    if not report.ok:
        raise typer.Exit(code=1)


@app.command("blocks")
def blocks(
    snapshot_file: Path = typer.Argument(..., help="Snapshot JSON to enrich"),
    text_file: Path = typer.Argument(..., help="Assistant reply holding the <RL4-...> blocks"),
    provider: str = typer.Option("unknown", help="Provider the reply came from"),
    out: Optional[Path] = typer.Option(None, help="Output path (defaults to overwriting the snapshot)"),
):
    """Merge pasted blocks into a snapshot, re-sealing it when it was sealed."""
    import json
    from rcep.blocks import blocks_payload, extract_blocks, seal_blocks_into_snapshot
    from rcep.storage import read_json_file

    found = extract_blocks(text_file.read_text(encoding="utf-8"))
    if found is None:
        _fail("Could not find complete <RL4-...> blocks in the text.")
    artifact = read_json_file(snapshot_file)

    from rcep.errors import SealError
    signer = None
    conv_id = str(artifact.get("session_id") or "")
    try:
        if isinstance(artifact.get("signature"), dict):
            from rcep.db import init_db
            from rcep.seal import DeviceSigner
            init_db()
            signer = DeviceSigner()
        sealed = seal_blocks_into_snapshot(artifact, blocks_payload(found, provider, conv_id, "manual"), signer)
    except SealError as e:
        logger.error(f"Seal failed: {e}")
        _fail(f"Seal failed: {e}")
    target = out or snapshot_file
    target.write_text(json.dumps(sealed, ensure_ascii=False, indent=2), encoding="utf-8")
    print(f"✅ {found.found_blocks} blocks sealed -> {target}")
    print(f"   checksum: {sealed['checksum']}")


if __name__ == "__main__":
    app()
