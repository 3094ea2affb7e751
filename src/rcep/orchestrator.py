"""
Capture orchestrator: one per tab.

Owns the per-job CaptureContext, picks a capture strategy, drives hydration,
reconciles the adapters' output and hands the canonical list to the snapshot
generator. Progress goes to a polled record, never pushed.

Exactly one job runs per tab. A second `start` is rejected synchronously with
JOB_ALREADY_RUNNING. Once the host context is gone, `soft_shutdown` tears the
heartbeat down once and no further storage write happens.
"""
import asyncio
import time
from urllib.parse import urlparse
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional, Protocol, Set
from rcep.adapters import NetworkEvent, count_message_nodes, extract_embedded_state, extract_from_event, parse_page, should_capture_url
from rcep.adapters.network import parse_json_payload
from rcep.blocks import best_blocks, blocks_payload, extract_blocks, seal_blocks_into_snapshot
from rcep.compaction import SnapshotGenerator, compute_checksum, transcript_allowed
from rcep.config import settings
from rcep.errors import (
    BLOCKS_NOT_FOUND, CONTENT_SCRIPT_ERROR, NO_MESSAGES, NO_SNAPSHOT, RELOAD_HINT, SNAPSHOT_GENERATION_FAILED,
    UNKNOWN_REQUEST, CaptureError, ContextInvalidated, JobAlreadyRunning,
)
from rcep.hydration import HostPage, Hydrator, deep_scan
from rcep.messages import Message, now_ms
from rcep.models.capture import CapturePhase, CaptureStatus, CaptureStrategy, MessageSource, OutputMode, Provider
from rcep.reconcile import Reconciler, SourceResult, merge_sources
from rcep.session import SessionTracker, conversation_id_from_url, detect_provider
from rcep.storage import StateStore, is_progress_stale
from rcep.logging import capture_id_ctx, logger

BLOCK_MARKER = "<RL4-"
RECENT_EVENTS_FOR_BLOCKS = 30
RECENT_MESSAGES_FOR_BLOCKS = 60
RECENT_NODES_FOR_BLOCKS = 30
NETWORK_WAIT_S = 12.0
NETWORK_WAIT_GROWTH = 50


class HostBridge(Protocol):
    """The hosting tab as seen by the orchestrator."""

    url: str
    page: HostPage

    async def page_html(self) -> str: ...

    async def fetch_conversation(self, conversation_id: str) -> Optional[Any]:
        """Full conversation JSON from the provider's own API, or None when unreachable."""
        ...

    def is_alive(self) -> bool: ...


class RequestType(str, Enum):
    START = "start"
    GET_MESSAGES = "getMessages"
    GET_PROGRESS = "getProgress"
    GET_SNAPSHOT = "getSnapshot"
    ARM_BLOCKS = "armBlocks"
    FINALIZE_BLOCKS = "finalizeBlocks"
    SHUTDOWN = "shutdown"


@dataclass
class CaptureOptions:
    output_mode: str = OutputMode.DIGEST.value
    include_transcript: bool = True
    wants_integrity_seal: bool = False

    @classmethod
    def from_payload(cls, options: Optional[Dict[str, Any]]) -> "CaptureOptions":
        options = options or {}
        mode = options.get("outputMode")
        return cls(
            output_mode=mode if isinstance(mode, str) and mode else OutputMode.DIGEST.value,
            include_transcript=bool(options.get("includeTranscript", True)),
            wants_integrity_seal=bool(options.get("wantsIntegritySeal", False)),
        )


@dataclass
class CaptureContext:
    """Everything one tab accumulates between session resets."""
    session_id: str
    api_cache: Reconciler
    page_cache: Reconciler
    embedded: List[Message] = field(default_factory=list)
    events: Deque[NetworkEvent] = field(default_factory=lambda: deque(maxlen=settings.MAX_API_EVENTS))
    chunks_seen: Set[int] = field(default_factory=set)
    total_expected: Optional[int] = None

    @classmethod
    def create(cls, session_id: str) -> "CaptureContext":
        return cls(
            session_id=session_id,
            api_cache=Reconciler(
                session_id,
                MessageSource.NETWORK.value,
                max_messages=settings.MAX_API_CACHE_MESSAGES,
                max_total_chars=settings.MAX_API_CACHE_TOTAL_CHARS,
            ),
            page_cache=Reconciler(session_id, MessageSource.PAGE.value),
        )

    def reset(self, session_id: str):
        self.session_id = session_id
        self.api_cache.reset(session_id)
        self.page_cache.reset(session_id)
        self.embedded = []
        self.events.clear()
        self.chunks_seen = set()
        self.total_expected = None


class ProgressEmitter:
    """
    Coalesced progress: each emit merges into the previous record and stamps
    `updatedAt`; unforced writes are dropped inside the throttle window. A
    heartbeat task keeps `updatedAt` moving while a job runs.
    """

    def __init__(
        self,
        store: StateStore,
        tab_key: str,
        is_alive: Callable[[], bool],
        throttle_ms: Optional[int] = None,
        heartbeat_ms: Optional[int] = None,
        clock_ms: Callable[[], int] = now_ms,
    ):
        self.store = store
        self.tab_key = tab_key
        self.is_alive = is_alive
        self.throttle_ms = settings.PROGRESS_THROTTLE_MS if throttle_ms is None else throttle_ms
        self.heartbeat_ms = settings.HEARTBEAT_MS if heartbeat_ms is None else heartbeat_ms
        self.clock_ms = clock_ms
        self.record: Dict[str, Any] = {}
        self._last_write = 0
        self._heartbeat: Optional[asyncio.Task] = None

    def emit(self, fields: Dict[str, Any], force: bool = False) -> bool:
        if not self.is_alive():
            return False
        now = self.clock_ms()
        self.record = {**self.record, **fields, "updatedAt": now}
        if not force and now - self._last_write < self.throttle_ms:
            return False
        self._last_write = now
        return self.store.write_progress(self.tab_key, self.record)

    def clear(self):
        self.record = {}
        self._last_write = 0
        if self.is_alive():
            self.store.clear_progress(self.tab_key)

    def start_heartbeat(self):
        self.stop_heartbeat()
        self._heartbeat = asyncio.create_task(self._beat())

    def stop_heartbeat(self):
        if self._heartbeat and not self._heartbeat.done():
            self._heartbeat.cancel()
        self._heartbeat = None

    async def _beat(self):
        while True:
            await asyncio.sleep(self.heartbeat_ms / 1000)
            if not self.is_alive():
                break
            if self.record.get("captureId"):
                self.emit({}, force=True)


class CaptureOrchestrator:
    def __init__(
        self,
        host: HostBridge,
        store: Optional[StateStore] = None,
        tab_key: str = "default",
        signer=None,
        network_wait_s: float = NETWORK_WAIT_S,
        snapshot_clock: Callable[[], float] = time.monotonic,
    ):
        self.host = host
        self.store = store or StateStore()
        self.tab_key = tab_key
        self.provider = detect_provider(host.url).value
        self.network_wait_s = network_wait_s
        self.snapshot_clock = snapshot_clock
        self._signer = signer

        self.sessions = SessionTracker(self.store, tab_key, on_reset=self._on_session_reset)
        self.context = CaptureContext.create(self.sessions.ensure(host.url))
        self.restore_page_cache()
        self.progress = ProgressEmitter(self.store, tab_key, is_alive=self.is_alive)

        self.capture_id: Optional[str] = None
        self.strategy: Optional[CaptureStrategy] = None
        self.last_snapshot: Optional[Dict[str, Any]] = None
        self.blocks_armed = False
        self.blocks_captured = False
        self._job_running = False
        self._job_task: Optional[asyncio.Task] = None
        self._shut_down = False

        self._handlers: Dict[RequestType, Callable[[Dict[str, Any]], Awaitable[Dict[str, Any]]]] = {
            RequestType.START: self._handle_start,
            RequestType.GET_MESSAGES: self._handle_get_messages,
            RequestType.GET_PROGRESS: self._handle_get_progress,
            RequestType.GET_SNAPSHOT: self._handle_get_snapshot,
            RequestType.ARM_BLOCKS: self._handle_arm_blocks,
            RequestType.FINALIZE_BLOCKS: self._handle_finalize_blocks,
            RequestType.SHUTDOWN: self._handle_shutdown,
        }

    # -----------------------------------------------------------------------
    # Lifecycle
    # -----------------------------------------------------------------------
    @property
    def job_running(self) -> bool:
        return self._job_running

    def is_alive(self) -> bool:
        if self._shut_down:
            return False
        if not self.host.is_alive():
            self.soft_shutdown("context_invalidated")
            return False
        return True

    def _check_alive(self):
        if not self.is_alive():
            raise ContextInvalidated()

    def soft_shutdown(self, reason: str) -> bool:
        """Idempotent teardown; returns False when already shut down."""
        if self._shut_down:
            return False
        self._shut_down = True
        self.progress.stop_heartbeat()
        logger.warning(f"Soft shutdown ({reason})")
        return True

    def _on_session_reset(self, session_id: str):
        # Called from SessionTracker before self.context exists on first run
        if hasattr(self, "context"):
            self.context.reset(session_id)

    def ensure_session(self) -> str:
        session_id = self.sessions.ensure(self.host.url)
        if session_id != self.context.session_id:
            self.context.session_id = session_id
            self.context.api_cache.session_id = session_id
            self.context.page_cache.session_id = session_id
        if not self.context.page_cache.messages:
            self.restore_page_cache()
        return session_id

    def restore_page_cache(self) -> int:
        """Seed the page cache with what earlier scans of this session persisted."""
        try:
            stored = self.store.load_messages(self.context.session_id)
        except CaptureError as e:
            logger.warning(f"Could not restore stored messages: {e.message}")
            return 0
        if stored:
            self.context.page_cache.restore(stored)
            logger.info(f"Restored {len(stored)} stored messages for {self.context.session_id}")
        return len(stored)

    # -----------------------------------------------------------------------
    # Adapter inputs
    # -----------------------------------------------------------------------
    def _page_origin(self) -> Optional[str]:
        parsed = urlparse(self.host.url)
        return f"{parsed.scheme}://{parsed.netloc}" if parsed.scheme else None

    async def ingest_event(self, payload: Dict[str, Any]) -> int:
        """One message from the network-observation context; returns the number of new messages."""
        if not self.is_alive():
            return 0
        event = NetworkEvent.from_payload(payload)
        if not event.is_conversation_chunk and not should_capture_url(event.url, self._page_origin()):
            return 0
        self.ensure_session()
        ctx = self.context
        if event.is_conversation_chunk and event.chunk_index is not None:
            if event.chunk_index in ctx.chunks_seen:
                return 0
            ctx.chunks_seen.add(event.chunk_index)
            if event.total_messages:
                ctx.total_expected = event.total_messages
        ctx.events.append(event)

        counts = ctx.api_cache.extend(extract_from_event(event), source_url=event.url or None)
        if event.is_conversation_chunk and self.capture_id:
            self.progress.emit({
                "phase": CapturePhase.API_CAPTURE.value,
                "status": CaptureStatus.CAPTURING.value,
                "receivedMessages": len(ctx.api_cache),
                "totalMessages": ctx.total_expected,
            })
        if self.blocks_armed and not self.blocks_captured and event.body and BLOCK_MARKER in event.body:
            await self.scan_blocks("network")
        return counts["appended"]

    async def scan_page(self, reason: str = "scan", replace: bool = False) -> int:
        """Parse the rendered page into the page cache; returns the cache size."""
        self._check_alive()
        html = await self.host.page_html()
        candidates = parse_page(html, self.provider)
        cache = self.context.page_cache
        if replace:
            cache.sync_replace(candidates)
        else:
            cache.extend(candidates)
        if cache.messages and self.is_alive():
            self.store.save_messages(self.tab_key, self.context.session_id, cache.messages)
        logger.debug(f"Page scan ({reason}): {len(candidates)} rendered, {len(cache)} cached")
        return len(cache)

    async def _count_nodes(self) -> int:
        return count_message_nodes(await self.host.page_html(), self.provider)

    async def load_embedded_state(self) -> int:
        try:
            candidates = extract_embedded_state(await self.host.page_html())
        except Exception as e:
            logger.warning(f"Embedded state extraction failed: {e}")
            return 0
        rec = Reconciler(self.context.session_id, MessageSource.EMBEDDED.value)
        rec.extend(candidates)
        self.context.embedded = rec.messages
        return len(rec)

    async def fetch_direct(self, conv_id: str) -> int:
        """Direct fetch of the whole conversation; replaces the network cache when it yields anything."""
        try:
            payload = await self.host.fetch_conversation(conv_id)
        except Exception as e:
            logger.warning(f"Direct conversation fetch failed for {conv_id}: {e}")
            return 0
        if payload is None:
            return 0
        schema, candidates = parse_json_payload(payload)
        if not candidates:
            logger.debug(f"Direct fetch for {conv_id} returned no messages ({schema})")
            return 0
        cache = self.context.api_cache
        cache.reset(self.context.session_id)
        cache.extend(candidates, source_url=MessageSource.CONVERSATION_API.value)
        self.context.total_expected = len(cache)
        return len(cache)

    async def _wait_for_network(self, before: int):
        """Give a page-initiated conversation request time to land in the network cache."""
        deadline = time.monotonic() + self.network_wait_s
        while time.monotonic() < deadline and self.is_alive():
            if len(self.context.api_cache) > before + NETWORK_WAIT_GROWTH:
                break
            await asyncio.sleep(0.25)

    # -----------------------------------------------------------------------
    # Capture pipeline
    # -----------------------------------------------------------------------
    def _phase(self, phase: CapturePhase, index: Optional[int] = None, total: Optional[int] = None, **extra):
        fields = {
            "captureId": self.capture_id,
            "provider": self.provider,
            "strategy": self.strategy.value if self.strategy else None,
            "phase": phase.value,
            "status": CaptureStatus.CAPTURING.value,
            **extra,
        }
        if index is not None:
            fields["phaseIndex"] = index
            fields["phaseTotal"] = total
        self.progress.emit(fields, force=True)
        logger.info(f"Phase {phase.value}" + (f" ({index}/{total})" if index else ""))

    async def _on_hydration_tick(self, signals, grew: bool):
        self.progress.emit({
            "phase": CapturePhase.HYDRATE.value,
            "receivedMessages": max(signals.stored, signals.network),
        })

    async def hydrate_and_scan(self):
        if self.provider in (Provider.GEMINI.value, Provider.CHATGPT.value):
            self._phase(CapturePhase.HYDRATE, 1, 3)
            hydrator = Hydrator(
                self.host.page,
                self.provider,
                scan=self.scan_page,
                network_count=lambda: len(self.context.api_cache),
                is_alive=self.is_alive,
                on_tick=self._on_hydration_tick,
            )
            await hydrator.run("hydrate", stored=len(self.context.page_cache))
            self._check_alive()
        self._phase(CapturePhase.SCAN, 2, 3)
        await deep_scan(self.host.page, self.scan_page, self.provider, is_alive=self.is_alive)
        self._check_alive()

    async def capture(self) -> CaptureStrategy:
        """Collect from every adapter the strategy calls for; returns the strategy used."""
        self.strategy = CaptureStrategy.DOM
        if self.provider == Provider.CHATGPT.value:
            conv_id = conversation_id_from_url(self.host.url, Provider.CHATGPT)
            received = await self.fetch_direct(conv_id)
            if received:
                self.strategy = CaptureStrategy.SURGICAL
                self._phase(CapturePhase.FETCH, 1, 2, receivedMessages=received, totalMessages=received)
                logger.info(f"Using direct conversation fetch ({received} messages)")
                return self.strategy
            if not await self.load_embedded_state():
                await self._wait_for_network(len(self.context.api_cache))
        else:
            await self.load_embedded_state()
        self._check_alive()
        await self.hydrate_and_scan()
        return self.strategy

    def pick_messages(self) -> List[Message]:
        """The network cache when no other source is longer, else a merge of all sources."""
        ctx = self.context
        api = ctx.api_cache.messages
        page = ctx.page_cache.messages
        if api and len(api) >= max(len(page), len(ctx.embedded)):
            return list(api)
        return merge_sources([
            SourceResult("network", list(api)),
            SourceResult("embedded", list(ctx.embedded)),
            SourceResult("page", list(page)),
        ])

    # -----------------------------------------------------------------------
    # Snapshot job
    # -----------------------------------------------------------------------
    @property
    def signer(self):
        if self._signer is None:
            from rcep.seal import DeviceSigner
            self._signer = DeviceSigner(self.store.engine)
        return self._signer

    def start(self, capture_id: Optional[str] = None, options: Optional[Dict[str, Any]] = None) -> str:
        """Schedule a snapshot job; raises JobAlreadyRunning instead of queuing."""
        if self._job_running:
            raise JobAlreadyRunning()
        self._check_alive()
        self.capture_id = (capture_id or "").strip() or f"cap-{now_ms()}"
        self.strategy = None
        self.context.chunks_seen = set()
        self.progress.clear()
        self.progress.emit({
            "captureId": self.capture_id,
            "tabKey": self.tab_key,
            "provider": self.provider,
            "phase": CapturePhase.STARTING.value,
            "status": CaptureStatus.STARTING.value,
            "startedAt": now_ms(),
        }, force=True)
        self._job_task = asyncio.create_task(self.run_snapshot_job(CaptureOptions.from_payload(options)))
        self._job_running = True
        return self.capture_id

    async def wait(self) -> Optional[Dict[str, Any]]:
        if self._job_task is None:
            return None
        return await self._job_task

    async def run_snapshot_job(self, options: CaptureOptions) -> Optional[Dict[str, Any]]:
        token = capture_id_ctx.set(self.capture_id)
        self._job_running = True
        self.progress.start_heartbeat()
        include_transcript = options.include_transcript
        if options.output_mode in (OutputMode.ULTRA.value, OutputMode.ULTRA_PLUS.value):
            include_transcript = False
        try:
            self.ensure_session()
            await self.capture()
            self._check_alive()

            messages = self.pick_messages()
            if not messages:
                self.progress.emit({
                    "phase": CapturePhase.DONE.value,
                    "status": CaptureStatus.NO_MESSAGES.value,
                    "receivedMessages": 0,
                    "completedAt": now_ms(),
                }, force=True)
                logger.warning("Snapshot job found no messages")
                return None
            if include_transcript and not transcript_allowed(messages):
                include_transcript = False

            surgical = self.strategy == CaptureStrategy.SURGICAL
            self.progress.emit({
                "strategy": self.strategy.value,
                "phase": CapturePhase.SNAPSHOT.value,
                "phaseIndex": 2 if surgical else 3,
                "phaseTotal": 2 if surgical else 3,
                "status": CaptureStatus.GENERATING.value,
                "receivedMessages": len(messages),
            }, force=True)

            snapshot = self.build_snapshot(messages, options.output_mode, include_transcript, options.wants_integrity_seal)
            self._check_alive()
            self.last_snapshot = snapshot
            self.store.save_last_snapshot(self.tab_key, snapshot)

            budget = self.context.api_cache.budget_reached
            self.progress.emit({
                "phase": CapturePhase.DONE.value,
                "status": (CaptureStatus.PARTIAL_BUDGET_REACHED if budget else CaptureStatus.DONE).value,
                "totalMessages": len(messages),
                "receivedMessages": len(messages),
                "completedAt": now_ms(),
            }, force=True)
            logger.info(f"Snapshot job done: {len(messages)} messages, {options.output_mode}")
            return snapshot
        except ContextInvalidated as e:
            logger.warning(f"Snapshot job abandoned: {e.message}")
            return None
        except Exception as e:
            logger.error(f"Snapshot job failed: {e}")
            self.progress.emit({
                "phase": CapturePhase.ERROR.value,
                "status": CaptureStatus.ERROR.value,
                "error": str(e),
            }, force=True)
            return None
        finally:
            self._job_running = False
            self.progress.stop_heartbeat()
            capture_id_ctx.reset(token)

    def build_snapshot(
        self,
        messages: List[Message],
        output_mode: str,
        include_transcript: bool,
        seal: bool = False,
    ) -> Dict[str, Any]:
        generator = SnapshotGenerator(
            messages, output_mode=output_mode, include_transcript=include_transcript, clock=self.snapshot_clock,
        )
        snapshot = generator.generate()
        metadata = snapshot.setdefault("metadata", {})
        metadata["capture_provider"] = self.provider
        metadata["capture_strategy"] = self.strategy.value if self.strategy else "unknown"
        metadata["capture_budget_reached"] = self.context.api_cache.budget_reached
        snapshot.pop("signature", None)
        snapshot["checksum"] = compute_checksum(snapshot)
        if seal:
            snapshot["signature"] = self.signer.sign_checksum(snapshot["checksum"])
        return snapshot

    # -----------------------------------------------------------------------
    # Messages on demand
    # -----------------------------------------------------------------------
    async def get_messages(self, deep: bool = False) -> Dict[str, Any]:
        session_id = self.ensure_session()
        if deep:
            self.strategy = None
            await self.capture()
        else:
            await self.scan_page("get-messages", replace=self.provider == Provider.CLAUDE.value)
        messages = self.pick_messages()
        if not messages:
            raise CaptureError(
                NO_MESSAGES,
                "No messages detected on this page.",
                "Scroll the conversation to load messages, then retry.",
            )
        return {
            "ok": True,
            "session_id": session_id,
            "messages": [{**m.to_dict(), "session_id": session_id} for m in messages],
        }

    # -----------------------------------------------------------------------
    # Blocks
    # -----------------------------------------------------------------------
    async def _block_candidates(self) -> List[str]:
        ctx = self.context
        candidates = []
        bodies = [e.body for e in list(ctx.events)[-RECENT_EVENTS_FOR_BLOCKS:] if e.body and BLOCK_MARKER in e.body]
        if bodies:
            candidates.append("\n\n".join(bodies))
        replies = [
            m.content for m in ctx.api_cache.messages[-RECENT_MESSAGES_FOR_BLOCKS:]
            if m.role == "assistant" and BLOCK_MARKER in m.content
        ]
        if replies:
            candidates.append("\n\n".join(replies))
        rendered = parse_page(await self.host.page_html(), self.provider)[-RECENT_NODES_FOR_BLOCKS:]
        texts = [c.content for c in rendered if BLOCK_MARKER in c.content]
        if texts:
            candidates.append("\n\n".join(texts))
        return candidates

    def arm_blocks(self):
        self.blocks_armed = True
        self.blocks_captured = False

    async def scan_blocks(self, reason: str = "scan") -> Optional[Dict[str, Any]]:
        """Look for complete blocks and seal them into the last snapshot; None while still waiting."""
        if not self.blocks_armed or self.blocks_captured or not self.is_alive():
            return None
        blocks = best_blocks(await self._block_candidates())
        if blocks is None:
            logger.debug(f"No complete blocks yet ({reason})")
            return None
        conv_id = conversation_id_from_url(self.host.url)
        return self.seal_blocks(blocks_payload(blocks, self.provider, conv_id, reason))

    def seal_blocks(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        snapshot = self.last_snapshot or self.store.load_last_snapshot(self.tab_key)
        if snapshot is None:
            raise CaptureError(NO_SNAPSHOT, "No snapshot found to seal into.", "Generate a snapshot first.")
        signer = self.signer if isinstance(snapshot.get("signature"), dict) else None
        sealed = seal_blocks_into_snapshot(snapshot, payload, signer)
        self.blocks_captured = True
        self.last_snapshot = sealed
        self.store.save_last_snapshot(self.tab_key, sealed)
        return sealed

    # -----------------------------------------------------------------------
    # Request dispatch
    # -----------------------------------------------------------------------
    async def handle_request(self, request: Dict[str, Any]) -> Dict[str, Any]:
        try:
            rtype = RequestType(request.get("action"))
        except ValueError:
            return CaptureError(UNKNOWN_REQUEST, f"Unknown request: {request.get('action')!r}").to_response()
        if rtype != RequestType.SHUTDOWN and not self.is_alive():
            return ContextInvalidated().to_response()
        try:
            return await self._handlers[rtype](request)
        except CaptureError as e:
            return e.to_response()
        except Exception as e:
            logger.error(f"{rtype.value} failed: {e}")
            return CaptureError(CONTENT_SCRIPT_ERROR, str(e), RELOAD_HINT).to_response()

    async def _handle_start(self, request):
        capture_id = self.start(request.get("captureId"), request.get("options"))
        return {"ok": True, "started": True, "captureId": capture_id, "provider": self.provider}

    async def _handle_get_messages(self, request):
        token = capture_id_ctx.set(request.get("captureId") or f"cap-{now_ms()}")
        try:
            return await self.get_messages(deep=bool(request.get("deep")))
        finally:
            capture_id_ctx.reset(token)

    async def _handle_get_progress(self, request):
        record = self.store.read_progress(self.tab_key)
        return {"ok": True, "progress": record, "stale": is_progress_stale(record), "running": self._job_running}

    async def _handle_get_snapshot(self, request):
        snapshot = self.last_snapshot or self.store.load_last_snapshot(self.tab_key)
        if snapshot is None:
            raise CaptureError(NO_SNAPSHOT, "No snapshot has been generated on this tab yet.")
        return {"ok": True, "snapshot": snapshot}

    async def _handle_arm_blocks(self, request):
        self.arm_blocks()
        sealed = await self.scan_blocks("arm")
        return {"ok": True, "armed": True, "sealed": sealed is not None}

    async def _handle_finalize_blocks(self, request):
        blocks = extract_blocks(request.get("text") or "")
        if blocks is None:
            raise CaptureError(BLOCKS_NOT_FOUND, "Could not find complete <RL4-...> blocks in pasted text.")
        self.blocks_armed = True
        payload = blocks_payload(blocks, self.provider, conversation_id_from_url(self.host.url), "manual")
        try:
            sealed = self.seal_blocks(payload)
        except ValueError as e:
            raise CaptureError(SNAPSHOT_GENERATION_FAILED, str(e)) from e
        return {"ok": True, "finalized": True, "checksum": sealed["checksum"]}

    async def _handle_shutdown(self, request):
        return {"ok": True, "shutdown": self.soft_shutdown(request.get("reason") or "requested")}
