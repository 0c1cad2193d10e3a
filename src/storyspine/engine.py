"""MemoryEngine: per-chat orchestrator over summary, vectors, recall and injection."""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Callable, Union

import numpy as np

from storyspine.assembler import AssembleResult, PromptAssembler
from storyspine.config import Config
from storyspine.consistency import ConsistencyManager
from storyspine.embeddings import EmbeddingBackend, create_embedder
from storyspine.exceptions import (
    OperationCancelled,
    StorageError,
    SummaryFailedError,
    TaskBusyError,
    TransientError,
)
from storyspine.extraction import AtomExtractor
from storyspine.host import ChatMessage, HostEvent
from storyspine.llm import ChatBackend, chat_backend_from_config
from storyspine.memory.store import MemoryStore, calc_hide_range, extract_relationships
from storyspine.pipeline.chunker import chunk_message, chunk_messages
from storyspine.retrieval import RecallEngine, RecallResult
from storyspine.storage.sqlite_store import SQLiteStore
from storyspine.storage.vector_io import ImportResult, export_vectors, import_vectors
from storyspine.summary import Summarizer, SummaryResult
from storyspine.tasks import CancelToken, TaskGuard
from storyspine.types import Atom, Chunk, Event

logger = logging.getLogger(__name__)

MIN_INJECTION_DEPTH = 2
R_AGG_MAX_CHARS = 256

ProgressFn = Callable[[str, int, int], None]


@dataclass(frozen=True)
class VectorMode:
    """Recall-driven injection over stored embeddings."""
    name: str = "vector"


@dataclass(frozen=True)
class PlainMode:
    """Inject the whole summary; no embeddings involved."""
    name: str = "plain"


Mode = Union[VectorMode, PlainMode]


@dataclass
class Injection:
    text: str
    depth: int

    def to_dict(self) -> dict[str, Any]:
        return {"text": self.text, "depth": self.depth}


def injection_depth(chat_len: int, boundary: int) -> int:
    return max(MIN_INJECTION_DEPTH, chat_len - boundary - 1)


def relation_aggregate_text(atom: Atom) -> str:
    """Distinct edge labels joined, or the scene text when there are none."""
    labels = list(dict.fromkeys(e.r.strip() for e in atom.edges if e.r.strip()))
    joined = " ; ".join(labels)
    if not joined:
        return atom.semantic.strip()
    return joined[:R_AGG_MAX_CHARS]


def mode_from_config(config: Config) -> Mode:
    return PlainMode() if (config.mode or "").strip().lower() == "plain" else VectorMode()


class MemoryEngine:
    """Owns the stores, clients, task guard and cancel token for one chat."""

    def __init__(
        self,
        config: Config | None = None,
        chat_id: str = "default",
        *,
        sqlite: SQLiteStore | None = None,
        embedder: EmbeddingBackend | None = None,
        chat: ChatBackend | None = None,
        mode: Mode | None = None,
    ) -> None:
        self.config = config or Config()
        if sqlite is None:
            self.config.ensure_dirs()
            sqlite = SQLiteStore(self.config.db_path)
        self.sqlite = sqlite
        self.chat_id = chat_id
        self.embedder = embedder or create_embedder(self.config.embedding)
        self._chat = chat
        self.mode: Mode = mode or mode_from_config(self.config)

        self.guard = TaskGuard()
        self.cancel = CancelToken()
        self.store = MemoryStore(self.sqlite, chat_id)
        self.consistency = ConsistencyManager(self.sqlite, self.store)
        self.recaller = RecallEngine(self.sqlite, chat_id, self.embedder, self.config)
        self.assembler = PromptAssembler(self.config)

    # --- Clients ---

    @property
    def chat(self) -> ChatBackend:
        if self._chat is None:
            self._chat = chat_backend_from_config(self.config.llm)
        return self._chat

    @property
    def summarizer(self) -> Summarizer:
        return Summarizer(self.store, self.chat, self.config)

    @property
    def extractor(self) -> AtomExtractor:
        return AtomExtractor(
            self.chat,
            self.config.atoms,
            filter_rules=self.config.filters.rules,
            user_label=self.config.prompt.name1 or self.config.prompt.user_label,
        )

    @property
    def is_vector_mode(self) -> bool:
        return isinstance(self.mode, VectorMode)

    async def close(self) -> None:
        await self.embedder.close()
        close = getattr(self._chat, "close", None)
        if close is not None:
            await close()
        self.sqlite.close()

    def status(self) -> dict[str, Any]:
        out = self.sqlite.status(self.chat_id)
        out["mode"] = self.mode.name
        out["engine_fingerprint"] = self.embedder.fingerprint()
        out["running"] = self.guard.running
        return out

    def _acquire(self, task: str) -> Callable[[], None]:
        release = self.guard.acquire(task)
        if release is None:
            raise TaskBusyError(task)
        return release

    def _fingerprint_compatible(self) -> bool:
        stored = self.sqlite.get_meta(self.chat_id).fingerprint
        return stored is None or stored == self.embedder.fingerprint()

    # --- Embedding ---

    async def embed_with_retry(self, texts: list[str]) -> np.ndarray:
        """Embed until success, waiting a fixed interval between failures.

        Raises ``OperationCancelled`` if the engine's cancel token fires
        during a call or a wait.
        """
        wait = self.config.embedding.retry_wait_seconds
        while True:
            self.cancel.raise_if_cancelled()
            try:
                return await self.cancel.run(self.embedder.embed(texts))
            except TransientError as e:
                logger.warning("embedding %d texts failed, retrying in %.0fs: %s", len(texts), wait, e)
                if not await self.cancel.sleep(wait):
                    raise OperationCancelled("embedding cancelled during backoff") from e

    def _batches(self, items: list[Any]) -> list[list[Any]]:
        size = max(1, self.config.embedding.batch_size)
        return [items[i:i + size] for i in range(0, len(items), size)]

    async def _embed_atoms(self, atoms: list[Atom], fingerprint: str, on_progress: ProgressFn | None = None) -> int:
        done = 0
        for batch in self._batches(atoms):
            n = len(batch)
            texts = [a.semantic for a in batch] + [relation_aggregate_text(a) for a in batch]
            vectors = await self.embed_with_retry(texts)
            if len(vectors) < 2 * n:
                logger.error("atom embedding returned %d vectors for %d texts; batch skipped", len(vectors), 2 * n)
                continue
            self.sqlite.save_vectors(self.chat_id, "atom", [
                (a.atom_id, a.floor, vectors[j], vectors[n + j]) for j, a in enumerate(batch)
            ], fingerprint)
            done += n
            if on_progress is not None:
                on_progress("atoms", done, len(atoms))
        return done

    async def _embed_chunks(self, chunks: list[Chunk], fingerprint: str, on_progress: ProgressFn | None = None) -> int:
        done = 0
        for batch in self._batches(chunks):
            vectors = await self.embed_with_retry([c.text for c in batch])
            self.sqlite.save_vectors(self.chat_id, "chunk", [
                (c.chunk_id, c.floor, vectors[j], None) for j, c in enumerate(batch)
            ], fingerprint)
            done += len(batch)
            if on_progress is not None:
                on_progress("chunks", done, len(chunks))
        return done

    async def _embed_events(self, events: list[Event], fingerprint: str, on_progress: ProgressFn | None = None) -> int:
        pairs = [(e.id, e.embed_text) for e in events if e.embed_text]
        done = 0
        for batch in self._batches(pairs):
            vectors = await self.embed_with_retry([text for _, text in batch])
            self.sqlite.save_vectors(self.chat_id, "event", [
                (eid, None, vectors[j], None) for j, (eid, _) in enumerate(batch)
            ], fingerprint)
            done += len(batch)
            if on_progress is not None:
                on_progress("events", done, len(pairs))
        return done

    # --- Full vector lifecycle ---

    async def generate_vectors(
        self,
        messages: list[ChatMessage],
        on_progress: ProgressFn | None = None,
    ) -> dict[str, Any]:
        """Rebuild every vector for the chat: atoms, then chunks, then events.

        Committed batches survive a cancellation; the chunk boundary only
        moves once the whole rebuild has finished.
        """
        release = self._acquire("vector")
        self.cancel.reset()
        fingerprint = self.embedder.fingerprint()
        counts = {"atoms": 0, "chunks": 0, "events": 0, "cancelled": False}
        try:
            self.sqlite.clear_chunks(self.chat_id)
            self.sqlite.clear_vectors(self.chat_id)
            self.sqlite.update_meta(self.chat_id, fingerprint=fingerprint, last_chunk_floor=-1)

            counts["atoms"] = await self._embed_atoms(self.sqlite.get_atoms(self.chat_id), fingerprint, on_progress)

            chunks = chunk_messages(
                messages,
                max_tokens=self.config.recall.chunk_max_tokens,
                filter_rules=self.config.filters.rules,
            )
            if chunks:
                self.sqlite.save_chunks(self.chat_id, chunks)
            counts["chunks"] = await self._embed_chunks(chunks, fingerprint, on_progress)

            counts["events"] = await self._embed_events(self.store.state.events, fingerprint, on_progress)

            self.sqlite.update_meta(self.chat_id, last_chunk_floor=len(messages) - 1)
            logger.info(
                "vectors generated for %s: %d atoms, %d chunks, %d events",
                self.chat_id, counts["atoms"], counts["chunks"], counts["events"],
            )
        except OperationCancelled:
            counts["cancelled"] = True
            logger.info("vector generation cancelled for %s", self.chat_id)
        finally:
            release()
            self.cancel.reset()
        return counts

    def cancel_vectors(self) -> None:
        self.cancel.cancel()

    def clear_vectors(self) -> None:
        self.sqlite.clear_vectors(self.chat_id)
        self.sqlite.clear_chunks(self.chat_id)
        self.sqlite.update_meta(self.chat_id, fingerprint=None, last_chunk_floor=-1)
        logger.info("vectors cleared for %s", self.chat_id)

    async def vectorize_events(self, event_ids: list[str]) -> int:
        """Embed the given events; failures are logged, not raised."""
        if not event_ids or not self.is_vector_mode or not self._fingerprint_compatible():
            return 0
        wanted = set(event_ids)
        events = [e for e in self.store.state.events if e.id in wanted]
        try:
            count = await self._embed_events_once(events)
        except TransientError:
            logger.exception("event vectorization failed for %d events", len(events))
            return 0
        logger.info("vectorized %d new events", count)
        return count

    async def _embed_events_once(self, events: list[Event]) -> int:
        fingerprint = self.embedder.fingerprint()
        pairs = [(e.id, e.embed_text) for e in events if e.embed_text]
        for batch in self._batches(pairs):
            vectors = await self.embedder.embed([text for _, text in batch])
            self.sqlite.save_vectors(self.chat_id, "event", [
                (eid, None, vectors[j], None) for j, (eid, _) in enumerate(batch)
            ], fingerprint)
        return len(pairs)

    async def update_events(self, events: list[Event]) -> dict[str, int]:
        """Replace the event list after a manual edit and resync event vectors."""
        snapshot = self.store.snapshot
        old = {e.id: e for e in (snapshot.state.events if snapshot.state else [])}
        state = replace(self.store.state, events=list(events))
        self.store.commit(replace(snapshot, state=state))

        new_ids = {e.id for e in events}
        removed = [eid for eid in old if eid not in new_ids]
        if removed:
            self.sqlite.delete_vectors(self.chat_id, "event", removed)
        changed = [e for e in events if e.id not in old or old[e.id].embed_text != e.embed_text]
        embedded = 0
        if changed and self.is_vector_mode and self._fingerprint_compatible():
            try:
                embedded = await self._embed_events_once(changed)
            except TransientError:
                logger.exception("re-vectorizing %d edited events failed", len(changed))
        return {"removed": len(removed), "revectorized": embedded}

    # --- Incremental sync ---

    async def build_incremental_chunks(self, messages: list[ChatMessage]) -> int:
        """Chunk and embed floors past ``last_chunk_floor``."""
        if not self._fingerprint_compatible():
            logger.warning("engine fingerprint changed; skipping incremental chunk build")
            return 0
        meta = self.sqlite.get_meta(self.chat_id)
        start = meta.last_chunk_floor + 1
        if start >= len(messages):
            return 0
        chunks = chunk_messages(
            messages,
            start_floor=start,
            max_tokens=self.config.recall.chunk_max_tokens,
            filter_rules=self.config.filters.rules,
        )
        if not chunks:
            self.sqlite.update_meta(self.chat_id, last_chunk_floor=len(messages) - 1)
            return 0
        self.sqlite.save_chunks(self.chat_id, chunks)
        fingerprint = self.embedder.fingerprint()
        try:
            for batch in self._batches(chunks):
                vectors = await self.embedder.embed([c.text for c in batch])
                self.sqlite.save_vectors(self.chat_id, "chunk", [
                    (c.chunk_id, c.floor, vectors[j], None) for j, c in enumerate(batch)
                ], fingerprint)
        except TransientError:
            logger.exception("incremental chunk embedding failed from floor %d", start)
            return 0
        self.sqlite.update_meta(self.chat_id, last_chunk_floor=len(messages) - 1)
        logger.info("incremental chunks: floors %d-%d, %d chunks", start, len(messages) - 1, len(chunks))
        return len(chunks)

    async def sync_floor(self, messages: list[ChatMessage], floor: int, rebuild_chunks: bool = True) -> dict[str, int]:
        """Rebuild one floor's chunks (and, for an AI floor, its atoms).

        The chunk boundary only advances when ``floor`` directly follows it.
        """
        out = {"chunks": 0, "atoms": 0}
        if not 0 <= floor < len(messages):
            return out
        if not self._fingerprint_compatible():
            logger.warning("engine fingerprint changed; skipping vector sync for floor %d", floor)
            return out
        message = messages[floor]
        fingerprint = self.embedder.fingerprint()
        if rebuild_chunks:
            self.sqlite.delete_chunks_at_floor(self.chat_id, floor)
            chunks = chunk_message(floor, message, self.config.recall.chunk_max_tokens, self.config.filters.rules)
            if chunks:
                self.sqlite.save_chunks(self.chat_id, chunks)
                try:
                    vectors = await self.embedder.embed([c.text for c in chunks])
                    self.sqlite.save_vectors(self.chat_id, "chunk", [
                        (c.chunk_id, c.floor, vectors[j], None) for j, c in enumerate(chunks)
                    ], fingerprint)
                    out["chunks"] = len(chunks)
                except TransientError:
                    logger.exception("chunk sync failed at floor %d", floor)
                else:
                    if self.sqlite.get_meta(self.chat_id).last_chunk_floor == floor - 1:
                        self.sqlite.update_meta(self.chat_id, last_chunk_floor=floor)

        if not message.is_user and self.config.atoms.enabled:
            self.sqlite.delete_atoms_at_floor(self.chat_id, floor)
            user_msg = messages[floor - 1] if floor > 0 and messages[floor - 1].is_user else None
            atoms = await self.extractor.extract_round(user_msg, message, floor)
            if atoms:
                self.sqlite.save_atoms(self.chat_id, atoms)
                try:
                    out["atoms"] = await self._embed_atoms_once(atoms, fingerprint)
                except TransientError:
                    logger.exception("atom embedding failed at floor %d", floor)
        return out

    async def _embed_atoms_once(self, atoms: list[Atom], fingerprint: str) -> int:
        n = len(atoms)
        vectors = await self.embedder.embed([a.semantic for a in atoms] + [relation_aggregate_text(a) for a in atoms])
        if len(vectors) < 2 * n:
            logger.error("atom embedding returned %d vectors for %d texts", len(vectors), 2 * n)
            return 0
        self.sqlite.save_vectors(self.chat_id, "atom", [
            (a.atom_id, a.floor, vectors[j], vectors[n + j]) for j, a in enumerate(atoms)
        ], fingerprint)
        return n

    async def extract_atoms(
        self,
        messages: list[ChatMessage],
        floors: list[int] | None = None,
        on_progress: Callable[[int, int, int], None] | None = None,
    ) -> dict[str, Any]:
        """Extract atoms for AI floors that have none yet (or the given floors)."""
        release = self._acquire("anchor")
        self.cancel.reset()
        try:
            if floors is None:
                have = {a.floor for a in self.sqlite.get_atoms(self.chat_id)}
                floors = [i for i, m in enumerate(messages) if not m.is_user and i not in have]
            atoms = await self.extractor.extract_batch(messages, floors, cancel=self.cancel, on_progress=on_progress)
            for floor in sorted({a.floor for a in atoms}):
                self.sqlite.delete_atoms_at_floor(self.chat_id, floor)
            saved = self.sqlite.save_atoms(self.chat_id, atoms) if atoms else 0
            embedded = 0
            if atoms and self.is_vector_mode and self._fingerprint_compatible():
                embedded = await self._embed_atoms(atoms, self.embedder.fingerprint())
            return {"floors": len(floors), "atoms": saved, "embedded": embedded, "cancelled": self.cancel.cancelled}
        except OperationCancelled:
            logger.info("atom extraction cancelled for %s", self.chat_id)
            return {"floors": len(floors or []), "atoms": 0, "embedded": 0, "cancelled": True}
        finally:
            release()
            self.cancel.reset()

    # --- Summary ---

    async def summarize(self, messages: list[ChatMessage], target_floor: int | None = None) -> SummaryResult:
        release = self._acquire("summary")
        try:
            target = len(messages) - 1 if target_floor is None else target_floor
            result = await self.summarizer.run_with_retry(messages, target)
        finally:
            release()
        if result.success and result.new_event_ids:
            await self.vectorize_events(result.new_event_ids)
        return result

    def pending_floors(self, messages: list[ChatMessage]) -> int:
        return len(messages) - self.store.last_summarized - 1

    async def maybe_auto_summarize(self, messages: list[ChatMessage], timing: str) -> SummaryResult | None:
        """Summarize pending floors when ``timing`` is the configured trigger point."""
        cfg = self.config.summary
        if not cfg.auto or cfg.timing != timing:
            return None
        if self.guard.is_running("summary"):
            return None
        if self.pending_floors(messages) < max(1, cfg.interval):
            return None
        try:
            return await self.summarize(messages)
        except SummaryFailedError as e:
            logger.error("auto summary failed: %s", e)
            return None

    # --- Host events ---

    async def on_message(self, kind: HostEvent | str, floor: int, messages: list[ChatMessage] | None = None) -> dict[str, Any]:
        """Dispatch a host lifecycle event."""
        event = HostEvent(kind) if not isinstance(kind, HostEvent) else kind
        messages = messages or []
        report: dict[str, Any] = {"event": event.value, "floor": floor}

        if event not in (HostEvent.RECEIVED, HostEvent.SENT):
            report.update(self.consistency.on_message(event, floor).to_dict())
            return report

        if event == HostEvent.RECEIVED:
            if self.is_vector_mode and not self.guard.is_running("vector"):
                # floors past the boundary are covered by the incremental build
                covered = self.sqlite.get_meta(self.chat_id).last_chunk_floor >= floor
                report["incremental_chunks"] = await self.build_incremental_chunks(messages)
                report["sync"] = await self.sync_floor(messages, floor, rebuild_chunks=covered)
        timing = "after_ai" if event == HostEvent.RECEIVED else "before_user"
        summary = await self.maybe_auto_summarize(messages, timing)
        if summary is not None:
            report["summary"] = summary.to_dict()
        return report

    def rollback(self, floor: int) -> dict[str, Any]:
        """Roll back summary and derived data as if floors >= ``floor`` were deleted."""
        return self.consistency.on_message("deleted", floor).to_dict()

    def hide_range(self) -> dict[str, int] | None:
        return calc_hide_range(self.store.last_summarized, self.config.summary.keep_visible)

    def relationships(self) -> list[dict[str, Any]]:
        """Directed character relationships read off the current relation facts."""
        return extract_relationships(self.store.state.facts)

    # --- Recall & injection ---

    async def recall(
        self,
        messages: list[ChatMessage],
        pending_user_message: str | None = None,
        exclude_last_ai: bool = False,
    ) -> RecallResult:
        return await self.recaller.recall(
            messages,
            self.store.snapshot.state,
            pending_user_message=pending_user_message,
            exclude_last_ai=exclude_last_ai,
        )

    async def assemble(
        self,
        messages: list[ChatMessage],
        pending_user_message: str | None = None,
        exclude_last_ai: bool = False,
    ) -> AssembleResult:
        if not self.is_vector_mode:
            return AssembleResult(text=self.assembler.build_plain(self.store.snapshot.state))
        result = await self.recall(messages, pending_user_message, exclude_last_ai)
        assembled = self.assembler.assemble(
            result,
            self.store.snapshot.state,
            self.sqlite.get_meta(self.chat_id),
            last_summarized=self.store.last_summarized,
            atoms=self.sqlite.get_atoms(self.chat_id),
        )
        assembled.stats["recall"] = result.metrics
        return assembled

    def injection_boundary(self) -> int:
        if self.is_vector_mode:
            meta = self.sqlite.get_meta(self.chat_id)
            if meta.last_chunk_floor >= 0:
                return meta.last_chunk_floor
        return self.store.last_summarized

    async def build_injection(
        self,
        messages: list[ChatMessage],
        pending_user_message: str | None = None,
        exclude_last_ai: bool = False,
    ) -> Injection | None:
        """Memory text plus the depth at which the host should insert it, or None."""
        boundary = self.injection_boundary()
        if boundary < 0:
            return None
        assembled = await self.assemble(messages, pending_user_message, exclude_last_ai)
        if not assembled.text.strip():
            return None
        return Injection(text=assembled.text, depth=injection_depth(len(messages), boundary))

    # --- Archive ---

    def export_vectors(self, path: Path | str | None = None) -> dict[str, Any]:
        target = Path(path) if path else self.config.export_dir / f"vectors_{self.chat_id[:8]}.zip"
        return export_vectors(self.sqlite, self.chat_id, target)

    def import_vectors(self, path: Path | str) -> ImportResult:
        if self.guard.is_running("vector"):
            raise TaskBusyError("vector")
        try:
            return import_vectors(self.sqlite, self.chat_id, path, self.embedder.fingerprint())
        except StorageError:
            logger.error("vector import into %s failed while writing", self.chat_id)
            raise
