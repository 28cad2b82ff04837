"""Swarm controller: lifecycle state machine of one content transfer.

``SwarmController.start`` returns a ``SwarmHandle`` whose swarm runs as a
single asyncio task. That task is the only writer of swarm state: peer
connections, discovery, metadata fetches, piece verifications and the
liveness monitor all report through the intent queue, and the run loop
applies one intent at a time.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Iterable, Sequence
from pathlib import Path, PurePosixPath
from typing import Any

from swarmget.discovery import DiscoveryCoordinator, DiscoverySource, build_sources
from swarmget.exceptions import (
    ManifestError,
    MetadataUnavailable,
    PeerBusy,
    PeerChoking,
    PeerError,
    ProtocolViolation,
    StorageIOError,
    SwarmStateError,
    ValidationError,
)
from swarmget.models import (
    CancelledOutcome,
    CompletedFile,
    CompletedOutcome,
    Config,
    ContentDescriptor,
    FailedOutcome,
    FailureReason,
    Manifest,
    Outcome,
    PeerAddress,
    ProgressSnapshot,
    SwarmStatus,
    VerifyResult,
)
from swarmget.peer.connection import PeerConnection
from swarmget.peer.manager import PeerManager
from swarmget.peer.messages import generate_peer_id
from swarmget.peer.metadata import MetadataExchange
from swarmget.piece.selector import PieceSelector
from swarmget.session.events import EventStatus, EventStream, SwarmEvent
from swarmget.session.intents import (
    BitfieldReceived,
    BlockReceived,
    CancelRequested,
    ConnectFailed,
    DiscoveryFailed,
    HaveReceived,
    Intent,
    LivenessTick,
    MetadataFailed,
    MetadataFetched,
    PeerChoked,
    PeerClosed,
    PeerEstablished,
    PeersDiscovered,
    PeerUnchoked,
    PieceCorrupt,
    PieceVerified,
    StorageFailed,
)
from swarmget.storage.store import PieceStore
from swarmget.utils.logging_config import set_correlation_id
from swarmget.utils.tasks import BackgroundTaskGroup
from swarmget.utils.time import Clock


class Swarm:
    """State and run loop of one swarm."""

    def __init__(
        self,
        descriptor: ContentDescriptor,
        destination: Path,
        config: Config,
        sources: Sequence[DiscoverySource] | None = None,
        extra_peers: Iterable[PeerAddress] = (),
        clock: Clock | None = None,
    ) -> None:
        self.descriptor = descriptor
        self.destination = destination
        self.config = config
        self.clock = clock or Clock()
        self.logger = logging.getLogger(__name__)

        self.peer_id = generate_peer_id(config.network.peer_id_prefix)
        self.inbox: asyncio.Queue[Intent] = asyncio.Queue()
        self.tasks = BackgroundTaskGroup()
        self.events = EventStream()

        self.state = SwarmStatus.RESOLVING
        self.manifest: Manifest | None = None
        self.store: PieceStore | None = None
        self.selector: PieceSelector | None = None
        self.outcome: Outcome | None = None
        self.reason: FailureReason | None = None
        self.cancel_requested = False

        self.bytes_downloaded = 0
        self.started_at = self.clock.now()
        self.last_progress_at: float | None = None
        self.idle_warned = False
        self.hard_warned_at: float | None = None
        self._progress_bucket = -1

        # availability received before the manifest is known
        self._stash: dict[PeerAddress, list[tuple[str, Any]]] = {}
        self._fetching: set[PeerAddress] = set()
        self._metadata_tried: set[PeerAddress] = set()
        self._metadata_corrupt = 0

        self._verifying: set[int] = set()
        self._verify_sources: dict[int, set[Any]] = {}
        self.piece_failures: dict[int, int] = {}
        self.piece_bad_sources: dict[int, set[Any]] = {}

        self.manager = PeerManager(
            descriptor.info_hash,
            self.peer_id,
            config.network,
            self.inbox,
            self.tasks,
            clock=self.clock,
        )
        if sources is None:
            sources = build_sources(
                descriptor,
                config.discovery,
                self.peer_id,
                extra_peers=extra_peers,
                left=self.bytes_left,
            )
        self.discovery = DiscoveryCoordinator(
            descriptor.info_hash,
            sources,
            config.discovery,
            self.inbox,
            clock=self.clock,
        )
        self.metadata = MetadataExchange(descriptor.info_hash, config.metadata)
        self._task: asyncio.Task[Outcome] | None = None

    # Read-only views

    def bytes_left(self) -> int:
        if self.store is None or self.manifest is None:
            return 0
        return self.manifest.total_length - self.store.bytes_verified

    def snapshot(self) -> ProgressSnapshot:
        """Progress record derived from current state only."""
        return ProgressSnapshot(
            state=self.state,
            bytes_downloaded=self.bytes_downloaded,
            bytes_verified=self.store.bytes_verified if self.store else 0,
            total_bytes=self.manifest.total_length if self.manifest else None,
            peer_count=self.manager.peer_count,
            piece_bitmap=self.store.bitmap() if self.store else (),
            reason=self.reason,
        )

    def _require_transfer(self) -> tuple[Manifest, PieceStore, PieceSelector]:
        """Manifest, store and selector, which exist once the manifest is resolved.

        Raises:
            SwarmStateError: If the manifest is still unknown

        """
        if self.manifest is None or self.store is None or self.selector is None:
            msg = "Manifest is not resolved yet"
            raise SwarmStateError(msg, {"state": self.state.value})
        return self.manifest, self.store, self.selector

    def download_rate(self) -> float:
        return sum(conn.throughput() for conn in self.manager.sessions.values())

    def elapsed(self) -> float:
        return self.clock.now() - self.started_at

    # Lifecycle

    def start(self) -> asyncio.Task[Outcome]:
        self._emit(
            EventStatus.INIT,
            "Initializing download",
            outputDir=str(self.destination),
            timeoutSecs=self.config.timeouts.hard_timeout,
            infoHash=self.descriptor.info_hash.hex(),
        )
        self._task = asyncio.create_task(
            self._run(), name=f"swarm-{self.descriptor.info_hash.hex()[:8]}"
        )
        return self._task

    def request_cancel(self) -> None:
        if self.state.is_terminal or self.cancel_requested:
            return
        self.cancel_requested = True
        self.inbox.put_nowait(CancelRequested())

    async def wait(self) -> Outcome:
        if self._task is None:
            msg = "Swarm has not been started"
            raise SwarmStateError(msg)
        return await asyncio.shield(self._task)

    async def _run(self) -> Outcome:
        set_correlation_id(self.descriptor.info_hash.hex()[:16])
        self.logger.info("Starting swarm for %s", self.descriptor.name)
        if self.descriptor.dht_enabled:
            self.logger.debug("DHT requested but no DHT source is configured")
        try:
            if self.descriptor.manifest is not None:
                await self._on_manifest(self.descriptor.manifest)
            if not self.state.is_terminal:
                if not self.discovery.sources:
                    self.logger.warning("No discovery sources for %s", self.descriptor.name)
                self.discovery.start()
                self.tasks.create(self._monitor(), name="liveness-monitor")
            while not self.state.is_terminal:
                intent = await self.inbox.get()
                await self._apply_guarded(intent)
        except StorageIOError as e:
            self._fail(FailureReason.STORAGE_ERROR, str(e))
        except ManifestError as e:
            self._fail(FailureReason.MANIFEST_CORRUPT, str(e))
        except Exception as e:
            self.logger.exception("Swarm loop crashed")
            self._fail(FailureReason.INTERNAL_ERROR, f"{type(e).__name__}: {e}")
        finally:
            await self._teardown()
        if self.outcome is None:
            msg = "Swarm stopped without an outcome"
            raise SwarmStateError(msg, {"state": self.state.value})
        self._emit_terminal()
        return self.outcome

    async def _apply_guarded(self, intent: Intent) -> None:
        try:
            await self._apply(intent)
        except StorageIOError as e:
            self._fail(FailureReason.STORAGE_ERROR, str(e))
        except ManifestError as e:
            self._fail(FailureReason.MANIFEST_CORRUPT, str(e))

    async def _teardown(self) -> None:
        if not self.state.is_terminal:
            self._fail(FailureReason.INTERNAL_ERROR, "Swarm stopped unexpectedly")
        await self.tasks.cancel_and_wait(timeout=5.0)
        await self.discovery.stop()
        await self.manager.close_all()
        if self.store is not None:
            self.store.close()

    async def _monitor(self) -> None:
        interval = self.config.timeouts.monitor_interval
        while True:
            await self.clock.sleep(interval)
            self.inbox.put_nowait(LivenessTick(self.clock.now()))

    # Intent dispatch

    async def _apply(self, intent: Intent) -> None:
        if isinstance(intent, BlockReceived):
            await self._on_block(intent)
        elif isinstance(intent, HaveReceived):
            await self._on_have(intent.address, intent.piece_index)
        elif isinstance(intent, BitfieldReceived):
            await self._on_bitfield(intent.address, intent.bitfield)
        elif isinstance(intent, PeerUnchoked):
            await self._fill_requests(intent.address)
        elif isinstance(intent, PeerChoked):
            if self.selector is not None:
                self.selector.release_peer_blocks(intent.address, intent.dropped)
            await self._fill_all()
        elif isinstance(intent, PieceVerified):
            await self._on_piece_verified(intent.piece_index)
        elif isinstance(intent, PieceCorrupt):
            await self._on_piece_corrupt(intent.piece_index)
        elif isinstance(intent, StorageFailed):
            self._fail(FailureReason.STORAGE_ERROR, str(intent.error))
        elif isinstance(intent, PeerEstablished):
            await self._on_established(intent.connection)
        elif isinstance(intent, PeerClosed):
            await self._on_closed(intent)
        elif isinstance(intent, ConnectFailed):
            self.manager.on_connect_failed(intent.address, intent.penalize)
        elif isinstance(intent, PeersDiscovered):
            added = self.manager.add_candidates(intent.addresses)
            self.logger.debug(
                "%s returned %d peers (%d new)", intent.source, len(intent.addresses), added
            )
        elif isinstance(intent, DiscoveryFailed):
            self.logger.debug("Discovery source %s failing: %s", intent.source, intent.error)
        elif isinstance(intent, MetadataFetched):
            await self._on_metadata_fetched(intent.address, intent.manifest)
        elif isinstance(intent, MetadataFailed):
            await self._on_metadata_failed(intent)
        elif isinstance(intent, LivenessTick):
            await self._on_tick(intent.now)
        elif isinstance(intent, CancelRequested):
            self._on_cancel()

    # Manifest resolution

    async def _on_manifest(self, manifest: Manifest) -> None:
        self.manifest = manifest
        store = PieceStore(
            manifest,
            self.destination,
            self.config.storage,
            block_size=self.config.network.block_size,
        )
        self.store = store
        await store.open()
        if self.config.storage.verify_existing:
            await store.scan_existing()
        self.selector = PieceSelector(store, self.config.network.max_requests_per_peer)
        self.state = SwarmStatus.DISCOVERING
        self._progress_bucket = self._progress_percent() // self.config.observability.progress_step
        self.logger.info(
            "Manifest for %s: %d files, %d pieces, %d bytes",
            manifest.name,
            len(manifest.files),
            manifest.num_pieces,
            manifest.total_length,
        )
        self._emit(
            EventStatus.FOUND,
            "Torrent found",
            name=manifest.name,
            size=manifest.total_length,
            files=len(manifest.files),
            peers=self.manager.peer_count,
        )

        stash, self._stash = self._stash, {}
        for address, items in stash.items():
            for kind, value in items:
                if kind == "bitfield":
                    await self._on_bitfield(address, value)
                else:
                    await self._on_have(address, value)

        if store.all_verified:
            await self._complete()
            return
        await self._fill_all()

    def _start_metadata_fetches(self) -> None:
        if self.manifest is not None:
            return
        limit = self.config.metadata.max_concurrent_fetches
        for address, connection in self.manager.sessions.items():
            if len(self._fetching) >= limit:
                return
            if address in self._fetching or address in self._metadata_tried:
                continue
            self._fetching.add(address)
            self.tasks.create(self._fetch_metadata(connection), name=f"metadata-{address}")

    async def _fetch_metadata(self, connection: PeerConnection) -> None:
        try:
            manifest = await self.metadata.fetch_manifest(connection)
        except MetadataUnavailable as e:
            self.inbox.put_nowait(MetadataFailed(connection.address, e))
        except ManifestError as e:
            self.inbox.put_nowait(MetadataFailed(connection.address, e, corrupt=True))
        else:
            self.inbox.put_nowait(MetadataFetched(connection.address, manifest))

    async def _on_metadata_fetched(self, address: PeerAddress, manifest: Manifest) -> None:
        self._fetching.discard(address)
        if self.manifest is not None:
            return
        await self._on_manifest(manifest)

    async def _on_metadata_failed(self, intent: MetadataFailed) -> None:
        self._fetching.discard(intent.address)
        self._metadata_tried.add(intent.address)
        if self.manifest is not None:
            return
        if intent.corrupt:
            self._metadata_corrupt += 1
            self.logger.warning("Corrupt metadata from %s: %s", intent.address, intent.error)
            if self._metadata_corrupt >= self.config.metadata.max_corrupt_attempts:
                self._fail(
                    FailureReason.MANIFEST_CORRUPT,
                    f"Metadata from {self._metadata_corrupt} peers did not match the info hash",
                )
                return
            await self._drop_peer(intent.address, ProtocolViolation(str(intent.error)))
        else:
            self.logger.debug("No metadata from %s: %s", intent.address, intent.error)
        self._start_metadata_fetches()

    # Peers

    async def _on_established(self, connection: PeerConnection) -> None:
        if self.state.is_terminal or not self.manager.on_established(connection):
            await connection.close()
            return
        if self.last_progress_at is None:
            self.last_progress_at = self.clock.now()
        try:
            await connection.send_interested()
        except PeerError as e:
            self.logger.debug("Cannot signal interest to %s: %s", connection.address, e)
            return
        self._start_metadata_fetches()

    async def _on_closed(self, intent: PeerClosed) -> None:
        removed = self.manager.on_disconnect(
            intent.address, intent.penalize, connection=intent.connection
        )
        if removed is None:
            return
        self._stash.pop(intent.address, None)
        if self.selector is not None:
            freed = self.selector.remove_peer(intent.address)
            if freed:
                self.logger.debug(
                    "Reassigning %d blocks from %s", len(freed), intent.address
                )
            await self._fill_all()
        else:
            self._start_metadata_fetches()

    async def _drop_peer(self, address: PeerAddress, error: Exception) -> None:
        connection = self.manager.sessions.get(address)
        if connection is not None:
            await connection.close(error)

    async def _on_bitfield(self, address: PeerAddress, bitfield: bytes) -> None:
        if address not in self.manager.sessions:
            return
        if self.selector is None:
            self._stash[address] = [("bitfield", bitfield)]
            return
        try:
            self.selector.add_peer_bitfield(address, bitfield)
        except ValueError as e:
            await self._drop_peer(address, ProtocolViolation(f"Invalid bitfield: {e}"))
            return
        await self._fill_requests(address)

    async def _on_have(self, address: PeerAddress, piece_index: int) -> None:
        if address not in self.manager.sessions:
            return
        if self.selector is None:
            self._stash.setdefault(address, []).append(("have", piece_index))
            return
        try:
            self.selector.add_peer_have(address, piece_index)
        except ValueError as e:
            await self._drop_peer(address, ProtocolViolation(str(e)))
            return
        await self._fill_requests(address)

    # Transfer

    async def _fill_requests(self, address: PeerAddress) -> None:
        """Top up the requests of one unchoked peer."""
        if self.cancel_requested or self.state.is_terminal or self.selector is None:
            return
        connection = self.manager.sessions.get(address)
        if connection is None or not connection.can_request():
            return
        requests = self.selector.next_requests(
            address, self.clock.now(), limit=connection.available_slots()
        )
        for i, request in enumerate(requests):
            try:
                await connection.request_block(request.piece_index, request.offset, request.length)
            except (PeerChoking, PeerBusy):
                self.selector.release(request.key)
            except PeerError as e:
                self.logger.debug("Request to %s failed: %s", address, e)
                for pending in requests[i:]:
                    self.selector.release(pending.key)
                return

    async def _fill_all(self) -> None:
        for address in list(self.manager.sessions):
            await self._fill_requests(address)

    async def _on_block(self, intent: BlockReceived) -> None:
        if self.store is None or self.selector is None or self.state.is_terminal:
            return
        key = (intent.piece_index, intent.offset)
        self.selector.mark_received(intent.address, key)
        accepted = self.store.write_block(
            intent.piece_index, intent.offset, intent.data, source=intent.address
        )
        if accepted:
            other = self.selector.owner(key)
            if other is not None:
                self.selector.release(key)
                connection = self.manager.sessions.get(other)
                if connection is not None:
                    await connection.cancel_block(*key)
            self.bytes_downloaded += len(intent.data)
            self.last_progress_at = self.clock.now()
            self.idle_warned = False
            if self.state == SwarmStatus.DISCOVERING:
                self.state = SwarmStatus.TRANSFERRING
                self.logger.info("Transfer started for %s", self.descriptor.name)
            if (
                self.store.is_piece_complete(intent.piece_index)
                and intent.piece_index not in self._verifying
            ):
                self._schedule_verify(intent.piece_index)
        await self._fill_requests(intent.address)

    def _schedule_verify(self, piece_index: int) -> None:
        _, store, _ = self._require_transfer()
        self._verifying.add(piece_index)
        self._verify_sources[piece_index] = store.piece_sources(piece_index)
        self.tasks.create(self._verify(piece_index), name=f"verify-{piece_index}")

    async def _verify(self, piece_index: int) -> None:
        _, store, _ = self._require_transfer()
        if self.cancel_requested:
            return
        try:
            result = await store.verify_piece(piece_index)
        except StorageIOError as e:
            self.inbox.put_nowait(StorageFailed(e))
            return
        if result == VerifyResult.VERIFIED:
            self.inbox.put_nowait(PieceVerified(piece_index))
        else:
            self.inbox.put_nowait(PieceCorrupt(piece_index))

    async def _on_piece_verified(self, piece_index: int) -> None:
        _, store, _ = self._require_transfer()
        self._verifying.discard(piece_index)
        self._verify_sources.pop(piece_index, None)
        for connection in list(self.manager.sessions.values()):
            try:
                await connection.send_have(piece_index)
            except PeerError as e:
                self.logger.debug("HAVE to %s failed: %s", connection.address, e)
        self._maybe_emit_progress()
        if store.all_verified:
            await self._complete()

    async def _on_piece_corrupt(self, piece_index: int) -> None:
        # the store already reverted the piece; in-flight entries for it are re-requests
        self._verifying.discard(piece_index)
        sources = self._verify_sources.pop(piece_index, set())
        failures = self.piece_failures.get(piece_index, 0) + 1
        self.piece_failures[piece_index] = failures
        bad = self.piece_bad_sources.setdefault(piece_index, set())
        bad.update(sources)
        self.logger.warning(
            "Piece %d failed verification (%d times, %d peers involved)",
            piece_index,
            failures,
            len(bad),
        )
        storage = self.config.storage
        if failures >= storage.max_piece_failures and len(bad) >= storage.suspect_manifest_peers:
            self._fail(
                FailureReason.MANIFEST_CORRUPT,
                f"Piece {piece_index} failed verification {failures} times "
                f"with data from {len(bad)} peers",
            )
            return
        await self._fill_all()

    async def _complete(self) -> None:
        manifest, store, _ = self._require_transfer()
        await store.flush()
        files = [
            CompletedFile(path=str(path), size=entry.length)
            for entry, path in zip(manifest.files, store.layout.paths)
        ]
        self.outcome = CompletedOutcome(
            files=files,
            total_bytes=manifest.total_length,
            elapsed_time=self.elapsed(),
        )
        self.state = SwarmStatus.COMPLETED
        self.logger.info(
            "Download of %s complete in %.1fs", manifest.name, self.outcome.elapsed_time
        )

    # Liveness

    async def _on_tick(self, now: float) -> None:
        self._check_timeouts(now)
        if self.state.is_terminal:
            return
        if self.selector is not None:
            for peer, key in self.selector.expire(now, self.config.timeouts.request_timeout):
                connection = self.manager.sessions.get(peer)
                if connection is not None:
                    self.logger.debug("Request %s to %s timed out", key, peer)
                    await connection.cancel_block(*key)
        self.manager.replenish()
        if self.manager.wants_more_peers:
            self.discovery.request_refresh()
        await self._fill_all()

    def _check_timeouts(self, now: float) -> None:
        timeouts = self.config.timeouts
        elapsed = now - self.started_at

        if self.manifest is None and elapsed > timeouts.discovery_timeout:
            if self.manager.ever_established:
                self._fail(
                    FailureReason.METADATA_UNAVAILABLE,
                    f"No peer supplied metadata within {timeouts.discovery_timeout:g}s",
                )
            else:
                self._fail(
                    FailureReason.DISCOVERY_TIMEOUT,
                    f"Could not find/connect to peers within {timeouts.discovery_timeout:g}s",
                )
            return
        if (
            self.manifest is not None
            and not self.manager.ever_established
            and elapsed > timeouts.discovery_timeout
        ):
            self._fail(
                FailureReason.DISCOVERY_TIMEOUT,
                f"Could not find/connect to peers within {timeouts.discovery_timeout:g}s",
            )
            return

        if timeouts.hard_kill_switch is not None and elapsed > timeouts.hard_kill_switch:
            self._fail(
                FailureReason.HARD_TIMEOUT,
                f"Exceeded kill switch of {timeouts.hard_kill_switch:g}s",
            )
            return

        if elapsed > timeouts.hard_timeout:
            if self.bytes_downloaded == 0:
                self._fail(
                    FailureReason.HARD_TIMEOUT,
                    f"Exceeded {timeouts.hard_timeout:g}s without starting download",
                )
                return
            rewarn = timeouts.hard_timeout_rewarn_interval
            if self.hard_warned_at is None or (
                rewarn is not None and now - self.hard_warned_at >= rewarn
            ):
                self.hard_warned_at = now
                self._warn(
                    "hard_timeout",
                    f"Download time exceeds {timeouts.hard_timeout:g}s, but continuing...",
                    elapsed,
                )

        if (
            self.last_progress_at is not None
            and not self.idle_warned
            and now - self.last_progress_at > timeouts.idle_timeout
        ):
            self.idle_warned = True
            self._warn(
                "idle",
                f"No progress for {now - self.last_progress_at:.0f}s, waiting for peers",
                elapsed,
            )

    def _warn(self, kind: str, message: str, elapsed: float) -> None:
        self.logger.warning(message)
        self._emit(
            EventStatus.WARNING,
            message,
            warning=kind,
            elapsed=round(elapsed),
            downloaded=self.bytes_downloaded,
            peers=self.manager.peer_count,
        )

    # Terminal transitions

    def _on_cancel(self) -> None:
        if self.state.is_terminal:
            return
        discarded = self.store.discard_partial() if self.store else 0
        self.outcome = CancelledOutcome(bytes_retained=self._bytes_retained())
        self.state = SwarmStatus.CANCELLED
        self.logger.info("Swarm cancelled (%d buffered bytes discarded)", discarded)

    def _fail(self, reason: FailureReason, message: str) -> None:
        if self.state.is_terminal:
            return
        self.reason = reason
        self.outcome = FailedOutcome(
            reason=reason, message=message, bytes_retained=self._bytes_retained()
        )
        self.state = SwarmStatus.FAILED
        self.logger.error("Swarm failed (%s): %s", reason.value, message)

    def _bytes_retained(self) -> int:
        return self.store.bytes_verified if self.store else 0

    # Events

    def _emit(self, status: EventStatus, message: str, **data: Any) -> None:
        self.events.emit(SwarmEvent(status, self.clock.now(), message, data))

    def _progress_percent(self) -> int:
        if self.store is None or self.manifest is None or not self.manifest.total_length:
            return 0
        return self.store.bytes_verified * 100 // self.manifest.total_length

    def _maybe_emit_progress(self) -> None:
        manifest, _, _ = self._require_transfer()
        progress = self._progress_percent()
        bucket = progress // self.config.observability.progress_step
        if bucket <= self._progress_bucket:
            return
        self._progress_bucket = bucket
        speed = self.download_rate()
        remaining = self.bytes_left()
        self._emit(
            EventStatus.DOWNLOADING,
            "Download progress",
            progress=progress,
            downloaded=self.bytes_downloaded,
            total=manifest.total_length,
            speed=speed,
            eta=remaining / speed if speed > 0 else None,
            elapsed=round(self.elapsed()),
            peers=self.manager.peer_count,
        )

    def _emit_terminal(self) -> None:
        outcome = self.outcome
        elapsed = round(self.elapsed())
        if isinstance(outcome, CompletedOutcome):
            manifest, _, _ = self._require_transfer()
            files = [
                {
                    "index": idx,
                    "name": PurePosixPath(entry.path).name,
                    "path": entry.path,
                    "size": entry.length,
                }
                for idx, entry in enumerate(manifest.files)
            ]
            self._emit(
                EventStatus.COMPLETE,
                "Download complete",
                elapsed=elapsed,
                files=files,
                totalSize=outcome.total_bytes,
                location=str(self.destination),
            )
        elif isinstance(outcome, FailedOutcome):
            self._emit(
                EventStatus.ERROR,
                outcome.message,
                reason=outcome.reason.value,
                elapsed=elapsed,
                bytesRetained=outcome.bytes_retained,
            )
        elif isinstance(outcome, CancelledOutcome):
            self._emit(
                EventStatus.CANCELLED,
                "Download cancelled",
                elapsed=elapsed,
                bytesRetained=outcome.bytes_retained,
            )


class SwarmHandle:
    """Caller-side handle of a running swarm."""

    def __init__(self, swarm: Swarm) -> None:
        self._swarm = swarm

    @property
    def info_hash(self) -> bytes:
        return self._swarm.descriptor.info_hash

    @property
    def destination(self) -> Path:
        return self._swarm.destination

    @property
    def state(self) -> SwarmStatus:
        return self._swarm.state

    @property
    def outcome(self) -> Outcome | None:
        """Terminal outcome, or None while the swarm is running."""
        return self._swarm.outcome if self._swarm.state.is_terminal else None

    def snapshot(self) -> ProgressSnapshot:
        return self._swarm.snapshot()

    def events(self, replay: bool = True) -> AsyncIterator[SwarmEvent]:
        return self._swarm.events.subscribe(replay=replay)

    async def wait(self) -> Outcome:
        """Wait for the terminal outcome."""
        return await self._swarm.wait()

    def request_cancel(self) -> None:
        """Ask the swarm to stop without waiting (safe from signal handlers)."""
        self._swarm.request_cancel()

    async def cancel(self) -> Outcome:
        """Request cancellation and wait for the swarm to stop."""
        self._swarm.request_cancel()
        return await self._swarm.wait()


class SwarmController:
    """Starts swarms and exposes their handles.

    Example:
        controller = SwarmController(config)
        handle = await controller.start(descriptor, Path("/tmp/media"))
        outcome = await handle.wait()

    """

    def __init__(
        self,
        config: Config | None = None,
        clock: Clock | None = None,
    ) -> None:
        self.config = config or Config()
        self.clock = clock or Clock()
        self.handles: dict[bytes, SwarmHandle] = {}
        self.logger = logging.getLogger(__name__)

    async def start(
        self,
        descriptor: ContentDescriptor,
        destination: str | Path,
        sources: Sequence[DiscoverySource] | None = None,
        extra_peers: Iterable[PeerAddress] = (),
    ) -> SwarmHandle:
        """Start transferring ``descriptor`` into ``destination``.

        Args:
            descriptor: Content to fetch
            destination: Existing, writable directory
            sources: Discovery sources; derived from the descriptor when None
            extra_peers: Additional peers for the derived static source

        Raises:
            StorageIOError: If the destination is not an existing directory
            ValidationError: If a swarm for the same content is still running

        """
        path = Path(destination)
        if not path.is_dir():
            msg = f"Destination is not a directory: {path}"
            raise StorageIOError(msg)
        existing = self.handles.get(descriptor.info_hash)
        if existing is not None and not existing.state.is_terminal:
            msg = f"Swarm for {descriptor.info_hash.hex()} is already running"
            raise ValidationError(msg)

        swarm = Swarm(
            descriptor,
            path,
            self.config,
            sources=sources,
            extra_peers=extra_peers,
            clock=self.clock,
        )
        handle = SwarmHandle(swarm)
        self.handles[descriptor.info_hash] = handle
        swarm.start()
        return handle

    async def cancel(self, handle: SwarmHandle) -> Outcome:
        return await handle.cancel()

    def snapshot(self, handle: SwarmHandle) -> ProgressSnapshot:
        return handle.snapshot()

    async def shutdown(self) -> None:
        """Cancel every running swarm."""
        running = [h for h in self.handles.values() if not h.state.is_terminal]
        results = await asyncio.gather(*(h.cancel() for h in running), return_exceptions=True)
        for result in results:
            if isinstance(result, Exception):
                self.logger.warning("Error during shutdown: %s", result)
