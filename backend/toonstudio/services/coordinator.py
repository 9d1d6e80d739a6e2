"""RegenerationCoordinator: batched regeneration with placeholder slots.

Client-side orchestration for one screen/session:

1. `submit_regeneration` creates one pending slot per requested unit, then
   sends the units to the batch endpoint in batches of `batch_size`, strictly
   one batch after another.
2. Each batch response is reconciled into the slots by the unit index it
   carries, never by arrival order.
3. A batch whose call fails marks only its own slots failed; later batches
   still run.
4. `select_slot` / `persist_selected` let the user save a subset of the
   completed results to a process.

Everything runs on one asyncio event loop; the only suspension points are
the transport calls.
"""
import base64
import binascii
import random
import uuid
from typing import Awaitable, Callable, Optional

from toonstudio.core.errors import MissingSourceError, RegenerationError
from toonstudio.core.logging import setup_logging
from toonstudio.models.batch import (
    BatchRegenerationRequest,
    BatchRegenerationResponse,
    BatchUnitRequest,
    BatchUnitResult,
    SaveImageRequest,
)
from toonstudio.models.generation import (
    GenerationRequest,
    GenerationSlot,
    PersistResult,
    Provider,
    ProviderMode,
    SlotError,
    SlotResult,
    SlotState,
)
from toonstudio.services.prompts import generate_varied_prompt, style_id_for_prompt
from toonstudio.services.transport import RegenerationTransport

logger = setup_logging("coordinator")

DEFAULT_BATCH_SIZE = 4

MISSING_RESULT = SlotError(code="MISSING_RESULT", message="The server returned no result for this image.")
INVALID_RESULT = SlotError(code="INVALID_RESULT", message="The server returned unreadable image data.")

UpdateCallback = Callable[[list[GenerationSlot]], None]


def choose_provider(index: int, mode: ProviderMode) -> Provider:
    """Provider for the unit at global `index`.

    `auto` alternates: even indices use Gemini, odd indices use Seedream.
    """
    if mode is ProviderMode.auto:
        return Provider.gemini if index % 2 == 0 else Provider.seedream
    return Provider(mode.value)


def partition(count: int, size: int = DEFAULT_BATCH_SIZE) -> list[range]:
    """Split unit indices 0..count-1 into consecutive batches of at most `size`."""
    if size < 1:
        raise ValueError("batch size must be positive")
    return [range(start, min(start + size, count)) for start in range(0, count, size)]


class _Source:
    """Resolved source image of one request: a file id or raw bytes."""

    def __init__(self, file_id: Optional[str], data: Optional[bytes], mime_type: str) -> None:
        self.file_id = file_id
        self.data = data
        self.mime_type = mime_type


class RegenerationCoordinator:
    """Owns the slot collection and selection set of one regeneration session.

    Attributes:
        slots: Slots in creation order. Observers may read it at any time and
            see partial results while a request is in flight.
        selection: Ids of slots marked for persistence.
    """

    def __init__(
        self,
        transport: RegenerationTransport,
        batch_size: int = DEFAULT_BATCH_SIZE,
        on_update: Optional[UpdateCallback] = None,
        rng: Optional[random.Random] = None,
        id_factory: Optional[Callable[[], str]] = None,
    ) -> None:
        if batch_size < 1:
            raise ValueError("batch size must be positive")
        self.transport = transport
        self.batch_size = batch_size
        self.on_update = on_update
        self._rng = rng or random.Random()
        self._new_id = id_factory or (lambda: uuid.uuid4().hex)
        self.slots: list[GenerationSlot] = []
        self.selection: set[str] = set()
        self._origin: dict[str, tuple[GenerationRequest, _Source]] = {}

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_slot(self, slot_id: str) -> Optional[GenerationSlot]:
        return next((slot for slot in self.slots if slot.id == slot_id), None)

    def latest_completed(self) -> Optional[GenerationSlot]:
        """Most recently created slot that completed successfully."""
        return next((slot for slot in reversed(self.slots) if slot.state is SlotState.completed), None)

    def counts(self) -> dict[SlotState, int]:
        totals = {state: 0 for state in SlotState}
        for slot in self.slots:
            totals[slot.state] += 1
        return totals

    @property
    def has_failures(self) -> bool:
        return any(slot.state is SlotState.failed for slot in self.slots)

    # ------------------------------------------------------------------
    # Generation
    # ------------------------------------------------------------------

    def submit_regeneration(
        self, request: GenerationRequest, append: bool = False
    ) -> Awaitable[list[GenerationSlot]]:
        """Start a regeneration request.

        The source is resolved and the placeholders are created immediately;
        the returned awaitable dispatches the batches. Awaiting it never
        raises: every failure ends up as a failed slot.

        Args:
            request: What to generate.
            append: Keep the slots of earlier requests instead of starting over
                (the previous selection is cleared otherwise).

        Returns:
            Awaitable resolving to this request's slots, all terminal.

        Raises:
            MissingSourceError: No source image is resolvable. Raised before
                any transport call.
        """
        source = self._resolve_source(request)

        if not append:
            self.slots = []
            self.selection = set()
            self._origin = {}

        batches = partition(request.count, self.batch_size)
        created: list[GenerationSlot] = []
        for batch_index, indices in enumerate(batches):
            for index in indices:
                slot = GenerationSlot(
                    id=self._new_id(),
                    index=index,
                    batch_index=batch_index,
                    used_prompt=request.prompt,
                    provider=choose_provider(index, request.provider),
                )
                created.append(slot)
                self._origin[slot.id] = (request, source)
        self.slots.extend(created)
        self._notify()

        logger.info(
            "Regeneration submitted: %d units in %d batches (provider=%s)",
            request.count,
            len(batches),
            request.provider.value,
        )
        return self._dispatch(request, source, created)

    def _resolve_source(self, request: GenerationRequest) -> _Source:
        if request.chain_from_latest:
            latest = self.latest_completed()
            if latest is not None and latest.result is not None:
                if latest.result.file_id:
                    return _Source(latest.result.file_id, None, latest.result.mime_type)
                if latest.result.image_data:
                    return _Source(None, latest.result.image_data, latest.result.mime_type)
        if request.source_file_id:
            return _Source(request.source_file_id, None, request.source_mime_type)
        if request.source_image:
            return _Source(None, request.source_image, request.source_mime_type)
        raise MissingSourceError("No source image to regenerate from")

    async def _dispatch(
        self,
        request: GenerationRequest,
        source: _Source,
        slots: list[GenerationSlot],
    ) -> list[GenerationSlot]:
        by_batch: dict[int, list[GenerationSlot]] = {}
        for slot in slots:
            by_batch.setdefault(slot.batch_index, []).append(slot)

        style_id = request.style_id or style_id_for_prompt(request.prompt)
        vary = request.count > 1

        for batch_index in sorted(by_batch):
            batch_slots = by_batch[batch_index]
            units = []
            for slot in batch_slots:
                if vary:
                    slot.used_prompt = generate_varied_prompt(request.prompt, style_id, self._rng)
                units.append(
                    BatchUnitRequest(
                        style_prompt=slot.used_prompt,
                        index=slot.index,
                        api_provider=slot.provider,
                        style_id=style_id,
                    )
                )
            await self._run_batch(request, source, batch_index, batch_slots, units)

        return slots

    async def _run_batch(
        self,
        request: GenerationRequest,
        source: _Source,
        batch_index: int,
        batch_slots: list[GenerationSlot],
        units: list[BatchUnitRequest],
    ) -> None:
        body = BatchRegenerationRequest(
            file_id=source.file_id,
            source_image_data=base64.b64encode(source.data).decode("ascii") if source.data else None,
            source_mime_type=source.mime_type,
            requests=units,
            reference_file_ids=list(request.reference_image_ids),
            character_sheet_ids=list(request.character_sheet_ids),
            created_by=request.requested_by,
        )
        try:
            response = await self.transport.regenerate_batch(body)
        except Exception as exc:
            error = SlotError(
                code=exc.code if isinstance(exc, RegenerationError) else "BATCH_TRANSPORT",
                message=str(exc) or "The batch request failed.",
            )
            logger.error(
                "Batch %d failed as a whole: %s",
                batch_index,
                exc,
                extra={"batch": batch_index, "error_code": error.code, "error_type": type(exc).__name__},
            )
            for slot in batch_slots:
                self._fail(slot, error)
        else:
            self._reconcile(batch_index, batch_slots, response)
        self._notify()

    def _reconcile(
        self,
        batch_index: int,
        batch_slots: list[GenerationSlot],
        response: BatchRegenerationResponse,
    ) -> None:
        """Apply results to slots by unit index; leftovers become MISSING_RESULT."""
        by_index = {slot.index: slot for slot in batch_slots}
        for result in response.images:
            slot = by_index.pop(result.index, None)
            if slot is None:
                logger.warning(
                    "Ignoring result for unknown or duplicate index %d",
                    result.index,
                    extra={"batch": batch_index, "index": result.index},
                )
                continue
            self._apply(slot, result)

        for slot in by_index.values():
            self._fail(slot, MISSING_RESULT)

        completed = sum(1 for slot in batch_slots if slot.state is SlotState.completed)
        logger.info(
            "Batch %d reconciled: %d/%d completed",
            batch_index,
            completed,
            len(batch_slots),
            extra={"batch": batch_index},
        )

    def _apply(self, slot: GenerationSlot, result: BatchUnitResult) -> None:
        slot.used_prompt = result.style_prompt or slot.used_prompt
        slot.provider = result.api_provider
        if not result.succeeded:
            self._fail(slot, result.error or MISSING_RESULT)
            return

        image_data: Optional[bytes] = None
        if result.image_data:
            try:
                image_data = base64.b64decode(result.image_data, validate=True)
            except (binascii.Error, ValueError):
                self._fail(slot, INVALID_RESULT)
                return

        slot.state = SlotState.completed
        slot.error = None
        slot.result = SlotResult(
            file_id=result.file_id or None,
            file_url=result.file_url or None,
            image_data=image_data,
            mime_type=result.mime_type or "image/png",
        )

    @staticmethod
    def _fail(slot: GenerationSlot, error: SlotError) -> None:
        slot.state = SlotState.failed
        slot.result = None
        slot.error = error

    def _notify(self) -> None:
        if self.on_update is not None:
            self.on_update(list(self.slots))

    async def retry_slot(self, slot_id: str) -> GenerationSlot:
        """Regenerate a single slot in place with its original prompt and provider.

        Raises:
            KeyError: Unknown slot id.
        """
        slot = self.get_slot(slot_id)
        if slot is None or slot_id not in self._origin:
            raise KeyError(slot_id)
        request, source = self._origin[slot_id]

        slot.state = SlotState.pending
        slot.result = None
        slot.error = None
        self.selection.discard(slot_id)
        self._notify()

        unit = BatchUnitRequest(
            style_prompt=slot.used_prompt,
            index=slot.index,
            api_provider=slot.provider,
            style_id=request.style_id or style_id_for_prompt(request.prompt),
        )
        await self._run_batch(request, source, slot.batch_index, [slot], [unit])
        return slot

    # ------------------------------------------------------------------
    # Selection and persistence
    # ------------------------------------------------------------------

    def select_slot(self, slot_id: str, selected: bool) -> None:
        """Mark or unmark a slot for persistence. Idempotent."""
        if selected:
            self.selection.add(slot_id)
        else:
            self.selection.discard(slot_id)

    def select_all(self) -> None:
        self.selection = {slot.id for slot in self.slots if slot.state is SlotState.completed}

    def clear_selection(self) -> None:
        self.selection = set()

    async def persist_selected(
        self,
        process_id: str,
        cut_id: Optional[str] = None,
        source_file_id: Optional[str] = None,
        file_name: Optional[str] = None,
        created_by: Optional[str] = None,
    ) -> PersistResult:
        """Save every selected, completed slot to `process_id`, one call at a time.

        Slots backed by a temporary file are promoted; slots with inline bytes
        are uploaded. Saved slots leave the selection; failed ones stay
        selected so the call can simply be repeated. Never raises.

        Args:
            process_id: Process (pipeline stage) the results are attributed to.
            cut_id: Cut for raw uploads (the server falls back to the source
                file's cut).
            source_file_id: Original image, recorded on raw uploads.
            file_name: Base file name for raw uploads.
            created_by: User recorded on raw uploads.

        Returns:
            Counts of saved, failed and skipped (selected but not completed)
            slots, with per-slot errors.
        """
        outcome = PersistResult()
        if not self.selection or not process_id:
            logger.warning("Nothing to persist (selection=%d)", len(self.selection))
            return outcome

        chosen = [slot for slot in self.slots if slot.id in self.selection]
        for slot in chosen:
            if slot.state is not SlotState.completed or slot.result is None:
                outcome.skipped += 1
                continue

            result = slot.result
            if result.file_id:
                body = SaveImageRequest(file_id=result.file_id, process_id=process_id)
            else:
                body = SaveImageRequest(
                    image_data=base64.b64encode(result.image_data or b"").decode("ascii"),
                    mime_type=result.mime_type,
                    process_id=process_id,
                    cut_id=cut_id,
                    file_name=file_name,
                    prompt=slot.used_prompt,
                    source_file_id=source_file_id,
                    created_by=created_by,
                )

            try:
                await self.transport.save_image(body)
            except Exception as exc:
                code = exc.code if isinstance(exc, RegenerationError) else "PERSISTENCE_ERROR"
                outcome.failed += 1
                outcome.errors[slot.id] = SlotError(code=code, message=str(exc) or "Save failed.")
                logger.error(
                    "Failed to persist slot: %s",
                    exc,
                    extra={"index": slot.index, "error_code": code, "error_type": type(exc).__name__},
                )
                continue

            outcome.succeeded += 1
            self.selection.discard(slot.id)

        logger.info(
            "Persisted %d, failed %d, skipped %d",
            outcome.succeeded,
            outcome.failed,
            outcome.skipped,
        )
        return outcome
