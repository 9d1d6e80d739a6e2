"""Tests for RegenerationCoordinator (batching, reconciliation, selection, persistence)."""
import base64
import random
from typing import Callable, Optional

import pytest

from toonstudio.core.errors import BatchTransportError, MissingSourceError, PersistenceError
from toonstudio.models.batch import (
    BatchRegenerationRequest,
    BatchRegenerationResponse,
    BatchUnitResult,
    SaveImageRequest,
    SaveImageResponse,
)
from toonstudio.models.files import StoredFile
from toonstudio.models.generation import GenerationRequest, Provider, ProviderMode, SlotError, SlotState
from toonstudio.services.coordinator import RegenerationCoordinator, choose_provider, partition
from toonstudio.services.prompts import find_style


# ---------------------------------------------------------------------------
# Helpers / Fixtures
# ---------------------------------------------------------------------------


def _ok(request: BatchRegenerationRequest) -> BatchRegenerationResponse:
    return BatchRegenerationResponse(
        images=[
            BatchUnitResult(
                index=unit.index,
                api_provider=unit.api_provider,
                style_prompt=unit.style_prompt,
                file_id=f"tmp-{unit.index}",
                file_url=f"/images/tmp-{unit.index}.png",
                mime_type="image/png",
            )
            for unit in request.requests
        ]
    )


def _stored(file_id: str) -> StoredFile:
    return StoredFile(
        id=file_id,
        cut_id="c1",
        process_id="p1",
        file_name=f"{file_id}.png",
        file_path=f"/images/{file_id}.png",
        storage_path=f"{file_id}.png",
    )


class FakeTransport:
    """Records calls and answers each batch with `batch_handler(call_no, request)`."""

    def __init__(
        self,
        batch_handler: Optional[Callable[[int, BatchRegenerationRequest], BatchRegenerationResponse]] = None,
        failing_saves: tuple[str, ...] = (),
    ) -> None:
        self.batch_handler = batch_handler or (lambda n, request: _ok(request))
        self.failing_saves = set(failing_saves)
        self.batch_calls: list[BatchRegenerationRequest] = []
        self.save_calls: list[SaveImageRequest] = []
        self.events: list[str] = []
        self.observer: Optional[Callable[[int], None]] = None

    async def regenerate_batch(self, request: BatchRegenerationRequest) -> BatchRegenerationResponse:
        n = len(self.batch_calls)
        self.batch_calls.append(request)
        self.events.append(f"start {n}")
        if self.observer is not None:
            self.observer(n)
        try:
            return self.batch_handler(n, request)
        finally:
            self.events.append(f"end {n}")

    async def save_image(self, request: SaveImageRequest) -> SaveImageResponse:
        self.save_calls.append(request)
        key = request.file_id or request.prompt
        if key in self.failing_saves:
            raise PersistenceError("Save request failed (500): boom", status=500)
        return SaveImageResponse(file=_stored(request.file_id or "uploaded"))


def _request(count: int, **kwargs) -> GenerationRequest:
    kwargs.setdefault("source_file_id", "src-1")
    return GenerationRequest(prompt=kwargs.pop("prompt", "grayscale"), count=count, **kwargs)


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def coordinator(transport: FakeTransport) -> RegenerationCoordinator:
    return RegenerationCoordinator(transport, rng=random.Random(7))


# ---------------------------------------------------------------------------
# Pure helpers
# ---------------------------------------------------------------------------


class TestChooseProvider:
    @pytest.mark.parametrize("index", range(10))
    def test_auto_alternates_by_parity(self, index: int) -> None:
        expected = Provider.gemini if index % 2 == 0 else Provider.seedream
        assert choose_provider(index, ProviderMode.auto) is expected

    @pytest.mark.parametrize("mode, provider", [(ProviderMode.gemini, Provider.gemini), (ProviderMode.seedream, Provider.seedream)])
    def test_explicit_mode(self, mode: ProviderMode, provider: Provider) -> None:
        assert all(choose_provider(i, mode) is provider for i in range(5))


class TestPartition:
    @pytest.mark.parametrize(
        "count, sizes",
        [(1, [1]), (2, [2]), (4, [4]), (5, [4, 1]), (8, [4, 4]), (9, [4, 4, 1])],
    )
    def test_batch_sizes(self, count: int, sizes: list[int]) -> None:
        assert [len(batch) for batch in partition(count)] == sizes

    def test_indices_are_consecutive(self) -> None:
        assert [list(batch) for batch in partition(6, size=4)] == [[0, 1, 2, 3], [4, 5]]

    def test_rejects_bad_size(self) -> None:
        with pytest.raises(ValueError):
            partition(3, size=0)


# ---------------------------------------------------------------------------
# submit_regeneration
# ---------------------------------------------------------------------------


class TestSubmitRegeneration:
    @pytest.mark.parametrize("count", [1, 2, 4])
    async def test_small_counts_use_one_batch(self, coordinator, transport, count: int) -> None:
        slots = await coordinator.submit_regeneration(_request(count))

        assert len(slots) == count
        assert len(transport.batch_calls) == 1
        assert [u.index for u in transport.batch_calls[0].requests] == list(range(count))
        assert all(slot.state is SlotState.completed for slot in slots)
        assert [slot.provider for slot in slots] == [
            Provider.gemini if i % 2 == 0 else Provider.seedream for i in range(count)
        ]

    async def test_nine_units_run_in_three_sequential_batches(self, coordinator, transport) -> None:
        def observe(call_no: int) -> None:
            # every earlier batch is fully reconciled before the next request is sent
            earlier = [s for s in coordinator.slots if s.batch_index < call_no]
            assert all(s.is_terminal for s in earlier)
            later = [s for s in coordinator.slots if s.batch_index >= call_no]
            assert all(s.state is SlotState.pending for s in later)

        transport.observer = observe

        slots = await coordinator.submit_regeneration(_request(9))

        assert [len(call.requests) for call in transport.batch_calls] == [4, 4, 1]
        assert transport.events == ["start 0", "end 0", "start 1", "end 1", "start 2", "end 2"]
        assert [u.index for u in transport.batch_calls[1].requests] == [4, 5, 6, 7]
        assert [s.batch_index for s in slots] == [0, 0, 0, 0, 1, 1, 1, 1, 2]
        assert all(s.state is SlotState.completed for s in slots)

    async def test_placeholders_exist_before_dispatch(self, coordinator, transport) -> None:
        pending = coordinator.submit_regeneration(_request(3))

        assert len(coordinator.slots) == 3
        assert all(s.state is SlotState.pending for s in coordinator.slots)
        assert transport.batch_calls == []

        await pending
        assert all(s.state is SlotState.completed for s in coordinator.slots)

    async def test_out_of_order_results_reconcile_by_index(self, coordinator) -> None:
        def reversed_ok(n, request):
            return BatchRegenerationResponse(images=list(reversed(_ok(request).images)))

        coordinator.transport.batch_handler = reversed_ok

        slots = await coordinator.submit_regeneration(_request(4))

        assert [s.result.file_id for s in slots] == ["tmp-0", "tmp-1", "tmp-2", "tmp-3"]
        assert [s.index for s in slots] == [0, 1, 2, 3]

    async def test_failed_batch_only_fails_its_own_units(self, coordinator) -> None:
        def second_batch_fails(n, request):
            if n == 1:
                raise BatchTransportError("Batch request failed (502): bad gateway", status=502)
            return _ok(request)

        coordinator.transport.batch_handler = second_batch_fails

        slots = await coordinator.submit_regeneration(_request(9))

        assert [s.state for s in slots[:4]] == [SlotState.completed] * 4
        assert [s.state for s in slots[4:8]] == [SlotState.failed] * 4
        assert all(s.error.code == "BATCH_TRANSPORT" for s in slots[4:8])
        assert slots[8].state is SlotState.completed
        assert len(coordinator.transport.batch_calls) == 3

    async def test_unexpected_transport_exception_does_not_escape(self, coordinator) -> None:
        def broken(n, request):
            raise RuntimeError("socket closed")

        coordinator.transport.batch_handler = broken

        slots = await coordinator.submit_regeneration(_request(2))

        assert all(s.state is SlotState.failed for s in slots)
        assert slots[0].error.code == "BATCH_TRANSPORT"

    async def test_per_unit_error_is_recorded(self, coordinator) -> None:
        def one_error(n, request):
            response = _ok(request)
            response.images[1] = BatchUnitResult(
                index=1,
                api_provider=Provider.seedream,
                style_prompt="grayscale",
                error=SlotError(code="SEEDREAM_TIMEOUT", message="timed out"),
            )
            return response

        coordinator.transport.batch_handler = one_error

        slots = await coordinator.submit_regeneration(_request(2))

        assert slots[0].state is SlotState.completed
        assert slots[1].state is SlotState.failed
        assert slots[1].error.code == "SEEDREAM_TIMEOUT"
        assert slots[1].result is None

    async def test_missing_and_unknown_indices(self, coordinator) -> None:
        def partial(n, request):
            response = _ok(request)
            response.images = [response.images[0]] + [
                BatchUnitResult(index=99, api_provider=Provider.gemini, style_prompt="x", file_id="stray")
            ]
            return response

        coordinator.transport.batch_handler = partial

        slots = await coordinator.submit_regeneration(_request(3))

        assert slots[0].state is SlotState.completed
        assert [s.error.code for s in slots[1:]] == ["MISSING_RESULT", "MISSING_RESULT"]
        assert all(s.result is None or s.result.file_id != "stray" for s in slots)

    async def test_duplicate_index_is_applied_once(self, coordinator) -> None:
        def duplicated(n, request):
            response = _ok(request)
            response.images.append(
                BatchUnitResult(index=0, api_provider=Provider.gemini, style_prompt="x", file_id="second")
            )
            return response

        coordinator.transport.batch_handler = duplicated

        slots = await coordinator.submit_regeneration(_request(1))

        assert slots[0].result.file_id == "tmp-0"

    async def test_inline_results_are_decoded(self, coordinator) -> None:
        def inline(n, request):
            return BatchRegenerationResponse(
                images=[
                    BatchUnitResult(
                        index=0,
                        api_provider=Provider.gemini,
                        style_prompt="grayscale",
                        mime_type="image/jpeg",
                        image_data=base64.b64encode(b"jpeg-bytes").decode(),
                    )
                ]
            )

        coordinator.transport.batch_handler = inline

        slots = await coordinator.submit_regeneration(_request(1, source_file_id=None, source_image=b"raw-source"))

        assert slots[0].result.image_data == b"jpeg-bytes"
        assert slots[0].result.mime_type == "image/jpeg"
        sent = coordinator.transport.batch_calls[0]
        assert sent.file_id is None
        assert base64.b64decode(sent.source_image_data) == b"raw-source"

    async def test_invalid_inline_data_fails_slot(self, coordinator) -> None:
        def garbage(n, request):
            return BatchRegenerationResponse(
                images=[BatchUnitResult(index=0, api_provider=Provider.gemini, style_prompt="p", image_data="***")]
            )

        coordinator.transport.batch_handler = garbage

        slots = await coordinator.submit_regeneration(_request(1))

        assert slots[0].error.code == "INVALID_RESULT"

    async def test_request_fields_are_forwarded(self, coordinator, transport) -> None:
        await coordinator.submit_regeneration(
            _request(1, reference_image_ids=["r1"], character_sheet_ids=["c1"], requested_by="u1")
        )

        sent = transport.batch_calls[0]
        assert sent.file_id == "src-1"
        assert sent.reference_file_ids == ["r1"]
        assert sent.character_sheet_ids == ["c1"]
        assert sent.created_by == "u1"

    async def test_explicit_provider_mode(self, coordinator, transport) -> None:
        await coordinator.submit_regeneration(_request(3, provider=ProviderMode.seedream))
        assert {u.api_provider for u in transport.batch_calls[0].requests} == {Provider.seedream}

    async def test_single_unit_keeps_plain_prompt(self, coordinator, transport) -> None:
        prompt = find_style("berserk").prompt
        await coordinator.submit_regeneration(_request(1, prompt=prompt))
        assert transport.batch_calls[0].requests[0].style_prompt == prompt

    async def test_multiple_units_get_varied_prompts(self, coordinator, transport) -> None:
        prompt = find_style("berserk").prompt
        slots = await coordinator.submit_regeneration(_request(4, prompt=prompt))

        sent = [u.style_prompt for u in transport.batch_calls[0].requests]
        assert all(p.startswith(f"{prompt}, ") for p in sent)
        assert all(u.style_id == "berserk" for u in transport.batch_calls[0].requests)
        assert [s.used_prompt for s in slots] == sent

    async def test_on_update_sees_partial_results(self, transport) -> None:
        snapshots = []
        coordinator = RegenerationCoordinator(
            transport,
            on_update=lambda slots: snapshots.append([s.state for s in slots]),
        )

        await coordinator.submit_regeneration(_request(5))

        assert snapshots[0] == [SlotState.pending] * 5
        assert snapshots[1] == [SlotState.completed] * 4 + [SlotState.pending]
        assert snapshots[-1] == [SlotState.completed] * 5

    async def test_new_request_replaces_slots_and_selection(self, coordinator) -> None:
        first = await coordinator.submit_regeneration(_request(2))
        coordinator.select_slot(first[0].id, True)

        second = await coordinator.submit_regeneration(_request(1))

        assert coordinator.slots == second
        assert coordinator.selection == set()

    async def test_append_keeps_earlier_slots(self, coordinator) -> None:
        first = await coordinator.submit_regeneration(_request(2))
        coordinator.select_slot(first[0].id, True)

        await coordinator.submit_regeneration(_request(1), append=True)

        assert len(coordinator.slots) == 3
        assert coordinator.selection == {first[0].id}


class TestMissingSource:
    def test_raises_before_any_transport_call(self, coordinator, transport) -> None:
        with pytest.raises(MissingSourceError):
            coordinator.submit_regeneration(GenerationRequest(prompt="p", count=4))

        assert transport.batch_calls == []
        assert coordinator.slots == []

    def test_chain_without_history_and_source_raises(self, coordinator, transport) -> None:
        with pytest.raises(MissingSourceError):
            coordinator.submit_regeneration(GenerationRequest(prompt="p", count=1, chain_from_latest=True))
        assert transport.batch_calls == []


class TestChainFromLatest:
    async def test_uses_latest_completed_result_as_source(self, coordinator, transport) -> None:
        await coordinator.submit_regeneration(_request(2))

        await coordinator.submit_regeneration(_request(1, chain_from_latest=True), append=True)

        assert transport.batch_calls[-1].file_id == "tmp-1"

    async def test_falls_back_to_original_source(self, coordinator, transport) -> None:
        await coordinator.submit_regeneration(_request(1, chain_from_latest=True))
        assert transport.batch_calls[0].file_id == "src-1"


class TestRetrySlot:
    async def test_retries_failed_slot_in_place(self, coordinator, transport) -> None:
        def first_fails(n, request):
            if n == 0:
                raise BatchTransportError("down")
            return _ok(request)

        transport.batch_handler = first_fails
        slots = await coordinator.submit_regeneration(_request(2))
        assert slots[1].state is SlotState.failed

        retried = await coordinator.retry_slot(slots[1].id)

        assert retried is slots[1]
        assert retried.state is SlotState.completed
        assert [u.index for u in transport.batch_calls[-1].requests] == [1]
        assert transport.batch_calls[-1].requests[0].api_provider is Provider.seedream

    async def test_unknown_slot_raises_key_error(self, coordinator) -> None:
        with pytest.raises(KeyError):
            await coordinator.retry_slot("nope")


# ---------------------------------------------------------------------------
# Selection
# ---------------------------------------------------------------------------


class TestSelection:
    def test_select_is_idempotent(self, coordinator) -> None:
        coordinator.select_slot("a", True)
        coordinator.select_slot("a", True)
        assert coordinator.selection == {"a"}

        coordinator.select_slot("a", False)
        coordinator.select_slot("a", False)
        assert coordinator.selection == set()

    async def test_select_all_only_takes_completed(self, coordinator) -> None:
        def second_batch_fails(n, request):
            if n == 1:
                raise BatchTransportError("down")
            return _ok(request)

        coordinator.transport.batch_handler = second_batch_fails
        slots = await coordinator.submit_regeneration(_request(5))

        coordinator.select_all()

        assert coordinator.selection == {s.id for s in slots[:4]}
        coordinator.clear_selection()
        assert coordinator.selection == set()


# ---------------------------------------------------------------------------
# persist_selected
# ---------------------------------------------------------------------------


class TestPersistSelected:
    async def test_one_success_one_failure(self, transport) -> None:
        transport.failing_saves = {"tmp-1"}
        coordinator = RegenerationCoordinator(transport)
        slots = await coordinator.submit_regeneration(_request(2))
        coordinator.select_slot(slots[0].id, True)
        coordinator.select_slot(slots[1].id, True)

        result = await coordinator.persist_selected("proc-2")

        assert (result.succeeded, result.failed) == (1, 1)
        assert result.errors[slots[1].id].code == "PERSISTENCE_ERROR"
        assert coordinator.selection == {slots[1].id}
        assert [c.file_id for c in transport.save_calls] == ["tmp-0", "tmp-1"]
        assert all(c.process_id == "proc-2" for c in transport.save_calls)

    async def test_inline_results_are_uploaded(self, coordinator, transport) -> None:
        def inline(n, request):
            return BatchRegenerationResponse(
                images=[
                    BatchUnitResult(
                        index=0,
                        api_provider=Provider.gemini,
                        style_prompt="grayscale",
                        image_data=base64.b64encode(b"png").decode(),
                    )
                ]
            )

        transport.batch_handler = inline
        slots = await coordinator.submit_regeneration(_request(1))
        coordinator.select_slot(slots[0].id, True)

        result = await coordinator.persist_selected("proc-2", cut_id="cut-1", source_file_id="src-1", created_by="u1")

        assert result.succeeded == 1
        sent = transport.save_calls[0]
        assert sent.file_id is None
        assert base64.b64decode(sent.image_data) == b"png"
        assert (sent.cut_id, sent.source_file_id, sent.created_by) == ("cut-1", "src-1", "u1")
        assert sent.prompt == "grayscale"

    async def test_failed_slots_are_skipped(self, coordinator, transport) -> None:
        transport.batch_handler = lambda n, request: BatchRegenerationResponse(images=[])
        slots = await coordinator.submit_regeneration(_request(1))
        coordinator.select_slot(slots[0].id, True)

        result = await coordinator.persist_selected("proc-2")

        assert (result.succeeded, result.failed, result.skipped) == (0, 0, 1)
        assert transport.save_calls == []
        assert coordinator.selection == {slots[0].id}

    async def test_empty_selection_makes_no_calls(self, coordinator, transport) -> None:
        await coordinator.submit_regeneration(_request(2))

        result = await coordinator.persist_selected("proc-2")

        assert (result.succeeded, result.failed) == (0, 0)
        assert transport.save_calls == []

    async def test_missing_process_id_makes_no_calls(self, coordinator, transport) -> None:
        slots = await coordinator.submit_regeneration(_request(1))
        coordinator.select_slot(slots[0].id, True)

        result = await coordinator.persist_selected("")

        assert result.succeeded == 0
        assert transport.save_calls == []
