"""Tests for the file intake store and display handles."""

from __future__ import annotations

import pytest

from deepimg.core.files import (
    MAX_FILE_SIZE,
    Candidate,
    FileStatus,
    FileStore,
    LabelScore,
    OversizeNotice,
)
from deepimg.core.handles import HandleStore
from deepimg.errors import RunInProgressError

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

MIB = 1024 * 1024


class FakeClock:
    def __init__(self) -> None:
        self.now = 100.0

    def __call__(self) -> float:
        return self.now


def _candidate(name: str, size: int = 1024, mime_type: str = "image/jpeg") -> Candidate:
    # Size is what intake looks at; keep the payload small.
    return Candidate(name=name, size=size, mime_type=mime_type, data=b"\xff\xd8\xff" + name.encode())


def _make_store(clock: FakeClock | None = None) -> tuple[FileStore, HandleStore]:
    handles = HandleStore()
    store = FileStore(handles, notice_delay=4.0, clock=clock or FakeClock())
    return store, handles


def _assert_parallel(store: FileStore) -> None:
    assert len(store.files) == len(store.image_urls) == len(store.classification_outputs) == len(store)


RESULT = (LabelScore("cat", 0.9), LabelScore("dog", 0.1))


# ---------------------------------------------------------------------------
# AddFiles
# ---------------------------------------------------------------------------


class TestAddFiles:
    def test_accepts_supported_types_in_order(self) -> None:
        store, handles = _make_store()
        outcome = store.add_files(
            [
                _candidate("a.jpg"),
                _candidate("b.png", mime_type="image/png"),
                _candidate("c.webp", mime_type="image/webp"),
            ]
        )

        assert [f.name for f in store.files] == ["a.jpg", "b.png", "c.webp"]
        assert len(outcome.accepted) == 3
        assert store.classification_outputs == [None, None, None]
        assert all(f.status is FileStatus.PENDING for f in store.files)
        assert handles.live_count == 3
        _assert_parallel(store)

    def test_unsupported_type_dropped_silently(self) -> None:
        store, handles = _make_store()
        outcome = store.add_files([_candidate("doc.gif", mime_type="image/gif"), _candidate("a.jpg")])

        assert [f.name for f in store.files] == ["a.jpg"]
        assert outcome.unsupported == 1
        assert not store.oversize_notice.active
        assert handles.created_count == 1

    def test_duplicate_by_name_and_size_not_added(self) -> None:
        store, _ = _make_store()
        store.add_files([_candidate("a.jpg", size=100)])
        outcome = store.add_files([_candidate("a.jpg", size=100)])

        assert len(store) == 1
        assert outcome.duplicates == 1

    def test_same_name_different_size_is_new(self) -> None:
        store, _ = _make_store()
        store.add_files([_candidate("a.jpg", size=100)])
        store.add_files([_candidate("a.jpg", size=101)])
        assert len(store) == 2

    def test_duplicates_within_one_batch_added_once(self) -> None:
        store, _ = _make_store()
        store.add_files([_candidate("a.jpg"), _candidate("a.jpg")])
        assert len(store) == 1

    def test_exactly_limit_accepted(self) -> None:
        store, _ = _make_store()
        store.add_files([_candidate("edge.jpg", size=5 * MIB)])
        assert len(store) == 1
        assert not store.oversize_notice.active

    def test_one_byte_over_limit_rejected_and_notice_raised(self) -> None:
        store, handles = _make_store()
        outcome = store.add_files([_candidate("big.jpg", size=MAX_FILE_SIZE + 1)])

        assert len(store) == 0
        assert outcome.oversized == ("big.jpg",)
        assert store.oversize_notice.active
        assert handles.created_count == 0

    def test_empty_filtered_set_is_noop(self) -> None:
        store, handles = _make_store()
        store.add_files([_candidate("a.jpg")])
        before = store.snapshot

        outcome = store.add_files([_candidate("a.jpg"), _candidate("x.bmp", mime_type="image/bmp")])

        assert store.snapshot is before
        assert outcome.accepted == ()
        assert not outcome.changed
        assert handles.created_count == 1

    def test_mixed_batch_keeps_views_parallel(self) -> None:
        store, _ = _make_store()
        store.add_files([_candidate("a.jpg")])
        store.add_files(
            [
                _candidate("a.jpg"),
                _candidate("b.jpg", size=6 * MIB),
                _candidate("c.tiff", mime_type="image/tiff"),
                _candidate("d.png", mime_type="image/png"),
            ]
        )
        assert [f.name for f in store.files] == ["a.jpg", "d.png"]
        _assert_parallel(store)

    def test_clean_batch_clears_previous_notice(self) -> None:
        store, _ = _make_store()
        store.add_files([_candidate("big.jpg", size=6 * MIB)])
        assert store.oversize_notice.active

        store.add_files([_candidate("small.jpg")])
        assert not store.oversize_notice.active

    def test_ids_are_unique(self) -> None:
        store, _ = _make_store()
        store.add_files([_candidate(f"{i}.jpg") for i in range(10)])
        assert len({f.id for f in store.files}) == 10


# ---------------------------------------------------------------------------
# RemoveFile
# ---------------------------------------------------------------------------


class TestRemoveFile:
    def test_remove_at_shifts_left_and_releases_handle(self) -> None:
        store, handles = _make_store()
        store.add_files([_candidate("a.jpg"), _candidate("b.jpg"), _candidate("c.jpg")])
        before = store.files
        removed_url = before[1].display_url

        removed = store.remove_at(1)

        assert removed is before[1]
        assert removed.handle.released
        assert len(store) == 2
        assert store.files == [before[0], before[2]]
        assert removed_url not in store.image_urls
        assert handles.live_count == 2
        _assert_parallel(store)

    def test_remove_by_id(self) -> None:
        store, handles = _make_store()
        store.add_files([_candidate("a.jpg"), _candidate("b.jpg")])
        target = store.files[0]

        store.remove(target.id)

        assert [f.name for f in store.files] == ["b.jpg"]
        assert handles.resolve(target.handle.token) is None

    @pytest.mark.parametrize("index", [-1, 2, 99])
    def test_remove_at_out_of_range_raises(self, index: int) -> None:
        store, handles = _make_store()
        store.add_files([_candidate("a.jpg"), _candidate("b.jpg")])

        with pytest.raises(IndexError):
            store.remove_at(index)
        assert len(store) == 2
        assert handles.released_count == 0

    def test_remove_unknown_id_raises(self) -> None:
        store, _ = _make_store()
        with pytest.raises(KeyError, match="Unknown file"):
            store.remove("missing")

    def test_removed_file_can_be_added_again(self) -> None:
        store, _ = _make_store()
        store.add_files([_candidate("a.jpg")])
        store.remove_at(0)
        store.add_files([_candidate("a.jpg")])
        assert len(store) == 1


# ---------------------------------------------------------------------------
# SetClassificationResult
# ---------------------------------------------------------------------------


class TestSetClassificationResult:
    def test_result_written_by_id(self) -> None:
        store, _ = _make_store()
        store.add_files([_candidate("a.jpg"), _candidate("b.jpg")])
        target = store.files[1]

        assert store.set_result(target.id, RESULT) is True

        assert store.classification_outputs == [None, RESULT]
        assert store.get(target.id).status is FileStatus.CLASSIFIED

    def test_set_twice_is_idempotent(self) -> None:
        store, _ = _make_store()
        store.add_files([_candidate("a.jpg")])
        store.set_result_at(0, RESULT)
        once = store.snapshot

        store.set_result_at(0, RESULT)

        assert store.snapshot == once

    def test_last_write_wins(self) -> None:
        store, _ = _make_store()
        store.add_files([_candidate("a.jpg")])
        other = (LabelScore("bird", 0.7),)
        store.set_result_at(0, RESULT)
        store.set_result_at(0, other)
        assert store.classification_outputs == [other]

    def test_result_for_removed_file_is_dropped(self) -> None:
        store, _ = _make_store()
        store.add_files([_candidate("a.jpg"), _candidate("b.jpg")])
        first, second = store.files

        store.remove(first.id)

        assert store.set_result(first.id, RESULT) is False
        assert store.get(second.id).result is None

    def test_set_result_at_out_of_range_raises(self) -> None:
        store, _ = _make_store()
        with pytest.raises(IndexError):
            store.set_result_at(0, RESULT)

    def test_set_error_marks_failed(self) -> None:
        store, _ = _make_store()
        store.add_files([_candidate("a.jpg")])
        target = store.files[0]

        store.set_error(target.id, "quota exceeded")

        failed = store.get(target.id)
        assert failed.status is FileStatus.FAILED
        assert failed.error == "quota exceeded"
        assert store.pending() == []

    def test_reset_failed_makes_files_pending(self) -> None:
        store, _ = _make_store()
        store.add_files([_candidate("a.jpg"), _candidate("b.jpg")])
        store.set_error(store.files[0].id, "boom")
        store.set_result(store.files[1].id, RESULT)

        assert store.reset_failed() == 1
        assert [f.name for f in store.pending()] == ["a.jpg"]


# ---------------------------------------------------------------------------
# Completion and teardown
# ---------------------------------------------------------------------------


class TestLifecycle:
    def test_complete_only_when_nothing_pending(self) -> None:
        store, _ = _make_store()
        assert not store.is_complete

        store.add_files([_candidate("a.jpg"), _candidate("b.jpg")])
        store.set_result_at(0, RESULT)
        assert not store.is_complete

        store.set_error(store.files[1].id, "boom")
        assert store.is_complete

    def test_not_complete_while_run_in_flight(self) -> None:
        store, _ = _make_store()
        store.add_files([_candidate("a.jpg")])
        store.set_result_at(0, RESULT)

        store.begin_run()
        assert not store.is_complete
        store.end_run()
        assert store.is_complete

    def test_close_releases_every_handle_once(self) -> None:
        store, handles = _make_store()
        store.add_files([_candidate("a.jpg"), _candidate("b.jpg"), _candidate("c.jpg")])
        store.remove_at(0)

        store.close()
        store.close()

        assert handles.created_count == 3
        assert handles.released_count == 3
        assert handles.live_count == 0
        assert len(store) == 0

    def test_closed_store_rejects_mutation(self) -> None:
        store, _ = _make_store()
        store.close()
        with pytest.raises(RuntimeError, match="closed"):
            store.add_files([_candidate("a.jpg")])

    def test_closed_store_rejects_reset_failed(self) -> None:
        store, _ = _make_store()
        store.add_files([_candidate("a.jpg")])
        store.set_error(store.files[0].id, "boom")
        store.close()
        with pytest.raises(RuntimeError, match="closed"):
            store.reset_failed()

    def test_second_run_rejected_while_in_flight(self) -> None:
        store, _ = _make_store()
        store.begin_run()
        with pytest.raises(RunInProgressError):
            store.begin_run()
        store.end_run()
        store.begin_run()
        assert store.run_in_flight


class TestDisplayHandle:
    def test_double_release_raises(self) -> None:
        handles = HandleStore()
        handle = handles.create(b"data", "image/png")
        handle.release()
        with pytest.raises(RuntimeError, match="released twice"):
            handle.release()

    def test_resolve_live_handle(self) -> None:
        handles = HandleStore()
        handle = handles.create(b"data", "image/png")
        blob = handles.resolve(handle.token)
        assert blob is not None
        assert blob.data == b"data"
        assert blob.mime_type == "image/png"
        assert handle.url.endswith(handle.token)


class TestOversizeNotice:
    def test_clears_after_delay(self) -> None:
        clock = FakeClock()
        notice = OversizeNotice(delay=4.0, clock=clock)
        notice.raise_()

        clock.now = 103.5
        assert notice.active
        clock.now = 104.0
        assert not notice.active

    def test_end_to_end_jpeg_and_oversized_png(self) -> None:
        clock = FakeClock()
        store, _ = _make_store(clock)

        store.add_files(
            [
                _candidate("photo.jpg", size=2 * 1000 * 1000),
                _candidate("huge.png", size=6 * 1000 * 1000, mime_type="image/png"),
            ]
        )

        assert [f.name for f in store.files] == ["photo.jpg"]
        assert store.oversize_notice.active
        clock.now += 4.0
        assert not store.oversize_notice.active
