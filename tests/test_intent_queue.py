"""Tests for the intent queue and source readiness gate"""

import threading

import pytest
from pydantic import TypeAdapter, ValidationError

from gen_worker.pipeline.intent_queue import IntentQueue, is_ready
from gen_worker.pipeline.models import Intent, PresetIntent, RestoreIntent, StoryIntent, TimeMachineIntent


class TestReadiness:
    @pytest.mark.parametrize("url", [
        "https://cdn.example.com/x.jpg",
        "https://storage.example.com/uploads/a%20b.mp4",
    ])
    def test_secure_urls_are_ready(self, url):
        assert is_ready(url) is True

    @pytest.mark.parametrize("url", [
        None,
        "",
        "blob:abc",
        "data:image/png;base64,AAAA",
        "file:///tmp/x.jpg",
        "http://cdn.example.com/x.jpg",
        "/local/preview.jpg",
    ])
    def test_non_durable_references_are_not(self, url):
        assert is_ready(url) is False


class TestIntentSlot:
    def test_second_intent_overwrites_first(self):
        queue = IntentQueue()
        queue.set_intent(PresetIntent(preset_id="vivid_pop"))
        queue.set_intent(StoryIntent(theme="four_seasons"))
        assert queue.pending_intent == StoryIntent(theme="four_seasons")

    def test_clear_intent(self):
        queue = IntentQueue()
        queue.set_intent(PresetIntent(preset_id="vivid_pop"))
        assert queue.clear_intent() is True
        assert queue.pending_intent is None
        assert queue.clear_intent() is False

    def test_clear_expected_keeps_newer_intent(self):
        queue = IntentQueue()
        first = PresetIntent(preset_id="vivid_pop")
        queue.set_intent(first)
        newer = TimeMachineIntent(option_key="1980s_neon")
        queue.set_intent(newer)

        assert queue.clear_intent(expected=first) is False
        assert queue.pending_intent is newer
        assert queue.clear_intent(expected=newer) is True


class TestIntentParsing:
    def test_discriminated_by_kind(self):
        adapter = TypeAdapter(Intent)
        assert isinstance(adapter.validate_python({"kind": "restore", "option_key": "fix_colors"}), RestoreIntent)
        assert isinstance(adapter.validate_python({"kind": "story", "theme": "auto"}), StoryIntent)

    def test_unknown_kind_rejected(self):
        with pytest.raises(ValidationError):
            TypeAdapter(Intent).validate_python({"kind": "teleport", "preset_id": "x"})


class TestBusyFlag:
    def test_acquire_is_exclusive(self):
        queue = IntentQueue()
        assert queue.try_acquire_busy() is True
        assert queue.try_acquire_busy() is False
        assert queue.generating is True
        queue.release_busy()
        assert queue.generating is False
        assert queue.try_acquire_busy() is True

    def test_acquire_across_threads(self):
        queue = IntentQueue()
        wins = []
        barrier = threading.Barrier(8)

        def grab():
            barrier.wait()
            wins.append(queue.try_acquire_busy())

        threads = [threading.Thread(target=grab) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert wins.count(True) == 1


class TestObservers:
    def test_observers_see_changes(self):
        queue = IntentQueue()
        seen = []
        unsubscribe = queue.subscribe(seen.append)

        queue.set_source_url("blob:abc")
        queue.set_uploading(True)
        queue.set_source_url("https://cdn.example.com/x.jpg")

        assert [s.source_ready for s in seen] == [False, False, True]
        assert seen[1].uploading is True

        unsubscribe()
        queue.set_uploading(False)
        assert len(seen) == 3

    def test_failing_observer_does_not_break_queue(self):
        queue = IntentQueue()

        def broken(_):
            raise RuntimeError("ui gone")

        queue.subscribe(broken)
        queue.set_intent(PresetIntent(preset_id="vivid_pop"))
        assert queue.pending_intent is not None
