"""Tests for the generation result state machine and job immutability"""

import pytest

from gen_worker.pipeline.errors import InvalidTransitionError
from gen_worker.pipeline.models import (
    Capability,
    GenerationJob,
    GenerationMode,
    GenerationResult,
    GenerationStatus,
)


def result(status=GenerationStatus.PENDING):
    return GenerationResult(run_id="run-1", status=status)


class TestTransitions:
    def test_forward_path(self):
        r = result().transition(GenerationStatus.PROCESSING)
        r = r.transition(GenerationStatus.PROCESSING, attempts=2)
        r = r.transition(GenerationStatus.COMPLETED, output_url="https://out.example.com/a.png")
        assert r.status == GenerationStatus.COMPLETED
        assert r.attempts == 2
        assert r.is_terminal is True

    def test_pending_straight_to_terminal(self):
        for status in (GenerationStatus.COMPLETED, GenerationStatus.FAILED, GenerationStatus.TIMEOUT):
            assert result().transition(status).status == status

    @pytest.mark.parametrize("terminal", [
        GenerationStatus.COMPLETED,
        GenerationStatus.FAILED,
        GenerationStatus.TIMEOUT,
    ])
    def test_terminal_states_are_final(self, terminal):
        with pytest.raises(InvalidTransitionError):
            result(terminal).transition(GenerationStatus.PROCESSING)
        with pytest.raises(InvalidTransitionError):
            result(terminal).transition(GenerationStatus.COMPLETED)

    def test_no_going_back(self):
        with pytest.raises(InvalidTransitionError):
            result(GenerationStatus.PROCESSING).transition(GenerationStatus.PENDING)

    def test_transition_returns_copy(self):
        original = result()
        moved = original.transition(GenerationStatus.PROCESSING)
        assert original.status == GenerationStatus.PENDING
        assert moved is not original


class TestJob:
    def test_job_is_immutable(self):
        job = GenerationJob(
            run_id="run-1",
            capability=Capability.PRESET,
            mode=GenerationMode.I2I,
            preset_id="vivid_pop",
            prompt="x",
        )
        with pytest.raises(Exception):
            job.prompt = "y"
