"""Tests for the streaming text to ordered speech pipeline."""

import asyncio
from pathlib import Path
from typing import Dict, List
from unittest.mock import AsyncMock

import pytest

from helpers import FakeDevice, FakeSpawner, make_wav, wait_until
from voicebot.config import Settings, SynthesisFailurePolicy, TtsMode
from voicebot.errors import AudioDeviceError, AudioMergeError
from voicebot.services.audio_device import AudioDevice
from voicebot.services.tts import PlaybackState, SpeechArtifact, StreamResponder


class ScriptedSynthesizer:
    """Returns one mp3 artifact per text; gates and failures can be scripted."""

    def __init__(self) -> None:
        self.calls: List[str] = []
        self.gates: Dict[str, asyncio.Event] = {}
        self.failures: Dict[str, int] = {}
        self.results: Dict[str, SpeechArtifact] = {}

    async def __call__(self, text: str) -> SpeechArtifact:
        self.calls.append(text)
        gate = self.gates.get(text)
        if gate is not None:
            await gate.wait()
        if self.failures.get(text, 0) > 0:
            self.failures[text] -= 1
            raise RuntimeError(f"synthesis failed for {text}")
        if text in self.results:
            return self.results[text]
        return SpeechArtifact(data=text.encode(), duration_ms=1000, audio_format="mp3")


@pytest.fixture
def synth():
    return ScriptedSynthesizer()


@pytest.fixture
def device():
    return FakeDevice()


async def _finish(responder: StreamResponder) -> None:
    await asyncio.wait_for(responder.wait_for_playback_end(), timeout=1.0)


@pytest.mark.asyncio
async def test_single_shot_speaks_whole_turn_once(synth, device):
    sentences: List[List[str]] = []
    texts: List[str] = []
    responder = StreamResponder(
        synth, device, on_sentences=sentences.append, on_text=texts.append
    )

    responder.on_partial_text("Hello wor")
    assert sentences == []
    responder.on_partial_text("ld. How are you?")
    assert sentences == [["Hello world."]]
    assert synth.calls == []

    responder.on_turn_end()
    await _finish(responder)

    assert sentences == [["Hello world."], ["How are you?"]]
    assert texts == ["Hello world. How are you?"]
    assert synth.calls == ["Hello world. How are you?"]
    assert len(device.played) == 1
    assert device.played[0].duration_ms == 1000
    assert device.timeouts == [1000 + 15000]
    assert responder.state is PlaybackState.IDLE


@pytest.mark.asyncio
async def test_incremental_dispatches_each_sentence_and_merges_files(synth, device, tmp_path):
    for index, sentence in enumerate(["One.", "Two.", "Three."]):
        synth.results[sentence] = SpeechArtifact(
            file_path=tmp_path / f"{index}.wav", duration_ms=1000
        )
    merge = AsyncMock(side_effect=lambda paths, output: output)
    responder = StreamResponder(
        synth, device, mode=TtsMode.INCREMENTAL, merge=merge, merge_output_dir=tmp_path
    )

    responder.on_partial_text("One. Two. ")
    await asyncio.sleep(0)
    assert synth.calls == ["One.", "Two."]

    responder.on_partial_text("Three.")
    responder.on_turn_end()
    await _finish(responder)

    paths, output = merge.call_args.args
    assert paths == [tmp_path / "0.wav", tmp_path / "1.wav", tmp_path / "2.wav"]
    assert output.parent == tmp_path
    assert output.name.startswith("merged_") and output.suffix == ".wav"

    assert len(device.played) == 1
    assert device.played[0].file_path == output
    assert device.played[0].duration_ms == 3000
    assert device.timeouts == [3000 + 5000]


@pytest.mark.asyncio
async def test_incremental_plays_in_sentence_order_regardless_of_completion(synth, device):
    sentences = ["First.", "Second.", "Third."]
    for sentence in sentences:
        synth.gates[sentence] = asyncio.Event()
    responder = StreamResponder(synth, device, mode=TtsMode.INCREMENTAL)

    responder.on_partial_text(" ".join(sentences))
    responder.on_turn_end()
    await wait_until(lambda: len(synth.calls) == 3)

    for sentence in reversed(sentences):
        synth.gates[sentence].set()
        await asyncio.sleep(0.01)

    await _finish(responder)
    assert [a.audio_bytes() for a in device.played] == [b"First.Second.Third."]


@pytest.mark.asyncio
async def test_failed_synthesis_is_skipped(synth, device):
    synth.failures["Two."] = 1
    responder = StreamResponder(synth, device, mode=TtsMode.INCREMENTAL)

    responder.on_partial_text("One. Two. Three.")
    responder.on_turn_end()
    await _finish(responder)

    assert synth.calls == ["One.", "Two.", "Three."]
    assert [a.audio_bytes() for a in device.played] == [b"One.Three."]


@pytest.mark.asyncio
async def test_retry_once_policy_retries_failed_synthesis(synth, device):
    synth.failures["Hello there."] = 1
    responder = StreamResponder(
        synth, device, failure_policy=SynthesisFailurePolicy.RETRY_ONCE
    )

    responder.on_partial_text("Hello there.")
    responder.on_turn_end()
    await _finish(responder)

    assert synth.calls == ["Hello there.", "Hello there."]
    assert len(device.played) == 1


@pytest.mark.asyncio
async def test_empty_artifacts_are_not_played(synth, device):
    synth.results["Quiet."] = SpeechArtifact.empty()
    synth.failures["Broken."] = 1
    responder = StreamResponder(synth, device, mode=TtsMode.INCREMENTAL)

    responder.on_partial_text("Quiet. Broken.")
    responder.on_turn_end()
    await _finish(responder)

    assert device.played == []
    assert responder.state is PlaybackState.IDLE


@pytest.mark.asyncio
async def test_wait_resolves_immediately_when_idle(synth, device):
    responder = StreamResponder(synth, device)
    waiter = responder.wait_for_playback_end()
    assert waiter.done()


@pytest.mark.asyncio
async def test_turn_end_without_text_releases_waiters(synth, device):
    texts: List[str] = []
    responder = StreamResponder(synth, device, on_text=texts.append)
    responder.on_turn_end()
    await _finish(responder)
    assert synth.calls == []
    assert texts == [""]


@pytest.mark.asyncio
async def test_all_waiters_released_together(synth, device):
    device.gate = asyncio.Event()
    responder = StreamResponder(synth, device)

    responder.on_partial_text("Good morning.")
    responder.on_turn_end()
    first = responder.wait_for_playback_end()
    second = responder.wait_for_playback_end()

    await wait_until(lambda: len(device.played) == 1)
    assert not first.done() and not second.done()
    assert responder.state is PlaybackState.PLAYING

    device.gate.set()
    await asyncio.wait_for(asyncio.gather(first, second), timeout=1.0)


@pytest.mark.asyncio
async def test_wait_covers_open_turn(synth, device):
    responder = StreamResponder(synth, device, mode=TtsMode.INCREMENTAL)
    responder.on_partial_text("Still talking")

    waiter = responder.wait_for_playback_end()
    await asyncio.sleep(0.01)
    assert not waiter.done()

    responder.on_turn_end()
    await asyncio.wait_for(waiter, timeout=1.0)
    assert synth.calls == ["Still talking"]


@pytest.mark.asyncio
async def test_stop_when_idle_is_harmless(synth, device):
    responder = StreamResponder(synth, device)
    responder.stop()
    responder.stop()

    assert device.stop_calls == 2
    assert responder.wait_for_playback_end().done()


@pytest.mark.asyncio
async def test_stop_during_playback_releases_waiters(synth, device):
    device.gate = asyncio.Event()
    responder = StreamResponder(synth, device)

    responder.on_partial_text("A long answer.")
    responder.on_turn_end()
    waiter = responder.wait_for_playback_end()
    await wait_until(lambda: len(device.played) == 1)

    responder.stop()
    await asyncio.wait_for(waiter, timeout=1.0)
    assert device.stop_calls == 1
    assert responder.state is PlaybackState.IDLE

    # The next turn plays normally
    responder.on_partial_text("Next one.")
    responder.on_turn_end()
    await _finish(responder)
    assert len(device.played) == 2


@pytest.mark.asyncio
async def test_stop_during_synthesis_drops_the_turn(synth, device):
    synth.gates["One."] = asyncio.Event()
    responder = StreamResponder(synth, device, mode=TtsMode.INCREMENTAL)

    responder.on_partial_text("One. ")
    waiter = responder.wait_for_playback_end()
    await wait_until(lambda: synth.calls == ["One."])

    responder.stop()
    await asyncio.wait_for(waiter, timeout=1.0)

    synth.gates["One."].set()
    await asyncio.sleep(0.02)
    assert device.played == []


@pytest.mark.asyncio
async def test_stop_drops_queued_turns(synth, device):
    device.gate = asyncio.Event()
    responder = StreamResponder(synth, device)

    responder.on_partial_text("First turn.")
    responder.on_turn_end()
    await wait_until(lambda: len(device.played) == 1)
    responder.on_partial_text("Second turn.")
    responder.on_turn_end()
    assert responder.pending_turns == 1

    responder.stop()
    assert responder.pending_turns == 0
    await asyncio.sleep(0.02)
    assert len(device.played) == 1


@pytest.mark.asyncio
async def test_turn_ending_during_playback_is_queued(synth, device):
    device.gate = asyncio.Event()
    responder = StreamResponder(synth, device)

    responder.on_partial_text("First turn.")
    responder.on_turn_end()
    await wait_until(lambda: len(device.played) == 1)

    responder.on_partial_text("Second turn.")
    responder.on_turn_end()
    waiter = responder.wait_for_playback_end()
    assert responder.pending_turns == 1

    device.gate.set()
    await asyncio.wait_for(waiter, timeout=1.0)
    assert [a.audio_bytes() for a in device.played] == [b"First turn.", b"Second turn."]


@pytest.mark.asyncio
async def test_merge_failure_skips_playback(synth, device, tmp_path):
    synth.results["One."] = SpeechArtifact(file_path=tmp_path / "1.wav", duration_ms=500)
    synth.results["Two."] = SpeechArtifact(file_path=tmp_path / "2.wav", duration_ms=500)
    merge = AsyncMock(side_effect=AudioMergeError("sox missing"))
    responder = StreamResponder(synth, device, mode=TtsMode.INCREMENTAL, merge=merge)

    responder.on_partial_text("One. Two.")
    responder.on_turn_end()
    await _finish(responder)

    merge.assert_awaited_once()
    assert device.played == []


@pytest.mark.asyncio
async def test_device_error_does_not_block_later_turns(synth, device):
    device.error = AudioDeviceError("exit code 1", returncode=1)
    responder = StreamResponder(synth, device)

    responder.on_partial_text("Broken speaker.")
    responder.on_turn_end()
    await _finish(responder)
    assert responder.state is PlaybackState.IDLE

    device.error = None
    responder.on_partial_text("Fixed now.")
    responder.on_turn_end()
    await _finish(responder)
    assert len(device.played) == 2


@pytest.mark.asyncio
async def test_missing_duration_is_probed(synth, device):
    synth.results["Measure me."] = SpeechArtifact(data=make_wav(1000), audio_format="wav")
    responder = StreamResponder(synth, device, mode=TtsMode.INCREMENTAL)

    responder.on_partial_text("Measure me.")
    responder.on_turn_end()
    await _finish(responder)

    assert device.played[0].duration_ms == pytest.approx(1000)
    assert device.timeouts[0] == pytest.approx(1000 + 5000)


@pytest.mark.asyncio
async def test_hung_player_released_by_fallback_timer(synth, tmp_path):
    spawner = FakeSpawner()
    spawner.ignore_signals = True
    device = AudioDevice(player_grace_ms=0, spawner=spawner)
    synth.results["Hang."] = SpeechArtifact(file_path=tmp_path / "hang.wav", duration_ms=50)
    responder = StreamResponder(synth, device, safety_margin_ms=50)

    responder.on_partial_text("Hang.")
    responder.on_turn_end()
    await _finish(responder)

    assert len(spawner.processes) == 1
    assert responder.state is PlaybackState.IDLE


@pytest.mark.asyncio
async def test_each_sentence_reported_once(synth, device):
    reported: List[str] = []
    responder = StreamResponder(synth, device, on_sentences=reported.extend)

    for char in "A. B! C? D":
        responder.on_partial_text(char)
    responder.on_turn_end()
    await _finish(responder)

    assert reported == ["A.", "B!", "C?", "D"]


@pytest.mark.asyncio
async def test_text_is_purified_before_synthesis(synth, device):
    texts: List[str] = []
    responder = StreamResponder(synth, device, on_text=texts.append)

    responder.on_partial_text("**Hi** there 🎉.")
    responder.on_turn_end()
    await _finish(responder)

    assert texts == ["**Hi** there 🎉."]
    assert synth.calls == ["Hi there."]


@pytest.mark.asyncio
async def test_unspeakable_text_is_not_synthesized(synth, device):
    responder = StreamResponder(synth, device)

    responder.on_partial_text("🎉🎉")
    responder.on_turn_end()
    await _finish(responder)

    assert synth.calls == []
    assert device.played == []


@pytest.mark.asyncio
async def test_failing_observer_does_not_break_playback(synth, device):
    def explode(_sentences):
        raise ValueError("observer bug")

    responder = StreamResponder(synth, device, on_sentences=explode)
    responder.on_partial_text("Still spoken.")
    responder.on_turn_end()
    await _finish(responder)

    assert len(device.played) == 1


@pytest.mark.asyncio
async def test_from_settings_uses_configured_mode_and_margin(synth, device):
    settings = Settings(
        _env_file=None,
        keep_tts_files=True,
        tts_mode="incremental",
        incremental_safety_margin_ms=1234,
        synthesis_failure_policy="retry_once",
    )
    responder = StreamResponder.from_settings(settings, synth, device)

    assert responder.mode is TtsMode.INCREMENTAL
    assert responder.safety_margin_ms == 1234
    assert responder.failure_policy is SynthesisFailurePolicy.RETRY_ONCE
    assert responder.delete_played_files is False


@pytest.mark.asyncio
async def test_incremental_turn_holds_device_for_whole_utterance(synth, tmp_path):
    spawner = FakeSpawner()
    device = AudioDevice(record_settle_seconds=0, spawner=spawner)
    responder = StreamResponder(synth, device, mode=TtsMode.INCREMENTAL)

    responder.on_partial_text("Hello world. How are you?")
    responder.on_turn_end()
    await wait_until(lambda: spawner.processes and spawner.processes[0].stdin.closed)
    decoder = spawner.processes[0]
    assert decoder.argv[0] == "mpg123"
    assert bytes(decoder.stdin.buffer) == b"Hello world.How are you?"

    # A capture requested mid-utterance waits for the whole turn
    recording = asyncio.create_task(device.record(tmp_path / "user.wav"))
    await asyncio.sleep(0.02)
    assert len(spawner.processes) == 1

    decoder.exit(0)
    await _finish(responder)
    await wait_until(lambda: len(spawner.processes) == 2)
    assert [p.argv[0] for p in spawner.processes] == ["mpg123", "sox"]

    spawner.processes[1].exit(0)
    await recording


@pytest.mark.asyncio
async def test_incremental_wav_bytes_merge_through_part_files(synth, device, tmp_path):
    for sentence in ["One.", "Two."]:
        synth.results[sentence] = SpeechArtifact(
            data=make_wav(500), duration_ms=500, audio_format="wav"
        )
    merged_inputs: List[bytes] = []

    async def merge(paths, output):
        merged_inputs.extend(Path(p).read_bytes() for p in paths)
        output.write_bytes(b"merged")
        return output

    responder = StreamResponder(
        synth, device, mode=TtsMode.INCREMENTAL, merge=merge, merge_output_dir=tmp_path
    )
    responder.on_partial_text("One. Two.")
    responder.on_turn_end()
    await _finish(responder)

    assert merged_inputs == [make_wav(500), make_wav(500)]
    assert len(device.played) == 1
    assert device.played[0].file_path.name.startswith("merged_")
    assert device.played[0].duration_ms == 1000
    assert list(tmp_path.iterdir()) == []


def _file_results(synth, directory, sentences):
    directory.mkdir(exist_ok=True)
    paths = []
    for index, sentence in enumerate(sentences):
        path = directory / f"tts_{index}.wav"
        path.write_bytes(make_wav(200))
        synth.results[sentence] = SpeechArtifact(file_path=path, duration_ms=200)
        paths.append(path)
    return paths


async def _write_merged(paths, output):
    output.write_bytes(b"merged")
    return output


@pytest.mark.asyncio
async def test_played_audio_files_are_deleted(synth, device, tmp_path):
    out = tmp_path / "tts"
    _file_results(synth, out, ["One.", "Two."])
    responder = StreamResponder(
        synth, device, mode=TtsMode.INCREMENTAL, merge=_write_merged, merge_output_dir=out
    )

    responder.on_partial_text("One. Two.")
    responder.on_turn_end()
    await _finish(responder)

    assert device.played[0].file_path.parent == out
    assert list(out.iterdir()) == []


@pytest.mark.asyncio
async def test_single_file_artifact_deleted_after_playback(synth, device, tmp_path):
    (path,) = _file_results(synth, tmp_path / "tts", ["Only one."])
    responder = StreamResponder(synth, device)

    responder.on_partial_text("Only one.")
    responder.on_turn_end()
    await _finish(responder)

    assert device.played[0].file_path == path
    assert not path.exists()


@pytest.mark.asyncio
async def test_audio_files_kept_when_configured(synth, device, tmp_path):
    out = tmp_path / "tts"
    parts = _file_results(synth, out, ["One.", "Two."])
    responder = StreamResponder(
        synth,
        device,
        mode=TtsMode.INCREMENTAL,
        merge=_write_merged,
        merge_output_dir=out,
        delete_played_files=False,
    )

    responder.on_partial_text("One. Two.")
    responder.on_turn_end()
    await _finish(responder)

    assert all(path.exists() for path in parts)
    assert device.played[0].file_path.exists()
