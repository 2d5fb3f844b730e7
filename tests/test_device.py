from __future__ import annotations

from types import SimpleNamespace
from typing import Any

import numpy as np
import pytest

import promptdj.device as device_module
from promptdj.device import OutputPath, SoundDeviceOutput, VirtualOutput, open_default_device
from promptdj.errors import PlaybackError


def test_path_step_and_ramp_automation() -> None:
    path = OutputPath()
    path.set_value_at(0.5, 1.0)
    path.linear_ramp_to(0.0, 2.0)

    assert path.gain_at(0.5) == pytest.approx(1.0)
    assert path.gain_at(1.0) == pytest.approx(0.5)
    assert path.gain_at(1.5) == pytest.approx(0.25)
    assert path.gain_at(3.0) == pytest.approx(0.0)


def test_virtual_output_mixes_scheduled_buffers() -> None:
    device = VirtualOutput(sample_rate=100)
    path = device.create_path()
    device.schedule(np.full((50, 2), 0.2, dtype=np.float32), start_time=0.25, path=path)
    device.schedule(np.full((50, 2), 0.3, dtype=np.float32), start_time=0.5, path=path)

    block = device.advance(1.0)

    assert np.allclose(block[:25], 0.0)
    assert np.allclose(block[25:50], 0.2)
    assert np.allclose(block[50:75], 0.5)
    assert np.allclose(block[75:100], 0.3)
    assert device.current_time == pytest.approx(1.0)
    assert len(device.history) == 2


@pytest.mark.asyncio
async def test_virtual_output_resume_and_close() -> None:
    device = VirtualOutput()
    assert device.suspended

    await device.resume()
    device.close()

    assert not device.suspended
    assert device.closed


class _FakeStream:
    def __init__(self, **kwargs: Any) -> None:
        self.kwargs = kwargs
        self.active = False
        self.closed = False

    def start(self) -> None:
        self.active = True

    def stop(self) -> None:
        self.active = False

    def close(self) -> None:
        self.closed = True


@pytest.mark.asyncio
async def test_sounddevice_callback_advances_clock() -> None:
    created: list[_FakeStream] = []

    def _factory(**kwargs: Any) -> _FakeStream:
        stream = _FakeStream(**kwargs)
        created.append(stream)
        return stream

    fake_sd = SimpleNamespace(OutputStream=_factory)
    output = SoundDeviceOutput(fake_sd, sample_rate=100, blocksize=10)
    await output.resume()
    path = output.create_path()
    output.schedule(np.full((10, 2), 0.4, dtype=np.float32), start_time=0.0, path=path)

    outdata = np.zeros((10, 2), dtype=np.float32)
    created[0].kwargs["callback"](outdata, 10, None, None)

    assert created[0].active
    assert not output.suspended
    assert np.allclose(outdata, 0.4)
    assert output.current_time == pytest.approx(0.1)
    output.close()
    assert created[0].closed


def test_open_default_device_requires_sounddevice(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(device_module, "_load_sounddevice", lambda: None)

    with pytest.raises(PlaybackError):
        open_default_device()

