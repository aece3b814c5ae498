"""Shared fakes for pipeline tests (camera, model session, UI pump)."""

from __future__ import annotations

import threading
import time
from pathlib import Path
from types import SimpleNamespace
from typing import Callable, Optional

import numpy as np
import pytest

from plusnot.core.contracts import Settings, SegmentationModel, model_spec
from plusnot.segmentation.segmentation_engine import SegmentationEngine


# ============================================================
# CAMERA
# ============================================================

class FakeFrameSource:
    """Scripted camera producing solid-color BGR frames."""

    def __init__(self, width: int = 320, height: int = 240, color=(10, 20, 30), open_ok: bool = True):
        self.width = width
        self.height = height
        self.color = color
        self.open_ok = open_ok
        self.error: Optional[str] = None
        self.frames_read = 0
        self.settings_requests = 0
        self.closed = False
        self._open = False

    def open(self, device_index: int = 0, width: int = 640, height: int = 480) -> bool:
        if not self.open_ok:
            self.error = f"Camera {device_index} busy or unavailable."
            return False
        self._open = True
        return True

    def read_frame(self, buffer=None):
        if not self._open:
            return (False, None)
        time.sleep(0.002)
        frame = np.empty((self.height, self.width, 3), dtype=np.uint8)
        frame[:] = self.color
        self.frames_read += 1
        return (True, frame)

    def request_native_settings_dialog(self):
        self.settings_requests += 1

    def close(self):
        self._open = False
        self.closed = True

    @property
    def is_open(self) -> bool:
        return self._open


# ============================================================
# MODEL SESSION
# ============================================================

class FakeSession:
    """
    ONNX-like session returning a constant foreground probability.

    Output is (1, 2, S, S) with both channels set, so flat and
    channel-indexed extraction read the same value.
    """

    def __init__(self, value: float = 1.0):
        self.value = value
        self.fail = False
        self.gate: Optional[threading.Event] = None
        self.entered = threading.Event()
        self.calls = 0
        self.failures = 0
        self.active = 0
        self.max_active = 0
        self._lock = threading.Lock()

    def get_inputs(self):
        return [SimpleNamespace(name="input")]

    def run(self, output_names, feeds):
        tensor = feeds["input"]
        size = tensor.shape[-1]
        with self._lock:
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        self.entered.set()
        try:
            if self.gate is not None:
                self.gate.wait(timeout=5.0)
            if self.fail:
                self.failures += 1
                raise RuntimeError("inference exploded")
            self.calls += 1
            return [np.full((1, 2, size, size), self.value, dtype=np.float32)]
        finally:
            with self._lock:
                self.active -= 1


@pytest.fixture
def fake_session() -> FakeSession:
    return FakeSession()


@pytest.fixture
def session_factory(fake_session):
    def factory(model_path: Path, threads: int):
        return fake_session
    return factory


@pytest.fixture
def models_dir(tmp_path) -> Path:
    """Directory holding (empty) assets for every model variant."""
    directory = tmp_path / "models"
    directory.mkdir()
    for variant in SegmentationModel:
        (directory / model_spec(variant).file_name).write_bytes(b"onnx")
    return directory


@pytest.fixture
def engine(models_dir, session_factory):
    settings = Settings(blur_size=0, diff_dilate=0)
    seg = SegmentationEngine(
        settings,
        models_dir=models_dir,
        session_factory=session_factory,
        join_timeout_s=1.0,
    )
    yield seg
    seg.dispose()


# ============================================================
# WAITING
# ============================================================

def _wait_until(predicate: Callable[[], bool], timeout: float = 5.0, pump=None) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if pump is not None:
            pump.process_pending()
        if predicate():
            return True
        time.sleep(0.002)
    return predicate()


@pytest.fixture
def wait_until():
    """wait_until(predicate, timeout=5.0, pump=dispatcher) -> bool"""
    return _wait_until


@pytest.fixture
def camera_factory():
    """camera_factory(**kwargs) -> FakeFrameSource"""
    return FakeFrameSource
