import cv2
import numpy as np
import pytest

from plusnot.core.contracts import DebugSnapshot
from plusnot.rendering.compositor import Compositor, ERROR_BACKGROUND


W, H = 80, 60
FG = (10, 20, 30)
BG = (200, 100, 50)


def _bgra(color=FG):
    frame = np.zeros((H, W, 4), dtype=np.uint8)
    frame[:, :, :3] = color
    return frame


@pytest.fixture
def compositor():
    comp = Compositor()
    background = np.zeros((30, 40, 3), dtype=np.uint8)
    background[:] = BG
    comp.set_background_image(background)
    return comp


def _compose(comp, mask, frame=None):
    comp.compose_offscreen(
        _bgra() if frame is None else frame, mask, None, W, H,
        hud_on=False, elapsed=0.0,
    )
    pixels, w, h = comp.get_latest_composited()
    assert (w, h) == (W, H)
    return pixels


class TestComposeOffscreen:

    def test_full_mask_shows_camera(self, compositor):
        pixels = _compose(compositor, np.full((H, W), 255, dtype=np.uint8))
        assert tuple(pixels[H // 2, W // 2]) == FG + (255,)

    def test_empty_mask_shows_background(self, compositor):
        pixels = _compose(compositor, np.zeros((H, W), dtype=np.uint8))
        assert tuple(pixels[H // 2, W // 2]) == BG + (255,)

    def test_partial_mask_blends(self, compositor):
        pixels = _compose(compositor, np.full((H, W), 128, dtype=np.uint8))
        a = 128 / 255.0
        expected = [int(f * a + b * (1 - a) + 0.5) for f, b in zip(FG, BG)]
        got = pixels[H // 2, W // 2, :3].astype(int)
        assert np.all(np.abs(got - expected) <= 1)

    def test_flat_mask_accepted(self, compositor):
        pixels = _compose(compositor, np.zeros(W * H, dtype=np.uint8))
        assert tuple(pixels[0, 0, :3]) == BG

    def test_stale_mask_ignored(self, compositor):
        pixels = _compose(compositor, np.zeros((H // 2, W // 2), dtype=np.uint8))
        assert tuple(pixels[H // 2, W // 2]) == FG + (255,)

    def test_no_background_draws_frame_opaque(self):
        comp = Compositor()
        pixels = _compose(comp, np.zeros((H, W), dtype=np.uint8))
        assert tuple(pixels[H // 2, W // 2]) == FG + (255,)

    def test_mask_written_into_frame_alpha(self, compositor):
        frame = _bgra()
        mask = np.full((H, W), 77, dtype=np.uint8)
        _compose(compositor, mask, frame)
        assert np.all(frame[:, :, 3] == 77)

    def test_bad_frame_shape_rejected(self, compositor):
        with pytest.raises(ValueError):
            compositor.compose_offscreen(
                np.zeros((H, W, 3), dtype=np.uint8), None, None, W, H, False, 0.0
            )

    def test_overlays_do_not_fail(self, compositor):
        waveform = np.sin(np.linspace(0, 6.28, 256)).astype(np.float32)
        compositor.compose_offscreen(
            _bgra(), None, waveform, W, H, hud_on=True, elapsed=75.5,
            seg_on=True, model_name="MediaPipe",
        )
        pixels, _, _ = compositor.get_latest_composited()
        assert np.all(pixels[:, :, 3] == 255)

    def test_debug_thumbnails_keep_frame_opaque(self, compositor):
        w, h = 640, 480
        frame = np.zeros((h, w, 4), dtype=np.uint8)
        mask = np.full((h, w), 255, dtype=np.uint8)
        ramp = np.tile(np.arange(256, dtype=np.uint8), (256, 1))
        snapshot = DebugSnapshot(
            raw_mask=ramp, post_mask=ramp, diff_mask=ramp, final_mask=mask,
            raw_size=(256, 256), final_size=(w, h),
        )

        compositor.compose_offscreen(
            frame, mask, None, w, h, hud_on=True, elapsed=3.0,
            model_name="MODNet", debug=snapshot,
        )

        pixels, _, _ = compositor.get_latest_composited()
        assert np.all(pixels[:, :, 3] == 255)
        assert np.any(pixels[:, w - 60, :3] != 0)


class TestSurfaces:

    def test_blit_copies_offscreen(self, compositor):
        _compose(compositor, np.zeros((H, W), dtype=np.uint8))
        surface = compositor.ensure_surface(W, H)
        assert compositor.blit_to_display_surface(surface, W, H)
        assert tuple(surface[5, 5, :3]) == BG

    def test_blit_size_mismatch_is_noop(self, compositor):
        _compose(compositor, None)
        surface = np.zeros((H + 1, W, 4), dtype=np.uint8)
        assert not compositor.blit_to_display_surface(surface, W, H)
        assert not compositor.blit_to_display_surface(surface, W, H + 1)
        assert surface.max() == 0

    def test_blit_before_compose(self):
        comp = Compositor()
        assert not comp.blit_to_display_surface(comp.ensure_surface(W, H), W, H)

    def test_surface_reused_until_resize(self, compositor):
        first = compositor.ensure_surface(W, H)
        assert compositor.ensure_surface(W, H) is first
        assert compositor.ensure_surface(W * 2, H) is not first

    def test_latest_composited_empty(self):
        assert Compositor().get_latest_composited() == (None, 0, 0)

    def test_error_frame(self, compositor):
        surface = compositor.ensure_surface(1280, 720)
        compositor.compose_error(surface, 1280, 720, "Camera 0 busy or unavailable.")
        assert tuple(surface[0, 0]) == ERROR_BACKGROUND
        assert np.any(surface != np.array(ERROR_BACKGROUND, dtype=np.uint8))


def test_background_file_missing(tmp_path):
    assert not Compositor().set_background(tmp_path / "missing.png")


def test_background_file_loaded(tmp_path):
    path = tmp_path / "bg.png"
    cv2.imwrite(str(path), np.full((10, 10, 3), 42, dtype=np.uint8))
    comp = Compositor()
    assert comp.set_background(path)
    assert comp.has_background
