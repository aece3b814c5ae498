import cv2
import numpy as np
import pytest

from plusnot.config import PipelineConfig
from plusnot.core.contracts import SegmentationModel
from plusnot.pipeline import FramePipeline, UIDispatcher, DisplayTarget
from plusnot.segmentation.mask_processor import temporal_smooth
from plusnot.segmentation.segmentation_engine import SegmentationEngine


FG = (10, 20, 30)
BG = (200, 100, 50)
W, H = 320, 240


@pytest.fixture
def make_pipeline(models_dir, session_factory, camera_factory):
    created = []

    def make(camera=None, models=None, **overrides):
        models = models_dir if models is None else models
        config = PipelineConfig(
            models_dir=str(models),
            background_image=None,
            hud_enabled=False,
            reference_frames=3,
            join_timeout_s=1.0,
        )
        config.settings.blur_size = 0
        config.settings.diff_dilate = 0
        for key, value in overrides.items():
            setattr(config, key, value)

        camera = camera or camera_factory(W, H, FG)
        segmenter = SegmentationEngine(
            config.settings,
            models_dir=models,
            session_factory=session_factory,
            join_timeout_s=1.0,
        )
        dispatcher = UIDispatcher()
        pipeline = FramePipeline(dispatcher, config, frame_source=camera, segmenter=segmenter)
        created.append(pipeline)
        return pipeline, dispatcher, camera

    yield make

    for pipeline in created:
        pipeline.dispose()


@pytest.fixture
def background_file(tmp_path):
    path = tmp_path / "bg.png"
    image = np.zeros((60, 80, 3), dtype=np.uint8)
    image[:] = BG
    cv2.imwrite(str(path), image)
    return path


def _center(pipeline):
    pixels, w, h = pipeline.get_latest_composited()
    if pixels is None:
        return None
    return tuple(int(v) for v in pixels[h // 2, w // 2, :3])


def _close_to(pixel, color, tol=2):
    return pixel is not None and all(abs(p - c) <= tol for p, c in zip(pixel, color))


class TestLifecycle:

    def test_camera_failure_shows_error_frame(self, make_pipeline, camera_factory):
        pipeline, dispatcher, _ = make_pipeline(camera=camera_factory(open_ok=False))
        target = DisplayTarget()

        error = pipeline.start(target)

        assert error == "Camera 0 busy or unavailable."
        dispatcher.process_pending()
        assert target.source.shape == (720, 1280, 4)
        assert not pipeline.camera_available
        assert pipeline.frames_rendered == 0

    def test_renders_frames(self, make_pipeline, wait_until):
        pipeline, dispatcher, _ = make_pipeline()
        target = DisplayTarget()

        assert pipeline.start(target) is None
        assert wait_until(lambda: target.presented_frames >= 3, pump=dispatcher)

        assert target.source.shape == (H, W, 4)
        assert (pipeline.frame_width, pipeline.frame_height) == (W, H)
        assert pipeline.camera_available

    def test_at_most_one_frame_in_flight(self, make_pipeline, wait_until):
        pipeline, dispatcher, _ = make_pipeline()
        pipeline.start(DisplayTarget())

        # UI thread never pumps: every later frame is skipped
        assert wait_until(lambda: pipeline.frames_skipped >= 5)
        assert pipeline.frames_rendered == 1
        assert pipeline.pending_frames == 1
        assert dispatcher.pending == 1

        dispatcher.process_pending()
        assert pipeline.pending_frames == 0

    def test_stop_joins_all_threads(self, make_pipeline, wait_until):
        pipeline, dispatcher, _ = make_pipeline()
        target = DisplayTarget()
        pipeline.start(target)
        assert wait_until(lambda: target.presented_frames >= 1, pump=dispatcher)

        assert pipeline.stop() == []
        assert not pipeline.is_running

    def test_dispose_releases_camera(self, make_pipeline):
        pipeline, _, camera = make_pipeline()
        pipeline.start(DisplayTarget())
        pipeline.dispose()
        assert camera.closed

    def test_open_camera_settings(self, make_pipeline):
        pipeline, _, camera = make_pipeline()
        pipeline.open_camera_settings()
        assert camera.settings_requests == 1


class TestModels:

    def test_falls_back_through_priority(self, make_pipeline, tmp_path):
        models = tmp_path / "only_sinet"
        models.mkdir()
        (models / "sinet.onnx").write_bytes(b"onnx")
        pipeline, _, _ = make_pipeline(models=models)

        pipeline.start(DisplayTarget())

        assert pipeline.active_model is SegmentationModel.SINET
        assert pipeline.segmentation_enabled

    def test_no_model_disables_segmentation(self, make_pipeline, tmp_path, wait_until):
        models = tmp_path / "empty"
        models.mkdir()
        pipeline, dispatcher, _ = make_pipeline(models=models)
        target = DisplayTarget()

        assert pipeline.start(target) is None
        assert not pipeline.segmentation_enabled
        assert wait_until(lambda: target.presented_frames >= 2, pump=dispatcher)

    def test_set_model(self, make_pipeline):
        pipeline, _, _ = make_pipeline()
        pipeline.start(DisplayTarget())
        assert pipeline.set_model(SegmentationModel.MODNET)
        assert pipeline.active_model is SegmentationModel.MODNET


class TestCompositing:

    def test_person_over_background(self, make_pipeline, background_file, wait_until):
        pipeline, dispatcher, _ = make_pipeline()
        assert pipeline.set_background_image(background_file)
        pipeline.start(DisplayTarget())

        assert wait_until(lambda: _close_to(_center(pipeline), FG), pump=dispatcher)

    def test_empty_mask_shows_background(self, make_pipeline, background_file, fake_session, wait_until):
        fake_session.value = 0.0
        pipeline, dispatcher, _ = make_pipeline()
        pipeline.set_background_image(background_file)
        pipeline.start(DisplayTarget())

        assert wait_until(lambda: _center(pipeline) == BG, pump=dispatcher)

    def test_segmentation_off_shows_camera(self, make_pipeline, background_file, fake_session, wait_until):
        fake_session.value = 0.0
        pipeline, dispatcher, _ = make_pipeline()
        pipeline.set_background_image(background_file)
        pipeline.segmentation_enabled = False
        target = DisplayTarget()
        pipeline.start(target)

        assert wait_until(lambda: target.presented_frames >= 3, pump=dispatcher)
        assert _center(pipeline) == FG

    def test_manual_mask_overrides(self, make_pipeline, background_file, wait_until):
        pipeline, dispatcher, _ = make_pipeline()
        pipeline.set_background_image(background_file)
        pipeline.set_manual_mask(np.full(W * H, 2, dtype=np.uint8))
        pipeline.start(DisplayTarget())

        assert wait_until(lambda: _center(pipeline) == BG, pump=dispatcher)

        pipeline.clear_manual_mask()
        assert wait_until(lambda: _close_to(_center(pipeline), FG), pump=dispatcher)

    def test_manual_mask_rejects_unknown_codes(self, make_pipeline):
        pipeline, _, _ = make_pipeline()
        with pytest.raises(ValueError):
            pipeline.set_manual_mask(np.full(W * H, 3, dtype=np.uint8))

    def test_debug_masks(self, make_pipeline, wait_until):
        pipeline, dispatcher, _ = make_pipeline()
        pipeline.settings.debug_enabled = True
        pipeline.start(DisplayTarget())

        assert wait_until(lambda: pipeline.get_debug_masks()[3] == 256, pump=dispatcher)
        raw, post, diff, size = pipeline.get_debug_masks()
        assert raw.shape == (256, 256)
        assert diff is None


class TestReferenceCapture:

    def test_background_capture(self, make_pipeline, wait_until):
        pipeline, dispatcher, _ = make_pipeline()
        statuses = []
        pipeline.start(DisplayTarget())

        pipeline.capture_background_reference(statuses.append)

        assert wait_until(
            lambda: "Background captured!" in statuses and pipeline.has_reference_background,
            pump=dispatcher,
        )
        assert statuses == ["Capturing... 1/3", "Capturing... 2/3", "Background captured!"]
        reference = pipeline.get_reference_background()
        assert reference.shape == (H, W, 3)
        assert np.all(reference == np.array(FG, dtype=np.uint8))
        assert pipeline.set_background_from_reference()

    def test_silhouette_from_references(self, make_pipeline, wait_until):
        pipeline, dispatcher, camera = make_pipeline()
        pipeline.start(DisplayTarget())

        pipeline.capture_background_reference()
        assert wait_until(lambda: pipeline.has_reference_background, pump=dispatcher)

        camera.color = (60, 70, 80)
        seen = camera.frames_read
        assert wait_until(lambda: camera.frames_read >= seen + 2, pump=dispatcher)

        pipeline.capture_human_reference()
        assert wait_until(lambda: pipeline.has_human_reference, pump=dispatcher)

        silhouette, w, h = pipeline.get_silhouette_mask()
        assert (w, h) == (W, H)
        assert np.all(silhouette == 50)
        assert pipeline.compute_auto_threshold() == 50

        pipeline.clear_reference_background()
        assert not pipeline.has_reference_background
        assert pipeline.get_silhouette_mask() == (None, 0, 0)

    def test_analysis_fallbacks(self, make_pipeline, tmp_path):
        models = tmp_path / "empty"
        models.mkdir()
        pipeline, _, _ = make_pipeline(models=models)

        assert pipeline.get_silhouette_mask() == (None, 0, 0)
        assert pipeline.compute_auto_threshold() == pipeline.settings.diff_threshold
        assert pipeline.evaluate_silhouette_quality() == (0, "poor")
        assert not pipeline.set_background_from_reference()
        assert pipeline.get_human_reference() is None


class TestMaskSmoothing:

    def test_same_array_is_not_blended_twice(self, make_pipeline):
        pipeline, _, _ = make_pipeline()
        first = np.full((H, W), 200, dtype=np.uint8)

        out = pipeline._smooth_mask(first, W, H)
        assert np.array_equal(out, first)

        assert pipeline._smooth_mask(first, W, H) is out

    def test_new_array_with_equal_values_is_blended(self, make_pipeline):
        pipeline, _, _ = make_pipeline()
        first = np.zeros((H, W), dtype=np.uint8)
        second = np.full((H, W), 100, dtype=np.uint8)
        republished = second.copy()

        previous = pipeline._smooth_mask(first, W, H)
        blended = pipeline._smooth_mask(second, W, H)
        expected = temporal_smooth(second, previous, pipeline.settings.stability)
        assert np.array_equal(blended, expected)
        assert 0 < blended[0, 0] < 100

        # Unchanged array: no drift toward the new value
        assert pipeline._smooth_mask(second, W, H) is blended

        again = pipeline._smooth_mask(republished, W, H)
        assert again is not blended
        assert np.array_equal(again, temporal_smooth(republished, blended, pipeline.settings.stability))
        assert again[0, 0] > blended[0, 0]

    def test_stale_size_resets_average(self, make_pipeline):
        pipeline, _, _ = make_pipeline()
        pipeline._smooth_mask(np.zeros((H, W), dtype=np.uint8), W, H)

        assert pipeline._smooth_mask(np.zeros((H // 2, W // 2), dtype=np.uint8), W, H) is None
        assert pipeline._smoothed_mask is None

        fresh = np.full((H, W), 180, dtype=np.uint8)
        assert np.array_equal(pipeline._smooth_mask(fresh, W, H), fresh)

    def test_no_mask(self, make_pipeline):
        pipeline, _, _ = make_pipeline()
        assert pipeline._smooth_mask(None, W, H) is None
