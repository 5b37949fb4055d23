import threading

import pytest

from visualslam.viewer_control import ViewerControl, ViewerSettings


def test_settings_defaults_when_keys_missing():
    settings = ViewerSettings.from_settings({})
    assert settings.frame_period_ms == pytest.approx(1000 / 30)
    assert (settings.image_width, settings.image_height) == (640, 480)
    assert settings.viewpoint_f == 0.0


def test_settings_read_values():
    settings = ViewerSettings.from_settings(
        {
            "Camera.fps": 10,
            "Camera.width": 1241,
            "Camera.height": 376,
            "Viewer.ViewpointX": 0.5,
            "Viewer.ViewpointY": -0.7,
            "Viewer.ViewpointZ": -1.8,
            "Viewer.ViewpointF": 500,
        }
    )
    assert settings.frame_period_ms * 10 == pytest.approx(1e3)
    assert (settings.image_width, settings.image_height) == (1241, 376)
    assert (settings.viewpoint_x, settings.viewpoint_y, settings.viewpoint_z) == (
        0.5,
        -0.7,
        -1.8,
    )
    assert settings.viewpoint_f == 500


def test_settings_invalid_size_falls_back_together():
    settings = ViewerSettings.from_settings({"Camera.width": 800, "Camera.height": 0})
    assert (settings.image_width, settings.image_height) == (640, 480)


def test_low_fps_uses_default():
    low = ViewerSettings.from_settings({"Camera.fps": 0.5})
    default = ViewerSettings.from_settings({})
    assert low.frame_period_ms == default.frame_period_ms


def test_initial_state_is_stopped_and_finished():
    control = ViewerControl()
    assert control.is_finished() is True
    assert control.is_stopped() is True
    assert control.check_finish() is False


def test_request_stop_ignored_while_stopped():
    control = ViewerControl()
    control.request_stop()
    control.start()
    assert control.stop() is False
    assert control.is_stopped() is False


def test_stop_and_release_cycle():
    control = ViewerControl()
    control.start()
    assert control.is_finished() is False
    control.request_stop()
    assert control.stop() is True
    assert control.is_stopped() is True
    assert control.stop() is False
    control.release()
    assert control.is_stopped() is False


def test_finish_request_overrides_stop():
    control = ViewerControl()
    control.start()
    control.request_stop()
    control.request_finish()
    assert control.stop() is False
    assert control.check_finish() is True
    control.set_finish()
    assert control.is_finished() is True


def test_loop_in_thread_finishes_on_request():
    control = ViewerControl()
    control.start()

    def loop():
        while not control.check_finish():
            if control.stop():
                while control.is_stopped() and not control.check_finish():
                    pass
        control.set_finish()

    worker = threading.Thread(target=loop)
    worker.start()
    control.request_finish()
    worker.join(timeout=5)
    assert not worker.is_alive()
    assert control.is_finished() is True