from __future__ import annotations

from unittest.mock import Mock, patch

from ptrs_pipeline.services.progress import ProgressTracker, is_tty_enabled


def test_is_tty_enabled_follows_stdout():
    with patch("sys.stdout.isatty", return_value=True):
        assert is_tty_enabled() is True
    with patch("sys.stdout.isatty", return_value=False):
        assert is_tty_enabled() is False


def test_tracker_disabled_without_tty():
    with patch("ptrs_pipeline.services.progress.is_tty_enabled", return_value=False), \
            patch("ptrs_pipeline.services.progress.tqdm") as mock_tqdm:
        tracker = ProgressTracker(100)
        tracker.update(40)
        tracker.set_postfix(batch=1)
        tracker.close()
    mock_tqdm.assert_not_called()
    assert tracker.enabled is False
    assert tracker.pbar is None
    assert tracker.processed == 40


def test_tracker_creates_bar_on_tty():
    bar = Mock()
    with patch("ptrs_pipeline.services.progress.is_tty_enabled", return_value=True), \
            patch("ptrs_pipeline.services.progress.tqdm", return_value=bar) as mock_tqdm:
        with ProgressTracker(25, description="Applying rules") as tracker:
            tracker.update(10)
            tracker.update(15)
            tracker.set_postfix(excluded=2)

    mock_tqdm.assert_called_once_with(
        total=25, desc="Applying rules", unit="row", disable=False, leave=True, position=0, ncols=80, ascii=True,
    )
    assert bar.update.call_count == 2
    bar.set_postfix.assert_called_once_with(excluded=2)
    bar.close.assert_called_once()
    assert tracker.processed == 25
    assert tracker.pbar is None
