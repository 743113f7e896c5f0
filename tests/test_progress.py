import pytest

from distill.services.progress import (
    create_progress_handler,
    format_progress_message,
    map_progress_range,
    upload_stage_message,
)


def test_format_progress_message() -> None:
    assert format_progress_message("Uploading", 1, 4) == "Uploading (25%)"
    assert format_progress_message("Uploading", 5, 4) == "Uploading (100%)"
    assert format_progress_message("Uploading", -1, 4) == "Uploading (0%)"
    assert format_progress_message("Uploading", None, 4) == "Uploading"
    assert format_progress_message("Uploading", 1, 0) == "Uploading"


def test_map_progress_range() -> None:
    assert map_progress_range(50, 0, 100, 20, 60) == 40
    assert map_progress_range(150, 0, 100, 20, 60) == 60
    assert map_progress_range(-5, 0, 100, 20, 60) == 20
    assert map_progress_range(3, 5, 5, 0, 80) == 80


def test_create_progress_handler_maps_sub_task_progress() -> None:
    seen = []
    handler = create_progress_handler(lambda percent, message: seen.append((percent, message)), 10, 30)

    handler(0, "start")
    handler(50)
    handler(100, "done")

    assert seen == [(10, "start"), (20, None), (30, "done")]


def test_upload_stage_messages() -> None:
    assert upload_stage_message("uploading", 42.7) == "Uploading: 42%"
    assert upload_stage_message("uploading") == "Uploading file..."
    assert upload_stage_message("chunking") == "Processing video segments..."
    assert upload_stage_message("extracting_audio") == "Extracting Audio..."


@pytest.mark.parametrize(
    ("value", "target_end", "expected"),
    [(50, 5, 3), (50, 3, 2), (25, 10, 3)],
)
def test_map_progress_range_rounds_halves_up(value, target_end, expected) -> None:
    assert map_progress_range(value, 0, 100, 0, target_end) == expected
