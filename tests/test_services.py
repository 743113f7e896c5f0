from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import List

import pytest

from distill.config import AppConfig
from distill.processing.slides import PLACEHOLDER_SLIDE_ID, GenerationResult, SlideGenerationError
from distill.services.frames import FrameLibraryService
from distill.services.slides import ProjectNotFoundError, SlideService
from distill.services.storage import ProjectRepository
from distill.services.usage import UsageService, classify_storage_file


class DummySlideGenerator:
    def __init__(self, slides=None) -> None:
        self.requests: List[dict] = []
        self._slides = slides if slides is not None else [
            {"id": "slide-1", "title": "Intro", "content": "- a", "timestamp": "00:01"},
            {"id": "slide-2", "title": "Details", "content": "- b", "timestamp": "00:02"},
        ]

    def generate(self, transcript, *, target_slides, context_prompt="", title="Presentation"):
        self.requests.append(
            {"transcript": transcript, "target": target_slides, "context": context_prompt, "title": title}
        )
        return GenerationResult(
            slides=[dict(slide) for slide in self._slides],
            model_id="dummy-model",
            input_tokens=100,
            output_tokens=50,
            total_tokens=150,
        )


class DummyFrameExtractor:
    def __init__(self, storage_root: Path) -> None:
        self._storage_root = storage_root
        self.requested: List[str] = []

    def extract(self, video_path, timestamps, output_dir, *, stem=None):
        frames = []
        for timestamp in timestamps:
            self.requested.append(timestamp)
            target = output_dir / f"frame_{timestamp.replace(':', '-')}.jpg"
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(b"jpeg")
            relative = target.relative_to(self._storage_root).as_posix()
            frames.append({"id": f"frame-{target.stem}", "timestamp": timestamp, "imageUrl": f"/storage/{relative}"})
        return frames


def test_slide_generation_persists_slides_and_usage(temp_config: AppConfig) -> None:
    repository = ProjectRepository(temp_config)
    project_id = repository.add_project(
        "Pharmacology",
        source_type="transcript-only",
        transcript=" ".join(["dose"] * 1500),
        context_prompt="stored context",
    )
    generator = DummySlideGenerator()
    service = SlideService(repository, generator)

    assert service.load_slides(project_id)[0]["id"] == PLACEHOLDER_SLIDE_ID

    outcome = service.generate_for_project(project_id, slides_per_minute=2)

    assert outcome.target_slides == 20
    assert outcome.warnings == []
    assert generator.requests[0]["context"] == "stored context"
    assert generator.requests[0]["title"] == "Pharmacology"
    project = repository.get_project(project_id)
    assert project is not None
    assert [slide["id"] for slide in project.slides] == ["slide-1", "slide-2"]
    assert project.target_slide_count == 20
    assert project.slides_per_minute == 2
    totals = repository.usage_totals()
    assert totals["totalTokens"] == 150
    assert totals["apiRequests"] == 1


def test_slide_generation_errors(temp_config: AppConfig) -> None:
    repository = ProjectRepository(temp_config)
    service = SlideService(repository, DummySlideGenerator())
    empty_project = repository.add_project("No transcript")

    with pytest.raises(SlideGenerationError, match="transcribe"):
        service.generate_for_project(empty_project)
    with pytest.raises(ProjectNotFoundError):
        service.generate_for_project(404)

    with_text = repository.add_project("Text", transcript="Some words.")
    with pytest.raises(SlideGenerationError, match="No slides"):
        SlideService(repository, DummySlideGenerator(slides=[])).generate_for_project(with_text)


def test_long_transcripts_produce_a_warning(temp_config: AppConfig) -> None:
    repository = ProjectRepository(temp_config)
    project_id = repository.add_project("Long", transcript="x" * 100_001)

    outcome = SlideService(repository, DummySlideGenerator()).generate_for_project(project_id)

    assert len(outcome.warnings) == 1


def test_slide_editing_through_service(temp_config: AppConfig) -> None:
    repository = ProjectRepository(temp_config)
    project_id = repository.add_project("Edit", transcript="Words.")
    service = SlideService(repository, DummySlideGenerator())
    service.generate_for_project(project_id)

    service.update_slide(project_id, 0, {"title": "Welcome"})
    added = service.add_slide(project_id, 0)
    assert added["newIndex"] == 1
    service.add_image(project_id, 0, "/storage/a.jpg")
    removed = service.delete_slide(project_id, 1)
    assert removed["deletedSlide"]["title"] == "New Slide"

    slides = repository.get_project(project_id).slides
    assert [slide["title"] for slide in slides] == ["Welcome", "Details"]
    assert slides[0]["imageUrls"] == ["/storage/a.jpg"]

    service.remove_image(project_id, 0, "/storage/a.jpg")
    assert repository.get_project(project_id).slides[0]["imageUrls"] == []
    replaced = service.replace_slides(project_id, [{"id": "only", "title": "Only"}])
    assert replaced == [{"id": "only", "title": "Only"}]


def test_frame_library_extracts_missing_timestamps(temp_config: AppConfig) -> None:
    repository = ProjectRepository(temp_config)
    video = temp_config.projects_root / "1" / "video_uploads" / "lecture.mp4"
    video.parent.mkdir(parents=True)
    video.write_bytes(b"video")
    project_id = repository.add_project(
        "Frames", source_file_path=video.relative_to(temp_config.storage_root).as_posix()
    )
    repository.update_slides(
        project_id,
        [
            {"id": "s1", "title": "One", "timestamp": "00:01"},
            {"id": "s2", "title": "Two", "timestamp": "00:02"},
        ],
    )
    extractor = DummyFrameExtractor(temp_config.storage_root)
    service = FrameLibraryService(repository, temp_config, extractor=extractor)

    result = service.extract_for_slides(project_id)

    assert extractor.requested == ["00:01", "00:02"]
    assert result["matchedSlides"] == 2
    assert all(slide["imageUrls"] for slide in result["slides"])
    again = service.extract_for_slides(project_id)
    assert again["newFrames"] == []
    assert extractor.requested == ["00:01", "00:02"]

    stats = service.statistics(project_id)
    assert stats["usedCount"] == 2 and stats["unusedCount"] == 0


def test_frame_library_delete_and_purge(temp_config: AppConfig) -> None:
    repository = ProjectRepository(temp_config)
    project_id = repository.add_project("Frames")
    stills = temp_config.projects_root / str(project_id) / "slide_stills"
    stills.mkdir(parents=True)
    frames = []
    for name in ("a", "b", "c"):
        (stills / f"{name}.jpg").write_bytes(b"jpeg")
        frames.append(
            {
                "id": name,
                "timestamp": f"00:0{len(frames) + 1}",
                "imageUrl": f"/storage/projects/{project_id}/slide_stills/{name}.jpg",
            }
        )
    service = FrameLibraryService(repository, temp_config, extractor=DummyFrameExtractor(temp_config.storage_root))
    service.merge_and_save(project_id, frames)
    repository.update_slides(project_id, [{"id": "s1", "imageUrls": [frames[0]["imageUrl"]]}])

    remaining = service.delete_frames(project_id, ["b"])
    assert [frame["id"] for frame in remaining] == ["a", "c"]
    assert not (stills / "b.jpg").exists()

    purged = service.purge_unused(project_id)
    assert purged["removed"] == 1
    assert [frame["id"] for frame in purged["frames"]] == ["a"]
    assert not (stills / "c.jpg").exists()
    assert (stills / "a.jpg").exists()


def test_deleting_frames_keeps_files_slides_still_show(temp_config: AppConfig) -> None:
    repository = ProjectRepository(temp_config)
    project_id = repository.add_project("Shared frame")
    stills = temp_config.projects_root / str(project_id) / "slide_stills"
    stills.mkdir(parents=True)
    frames = []
    for name in ("shown", "loose"):
        (stills / f"{name}.jpg").write_bytes(b"jpeg")
        frames.append(
            {
                "id": name,
                "timestamp": f"00:0{len(frames) + 1}",
                "imageUrl": f"/storage/projects/{project_id}/slide_stills/{name}.jpg",
            }
        )
    service = FrameLibraryService(repository, temp_config, extractor=DummyFrameExtractor(temp_config.storage_root))
    service.merge_and_save(project_id, frames)
    repository.update_slides(
        project_id,
        [{"id": "s1", "imageUrl": frames[0]["imageUrl"]}, {"id": "s2", "imageUrls": []}],
    )

    remaining = service.delete_frames(project_id, ["shown", "loose"])

    assert remaining == []
    assert (stills / "shown.jpg").exists()
    assert not (stills / "loose.jpg").exists()
    assert repository.get_project(project_id).slides[0]["imageUrl"] == frames[0]["imageUrl"]


def test_frame_selection_for_slide(temp_config: AppConfig) -> None:
    repository = ProjectRepository(temp_config)
    project_id = repository.add_project("Select")
    repository.update_slides(project_id, [{"id": "s1", "title": "One"}])
    service = FrameLibraryService(repository, temp_config)

    frame = {"id": "f1", "timestamp": "00:05", "imageUrl": "/storage/projects/x/f1.jpg"}
    result = service.select_for_slide(project_id, 0, [frame])

    assert result["slides"][0]["imageUrls"] == ["/storage/projects/x/f1.jpg"]
    assert service.list_frames(project_id) == [frame]
    with pytest.raises(ProjectNotFoundError):
        service.list_frames(999)


@pytest.mark.parametrize(
    ("name", "bucket"),
    [
        ("1/video_uploads/lecture.bin", "videos"),
        ("clip.MOV", "videos"),
        ("1/exports/deck.pdf", "slides"),
        ("1/slide_stills/frame.bin", "frames"),
        ("1/audio_extracts/lecture_frame_1.wav", "frames"),
        ("1/audio_extracts/full_audio.wav", "other"),
    ],
)
def test_classify_storage_file(name: str, bucket: str) -> None:
    assert classify_storage_file(name) == bucket


def test_storage_sync_and_info(temp_config: AppConfig) -> None:
    repository = ProjectRepository(temp_config)
    service = UsageService(repository, temp_config)
    uploads = temp_config.projects_root / "1" / "video_uploads"
    uploads.mkdir(parents=True)
    (uploads / "a.mp4").write_bytes(b"v" * 2048)
    (temp_config.projects_root / "1" / "slide_stills").mkdir()
    (temp_config.projects_root / "1" / "slide_stills" / "f.jpg").write_bytes(b"f" * 512)

    first = service.sync_storage_usage()
    assert first["storageUsed"] == 2560
    assert first["previousStorageSize"] == 0
    assert first["breakdown"]["videos"] == 2048
    assert first["breakdown"]["frames"] == 512

    second = service.sync_storage_usage()
    assert second["message"] == "Storage usage is already up to date"

    info = service.storage_info()
    assert info["storageUsed"] == 2560
    assert info["tierName"] == "Free"
    assert info["storageLimit"] == 1024 * 1024 * 1024
    assert info["percentageUsed"] == pytest.approx(2560 * 100.0 / (1024 * 1024 * 1024))


def test_cleanup_removes_orphaned_files(temp_config: AppConfig) -> None:
    repository = ProjectRepository(temp_config)
    service = UsageService(repository, temp_config)
    root = temp_config.projects_root
    project_id = repository.add_project("Kept")
    kept_upload = root / str(project_id) / "video_uploads" / "kept.mp4"
    stray_upload = root / str(project_id) / "video_uploads" / "stray.mp4"
    kept_still = root / str(project_id) / "slide_stills" / "still.jpg"
    orphan_still = root / "999" / "slide_stills" / "ghost.jpg"
    for path in (kept_upload, stray_upload, kept_still, orphan_still):
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(b"x" * 100)
    repository.update_project(
        project_id, source_file_path=kept_upload.relative_to(temp_config.storage_root).as_posix()
    )

    result = service.cleanup_orphaned_files()

    assert result["deletedCount"] == 2
    assert result["sizeDeleted"] == 200
    assert result["sizeDeletedFormatted"] == "200 Bytes"
    assert kept_upload.exists() and kept_still.exists()
    assert not stray_upload.exists()
    assert not (root / "999").exists()


def test_purge_expired_projects(temp_config: AppConfig) -> None:
    repository = ProjectRepository(temp_config)
    service = UsageService(repository, temp_config)
    now = datetime(2025, 5, 1, tzinfo=timezone.utc)
    expired_id = repository.add_project("Expired", now=now - timedelta(days=10))
    active_id = repository.add_project("Active", now=now)
    files = temp_config.projects_root / str(expired_id) / "video_uploads"
    files.mkdir(parents=True)
    (files / "a.mp4").write_bytes(b"a")

    removed = service.purge_expired_projects(now=now)

    assert removed == [expired_id]
    assert repository.get_project(expired_id) is None
    assert repository.get_project(active_id) is not None
    assert not (temp_config.projects_root / str(expired_id)).exists()


def test_project_size_prefers_larger_measure(temp_config: AppConfig) -> None:
    repository = ProjectRepository(temp_config)
    service = UsageService(repository, temp_config)
    project_id = repository.add_project("Sized", video_metadata={"file_size": 10})
    folder = temp_config.projects_root / str(project_id)
    folder.mkdir(parents=True)
    (folder / "blob.bin").write_bytes(b"z" * 50)

    assert service.project_size(repository.get_project(project_id)) == 50
    assert service.disk_usage()["free"] > 0
